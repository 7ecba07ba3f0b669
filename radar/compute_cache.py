"""Idempotent, scope-keyed storage for expensive LLM outputs.

A scope (time window, topic, digest, ...) hashes to a stable key. The first
request for a key inserts a ``pending`` row and becomes its creator; every
concurrent or later request gets that same row back with ``created=False``
and never triggers a second computation. Only the creator transitions the
row, exactly once, to ``complete``, ``error`` or ``skipped``.

A creator that dies leaves its row ``pending``. With ``stale_after`` set, a
row untouched for that long is claimed again by exactly one later request,
which then becomes the creator.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any

from radar.db import dumps, loads
from radar.models import (
    AggregateSummaryScope,
    CatchupPackScope,
    ComputeRecord,
    ComputeUsage,
    format_ts,
    parse_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

SELECTOR_COLUMNS = {
    "aggregate_summaries": ("digest_id", "topic_id", "since", "until"),
    "catchup_packs": ("topic_id", "since", "until", "time_budget_minutes"),
}


def scope_hash(fields: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON encoding of ``fields``."""
    canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def aggregate_summary_hash(scope: AggregateSummaryScope) -> str:
    return scope_hash({
        "type": scope.type,
        "digest_id": scope.digest_id,
        "topic_id": scope.topic_id,
        "since": scope.since,
        "until": scope.until,
    })


def catchup_pack_hash(scope: CatchupPackScope) -> str:
    return scope_hash({
        "type": scope.type,
        "topic_id": scope.topic_id,
        "since": scope.since,
        "until": scope.until,
        "time_budget_minutes": scope.time_budget_minutes,
    })


class IdempotentComputeCache:
    """Pending/terminal state machine over one compute table."""

    def __init__(self, conn: sqlite3.Connection, table: str, stale_after: float | None = None):
        if table not in SELECTOR_COLUMNS:
            raise ValueError(f"Unknown compute table: {table}")
        self.conn = conn
        self.table = table
        self.selector_columns = SELECTOR_COLUMNS[table]
        self.stale_after = stale_after

    def get_or_create(
        self,
        user_id: str,
        scope_type: str,
        scope_hash: str,
        selector: dict[str, Any] | None = None,
    ) -> tuple[ComputeRecord, bool]:
        """Return the record for this scope, inserting a pending one if absent."""
        existing = self._get_by_hash(user_id, scope_hash)
        if existing is not None:
            if existing.status == "pending" and self._reclaim_stale(existing.id):
                logger.warning(
                    "Reclaimed stale pending %s %d for %s", self.table, existing.id, user_id,
                )
                return self.get(existing.id), True
            return existing, False

        selector = selector or {}
        now = format_ts(utcnow())
        columns = ("user_id", "scope_type", "scope_hash", *self.selector_columns,
                   "status", "created_at", "updated_at")
        values = (user_id, scope_type, scope_hash,
                  *(selector.get(c) for c in self.selector_columns),
                  "pending", now, now)
        try:
            cur = self.conn.execute(
                f"INSERT INTO {self.table} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
            self.conn.commit()
        except sqlite3.IntegrityError:
            # Lost the race to another writer; theirs is the record.
            self.conn.rollback()
            record = self._get_by_hash(user_id, scope_hash)
            if record is None:
                raise
            return record, False

        logger.debug("Created pending %s %s for %s", self.table, scope_hash[:12], user_id)
        return self.get(cur.lastrowid), True

    def _reclaim_stale(self, record_id: int) -> bool:
        if self.stale_after is None:
            return False
        now = utcnow()
        cutoff = format_ts(now - timedelta(seconds=self.stale_after))
        # the claim bumps updated_at, so concurrent reclaimers lose the race
        cur = self.conn.execute(
            f"UPDATE {self.table} SET updated_at = ? "
            "WHERE id = ? AND status = 'pending' AND updated_at <= ?",
            (format_ts(now), record_id, cutoff),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def complete(self, record_id: int, output: dict[str, Any], usage: ComputeUsage) -> bool:
        """pending -> complete. False if the record was already terminal."""
        return self._transition(
            record_id,
            "complete",
            summary_json=dumps(output),
            prompt_id=usage.prompt_id,
            schema_version=usage.schema_version,
            provider=usage.provider,
            model=usage.model,
            input_item_count=usage.input_item_count,
            input_char_count=usage.input_char_count,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_estimate_credits=usage.cost_estimate_credits,
            meta_json=dumps(usage.meta),
        )

    def fail(self, record_id: int, message: str) -> bool:
        return self._transition(record_id, "error", error_message=message)

    def skip(self, record_id: int, message: str) -> bool:
        return self._transition(record_id, "skipped", error_message=message)

    def _transition(self, record_id: int, status: str, **fields: Any) -> bool:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cur = self.conn.execute(
            f"UPDATE {self.table} SET status = ?, {assignments}, updated_at = ? "
            "WHERE id = ? AND status = 'pending'",
            (status, *fields.values(), format_ts(utcnow()), record_id),
        )
        self.conn.commit()
        if cur.rowcount != 1:
            logger.warning("%s %d is not pending; ignoring transition to %s", self.table, record_id, status)
            return False
        logger.info("%s %d -> %s", self.table, record_id, status)
        return True

    def get(self, record_id: int) -> ComputeRecord | None:
        row = self.conn.execute(f"SELECT * FROM {self.table} WHERE id = ?", (record_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def _get_by_hash(self, user_id: str, scope_hash: str) -> ComputeRecord | None:
        row = self.conn.execute(
            f"SELECT * FROM {self.table} WHERE user_id = ? AND scope_hash = ?",
            (user_id, scope_hash),
        ).fetchone()
        return self._row_to_record(row) if row else None

    async def wait_for_terminal(
        self, record_id: int, poll_interval: float = 1.0, timeout: float = 300.0,
    ) -> ComputeRecord | None:
        """Poll until the record leaves ``pending``; returns the last seen record."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        record = self.get(record_id)
        while record is not None and not record.is_terminal and loop.time() < deadline:
            await asyncio.sleep(poll_interval)
            record = self.get(record_id)
        return record

    def _row_to_record(self, row: sqlite3.Row) -> ComputeRecord:
        return ComputeRecord(
            id=row["id"],
            user_id=row["user_id"],
            scope_type=row["scope_type"],
            scope_hash=row["scope_hash"],
            status=row["status"],
            selector={c: row[c] for c in self.selector_columns},
            summary_json=loads(row["summary_json"]),
            prompt_id=row["prompt_id"],
            schema_version=row["schema_version"],
            provider=row["provider"],
            model=row["model"],
            input_item_count=row["input_item_count"],
            input_char_count=row["input_char_count"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cost_estimate_credits=row["cost_estimate_credits"],
            meta_json=loads(row["meta_json"]),
            error_message=row["error_message"],
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )
