"""Append-only ledger of metered provider calls."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime

from radar.db import dumps
from radar.models import ProviderCallDraft, format_ts

logger = logging.getLogger(__name__)


class ProviderCallLedger:
    """Records every metered call and answers rolling credit sums.

    Rows are never mutated, with one exception: a call recorded before it
    finished (no ``ended_at``, caller-supplied ``call_id``) can be finalized
    exactly once by recording it again with the same ``call_id``.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def record(self, draft: ProviderCallDraft, call_id: str | None = None) -> int:
        """Persist a draft and return its row id."""
        if call_id is not None:
            existing = self.conn.execute(
                "SELECT id, ended_at FROM provider_calls WHERE call_id = ?", (call_id,),
            ).fetchone()
            if existing is not None:
                return self._finalize(existing, draft, call_id)

        cur = self.conn.execute(
            """INSERT INTO provider_calls
               (call_id, user_id, purpose, provider, model, input_tokens, output_tokens,
                cost_estimate_credits, cost_estimate_usd, meta_json, started_at, ended_at,
                status, error_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                call_id,
                draft.user_id,
                draft.purpose,
                draft.provider,
                draft.model,
                draft.input_tokens,
                draft.output_tokens,
                draft.cost_estimate_credits,
                draft.cost_estimate_usd,
                json.dumps(draft.meta or {}, default=str),
                format_ts(draft.started_at),
                format_ts(draft.ended_at),
                draft.status,
                dumps(draft.error),
            ),
        )
        self.conn.commit()
        logger.debug(
            "Recorded %s call for %s (%s/%s, %.3f credits, %s)",
            draft.purpose, draft.user_id, draft.provider, draft.model,
            draft.cost_estimate_credits, draft.status,
        )
        return cur.lastrowid

    def _finalize(self, existing: sqlite3.Row, draft: ProviderCallDraft, call_id: str) -> int:
        if existing["ended_at"] is not None:
            logger.warning("Provider call %s already finalized; ignoring", call_id)
            return existing["id"]
        if draft.ended_at is None:
            # Still not finished: nothing to finalize yet.
            return existing["id"]

        self.conn.execute(
            """UPDATE provider_calls SET
               input_tokens = ?, output_tokens = ?, cost_estimate_credits = ?,
               cost_estimate_usd = ?, meta_json = ?, ended_at = ?, status = ?, error_json = ?
               WHERE id = ? AND ended_at IS NULL""",
            (
                draft.input_tokens,
                draft.output_tokens,
                draft.cost_estimate_credits,
                draft.cost_estimate_usd,
                json.dumps(draft.meta or {}, default=str),
                format_ts(draft.ended_at),
                draft.status,
                dumps(draft.error),
                existing["id"],
            ),
        )
        self.conn.commit()
        return existing["id"]

    def sum_credits(self, user_id: str, since: datetime, until: datetime | None = None) -> float:
        """Credits spent in [since, until).

        Successful calls always count; failed calls count only when they
        carry a partial cost.
        """
        sql = """SELECT COALESCE(SUM(cost_estimate_credits), 0) AS total
                 FROM provider_calls
                 WHERE user_id = ?
                   AND (status = 'ok' OR cost_estimate_credits > 0)
                   AND started_at >= ?"""
        args: list = [user_id, format_ts(since)]
        if until is not None:
            sql += " AND started_at < ?"
            args.append(format_ts(until))
        row = self.conn.execute(sql, args).fetchone()
        return float(row["total"] or 0.0)

    def usage_by_purpose(
        self, user_id: str, since: datetime, until: datetime | None = None,
    ) -> list[dict]:
        """Per-purpose call counts, tokens and credits for reporting."""
        sql = """SELECT purpose,
                        COUNT(*) AS calls,
                        SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) AS errors,
                        SUM(input_tokens) AS input_tokens,
                        SUM(output_tokens) AS output_tokens,
                        SUM(cost_estimate_credits) AS credits
                 FROM provider_calls
                 WHERE user_id = ? AND started_at >= ?"""
        args: list = [user_id, format_ts(since)]
        if until is not None:
            sql += " AND started_at < ?"
            args.append(format_ts(until))
        sql += " GROUP BY purpose ORDER BY credits DESC"
        return [dict(row) for row in self.conn.execute(sql, args).fetchall()]

    def list_calls(self, user_id: str, limit: int = 50) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM provider_calls WHERE user_id = ? ORDER BY started_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [dict(row) for row in rows]
