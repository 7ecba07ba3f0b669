"""Fetch cycles: connector -> normalize -> dedupe -> store -> advance cursor."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable

from radar.budget import CreditBudgetGovernor
from radar.db import (
    acquire_source_lease,
    finish_fetch_run,
    get_cursor,
    insert_content_item,
    list_enabled_sources,
    release_source_lease,
    start_fetch_run,
    update_cursor,
)
from radar.errors import PersistenceConflict
from radar.ingest import get_connector
from radar.ingest.base import BaseConnector
from radar.models import (
    ContentItem,
    ContentItemDraft,
    FetchCycleResult,
    FetchLimits,
    FetchParams,
    IngestRunResult,
    ProviderCallDraft,
    Source,
    utcnow,
)
from radar.retry import with_timeout
from radar.throttle import AccountThrottlePolicy
from radar.urls import canonicalize_url, url_hash

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "max_items_per_source": 50,
    "hard_max_items": 200,
    "fetch_timeout_seconds": 60,
    "lease_ttl_seconds": 900,
    "paid_connector_types": ["x_posts", "signal"],
}


def identity_key(source_id: str, draft: ContentItemDraft, canonical_url: str | None) -> str:
    """Dedupe key within a source: URL, else external id, else a content hash."""
    if canonical_url:
        return f"url:{url_hash(canonical_url)}"
    if draft.external_id:
        return f"ext:{draft.external_id}"
    fields = {
        "source_id": source_id,
        "title": draft.title,
        "body": draft.body_text,
        "author": draft.author,
        "published_at": draft.published_at.isoformat() if draft.published_at else None,
    }
    digest = hashlib.sha256(json.dumps(fields, sort_keys=True).encode()).hexdigest()
    return f"syn:{digest}"


def is_source_due(source: Source, now: datetime | None = None) -> bool:
    if not source.cadence_minutes or source.last_fetch_at is None:
        return True
    now = now or utcnow()
    return now - source.last_fetch_at >= timedelta(minutes=source.cadence_minutes)


def _max_items(source: Source, settings: dict) -> int:
    hard_max = int(settings["hard_max_items"])
    scaled = round(int(settings["max_items_per_source"]) * source.weight)
    return max(1, min(hard_max, scaled))


class IngestionCoordinator:
    """Runs fetch cycles for sources, one writer per source at a time."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        governor: CreditBudgetGovernor,
        throttle: AccountThrottlePolicy | None = None,
        settings: dict | None = None,
        connector_for: Callable[[str], BaseConnector] = get_connector,
        owner: str | None = None,
    ):
        self.conn = conn
        self.governor = governor
        self.throttle = throttle or AccountThrottlePolicy(conn)
        self.settings = {**DEFAULT_SETTINGS, **(settings or {})}
        self.connector_for = connector_for
        self.owner = owner or f"worker-{uuid.uuid4().hex[:12]}"

    async def run_fetch_cycle(
        self,
        source: Source,
        window_start: datetime,
        window_end: datetime,
        cycle_id: str | None = None,
        paid_calls_allowed: bool = True,
    ) -> FetchCycleResult:
        """Fetch one source once. The cursor only moves after every item is stored."""
        result = FetchCycleResult(source_id=source.id, source_type=source.type)
        ttl = float(self.settings["lease_ttl_seconds"])
        # one lease token per cycle so cycles sharing this coordinator exclude each other
        lease_owner = f"{self.owner}:{uuid.uuid4().hex[:12]}"
        if not acquire_source_lease(self.conn, source.id, lease_owner, ttl):
            logger.info("Source %s is being fetched elsewhere; skipping", source.id)
            return self._skipped(result, "locked")
        try:
            return await self._run_locked(
                source, window_start, window_end, cycle_id or uuid.uuid4().hex,
                paid_calls_allowed, result,
            )
        finally:
            release_source_lease(self.conn, source.id, lease_owner)

    async def _run_locked(
        self,
        source: Source,
        window_start: datetime,
        window_end: datetime,
        cycle_id: str,
        paid_calls_allowed: bool,
        result: FetchCycleResult,
    ) -> FetchCycleResult:
        if source.type in self.settings["paid_connector_types"] and not paid_calls_allowed:
            logger.info("Skipping paid source %s: paid calls not allowed", source.id)
            return self._skipped(result, "paid_calls_disallowed")

        connector = self.connector_for(source.type)
        cursor = get_cursor(self.conn, source.id)

        config = dict(source.config)
        handles = connector.account_handles(source.config)
        if handles:
            included = [h for h in handles if self.throttle.should_include(source.id, h, cycle_id)]
            if not included:
                logger.info("All %d accounts of %s throttled this cycle", len(handles), source.id)
                return self._skipped(result, "throttled")
            config["included_accounts"] = included

        params = FetchParams(
            user_id=source.user_id,
            source_id=source.id,
            source_type=source.type,
            config=config,
            cursor=cursor,
            limits=FetchLimits(max_items=_max_items(source, self.settings)),
            window_start=window_start,
            window_end=window_end,
        )

        fetch_run_id = start_fetch_run(self.conn, source.id, cursor)
        try:
            fetched = await with_timeout(
                connector.fetch(params),
                float(self.settings["fetch_timeout_seconds"]),
                f"fetch {source.id}",
            )
        except Exception as exc:
            logger.exception("Fetch failed for source %s (%s)", source.id, source.type)
            result.status = "error"
            result.errors = 1
            result.error = f"{type(exc).__name__}: {exc}"
            finish_fetch_run(self.conn, fetch_run_id, "error", None, self._counts(result), result.error)
            return result

        raw_items = fetched.raw_items[: params.limits.max_items]
        result.fetched = len(raw_items)
        result.provider_calls_recorded = self._record_provider_calls(source, fetched.meta)

        now = utcnow()
        for raw in raw_items:
            try:
                draft = await connector.normalize(raw, params)
            except Exception as exc:
                result.errors += 1
                logger.warning("Normalize failed for an item of %s: %s", source.id, exc)
                continue
            result.normalized += 1
            if self._store(source, draft, now):
                result.items_ingested += 1

        update_cursor(self.conn, source.id, fetched.next_cursor, now)
        result.cursor_advanced = True
        result.status = "partial" if result.errors else "ok"
        finish_fetch_run(self.conn, fetch_run_id, result.status, fetched.next_cursor, self._counts(result))
        logger.info(
            "Source %s: fetched %d, ingested %d, errors %d",
            source.id, result.fetched, result.items_ingested, result.errors,
        )
        return result

    def _store(self, source: Source, draft: ContentItemDraft, fetched_at: datetime) -> bool:
        canonical = None
        if draft.canonical_url:
            try:
                canonical = canonicalize_url(draft.canonical_url)
            except ValueError:
                logger.debug("Unusable URL on item from %s: %s", source.id, draft.canonical_url)
        item = ContentItem(
            user_id=source.user_id,
            source_id=source.id,
            source_type=draft.source_type or source.type,
            identity_key=identity_key(source.id, draft, canonical),
            title=draft.title,
            body_text=draft.body_text,
            canonical_url=canonical,
            external_id=draft.external_id,
            author=draft.author,
            published_at=draft.published_at,
            fetched_at=fetched_at,
            metadata=draft.metadata,
        )
        try:
            insert_content_item(self.conn, item)
        except PersistenceConflict:
            logger.debug("Duplicate item %s on %s", item.identity_key, source.id)
            return False
        return True

    def _record_provider_calls(self, source: Source, meta: dict) -> int:
        entries = meta.get("provider_calls") or meta.get("providerCalls") or []
        if not isinstance(entries, list):
            logger.warning("Source %s returned malformed provider call metadata", source.id)
            return 0
        recorded = 0
        for entry in entries:
            draft = ProviderCallDraft.from_dict(entry)
            if draft is None:
                logger.warning("Dropping malformed provider call draft from %s", source.id)
                continue
            try:
                self.governor.record_usage(draft)
            except sqlite3.Error:
                logger.exception("Failed to record provider call for %s", source.id)
                continue
            recorded += 1
        return recorded

    @staticmethod
    def _skipped(result: FetchCycleResult, reason: str) -> FetchCycleResult:
        result.status = "skipped"
        result.skipped = True
        result.skip_reason = reason
        return result

    @staticmethod
    def _counts(result: FetchCycleResult) -> dict:
        return {
            "fetched": result.fetched,
            "normalized": result.normalized,
            "ingested": result.items_ingested,
            "errors": result.errors,
            "provider_calls": result.provider_calls_recorded,
        }

    async def ingest_enabled_sources(
        self,
        user_id: str,
        topic: str,
        window_start: datetime,
        window_end: datetime,
        cycle_id: str | None = None,
        paid_calls_allowed: bool = True,
        respect_cadence: bool = True,
    ) -> IngestRunResult:
        """Run one fetch cycle for every enabled, due source of a topic."""
        run = IngestRunResult()
        cycle_id = cycle_id or uuid.uuid4().hex
        now = utcnow()
        for source in list_enabled_sources(self.conn, user_id, topic):
            if respect_cadence and not is_source_due(source, now):
                logger.debug("Source %s not due yet", source.id)
                run.per_source.append(
                    self._skipped(FetchCycleResult(source.id, source.type), "not_due"),
                )
                continue
            run.per_source.append(
                await self.run_fetch_cycle(
                    source, window_start, window_end, cycle_id, paid_calls_allowed,
                ),
            )
        totals = run.totals
        logger.info(
            "Ingest %s/%s: %d sources, %d ingested, %d skipped, %d errors",
            user_id, topic, totals["sources"], totals["ingested"], totals["skipped"], totals["errors"],
        )
        return run
