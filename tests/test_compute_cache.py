"""Tests for the idempotent compute cache."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from radar.compute_cache import (
    IdempotentComputeCache,
    aggregate_summary_hash,
    catchup_pack_hash,
    scope_hash,
)
from radar.db import get_connection
from radar.models import AggregateSummaryScope, CatchupPackScope, ComputeUsage, format_ts, utcnow

SELECTOR = {"topic_id": "tech", "since": "2025-03-09T12:00:00Z", "until": "2025-03-10T12:00:00Z"}


def test_scope_hash_ignores_key_order():
    assert scope_hash({"a": 1, "b": [1, 2]}) == scope_hash({"b": [1, 2], "a": 1})
    assert scope_hash({"a": 1}) != scope_hash({"a": 2})


def test_scope_hashes_cover_every_field():
    base = AggregateSummaryScope(type="range", topic_id="tech", since="2025-03-09", until="2025-03-10")
    other = AggregateSummaryScope(type="range", topic_id="tech", since="2025-03-08", until="2025-03-10")
    inbox = AggregateSummaryScope(type="inbox", topic_id="tech", since="2025-03-09", until="2025-03-10")
    assert aggregate_summary_hash(base) == aggregate_summary_hash(
        AggregateSummaryScope(type="range", topic_id="tech", since="2025-03-09", until="2025-03-10"),
    )
    assert aggregate_summary_hash(base) != aggregate_summary_hash(other)
    assert aggregate_summary_hash(base) != aggregate_summary_hash(inbox)

    pack_30 = CatchupPackScope(topic_id="tech", since="a", until="b", time_budget_minutes=30)
    pack_60 = CatchupPackScope(topic_id="tech", since="a", until="b", time_budget_minutes=60)
    assert catchup_pack_hash(pack_30) != catchup_pack_hash(pack_60)


def test_unknown_table_rejected(db_conn):
    with pytest.raises(ValueError):
        IdempotentComputeCache(db_conn, "digests")


def test_second_request_gets_the_same_record(db_conn):
    cache = IdempotentComputeCache(db_conn, "aggregate_summaries")
    first, created = cache.get_or_create("u1", "range", "h1", SELECTOR)
    second, created_again = cache.get_or_create("u1", "range", "h1", SELECTOR)

    assert created and not created_again
    assert first.id == second.id
    assert second.status == "pending"
    assert second.selector["topic_id"] == "tech"

    other_user, created_for_other = cache.get_or_create("u2", "range", "h1", SELECTOR)
    assert created_for_other
    assert other_user.id != first.id


def test_concurrent_get_or_create_creates_once(sample_config, db_conn):
    db_path = sample_config["database"]["path"]

    def request(_):
        conn = get_connection(db_path)
        try:
            record, created = IdempotentComputeCache(conn, "catchup_packs").get_or_create(
                "u1", "range", "shared-hash", {**SELECTOR, "time_budget_minutes": 30},
            )
            return record.id, created
        finally:
            conn.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(request, range(8)))

    assert sum(1 for _, created in results if created) == 1
    assert len({record_id for record_id, _ in results}) == 1


def test_complete_stores_output_and_usage(db_conn):
    cache = IdempotentComputeCache(db_conn, "aggregate_summaries")
    record, _ = cache.get_or_create("u1", "range", "h1", SELECTOR)

    usage = ComputeUsage(
        provider="mock", model="test-model", prompt_id="p1", schema_version="p1",
        input_item_count=3, input_char_count=120, input_tokens=1000, output_tokens=500,
        cost_estimate_credits=1.5, meta={"tier": "normal"},
    )
    assert cache.complete(record.id, {"one_liner": "Quiet day"}, usage)

    stored = cache.get(record.id)
    assert stored.status == "complete"
    assert stored.summary_json == {"one_liner": "Quiet day"}
    assert stored.input_item_count == 3
    assert stored.cost_estimate_credits == 1.5
    assert stored.meta_json == {"tier": "normal"}
    assert stored.is_terminal


@pytest.mark.parametrize("terminal", ["skip", "fail"])
def test_terminal_records_are_immutable(db_conn, terminal):
    cache = IdempotentComputeCache(db_conn, "aggregate_summaries")
    record, _ = cache.get_or_create("u1", "range", "h1", SELECTOR)
    assert getattr(cache, terminal)(record.id, "insufficient credits")

    assert not cache.complete(record.id, {"late": True}, ComputeUsage())
    assert not cache.fail(record.id, "overwritten")
    assert not cache.skip(record.id, "overwritten")

    again, created = cache.get_or_create("u1", "range", "h1", SELECTOR)
    assert not created
    assert again.id == record.id
    assert again.status == ("skipped" if terminal == "skip" else "error")
    assert again.error_message == "insufficient credits"
    assert again.summary_json is None


@pytest.mark.asyncio
async def test_wait_for_terminal(db_conn):
    cache = IdempotentComputeCache(db_conn, "catchup_packs")
    record, _ = cache.get_or_create("u1", "range", "h1", {**SELECTOR, "time_budget_minutes": 45})

    async def finish():
        await asyncio.sleep(0.05)
        cache.fail(record.id, "provider down")

    waited, _ = await asyncio.gather(
        cache.wait_for_terminal(record.id, poll_interval=0.01, timeout=2), finish(),
    )
    assert waited.status == "error"
    assert waited.error_message == "provider down"


@pytest.mark.asyncio
async def test_wait_for_terminal_times_out_on_pending(db_conn):
    cache = IdempotentComputeCache(db_conn, "catchup_packs")
    record, _ = cache.get_or_create("u1", "range", "h1", {**SELECTOR, "time_budget_minutes": 45})
    waited = await cache.wait_for_terminal(record.id, poll_interval=0.01, timeout=0.05)
    assert waited.status == "pending"


def _age(conn, table, record_id, seconds):
    conn.execute(
        f"UPDATE {table} SET updated_at = ? WHERE id = ?",
        (format_ts(utcnow() - timedelta(seconds=seconds)), record_id),
    )
    conn.commit()


def test_stale_pending_record_is_reclaimed_once(db_conn):
    cache = IdempotentComputeCache(db_conn, "aggregate_summaries", stale_after=600)
    record, _ = cache.get_or_create("u1", "range", "h1", SELECTOR)

    _, created = cache.get_or_create("u1", "range", "h1", SELECTOR)
    assert not created

    _age(db_conn, "aggregate_summaries", record.id, 3600)
    reclaimed, created = cache.get_or_create("u1", "range", "h1", SELECTOR)
    assert created
    assert reclaimed.id == record.id
    assert reclaimed.status == "pending"

    again, created_again = cache.get_or_create("u1", "range", "h1", SELECTOR)
    assert not created_again

    assert cache.complete(record.id, {"one_liner": "done"}, ComputeUsage())
    assert cache.get(record.id).status == "complete"


def test_stale_rows_stay_put_without_stale_after_or_once_terminal(db_conn):
    patient = IdempotentComputeCache(db_conn, "aggregate_summaries")
    record, _ = patient.get_or_create("u1", "range", "h1", SELECTOR)
    _age(db_conn, "aggregate_summaries", record.id, 3600)
    assert not patient.get_or_create("u1", "range", "h1", SELECTOR)[1]

    eager = IdempotentComputeCache(db_conn, "aggregate_summaries", stale_after=60)
    eager.skip(record.id, "no items in scope")
    _age(db_conn, "aggregate_summaries", record.id, 3600)
    again, created = eager.get_or_create("u1", "range", "h1", SELECTOR)
    assert not created
    assert again.status == "skipped"


def test_concurrent_reclaim_has_one_winner(sample_config, db_conn):
    db_path = sample_config["database"]["path"]
    record, _ = IdempotentComputeCache(db_conn, "catchup_packs").get_or_create(
        "u1", "range", "stale-hash", {**SELECTOR, "time_budget_minutes": 30},
    )
    _age(db_conn, "catchup_packs", record.id, 3600)

    def request(_):
        conn = get_connection(db_path)
        try:
            cache = IdempotentComputeCache(conn, "catchup_packs", stale_after=600)
            return cache.get_or_create("u1", "range", "stale-hash")[1]
        finally:
            conn.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(request, range(8)))

    assert results.count(True) == 1
