"""Tests for job orchestration: run_window, A/B tests and cached compute jobs."""

from __future__ import annotations

import asyncio
import json
import re
from datetime import timedelta

import pytest

from radar.compute_cache import IdempotentComputeCache
from radar.db import get_abtest_results, get_recent_runs, insert_content_item, list_content_items
from radar.errors import ConfigError
from radar.models import ContentItem, ProviderCallDraft
from radar.pipeline import JobOrchestrator

from conftest import WINDOW_END, WINDOW_START, FakeConnector, FakeLLMProvider, fetch_result

START = WINDOW_START.isoformat()
END = WINDOW_END.isoformat()

TRIAGE_JSON = json.dumps({"aha_score": 72, "reason": "New benchmark results", "categories": ["ml"]})


def _item_ids(prompt: str) -> list[str]:
    return re.findall(r"^\[(\d+)\]", prompt, re.MULTILINE)


def summary_text(prompt: str) -> str:
    ids = _item_ids(prompt)
    return json.dumps({
        "one_liner": "A busy day for benchmarks",
        "overview": "Several labs published results.",
        "sentiment": {"label": "positive", "confidence": 0.8, "rationale": "Mostly progress"},
        "themes": [{"title": "Benchmarks", "summary": "New numbers", "item_ids": ids + ["99999"]}],
        "notable_items": [{"item_id": ids[0], "why": "Biggest jump"}, {"item_id": "99999", "why": "?"}],
        "open_questions": ["Will it replicate?"],
        "suggested_followups": [],
    })


def pack_text(prompt: str) -> str:
    ids = _item_ids(prompt)
    return json.dumps({
        "tiers": {
            "must_read": [{"item_id": ids[0], "why": "Top story", "theme": "Benchmarks"}],
            "worth_scanning": [{"item_id": i, "why": "Related", "theme": "Benchmarks"} for i in ids[1:]],
            "headlines": [{"item_id": ids[0], "why": "duplicate", "theme": "x"}],
        },
        "themes": [{"title": "Benchmarks", "summary": "New numbers", "item_ids": ids}],
        "notes": None,
    })


def must_read_only_text(prompt: str) -> str:
    return json.dumps({"tiers": {"must_read": [{"item_id": _item_ids(prompt)[0], "why": "Top story"}]}})


def _raw(n: int) -> dict:
    return {
        "title": f"Post {n}",
        "body": f"Body of post {n}",
        "url": f"https://example.com/post/{n}",
        "published_at": WINDOW_END - timedelta(minutes=10 * n),
    }


def _window_job(user_id="u1", **kwargs) -> dict:
    job = {
        "kind": "run_window",
        "user_id": user_id,
        "topic_id": "tech",
        "window_start": START,
        "window_end": END,
    }
    job.update(kwargs)
    return job


def _aggregate_job(user_id="u1") -> dict:
    return {
        "kind": "run_aggregate_summary",
        "user_id": user_id,
        "scope": {"type": "range", "topic_id": "tech", "since": START, "until": END},
    }


def _catchup_job(user_id="u1", minutes=30) -> dict:
    return {
        "kind": "run_catchup_pack",
        "user_id": user_id,
        "scope": {"topic_id": "tech", "since": START, "until": END, "time_budget_minutes": minutes},
    }


def _exhaust(governor, user_id, credits=100.0):
    governor.record_usage(
        ProviderCallDraft(
            user_id=user_id, purpose="triage", provider="mock", model="test-model",
            cost_estimate_credits=credits,
        )
    )


@pytest.fixture
def seed_items(db_conn, make_source):
    """Store ``count`` items for a user directly, returning their ids."""

    def _seed(count=3, user_id="u1"):
        source = make_source(f"src-{user_id}", user_id=user_id)
        ids = []
        for n in range(count):
            ids.append(insert_content_item(db_conn, ContentItem(
                user_id=user_id,
                source_id=source.id,
                source_type="fake",
                identity_key=f"url:{user_id}-{n}",
                title=f"Item {n}",
                body_text=f"Details about item {n}",
                canonical_url=f"https://example.com/{user_id}/{n}",
                published_at=WINDOW_END - timedelta(hours=n + 1),
            )))
        return ids

    return _seed


@pytest.fixture
def orchestrator_for(db_conn, sample_config):
    def _make(provider=None, connector=None, warnings=None):
        provider = provider or FakeLLMProvider(text=TRIAGE_JSON)
        return JobOrchestrator(
            db_conn,
            sample_config,
            connector_for=lambda source_type: connector,
            provider_for_task=lambda task: provider,
            provider_by_name=lambda name: provider,
            on_warning=warnings.append if warnings is not None else None,
        )

    return _make


# --- run_window ---


@pytest.mark.asyncio
async def test_run_window_ingests_and_triages(db_conn, make_source, orchestrator_for):
    make_source()
    provider = FakeLLMProvider(text=TRIAGE_JSON)
    connector = FakeConnector([fetch_result([_raw(1), _raw(2)], {"page": 1})])
    orchestrator = orchestrator_for(provider, connector)

    result = await orchestrator.handle(_window_job())

    assert result["status"] == "completed"
    assert result["tier"] == "normal"
    assert result["ingest"]["ingested"] == 2
    assert result["triage"]["triaged"] == 2
    assert len(provider.calls) == 2

    items = list_content_items(db_conn, "u1", topic="tech")
    assert all(item.triage["aha_score"] == 72 for item in items)
    assert items[0].triage["categories"] == ["ml"]

    run = get_recent_runs(db_conn)[0]
    assert run["status"] == "completed"
    assert run["items_triaged"] == 2

    # 1000 input + 500 output tokens at 1 credit per 1K, per call
    assert orchestrator.governor.compute_status("u1").monthly_used == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_run_window_redelivery_is_idempotent(make_source, orchestrator_for):
    make_source()
    provider = FakeLLMProvider(text=TRIAGE_JSON)
    batch = [_raw(1), _raw(2)]
    connector = FakeConnector([fetch_result(batch, {"page": 1}), fetch_result(batch, {"page": 1})])
    orchestrator = orchestrator_for(provider, connector)

    await orchestrator.handle(_window_job())
    again = await orchestrator.handle(_window_job())

    assert again["ingest"]["ingested"] == 0
    assert again["triage"]["candidates"] == 0
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_run_window_falls_back_to_low_tier(make_source, orchestrator_for):
    make_source()
    provider = FakeLLMProvider(text=TRIAGE_JSON)
    orchestrator = orchestrator_for(provider, FakeConnector([fetch_result([_raw(1)])]))
    _exhaust(orchestrator.governor, "u1")

    result = await orchestrator.handle(_window_job(mode="high"))

    assert result["tier"] == "low"
    assert result["triage"]["triaged"] == 1
    assert provider.calls[0]["max_tokens"] == 200


@pytest.mark.asyncio
async def test_run_window_stop_policy_skips_triage(make_source, orchestrator_for):
    make_source(user_id="strict")
    provider = FakeLLMProvider(text=TRIAGE_JSON)
    orchestrator = orchestrator_for(provider, FakeConnector([fetch_result([_raw(1), _raw(2)])]))
    _exhaust(orchestrator.governor, "strict")

    result = await orchestrator.handle(_window_job(user_id="strict"))

    assert result["status"] == "completed"
    assert result["ingest"]["ingested"] == 2
    assert result["triage"]["budget_skipped"] == 2
    assert result["triage"]["triaged"] == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_run_window_survives_connector_failure(make_source, orchestrator_for):
    make_source()
    orchestrator = orchestrator_for(connector=FakeConnector([RuntimeError("feed down")]))

    result = await orchestrator.handle(_window_job())
    assert result["status"] == "completed"
    assert result["sources"][0]["status"] == "error"


@pytest.mark.asyncio
async def test_run_window_marks_run_failed_on_unexpected_error(db_conn, make_source, sample_config):
    make_source()

    def no_provider(task):
        raise ConfigError(f"no provider for {task}")

    orchestrator = JobOrchestrator(
        db_conn,
        sample_config,
        connector_for=lambda source_type: FakeConnector([fetch_result([])]),
        provider_for_task=no_provider,
    )
    with pytest.raises(ConfigError):
        await orchestrator.handle(_window_job())
    assert get_recent_runs(db_conn)[0]["status"] == "failed"


@pytest.mark.asyncio
async def test_unknown_job_kind(orchestrator_for):
    with pytest.raises(ConfigError):
        await orchestrator_for().handle({"kind": "run_forever", "user_id": "u1"})


# --- aggregate summaries ---


@pytest.mark.asyncio
async def test_aggregate_summary_computed_once(seed_items, orchestrator_for):
    ids = seed_items(3)
    provider = FakeLLMProvider(text=summary_text)
    orchestrator = orchestrator_for(provider)

    first = await orchestrator.handle(_aggregate_job())
    assert first["status"] == "complete"
    assert first["created"] is True

    second = await orchestrator.handle(_aggregate_job())
    assert second == {**first, "created": False}
    assert len(provider.calls) == 1

    record = IdempotentComputeCache(orchestrator.conn, "aggregate_summaries").get(first["id"])
    summary = record.summary_json
    assert summary["one_liner"] == "A busy day for benchmarks"
    assert summary["themes"][0]["item_ids"] == [str(i) for i in ids]
    assert [n["item_id"] for n in summary["notable_items"]] == [str(ids[0])]
    assert record.input_item_count == 3
    assert record.prompt_id == "aggregate_summary_v1"
    assert record.cost_estimate_credits == pytest.approx(1.5)


@pytest.mark.asyncio
async def test_aggregate_summary_concurrent_requests(seed_items, orchestrator_for):
    seed_items(2)
    provider = FakeLLMProvider(text=summary_text)
    orchestrator = orchestrator_for(provider)

    results = await asyncio.gather(*(orchestrator.handle(_aggregate_job()) for _ in range(4)))

    assert sum(1 for r in results if r["created"]) == 1
    assert len({r["id"] for r in results}) == 1
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_aggregate_summary_without_items_is_skipped(orchestrator_for):
    provider = FakeLLMProvider(text=summary_text)
    result = await orchestrator_for(provider).handle(_aggregate_job())
    assert result["status"] == "skipped"
    assert result["error_message"] == "no items in scope"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_aggregate_summary_skipped_when_budget_denies(seed_items, orchestrator_for):
    seed_items(2, user_id="strict")
    provider = FakeLLMProvider(text=summary_text)
    orchestrator = orchestrator_for(provider)
    _exhaust(orchestrator.governor, "strict")

    result = await orchestrator.handle(_aggregate_job(user_id="strict"))
    assert result["status"] == "skipped"
    assert result["error_message"].startswith("insufficient credits")
    assert provider.calls == []

    # Skipped is terminal: a retry does not try again
    again = await orchestrator.handle(_aggregate_job(user_id="strict"))
    assert again["status"] == "skipped"
    assert again["created"] is False


@pytest.mark.asyncio
async def test_aggregate_summary_invalid_json_is_an_error(seed_items, orchestrator_for):
    seed_items(1)
    result = await orchestrator_for(FakeLLMProvider(text="I cannot do that")).handle(_aggregate_job())
    assert result["status"] == "error"
    assert result["error_message"] == "model returned invalid JSON"


@pytest.mark.asyncio
async def test_aggregate_summary_provider_failure_is_an_error(seed_items, orchestrator_for):
    seed_items(1)
    provider = FakeLLMProvider(error=RuntimeError("503 from provider"))
    orchestrator = orchestrator_for(provider)

    result = await orchestrator.handle(_aggregate_job())
    assert result["status"] == "error"
    assert result["error_message"] == "RuntimeError: 503 from provider"
    assert orchestrator.ledger.list_calls("u1")[0]["status"] == "error"


class BlockingProvider(FakeLLMProvider):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def complete(self, prompt, system="", model=None, temperature=0.3, max_tokens=2000):
        self.started.set()
        await asyncio.sleep(3600)


@pytest.mark.asyncio
async def test_cancelled_summary_is_marked_error(seed_items, orchestrator_for):
    seed_items(1)
    provider = BlockingProvider()
    orchestrator = orchestrator_for(provider)

    task = asyncio.create_task(orchestrator.handle(_aggregate_job()))
    await provider.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    result = await orchestrator.handle(_aggregate_job())
    assert result["status"] == "error"
    assert result["error_message"] == "cancelled"
    assert result["created"] is False


# --- catch-up packs ---


@pytest.mark.asyncio
async def test_catchup_pack_builds_tiers(seed_items, orchestrator_for):
    ids = seed_items(4)
    provider = FakeLLMProvider(text=pack_text)
    orchestrator = orchestrator_for(provider)

    result = await orchestrator.handle(_catchup_job())
    assert result["status"] == "complete"

    record = IdempotentComputeCache(orchestrator.conn, "catchup_packs").get(result["id"])
    pack = record.summary_json
    tiers = pack["tiers"]
    selected = [e["item_id"] for tier in tiers.values() for e in tier]
    assert len(selected) == len(set(selected)) == 4
    assert tiers["headlines"] == []
    assert set(selected) == {str(i) for i in ids}
    assert pack["time_budget_minutes"] == 30
    assert record.selector["time_budget_minutes"] == 30

    again = await orchestrator.handle(_catchup_job())
    assert again["created"] is False
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_catchup_pack_per_time_budget(seed_items, orchestrator_for):
    seed_items(2)
    provider = FakeLLMProvider(text=must_read_only_text)
    orchestrator = orchestrator_for(provider)

    short = await orchestrator.handle(_catchup_job(minutes=30))
    long = await orchestrator.handle(_catchup_job(minutes=90))
    assert short["id"] != long["id"]
    assert "up to 20 items worth reading" in provider.calls[1]["prompt"]


@pytest.mark.asyncio
async def test_catchup_pack_leaves_out_recently_shown_items(seed_items, orchestrator_for):
    ids = seed_items(3)
    provider = FakeLLMProvider(text=must_read_only_text)
    orchestrator = orchestrator_for(provider)

    first = await orchestrator.handle(_catchup_job(minutes=30))
    assert first["status"] == "complete"
    shown = _item_ids(provider.calls[0]["prompt"])[0]

    second = await orchestrator.handle(_catchup_job(minutes=45))
    assert second["status"] == "complete"
    offered = _item_ids(provider.calls[1]["prompt"])
    assert shown not in offered
    assert sorted(offered) == sorted(str(i) for i in ids if str(i) != shown)


@pytest.mark.asyncio
async def test_catchup_pack_skipped_when_everything_was_shown(seed_items, orchestrator_for):
    seed_items(2)
    provider = FakeLLMProvider(text=pack_text)
    orchestrator = orchestrator_for(provider)

    first = await orchestrator.handle(_catchup_job(minutes=30))
    assert first["status"] == "complete"

    second = await orchestrator.handle(_catchup_job(minutes=60))
    assert second["status"] == "skipped"
    assert second["error_message"] == "every item in scope was in a recent pack"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_catchup_pack_with_unknown_ids_is_an_error(seed_items, orchestrator_for):
    seed_items(2)
    bogus = json.dumps({"tiers": {"must_read": [{"item_id": "424242"}]}})
    result = await orchestrator_for(FakeLLMProvider(text=bogus)).handle(_catchup_job())
    assert result["status"] == "error"
    assert result["error_message"] == "model selected no known items"


@pytest.mark.asyncio
async def test_catchup_pack_skipped_when_budget_denies(seed_items, orchestrator_for):
    seed_items(2, user_id="strict")
    provider = FakeLLMProvider(text=pack_text)
    orchestrator = orchestrator_for(provider)
    _exhaust(orchestrator.governor, "strict")

    result = await orchestrator.handle(_catchup_job(user_id="strict"))
    assert result["status"] == "skipped"
    assert provider.calls == []


# --- A/B tests ---


def _abtest_job(user_id="u1") -> dict:
    return {
        "kind": "run_abtest",
        "run_id": "ab-1",
        "user_id": user_id,
        "topic_id": "tech",
        "window_start": START,
        "window_end": END,
        "variants": [
            {"name": "small", "provider": "mock", "model": "m-small", "max_output_tokens": 200},
            {"name": "large", "provider": "mock", "model": "m-large"},
        ],
    }


@pytest.mark.asyncio
async def test_abtest_runs_every_variant_once(db_conn, seed_items, orchestrator_for):
    seed_items(2)
    provider = FakeLLMProvider(text=TRIAGE_JSON)
    orchestrator = orchestrator_for(provider)

    result = await orchestrator.handle(_abtest_job())
    assert result["status"] == "complete"
    assert result["completed"] == 4
    assert {c["model"] for c in provider.calls} == {"m-small", "m-large"}

    rows = get_abtest_results(db_conn, "ab-1")
    assert len(rows) == 4
    assert json.loads(rows[0]["output_json"])["aha_score"] == 72

    again = await orchestrator.handle(_abtest_job())
    assert again["existing"] == 4
    assert len(provider.calls) == 4


@pytest.mark.asyncio
async def test_abtest_stops_on_budget(seed_items, orchestrator_for):
    seed_items(2, user_id="strict")
    provider = FakeLLMProvider(text=TRIAGE_JSON)
    orchestrator = orchestrator_for(provider)
    _exhaust(orchestrator.governor, "strict")

    result = await orchestrator.handle(_abtest_job(user_id="strict"))
    assert result["status"] == "partial"
    assert result["budget_skipped"] == 4
    assert provider.calls == []
