"""Catch-up packs: a tiered reading plan that fits a time budget."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3
from datetime import datetime

from radar.budget import CreditBudgetGovernor
from radar.compute_cache import IdempotentComputeCache, catchup_pack_hash
from radar.db import list_content_items, recent_catchup_item_ids
from radar.llm.base import BaseLLMProvider
from radar.llm.costs import estimate_call_credits
from radar.llm.json_output import extract_json
from radar.llm.metered import metered_complete
from radar.llm.prompts import CATCHUP_PACK, CATCHUP_PROMPT_ID, SYSTEM_ANALYST
from radar.models import CatchupPackScope, ComputeRecord, ComputeUsage, ContentItem, parse_ts
from radar.synthesize.aggregate import build_item_lines

logger = logging.getLogger(__name__)

TIERS = ("must_read", "worth_scanning", "headlines")
NOVELTY_DAYS = 14
MAX_OUTPUT_TOKENS = 4000
BODY_CHARS = 240

# time budget (minutes) -> candidate pool, per-tier targets, prompt chunk size
PACK_TARGETS = {
    30: {"pool": 200, "tiers": {"must_read": 10, "worth_scanning": 15, "headlines": 20}, "chunk": 50},
    45: {"pool": 300, "tiers": {"must_read": 12, "worth_scanning": 20, "headlines": 30}, "chunk": 50},
    60: {"pool": 420, "tiers": {"must_read": 15, "worth_scanning": 25, "headlines": 40}, "chunk": 55},
    90: {"pool": 600, "tiers": {"must_read": 20, "worth_scanning": 35, "headlines": 60}, "chunk": 60},
}


def pack_targets(time_budget_minutes: int) -> dict:
    return PACK_TARGETS.get(time_budget_minutes, PACK_TARGETS[45])


def rank_candidates(
    items: list[ContentItem], scope_hash: str, since: datetime | None, until: datetime | None,
) -> list[ContentItem]:
    """Order by triage score and recency; ties broken by a scope-stable hash."""

    def recency(item: ContentItem) -> float:
        at = item.published_at or item.fetched_at
        if since is None or until is None or until <= since or at is None:
            return 0.0
        span = (until - since).total_seconds()
        return max(0.0, min(1.0, 1 - (until - at).total_seconds() / span))

    def key(item: ContentItem) -> tuple[float, str]:
        aha = (item.triage or {}).get("aha_score", 0) or 0
        score = 0.7 * max(0.0, min(1.0, float(aha) / 100)) + 0.3 * recency(item)
        tie = hashlib.sha256(f"{scope_hash}:{item.id}".encode()).hexdigest()
        return (-score, tie)

    return sorted(items, key=key)


def validate_pack(data: dict, item_ids: set[str], tier_targets: dict[str, int]) -> dict:
    """Keep known ids, each in at most one tier, within each tier's target."""
    tiers_in = data.get("tiers") if isinstance(data.get("tiers"), dict) else {}
    seen: set[str] = set()
    tiers: dict[str, list[dict]] = {}
    for tier in TIERS:
        kept = []
        for entry in tiers_in.get(tier) or []:
            if not isinstance(entry, dict):
                continue
            item_id = str(entry.get("item_id"))
            if item_id not in item_ids or item_id in seen:
                continue
            seen.add(item_id)
            kept.append({
                "item_id": item_id,
                "why": str(entry.get("why", "")),
                "theme": str(entry.get("theme", "")),
            })
            if len(kept) >= tier_targets[tier]:
                break
        tiers[tier] = kept

    themes = []
    for theme in data.get("themes") or []:
        if isinstance(theme, dict) and theme.get("title"):
            themes.append({
                "title": str(theme["title"]),
                "summary": str(theme.get("summary", "")),
                "item_ids": [str(i) for i in theme.get("item_ids") or [] if str(i) in seen],
            })
    notes = data.get("notes")
    return {"tiers": tiers, "themes": themes, "notes": str(notes) if notes else None}


async def run_catchup_pack(
    conn: sqlite3.Connection,
    governor: CreditBudgetGovernor,
    provider: BaseLLMProvider,
    *,
    user_id: str,
    scope: CatchupPackScope,
    settings: dict,
    credit_rates: tuple[float, float] = (0.0, 0.0),
) -> tuple[ComputeRecord, bool]:
    """Build the pack for a scope unless it already exists. Returns (record, created)."""
    cache = IdempotentComputeCache(
        conn, "catchup_packs", stale_after=settings.get("compute_stale_after_seconds"),
    )
    scope_hash = catchup_pack_hash(scope)
    record, created = cache.get_or_create(
        user_id,
        scope.type,
        scope_hash,
        {"topic_id": scope.topic_id, "since": scope.since, "until": scope.until,
         "time_budget_minutes": scope.time_budget_minutes},
    )
    if not created:
        logger.info("Catch-up pack %d already %s; not recomputing", record.id, record.status)
        return record, False

    try:
        await _compute(cache, conn, record, governor, provider, user_id, scope, scope_hash,
                       settings, credit_rates)
    except asyncio.CancelledError:
        cache.fail(record.id, "cancelled")
        raise
    except Exception as exc:
        logger.exception("Catch-up pack %d failed", record.id)
        cache.fail(record.id, f"{type(exc).__name__}: {exc}")
    return cache.get(record.id), True


async def _compute(
    cache: IdempotentComputeCache,
    conn: sqlite3.Connection,
    record: ComputeRecord,
    governor: CreditBudgetGovernor,
    provider: BaseLLMProvider,
    user_id: str,
    scope: CatchupPackScope,
    scope_hash: str,
    settings: dict,
    credit_rates: tuple[float, float],
) -> None:
    targets = pack_targets(scope.time_budget_minutes)
    since, until = parse_ts(scope.since), parse_ts(scope.until)
    pool = list_content_items(conn, user_id, topic=scope.topic_id, since=since, until=until,
                              limit=targets["pool"])
    if not pool:
        cache.skip(record.id, "no items in scope")
        return
    shown = recent_catchup_item_ids(conn, user_id, scope.topic_id, NOVELTY_DAYS)
    fresh = [item for item in pool if str(item.id) not in shown]
    if not fresh:
        cache.skip(record.id, "every item in scope was in a recent pack")
        return
    if len(fresh) < len(pool):
        logger.debug(
            "Catch-up pack %d: %d items already shown recently", record.id, len(pool) - len(fresh),
        )

    ranked = rank_candidates(fresh, scope_hash, since, until)
    prompt_cap = sum(targets["tiers"].values()) + targets["chunk"]
    lines, used = build_item_lines(ranked, prompt_cap, settings["summary_max_input_chars"], BODY_CHARS)

    prompt = CATCHUP_PACK.format(
        minutes=scope.time_budget_minutes,
        topic=scope.topic_id,
        window=f"{scope.since} to {scope.until}",
        items="\n\n".join(lines),
        **targets["tiers"],
    )
    estimate = estimate_call_credits(prompt, SYSTEM_ANALYST, MAX_OUTPUT_TOKENS, credit_rates)

    async with governor.spend(user_id, "catchup_pack", estimate) as auth:
        if not auth.allowed:
            cache.skip(record.id, f"insufficient credits: {auth.reason}")
            return
        response, draft = await metered_complete(
            provider,
            governor,
            user_id=user_id,
            purpose="catchup_pack",
            prompt=prompt,
            system=SYSTEM_ANALYST,
            max_tokens=MAX_OUTPUT_TOKENS,
            timeout=settings["llm_timeout_seconds"],
            credit_rates=credit_rates,
            meta={"catchup_pack_id": record.id, "tier": auth.effective_tier},
        )

    data = extract_json(response.text)
    if data is None:
        cache.fail(record.id, "model returned invalid JSON")
        return
    pack = validate_pack(data, {str(item.id) for item in used}, targets["tiers"])
    if not any(pack["tiers"].values()):
        cache.fail(record.id, "model selected no known items")
        return

    output = {
        "schema_version": CATCHUP_PROMPT_ID,
        "prompt_id": CATCHUP_PROMPT_ID,
        "provider": draft.provider,
        "model": draft.model,
        "time_budget_minutes": scope.time_budget_minutes,
        **pack,
    }
    cache.complete(
        record.id,
        output,
        ComputeUsage(
            provider=draft.provider,
            model=draft.model,
            prompt_id=CATCHUP_PROMPT_ID,
            schema_version=CATCHUP_PROMPT_ID,
            input_item_count=len(used),
            input_char_count=sum(len(line) for line in lines),
            input_tokens=draft.input_tokens,
            output_tokens=draft.output_tokens,
            cost_estimate_credits=draft.cost_estimate_credits,
            meta={"tier": auth.effective_tier, "pool_size": len(pool)},
        ),
    )
