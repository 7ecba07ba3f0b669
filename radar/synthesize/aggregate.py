"""Aggregate summaries over a scope of stored items, computed at most once."""

from __future__ import annotations

import asyncio
import logging
import sqlite3

from radar.budget import CreditBudgetGovernor
from radar.compute_cache import IdempotentComputeCache, aggregate_summary_hash
from radar.db import list_content_items
from radar.llm.base import BaseLLMProvider
from radar.llm.costs import estimate_call_credits
from radar.llm.json_output import extract_json
from radar.llm.metered import metered_complete
from radar.llm.prompts import AGGREGATE_PROMPT_ID, AGGREGATE_SUMMARY, SYSTEM_ANALYST
from radar.models import AggregateSummaryScope, ComputeRecord, ComputeUsage, ContentItem, parse_ts

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = 2500


def clamp_text(value: str | None, max_chars: int) -> str:
    if not value:
        return ""
    text = value.strip()
    return text[:max_chars]


def build_item_lines(
    items: list[ContentItem], max_items: int, max_input_chars: int, max_body_chars: int,
) -> tuple[list[str], list[ContentItem]]:
    """Render items for a prompt until the item or character cap is hit."""
    lines: list[str] = []
    used: list[ContentItem] = []
    total = 0
    for item in items[:max_items]:
        triage = item.triage or {}
        header = f"[{item.id}] {item.title or '(untitled)'} ({item.source_type}"
        if item.published_at:
            header += f", {item.published_at:%Y-%m-%d %H:%M}"
        if "aha_score" in triage:
            header += f", score {triage['aha_score']}"
        header += ")"
        body = clamp_text(item.body_text, max_body_chars)
        line = f"{header}\n{body}" if body else header
        if used and total + len(line) > max_input_chars:
            break
        lines.append(line)
        used.append(item)
        total += len(line)
    return lines, used


def _window_label(since: str | None, until: str | None) -> str:
    if since and until:
        return f"{since} to {until}"
    if since:
        return f"since {since}"
    if until:
        return f"until {until}"
    return "all time"


def validate_summary(data: dict, item_ids: set[str]) -> dict:
    """Drop references to items that were not in the input."""
    themes = []
    for theme in data.get("themes") or []:
        if not isinstance(theme, dict) or not theme.get("title"):
            continue
        ids = [str(i) for i in theme.get("item_ids") or [] if str(i) in item_ids]
        themes.append({"title": str(theme["title"]), "summary": str(theme.get("summary", "")), "item_ids": ids})
    notable = [
        {"item_id": str(n["item_id"]), "why": str(n.get("why", ""))}
        for n in data.get("notable_items") or []
        if isinstance(n, dict) and str(n.get("item_id")) in item_ids
    ]
    sentiment = data.get("sentiment") if isinstance(data.get("sentiment"), dict) else {}
    return {
        "one_liner": str(data.get("one_liner", "")),
        "overview": str(data.get("overview", "")),
        "sentiment": {
            "label": sentiment.get("label", "neutral"),
            "confidence": sentiment.get("confidence", 0.0),
            "rationale": sentiment.get("rationale", ""),
        },
        "themes": themes,
        "notable_items": notable,
        "open_questions": [str(q) for q in data.get("open_questions") or []],
        "suggested_followups": [str(q) for q in data.get("suggested_followups") or []],
    }


async def run_aggregate_summary(
    conn: sqlite3.Connection,
    governor: CreditBudgetGovernor,
    provider: BaseLLMProvider,
    *,
    user_id: str,
    scope: AggregateSummaryScope,
    settings: dict,
    credit_rates: tuple[float, float] = (0.0, 0.0),
) -> tuple[ComputeRecord, bool]:
    """Compute the summary for a scope unless someone already has.

    Returns (record, created). Only the creator does any work; every other
    caller gets the existing record back untouched.
    """
    cache = IdempotentComputeCache(
        conn, "aggregate_summaries", stale_after=settings.get("compute_stale_after_seconds"),
    )
    record, created = cache.get_or_create(
        user_id,
        scope.type,
        aggregate_summary_hash(scope),
        {"digest_id": scope.digest_id, "topic_id": scope.topic_id,
         "since": scope.since, "until": scope.until},
    )
    if not created:
        logger.info("Aggregate summary %d already %s; not recomputing", record.id, record.status)
        return record, False

    try:
        await _compute(conn, cache, record, governor, provider, user_id, scope, settings, credit_rates)
    except asyncio.CancelledError:
        cache.fail(record.id, "cancelled")
        raise
    except Exception as exc:
        logger.exception("Aggregate summary %d failed", record.id)
        cache.fail(record.id, f"{type(exc).__name__}: {exc}")
    return cache.get(record.id), True


async def _compute(
    conn: sqlite3.Connection,
    cache: IdempotentComputeCache,
    record: ComputeRecord,
    governor: CreditBudgetGovernor,
    provider: BaseLLMProvider,
    user_id: str,
    scope: AggregateSummaryScope,
    settings: dict,
    credit_rates: tuple[float, float],
) -> None:
    items = list_content_items(
        conn, user_id,
        topic=scope.topic_id,
        since=parse_ts(scope.since),
        until=parse_ts(scope.until),
        limit=settings["summary_max_items"],
    )
    lines, used = build_item_lines(
        items,
        settings["summary_max_items"],
        settings["summary_max_input_chars"],
        settings["summary_max_item_body_chars"],
    )
    if not used:
        cache.skip(record.id, "no items in scope")
        return

    prompt = AGGREGATE_SUMMARY.format(
        count=len(used),
        scope_type=scope.type,
        window=_window_label(scope.since, scope.until),
        items="\n\n".join(lines),
    )
    estimate = estimate_call_credits(prompt, SYSTEM_ANALYST, MAX_OUTPUT_TOKENS, credit_rates)

    async with governor.spend(user_id, "aggregate_summary", estimate) as auth:
        if not auth.allowed:
            cache.skip(record.id, f"insufficient credits: {auth.reason}")
            return
        response, draft = await metered_complete(
            provider,
            governor,
            user_id=user_id,
            purpose="aggregate_summary",
            prompt=prompt,
            system=SYSTEM_ANALYST,
            max_tokens=MAX_OUTPUT_TOKENS,
            timeout=settings["llm_timeout_seconds"],
            credit_rates=credit_rates,
            meta={"aggregate_summary_id": record.id, "tier": auth.effective_tier},
        )

    data = extract_json(response.text)
    if data is None:
        cache.fail(record.id, "model returned invalid JSON")
        return

    output = {
        "schema_version": AGGREGATE_PROMPT_ID,
        "prompt_id": AGGREGATE_PROMPT_ID,
        "provider": draft.provider,
        "model": draft.model,
        **validate_summary(data, {str(item.id) for item in used}),
    }
    cache.complete(
        record.id,
        output,
        ComputeUsage(
            provider=draft.provider,
            model=draft.model,
            prompt_id=AGGREGATE_PROMPT_ID,
            schema_version=AGGREGATE_PROMPT_ID,
            input_item_count=len(used),
            input_char_count=sum(len(line) for line in lines),
            input_tokens=draft.input_tokens,
            output_tokens=draft.output_tokens,
            cost_estimate_credits=draft.cost_estimate_credits,
            meta={"tier": auth.effective_tier, "candidates": len(items)},
        ),
    )
