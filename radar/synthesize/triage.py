"""Per-item triage: one budget-gated LLM call scores each new item."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from radar.budget import CreditBudgetGovernor
from radar.db import list_content_items, set_item_triage
from radar.llm.base import BaseLLMProvider
from radar.llm.costs import estimate_call_credits
from radar.llm.json_output import extract_json
from radar.llm.metered import metered_complete
from radar.llm.prompts import SYSTEM_ANALYST, TIER_HINTS, TRIAGE, TRIAGE_PROMPT_ID
from radar.models import ContentItem

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = {"low": 200, "normal": 400, "high": 600}
CONTENT_CHARS = {"low": 1000, "normal": 2500, "high": 4000}


def build_triage_prompt(item: ContentItem, topic: str, tier: str) -> str:
    body = (item.body_text or "").strip()[: CONTENT_CHARS.get(tier, 2500)]
    return TRIAGE.format(
        topic=topic,
        tier_hint=TIER_HINTS.get(tier, ""),
        title=item.title or "(untitled)",
        source_type=item.source_type,
        published_at=item.published_at.isoformat() if item.published_at else "unknown",
        content=body or "(no body)",
    )


def parse_triage(data: dict) -> dict:
    """Coerce model output into the stored triage shape."""
    try:
        score = int(round(float(data.get("aha_score", 0))))
    except (TypeError, ValueError):
        score = 0
    categories = data.get("categories")
    return {
        "schema_version": TRIAGE_PROMPT_ID,
        "prompt_id": TRIAGE_PROMPT_ID,
        "aha_score": max(0, min(100, score)),
        "reason": str(data.get("reason", ""))[:500],
        "is_relevant": bool(data.get("is_relevant", True)),
        "is_novel": bool(data.get("is_novel", True)),
        "categories": [str(c) for c in categories][:10] if isinstance(categories, list) else [],
        "should_deep_summarize": bool(data.get("should_deep_summarize", False)),
    }


async def triage_window(
    conn: sqlite3.Connection,
    governor: CreditBudgetGovernor,
    provider: BaseLLMProvider,
    *,
    user_id: str,
    topic: str,
    since: datetime,
    until: datetime,
    tier: str = "normal",
    max_items: int = 100,
    timeout: float = 120,
    credit_rates: tuple[float, float] = (0.0, 0.0),
) -> dict[str, int]:
    """Triage untriaged items of a window. Already triaged items are left alone.

    Every call is authorized first; once the budget denies one, the rest of
    the window is counted as budget-skipped.
    """
    items = list_content_items(
        conn, user_id, topic=topic, since=since, until=until, untriaged_only=True, limit=max_items,
    )
    stats = {"candidates": len(items), "triaged": 0, "budget_skipped": 0, "errors": 0}

    for index, item in enumerate(items):
        prompt = build_triage_prompt(item, topic, tier)
        max_tokens = MAX_OUTPUT_TOKENS.get(tier, 400)
        estimate = estimate_call_credits(prompt, SYSTEM_ANALYST, max_tokens, credit_rates)

        async with governor.spend(user_id, "triage", estimate, tier) as auth:
            if not auth.allowed:
                stats["budget_skipped"] = len(items) - index
                logger.info(
                    "Triage stopped for %s/%s: %s (%d items left)",
                    user_id, topic, auth.reason, stats["budget_skipped"],
                )
                break
            effective = auth.effective_tier
            if effective != tier:
                prompt = build_triage_prompt(item, topic, effective)
                max_tokens = MAX_OUTPUT_TOKENS.get(effective, 400)
            try:
                response, _ = await metered_complete(
                    provider,
                    governor,
                    user_id=user_id,
                    purpose="triage",
                    prompt=prompt,
                    system=SYSTEM_ANALYST,
                    max_tokens=max_tokens,
                    timeout=timeout,
                    credit_rates=credit_rates,
                    meta={"content_item_id": item.id, "tier": effective},
                )
            except Exception:
                stats["errors"] += 1
                continue

        data = extract_json(response.text)
        if data is None:
            logger.warning("Unparseable triage output for item %s", item.id)
            stats["errors"] += 1
            continue
        triage = parse_triage(data)
        triage.update({"provider": provider.provider_name, "model": response.model, "tier": effective})
        set_item_triage(conn, item.id, triage)
        stats["triaged"] += 1

    logger.info(
        "Triage %s/%s: %d triaged, %d budget-skipped, %d errors",
        user_id, topic, stats["triaged"], stats["budget_skipped"], stats["errors"],
    )
    return stats
