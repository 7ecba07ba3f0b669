"""LLM calls that always leave a ledger row behind."""

from __future__ import annotations

import logging
from typing import Any

from radar.budget import CreditBudgetGovernor
from radar.llm.base import BaseLLMProvider, LLMResponse
from radar.llm.costs import estimate_credits
from radar.models import ProviderCallDraft, utcnow
from radar.retry import with_timeout

logger = logging.getLogger(__name__)


async def metered_complete(
    provider: BaseLLMProvider,
    governor: CreditBudgetGovernor,
    *,
    user_id: str,
    purpose: str,
    prompt: str,
    system: str = "",
    model: str | None = None,
    max_tokens: int = 2000,
    temperature: float = 0.3,
    timeout: float | None = 120,
    credit_rates: tuple[float, float] = (0.0, 0.0),
    meta: dict[str, Any] | None = None,
) -> tuple[LLMResponse, ProviderCallDraft]:
    """Run one completion under a timeout and record it as ok or error.

    Failures (including CallTimeout) are recorded, then re-raised.
    """
    model = model or provider.active_model or provider.default_model
    started_at = utcnow()
    try:
        response = await with_timeout(
            provider.complete(
                prompt, system=system, model=model,
                temperature=temperature, max_tokens=max_tokens,
            ),
            timeout,
            f"{purpose} via {provider.provider_name}",
        )
    except Exception as exc:
        draft = ProviderCallDraft(
            user_id=user_id,
            purpose=purpose,
            provider=provider.provider_name,
            model=model,
            meta=dict(meta or {}),
            started_at=started_at,
            ended_at=utcnow(),
            status="error",
            error={"type": type(exc).__name__, "message": str(exc)[:500]},
        )
        governor.record_usage(draft)
        logger.warning("%s call for %s failed: %s", purpose, user_id, exc)
        raise

    draft = ProviderCallDraft(
        user_id=user_id,
        purpose=purpose,
        provider=provider.provider_name,
        model=response.model or model,
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
        cost_estimate_credits=estimate_credits(
            response.input_tokens, response.output_tokens, credit_rates,
        ),
        cost_estimate_usd=response.cost_usd,
        meta=dict(meta or {}),
        started_at=started_at,
        ended_at=utcnow(),
        status="ok",
    )
    governor.record_usage(draft)
    return response, draft
