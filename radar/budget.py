"""Credit budget governor: gates metered calls and picks the budget tier.

Usage is recomputed from the provider call ledger on every check, so a
crashed worker leaves nothing to recover. ``authorize`` and ``record_usage``
for one user are serialized within a process (see ``spend``). Across
processes two workers can both pass a check that only one of them should
have, so the monthly cap may be overshot by roughly one call per worker.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

from radar.errors import BudgetDenied
from radar.ledger import ProviderCallLedger
from radar.models import (
    BUDGET_TIERS,
    Authorization,
    CreditsBudget,
    CreditsExhaustionPolicy,
    CreditsStatus,
    ProviderCallDraft,
    format_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

BudgetResolver = Callable[[str], "tuple[CreditsBudget, CreditsExhaustionPolicy]"]


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _pct(used: float, limit: float | None) -> float:
    if not limit or limit <= 0:
        return 0.0
    return used / limit * 100.0


class CreditBudgetGovernor:
    """Arbiter of monthly/daily credit consumption for every user."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        ledger: ProviderCallLedger,
        budget_for: BudgetResolver,
        on_warning: Callable[[dict], None] | None = None,
    ):
        self.conn = conn
        self.ledger = ledger
        self.budget_for = budget_for
        self.on_warning = on_warning
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # --- usage ---

    def _reset_offset(self, user_id: str, period: str, since: datetime) -> float:
        row = self.conn.execute(
            """SELECT COALESCE(SUM(credits_at_reset), 0) AS total FROM budget_resets
               WHERE user_id = ? AND period = ? AND reset_at >= ?""",
            (user_id, period, format_ts(since)),
        ).fetchone()
        return float(row["total"] or 0.0)

    def compute_status(self, user_id: str, now: datetime | None = None) -> CreditsStatus:
        """Usage against limits for the UTC month and day containing ``now``."""
        now = now or utcnow()
        budget, policy = self.budget_for(user_id)

        m_start, d_start = month_start(now), day_start(now)
        monthly_used = max(
            0.0,
            self.ledger.sum_credits(user_id, m_start) - self._reset_offset(user_id, "monthly", m_start),
        )
        daily_used = max(
            0.0,
            self.ledger.sum_credits(user_id, d_start) - self._reset_offset(user_id, "daily", d_start),
        )

        monthly_limit = budget.monthly_credits
        monthly_remaining = max(0.0, monthly_limit - monthly_used)
        daily_limit = budget.daily_throttle_credits
        daily_remaining = max(0.0, daily_limit - daily_used) if daily_limit is not None else None

        paid_calls_allowed = monthly_remaining > 0 or policy.on_exhausted_credits != "stop"

        worst = max(_pct(monthly_used, monthly_limit), _pct(daily_used, daily_limit))
        thresholds = sorted(policy.monthly_warning_pcts + policy.daily_warning_pcts)
        warning_level = "none"
        if thresholds and worst >= thresholds[-1]:
            warning_level = "critical"
        elif thresholds and worst >= thresholds[0]:
            warning_level = "approaching"

        return CreditsStatus(
            monthly_used=monthly_used,
            monthly_limit=monthly_limit,
            monthly_remaining=monthly_remaining,
            daily_used=daily_used,
            daily_limit=daily_limit,
            daily_remaining=daily_remaining,
            paid_calls_allowed=paid_calls_allowed,
            warning_level=warning_level,
        )

    # --- gating ---

    def authorize(
        self,
        user_id: str,
        purpose: str,
        estimated_credits: float,
        requested_tier: str | None = None,
        now: datetime | None = None,
    ) -> Authorization:
        """Decide whether a planned call may run and at which tier.

        The daily throttle only ever degrades the tier. Monthly exhaustion
        degrades to ``low`` under ``fallback_low`` and denies under ``stop``.
        """
        now = now or utcnow()
        _, policy = self.budget_for(user_id)
        status = self.compute_status(user_id, now)
        self._check_warnings(user_id, status, policy, now)

        estimate = max(0.0, float(estimated_credits))
        tier = requested_tier if requested_tier in BUDGET_TIERS else "normal"
        reasons = []

        if status.daily_limit is not None and status.daily_used + estimate > status.daily_limit:
            tier = "low"
            reasons.append("daily throttle reached")

        if status.monthly_used + estimate > status.monthly_limit:
            tier = "low"
            if policy.on_exhausted_credits == "stop":
                logger.info(
                    "Denied %s for %s: monthly credits exhausted (%.2f/%.2f)",
                    purpose, user_id, status.monthly_used, status.monthly_limit,
                )
                return Authorization(
                    allowed=False,
                    effective_tier="low",
                    reason="monthly credits exhausted",
                    status=status,
                )
            reasons.append("monthly credits exhausted, falling back to low tier")

        return Authorization(
            allowed=True, effective_tier=tier, reason="; ".join(reasons), status=status,
        )

    def require(
        self,
        user_id: str,
        purpose: str,
        estimated_credits: float,
        requested_tier: str | None = None,
    ) -> Authorization:
        """Like authorize, but raises BudgetDenied instead of returning a denial."""
        auth = self.authorize(user_id, purpose, estimated_credits, requested_tier)
        if not auth.allowed:
            raise BudgetDenied(user_id, purpose, auth.reason)
        return auth

    @asynccontextmanager
    async def spend(
        self,
        user_id: str,
        purpose: str,
        estimated_credits: float,
        requested_tier: str | None = None,
    ) -> AsyncIterator[Authorization]:
        """Hold the user's budget lock across authorize, the call, and record_usage."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield self.authorize(user_id, purpose, estimated_credits, requested_tier)
        finally:
            # drop the lock once nobody holds or awaits it
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def record_usage(self, draft: ProviderCallDraft, call_id: str | None = None) -> int:
        call_row_id = self.ledger.record(draft, call_id=call_id)
        _, policy = self.budget_for(draft.user_id)
        self._check_warnings(draft.user_id, self.compute_status(draft.user_id), policy, utcnow())
        return call_row_id

    # --- warnings ---

    def _check_warnings(
        self,
        user_id: str,
        status: CreditsStatus,
        policy: CreditsExhaustionPolicy,
        now: datetime,
    ) -> list[dict]:
        """Emit each crossed threshold once per billing period."""
        checks = [
            ("monthly", now.strftime("%Y-%m"), _pct(status.monthly_used, status.monthly_limit),
             policy.monthly_warning_pcts),
        ]
        if status.daily_limit is not None:
            checks.append(
                ("daily", now.strftime("%Y-%m-%d"), _pct(status.daily_used, status.daily_limit),
                 policy.daily_warning_pcts),
            )

        emitted = []
        for period, period_key, used_pct, thresholds in checks:
            for threshold in thresholds:
                if used_pct < threshold:
                    continue
                cur = self.conn.execute(
                    """INSERT OR IGNORE INTO budget_warnings
                       (user_id, period, period_key, threshold, used_pct, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (user_id, period, period_key, threshold, used_pct, format_ts(now)),
                )
                self.conn.commit()
                if cur.rowcount != 1:
                    continue
                event = {
                    "user_id": user_id,
                    "period": period,
                    "period_key": period_key,
                    "threshold": threshold,
                    "used_pct": round(used_pct, 2),
                }
                logger.warning(
                    "Credits %s usage for %s crossed %.0f%% (%.1f%% used)",
                    period, user_id, threshold, used_pct,
                )
                if self.on_warning:
                    self.on_warning(event)
                emitted.append(event)
        return emitted

    # --- resets ---

    def reset_budget(self, user_id: str, period: str, now: datetime | None = None) -> dict:
        """Zero the current period's usage by recording it as an offset."""
        if period not in ("daily", "monthly"):
            raise ValueError(f"Unknown budget period: {period}")
        now = now or utcnow()
        status = self.compute_status(user_id, now)
        credits = status.monthly_used if period == "monthly" else status.daily_used
        self.conn.execute(
            "INSERT INTO budget_resets (user_id, period, credits_at_reset, reset_at) VALUES (?, ?, ?, ?)",
            (user_id, period, credits, format_ts(now)),
        )
        self.conn.commit()
        logger.info("Budget reset recorded for %s (%s, %.2f credits)", user_id, period, credits)
        return {"period": period, "credits_reset": credits, "reset_at": format_ts(now)}
