"""Tests for the credit budget governor."""

from __future__ import annotations

import asyncio

import pytest

from radar.budget import CreditBudgetGovernor
from radar.errors import BudgetDenied
from radar.models import CreditsBudget, CreditsExhaustionPolicy, ProviderCallDraft


def _spend(governor, user_id, credits, status="ok"):
    governor.record_usage(
        ProviderCallDraft(
            user_id=user_id,
            purpose="triage",
            provider="mock",
            model="test-model",
            cost_estimate_credits=credits,
            status=status,
        )
    )


def _governor(db_conn, ledger, monthly=100.0, daily=None, on_exhausted="fallback_low", events=None):
    budget = CreditsBudget(monthly_credits=monthly, daily_throttle_credits=daily)
    policy = CreditsExhaustionPolicy(on_exhausted_credits=on_exhausted)
    on_warning = events.append if events is not None else None
    return CreditBudgetGovernor(db_conn, ledger, lambda user_id: (budget, policy), on_warning=on_warning)


def test_under_budget_keeps_requested_tier(governor):
    auth = governor.authorize("u1", "triage", 5)
    assert auth.allowed
    assert auth.effective_tier == "normal"

    assert governor.authorize("u1", "triage", 5, requested_tier="high").effective_tier == "high"


def test_exhausted_fallback_low_allows_at_low_tier(governor):
    _spend(governor, "u1", 95)
    auth = governor.authorize("u1", "triage", 10)
    assert auth.allowed
    assert auth.effective_tier == "low"
    assert "monthly" in auth.reason


def test_exhausted_stop_denies(governor):
    _spend(governor, "strict", 95)
    auth = governor.authorize("strict", "triage", 10)
    assert not auth.allowed
    assert auth.effective_tier == "low"

    with pytest.raises(BudgetDenied):
        governor.require("strict", "triage", 10)


def test_paid_calls_disallowed_only_under_stop(governor):
    _spend(governor, "strict", 100)
    _spend(governor, "u1", 100)
    assert not governor.compute_status("strict").paid_calls_allowed
    assert governor.compute_status("u1").paid_calls_allowed


def test_daily_throttle_degrades_tier(db_conn, ledger):
    governor = _governor(db_conn, ledger, monthly=1000, daily=10)
    _spend(governor, "u1", 8)

    auth = governor.authorize("u1", "triage", 5, requested_tier="high")
    assert auth.allowed
    assert auth.effective_tier == "low"
    assert "daily" in auth.reason


def test_failed_calls_count_only_with_cost(governor):
    _spend(governor, "u1", 0, status="error")
    _spend(governor, "u1", 3, status="error")
    _spend(governor, "u1", 2)
    assert governor.compute_status("u1").monthly_used == pytest.approx(5.0)


def test_warnings_fire_once_per_threshold(db_conn, ledger):
    events = []
    governor = _governor(db_conn, ledger, events=events)

    _spend(governor, "u1", 85)
    assert [e["threshold"] for e in events] == [80.0]
    assert governor.compute_status("u1").warning_level == "approaching"

    governor.authorize("u1", "triage", 1)
    _spend(governor, "u1", 1)
    assert len(events) == 1

    _spend(governor, "u1", 11)
    assert [e["threshold"] for e in events] == [80.0, 95.0]
    assert governor.compute_status("u1").warning_level == "critical"


def test_reset_budget(governor):
    _spend(governor, "u1", 50)
    result = governor.reset_budget("u1", "monthly")
    assert result["credits_reset"] == pytest.approx(50.0)
    assert governor.compute_status("u1").monthly_used == 0.0

    _spend(governor, "u1", 5)
    assert governor.compute_status("u1").monthly_used == pytest.approx(5.0)

    with pytest.raises(ValueError):
        governor.reset_budget("u1", "weekly")


@pytest.mark.asyncio
async def test_spend_serializes_check_and_record(governor):
    """Two concurrent 60-credit calls against a 100-credit stop budget: one runs."""
    allowed = []

    async def call():
        async with governor.spend("strict", "catchup_pack", 60) as auth:
            allowed.append(auth.allowed)
            if auth.allowed:
                await asyncio.sleep(0.01)
                _spend(governor, "strict", 60)

    await asyncio.gather(call(), call())
    assert sorted(allowed) == [False, True]


@pytest.mark.asyncio
async def test_spend_locks_are_dropped_when_idle(governor):
    async def call(user_id):
        async with governor.spend(user_id, "triage", 1) as auth:
            assert governor._lock_users[user_id] >= 1
            await asyncio.sleep(0.01)
            return auth.allowed

    results = await asyncio.gather(call("u1"), call("u1"), call("u2"))
    assert results == [True, True, True]
    assert governor._locks == {}
    assert governor._lock_users == {}
