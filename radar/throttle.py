"""Adaptive per-account throttling driven by user feedback.

Each external account (a subreddit, an X handle, a channel) keeps two
exponentially decayed counters: ``pos_score`` from likes/saves and
``neg_score`` from dislikes/skips. Decay is applied lazily, at read time.
The smoothed score maps to a fetch probability (the throttle) with an
exploration floor, so even the least liked account is still fetched now and
then and can recover.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from radar.db import get_account_policy, save_account_policy
from radar.models import AccountPolicy, AccountPolicyView, PolicyPreview, utcnow

logger = logging.getLogger(__name__)

FEEDBACK_ACTIONS = ("like", "save", "dislike", "skip")
POLICY_MODES = ("auto", "always", "mute")


@dataclass(frozen=True)
class ThrottleSettings:
    half_life_days: float = 45.0
    exploration_floor: float = 0.15
    high_threshold: float = 0.7
    prior: float = 1.0  # pseudo-count on each side; unknown accounts score 0.5
    min_sample: float = 5.0  # below this much feedback, always fetch
    like_weight: float = 1.0
    save_weight: float = 1.5
    dislike_weight: float = 1.0
    skip_weight: float = 0.25


def normalize_handle(handle: str) -> str:
    """Lowercase, without a leading ``@`` or ``r/``."""
    text = handle.strip().lstrip("@")
    for prefix in ("/r/", "r/"):
        if text.lower().startswith(prefix):
            text = text[len(prefix):]
            break
    return text.lower()


def apply_decay(
    pos: float,
    neg: float,
    last_updated_at: datetime | None,
    now: datetime,
    half_life_days: float,
) -> tuple[float, float]:
    if last_updated_at is None:
        return pos, neg
    elapsed_days = (now - last_updated_at).total_seconds() / 86_400
    if elapsed_days <= 0:
        return pos, neg
    factor = 0.5 ** (elapsed_days / half_life_days)
    return pos * factor, neg * factor


def feedback_delta(action: str, settings: ThrottleSettings) -> tuple[float, float]:
    if action == "like":
        return settings.like_weight, 0.0
    if action == "save":
        return settings.save_weight, 0.0
    if action == "dislike":
        return 0.0, settings.dislike_weight
    if action == "skip":
        return 0.0, settings.skip_weight
    raise ValueError(f"Unknown feedback action: {action}")


def compute_score(pos: float, neg: float, prior: float = 1.0) -> float:
    score = (pos + prior) / (pos + neg + 2 * prior)
    return max(0.0, min(1.0, score))


def compute_throttle(score: float, sample: float, settings: ThrottleSettings) -> float:
    if sample < settings.min_sample:
        return 1.0
    floor = settings.exploration_floor
    return max(floor, min(1.0, floor + (1.0 - floor) * score))


def apply_mode(mode: str, throttle: float) -> float:
    if mode == "mute":
        return 0.0
    if mode == "always":
        return 1.0
    return throttle


def resolve_state(mode: str, throttle: float, settings: ThrottleSettings) -> str:
    if mode == "mute":
        return "muted"
    if mode == "always" or throttle >= settings.high_threshold:
        return "normal"
    return "reduced"


def _preview(mode: str, pos: float, neg: float, action: str, settings: ThrottleSettings) -> PolicyPreview:
    pos_delta, neg_delta = feedback_delta(action, settings)
    pos, neg = pos + pos_delta, neg + neg_delta
    score = compute_score(pos, neg, settings.prior)
    throttle = apply_mode(mode, compute_throttle(score, pos + neg, settings))
    return PolicyPreview(score=score, throttle=throttle)


def compute_view(policy: AccountPolicy, now: datetime, settings: ThrottleSettings) -> AccountPolicyView:
    """Derived view of a policy, decayed to ``now``. Pure; nothing is persisted."""
    pos, neg = apply_decay(
        policy.pos_score, policy.neg_score, policy.last_updated_at, now, settings.half_life_days,
    )
    score = compute_score(pos, neg, settings.prior)
    sample = pos + neg
    throttle = apply_mode(policy.mode, compute_throttle(score, sample, settings))
    return AccountPolicyView(
        handle=policy.handle,
        mode=policy.mode,
        pos_score=pos,
        neg_score=neg,
        score=score,
        sample=sample,
        throttle=throttle,
        state=resolve_state(policy.mode, throttle, settings),
        next_like=_preview(policy.mode, pos, neg, "like", settings),
        next_dislike=_preview(policy.mode, pos, neg, "dislike", settings),
        last_feedback_at=policy.last_feedback_at,
    )


def deterministic_sample(key: str, threshold: float) -> bool:
    """Stable pseudo-random draw: True when hash(key) falls below ``threshold``."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    value = int(digest[:8], 16) / 0xFFFFFFFF
    return value < threshold


class AccountThrottlePolicy:
    """Feedback-driven fetch inclusion for accounts tracked per source."""

    def __init__(self, conn: sqlite3.Connection, settings: ThrottleSettings | None = None):
        self.conn = conn
        self.settings = settings or ThrottleSettings()

    def _load(self, source_id: str, handle: str) -> AccountPolicy:
        handle = normalize_handle(handle)
        policy = get_account_policy(self.conn, source_id, handle)
        return policy or AccountPolicy(source_id=source_id, handle=handle)

    def get_view(self, source_id: str, handle: str, now: datetime | None = None) -> AccountPolicyView:
        return compute_view(self._load(source_id, handle), now or utcnow(), self.settings)

    def should_include(
        self, source_id: str, handle: str, cycle_id: str, now: datetime | None = None,
    ) -> bool:
        """Whether to fetch this account in this cycle.

        Deterministic per (handle, cycle_id), so retries of one cycle agree.
        """
        view = self.get_view(source_id, handle, now)
        if view.mode == "mute":
            return False
        if view.mode == "always" or view.throttle >= 1.0:
            return True
        return deterministic_sample(f"{view.handle}|{cycle_id}", view.throttle)

    def record_feedback(
        self, source_id: str, handle: str, action: str, at: datetime | None = None,
    ) -> AccountPolicyView:
        """Apply one feedback event. Forced modes keep their state but still learn."""
        at = at or utcnow()
        pos_delta, neg_delta = feedback_delta(action, self.settings)
        policy = self._load(source_id, handle)

        if policy.last_updated_at is None or at >= policy.last_updated_at:
            policy.pos_score, policy.neg_score = apply_decay(
                policy.pos_score, policy.neg_score, policy.last_updated_at, at,
                self.settings.half_life_days,
            )
            policy.last_updated_at = at
        policy.pos_score += pos_delta
        policy.neg_score += neg_delta
        if policy.last_feedback_at is None or at > policy.last_feedback_at:
            policy.last_feedback_at = at

        save_account_policy(self.conn, policy)
        view = compute_view(policy, at, self.settings)
        logger.debug(
            "Feedback %s on %s/%s -> throttle %.2f (%s)",
            action, source_id, policy.handle, view.throttle, view.state,
        )
        return view

    def set_mode(self, source_id: str, handle: str, mode: str) -> AccountPolicyView:
        if mode not in POLICY_MODES:
            raise ValueError(f"Unknown policy mode: {mode}")
        policy = self._load(source_id, handle)
        policy.mode = mode
        save_account_policy(self.conn, policy)
        return compute_view(policy, utcnow(), self.settings)

    def reset(self, source_id: str, handle: str) -> AccountPolicyView:
        """Forget all feedback for an account (mode is kept)."""
        policy = self._load(source_id, handle)
        policy.pos_score = 0.0
        policy.neg_score = 0.0
        policy.last_feedback_at = None
        policy.last_updated_at = None
        save_account_policy(self.conn, policy)
        return compute_view(policy, utcnow(), self.settings)
