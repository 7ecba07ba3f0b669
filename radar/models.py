"""Core data models for the radar pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

BUDGET_TIERS = ("low", "normal", "high")
TERMINAL_STATUSES = ("complete", "error", "skipped")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime | None) -> str | None:
    """Fixed-width UTC timestamp, so string order matches time order in SQL."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp (``Z`` suffix allowed) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# --- Sources and the connector contract ---


@dataclass
class Source:
    """A configured source: one connector type plus its config and cursor."""

    id: str
    user_id: str
    topic: str
    type: str
    name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    cursor: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    weight: float = 1.0
    cadence_minutes: int | None = None
    last_fetch_at: datetime | None = None


@dataclass
class FetchLimits:
    max_items: int
    max_comments: int | None = None


@dataclass
class FetchParams:
    """Everything a connector needs for one fetch call."""

    user_id: str
    source_id: str
    source_type: str
    config: dict[str, Any]
    cursor: dict[str, Any]
    limits: FetchLimits
    window_start: datetime
    window_end: datetime


@dataclass
class FetchResult:
    raw_items: list[Any]
    next_cursor: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContentItemDraft:
    """A normalized item, ready to be canonicalized and stored."""

    title: str | None
    body_text: str | None
    canonical_url: str | None
    source_type: str
    external_id: str | None = None
    published_at: datetime | None = None
    author: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: Any = None


@dataclass
class ContentItem:
    """A stored content item."""

    user_id: str
    source_id: str
    source_type: str
    identity_key: str
    title: str | None = None
    body_text: str | None = None
    canonical_url: str | None = None
    external_id: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    fetched_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    triage: dict[str, Any] | None = None
    id: int | None = None


# --- Provider calls and budgets ---


@dataclass
class ProviderCallDraft:
    """One metered external call. Append-only once written."""

    user_id: str
    purpose: str  # triage, aggregate_summary, catchup_pack, abtest, signal_search, ...
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_estimate_credits: float = 0.0
    cost_estimate_usd: float | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    status: str = "ok"  # ok, error
    error: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ProviderCallDraft | None:
        """Build a draft from a connector-emitted dict, or None if malformed.

        Accepts both snake_case and camelCase keys.
        """
        if not isinstance(data, dict):
            return None

        def pick(snake: str, camel: str) -> Any:
            return data[snake] if snake in data else data.get(camel)

        user_id = pick("user_id", "userId")
        purpose = data.get("purpose")
        provider = data.get("provider")
        model = data.get("model")
        status = data.get("status")
        meta = data.get("meta", {})
        if not all(isinstance(v, str) for v in (user_id, purpose, provider, model)):
            return None
        if status not in ("ok", "error") or not isinstance(meta, dict):
            return None

        try:
            started_at = parse_ts(pick("started_at", "startedAt"))
            ended_at = parse_ts(pick("ended_at", "endedAt"))
            input_tokens = int(pick("input_tokens", "inputTokens") or 0)
            output_tokens = int(pick("output_tokens", "outputTokens") or 0)
            credits = float(pick("cost_estimate_credits", "costEstimateCredits") or 0.0)
            usd = pick("cost_estimate_usd", "costEstimateUsd")
            usd = float(usd) if usd is not None else None
        except (TypeError, ValueError):
            return None
        if started_at is None:
            return None

        error = data.get("error")
        return cls(
            user_id=user_id,
            purpose=purpose,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_estimate_credits=credits,
            cost_estimate_usd=usd,
            meta=meta,
            started_at=started_at,
            ended_at=ended_at,
            status=status,
            error=error if isinstance(error, dict) else None,
        )


@dataclass
class CreditsBudget:
    monthly_credits: float
    daily_throttle_credits: float | None = None


@dataclass
class CreditsExhaustionPolicy:
    on_low_credits: str = "warn"
    on_exhausted_credits: str = "fallback_low"  # fallback_low, stop
    monthly_warning_pcts: list[float] = field(default_factory=lambda: [80.0, 95.0])
    daily_warning_pcts: list[float] = field(default_factory=lambda: [80.0, 95.0])


@dataclass
class CreditsStatus:
    monthly_used: float
    monthly_limit: float
    monthly_remaining: float
    daily_used: float
    daily_limit: float | None
    daily_remaining: float | None
    paid_calls_allowed: bool
    warning_level: str = "none"  # none, approaching, critical


@dataclass
class Authorization:
    allowed: bool
    effective_tier: str
    reason: str = ""
    status: CreditsStatus | None = None


# --- Account throttling ---


@dataclass
class AccountPolicy:
    """Persisted per-account feedback counters."""

    source_id: str
    handle: str
    mode: str = "auto"  # auto, always, mute
    pos_score: float = 0.0
    neg_score: float = 0.0
    last_feedback_at: datetime | None = None
    last_updated_at: datetime | None = None
    id: int | None = None


@dataclass
class PolicyPreview:
    score: float
    throttle: float


@dataclass
class AccountPolicyView:
    """Derived view of an account policy, decayed to a point in time."""

    handle: str
    mode: str
    pos_score: float
    neg_score: float
    score: float
    sample: float
    throttle: float
    state: str  # normal, reduced, muted
    next_like: PolicyPreview
    next_dislike: PolicyPreview
    last_feedback_at: datetime | None = None


# --- Idempotent compute records ---


@dataclass
class AggregateSummaryScope:
    type: str  # digest, inbox, range, custom
    digest_id: str | None = None
    topic_id: str | None = None
    since: str | None = None
    until: str | None = None


@dataclass
class CatchupPackScope:
    topic_id: str
    since: str
    until: str
    time_budget_minutes: int
    type: str = "range"


@dataclass
class ComputeUsage:
    """Provenance and cost recorded on a completed compute record."""

    provider: str | None = None
    model: str | None = None
    prompt_id: str | None = None
    schema_version: str | None = None
    input_item_count: int | None = None
    input_char_count: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_estimate_credits: float | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class ComputeRecord:
    """An aggregate summary or catch-up pack row."""

    id: int
    user_id: str
    scope_type: str
    scope_hash: str
    status: str
    selector: dict[str, Any] = field(default_factory=dict)
    summary_json: dict[str, Any] | None = None
    prompt_id: str | None = None
    schema_version: str | None = None
    provider: str | None = None
    model: str | None = None
    input_item_count: int | None = None
    input_char_count: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_estimate_credits: float | None = None
    meta_json: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# --- Ingestion results ---


@dataclass
class FetchCycleResult:
    source_id: str
    source_type: str
    status: str = "ok"  # ok, partial, error, skipped
    fetched: int = 0
    normalized: int = 0
    items_ingested: int = 0
    errors: int = 0
    cursor_advanced: bool = False
    provider_calls_recorded: int = 0
    skipped: bool = False
    skip_reason: str | None = None
    error: str | None = None


@dataclass
class IngestRunResult:
    per_source: list[FetchCycleResult] = field(default_factory=list)

    @property
    def totals(self) -> dict[str, int]:
        return {
            "sources": len(self.per_source),
            "skipped": sum(1 for r in self.per_source if r.skipped),
            "fetched": sum(r.fetched for r in self.per_source),
            "ingested": sum(r.items_ingested for r in self.per_source),
            "errors": sum(r.errors for r in self.per_source),
            "provider_calls": sum(r.provider_calls_recorded for r in self.per_source),
        }


# --- Jobs ---


@dataclass
class RunWindowJob:
    user_id: str
    topic_id: str
    window_start: datetime
    window_end: datetime
    mode: str | None = None  # low, normal, high
    trigger: str = "manual"  # scheduled, manual


@dataclass
class AbtestVariant:
    name: str
    provider: str
    model: str
    max_output_tokens: int | None = None


@dataclass
class RunAbtestJob:
    run_id: str
    user_id: str
    topic_id: str
    window_start: datetime
    window_end: datetime
    variants: list[AbtestVariant] = field(default_factory=list)
    max_items: int = 20


@dataclass
class RunAggregateSummaryJob:
    user_id: str
    scope: AggregateSummaryScope


@dataclass
class RunCatchupPackJob:
    user_id: str
    scope: CatchupPackScope


@dataclass
class PipelineRun:
    """Record of a single job execution."""

    kind: str
    user_id: str
    topic_id: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: str = "running"  # running, completed, failed
    tier: str | None = None
    items_fetched: int = 0
    items_ingested: int = 0
    items_triaged: int = 0
    items_budget_skipped: int = 0
    id: int | None = None
