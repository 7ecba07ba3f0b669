"""Job payload parsing. Jobs arrive as JSON objects tagged by ``kind``."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Union

from radar.errors import ConfigError
from radar.models import (
    BUDGET_TIERS,
    AbtestVariant,
    AggregateSummaryScope,
    CatchupPackScope,
    RunAbtestJob,
    RunAggregateSummaryJob,
    RunCatchupPackJob,
    RunWindowJob,
    parse_ts,
)

Job = Union[RunWindowJob, RunAbtestJob, RunAggregateSummaryJob, RunCatchupPackJob]

JOB_KINDS = ("run_window", "run_abtest", "run_aggregate_summary", "run_catchup_pack")
AGGREGATE_SCOPE_TYPES = ("digest", "inbox", "range", "custom")
CATCHUP_TIME_BUDGETS = (30, 45, 60, 90)


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _get(data: dict, key: str, default: Any = None) -> Any:
    if key in data:
        return data[key]
    return data.get(_camel(key), default)


def _require(data: dict, key: str, kind: str) -> Any:
    value = _get(data, key)
    if value is None or value == "":
        raise ConfigError(f"{kind} job is missing '{key}'")
    return value


def _timestamp(data: dict, key: str, kind: str) -> datetime:
    try:
        return parse_ts(_require(data, key, kind))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{kind} job has an invalid '{key}'") from exc


def _iso(value: Any) -> str | None:
    """Scope timestamps are kept verbatim; they feed the scope hash."""
    if value is None or value == "":
        return None
    return str(value)


def parse_job(data: dict) -> Job:
    if not isinstance(data, dict):
        raise ConfigError("Job payload must be a JSON object")
    kind = data.get("kind")
    if kind == "run_window":
        return _parse_run_window(data)
    if kind == "run_abtest":
        return _parse_run_abtest(data)
    if kind == "run_aggregate_summary":
        return _parse_aggregate(data)
    if kind == "run_catchup_pack":
        return _parse_catchup(data)
    raise ConfigError(f"Unknown job kind: {kind!r} (expected one of {', '.join(JOB_KINDS)})")


def _parse_run_window(data: dict) -> RunWindowJob:
    kind = "run_window"
    mode = _get(data, "mode")
    if mode is not None and mode not in BUDGET_TIERS:
        raise ConfigError(f"run_window job has an invalid mode: {mode!r}")
    start = _timestamp(data, "window_start", kind)
    end = _timestamp(data, "window_end", kind)
    if end <= start:
        raise ConfigError("run_window job window_end must be after window_start")
    return RunWindowJob(
        user_id=str(_require(data, "user_id", kind)),
        topic_id=str(_require(data, "topic_id", kind)),
        window_start=start,
        window_end=end,
        mode=mode,
        trigger=str(_get(data, "trigger", "manual")),
    )


def _parse_run_abtest(data: dict) -> RunAbtestJob:
    kind = "run_abtest"
    variants = []
    for entry in _require(data, "variants", kind):
        if not isinstance(entry, dict):
            raise ConfigError("run_abtest variants must be objects")
        max_tokens = _get(entry, "max_output_tokens")
        variants.append(
            AbtestVariant(
                name=str(_require(entry, "name", kind)),
                provider=str(_require(entry, "provider", kind)),
                model=str(_require(entry, "model", kind)),
                max_output_tokens=int(max_tokens) if max_tokens else None,
            )
        )
    if not variants:
        raise ConfigError("run_abtest job needs at least one variant")
    return RunAbtestJob(
        run_id=str(_require(data, "run_id", kind)),
        user_id=str(_require(data, "user_id", kind)),
        topic_id=str(_require(data, "topic_id", kind)),
        window_start=_timestamp(data, "window_start", kind),
        window_end=_timestamp(data, "window_end", kind),
        variants=variants,
        max_items=max(1, min(200, int(_get(data, "max_items", 20)))),
    )


def _parse_aggregate(data: dict) -> RunAggregateSummaryJob:
    kind = "run_aggregate_summary"
    scope = _require(data, "scope", kind)
    if not isinstance(scope, dict):
        raise ConfigError("run_aggregate_summary scope must be an object")
    scope_type = _get(scope, "type")
    if scope_type not in AGGREGATE_SCOPE_TYPES:
        raise ConfigError(f"Unknown aggregate summary scope type: {scope_type!r}")
    digest_id = _get(scope, "digest_id")
    if scope_type == "digest" and not digest_id:
        raise ConfigError("digest scope requires 'digest_id'")
    return RunAggregateSummaryJob(
        user_id=str(_require(data, "user_id", kind)),
        scope=AggregateSummaryScope(
            type=scope_type,
            digest_id=str(digest_id) if digest_id else None,
            topic_id=_get(scope, "topic_id"),
            since=_iso(_get(scope, "since")),
            until=_iso(_get(scope, "until")),
        ),
    )


def _parse_catchup(data: dict) -> RunCatchupPackJob:
    kind = "run_catchup_pack"
    scope = _require(data, "scope", kind)
    if not isinstance(scope, dict):
        raise ConfigError("run_catchup_pack scope must be an object")
    try:
        minutes = int(_require(scope, "time_budget_minutes", kind))
    except (TypeError, ValueError) as exc:
        raise ConfigError("run_catchup_pack time_budget_minutes must be an integer") from exc
    if minutes not in CATCHUP_TIME_BUDGETS:
        raise ConfigError(f"Unsupported catch-up time budget: {minutes} minutes")
    return RunCatchupPackJob(
        user_id=str(_require(data, "user_id", kind)),
        scope=CatchupPackScope(
            topic_id=str(_require(scope, "topic_id", kind)),
            since=str(_require(scope, "since", kind)),
            until=str(_require(scope, "until", kind)),
            time_budget_minutes=minutes,
        ),
    )
