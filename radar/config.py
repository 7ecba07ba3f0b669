"""Load and validate configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

from radar.models import CreditsBudget, CreditsExhaustionPolicy, Source
from radar.throttle import ThrottleSettings


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{([^}]+)\}")
        match = pattern.search(value)
        if match:
            env_key = match.group(1)
            env_val = os.environ.get(env_key, "")
            # If the entire string is a single env var, return the resolved value
            if match.group(0) == value:
                return env_val
            return pattern.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    return _resolve_env_vars(raw or {})


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _number(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def get_db_path(config: dict) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", "data/radar.db")


def get_llm_task_config(config: dict, task: str) -> dict:
    """Get provider name and model for a given LLM task."""
    tasks = config.get("llm", {}).get("tasks", {})
    task_cfg = tasks.get(task, {})
    provider_name = task_cfg.get("provider", "anthropic")
    model_override = task_cfg.get("model")
    return get_llm_provider_config(config, provider_name, model_override)


def get_llm_provider_config(config: dict, provider_name: str, model: str | None = None) -> dict:
    """Resolve a named provider block, optionally overriding its model."""
    providers = config.get("llm", {}).get("providers", {})
    provider_cfg = providers.get(provider_name, {})

    return {
        "provider_name": provider_name,
        "provider_type": provider_cfg.get("type", "openai_compatible"),
        "api_key": provider_cfg.get("api_key", ""),
        "base_url": provider_cfg.get("base_url", ""),
        "model": model or provider_cfg.get("default_model", ""),
        "max_retries": provider_cfg.get("max_retries", 3),
        "timeout": provider_cfg.get("timeout", 120),
        "json_mode": bool(provider_cfg.get("json_mode", False)),
    }


def get_credit_rates(config: dict, provider_name: str) -> tuple[float, float]:
    """Credits per 1K input/output tokens, provider-specific first, then the default."""
    credits_cfg = config.get("llm", {}).get("credits", {})
    provider_cfg = credits_cfg.get("providers", {}).get(provider_name, {})
    input_rate = _number(
        provider_cfg.get("per_1k_input_tokens", credits_cfg.get("per_1k_input_tokens")), 0.0,
    )
    output_rate = _number(
        provider_cfg.get("per_1k_output_tokens", credits_cfg.get("per_1k_output_tokens")), 0.0,
    )
    return max(0.0, input_rate), max(0.0, output_rate)


def get_budget(config: dict, user_id: str) -> tuple[CreditsBudget, CreditsExhaustionPolicy]:
    """Budget and exhaustion policy for a user (per-user overrides win)."""
    budget_cfg = dict(config.get("budget", {}))
    overrides = budget_cfg.pop("users", {}) or {}
    budget_cfg.update(overrides.get(user_id, {}))

    monthly = max(0.0, _number(budget_cfg.get("monthly_credits"), 10_000.0))
    daily_raw = budget_cfg.get("daily_throttle_credits")
    daily = max(0.0, _number(daily_raw, 0.0)) if daily_raw is not None else None

    on_exhausted = budget_cfg.get("on_exhausted_credits", "fallback_low")
    if on_exhausted not in ("fallback_low", "stop"):
        on_exhausted = "fallback_low"

    thresholds = budget_cfg.get("warning_thresholds", {})
    policy = CreditsExhaustionPolicy(
        on_low_credits="warn",
        on_exhausted_credits=on_exhausted,
        monthly_warning_pcts=_pct_list(thresholds.get("monthly_used_pct"), [80.0, 95.0]),
        daily_warning_pcts=_pct_list(thresholds.get("daily_throttle_used_pct"), [80.0, 95.0]),
    )
    return CreditsBudget(monthly_credits=monthly, daily_throttle_credits=daily), policy


def _pct_list(value: Any, default: list[float]) -> list[float]:
    if not isinstance(value, list):
        return list(default)
    pcts = sorted({clamp(_number(v, -1.0), 0.0, 100.0) for v in value if _number(v, -1.0) > 0})
    return pcts or list(default)


def get_throttle_settings(config: dict) -> ThrottleSettings:
    cfg = config.get("throttle", {})
    defaults = ThrottleSettings()
    return ThrottleSettings(
        half_life_days=clamp(_number(cfg.get("half_life_days"), defaults.half_life_days), 1.0, 365.0),
        exploration_floor=clamp(
            _number(cfg.get("exploration_floor"), defaults.exploration_floor), 0.15, 1.0,
        ),
        high_threshold=clamp(_number(cfg.get("high_threshold"), defaults.high_threshold), 0.15, 1.0),
        prior=clamp(_number(cfg.get("prior"), defaults.prior), 0.01, 100.0),
        min_sample=clamp(_number(cfg.get("min_sample"), defaults.min_sample), 0.0, 1000.0),
        like_weight=clamp(_number(cfg.get("like_weight"), defaults.like_weight), 0.0, 10.0),
        save_weight=clamp(_number(cfg.get("save_weight"), defaults.save_weight), 0.0, 10.0),
        dislike_weight=clamp(_number(cfg.get("dislike_weight"), defaults.dislike_weight), 0.0, 10.0),
        skip_weight=clamp(_number(cfg.get("skip_weight"), defaults.skip_weight), 0.0, 10.0),
    )


def get_ingest_settings(config: dict) -> dict:
    """Ingestion knobs, clamped to their supported ranges."""
    cfg = config.get("ingest", {})
    hard_max = int(clamp(_number(cfg.get("hard_max_items"), 200), 1, 1000))
    return {
        "max_items_per_source": int(
            clamp(_number(cfg.get("max_items_per_source"), 50), 1, hard_max),
        ),
        "hard_max_items": hard_max,
        "fetch_timeout_seconds": clamp(_number(cfg.get("fetch_timeout_seconds"), 60), 1, 600),
        "lease_ttl_seconds": clamp(_number(cfg.get("lease_ttl_seconds"), 900), 30, 86_400),
        "paid_connector_types": list(cfg.get("paid_connector_types", ["x_posts", "signal"])),
    }


def get_pipeline_settings(config: dict) -> dict:
    cfg = config.get("pipeline", {})
    return {
        "llm_timeout_seconds": clamp(_number(cfg.get("llm_timeout_seconds"), 120), 1, 900),
        "triage_max_items": int(clamp(_number(cfg.get("triage_max_items"), 100), 0, 2000)),
        "summary_max_items": int(clamp(_number(cfg.get("summary_max_items"), 50), 1, 500)),
        "summary_max_input_chars": int(
            clamp(_number(cfg.get("summary_max_input_chars"), 50_000), 1_000, 500_000),
        ),
        "summary_max_item_body_chars": int(
            clamp(_number(cfg.get("summary_max_item_body_chars"), 500), 50, 10_000),
        ),
        # pending compute rows untouched this long are reclaimed by the next request
        "compute_stale_after_seconds": clamp(
            _number(cfg.get("compute_stale_after_seconds"), 1800), 60, 86_400,
        ),
    }


def get_sources(config: dict) -> list[Source]:
    """Sources declared in config (synced into the database by `sync-sources`)."""
    sources = []
    for cfg in config.get("sources", []) or []:
        if not isinstance(cfg, dict) or not cfg.get("id") or not cfg.get("type"):
            continue
        cadence = cfg.get("cadence_minutes")
        sources.append(
            Source(
                id=str(cfg["id"]),
                user_id=str(cfg.get("user_id", "default")),
                topic=str(cfg.get("topic", "default")),
                type=str(cfg["type"]),
                name=str(cfg.get("name", cfg["id"])),
                config=dict(cfg.get("config", {}) or {}),
                enabled=bool(cfg.get("enabled", True)),
                weight=clamp(_number(cfg.get("weight"), 1.0), 0.1, 5.0),
                cadence_minutes=int(cadence) if cadence else None,
            )
        )
    return sources
