"""LLM provider registry and task routing."""

from __future__ import annotations

from typing import TYPE_CHECKING

from radar.errors import ConfigError

if TYPE_CHECKING:
    from radar.llm.base import BaseLLMProvider

PROVIDERS: dict[str, type[BaseLLMProvider]] = {}

_provider_instances: dict[tuple[str, str], BaseLLMProvider] = {}


def register_provider(name: str):
    """Decorator to register an LLM provider."""

    def decorator(cls):
        PROVIDERS[name] = cls
        return cls

    return decorator


def _instance(provider_cfg: dict) -> BaseLLMProvider:
    # One instance per (provider, model); instances are never mutated after creation
    cache_key = (provider_cfg["provider_name"], provider_cfg["model"])
    if cache_key not in _provider_instances:
        provider_type = provider_cfg["provider_type"]
        if provider_type not in PROVIDERS:
            raise ConfigError(f"Unknown LLM provider type: {provider_type}")
        _provider_instances[cache_key] = PROVIDERS[provider_type](
            api_key=provider_cfg["api_key"],
            base_url=provider_cfg["base_url"],
            default_model=provider_cfg["model"],
            max_retries=provider_cfg["max_retries"],
            timeout=provider_cfg["timeout"],
            json_mode=provider_cfg["json_mode"],
        )
    return _provider_instances[cache_key]


def get_provider(config: dict, provider_name: str, model: str | None = None) -> BaseLLMProvider:
    """Get a configured provider by its name under ``llm.providers``."""
    from radar.config import get_llm_provider_config

    provider_cfg = get_llm_provider_config(config, provider_name, model)
    return _instance(provider_cfg)


def get_provider_for_task(config: dict, task: str) -> BaseLLMProvider:
    """Get the configured LLM provider instance for a given task."""
    from radar.config import get_llm_task_config

    task_cfg = get_llm_task_config(config, task)
    return _instance(task_cfg)


# Import implementations to trigger registration
from radar.llm.anthropic_provider import AnthropicProvider  # noqa: E402, F401
from radar.llm.openai_compat import OpenAICompatibleProvider  # noqa: E402, F401
