"""Abstract base class for all connectors, plus config parsing helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from radar.models import ContentItemDraft, FetchParams, FetchResult


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def config_value(config: dict, key: str, default: Any = None) -> Any:
    """Look up a snake_case key, falling back to its camelCase twin."""
    if key in config:
        return config[key]
    return config.get(_camel(key), default)


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    return max(minimum, min(maximum, number))


class BaseConnector(ABC):
    """One external source type.

    ``fetch`` returns raw items plus the cursor to persist once they are
    stored; it must not write anything itself. ``normalize`` turns one raw
    item into a draft and may raise on malformed input.
    """

    @property
    @abstractmethod
    def source_type(self) -> str:
        ...

    @abstractmethod
    async def fetch(self, params: FetchParams) -> FetchResult:
        ...

    @abstractmethod
    async def normalize(self, raw: Any, params: FetchParams) -> ContentItemDraft:
        ...

    def account_handles(self, config: dict) -> list[str]:
        """External accounts this source reads from, for throttling. None by default."""
        return []
