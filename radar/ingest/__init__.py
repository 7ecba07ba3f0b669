"""Connector registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from radar.errors import ConfigError

if TYPE_CHECKING:
    from radar.ingest.base import BaseConnector

CONNECTORS: dict[str, type[BaseConnector]] = {}


def register_connector(name: str):
    """Decorator to register a connector class under a source type."""

    def decorator(cls):
        CONNECTORS[name] = cls
        return cls

    return decorator


def get_connector(source_type: str) -> BaseConnector:
    cls = CONNECTORS.get(source_type)
    if cls is None:
        raise ConfigError(f"No connector registered for source type '{source_type}'")
    return cls()


# Import implementations to trigger registration
from radar.ingest.reddit import RedditConnector  # noqa: E402, F401
from radar.ingest.rss import RSSConnector  # noqa: E402, F401
