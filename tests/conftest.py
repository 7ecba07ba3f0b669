"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from radar.budget import CreditBudgetGovernor
from radar.config import get_budget, load_config
from radar.db import get_connection, init_db, upsert_source
from radar.ingest.base import BaseConnector
from radar.ledger import ProviderCallLedger
from radar.llm.base import BaseLLMProvider, LLMResponse
from radar.models import ContentItemDraft, FetchResult, Source

WINDOW_END = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
WINDOW_START = WINDOW_END - timedelta(days=1)


class FakeConnector(BaseConnector):
    """Connector that replays scripted fetch results (or raises scripted errors)."""

    def __init__(self, results=None, handles=None):
        self.results = list(results or [])
        self.handles = list(handles or [])
        self.calls = []

    @property
    def source_type(self) -> str:
        return "fake"

    def account_handles(self, config: dict) -> list[str]:
        return list(self.handles)

    async def fetch(self, params):
        self.calls.append(params)
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def normalize(self, raw, params):
        if raw.get("bad"):
            raise ValueError("malformed item")
        return ContentItemDraft(
            title=raw.get("title"),
            body_text=raw.get("body"),
            canonical_url=raw.get("url"),
            source_type="fake",
            external_id=raw.get("id"),
            published_at=raw.get("published_at"),
        )


class FakeLLMProvider(BaseLLMProvider):
    """Provider returning canned text; ``error`` makes every call raise."""

    def __init__(self, text="{}", input_tokens=1000, output_tokens=500, error=None):
        super().__init__(api_key="", base_url="", default_model="fake-model")
        self.text = text
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.error = error
        self.calls = []

    @property
    def provider_name(self) -> str:
        return "mock"

    async def complete(self, prompt, system="", model=None, temperature=0.3, max_tokens=2000):
        self.calls.append({"prompt": prompt, "model": model, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        text = self.text(prompt) if callable(self.text) else self.text
        return LLMResponse(
            text=text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=model or self.default_model,
        )


def fetch_result(items, cursor=None, meta=None) -> FetchResult:
    return FetchResult(raw_items=list(items), next_cursor=cursor or {}, meta=meta or {})


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no real API keys)."""
    config_text = """
llm:
  providers:
    mock:
      type: "openai_compatible"
      api_key: "test-key"
      base_url: "http://localhost:9999"
      default_model: "test-model"
  tasks:
    triage: { provider: "mock" }
    aggregate_summary: { provider: "mock" }
    catchup_pack: { provider: "mock" }
  credits:
    per_1k_input_tokens: 1.0
    per_1k_output_tokens: 1.0

budget:
  monthly_credits: 100
  on_exhausted_credits: fallback_low
  users:
    strict:
      on_exhausted_credits: stop

ingest:
  max_items_per_source: 10
  hard_max_items: 50
  fetch_timeout_seconds: 5

pipeline:
  llm_timeout_seconds: 5
  triage_max_items: 20

sources:
  - id: tech-feed
    user_id: u1
    topic: tech
    type: rss
    config:
      feed_url: "https://example.com/feed.xml"

database:
  path: "DB_PATH_PLACEHOLDER"
"""
    db_path = str(tmp_path / "test.db")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(config_text.replace("DB_PATH_PLACEHOLDER", db_path))
    return load_config(str(cfg_path))


@pytest.fixture
def db_conn(sample_config):
    """Initialized test database connection."""
    db_path = sample_config["database"]["path"]
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def ledger(db_conn):
    return ProviderCallLedger(db_conn)


@pytest.fixture
def governor(db_conn, ledger, sample_config):
    return CreditBudgetGovernor(db_conn, ledger, lambda user_id: get_budget(sample_config, user_id))


@pytest.fixture
def make_source(db_conn):
    """Factory that stores a source and returns it."""

    def _make(source_id="src-1", user_id="u1", topic="tech", type="fake", config=None, **kwargs):
        source = Source(
            id=source_id, user_id=user_id, topic=topic, type=type, config=config or {}, **kwargs,
        )
        upsert_source(db_conn, source)
        return source

    return _make
