"""SQLite database schema, migrations, and query helpers."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from radar.errors import PersistenceConflict
from radar.models import (
    AccountPolicy,
    ContentItem,
    PipelineRun,
    Source,
    format_ts,
    parse_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    type TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    config_json TEXT NOT NULL DEFAULT '{}',
    cursor_json TEXT NOT NULL DEFAULT '{}',
    enabled INTEGER NOT NULL DEFAULT 1,
    weight REAL NOT NULL DEFAULT 1.0,
    cadence_minutes INTEGER,
    last_fetch_at TEXT
);

CREATE TABLE IF NOT EXISTS source_leases (
    source_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fetch_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    cursor_in TEXT NOT NULL DEFAULT '{}',
    cursor_out TEXT,
    counts_json TEXT NOT NULL DEFAULT '{}',
    error TEXT
);

CREATE TABLE IF NOT EXISTS content_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    source_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    identity_key TEXT NOT NULL,
    canonical_url TEXT,
    external_id TEXT,
    title TEXT,
    body_text TEXT,
    author TEXT,
    published_at TEXT,
    fetched_at TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    triage_json TEXT,
    deleted_at TEXT,
    UNIQUE (source_id, identity_key)
);

CREATE TABLE IF NOT EXISTS provider_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    call_id TEXT UNIQUE,
    user_id TEXT NOT NULL,
    purpose TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cost_estimate_credits REAL NOT NULL DEFAULT 0.0,
    cost_estimate_usd REAL,
    meta_json TEXT NOT NULL DEFAULT '{}',
    started_at TEXT NOT NULL,
    ended_at TEXT,
    status TEXT NOT NULL,
    error_json TEXT
);

CREATE TABLE IF NOT EXISTS budget_resets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    period TEXT NOT NULL,
    credits_at_reset REAL NOT NULL,
    reset_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS budget_warnings (
    user_id TEXT NOT NULL,
    period TEXT NOT NULL,
    period_key TEXT NOT NULL,
    threshold REAL NOT NULL,
    used_pct REAL NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, period, period_key, threshold)
);

CREATE TABLE IF NOT EXISTS account_policies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,
    handle TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'auto',
    pos_score REAL NOT NULL DEFAULT 0.0,
    neg_score REAL NOT NULL DEFAULT 0.0,
    last_feedback_at TEXT,
    last_updated_at TEXT,
    UNIQUE (source_id, handle)
);

CREATE TABLE IF NOT EXISTS aggregate_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    scope_type TEXT NOT NULL,
    scope_hash TEXT NOT NULL,
    digest_id TEXT,
    topic_id TEXT,
    since TEXT,
    until TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    summary_json TEXT,
    prompt_id TEXT,
    schema_version TEXT,
    provider TEXT,
    model TEXT,
    input_item_count INTEGER,
    input_char_count INTEGER,
    input_tokens INTEGER,
    output_tokens INTEGER,
    cost_estimate_credits REAL,
    meta_json TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, scope_hash)
);

CREATE TABLE IF NOT EXISTS catchup_packs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    scope_type TEXT NOT NULL,
    scope_hash TEXT NOT NULL,
    topic_id TEXT,
    since TEXT,
    until TEXT,
    time_budget_minutes INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    summary_json TEXT,
    prompt_id TEXT,
    schema_version TEXT,
    provider TEXT,
    model TEXT,
    input_item_count INTEGER,
    input_char_count INTEGER,
    input_tokens INTEGER,
    output_tokens INTEGER,
    cost_estimate_credits REAL,
    meta_json TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, scope_hash)
);

CREATE TABLE IF NOT EXISTS abtest_runs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    topic_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    created_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS abtest_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    variant TEXT NOT NULL,
    content_item_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    output_json TEXT,
    provider TEXT,
    model TEXT,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cost_estimate_credits REAL NOT NULL DEFAULT 0.0,
    error_message TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (run_id, variant, content_item_id)
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    user_id TEXT NOT NULL,
    topic_id TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    tier TEXT,
    items_fetched INTEGER NOT NULL DEFAULT 0,
    items_ingested INTEGER NOT NULL DEFAULT 0,
    items_triaged INTEGER NOT NULL DEFAULT 0,
    items_budget_skipped INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sources_user_topic ON sources(user_id, topic);
CREATE INDEX IF NOT EXISTS idx_content_items_user_published ON content_items(user_id, published_at);
CREATE INDEX IF NOT EXISTS idx_provider_calls_user_started ON provider_calls(user_id, started_at);
CREATE INDEX IF NOT EXISTS idx_fetch_runs_source ON fetch_runs(source_id);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """Create all tables and set schema version."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
    finally:
        conn.close()


def dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def loads(value: str | None, default: Any = None) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


# --- Source helpers ---


def upsert_source(conn: sqlite3.Connection, source: Source) -> None:
    """Insert or update a source definition. Never touches cursor or fetch state."""
    conn.execute(
        """INSERT INTO sources
           (id, user_id, topic, type, name, config_json, enabled, weight, cadence_minutes)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (id) DO UPDATE SET
             user_id = excluded.user_id,
             topic = excluded.topic,
             type = excluded.type,
             name = excluded.name,
             config_json = excluded.config_json,
             enabled = excluded.enabled,
             weight = excluded.weight,
             cadence_minutes = excluded.cadence_minutes""",
        (
            source.id,
            source.user_id,
            source.topic,
            source.type,
            source.name,
            json.dumps(source.config),
            int(source.enabled),
            source.weight,
            source.cadence_minutes,
        ),
    )
    conn.commit()


def get_source(conn: sqlite3.Connection, source_id: str) -> Source | None:
    row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
    return _row_to_source(row) if row else None


def list_enabled_sources(conn: sqlite3.Connection, user_id: str, topic: str) -> list[Source]:
    rows = conn.execute(
        "SELECT * FROM sources WHERE user_id = ? AND topic = ? AND enabled = 1 ORDER BY id",
        (user_id, topic),
    ).fetchall()
    return [_row_to_source(row) for row in rows]


def get_cursor(conn: sqlite3.Connection, source_id: str) -> dict:
    """Load a source's cursor document (empty when absent)."""
    row = conn.execute("SELECT cursor_json FROM sources WHERE id = ?", (source_id,)).fetchone()
    if not row:
        return {}
    cursor = loads(row["cursor_json"], {})
    return cursor if isinstance(cursor, dict) else {}


def update_cursor(
    conn: sqlite3.Connection, source_id: str, cursor: dict, fetched_at: datetime,
) -> None:
    conn.execute(
        "UPDATE sources SET cursor_json = ?, last_fetch_at = ? WHERE id = ?",
        (json.dumps(cursor, default=str), format_ts(fetched_at), source_id),
    )
    conn.commit()


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        user_id=row["user_id"],
        topic=row["topic"],
        type=row["type"],
        name=row["name"],
        config=loads(row["config_json"], {}),
        cursor=loads(row["cursor_json"], {}),
        enabled=bool(row["enabled"]),
        weight=row["weight"],
        cadence_minutes=row["cadence_minutes"],
        last_fetch_at=parse_ts(row["last_fetch_at"]),
    )


# --- Source lease helpers (single writer per source) ---


def acquire_source_lease(
    conn: sqlite3.Connection, source_id: str, owner: str, ttl_seconds: float,
    now: datetime | None = None,
) -> bool:
    """Take the fetch lease for a source. Expired leases can be taken over.

    The lease is not re-entrant: a holder asking again with the same owner is refused.
    """
    now = now or utcnow()
    expires = format_ts(now + timedelta(seconds=ttl_seconds))
    cur = conn.execute(
        """INSERT INTO source_leases (source_id, owner, expires_at) VALUES (?, ?, ?)
           ON CONFLICT (source_id) DO UPDATE SET
             owner = excluded.owner,
             expires_at = excluded.expires_at
           WHERE source_leases.expires_at <= ?""",
        (source_id, owner, expires, format_ts(now)),
    )
    conn.commit()
    return cur.rowcount == 1


def release_source_lease(conn: sqlite3.Connection, source_id: str, owner: str) -> None:
    conn.execute(
        "DELETE FROM source_leases WHERE source_id = ? AND owner = ?", (source_id, owner),
    )
    conn.commit()


# --- Fetch run helpers ---


def start_fetch_run(conn: sqlite3.Connection, source_id: str, cursor_in: dict) -> int:
    cur = conn.execute(
        "INSERT INTO fetch_runs (source_id, started_at, cursor_in) VALUES (?, ?, ?)",
        (source_id, format_ts(utcnow()), json.dumps(cursor_in, default=str)),
    )
    conn.commit()
    return cur.lastrowid


def finish_fetch_run(
    conn: sqlite3.Connection,
    fetch_run_id: int,
    status: str,
    cursor_out: dict | None,
    counts: dict,
    error: str | None = None,
) -> None:
    conn.execute(
        """UPDATE fetch_runs SET
           finished_at = ?, status = ?, cursor_out = ?, counts_json = ?, error = ?
           WHERE id = ?""",
        (
            format_ts(utcnow()),
            status,
            dumps(cursor_out),
            json.dumps(counts),
            error,
            fetch_run_id,
        ),
    )
    conn.commit()


def get_fetch_runs(conn: sqlite3.Connection, source_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM fetch_runs WHERE source_id = ? ORDER BY id", (source_id,),
    ).fetchall()
    return [dict(row) for row in rows]


# --- Content item helpers ---


def insert_content_item(conn: sqlite3.Connection, item: ContentItem) -> int:
    """Insert a content item, returning its ID.

    Raises PersistenceConflict when (source_id, identity_key) already exists.
    """
    try:
        cur = conn.execute(
            """INSERT INTO content_items
               (user_id, source_id, source_type, identity_key, canonical_url, external_id,
                title, body_text, author, published_at, fetched_at, metadata_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item.user_id,
                item.source_id,
                item.source_type,
                item.identity_key,
                item.canonical_url,
                item.external_id,
                item.title,
                item.body_text,
                item.author,
                format_ts(item.published_at),
                format_ts(item.fetched_at),
                json.dumps(item.metadata, default=str),
            ),
        )
        conn.commit()
        return cur.lastrowid
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise PersistenceConflict(
            f"Content item already stored: {item.source_id}/{item.identity_key}",
        ) from exc


def list_content_items(
    conn: sqlite3.Connection,
    user_id: str,
    topic: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    untriaged_only: bool = False,
    limit: int = 500,
) -> list[ContentItem]:
    """Live content items for a user, newest first.

    Items are placed in the window by published_at, falling back to fetched_at.
    """
    clauses = ["ci.user_id = ?", "ci.deleted_at IS NULL"]
    args: list[Any] = [user_id]
    if topic is not None:
        clauses.append("s.topic = ?")
        args.append(topic)
    if since is not None:
        clauses.append("COALESCE(ci.published_at, ci.fetched_at) >= ?")
        args.append(format_ts(since))
    if until is not None:
        clauses.append("COALESCE(ci.published_at, ci.fetched_at) < ?")
        args.append(format_ts(until))
    if untriaged_only:
        clauses.append("ci.triage_json IS NULL")
    args.append(limit)

    rows = conn.execute(
        f"""SELECT ci.* FROM content_items ci
            JOIN sources s ON s.id = ci.source_id
            WHERE {' AND '.join(clauses)}
            ORDER BY COALESCE(ci.published_at, ci.fetched_at) DESC, ci.id DESC
            LIMIT ?""",
        args,
    ).fetchall()
    return [_row_to_content_item(row) for row in rows]


def count_content_items(conn: sqlite3.Connection, source_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM content_items WHERE source_id = ?", (source_id,),
    ).fetchone()
    return row["n"]


def set_item_triage(conn: sqlite3.Connection, item_id: int, triage: dict) -> None:
    conn.execute(
        "UPDATE content_items SET triage_json = ? WHERE id = ?",
        (json.dumps(triage), item_id),
    )
    conn.commit()


def soft_delete_content_item(conn: sqlite3.Connection, item_id: int) -> None:
    conn.execute(
        "UPDATE content_items SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
        (format_ts(utcnow()), item_id),
    )
    conn.commit()


def _row_to_content_item(row: sqlite3.Row) -> ContentItem:
    return ContentItem(
        id=row["id"],
        user_id=row["user_id"],
        source_id=row["source_id"],
        source_type=row["source_type"],
        identity_key=row["identity_key"],
        canonical_url=row["canonical_url"],
        external_id=row["external_id"],
        title=row["title"],
        body_text=row["body_text"],
        author=row["author"],
        published_at=parse_ts(row["published_at"]),
        fetched_at=parse_ts(row["fetched_at"]),
        metadata=loads(row["metadata_json"], {}),
        triage=loads(row["triage_json"]),
    )


# --- Account policy helpers ---


def get_account_policy(conn: sqlite3.Connection, source_id: str, handle: str) -> AccountPolicy | None:
    row = conn.execute(
        "SELECT * FROM account_policies WHERE source_id = ? AND handle = ?",
        (source_id, handle),
    ).fetchone()
    if not row:
        return None
    return AccountPolicy(
        id=row["id"],
        source_id=row["source_id"],
        handle=row["handle"],
        mode=row["mode"],
        pos_score=row["pos_score"],
        neg_score=row["neg_score"],
        last_feedback_at=parse_ts(row["last_feedback_at"]),
        last_updated_at=parse_ts(row["last_updated_at"]),
    )


def save_account_policy(conn: sqlite3.Connection, policy: AccountPolicy) -> None:
    conn.execute(
        """INSERT INTO account_policies
           (source_id, handle, mode, pos_score, neg_score, last_feedback_at, last_updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (source_id, handle) DO UPDATE SET
             mode = excluded.mode,
             pos_score = excluded.pos_score,
             neg_score = excluded.neg_score,
             last_feedback_at = excluded.last_feedback_at,
             last_updated_at = excluded.last_updated_at""",
        (
            policy.source_id,
            policy.handle,
            policy.mode,
            policy.pos_score,
            policy.neg_score,
            format_ts(policy.last_feedback_at),
            format_ts(policy.last_updated_at),
        ),
    )
    conn.commit()


# --- Catch-up pack helpers ---


def recent_catchup_item_ids(
    conn: sqlite3.Connection, user_id: str, topic_id: str, within_days: int = 14,
    now: datetime | None = None,
) -> set[str]:
    """Item ids placed in any tier of this user's completed packs for a topic."""
    since = (now or utcnow()) - timedelta(days=within_days)
    rows = conn.execute(
        """SELECT summary_json FROM catchup_packs
           WHERE user_id = ? AND topic_id = ? AND status = 'complete' AND created_at > ?""",
        (user_id, topic_id, format_ts(since)),
    ).fetchall()
    shown: set[str] = set()
    for row in rows:
        tiers = (loads(row["summary_json"], {}) or {}).get("tiers") or {}
        for entries in tiers.values():
            for entry in entries or []:
                if isinstance(entry, dict) and entry.get("item_id") is not None:
                    shown.add(str(entry["item_id"]))
    return shown


# --- A/B test helpers ---


def ensure_abtest_run(conn: sqlite3.Connection, run_id: str, user_id: str, topic_id: str) -> None:
    conn.execute(
        """INSERT OR IGNORE INTO abtest_runs (id, user_id, topic_id, created_at)
           VALUES (?, ?, ?, ?)""",
        (run_id, user_id, topic_id, format_ts(utcnow())),
    )
    conn.commit()


def finish_abtest_run(conn: sqlite3.Connection, run_id: str, status: str) -> None:
    conn.execute(
        "UPDATE abtest_runs SET status = ?, finished_at = ? WHERE id = ?",
        (status, format_ts(utcnow()), run_id),
    )
    conn.commit()


def abtest_result_exists(
    conn: sqlite3.Connection, run_id: str, variant: str, content_item_id: int,
) -> bool:
    row = conn.execute(
        """SELECT 1 FROM abtest_results
           WHERE run_id = ? AND variant = ? AND content_item_id = ?""",
        (run_id, variant, content_item_id),
    ).fetchone()
    return row is not None


def insert_abtest_result(conn: sqlite3.Connection, result: dict) -> None:
    """Store one variant/item result. Re-delivered jobs hit the unique key and are ignored."""
    conn.execute(
        """INSERT OR IGNORE INTO abtest_results
           (run_id, variant, content_item_id, status, output_json, provider, model,
            input_tokens, output_tokens, cost_estimate_credits, error_message, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            result["run_id"],
            result["variant"],
            result["content_item_id"],
            result["status"],
            dumps(result.get("output")),
            result.get("provider"),
            result.get("model"),
            result.get("input_tokens", 0),
            result.get("output_tokens", 0),
            result.get("cost_estimate_credits", 0.0),
            result.get("error_message"),
            format_ts(utcnow()),
        ),
    )
    conn.commit()


def get_abtest_results(conn: sqlite3.Connection, run_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM abtest_results WHERE run_id = ? ORDER BY id", (run_id,),
    ).fetchall()
    return [dict(row) for row in rows]


# --- PipelineRun helpers ---


def insert_run(conn: sqlite3.Connection, run: PipelineRun) -> int:
    cur = conn.execute(
        "INSERT INTO pipeline_runs (kind, user_id, topic_id, started_at, status) VALUES (?, ?, ?, ?, ?)",
        (run.kind, run.user_id, run.topic_id, format_ts(run.started_at), run.status),
    )
    conn.commit()
    return cur.lastrowid


def finish_run(conn: sqlite3.Connection, run_id: int, run: PipelineRun) -> None:
    conn.execute(
        """UPDATE pipeline_runs SET
           finished_at = ?, status = ?, tier = ?, items_fetched = ?,
           items_ingested = ?, items_triaged = ?, items_budget_skipped = ?
           WHERE id = ?""",
        (
            format_ts(run.finished_at),
            run.status,
            run.tier,
            run.items_fetched,
            run.items_ingested,
            run.items_triaged,
            run.items_budget_skipped,
            run_id,
        ),
    )
    conn.commit()


def get_recent_runs(conn: sqlite3.Connection, limit: int = 10) -> list[dict]:
    """Fetch recent pipeline runs for stats display."""
    rows = conn.execute(
        "SELECT * FROM pipeline_runs ORDER BY started_at DESC LIMIT ?", (limit,)
    ).fetchall()
    return [dict(row) for row in rows]
