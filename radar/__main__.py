"""CLI entrypoint: python -m radar {init-db|sync-sources|run-window|handle-job|ingest|feedback|account|usage|reset-budget|stats}."""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import os
import sys
from datetime import timedelta
from pathlib import Path

from radar.budget import CreditBudgetGovernor, month_start
from radar.config import (
    get_budget,
    get_db_path,
    get_ingest_settings,
    get_sources,
    get_throttle_settings,
    load_config,
)
from radar.db import get_connection, get_recent_runs, init_db, upsert_source
from radar.errors import RadarError
from radar.ingest.coordinator import IngestionCoordinator
from radar.ledger import ProviderCallLedger
from radar.models import utcnow
from radar.throttle import FEEDBACK_ACTIONS, AccountThrottlePolicy


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # File handler (rotate at 5MB, keep 3 backups)
    log_dir = Path(get_db_path(config)).parent
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        str(log_dir / "radar.log"), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("feedparser").setLevel(logging.WARNING)


logger = logging.getLogger("radar")


def _usage(message: str) -> None:
    print(f"Usage: python -m radar {message}")
    sys.exit(1)


def _open(config: dict):
    db_path = get_db_path(config)
    init_db(db_path)
    return get_connection(db_path)


def _governor(conn, config: dict) -> CreditBudgetGovernor:
    return CreditBudgetGovernor(
        conn, ProviderCallLedger(conn), lambda user_id: get_budget(config, user_id),
    )


def cmd_init_db(config: dict, args: list[str]) -> None:
    """Initialize the SQLite database."""
    db_path = get_db_path(config)
    init_db(db_path)
    print(f"Database initialized at {db_path}")


def cmd_sync_sources(config: dict, args: list[str]) -> None:
    """Upsert the sources declared in config (cursors are kept)."""
    conn = _open(config)
    sources = get_sources(config)
    for source in sources:
        upsert_source(conn, source)
        print(f"  {source.id}: {source.type} ({source.user_id}/{source.topic})")
    conn.close()
    print(f"{len(sources)} sources synced")


async def cmd_handle_job(config: dict, args: list[str]) -> None:
    """Run one job payload given as JSON (argument or '-' for stdin)."""
    from radar.pipeline import JobOrchestrator

    if not args:
        _usage("handle-job '<json>' | -")
    raw = sys.stdin.read() if args[0] == "-" else args[0]
    conn = _open(config)
    try:
        result = await JobOrchestrator(conn, config).handle(json.loads(raw))
    finally:
        conn.close()
    print(json.dumps(result, indent=2, default=str))


async def cmd_run_window(config: dict, args: list[str]) -> None:
    """Ingest + triage the last N hours for a user/topic."""
    if len(args) < 2:
        _usage("run-window <user_id> <topic> [hours] [low|normal|high]")
    hours = float(args[2]) if len(args) > 2 else 24.0
    now = utcnow()
    job = {
        "kind": "run_window",
        "user_id": args[0],
        "topic_id": args[1],
        "window_start": (now - timedelta(hours=hours)).isoformat(),
        "window_end": now.isoformat(),
        "trigger": "manual",
    }
    if len(args) > 3:
        job["mode"] = args[3]
    await cmd_handle_job(config, [json.dumps(job)])


async def cmd_ingest(config: dict, args: list[str]) -> None:
    """Fetch sources without triage (for testing connectors)."""
    if len(args) < 2:
        _usage("ingest <user_id> <topic>")
    conn = _open(config)
    try:
        coordinator = IngestionCoordinator(
            conn,
            _governor(conn, config),
            AccountThrottlePolicy(conn, get_throttle_settings(config)),
            get_ingest_settings(config),
        )
        now = utcnow()
        run = await coordinator.ingest_enabled_sources(
            args[0], args[1], now - timedelta(days=1), now, respect_cadence=False,
        )
    finally:
        conn.close()

    for r in run.per_source:
        note = r.skip_reason or r.error or ""
        print(f"  {r.source_id:<20} {r.status:<8} fetched {r.fetched:<4} new {r.items_ingested:<4} {note}")
    print(f"\nTotal: {run.totals['ingested']} new items")


def _print_view(view) -> None:
    print(
        f"{view.handle}: mode={view.mode} state={view.state} throttle={view.throttle:.2f} "
        f"score={view.score:.2f} (+{view.pos_score:.2f}/-{view.neg_score:.2f}) "
        f"next like={view.next_like.throttle:.2f} next dislike={view.next_dislike.throttle:.2f}"
    )


def cmd_feedback(config: dict, args: list[str]) -> None:
    """Record feedback on an account: like, save, dislike, skip."""
    if len(args) < 3 or args[2] not in FEEDBACK_ACTIONS:
        _usage(f"feedback <source_id> <handle> <{'|'.join(FEEDBACK_ACTIONS)}>")
    conn = _open(config)
    policy = AccountThrottlePolicy(conn, get_throttle_settings(config))
    _print_view(policy.record_feedback(args[0], args[1], args[2]))
    conn.close()


def cmd_account(config: dict, args: list[str]) -> None:
    """Show an account's throttle, or set its mode (auto|always|mute) or reset it."""
    if len(args) < 2:
        _usage("account <source_id> <handle> [auto|always|mute|reset]")
    conn = _open(config)
    policy = AccountThrottlePolicy(conn, get_throttle_settings(config))
    if len(args) < 3:
        view = policy.get_view(args[0], args[1])
    elif args[2] == "reset":
        view = policy.reset(args[0], args[1])
    else:
        view = policy.set_mode(args[0], args[1], args[2])
    _print_view(view)
    conn.close()


def cmd_usage(config: dict, args: list[str]) -> None:
    """Show credit usage for a user this month."""
    if not args:
        _usage("usage <user_id>")
    conn = _open(config)
    governor = _governor(conn, config)
    status = governor.compute_status(args[0])
    print(
        f"Monthly: {status.monthly_used:.2f} / {status.monthly_limit:.2f} "
        f"({status.monthly_remaining:.2f} left)"
    )
    if status.daily_limit is not None:
        print(f"Daily:   {status.daily_used:.2f} / {status.daily_limit:.2f}")
    print(f"Paid calls allowed: {status.paid_calls_allowed}  Warning: {status.warning_level}")

    rows = governor.ledger.usage_by_purpose(args[0], month_start(utcnow()))
    if rows:
        print(f"\n{'Purpose':<20} {'Calls':>6} {'Errors':>6} {'Credits':>10}")
        print("-" * 46)
        for r in rows:
            print(f"{r['purpose']:<20} {r['calls']:>6} {r['errors']:>6} {r['credits'] or 0:>10.2f}")
    conn.close()


def cmd_reset_budget(config: dict, args: list[str]) -> None:
    """Zero a user's daily or monthly usage from now on."""
    if len(args) < 2:
        _usage("reset-budget <user_id> <daily|monthly>")
    conn = _open(config)
    result = _governor(conn, config).reset_budget(args[0], args[1])
    conn.close()
    print(f"Reset {result['period']} budget ({result['credits_reset']:.2f} credits) at {result['reset_at']}")


def cmd_stats(config: dict, args: list[str]) -> None:
    """Show recent pipeline run stats."""
    conn = _open(config)
    runs = get_recent_runs(conn, limit=10)
    conn.close()

    if not runs:
        print("No pipeline runs yet.")
        return

    header = (
        f"{'Run':>4} {'Kind':<12} {'Status':<10} {'Tier':<7} "
        f"{'Fetched':>8} {'New':>5} {'Triaged':>8} {'Skipped':>8} {'Started'}"
    )
    print(header)
    print("-" * 90)
    for r in runs:
        print(
            f"{r['id']:>4} {r['kind']:<12} {r['status']:<10} {r['tier'] or '-':<7} "
            f"{r['items_fetched']:>8} {r['items_ingested']:>5} "
            f"{r['items_triaged']:>8} {r['items_budget_skipped']:>8} {r['started_at']}"
        )


COMMANDS = {
    "init-db": cmd_init_db,
    "sync-sources": cmd_sync_sources,
    "run-window": cmd_run_window,
    "handle-job": cmd_handle_job,
    "ingest": cmd_ingest,
    "feedback": cmd_feedback,
    "account": cmd_account,
    "usage": cmd_usage,
    "reset-budget": cmd_reset_budget,
    "stats": cmd_stats,
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m radar {{{available}}}")
        sys.exit(1)

    command = sys.argv[1]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    try:
        if asyncio.iscoroutinefunction(handler):
            asyncio.run(handler(config, sys.argv[2:]))
        else:
            handler(config, sys.argv[2:])
    except (RadarError, ValueError) as exc:
        logger.error("%s failed: %s", command, exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
