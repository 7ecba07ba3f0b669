"""Job orchestrator: wires ingestion, budgets, triage and compute per job."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict
from functools import partial
from typing import Callable

from radar.budget import CreditBudgetGovernor
from radar.config import (
    get_budget,
    get_credit_rates,
    get_ingest_settings,
    get_pipeline_settings,
    get_throttle_settings,
)
from radar.db import (
    abtest_result_exists,
    ensure_abtest_run,
    finish_abtest_run,
    finish_run,
    insert_abtest_result,
    insert_run,
    list_content_items,
)
from radar.ingest import get_connector
from radar.ingest.base import BaseConnector
from radar.ingest.coordinator import IngestionCoordinator
from radar.jobs import parse_job
from radar.ledger import ProviderCallLedger
from radar.llm import get_provider, get_provider_for_task
from radar.llm.base import BaseLLMProvider
from radar.llm.costs import estimate_call_credits
from radar.llm.json_output import extract_json
from radar.llm.metered import metered_complete
from radar.llm.prompts import SYSTEM_ANALYST
from radar.models import (
    PipelineRun,
    RunAbtestJob,
    RunAggregateSummaryJob,
    RunCatchupPackJob,
    RunWindowJob,
    format_ts,
    utcnow,
)
from radar.synthesize.aggregate import run_aggregate_summary
from radar.synthesize.catchup import run_catchup_pack
from radar.synthesize.triage import build_triage_prompt, parse_triage, triage_window
from radar.throttle import AccountThrottlePolicy

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Handles one job at a time. All state lives in the database."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: dict,
        *,
        connector_for: Callable[[str], BaseConnector] = get_connector,
        provider_for_task: Callable[[str], BaseLLMProvider] | None = None,
        provider_by_name: Callable[[str], BaseLLMProvider] | None = None,
        on_warning: Callable[[dict], None] | None = None,
    ):
        self.conn = conn
        self.config = config
        self.settings = get_pipeline_settings(config)
        self.provider_for_task = provider_for_task or partial(get_provider_for_task, config)
        self.provider_by_name = provider_by_name or partial(get_provider, config)

        self.ledger = ProviderCallLedger(conn)
        self.governor = CreditBudgetGovernor(
            conn, self.ledger, partial(get_budget, config), on_warning=on_warning,
        )
        self.throttle = AccountThrottlePolicy(conn, get_throttle_settings(config))
        self.coordinator = IngestionCoordinator(
            conn,
            self.governor,
            self.throttle,
            get_ingest_settings(config),
            connector_for=connector_for,
        )

    async def handle(self, data: dict) -> dict:
        """Parse a job payload and run it. Re-delivery of the same job is safe."""
        job = parse_job(data)
        logger.info("Handling %s for %s", data.get("kind"), job.user_id)
        if isinstance(job, RunWindowJob):
            return await self.run_window(job)
        if isinstance(job, RunAbtestJob):
            return await self.run_abtest(job)
        if isinstance(job, RunAggregateSummaryJob):
            return await self.run_aggregate_summary(job)
        return await self.run_catchup_pack(job)

    def _rates(self, provider: BaseLLMProvider) -> tuple[float, float]:
        return get_credit_rates(self.config, provider.provider_name)

    # --- run_window ---

    async def run_window(self, job: RunWindowJob) -> dict:
        run = PipelineRun(kind="run_window", user_id=job.user_id, topic_id=job.topic_id)
        run.id = insert_run(self.conn, run)
        logger.info(
            "Run #%d: window %s..%s for %s/%s (%s)",
            run.id, format_ts(job.window_start), format_ts(job.window_end),
            job.user_id, job.topic_id, job.trigger,
        )

        try:
            status = self.governor.compute_status(job.user_id)
            tier = job.mode or "normal"
            if status.monthly_remaining <= 0 or status.daily_remaining == 0:
                tier = "low"
            run.tier = tier
            if status.warning_level != "none":
                logger.warning(
                    "Credits %s for %s: %.1f/%.1f monthly used",
                    status.warning_level, job.user_id, status.monthly_used, status.monthly_limit,
                )

            cycle_id = f"{job.user_id}:{job.topic_id}:{format_ts(job.window_end)}"
            ingest = await self.coordinator.ingest_enabled_sources(
                job.user_id,
                job.topic_id,
                job.window_start,
                job.window_end,
                cycle_id=cycle_id,
                paid_calls_allowed=status.paid_calls_allowed,
            )
            totals = ingest.totals
            run.items_fetched = totals["fetched"]
            run.items_ingested = totals["ingested"]

            provider = self.provider_for_task("triage")
            triage = await triage_window(
                self.conn,
                self.governor,
                provider,
                user_id=job.user_id,
                topic=job.topic_id,
                since=job.window_start,
                until=job.window_end,
                tier=tier,
                max_items=self.settings["triage_max_items"],
                timeout=self.settings["llm_timeout_seconds"],
                credit_rates=self._rates(provider),
            )
            run.items_triaged = triage["triaged"]
            run.items_budget_skipped = triage["budget_skipped"]
            run.status = "completed"
        except Exception:
            logger.exception("Run #%d failed", run.id)
            run.status = "failed"
            raise
        finally:
            run.finished_at = utcnow()
            finish_run(self.conn, run.id, run)

        return {
            "run_id": run.id,
            "status": run.status,
            "tier": tier,
            "ingest": totals,
            "sources": [asdict(r) for r in ingest.per_source],
            "triage": triage,
        }

    # --- run_abtest ---

    async def run_abtest(self, job: RunAbtestJob) -> dict:
        """Run every variant over the same sampled items; stored results are not redone."""
        ensure_abtest_run(self.conn, job.run_id, job.user_id, job.topic_id)
        items = list_content_items(
            self.conn, job.user_id, topic=job.topic_id,
            since=job.window_start, until=job.window_end, limit=job.max_items,
        )
        stats = {"items": len(items), "completed": 0, "errors": 0, "existing": 0, "budget_skipped": 0}
        denied = False

        for variant in job.variants:
            provider = self.provider_by_name(variant.provider)
            rates = self._rates(provider)
            max_tokens = variant.max_output_tokens or 400
            for item in items:
                if abtest_result_exists(self.conn, job.run_id, variant.name, item.id):
                    stats["existing"] += 1
                    continue
                if denied:
                    stats["budget_skipped"] += 1
                    continue

                prompt = build_triage_prompt(item, job.topic_id, "normal")
                estimate = estimate_call_credits(prompt, SYSTEM_ANALYST, max_tokens, rates)
                result = {"run_id": job.run_id, "variant": variant.name, "content_item_id": item.id,
                          "provider": provider.provider_name, "model": variant.model}

                async with self.governor.spend(job.user_id, "abtest", estimate) as auth:
                    if not auth.allowed:
                        logger.info("A/B run %s stopped by budget: %s", job.run_id, auth.reason)
                        denied = True
                        stats["budget_skipped"] += 1
                        continue
                    try:
                        response, draft = await metered_complete(
                            provider,
                            self.governor,
                            user_id=job.user_id,
                            purpose="abtest",
                            prompt=prompt,
                            system=SYSTEM_ANALYST,
                            model=variant.model,
                            max_tokens=max_tokens,
                            timeout=self.settings["llm_timeout_seconds"],
                            credit_rates=rates,
                            meta={"abtest_run_id": job.run_id, "variant": variant.name,
                                  "content_item_id": item.id},
                        )
                    except Exception as exc:
                        result.update(status="error", error_message=f"{type(exc).__name__}: {exc}")
                        insert_abtest_result(self.conn, result)
                        stats["errors"] += 1
                        continue

                data = extract_json(response.text)
                result.update(
                    status="ok" if data is not None else "error",
                    output=parse_triage(data) if data is not None else None,
                    error_message=None if data is not None else "model returned invalid JSON",
                    model=draft.model,
                    input_tokens=draft.input_tokens,
                    output_tokens=draft.output_tokens,
                    cost_estimate_credits=draft.cost_estimate_credits,
                )
                insert_abtest_result(self.conn, result)
                stats["completed" if data is not None else "errors"] += 1

        status = "partial" if denied else "complete"
        finish_abtest_run(self.conn, job.run_id, status)
        logger.info("A/B run %s %s: %s", job.run_id, status, stats)
        return {"run_id": job.run_id, "status": status, **stats}

    # --- compute jobs ---

    async def run_aggregate_summary(self, job: RunAggregateSummaryJob) -> dict:
        provider = self.provider_for_task("aggregate_summary")
        record, created = await run_aggregate_summary(
            self.conn,
            self.governor,
            provider,
            user_id=job.user_id,
            scope=job.scope,
            settings=self.settings,
            credit_rates=self._rates(provider),
        )
        return {"id": record.id, "status": record.status, "created": created,
                "error_message": record.error_message}

    async def run_catchup_pack(self, job: RunCatchupPackJob) -> dict:
        provider = self.provider_for_task("catchup_pack")
        record, created = await run_catchup_pack(
            self.conn,
            self.governor,
            provider,
            user_id=job.user_id,
            scope=job.scope,
            settings=self.settings,
            credit_rates=self._rates(provider),
        )
        return {"id": record.id, "status": record.status, "created": created,
                "error_message": record.error_message}
