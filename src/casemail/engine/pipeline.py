"""Pipeline orchestrator: retrieve, route, triage.

One pass:
1. Check the health reports left by the health collaborator; skip the
   pass if the mail source is reported unhealthy.
2. Read the watermark and fetch new messages (the only step with a retry
   policy).
3. Route the batch into the raw, matched and category stores.
4. Scan the matched store for pending records (and apply the decisions
   when triage.auto_apply is set).
5. Advance the watermark. This happens after the writes, so a pass that
   dies midway re-processes the same window next time.
6. Persist the run summary.

Any error ends the pass with status "error" and a persisted summary;
the watermark is not touched.

Usage:
    from casemail.engine.pipeline import PipelineOrchestrator

    orchestrator = PipelineOrchestrator(retriever, stores, config)
    summary = await orchestrator.run()
"""

from __future__ import annotations

import asyncio
import json
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from casemail.core.errors import MailSourceError, StorageError
from casemail.core.logging import get_logger, pipeline_run
from casemail.engine.router import MessageRouter
from casemail.engine.triage import TriageEngine
from casemail.mail.client import HealthReport
from casemail.mail.models import format_timestamp, parse_message_date

if TYPE_CHECKING:
    from casemail.config_schema import AppConfig
    from casemail.db.store import StoreRegistry
    from casemail.mail.retriever import FetchResult, Retriever

logger = get_logger(__name__)

RunStatus = Literal["complete", "skipped", "error"]


@dataclass
class RunSummary:
    """Audit record of one pass, persisted under the summary key."""

    run_id: str
    timestamp: str
    status: RunStatus = "complete"
    reason: str | None = None
    error: str | None = None
    duration_ms: int = 0
    fetched: int = 0
    new_emails: int = 0
    spam_trash_excluded: int = 0
    older_than_cutoff: int = 0
    duplicates: int = 0
    raw_stored: int = 0
    filtered_stored: int = 0
    route_stats: dict[str, int] = field(default_factory=dict)
    triage_total: int = 0
    triage_no_action: int = 0
    triage_applied: int = 0
    watermark: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "runId": self.run_id,
            "timestamp": self.timestamp,
            "status": self.status,
            "durationMs": self.duration_ms,
            "watermark": self.watermark,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.error is not None:
            data["error"] = self.error
        if self.status != "skipped":
            data["step1"] = {
                "fetched": self.fetched,
                "newEmails": self.new_emails,
                "spamTrashExcluded": self.spam_trash_excluded,
                "olderThanCutoff": self.older_than_cutoff,
                "duplicates": self.duplicates,
            }
            data["step2"] = {
                "rawStored": self.raw_stored,
                "filteredStored": self.filtered_stored,
                "routeStats": dict(self.route_stats),
            }
            data["step3"] = {
                "total": self.triage_total,
                "noAction": self.triage_no_action,
                "applied": self.triage_applied,
            }
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class PipelineOrchestrator:
    """Runs retrieval, routing and triage as one resumable pass.

    Attributes:
        _retriever: Retriever for the mail source
        _stores: Store handles resolved at startup
        _config: Application configuration
    """

    def __init__(self, retriever: Retriever, stores: StoreRegistry, config: AppConfig):
        self._retriever = retriever
        self._stores = stores
        self._config = config
        self._router = MessageRouter(stores)
        self._triage = TriageEngine(stores, config.triage)

    def update_config(self, config: AppConfig) -> None:
        """Swap in a reloaded config (rules and triage table).

        Raises:
            ValueError: If the new rules route to a category with no store.
                Stores are resolved once at startup, so new categories need
                a restart.
        """
        unregistered = [
            name for name in config.category_names() if name not in self._stores.categories
        ]
        if unregistered:
            raise ValueError(
                f"Reloaded config routes to categories with no store: {', '.join(unregistered)}. "
                "Restart to pick up new categories."
            )
        self._config = config
        self._triage = TriageEngine(self._stores, config.triage)

    async def run(self) -> RunSummary:
        """Execute one pass and persist its summary."""
        run_id = str(uuid.uuid4())
        start_time = time.monotonic()
        summary = RunSummary(run_id=run_id, timestamp=datetime.now(UTC).isoformat())

        with pipeline_run(run_id):
            logger.info("pipeline_run_start", rules=len(self._config.categories))

            try:
                unhealthy = await self._health_problem()
                if unhealthy is not None:
                    summary.status = "skipped"
                    summary.reason = unhealthy
                    logger.warning("pipeline_run_skipped", reason=unhealthy)
                else:
                    await self._run_steps(summary)
            except (MailSourceError, StorageError) as e:
                summary.status = "error"
                summary.error = str(e)
                logger.error("pipeline_run_error", error=str(e), error_type=type(e).__name__)
            except Exception as e:
                summary.status = "error"
                summary.error = f"{type(e).__name__}: {e}"
                logger.exception("pipeline_run_unexpected_error", error_type=type(e).__name__)

            summary.duration_ms = int((time.monotonic() - start_time) * 1000)

            try:
                await self._stores.state.put(self._config.pipeline.summary_key, summary.to_json())
            except StorageError as e:
                logger.error("run_summary_not_persisted", error=str(e))

            logger.info(
                "pipeline_run_complete",
                status=summary.status,
                duration_ms=summary.duration_ms,
                fetched=summary.fetched,
                new_emails=summary.new_emails,
                raw_stored=summary.raw_stored,
                filtered_stored=summary.filtered_stored,
                triage_total=summary.triage_total,
                triage_no_action=summary.triage_no_action,
                triage_applied=summary.triage_applied,
            )

        return summary

    async def _run_steps(self, summary: RunSummary) -> None:
        watermark = await self.read_watermark()

        # 1. Retrieve
        fetched = await self._fetch_with_retry(watermark)
        summary.fetched = fetched.fetched
        summary.new_emails = fetched.inbound
        summary.spam_trash_excluded = fetched.spam_trash_excluded
        summary.older_than_cutoff = fetched.older_than_cutoff
        summary.duplicates = fetched.duplicates

        # 2. Route
        routed = await self._router.route(fetched.messages, self._config.categories)
        summary.raw_stored = routed.raw_stored
        summary.filtered_stored = routed.matched_stored
        summary.route_stats = routed.per_category

        # 3. Triage the matched store
        matched_name = self._stores.matched.name
        decisions = await self._triage.scan(matched_name)
        summary.triage_total = len(decisions)
        summary.triage_no_action = sum(1 for d in decisions if d.level == "NO_ACTION")
        if self._config.triage.auto_apply and decisions:
            applied = await self._triage.apply_everywhere(decisions)
            summary.triage_applied = applied.applied

        # 4. Advance the watermark, only ever forwards
        new_watermark = fetched.new_watermark
        if new_watermark is not None and (watermark is None or new_watermark > watermark):
            await self._stores.state.put(
                self._config.pipeline.watermark_key, format_timestamp(new_watermark)
            )
            summary.watermark = format_timestamp(new_watermark)
        elif watermark is not None:
            summary.watermark = format_timestamp(watermark)

    async def read_watermark(self) -> datetime | None:
        """Current watermark, or None if unset or unreadable."""
        raw = await self._stores.state.get(self._config.pipeline.watermark_key)
        if not raw:
            return None
        watermark = parse_message_date(raw)
        if watermark is None:
            logger.warning("invalid_watermark", value=raw[:64])
        return watermark

    async def _fetch_with_retry(self, watermark: datetime | None) -> FetchResult:
        retries = self._config.pipeline.fetch_retries
        delays = self._config.pipeline.retry_delays

        attempt = 0
        while True:
            try:
                return self._retriever.fetch(watermark)
            except MailSourceError as e:
                if attempt >= retries:
                    raise
                base_delay = delays[min(attempt, len(delays) - 1)]
                # ±20% jitter
                delay = base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                logger.warning(
                    "mail_fetch_retry",
                    attempt=attempt + 1,
                    max_retries=retries,
                    status_code=e.status_code,
                    delay=round(delay, 2),
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _health_problem(self) -> str | None:
        """Reason to skip the pass, or None when the mail source is healthy."""
        if not self._config.pipeline.require_health:
            return None

        unhealthy: list[str] = []
        for key in self._config.pipeline.health_keys:
            raw = await self._stores.state.get(key)
            if raw is None:
                return f"missing health record '{key}'"
            report = HealthReport.from_json(raw)
            if not report.ok:
                unhealthy.append(key)

        if unhealthy:
            return f"infrastructure not healthy: {', '.join(unhealthy)}"
        return None
