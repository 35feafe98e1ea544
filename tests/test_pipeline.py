"""Tests for the pipeline orchestrator."""

import json
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import wire_email

from casemail.config_schema import AppConfig
from casemail.core.errors import MailSourceError, StorageError
from casemail.core.logging import get_correlation_id
from casemail.db.store import StoreRegistry
from casemail.engine.pipeline import PipelineOrchestrator, RunSummary
from casemail.mail.client import HealthReport
from casemail.mail.retriever import Retriever

SUPREME = "EMAIL_COURTS_SUPREME_COURT"
HEALTHY = HealthReport(status="ok", timestamp="2026-02-09T09:00:00+00:00").to_json()
UNHEALTHY = HealthReport(status="error", timestamp="2026-02-09T09:00:00+00:00").to_json()


def _client(all_mail: list[dict[str, Any]] | Exception, spam: list | None = None) -> MagicMock:
    folders: dict[str, Any] = {"Spam": spam or [], "Trash": [], "All Mail": all_mail}
    client = MagicMock()

    def fetch_folder(folder: str, limit: int | None = None, timeout: float = 60.0):
        result = folders[folder]
        if isinstance(result, Exception):
            raise result
        return result

    client.fetch_folder.side_effect = fetch_folder
    return client


def _orchestrator(
    client: MagicMock, stores: StoreRegistry, config: AppConfig
) -> PipelineOrchestrator:
    return PipelineOrchestrator(Retriever(client, config.mail_source), stores, config)


async def _stored_summary(stores: StoreRegistry, config: AppConfig) -> dict[str, Any]:
    return json.loads(await stores.state.get(config.pipeline.summary_key))


@pytest.fixture
async def healthy(stores: StoreRegistry) -> None:
    await stores.state.put("hop_bridge", HEALTHY)


class TestRun:
    """Tests for a full pass."""

    @pytest.mark.asyncio
    async def test_complete_run(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        client = _client(
            [
                wire_email("<a>", sender="admin@supremecourt.uk", date="2026-02-09T10:00:01Z"),
                wire_email("<spam>", date="2026-02-09T10:00:02Z"),
                wire_email("<b>", sender="friend@example.com", date="2026-02-09T10:00:03Z"),
            ],
            spam=[wire_email("<spam>")],
        )

        summary = await _orchestrator(client, stores, sample_config).run()

        assert summary.status == "complete"
        assert summary.fetched == 3
        assert summary.spam_trash_excluded == 1
        assert summary.new_emails == 2
        assert summary.raw_stored == 2
        assert summary.filtered_stored == 1
        assert summary.route_stats == {"EMAIL_COURTS_SUPREME_COURT": 1}
        assert summary.triage_total == 1
        assert summary.triage_applied == 0
        assert await stores.state.get("last_fetch_timestamp") == "2026-02-09T10:00:03Z"

        stored = await _stored_summary(stores, sample_config)
        assert stored["runId"] == summary.run_id
        assert stored["status"] == "complete"
        assert stored["step1"]["spamTrashExcluded"] == 1
        assert stored["step2"]["routeStats"] == {"EMAIL_COURTS_SUPREME_COURT": 1}
        assert stored["step3"] == {"total": 1, "noAction": 0, "applied": 0}

    @pytest.mark.asyncio
    async def test_upstream_error_leaves_state_untouched(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        """HTTP 500 on All Mail: error summary, no writes, watermark unchanged."""
        await stores.state.put("last_fetch_timestamp", "2026-02-01T00:00:00Z")
        client = _client(MailSourceError("Backend returned 500", status_code=500))

        summary = await _orchestrator(client, stores, sample_config).run()

        assert summary.status == "error"
        assert "500" in summary.error
        assert await stores.state.get("last_fetch_timestamp") == "2026-02-01T00:00:00Z"
        assert (await stores.raw.list()).keys == []
        assert (await stores.matched.list()).keys == []

        stored = await _stored_summary(stores, sample_config)
        assert stored["status"] == "error"
        assert stored["error"] == summary.error

    @pytest.mark.asyncio
    async def test_unhealthy_skips_run(
        self, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        await stores.state.put("hop_bridge", UNHEALTHY)
        client = _client([wire_email("<a>")])

        summary = await _orchestrator(client, stores, sample_config).run()

        assert summary.status == "skipped"
        assert "hop_bridge" in summary.reason
        client.fetch_folder.assert_not_called()
        stored = await _stored_summary(stores, sample_config)
        assert stored["status"] == "skipped"
        assert "step1" not in stored

    @pytest.mark.asyncio
    async def test_missing_health_record_skips_run(
        self, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        client = _client([wire_email("<a>")])

        summary = await _orchestrator(client, stores, sample_config).run()

        assert summary.status == "skipped"
        assert "missing" in summary.reason

    @pytest.mark.asyncio
    async def test_health_not_required(
        self, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        config = sample_config.model_copy(
            update={"pipeline": sample_config.pipeline.model_copy(update={"require_health": False})}
        )
        client = _client([])

        summary = await _orchestrator(client, stores, config).run()

        assert summary.status == "complete"

    @pytest.mark.asyncio
    async def test_no_new_messages_keeps_watermark(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        await stores.state.put("last_fetch_timestamp", "2026-02-09T12:00:00Z")
        client = _client([wire_email("<old>", date="2026-02-09T11:00:00Z")])

        summary = await _orchestrator(client, stores, sample_config).run()

        assert summary.status == "complete"
        assert summary.new_emails == 0
        assert summary.older_than_cutoff == 1
        assert summary.watermark == "2026-02-09T12:00:00Z"
        assert await stores.state.get("last_fetch_timestamp") == "2026-02-09T12:00:00Z"

    @pytest.mark.asyncio
    async def test_second_run_processes_nothing_new(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        emails = [
            wire_email("<a>", sender="admin@supremecourt.uk", date="2026-02-09T10:00:01Z"),
            wire_email("<b>", date="2026-02-09T10:00:02Z"),
        ]
        orchestrator = _orchestrator(_client(emails), stores, sample_config)

        first = await orchestrator.run()
        second = await orchestrator.run()

        assert first.new_emails == 2
        assert second.new_emails == 0
        assert second.older_than_cutoff == 2
        assert first.run_id != second.run_id

    @pytest.mark.asyncio
    async def test_auto_apply_triages_matched_and_category(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        config = sample_config.model_copy(
            update={"triage": sample_config.triage.model_copy(update={"auto_apply": True})}
        )
        client = _client(
            [wire_email("<a>", sender="admin@supremecourt.uk", subject="Out of office")]
        )

        summary = await _orchestrator(client, stores, config).run()

        assert summary.triage_no_action == 1
        assert summary.triage_applied == 1
        key = (await stores.matched.list()).keys[0]
        assert json.loads(await stores.matched.get(key))["status"] == "closed"
        category = stores.category("EMAIL_COURTS_SUPREME_COURT")
        assert json.loads(await category.get(key))["status"] == "closed"

    @pytest.mark.asyncio
    async def test_invalid_watermark_treated_as_unset(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        await stores.state.put("last_fetch_timestamp", "not a date")
        client = _client([wire_email("<a>", date="2020-01-01T00:00:00Z")])

        summary = await _orchestrator(client, stores, sample_config).run()

        assert summary.new_emails == 1
        assert await stores.state.get("last_fetch_timestamp") == "2020-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_category_store_failure_midway_keeps_watermark(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        """A category write fails after raw and matched writes: error summary, watermark kept."""
        await stores.state.put("last_fetch_timestamp", "2026-02-01T00:00:00Z")
        failing = AsyncMock()
        failing.name = SUPREME
        failing.put.side_effect = StorageError("disk I/O error", store=SUPREME)
        broken = StoreRegistry(
            raw=stores.raw,
            matched=stores.matched,
            state=stores.state,
            categories={**stores.categories, SUPREME: failing},
        )
        client = _client(
            [wire_email("<a>", sender="admin@supremecourt.uk", date="2026-02-09T10:00:01Z")]
        )

        summary = await _orchestrator(client, broken, sample_config).run()

        assert summary.status == "error"
        assert "disk I/O error" in summary.error
        assert await stores.state.get("last_fetch_timestamp") == "2026-02-01T00:00:00Z"
        # Writes before the failure stay; the next pass overwrites them
        assert len((await stores.raw.list()).keys) == 1
        stored = await _stored_summary(stores, sample_config)
        assert stored["status"] == "error"
        assert stored["runId"] == summary.run_id

    @pytest.mark.asyncio
    async def test_unexpected_error_still_persists_summary(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        await stores.state.put("last_fetch_timestamp", "2026-02-01T00:00:00Z")
        retriever = MagicMock()
        retriever.fetch.side_effect = RuntimeError("boom")

        summary = await PipelineOrchestrator(retriever, stores, sample_config).run()

        assert summary.status == "error"
        assert summary.error == "RuntimeError: boom"
        assert get_correlation_id() is None
        assert await stores.state.get("last_fetch_timestamp") == "2026-02-01T00:00:00Z"
        stored = await _stored_summary(stores, sample_config)
        assert stored["status"] == "error"
        assert stored["error"] == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_run_id_cleared_after_run(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        await _orchestrator(_client([]), stores, sample_config).run()

        assert get_correlation_id() is None


class TestUpdateConfig:
    """Tests for swapping in a reloaded config."""

    def test_rejects_category_without_store(
        self,
        stores: StoreRegistry,
        sample_config: AppConfig,
        sample_config_dict: dict[str, Any],
    ) -> None:
        orchestrator = _orchestrator(_client([]), stores, sample_config)
        sample_config_dict["categories"].append(
            {"category": "EMAIL_TRIBUNALS_NEW", "conditions": {"from_includes": ["tribunal"]}}
        )
        reloaded = AppConfig(**sample_config_dict)

        with pytest.raises(ValueError, match="EMAIL_TRIBUNALS_NEW"):
            orchestrator.update_config(reloaded)

        assert orchestrator._config is sample_config

    @pytest.mark.asyncio
    async def test_accepts_new_rules_for_known_categories(
        self,
        healthy: None,
        stores: StoreRegistry,
        sample_config: AppConfig,
        sample_config_dict: dict[str, Any],
    ) -> None:
        orchestrator = _orchestrator(
            _client([wire_email("<a>", sender="registry@newcourt.example")]), stores, sample_config
        )
        sample_config_dict["categories"][0]["conditions"]["from_includes"].append("newcourt")
        reloaded = AppConfig(**sample_config_dict)

        orchestrator.update_config(reloaded)
        summary = await orchestrator.run()

        assert summary.route_stats == {SUPREME: 1}


class TestRetry:
    """Tests for the fetch retry policy."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        config = sample_config.model_copy(
            update={"pipeline": sample_config.pipeline.model_copy(update={"fetch_retries": 2})}
        )
        retriever = MagicMock()
        retriever.fetch.side_effect = [
            MailSourceError("Backend returned 502", status_code=502),
            Retriever(_client([wire_email("<a>")]), config.mail_source).fetch(None),
        ]

        with patch("casemail.engine.pipeline.asyncio.sleep") as mock_sleep:
            summary = await PipelineOrchestrator(retriever, stores, config).run()

        assert summary.status == "complete"
        assert summary.new_emails == 1
        assert retriever.fetch.call_count == 2
        mock_sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        config = sample_config.model_copy(
            update={"pipeline": sample_config.pipeline.model_copy(update={"fetch_retries": 2})}
        )
        retriever = MagicMock()
        retriever.fetch.side_effect = MailSourceError("Backend returned 500", status_code=500)

        with patch("casemail.engine.pipeline.asyncio.sleep"):
            summary = await PipelineOrchestrator(retriever, stores, config).run()

        assert summary.status == "error"
        assert retriever.fetch.call_count == 3

    @pytest.mark.asyncio
    async def test_no_retry_by_default(
        self, healthy: None, stores: StoreRegistry, sample_config: AppConfig
    ) -> None:
        retriever = MagicMock()
        retriever.fetch.side_effect = MailSourceError("Backend returned 500", status_code=500)

        summary = await PipelineOrchestrator(retriever, stores, sample_config).run()

        assert summary.status == "error"
        assert retriever.fetch.call_count == 1


class TestRunSummary:
    """Tests for the summary JSON shape."""

    def test_skipped_summary_has_reason_only(self) -> None:
        summary = RunSummary(
            run_id="r1",
            timestamp=datetime(2026, 2, 9, tzinfo=UTC).isoformat(),
            status="skipped",
            reason="infrastructure not healthy: hop_bridge",
        )

        data = summary.to_dict()

        assert data["reason"] == "infrastructure not healthy: hop_bridge"
        assert "error" not in data
        assert "step1" not in data

    def test_complete_summary_steps(self) -> None:
        summary = RunSummary(run_id="r1", timestamp="t", fetched=3, new_emails=2, raw_stored=2)

        data = json.loads(summary.to_json())

        assert data["step1"]["fetched"] == 3
        assert data["step1"]["newEmails"] == 2
        assert data["step2"]["rawStored"] == 2
        assert "reason" not in data
