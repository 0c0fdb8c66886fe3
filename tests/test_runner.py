"""Tests for SyncRunner background task management."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.ledgersync.sync.exceptions import SyncInProgressError
from src.ledgersync.sync.runner import SyncRunner
from src.ledgersync.sync.schemas import EntityType, RunStatus, SyncAction, SyncReport

TENANT = "tenant-alpha"


def _make_report(action: SyncAction = SyncAction.SYNC_CUSTOMERS, **overrides) -> SyncReport:
    defaults = {
        "run_id": "run-1",
        "tenant_id": TENANT,
        "action": action,
        "status": RunStatus.COMPLETED,
    }
    defaults.update(overrides)
    return SyncReport(**defaults)


def _make_runner(in_progress: bool = False) -> tuple[SyncRunner, MagicMock]:
    orchestrator = MagicMock()
    orchestrator.push_batch = AsyncMock(return_value=_make_report())
    orchestrator.full_sync = AsyncMock(return_value=_make_report(SyncAction.FULL_SYNC))
    audit_log = MagicMock()
    audit_log.in_progress = AsyncMock(return_value=in_progress)
    return SyncRunner(orchestrator, audit_log), orchestrator


# ── Submit ──────────────────────────────────────────────────────────────────


class TestSubmit:
    """Tests for SyncRunner.submit."""

    async def test_entity_action_runs_push_batch(self):
        runner, orchestrator = _make_runner()

        task = await runner.submit(TENANT, SyncAction.SYNC_INVOICES, local_ids=["inv-1"])
        report = await task

        assert report.status == RunStatus.COMPLETED
        orchestrator.push_batch.assert_awaited_once()
        args, kwargs = orchestrator.push_batch.call_args
        assert args == (TENANT, EntityType.INVOICE)
        assert kwargs["local_ids"] == ["inv-1"]
        assert isinstance(kwargs["cancel"], asyncio.Event)

    async def test_full_sync_passes_watermark(self):
        runner, orchestrator = _make_runner()
        since = datetime(2026, 3, 1, tzinfo=timezone.utc)

        await (await runner.submit(TENANT, SyncAction.FULL_SYNC, modified_since=since))

        assert orchestrator.full_sync.call_args.kwargs["modified_since"] == since

    async def test_rejects_when_audit_log_reports_started_run(self):
        runner, orchestrator = _make_runner(in_progress=True)

        with pytest.raises(SyncInProgressError):
            await runner.submit(TENANT, SyncAction.SYNC_CUSTOMERS)
        orchestrator.push_batch.assert_not_called()

    async def test_rejects_while_task_running(self):
        runner, orchestrator = _make_runner()
        release = asyncio.Event()

        async def slow(*args, **kwargs):
            await release.wait()
            return _make_report()

        orchestrator.push_batch = AsyncMock(side_effect=slow)

        task = await runner.submit(TENANT, SyncAction.SYNC_CUSTOMERS)
        assert runner.is_running(TENANT, SyncAction.SYNC_CUSTOMERS)
        with pytest.raises(SyncInProgressError):
            await runner.submit(TENANT, SyncAction.SYNC_CUSTOMERS)

        release.set()
        await task
        await asyncio.sleep(0)
        assert not runner.is_running(TENANT, SyncAction.SYNC_CUSTOMERS)


# ── Cancel / Shutdown ───────────────────────────────────────────────────────


class TestCancel:
    """Cancellation signals reach the orchestrator's cancel event."""

    async def test_cancel_sets_event(self):
        runner, orchestrator = _make_runner()

        async def wait_for_cancel(*args, cancel, **kwargs):
            await cancel.wait()
            return _make_report(status=RunStatus.FAILED, cancelled=True)

        orchestrator.push_batch = AsyncMock(side_effect=wait_for_cancel)

        await runner.submit(TENANT, SyncAction.SYNC_CUSTOMERS)
        await asyncio.sleep(0)

        assert runner.cancel(TENANT, SyncAction.SYNC_CUSTOMERS) is True
        report = await runner.wait(TENANT, SyncAction.SYNC_CUSTOMERS)
        assert report.cancelled is True

    async def test_cancel_without_running_task(self):
        runner, _ = _make_runner()

        assert runner.cancel(TENANT, SyncAction.SYNC_CUSTOMERS) is False
        assert await runner.wait(TENANT, SyncAction.SYNC_CUSTOMERS) is None

    async def test_shutdown_drains_tasks(self):
        runner, orchestrator = _make_runner()

        async def wait_for_cancel(*args, cancel, **kwargs):
            await cancel.wait()
            return _make_report(status=RunStatus.FAILED, cancelled=True)

        orchestrator.full_sync = AsyncMock(side_effect=wait_for_cancel)
        task = await runner.submit(TENANT, SyncAction.FULL_SYNC)

        await runner.shutdown()

        assert task.done()
        assert task.result().cancelled is True
