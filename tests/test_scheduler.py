"""Tests for SyncScheduler: per-tenant full sync cycle, housekeeping, job wiring."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from src.ledgersync.sync.audit_log import SyncAuditLog
from src.ledgersync.sync.exceptions import AuthError
from src.ledgersync.sync.runner import SyncRunner
from src.ledgersync.sync.scheduler import SyncScheduler
from src.ledgersync.sync.schemas import RunStatus, SyncAction, SyncReport, TokenGrant

TENANT = "tenant-alpha"
OTHER_TENANT = "tenant-beta"


def _make_report(tenant_id: str, **overrides) -> SyncReport:
    defaults = {
        "run_id": f"run-{tenant_id}",
        "tenant_id": tenant_id,
        "action": SyncAction.FULL_SYNC,
        "status": RunStatus.COMPLETED,
    }
    defaults.update(overrides)
    return SyncReport(**defaults)


def _make_scheduler(audit_log, token_provider, **overrides) -> tuple[SyncScheduler, MagicMock]:
    orchestrator = MagicMock()
    orchestrator.full_sync = AsyncMock(
        side_effect=lambda tenant_id, **kwargs: _make_report(tenant_id)
    )
    runner = SyncRunner(orchestrator, audit_log)
    defaults = {
        "runner": runner,
        "orchestrator": orchestrator,
        "audit_log": audit_log,
        "token_provider": token_provider,
        "tenant_pause": 0,
    }
    defaults.update(overrides)
    return SyncScheduler(**defaults), orchestrator


def _connect(token_provider, tenant_id: str) -> None:
    token_provider.grants[tenant_id] = TokenGrant(access_token=f"tok-{tenant_id}", realm_id=f"realm-{tenant_id}")


# ── Full Sync Cycle ─────────────────────────────────────────────────────────


class TestFullSyncCycle:
    """run_full_sync_cycle over connected tenants."""

    async def test_syncs_every_connected_tenant(self, audit_log, token_provider):
        _connect(token_provider, OTHER_TENANT)
        scheduler, orchestrator = _make_scheduler(audit_log, token_provider)

        results = await scheduler.run_full_sync_cycle()

        assert results == {"completed": 2, "failed": 0, "skipped": 0}
        tenants = [c.args[0] for c in orchestrator.full_sync.await_args_list]
        assert tenants == [TENANT, OTHER_TENANT]

    async def test_no_tenants(self, audit_log, token_provider):
        token_provider.grants.clear()
        scheduler, orchestrator = _make_scheduler(audit_log, token_provider)

        assert await scheduler.run_full_sync_cycle() == {"completed": 0, "failed": 0, "skipped": 0}
        orchestrator.full_sync.assert_not_called()

    async def test_watermark_from_last_completed_full_sync(self, audit_log, token_provider):
        run_id = await audit_log.start(TENANT, SyncAction.FULL_SYNC)
        await audit_log.complete(run_id, 1, 0)
        started_at = (await audit_log.get(run_id)).started_at
        scheduler, orchestrator = _make_scheduler(audit_log, token_provider)

        await scheduler.run_full_sync_cycle()

        assert orchestrator.full_sync.call_args.kwargs["modified_since"] == started_at

    async def test_failed_tenant_does_not_block_others(self, audit_log, token_provider):
        _connect(token_provider, OTHER_TENANT)
        scheduler, orchestrator = _make_scheduler(audit_log, token_provider)

        async def full_sync(tenant_id, **kwargs):
            if tenant_id == TENANT:
                raise AuthError("token revoked")
            return _make_report(tenant_id)

        orchestrator.full_sync = AsyncMock(side_effect=full_sync)

        results = await scheduler.run_full_sync_cycle()

        assert results == {"completed": 1, "failed": 1, "skipped": 0}

    async def test_busy_tenant_skipped(self, audit_log, token_provider):
        _connect(token_provider, OTHER_TENANT)
        await audit_log.start(OTHER_TENANT, SyncAction.FULL_SYNC)
        scheduler, _ = _make_scheduler(audit_log, token_provider)

        results = await scheduler.run_full_sync_cycle()

        assert results == {"completed": 1, "failed": 0, "skipped": 1}

    async def test_deferred_queue_replayed_after_sync(self, audit_log, token_provider):
        deferred = MagicMock()
        deferred.replay = AsyncMock(return_value={"resolved": 1, "requeued": 0, "dropped": 0})
        scheduler, orchestrator = _make_scheduler(audit_log, token_provider, deferred=deferred)

        await scheduler.run_full_sync_cycle()

        deferred.replay.assert_awaited_once_with(TENANT, orchestrator)


# ── Housekeeping ────────────────────────────────────────────────────────────


class TestHousekeeping:
    """run_housekeeping closes abandoned runs and prunes history."""

    async def test_fails_stale_and_prunes(self, session_factory, token_provider):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        clock = MagicMock(return_value=now)
        audit_log = SyncAuditLog(session_factory, clock=clock)
        stale = await audit_log.start(TENANT, SyncAction.SYNC_INVOICES)
        for minutes in range(1, 4):
            clock.return_value = now + timedelta(minutes=minutes)
            done = await audit_log.start(TENANT, SyncAction.SYNC_CUSTOMERS)
            await audit_log.complete(done, 0, 0)
        clock.return_value = now + timedelta(hours=3)
        scheduler, _ = _make_scheduler(
            audit_log, token_provider, retention=2, stale_after=timedelta(hours=1)
        )

        await scheduler.run_housekeeping()

        runs = await audit_log.list(TENANT, limit=10)
        assert len(runs) == 2
        assert all(run.id != stale for run in runs)
        assert await audit_log.in_progress(TENANT) is False


# ── Job Wiring ──────────────────────────────────────────────────────────────


class TestLifecycle:
    """start/stop register and remove APScheduler jobs."""

    async def test_start_registers_jobs(self, audit_log, token_provider):
        scheduler, _ = _make_scheduler(audit_log, token_provider, interval_minutes=15)

        assert scheduler.start() is True
        try:
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert job_ids == {"ledgersync_full_sync", "ledgersync_housekeeping"}
        finally:
            scheduler.stop()
