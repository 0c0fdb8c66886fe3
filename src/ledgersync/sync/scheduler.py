"""Background scheduler for periodic sync: interval full sync and housekeeping.

Provides an APScheduler wrapper with 2 jobs:
- Full sync every SYNC_INTERVAL_MINUTES for each connected tenant, followed
  by a replay of that tenant's deferred queue
- Hourly housekeeping: fail abandoned runs, prune old audit rows

Tenants are processed one at a time with a short pause in between so one
scheduler tick never hammers the remote API with every tenant at once.

Exports:
    SyncScheduler: Async scheduler for periodic tenant sync.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.ledgersync.sync.audit_log import SyncAuditLog
from src.ledgersync.sync.deferred import DeferredSyncQueue
from src.ledgersync.sync.exceptions import SyncError, SyncInProgressError
from src.ledgersync.sync.orchestrator import SyncOrchestrator
from src.ledgersync.sync.runner import SyncRunner
from src.ledgersync.sync.schemas import RunStatus, SyncAction
from src.ledgersync.sync.token_provider import TokenProvider

logger = structlog.get_logger(__name__)

TENANT_PAUSE_SECONDS = 1.0


class SyncScheduler:
    """Periodic full sync across connected tenants.

    Args:
        runner: SyncRunner used to launch runs (shares overlap protection
            with manual requests).
        orchestrator: Orchestrator passed to deferred replay.
        audit_log: Audit log for watermarks and housekeeping.
        token_provider: Lists tenants with an active connection.
        deferred: Optional deferred queue replayed after each tenant's sync.
        interval_minutes: Full sync cadence.
        retention: Audit rows kept per tenant.
        stale_after: Age after which a started run is considered abandoned.
    """

    def __init__(
        self,
        runner: SyncRunner,
        orchestrator: SyncOrchestrator,
        audit_log: SyncAuditLog,
        token_provider: TokenProvider,
        deferred: DeferredSyncQueue | None = None,
        interval_minutes: int = 60,
        retention: int = 200,
        stale_after: timedelta = timedelta(minutes=60),
        tenant_pause: float = TENANT_PAUSE_SECONDS,
    ) -> None:
        self._runner = runner
        self._orchestrator = orchestrator
        self._audit = audit_log
        self._token_provider = token_provider
        self._deferred = deferred
        self._interval_minutes = interval_minutes
        self._retention = retention
        self._stale_after = stale_after
        self._tenant_pause = tenant_pause
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    def start(self) -> bool:
        """Start the scheduler. Returns False if it could not be started."""
        try:
            self._scheduler = AsyncIOScheduler()

            self._scheduler.add_job(
                self.run_full_sync_cycle,
                trigger=IntervalTrigger(minutes=self._interval_minutes),
                id="ledgersync_full_sync",
                name="Full sync for every connected tenant",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=600,
            )

            self._scheduler.add_job(
                self.run_housekeeping,
                trigger=IntervalTrigger(hours=1),
                id="ledgersync_housekeeping",
                name="Fail abandoned runs and prune the audit log",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=3600,
            )

            self._scheduler.start()
            self._started = True
            logger.info(
                "sync_scheduler.started",
                jobs=["full_sync", "housekeeping"],
                interval_minutes=self._interval_minutes,
            )
            return True

        except Exception as exc:
            logger.warning("sync_scheduler.start_failed", error=str(exc))
            return False

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler.stopped")

    async def run_full_sync_cycle(self) -> dict[str, int]:
        """Run a full sync for each connected tenant, one after another.

        Individual tenant failures do not block the remaining tenants.
        """
        tenants = await self._token_provider.connected_tenants()
        results = {"completed": 0, "failed": 0, "skipped": 0}
        if not tenants:
            logger.info("sync_scheduler.no_tenants")
            return results

        for index, tenant_id in enumerate(tenants):
            if index:
                await asyncio.sleep(self._tenant_pause)
            try:
                last = await self._audit.last_run(
                    tenant_id, SyncAction.FULL_SYNC, RunStatus.COMPLETED
                )
                watermark = last.started_at if last else None
                task = await self._runner.submit(
                    tenant_id, SyncAction.FULL_SYNC, modified_since=watermark
                )
                report = await task
            except SyncInProgressError:
                results["skipped"] += 1
                logger.info("sync_scheduler.tenant_busy", tenant_id=tenant_id)
                continue
            except SyncError as exc:
                results["failed"] += 1
                logger.warning(
                    "sync_scheduler.tenant_failed",
                    tenant_id=tenant_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue

            if report.status == RunStatus.COMPLETED:
                results["completed"] += 1
            else:
                results["failed"] += 1

            if self._deferred is not None:
                try:
                    await self._deferred.replay(tenant_id, self._orchestrator)
                except SyncError as exc:
                    logger.warning(
                        "sync_scheduler.deferred_replay_failed",
                        tenant_id=tenant_id,
                        error=str(exc),
                    )

        logger.info("sync_scheduler.cycle_complete", tenants=len(tenants), **results)
        return results

    async def run_housekeeping(self) -> None:
        """Close abandoned runs and trim audit history for each tenant."""
        tenants = await self._token_provider.connected_tenants()
        for tenant_id in tenants:
            try:
                closed = await self._audit.fail_stale(tenant_id, self._stale_after)
                pruned = await self._audit.prune(tenant_id, self._retention)
            except SyncError as exc:
                logger.warning(
                    "sync_scheduler.housekeeping_failed",
                    tenant_id=tenant_id,
                    error=str(exc),
                )
                continue
            logger.debug(
                "sync_scheduler.housekeeping_done",
                tenant_id=tenant_id,
                stale_closed=closed,
                pruned=pruned,
            )


__all__ = ["SyncScheduler"]
