"""In-process background runner for orchestrated sync runs.

Keeps one asyncio task per (tenant, action). A second submit for a key that
is still running, or that the audit log reports as started, is rejected
with SyncInProgressError. Each task owns a cancel Event that the
orchestrator checks between items.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime

import structlog

from src.ledgersync.sync.audit_log import SyncAuditLog
from src.ledgersync.sync.exceptions import SyncInProgressError
from src.ledgersync.sync.orchestrator import SyncOrchestrator
from src.ledgersync.sync.schemas import ENTITY_FOR_ACTION, SyncAction, SyncReport

logger = structlog.get_logger(__name__)


class SyncRunner:
    """Launches orchestrator runs as background tasks.

    Args:
        orchestrator: SyncOrchestrator executing the runs.
        audit_log: Audit log consulted for runs started by other workers.
    """

    def __init__(self, orchestrator: SyncOrchestrator, audit_log: SyncAuditLog) -> None:
        self._orchestrator = orchestrator
        self._audit = audit_log
        self._tasks: dict[tuple[str, SyncAction], asyncio.Task[SyncReport]] = {}
        self._cancels: dict[tuple[str, SyncAction], asyncio.Event] = {}

    def is_running(self, tenant_id: str, action: SyncAction) -> bool:
        task = self._tasks.get((tenant_id, action))
        return task is not None and not task.done()

    async def submit(
        self,
        tenant_id: str,
        action: SyncAction,
        local_ids: Sequence[str] | None = None,
        modified_since: datetime | None = None,
    ) -> asyncio.Task[SyncReport]:
        """Start a run in the background and return its task.

        Raises:
            SyncInProgressError: A run for the same tenant and action is active.
        """
        key = (tenant_id, action)
        if self.is_running(tenant_id, action) or await self._audit.in_progress(tenant_id, action):
            raise SyncInProgressError(tenant_id, action.value)

        cancel = asyncio.Event()
        if action == SyncAction.FULL_SYNC:
            coro = self._orchestrator.full_sync(tenant_id, modified_since=modified_since, cancel=cancel)
        else:
            coro = self._orchestrator.push_batch(
                tenant_id, ENTITY_FOR_ACTION[action], local_ids=local_ids, cancel=cancel
            )

        task = asyncio.create_task(coro, name=f"sync:{tenant_id}:{action.value}")
        self._tasks[key] = task
        self._cancels[key] = cancel
        task.add_done_callback(lambda done: self._on_done(key, done))
        logger.info("sync_runner.submitted", tenant_id=tenant_id, action=action.value)
        return task

    def cancel(self, tenant_id: str, action: SyncAction) -> bool:
        """Signal a running task to stop after its in-flight items."""
        key = (tenant_id, action)
        if not self.is_running(tenant_id, action):
            return False
        self._cancels[key].set()
        logger.info("sync_runner.cancel_requested", tenant_id=tenant_id, action=action.value)
        return True

    async def wait(self, tenant_id: str, action: SyncAction) -> SyncReport | None:
        """Await the task for a key, if one is tracked."""
        task = self._tasks.get((tenant_id, action))
        if task is None:
            return None
        return await task

    async def shutdown(self) -> None:
        """Cancel every running task and wait for them to unwind."""
        for cancel in self._cancels.values():
            cancel.set()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("sync_runner.shutdown", drained=len(tasks))

    def _on_done(self, key: tuple[str, SyncAction], task: asyncio.Task[SyncReport]) -> None:
        if self._tasks.get(key) is task:
            self._tasks.pop(key, None)
            self._cancels.pop(key, None)
        tenant_id, action = key
        if task.cancelled():
            logger.warning("sync_runner.task_cancelled", tenant_id=tenant_id, action=action.value)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "sync_runner.task_failed",
                tenant_id=tenant_id,
                action=action.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        report = task.result()
        logger.info(
            "sync_runner.task_finished",
            tenant_id=tenant_id,
            action=action.value,
            run_id=report.run_id,
            status=report.status.value,
        )
