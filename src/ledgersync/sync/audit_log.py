"""Sync audit log -- lifecycle records for orchestrated runs.

Each run is inserted as ``started`` and receives exactly one terminal update
(``completed`` or ``failed``). The terminal update is a conditional write on
``status = 'started'`` so whichever of complete()/fail() lands first wins and
the other becomes a no-op. Duration is computed at that moment from
started_at and is never stored before.

A run stuck in ``started`` means its worker died; in_progress() reports it
and fail_stale() closes it out during housekeeping.
"""

from __future__ import annotations

import builtins
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.ledgersync.sync.exceptions import StorageError
from src.ledgersync.sync.models import SyncRunModel
from src.ledgersync.sync.schemas import RunStatus, SyncAction, SyncRunRead, SyncStats

logger = structlog.get_logger(__name__)

DEFAULT_ERROR_CAP = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _model_to_run(model: SyncRunModel) -> SyncRunRead:
    """Convert SyncRunModel to SyncRunRead schema."""
    return SyncRunRead(
        id=model.id,
        tenant_id=model.tenant_id,
        action=SyncAction(model.action),
        status=RunStatus(model.status),
        items_synced=model.items_synced,
        items_failed=model.items_failed,
        errors=builtins.list(model.errors or []),
        started_at=_as_utc(model.started_at),
        completed_at=_as_utc(model.completed_at) if model.completed_at else None,
        duration_ms=model.duration_ms,
    )


class SyncAuditLog:
    """Async store for SyncRun records.

    Args:
        session_factory: Callable yielding AsyncSession (e.g. get_session).
        error_cap: Maximum error strings persisted per run.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        error_cap: int = DEFAULT_ERROR_CAP,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._error_cap = error_cap
        self._clock = clock

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self, tenant_id: str, action: SyncAction) -> str:
        """Insert a ``started`` run and return its id."""
        try:
            async for session in self._session_factory():
                model = SyncRunModel(
                    tenant_id=tenant_id,
                    action=action.value,
                    status=RunStatus.STARTED.value,
                    items_synced=0,
                    items_failed=0,
                    errors=[],
                    started_at=self._clock(),
                )
                session.add(model)
                await session.commit()
                logger.info(
                    "sync_run.started",
                    tenant_id=tenant_id,
                    action=action.value,
                    run_id=model.id,
                )
                return model.id
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log start failed: {exc}") from exc
        raise StorageError("session factory yielded no session")

    async def complete(
        self,
        run_id: str,
        items_synced: int,
        items_failed: int,
        errors: builtins.list[str] | None = None,
    ) -> bool:
        """Finalize a run as completed. Returns False if it was already terminal."""
        return await self._finish(
            run_id,
            RunStatus.COMPLETED,
            items_synced=items_synced,
            items_failed=items_failed,
            errors=errors or [],
        )

    async def fail(
        self,
        run_id: str,
        message: str,
        items_synced: int = 0,
        items_failed: int = 0,
        errors: builtins.list[str] | None = None,
    ) -> bool:
        """Finalize a run as failed, appending ``message`` to its errors.

        Returns False if the run was already terminal.
        """
        return await self._finish(
            run_id,
            RunStatus.FAILED,
            items_synced=items_synced,
            items_failed=items_failed,
            errors=[*(errors or [])[: max(0, self._error_cap - 1)], message],
        )

    async def _finish(
        self,
        run_id: str,
        status: RunStatus,
        items_synced: int,
        items_failed: int,
        errors: builtins.list[str],
    ) -> bool:
        completed_at = self._clock()
        try:
            async for session in self._session_factory():
                started = await session.execute(
                    select(SyncRunModel.started_at).where(SyncRunModel.id == run_id)
                )
                started_at = started.scalar_one_or_none()
                if started_at is None:
                    logger.warning("sync_run.finish_unknown_run", run_id=run_id)
                    return False

                duration_ms = max(
                    0, int((completed_at - _as_utc(started_at)).total_seconds() * 1000)
                )
                result = await session.execute(
                    update(SyncRunModel)
                    .where(
                        SyncRunModel.id == run_id,
                        SyncRunModel.status == RunStatus.STARTED.value,
                    )
                    .values(
                        status=status.value,
                        items_synced=items_synced,
                        items_failed=items_failed,
                        errors=errors[: self._error_cap],
                        completed_at=completed_at,
                        duration_ms=duration_ms,
                    )
                )
                await session.commit()
                finished = result.rowcount == 1
                if finished:
                    logger.info(
                        "sync_run.finished",
                        run_id=run_id,
                        status=status.value,
                        items_synced=items_synced,
                        items_failed=items_failed,
                        duration_ms=duration_ms,
                    )
                else:
                    logger.warning(
                        "sync_run.already_terminal",
                        run_id=run_id,
                        attempted_status=status.value,
                    )
                return finished
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log finalize failed: {exc}") from exc
        return False

    # ── Queries ─────────────────────────────────────────────────────────

    async def get(self, run_id: str) -> SyncRunRead | None:
        try:
            async for session in self._session_factory():
                model = await session.get(SyncRunModel, run_id)
                return _model_to_run(model) if model else None
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log read failed: {exc}") from exc
        return None

    async def list(
        self,
        tenant_id: str,
        limit: int = 20,
        action: SyncAction | None = None,
    ) -> builtins.list[SyncRunRead]:
        """Most recent runs first."""
        try:
            async for session in self._session_factory():
                stmt = select(SyncRunModel).where(SyncRunModel.tenant_id == tenant_id)
                if action is not None:
                    stmt = stmt.where(SyncRunModel.action == action.value)
                stmt = stmt.order_by(SyncRunModel.started_at.desc()).limit(limit)
                result = await session.execute(stmt)
                return [_model_to_run(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log read failed: {exc}") from exc
        return []

    async def last_run(
        self,
        tenant_id: str,
        action: SyncAction | None = None,
        status: RunStatus | None = None,
    ) -> SyncRunRead | None:
        try:
            async for session in self._session_factory():
                stmt = select(SyncRunModel).where(SyncRunModel.tenant_id == tenant_id)
                if action is not None:
                    stmt = stmt.where(SyncRunModel.action == action.value)
                if status is not None:
                    stmt = stmt.where(SyncRunModel.status == status.value)
                stmt = stmt.order_by(SyncRunModel.started_at.desc()).limit(1)
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                return _model_to_run(model) if model else None
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log read failed: {exc}") from exc
        return None

    async def in_progress(self, tenant_id: str, action: SyncAction | None = None) -> bool:
        """True if any run for the tenant (and action, when given) is still started."""
        try:
            async for session in self._session_factory():
                stmt = select(func.count()).select_from(SyncRunModel).where(
                    SyncRunModel.tenant_id == tenant_id,
                    SyncRunModel.status == RunStatus.STARTED.value,
                )
                if action is not None:
                    stmt = stmt.where(SyncRunModel.action == action.value)
                result = await session.execute(stmt)
                return (result.scalar_one() or 0) > 0
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log read failed: {exc}") from exc
        return False

    async def stats(self, tenant_id: str, since: datetime | None = None) -> SyncStats:
        """Aggregate counters over runs started at or after ``since``."""
        try:
            async for session in self._session_factory():
                stmt = (
                    select(
                        SyncRunModel.status,
                        func.count(),
                        func.coalesce(func.sum(SyncRunModel.items_synced), 0),
                        func.coalesce(func.sum(SyncRunModel.items_failed), 0),
                        func.max(SyncRunModel.started_at),
                    )
                    .where(SyncRunModel.tenant_id == tenant_id)
                    .group_by(SyncRunModel.status)
                )
                if since is not None:
                    stmt = stmt.where(SyncRunModel.started_at >= since)
                result = await session.execute(stmt)

                stats = SyncStats()
                for status, count, synced, failed, last_started in result.all():
                    stats.total_runs += count
                    stats.items_synced += int(synced)
                    stats.items_failed += int(failed)
                    if status == RunStatus.COMPLETED.value:
                        stats.completed_runs = count
                    elif status == RunStatus.FAILED.value:
                        stats.failed_runs = count
                    else:
                        stats.in_progress_runs = count
                    if last_started is not None:
                        last_started = _as_utc(last_started)
                        if stats.last_run_at is None or last_started > stats.last_run_at:
                            stats.last_run_at = last_started
                return stats
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log read failed: {exc}") from exc
        return SyncStats()

    # ── Housekeeping ────────────────────────────────────────────────────

    async def prune(self, tenant_id: str, keep_count: int) -> int:
        """Delete all but the ``keep_count`` most recent runs. Returns rows deleted."""
        try:
            async for session in self._session_factory():
                keep = (
                    select(SyncRunModel.id)
                    .where(SyncRunModel.tenant_id == tenant_id)
                    .order_by(SyncRunModel.started_at.desc())
                    .limit(keep_count)
                )
                keep_ids = [row[0] for row in (await session.execute(keep)).all()]
                stmt = delete(SyncRunModel).where(SyncRunModel.tenant_id == tenant_id)
                if keep_ids:
                    stmt = stmt.where(SyncRunModel.id.not_in(keep_ids))
                result = await session.execute(stmt)
                await session.commit()
                if result.rowcount:
                    logger.info(
                        "sync_run.pruned",
                        tenant_id=tenant_id,
                        deleted=result.rowcount,
                        kept=len(keep_ids),
                    )
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log prune failed: {exc}") from exc
        return 0

    async def fail_stale(self, tenant_id: str, older_than: timedelta) -> int:
        """Fail runs left ``started`` longer than ``older_than``. Returns runs closed."""
        cutoff = self._clock() - older_than
        stale_ids: builtins.list[str] = []
        try:
            async for session in self._session_factory():
                result = await session.execute(
                    select(SyncRunModel.id).where(
                        SyncRunModel.tenant_id == tenant_id,
                        SyncRunModel.status == RunStatus.STARTED.value,
                        SyncRunModel.started_at < cutoff,
                    )
                )
                stale_ids = [row[0] for row in result.all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"audit log read failed: {exc}") from exc

        closed = 0
        for run_id in stale_ids:
            if await self.fail(run_id, "abandoned: worker stopped before finishing"):
                closed += 1
        if closed:
            logger.warning("sync_run.stale_failed", tenant_id=tenant_id, count=closed)
        return closed
