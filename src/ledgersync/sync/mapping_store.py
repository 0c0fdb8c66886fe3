"""Entity mapping store -- durable local id <-> remote id links.

Provides EntityMappingStore with the session_factory callable pattern.
All methods take tenant_id as first argument for tenant-scoped queries.

Invariants:
- At most one mapping per (tenant, entity type, local id) and per
  (tenant, entity type, remote id). Both are unique constraints; a racing
  insert that loses is re-read and turned into an update.
- Mappings are never deleted except through unlink().
- The store performs no retries. Every SQLAlchemy failure surfaces as
  StorageError so the orchestrator can abort the run.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable, Sequence
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.ledgersync.sync.exceptions import StorageError, ValidationError
from src.ledgersync.sync.models import EntityMappingModel
from src.ledgersync.sync.schemas import (
    EntityMappingRead,
    EntityType,
    SyncStatus,
    SyncStatusView,
)

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _model_to_mapping(model: EntityMappingModel) -> EntityMappingRead:
    """Convert EntityMappingModel to EntityMappingRead schema."""
    return EntityMappingRead(
        id=model.id,
        tenant_id=model.tenant_id,
        entity_type=EntityType(model.entity_type),
        local_id=model.local_id,
        remote_id=model.remote_id,
        remote_version_token=model.remote_version_token,
        last_synced_at=model.last_synced_at,
        sync_status=SyncStatus(model.sync_status),
        sync_error=model.sync_error,
    )


def _chunks(values: Sequence[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


class EntityMappingStore:
    """Async store for entity mappings.

    Args:
        session_factory: Callable yielding AsyncSession (e.g. get_session).
        chunk_size: Maximum ids per IN query for batched lookups.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._session_factory = session_factory
        self._chunk_size = chunk_size
        self._clock = clock

    # ── Lookups ─────────────────────────────────────────────────────────

    async def find(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> EntityMappingRead | None:
        """Return the mapping for a local object, or None."""
        try:
            async for session in self._session_factory():
                model = await self._get_by_local(session, tenant_id, entity_type, local_id)
                return _model_to_mapping(model) if model else None
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping lookup failed: {exc}") from exc
        return None

    async def find_by_remote_id(
        self, tenant_id: str, entity_type: EntityType, remote_id: str
    ) -> EntityMappingRead | None:
        """Return the mapping for a remote object, or None."""
        try:
            async for session in self._session_factory():
                stmt = select(EntityMappingModel).where(
                    EntityMappingModel.tenant_id == tenant_id,
                    EntityMappingModel.entity_type == entity_type.value,
                    EntityMappingModel.remote_id == remote_id,
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                return _model_to_mapping(model) if model else None
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping lookup failed: {exc}") from exc
        return None

    async def find_many_by_local_ids(
        self, tenant_id: str, entity_type: EntityType, local_ids: Sequence[str]
    ) -> dict[str, EntityMappingRead]:
        """Batched lookup keyed by local id. Missing ids are absent from the result."""
        mappings = await self._find_many(
            tenant_id, entity_type, EntityMappingModel.local_id, local_ids
        )
        return {m.local_id: m for m in mappings}

    async def find_many_by_remote_ids(
        self, tenant_id: str, entity_type: EntityType, remote_ids: Sequence[str]
    ) -> dict[str, EntityMappingRead]:
        """Batched lookup keyed by remote id. Missing ids are absent from the result."""
        mappings = await self._find_many(
            tenant_id, entity_type, EntityMappingModel.remote_id, remote_ids
        )
        return {m.remote_id: m for m in mappings}

    async def _find_many(
        self,
        tenant_id: str,
        entity_type: EntityType,
        column,
        ids: Sequence[str],
    ) -> list[EntityMappingRead]:
        unique_ids = list(dict.fromkeys(ids))
        merged: list[EntityMappingRead] = []
        for chunk in _chunks(unique_ids, self._chunk_size):
            merged.extend(await self._fetch_chunk(tenant_id, entity_type, column, chunk))
        return merged

    async def _fetch_chunk(
        self,
        tenant_id: str,
        entity_type: EntityType,
        column,
        chunk: list[str],
    ) -> list[EntityMappingRead]:
        """Run one IN query of at most chunk_size ids."""
        try:
            async for session in self._session_factory():
                stmt = select(EntityMappingModel).where(
                    EntityMappingModel.tenant_id == tenant_id,
                    EntityMappingModel.entity_type == entity_type.value,
                    column.in_(chunk),
                )
                result = await session.execute(stmt)
                return [_model_to_mapping(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"batched mapping lookup failed: {exc}") from exc
        return []

    async def list_mappings(
        self,
        tenant_id: str,
        entity_type: EntityType,
        status: SyncStatus | None = None,
        limit: int = 500,
    ) -> list[EntityMappingRead]:
        """List mappings for an entity type, most recently synced first."""
        try:
            async for session in self._session_factory():
                stmt = select(EntityMappingModel).where(
                    EntityMappingModel.tenant_id == tenant_id,
                    EntityMappingModel.entity_type == entity_type.value,
                )
                if status is not None:
                    stmt = stmt.where(EntityMappingModel.sync_status == status.value)
                stmt = stmt.order_by(EntityMappingModel.last_synced_at.desc()).limit(limit)
                result = await session.execute(stmt)
                return [_model_to_mapping(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping listing failed: {exc}") from exc
        return []

    async def get_status(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> SyncStatusView:
        """Sync state of one local object for display."""
        mapping = await self.find(tenant_id, entity_type, local_id)
        if mapping is None:
            return SyncStatusView(is_synced=False)
        return SyncStatusView(
            is_synced=mapping.sync_status == SyncStatus.SYNCED,
            remote_id=mapping.remote_id,
            last_synced_at=mapping.last_synced_at,
            sync_status=mapping.sync_status,
            sync_error=mapping.sync_error,
        )

    # ── Mutations ───────────────────────────────────────────────────────

    async def upsert(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: str,
        remote_id: str,
        version_token: str | None,
    ) -> str:
        """Create or refresh the mapping for ``local_id``.

        Sets status to synced, clears any error and stamps last_synced_at.
        Returns the mapping id.

        Raises:
            ValidationError: ``remote_id`` is already linked to another local object.
            StorageError: The store is unavailable.
        """
        try:
            return await self._upsert_once(tenant_id, entity_type, local_id, remote_id, version_token)
        except IntegrityError:
            # Lost an insert race; the winner's row now exists, update it.
            logger.info(
                "mapping.upsert_conflict_retry",
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                local_id=local_id,
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping upsert failed: {exc}") from exc

        try:
            return await self._upsert_once(tenant_id, entity_type, local_id, remote_id, version_token)
        except IntegrityError as exc:
            raise ValidationError(
                f"remote {entity_type.value} {remote_id} is already linked to another record"
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping upsert failed: {exc}") from exc

    async def _upsert_once(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: str,
        remote_id: str,
        version_token: str | None,
    ) -> str:
        now = self._clock()
        async for session in self._session_factory():
            owner = await session.execute(
                select(EntityMappingModel.local_id).where(
                    EntityMappingModel.tenant_id == tenant_id,
                    EntityMappingModel.entity_type == entity_type.value,
                    EntityMappingModel.remote_id == remote_id,
                )
            )
            owner_local_id = owner.scalar_one_or_none()
            if owner_local_id is not None and owner_local_id != local_id:
                raise ValidationError(
                    f"remote {entity_type.value} {remote_id} is already linked to "
                    f"local {owner_local_id}"
                )

            model = await self._get_by_local(session, tenant_id, entity_type, local_id)
            if model is None:
                model = EntityMappingModel(
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    local_id=local_id,
                    remote_id=remote_id,
                )
                session.add(model)
            model.remote_id = remote_id
            model.remote_version_token = version_token
            model.sync_status = SyncStatus.SYNCED.value
            model.sync_error = None
            model.last_synced_at = now
            try:
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise
            return model.id
        raise StorageError("session factory yielded no session")

    async def mark_error(self, mapping_id: str, message: str) -> None:
        """Flag a mapping as errored. Remote id and version token are preserved."""
        await self._set_status(mapping_id, SyncStatus.ERROR, message)

    async def mark_pending(self, mapping_id: str) -> None:
        """Flag a mapping as mid-update; cleared by the next upsert or mark_error."""
        await self._set_status(mapping_id, SyncStatus.PENDING, None)

    async def _set_status(
        self, mapping_id: str, status: SyncStatus, message: str | None
    ) -> None:
        try:
            async for session in self._session_factory():
                await session.execute(
                    update(EntityMappingModel)
                    .where(EntityMappingModel.id == mapping_id)
                    .values(sync_status=status.value, sync_error=message)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping status update failed: {exc}") from exc

    async def unlink(self, tenant_id: str, entity_type: EntityType, local_id: str) -> bool:
        """Delete the mapping for a local object. Returns True if one existed."""
        try:
            async for session in self._session_factory():
                result = await session.execute(
                    delete(EntityMappingModel).where(
                        EntityMappingModel.tenant_id == tenant_id,
                        EntityMappingModel.entity_type == entity_type.value,
                        EntityMappingModel.local_id == local_id,
                    )
                )
                await session.commit()
                removed = result.rowcount > 0
                if removed:
                    logger.info(
                        "mapping.unlinked",
                        tenant_id=tenant_id,
                        entity_type=entity_type.value,
                        local_id=local_id,
                    )
                return removed
        except SQLAlchemyError as exc:
            raise StorageError(f"mapping unlink failed: {exc}") from exc
        return False

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    async def _get_by_local(
        session: AsyncSession, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> EntityMappingModel | None:
        stmt = select(EntityMappingModel).where(
            EntityMappingModel.tenant_id == tenant_id,
            EntityMappingModel.entity_type == entity_type.value,
            EntityMappingModel.local_id == local_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
