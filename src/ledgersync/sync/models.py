"""Sync persistence models -- entity mappings and the run audit log.

Two SQLAlchemy models on the shared Base:
- EntityMappingModel: local id <-> remote id link per tenant and entity type
- SyncRunModel: one row per orchestrated run (started -> completed|failed)

Column types stay dialect-neutral so the same models run on PostgreSQL in
production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.ledgersync.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class EntityMappingModel(Base):
    """Durable link between a local object and its remote counterpart.

    At most one row per (tenant, entity type, local id) and per
    (tenant, entity type, remote id), enforced by unique constraints so
    concurrent upserts resolve at the database.
    """

    __tablename__ = "entity_mappings"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "local_id",
            name="uq_entity_mapping_local",
        ),
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "remote_id",
            name="uq_entity_mapping_remote",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    local_id: Mapped[str] = mapped_column(String(128), nullable=False)
    remote_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_version_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default="synced")
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class SyncRunModel(Base):
    """Audit log entry for one orchestrated sync run.

    completed_at and duration_ms stay NULL until the single terminal
    update (complete or fail).
    """

    __tablename__ = "sync_runs"
    __table_args__ = (
        Index("ix_sync_runs_tenant_started", "tenant_id", "started_at"),
        Index("ix_sync_runs_tenant_action_status", "tenant_id", "action", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="started")
    items_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
