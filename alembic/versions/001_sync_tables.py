"""Sync store: entity_mappings and sync_runs tables.

Revision ID: 001_sync_tables
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "entity_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("local_id", sa.String(128), nullable=False),
        sa.Column("remote_id", sa.String(64), nullable=False),
        sa.Column("remote_version_token", sa.String(64), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="synced"),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "tenant_id", "entity_type", "local_id", name="uq_entity_mapping_local"
        ),
        sa.UniqueConstraint(
            "tenant_id", "entity_type", "remote_id", name="uq_entity_mapping_remote"
        ),
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="started"),
        sa.Column("items_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
    )
    op.create_index("ix_sync_runs_tenant_started", "sync_runs", ["tenant_id", "started_at"])
    op.create_index(
        "ix_sync_runs_tenant_action_status", "sync_runs", ["tenant_id", "action", "status"]
    )


def downgrade() -> None:
    op.drop_index("ix_sync_runs_tenant_action_status", table_name="sync_runs")
    op.drop_index("ix_sync_runs_tenant_started", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_table("entity_mappings")
