"""Tests for EntityMappingStore: lookup, batched lookup, upsert, status transitions.

Covers:
- Idempotent upsert keyed by (tenant, entity type, local id)
- Remote id ownership conflicts
- Chunked find_many_by_local_ids / find_many_by_remote_ids
- mark_error / mark_pending keep the remote link
- Tenant isolation, unlink, get_status, list_mappings
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from src.ledgersync.sync.exceptions import StorageError, ValidationError
from src.ledgersync.sync.mapping_store import EntityMappingStore
from src.ledgersync.sync.models import EntityMappingModel
from src.ledgersync.sync.schemas import EntityType, SyncStatus

TENANT = "tenant-alpha"
OTHER_TENANT = "tenant-beta"


async def _count_rows(session_factory) -> int:
    async for session in session_factory():
        result = await session.execute(select(func.count()).select_from(EntityMappingModel))
        return result.scalar_one()
    return 0


# ── Upsert ──────────────────────────────────────────────────────────────────


class TestUpsert:
    """Tests for EntityMappingStore.upsert."""

    async def test_creates_mapping(self, mapping_store):
        mapping_id = await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")

        mapping = await mapping_store.find(TENANT, EntityType.CUSTOMER, "cust-1")
        assert mapping is not None
        assert mapping.id == mapping_id
        assert mapping.remote_id == "501"
        assert mapping.remote_version_token == "0"
        assert mapping.sync_status == SyncStatus.SYNCED
        assert mapping.last_synced_at is not None

    async def test_second_upsert_updates_single_row(self, mapping_store, session_factory):
        """Same local id twice -> one row reflecting the second call."""
        first = await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "900", "0")
        second = await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "901", "7")

        assert first == second
        assert await _count_rows(session_factory) == 1
        mapping = await mapping_store.find(TENANT, EntityType.INVOICE, "inv-1")
        assert mapping.remote_id == "901"
        assert mapping.remote_version_token == "7"

    async def test_upsert_clears_previous_error(self, mapping_store):
        mapping_id = await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "900", "0")
        await mapping_store.mark_error(mapping_id, "boom")

        await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "900", "1")

        mapping = await mapping_store.find(TENANT, EntityType.INVOICE, "inv-1")
        assert mapping.sync_status == SyncStatus.SYNCED
        assert mapping.sync_error is None

    async def test_remote_id_owned_by_other_local_id_rejected(self, mapping_store):
        await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")

        with pytest.raises(ValidationError):
            await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-2", "501", "0")

    async def test_concurrent_upserts_leave_one_row(self, mapping_store, session_factory):
        await asyncio.gather(
            mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0"),
            mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "1"),
        )

        assert await _count_rows(session_factory) == 1

    async def test_same_ids_in_other_tenant_are_independent(self, mapping_store, session_factory):
        await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")
        await mapping_store.upsert(OTHER_TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")

        assert await _count_rows(session_factory) == 2
        assert await mapping_store.find(OTHER_TENANT, EntityType.INVOICE, "cust-1") is None


# ── Lookup ──────────────────────────────────────────────────────────────────


class TestLookup:
    """Tests for single and batched lookups."""

    async def test_find_missing_returns_none(self, mapping_store):
        assert await mapping_store.find(TENANT, EntityType.CUSTOMER, "nope") is None

    async def test_find_by_remote_id(self, mapping_store):
        await mapping_store.upsert(TENANT, EntityType.PAYMENT, "pay-1", "77", "2")

        mapping = await mapping_store.find_by_remote_id(TENANT, EntityType.PAYMENT, "77")
        assert mapping is not None
        assert mapping.local_id == "pay-1"

    async def test_find_many_by_local_ids_chunks_queries(self, session_factory):
        """75 ids -> 3 underlying queries of 30/30/15, one merged map."""
        store = EntityMappingStore(session_factory, chunk_size=30)
        for i in range(75):
            await store.upsert(TENANT, EntityType.CUSTOMER, f"cust-{i}", f"r-{i}", "0")

        chunk_sizes: list[int] = []
        original = store._fetch_chunk

        async def spy(tenant_id, entity_type, column, chunk):
            chunk_sizes.append(len(chunk))
            return await original(tenant_id, entity_type, column, chunk)

        store._fetch_chunk = spy

        result = await store.find_many_by_local_ids(
            TENANT, EntityType.CUSTOMER, [f"cust-{i}" for i in range(75)]
        )

        assert chunk_sizes == [30, 30, 15]
        assert len(result) == 75
        assert result["cust-74"].remote_id == "r-74"

    async def test_find_many_by_remote_ids_keyed_by_remote_id(self, mapping_store):
        await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "900", "0")
        await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-2", "901", "0")

        result = await mapping_store.find_many_by_remote_ids(
            TENANT, EntityType.INVOICE, ["900", "901", "999"]
        )

        assert set(result) == {"900", "901"}
        assert result["901"].local_id == "inv-2"

    async def test_find_many_empty_input_issues_no_query(self, session_factory):
        store = EntityMappingStore(session_factory, chunk_size=30)
        calls = 0

        async def spy(*args):
            nonlocal calls
            calls += 1
            return []

        store._fetch_chunk = spy

        assert await store.find_many_by_local_ids(TENANT, EntityType.CUSTOMER, []) == {}
        assert calls == 0


# ── Status Transitions ──────────────────────────────────────────────────────


class TestStatus:
    """Tests for mark_error, mark_pending, unlink and get_status."""

    async def test_mark_error_keeps_remote_link(self, mapping_store):
        mapping_id = await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "900", "3")

        await mapping_store.mark_error(mapping_id, "[6000] Business validation error")

        mapping = await mapping_store.find(TENANT, EntityType.INVOICE, "inv-1")
        assert mapping.sync_status == SyncStatus.ERROR
        assert mapping.sync_error == "[6000] Business validation error"
        assert mapping.remote_id == "900"
        assert mapping.remote_version_token == "3"

    async def test_mark_pending(self, mapping_store):
        mapping_id = await mapping_store.upsert(TENANT, EntityType.INVOICE, "inv-1", "900", "3")

        await mapping_store.mark_pending(mapping_id)

        mapping = await mapping_store.find(TENANT, EntityType.INVOICE, "inv-1")
        assert mapping.sync_status == SyncStatus.PENDING

    async def test_unlink(self, mapping_store):
        await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")

        assert await mapping_store.unlink(TENANT, EntityType.CUSTOMER, "cust-1") is True
        assert await mapping_store.unlink(TENANT, EntityType.CUSTOMER, "cust-1") is False
        assert await mapping_store.find(TENANT, EntityType.CUSTOMER, "cust-1") is None

    async def test_get_status_unmapped(self, mapping_store):
        view = await mapping_store.get_status(TENANT, EntityType.CUSTOMER, "cust-1")
        assert view.is_synced is False
        assert view.remote_id is None

    async def test_get_status_errored(self, mapping_store):
        mapping_id = await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")
        await mapping_store.mark_error(mapping_id, "rejected")

        view = await mapping_store.get_status(TENANT, EntityType.CUSTOMER, "cust-1")
        assert view.is_synced is False
        assert view.remote_id == "501"
        assert view.sync_error == "rejected"

    async def test_list_mappings_filters_by_status(self, mapping_store):
        await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-1", "501", "0")
        failed_id = await mapping_store.upsert(TENANT, EntityType.CUSTOMER, "cust-2", "502", "0")
        await mapping_store.mark_error(failed_id, "rejected")

        errored = await mapping_store.list_mappings(
            TENANT, EntityType.CUSTOMER, status=SyncStatus.ERROR
        )
        everything = await mapping_store.list_mappings(TENANT, EntityType.CUSTOMER)

        assert [m.local_id for m in errored] == ["cust-2"]
        assert len(everything) == 2


# ── Storage Failures ────────────────────────────────────────────────────────


class TestStorageErrors:
    """Storage-layer failures surface as StorageError."""

    async def test_missing_tables_raise_storage_error(self, tmp_path):
        from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")

        async def factory():
            async with AsyncSession(engine, expire_on_commit=False) as session:
                yield session

        store = EntityMappingStore(factory)
        try:
            with pytest.raises(StorageError):
                await store.find(TENANT, EntityType.CUSTOMER, "cust-1")
        finally:
            await engine.dispose()
