"""Shared fixtures for the sync engine tests.

Provides:
- A file-backed SQLite database (aiosqlite) with the sync tables created
- session_factory / mapping_store / audit_log bound to that database
- InMemoryLocalRecords: LocalRecordAdapter test double
- StaticTokenProvider: TokenProvider test double
- FakeAccountingClient: scripted remote platform with Id/SyncToken semantics
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import AsyncGenerator, Callable, Sequence
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from src.ledgersync.core.database import Base
from src.ledgersync.sync import models  # noqa: F401  registers tables
from src.ledgersync.sync.audit_log import SyncAuditLog
from src.ledgersync.sync.exceptions import RemoteBusinessError
from src.ledgersync.sync.local_records import LocalRecordAdapter
from src.ledgersync.sync.mapping_store import EntityMappingStore
from src.ledgersync.sync.schemas import (
    AccountMappingRule,
    EntityType,
    LocalRecord,
    RemoteQueryResult,
    TokenGrant,
)
from src.ledgersync.sync.token_provider import TokenProvider

TENANT = "tenant-alpha"
OTHER_TENANT = "tenant-beta"
REALM = "realm-123"


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test."""
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledgersync.db'}",
        poolclass=NullPool,
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> Callable[[], AsyncGenerator[AsyncSession, None]]:
    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def mapping_store(session_factory) -> EntityMappingStore:
    return EntityMappingStore(session_factory, chunk_size=30)


@pytest.fixture
def audit_log(session_factory) -> SyncAuditLog:
    return SyncAuditLog(session_factory, error_cap=100)


# ── Test Doubles ─────────────────────────────────────────────────────────────


class InMemoryLocalRecords(LocalRecordAdapter):
    """In-memory LocalRecordAdapter for testing without the operational database."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, EntityType], dict[str, LocalRecord]] = defaultdict(dict)
        self.account_rules: dict[str, list[AccountMappingRule]] = {}
        self.updates: list[tuple[str, EntityType, str, dict[str, Any]]] = []
        self.get_calls: list[list[str]] = []

    def add(self, tenant_id: str, entity_type: EntityType, *records: LocalRecord) -> None:
        for record in records:
            self._records[(tenant_id, entity_type)][record.id] = record

    def record(self, tenant_id: str, entity_type: EntityType, local_id: str) -> LocalRecord:
        return self._records[(tenant_id, entity_type)][local_id]

    async def get_records(
        self, tenant_id: str, entity_type: EntityType, local_ids: Sequence[str]
    ) -> list[LocalRecord]:
        self.get_calls.append(list(local_ids))
        bucket = self._records[(tenant_id, entity_type)]
        return [bucket[i] for i in local_ids if i in bucket]

    async def list_by_status(
        self, tenant_id: str, entity_type: EntityType, statuses: Sequence[str]
    ) -> list[LocalRecord]:
        bucket = self._records[(tenant_id, entity_type)]
        return [r for r in bucket.values() if r.status in statuses]

    async def apply_remote_update(
        self, tenant_id: str, entity_type: EntityType, local_id: str, fields: dict[str, Any]
    ) -> None:
        self.updates.append((tenant_id, entity_type, local_id, fields))
        bucket = self._records[(tenant_id, entity_type)]
        bucket[local_id] = bucket[local_id].model_copy(update=fields)

    async def get_account_mappings(self, tenant_id: str) -> list[AccountMappingRule]:
        return self.account_rules.get(tenant_id, [])


class StaticTokenProvider(TokenProvider):
    """TokenProvider returning fixed grants; tenants without one are unauthorized."""

    def __init__(self, grants: dict[str, TokenGrant] | None = None) -> None:
        self.grants = grants if grants is not None else {
            TENANT: TokenGrant(access_token="token-alpha", realm_id=REALM),
        }

    async def get_valid_access_token(self, tenant_id: str) -> TokenGrant | None:
        return self.grants.get(tenant_id)

    async def resolve_tenant(self, realm_id: str) -> str | None:
        for tenant_id, grant in self.grants.items():
            if grant.realm_id == realm_id:
                return tenant_id
        return None

    async def connected_tenants(self) -> list[str]:
        return list(self.grants)


class FakeAccountingClient:
    """Scripted accounting platform.

    Objects are stored per remote kind. create assigns an Id and SyncToken
    "0"; update requires the current SyncToken and bumps it. Failures can be
    queued per (kind, operation) with fail(), or computed from the payload
    with a reject hook.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[BaseException]] = defaultdict(list)
        self.reject: Callable[[str, dict[str, Any]], BaseException | None] | None = None
        self._next_id = 100

    def fail(self, kind: str, operation: str, *errors: BaseException) -> None:
        self.failures[(kind, operation)].extend(errors)

    def seed(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        stored = {"SyncToken": "0", **obj}
        if "Id" not in stored:
            stored["Id"] = self._new_id()
        self.objects[kind][stored["Id"]] = stored
        return stored

    def count(self, kind: str, operation: str) -> int:
        return self.calls.count((kind, operation))

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _record(self, kind: str, operation: str, payload: dict[str, Any] | None = None) -> None:
        self.calls.append((kind, operation))
        queued = self.failures.get((kind, operation))
        if queued:
            raise queued.pop(0)
        if payload is not None and self.reject is not None:
            error = self.reject(kind, payload)
            if error is not None:
                raise error

    async def query(
        self,
        tenant_id: str,
        entity_kind: str,
        filter_expr: str | None = None,
        max_results: int = 100,
        start_position: int = 1,
    ) -> RemoteQueryResult:
        self._record(entity_kind, "query")
        items = list(self.objects[entity_kind].values())
        if filter_expr and "LastUpdatedTime" not in filter_expr:
            field, _, literal = filter_expr.partition(" = ")
            value = literal.strip("'")
            items = [item for item in items if _lookup(item, field) == value]
        page = items[start_position - 1:start_position - 1 + max_results]
        return RemoteQueryResult(
            items=[dict(item) for item in page],
            total_count=len(items),
            start_position=start_position,
            max_results=max_results,
        )

    async def get(self, tenant_id: str, entity_kind: str, remote_id: str) -> dict[str, Any] | None:
        self._record(entity_kind, "get")
        found = self.objects[entity_kind].get(remote_id)
        return dict(found) if found else None

    async def create(self, tenant_id: str, entity_kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._record(entity_kind, "create", payload)
        stored = {**payload, "Id": self._new_id(), "SyncToken": "0"}
        self.objects[entity_kind][stored["Id"]] = stored
        return dict(stored)

    async def update(self, tenant_id: str, entity_kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._record(entity_kind, "update", payload)
        current = self.objects[entity_kind].get(payload["Id"])
        if current is None:
            raise RemoteBusinessError("610", "Object Not Found")
        if payload["SyncToken"] != current["SyncToken"]:
            raise RemoteBusinessError("5010", "Stale Object Error")
        stored = {**current, **payload, "SyncToken": str(int(current["SyncToken"]) + 1)}
        self.objects[entity_kind][stored["Id"]] = stored
        return dict(stored)

    async def void(
        self, tenant_id: str, entity_kind: str, remote_id: str, version_token: str
    ) -> dict[str, Any]:
        self._record(entity_kind, "void")
        current = self.objects[entity_kind][remote_id]
        stored = {
            **current,
            "Balance": 0,
            "TotalAmt": 0,
            "SyncToken": str(int(current["SyncToken"]) + 1),
        }
        self.objects[entity_kind][remote_id] = stored
        return dict(stored)


def _lookup(item: dict[str, Any], field: str) -> Any:
    value = item.get(field.strip())
    if isinstance(value, dict):
        return value.get("Address") or value.get("value")
    return value


@pytest.fixture
def records() -> InMemoryLocalRecords:
    return InMemoryLocalRecords()


@pytest.fixture
def token_provider() -> StaticTokenProvider:
    return StaticTokenProvider()


@pytest.fixture
def remote() -> FakeAccountingClient:
    return FakeAccountingClient()

