"""Local record adapter abstract base class -- access to the operational database.

The sync engine never owns business records. It reads them through this
interface and writes back only the partial updates produced by the reverse
transcoders (balances, paid status, payment applications).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from src.ledgersync.sync.schemas import AccountMappingRule, EntityType, LocalRecord


class LocalRecordAdapter(ABC):
    """Abstract interface for reading and patching local business objects.

    Methods:
        get_records: Fetch records by id. Missing ids are simply absent.
        list_by_status: Fetch all records whose status is in ``statuses``.
        apply_remote_update: Patch only the given sync-owned fields.
        get_account_mappings: Tenant ledger account overrides for expenses.
    """

    @abstractmethod
    async def get_records(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_ids: Sequence[str],
    ) -> list[LocalRecord]:
        """Fetch records by id.

        Callers pass at most the storage chunk size per call.
        """
        ...

    @abstractmethod
    async def list_by_status(
        self,
        tenant_id: str,
        entity_type: EntityType,
        statuses: Sequence[str],
    ) -> list[LocalRecord]:
        """Fetch records whose status is one of ``statuses``."""
        ...

    @abstractmethod
    async def apply_remote_update(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: str,
        fields: dict[str, Any],
    ) -> None:
        """Write a partial update. Must not touch fields outside ``fields``."""
        ...

    async def get_account_mappings(self, tenant_id: str) -> list[AccountMappingRule]:
        """Custom ledger account routing for the tenant. Defaults to none."""
        return []
