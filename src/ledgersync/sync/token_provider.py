"""Token provider abstract base class -- source of access tokens per tenant.

The OAuth handshake and token refresh live outside this package. The sync
engine only needs a currently valid access token for a tenant, and a way to
route a webhook's realm id back to the tenant that owns it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.ledgersync.sync.schemas import TokenGrant


class TokenProvider(ABC):
    """Abstract interface for access token lookup.

    Methods:
        get_valid_access_token: Token + realm for a tenant, or None when the
            tenant is not connected or its grant can no longer be refreshed.
        resolve_tenant: Tenant id owning a remote realm id, or None.
        connected_tenants: Tenants with an active connection (for scheduled sync).
    """

    @abstractmethod
    async def get_valid_access_token(self, tenant_id: str) -> TokenGrant | None:
        """Return a currently valid token, or None if sync is unauthorized."""
        ...

    @abstractmethod
    async def resolve_tenant(self, realm_id: str) -> str | None:
        """Map a remote realm id to the tenant that connected it."""
        ...

    async def connected_tenants(self) -> list[str]:
        """Tenants eligible for scheduled sync. Override to enable scheduling."""
        return []
