"""Async HTTP client for the accounting platform's REST API.

Provides AccountingClient: query/create/update/delete/void against one
tenant's company realm. Every call first asks the TokenProvider for a valid
token; no token means AuthError without touching the network.

Responses are normalized into the sync error taxonomy:
- 401/403 or an AuthenticationFault body  -> AuthError
- any other structured Fault body         -> RemoteBusinessError(code, detail)
- non-2xx without a Fault body            -> HttpError(status)
- timeouts and connection failures        -> TransientError

The client holds no mapping or sync state and never retries; retry policy
belongs to the orchestrator.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

import httpx
import structlog

from src.ledgersync.core.monitoring import track_remote_call
from src.ledgersync.sync.exceptions import (
    AuthError,
    HttpError,
    RemoteBusinessError,
    TransientError,
    ValidationError,
)
from src.ledgersync.sync.schemas import RemoteQueryResult
from src.ledgersync.sync.token_provider import TokenProvider

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 1000


def quote(value: str) -> str:
    """Render ``value`` as a single-quoted literal for a query filter."""
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _parse_fault(body: Any) -> tuple[str, str, str] | None:
    """Extract (fault type, code, detail) from a Fault body, if present."""
    if not isinstance(body, dict):
        return None
    fault = body.get("Fault") or body.get("fault")
    if not isinstance(fault, dict):
        return None
    fault_type = str(fault.get("type", ""))
    errors = fault.get("Error") or fault.get("error") or []
    if not isinstance(errors, list):
        return None
    first = errors[0] if errors and isinstance(errors[0], dict) else {}
    code = str(first.get("code", "")) or fault_type or "unknown"
    detail = first.get("Detail") or first.get("Message") or fault_type or "unknown fault"
    return fault_type, code, str(detail)


class AccountingClient:
    """Async client for the accounting platform.

    Uses httpx.AsyncClient per call with a fixed timeout. Monetary Decimal
    values in payloads are serialized as JSON numbers.

    Args:
        token_provider: Source of per-tenant access tokens.
        base_url: Company API root, e.g. ``https://quickbooks.api.intuit.com/v3/company``.
        minor_version: API minor version sent with every request.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    TIMEOUT = 30.0

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str,
        minor_version: str = "65",
        timeout: float = TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")
        self._minor_version = minor_version
        self._timeout = timeout
        self._transport = transport

    def _client(self, access_token: str) -> httpx.AsyncClient:
        """Create a new httpx client with auth headers."""
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    # ── Operations ──────────────────────────────────────────────────────

    async def query(
        self,
        tenant_id: str,
        entity_kind: str,
        filter_expr: str | None = None,
        max_results: int = 100,
        start_position: int = 1,
    ) -> RemoteQueryResult:
        """Run ``SELECT * FROM <kind>`` with an optional WHERE clause.

        ``max_results`` is clamped to the platform's page-size ceiling.
        """
        page_size = max(1, min(max_results, MAX_PAGE_SIZE))
        start = max(1, start_position)
        statement = f"SELECT * FROM {entity_kind}"
        if filter_expr:
            statement += f" WHERE {filter_expr}"
        statement += f" STARTPOSITION {start} MAXRESULTS {page_size}"

        body = await self._request(
            tenant_id,
            entity_kind,
            "query",
            "GET",
            "query",
            params={"query": statement},
        )
        response = body.get("QueryResponse", {}) if isinstance(body, dict) else {}
        return RemoteQueryResult(
            items=list(response.get(entity_kind, [])),
            total_count=response.get("totalCount"),
            start_position=response.get("startPosition", start),
            max_results=response.get("maxResults", 0),
        )

    async def get(self, tenant_id: str, entity_kind: str, remote_id: str) -> dict[str, Any] | None:
        """Fetch one object by Id, or None if it does not exist."""
        result = await self.query(tenant_id, entity_kind, f"Id = {quote(remote_id)}", max_results=1)
        return result.items[0] if result.items else None

    async def create(self, tenant_id: str, entity_kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Create an object and return it with its assigned Id and SyncToken."""
        body = await self._request(
            tenant_id, entity_kind, "create", "POST", entity_kind.lower(), payload=payload
        )
        created = body.get(entity_kind, {})
        logger.info(
            "accounting.created",
            tenant_id=tenant_id,
            entity_kind=entity_kind,
            remote_id=created.get("Id"),
        )
        return created

    async def update(self, tenant_id: str, entity_kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Sparse-update an object. Payload must carry Id and SyncToken."""
        if not payload.get("Id") or payload.get("SyncToken") in (None, ""):
            raise ValidationError(f"{entity_kind} update requires Id and SyncToken")
        body = await self._request(
            tenant_id,
            entity_kind,
            "update",
            "POST",
            entity_kind.lower(),
            payload={"sparse": True, **payload},
        )
        return body.get(entity_kind, {})

    async def delete(self, tenant_id: str, entity_kind: str, remote_id: str, version_token: str) -> None:
        await self._lifecycle(tenant_id, entity_kind, "delete", remote_id, version_token)

    async def void(self, tenant_id: str, entity_kind: str, remote_id: str, version_token: str) -> dict[str, Any]:
        return await self._lifecycle(tenant_id, entity_kind, "void", remote_id, version_token)

    async def _lifecycle(
        self,
        tenant_id: str,
        entity_kind: str,
        operation: str,
        remote_id: str,
        version_token: str,
    ) -> dict[str, Any]:
        if not remote_id or version_token in (None, ""):
            raise ValidationError(f"{entity_kind} {operation} requires Id and SyncToken")
        body = await self._request(
            tenant_id,
            entity_kind,
            operation,
            "POST",
            entity_kind.lower(),
            params={"operation": operation},
            payload={"Id": remote_id, "SyncToken": version_token},
        )
        logger.info(
            f"accounting.{operation}",
            tenant_id=tenant_id,
            entity_kind=entity_kind,
            remote_id=remote_id,
        )
        return body.get(entity_kind, {})

    # ── Transport ───────────────────────────────────────────────────────

    async def _request(
        self,
        tenant_id: str,
        entity_kind: str,
        operation: str,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        grant = await self._token_provider.get_valid_access_token(tenant_id)
        if grant is None:
            raise AuthError(f"no valid access token for tenant {tenant_id}")

        url = f"{self._base_url}/{grant.realm_id}/{path}"
        query = {**(params or {}), "minorversion": self._minor_version}
        content = json.dumps(payload, default=_json_default) if payload is not None else None

        async with track_remote_call(entity_kind, operation):
            try:
                async with self._client(grant.access_token) as client:
                    response = await client.request(method, url, params=query, content=content)
            except httpx.TimeoutException as exc:
                raise TransientError(f"{entity_kind} {operation} timed out") from exc
            except httpx.TransportError as exc:
                raise TransientError(f"{entity_kind} {operation} transport error: {exc}") from exc

            if not response.is_success:
                self._raise_for_response(response, tenant_id, entity_kind, operation)
            body = response.json() if response.content else {}
            # Some batch-style errors arrive as a 200 carrying a Fault
            fault = _parse_fault(body)
            if fault is not None:
                raise RemoteBusinessError(fault[1], fault[2])
            return body

    @staticmethod
    def _raise_for_response(
        response: httpx.Response,
        tenant_id: str,
        entity_kind: str,
        operation: str,
    ) -> None:
        try:
            body = response.json()
        except ValueError:
            body = None

        fault = _parse_fault(body)
        log = logger.bind(
            tenant_id=tenant_id,
            entity_kind=entity_kind,
            operation=operation,
            status_code=response.status_code,
        )

        if response.status_code in (401, 403) or (fault and fault[0] == "AuthenticationFault"):
            log.warning("accounting.auth_rejected")
            detail = fault[2] if fault else f"HTTP {response.status_code}"
            raise AuthError(f"accounting platform rejected credentials: {detail}")

        if response.status_code >= 500 or response.status_code == 429:
            log.warning("accounting.server_error", fault=fault[1] if fault else None)
            raise HttpError(
                response.status_code,
                f"{entity_kind} {operation} failed: HTTP {response.status_code}",
            )

        if fault is not None:
            _fault_type, code, detail = fault
            log.warning("accounting.fault", code=code, detail=detail)
            raise RemoteBusinessError(code, detail)

        log.warning("accounting.http_error")
        raise HttpError(response.status_code, f"{entity_kind} {operation} failed: HTTP {response.status_code}")
