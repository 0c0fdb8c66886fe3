"""REST endpoints for manual sync, run history, sync status and remote webhooks.

- POST /webhooks/accounting: verified change notifications from the
  accounting platform, reconciled in the background after the 200 reply
- POST /sync: start a batch run (409 while one is already running)
- POST /sync/cancel: signal a running batch to stop
- GET  /sync/runs, /sync/stats: audit history
- GET  /sync/status: sync state of one local object

Engine components are read from app.state; a missing component yields 503.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError as PydanticValidationError

from src.ledgersync.config import get_settings
from src.ledgersync.sync.exceptions import SyncError, SyncInProgressError
from src.ledgersync.sync.schemas import (
    BatchSyncRequest,
    EntityType,
    SyncAction,
    SyncRunRead,
    SyncStats,
    SyncStatusView,
    WebhookPayload,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["sync"])

SIGNATURE_HEADER = "intuit-signature"


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_trigger_adapter(request: Request) -> Any:
    """Retrieve SyncTriggerAdapter from app.state, 503 if not available."""
    adapter = getattr(request.app.state, "trigger_adapter", None)
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not available. Adapters may not be configured.",
        )
    return adapter


def _get_runner(request: Request) -> Any:
    """Retrieve SyncRunner from app.state, 503 if not available."""
    runner = getattr(request.app.state, "sync_runner", None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync runner is not available.",
        )
    return runner


def _get_audit_log(request: Request) -> Any:
    """Retrieve SyncAuditLog from app.state, 503 if not available."""
    audit_log = getattr(request.app.state, "audit_log", None)
    if audit_log is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync audit log is not available.",
        )
    return audit_log


def _get_mapping_store(request: Request) -> Any:
    """Retrieve EntityMappingStore from app.state, 503 if not available."""
    store = getattr(request.app.state, "mapping_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entity mapping store is not available.",
        )
    return store


# ── Webhook Parsing ──────────────────────────────────────────────────────────


def verify_signature(body: bytes, signature: str | None, verifier_token: str) -> bool:
    """Check a base64 HMAC-SHA256 signature of the raw body."""
    if not signature or not verifier_token:
        return False
    digest = hmac.new(verifier_token.encode(), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, signature)


def parse_notifications(raw: Any) -> list[WebhookPayload]:
    """Accept a single ``{realmId, entities}`` payload or an eventNotifications envelope."""
    if isinstance(raw, dict) and "eventNotifications" in raw:
        payloads = []
        for notification in raw.get("eventNotifications") or []:
            change = notification.get("dataChangeEvent") or {}
            payloads.append(
                WebhookPayload(
                    realm_id=str(notification.get("realmId", "")),
                    entities=change.get("entities") or [],
                )
            )
        return payloads
    return [WebhookPayload.model_validate(raw)]


async def _process_notifications(adapter: Any, payloads: list[WebhookPayload]) -> None:
    for payload in payloads:
        try:
            await adapter.handle_webhook(payload)
        except SyncError as exc:
            logger.error(
                "webhook.processing_failed",
                realm_id=payload.realm_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/webhooks/accounting")
async def accounting_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    adapter: Any = Depends(_get_trigger_adapter),
) -> dict[str, Any]:
    """Receive change notifications from the accounting platform.

    The signature is verified against the configured verifier token before
    anything is parsed. Reconciliation runs after the response is sent.
    """
    body = await request.body()
    verifier_token = getattr(request.app.state, "webhook_verifier_token", None)
    if verifier_token is None:
        verifier_token = get_settings().WEBHOOK_VERIFIER_TOKEN

    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), verifier_token):
        logger.warning("webhook.signature_rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payloads = parse_notifications(json.loads(body))
    except (ValueError, PydanticValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed notification: {exc}",
        ) from exc

    background_tasks.add_task(_process_notifications, adapter, payloads)
    logger.info(
        "webhook.accepted",
        notifications=len(payloads),
        entities=sum(len(p.entities) for p in payloads),
    )
    return {"status": "accepted", "notifications": len(payloads)}


@router.post("/sync", status_code=status.HTTP_202_ACCEPTED)
async def start_sync(
    body: BatchSyncRequest,
    adapter: Any = Depends(_get_trigger_adapter),
) -> dict[str, Any]:
    """Start a batch sync run in the background."""
    try:
        await adapter.handle_batch(body)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"status": "started", "tenant_id": body.tenant_id, "action": body.action.value}


@router.post("/sync/cancel")
async def cancel_sync(
    tenant_id: str = Query(...),
    action: SyncAction = Query(...),
    runner: Any = Depends(_get_runner),
) -> dict[str, Any]:
    return {"cancelled": runner.cancel(tenant_id, action)}


@router.get("/sync/runs", response_model=list[SyncRunRead])
async def list_runs(
    tenant_id: str = Query(...),
    action: SyncAction | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
    audit_log: Any = Depends(_get_audit_log),
) -> list[SyncRunRead]:
    """Most recent sync runs for a tenant."""
    return await audit_log.list(tenant_id, limit=limit, action=action)


@router.get("/sync/stats", response_model=SyncStats)
async def run_stats(
    tenant_id: str = Query(...),
    audit_log: Any = Depends(_get_audit_log),
) -> SyncStats:
    return await audit_log.stats(tenant_id)


@router.get("/sync/status", response_model=SyncStatusView)
async def sync_status(
    tenant_id: str = Query(...),
    entity_type: EntityType = Query(...),
    local_id: str = Query(...),
    mapping_store: Any = Depends(_get_mapping_store),
) -> SyncStatusView:
    """Sync state of one local object."""
    return await mapping_store.get_status(tenant_id, entity_type, local_id)
