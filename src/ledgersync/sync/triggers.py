"""Trigger adapter -- turns outside stimuli into orchestrator calls.

Three entry points:
- handle_batch: manual batch request -> background run via SyncRunner
- handle_local_event: local status transition -> push_one
- handle_webhook: remote change notification -> reconcile_remote per entity

Webhook payments whose invoices are not mapped yet are parked on the
DeferredSyncQueue instead of being dropped.
"""

from __future__ import annotations

import asyncio

import structlog

from src.ledgersync.sync.deferred import DeferredSyncQueue, needs_deferral
from src.ledgersync.sync.orchestrator import SyncOrchestrator
from src.ledgersync.sync.runner import SyncRunner
from src.ledgersync.sync.schemas import (
    BatchSyncRequest,
    ItemResult,
    LocalEvent,
    SyncReport,
    WebhookPayload,
)
from src.ledgersync.sync.token_provider import TokenProvider
from src.ledgersync.sync.transcoders import ENTITY_FOR_REMOTE_KIND

logger = structlog.get_logger(__name__)


class SyncTriggerAdapter:
    """Routes batch requests, local events and webhooks into the engine.

    Args:
        orchestrator: SyncOrchestrator for single-item work.
        runner: SyncRunner for background batch runs.
        token_provider: Resolves webhook realm ids to tenants.
        deferred: Optional queue for notifications blocked on a prerequisite.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        runner: SyncRunner,
        token_provider: TokenProvider,
        deferred: DeferredSyncQueue | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._runner = runner
        self._token_provider = token_provider
        self._deferred = deferred

    async def handle_batch(self, request: BatchSyncRequest) -> asyncio.Task[SyncReport]:
        """Start a background run. Raises SyncInProgressError on overlap."""
        return await self._runner.submit(
            request.tenant_id, request.action, local_ids=request.local_ids
        )

    async def handle_local_event(self, event: LocalEvent) -> ItemResult:
        logger.info(
            "trigger.local_event",
            tenant_id=event.tenant_id,
            entity_type=event.entity_type.value,
            local_id=event.local_id,
            trigger_event=event.event.value,
        )
        return await self._orchestrator.push_one(event.tenant_id, event.entity_type, event.local_id)

    async def handle_webhook(self, payload: WebhookPayload) -> list[ItemResult]:
        """Reconcile every supported entity in one realm's notification.

        Unknown realms and unsupported entity kinds are ignored.
        """
        tenant_id = await self._token_provider.resolve_tenant(payload.realm_id)
        if tenant_id is None:
            logger.warning("trigger.webhook_unknown_realm", realm_id=payload.realm_id)
            return []

        results: list[ItemResult] = []
        for entity in payload.entities:
            entity_type = ENTITY_FOR_REMOTE_KIND.get(entity.name)
            if entity_type is None:
                logger.debug("trigger.webhook_entity_ignored", entity_kind=entity.name)
                continue

            result = await self._orchestrator.reconcile_remote(
                tenant_id, entity_type, entity.id, entity.operation
            )
            results.append(result)

            if needs_deferral(result):
                if self._deferred is None:
                    logger.warning(
                        "trigger.webhook_prerequisite_missing",
                        tenant_id=tenant_id,
                        remote_id=entity.id,
                        unmapped=result.detail.get("unmapped_remote_invoices"),
                    )
                    continue
                await self._deferred.defer(
                    tenant_id,
                    entity_type,
                    entity.id,
                    reason="linked invoices not mapped",
                )

        logger.info(
            "trigger.webhook_processed",
            tenant_id=tenant_id,
            realm_id=payload.realm_id,
            entities=len(payload.entities),
            reconciled=len(results),
        )
        return results
