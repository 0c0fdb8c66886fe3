"""Tests for SyncTriggerAdapter routing of batch requests, local events and webhooks."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from src.ledgersync.sync.schemas import (
    BatchSyncRequest,
    EntityType,
    ItemOutcome,
    ItemResult,
    LocalEvent,
    LocalEventKind,
    SyncAction,
    WebhookEntity,
    WebhookPayload,
)
from src.ledgersync.sync.triggers import SyncTriggerAdapter

TENANT = "tenant-alpha"
REALM = "realm-123"


def _make_adapter(token_provider, deferred=None) -> tuple[SyncTriggerAdapter, MagicMock, MagicMock]:
    orchestrator = MagicMock()
    orchestrator.push_one = AsyncMock(return_value=ItemResult(
        entity_type=EntityType.INVOICE, local_id="inv-1", outcome=ItemOutcome.CREATED
    ))
    orchestrator.reconcile_remote = AsyncMock(return_value=ItemResult(
        entity_type=EntityType.CUSTOMER, remote_id="501", outcome=ItemOutcome.UPDATED
    ))
    runner = MagicMock()
    runner.submit = AsyncMock(return_value="task")
    adapter = SyncTriggerAdapter(orchestrator, runner, token_provider, deferred=deferred)
    return adapter, orchestrator, runner


def _make_webhook(*entities: tuple[str, str, str], realm_id: str = REALM) -> WebhookPayload:
    return WebhookPayload(
        realm_id=realm_id,
        entities=[WebhookEntity(name=n, id=i, operation=op) for n, i, op in entities],
    )


# ── Batch / Local Events ────────────────────────────────────────────────────


class TestBatchAndLocalEvents:
    """Manual requests go to the runner; local events push one item."""

    async def test_batch_request_submitted(self, token_provider):
        adapter, _, runner = _make_adapter(token_provider)

        task = await adapter.handle_batch(BatchSyncRequest(
            action=SyncAction.SYNC_INVOICES, tenant_id=TENANT, local_ids=["inv-1"]
        ))

        assert task == "task"
        runner.submit.assert_awaited_once_with(TENANT, SyncAction.SYNC_INVOICES, local_ids=["inv-1"])

    async def test_local_event_pushes_one(self, token_provider):
        adapter, orchestrator, _ = _make_adapter(token_provider)

        result = await adapter.handle_local_event(LocalEvent(
            tenant_id=TENANT,
            entity_type=EntityType.INVOICE,
            local_id="inv-1",
            event=LocalEventKind.SENT,
        ))

        assert result.outcome == ItemOutcome.CREATED
        orchestrator.push_one.assert_awaited_once_with(TENANT, EntityType.INVOICE, "inv-1")


# ── Webhooks ────────────────────────────────────────────────────────────────


class TestWebhooks:
    """Remote notifications reconcile supported entities."""

    async def test_unknown_realm_ignored(self, token_provider):
        adapter, orchestrator, _ = _make_adapter(token_provider)

        results = await adapter.handle_webhook(_make_webhook(("Customer", "501", "Update"), realm_id="other"))

        assert results == []
        orchestrator.reconcile_remote.assert_not_called()

    async def test_supported_entities_reconciled(self, token_provider):
        adapter, orchestrator, _ = _make_adapter(token_provider)

        results = await adapter.handle_webhook(_make_webhook(
            ("Customer", "501", "Update"),
            ("Vendor", "9", "Create"),
            ("Purchase", "33", "Delete"),
        ))

        assert len(results) == 2
        calls = [c.args for c in orchestrator.reconcile_remote.await_args_list]
        assert calls == [
            (TENANT, EntityType.CUSTOMER, "501", "Update"),
            (TENANT, EntityType.EXPENSE, "33", "Delete"),
        ]

    async def test_blocked_payment_deferred(self, token_provider):
        deferred = MagicMock()
        deferred.defer = AsyncMock(return_value="1-0")
        adapter, orchestrator, _ = _make_adapter(token_provider, deferred=deferred)
        orchestrator.reconcile_remote = AsyncMock(return_value=ItemResult(
            entity_type=EntityType.PAYMENT,
            remote_id="77",
            outcome=ItemOutcome.SKIPPED,
            detail={"applied_invoices": [], "unmapped_remote_invoices": ["900"]},
        ))

        await adapter.handle_webhook(_make_webhook(("Payment", "77", "Create")))

        deferred.defer.assert_awaited_once_with(
            TENANT, EntityType.PAYMENT, "77", reason="linked invoices not mapped"
        )

    async def test_resolved_payment_not_deferred(self, token_provider):
        deferred = MagicMock()
        deferred.defer = AsyncMock()
        adapter, orchestrator, _ = _make_adapter(token_provider, deferred=deferred)
        orchestrator.reconcile_remote = AsyncMock(return_value=ItemResult(
            entity_type=EntityType.PAYMENT,
            remote_id="77",
            outcome=ItemOutcome.UPDATED,
            detail={"applied_invoices": ["inv-1"], "unmapped_remote_invoices": []},
        ))

        await adapter.handle_webhook(_make_webhook(("Payment", "77", "Update")))

        deferred.defer.assert_not_called()
