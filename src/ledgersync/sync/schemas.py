"""Pydantic schemas for the accounting sync engine.

Defines all structured types that cross module boundaries:
- Enums: EntityType, SyncAction, SyncStatus, RunStatus, ItemOutcome, LocalEventKind
- Persistence reads: EntityMappingRead, SyncRunRead, SyncStatusView, SyncStats
- Local business objects: LocalCustomer, LocalInvoice, LocalExpense, LocalPayment
- Transcoding inputs: RemoteRef, AccountMappingRule, SyncDependencies
- Results: ItemResult, SyncReport, LinkReport, RemoteQueryResult
- Trigger inputs: BatchSyncRequest, LocalEvent, WebhookEntity, WebhookPayload
- Token provider output: TokenGrant

Local objects carry only the fields needed for transcoding plus the
sync-owned fields the reverse transcoders write back (balances, paid status).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Logical entity kinds kept in sync."""

    CUSTOMER = "customer"
    INVOICE = "invoice"
    PAYMENT = "payment"
    EXPENSE = "expense"


class SyncAction(str, Enum):
    """Orchestrated run kinds recorded in the audit log."""

    SYNC_CUSTOMERS = "sync_customers"
    SYNC_INVOICES = "sync_invoices"
    SYNC_EXPENSES = "sync_expenses"
    SYNC_PAYMENTS = "sync_payments"
    FULL_SYNC = "full_sync"


ACTION_FOR_ENTITY: dict[EntityType, SyncAction] = {
    EntityType.CUSTOMER: SyncAction.SYNC_CUSTOMERS,
    EntityType.INVOICE: SyncAction.SYNC_INVOICES,
    EntityType.EXPENSE: SyncAction.SYNC_EXPENSES,
    EntityType.PAYMENT: SyncAction.SYNC_PAYMENTS,
}

ENTITY_FOR_ACTION: dict[SyncAction, EntityType] = {
    action: entity for entity, action in ACTION_FOR_ENTITY.items()
}


class SyncStatus(str, Enum):
    """Per-mapping sync state."""

    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


class RunStatus(str, Enum):
    """Lifecycle of an audit log entry."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemOutcome(str, Enum):
    """What happened to one entity within a run."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class LocalEventKind(str, Enum):
    """Local status transitions that trigger a single-item push."""

    APPROVED = "approved"
    SENT = "sent"


# ── Persistence Reads ───────────────────────────────────────────────────────


class EntityMappingRead(BaseModel):
    """Durable link between one local object and one remote object."""

    id: str
    tenant_id: str
    entity_type: EntityType
    local_id: str
    remote_id: str
    remote_version_token: str | None = None
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    sync_error: str | None = None


class SyncRunRead(BaseModel):
    """One orchestrated batch operation."""

    id: str
    tenant_id: str
    action: SyncAction
    status: RunStatus
    items_synced: int = 0
    items_failed: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None


class SyncStatusView(BaseModel):
    """Sync state of a single local object as shown to users."""

    is_synced: bool
    remote_id: str | None = None
    last_synced_at: datetime | None = None
    sync_status: SyncStatus | None = None
    sync_error: str | None = None


class SyncStats(BaseModel):
    """Aggregate run counters for a tenant over a window."""

    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    in_progress_runs: int = 0
    items_synced: int = 0
    items_failed: int = 0
    last_run_at: datetime | None = None


# ── Local Business Objects ──────────────────────────────────────────────────


class LocalAddress(BaseModel):
    street: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    type: str = "billing"
    is_default: bool = False


class LocalNote(BaseModel):
    content: str
    pinned: bool = False


class LocalCustomer(BaseModel):
    """Client record in the operational database."""

    id: str
    display_name: str
    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    is_commercial: bool = False
    email: str | None = None
    phone: str | None = None
    status: str = "active"
    addresses: list[LocalAddress] = Field(default_factory=list)
    notes: list[LocalNote] = Field(default_factory=list)
    # Sync-owned
    balance: Decimal | None = None


class LocalLineItem(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")
    amount: Decimal | None = None

    @property
    def line_total(self) -> Decimal:
        if self.amount is not None:
            return self.amount
        return self.quantity * self.unit_price


class LocalInvoice(BaseModel):
    """Customer invoice in the operational database."""

    id: str
    number: str | None = None
    customer_id: str
    status: str = "draft"
    issue_date: date
    due_date: date | None = None
    line_items: list[LocalLineItem] = Field(default_factory=list)
    subtotal: Decimal | None = None
    total: Decimal
    customer_email: str | None = None
    customer_message: str | None = None
    internal_notes: str | None = None
    # Sync-owned
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal | None = None
    paid_at: datetime | None = None
    payment_applications: dict[str, Decimal] = Field(default_factory=dict)


class LocalExpense(BaseModel):
    """Field expense recorded in the operational database."""

    id: str
    status: str = "pending"
    category: str = "other"
    amount: Decimal
    date: date
    description: str | None = None
    vendor_name: str | None = None
    vendor_remote_id: str | None = None
    payment_method: str | None = None
    billable: bool = False
    customer_id: str | None = None
    notes: str | None = None


class LocalPaymentApplication(BaseModel):
    invoice_id: str
    amount: Decimal


class LocalPayment(BaseModel):
    """Customer payment recorded in the operational database."""

    id: str
    customer_id: str
    status: str = "completed"
    amount: Decimal
    date: date
    reference: str | None = None
    notes: str | None = None
    applications: list[LocalPaymentApplication] = Field(default_factory=list)


LocalRecord = LocalCustomer | LocalInvoice | LocalExpense | LocalPayment


# ── Transcoding Inputs ──────────────────────────────────────────────────────


class RemoteRef(BaseModel):
    """Reference to a remote object (``{"value": id, "name": label}``)."""

    value: str
    name: str | None = None

    def to_payload(self) -> dict[str, str]:
        ref = {"value": self.value}
        if self.name:
            ref["name"] = self.name
        return ref


class AccountMappingRule(BaseModel):
    """Tenant override routing a local value to a remote ledger account."""

    source_type: str = "expense_category"
    source_value: str
    target_account_id: str
    target_account_name: str | None = None


class SyncDependencies(BaseModel):
    """Cross-entity remote references resolved by the orchestrator."""

    customer_ref: RemoteRef | None = None
    invoice_refs: dict[str, str] = Field(default_factory=dict)
    bank_account: RemoteRef | None = None
    expense_account: RemoteRef | None = None


# ── Results ─────────────────────────────────────────────────────────────────


class ItemResult(BaseModel):
    """Outcome of syncing one entity."""

    entity_type: EntityType
    local_id: str | None = None
    remote_id: str | None = None
    outcome: ItemOutcome
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class SyncReport(BaseModel):
    """Aggregated outcome of an orchestrated run."""

    run_id: str
    tenant_id: str
    action: SyncAction
    status: RunStatus
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def items_synced(self) -> int:
        return self.created + self.updated


class LinkReport(BaseModel):
    """Outcome of linking local customers to existing remote customers."""

    linked: int = 0
    not_found: int = 0
    errors: list[str] = Field(default_factory=list)


class RemoteQueryResult(BaseModel):
    """One page of a remote query."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int | None = None
    start_position: int = 1
    max_results: int = 0


class TokenGrant(BaseModel):
    """Currently valid access token for a tenant."""

    access_token: str
    realm_id: str


# ── Trigger Inputs ──────────────────────────────────────────────────────────


class BatchSyncRequest(BaseModel):
    """Manual batch sync request."""

    action: SyncAction
    tenant_id: str
    local_ids: list[str] | None = None


class LocalEvent(BaseModel):
    """Local status transition that should push one entity."""

    tenant_id: str
    entity_type: EntityType
    local_id: str
    event: LocalEventKind


class WebhookEntity(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    id: str
    operation: str
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")


class WebhookPayload(BaseModel):
    """Remote change notification for one realm."""

    model_config = ConfigDict(populate_by_name=True)

    realm_id: str = Field(alias="realmId")
    entities: list[WebhookEntity] = Field(default_factory=list)
