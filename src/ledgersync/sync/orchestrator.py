"""Sync orchestrator -- drives push and pull runs against the accounting platform.

Per-item state machine: NotMapped -> Creating -> Mapped, Mapped -> Updating
-> Mapped, anything -> Failed. Failed is not sticky; the next run retries.

Run semantics:
- Every batch is wrapped in one SyncRun (started -> completed|failed).
- Invoices, payments and billable expenses need their customer mapped first;
  a gap counts as skipped, never failed.
- AuthError and StorageError unwind the run: it is recorded as failed and
  the error is re-raised. Every other error is recorded against its item
  and the batch continues.
- Items run on a bounded worker pool. Ordering is not guaranteed. Work on
  one local record (a push, or a payment applied to an invoice) holds that
  record's lock, and a push re-reads the mapping under it.
- Remote calls are retried with exponential backoff only when the error is
  retryable (timeouts, 5xx, 429).
- Cancellation lets in-flight items finish, then fails the run as "cancelled".

Pull is an update path only: remote objects without a mapping are skipped,
never created locally.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.ledgersync.config import Settings
from src.ledgersync.core.monitoring import record_run, sync_items_total, sync_runs_in_progress
from src.ledgersync.sync.audit_log import SyncAuditLog
from src.ledgersync.sync.client import AccountingClient, quote
from src.ledgersync.sync.exceptions import (
    PrerequisiteError,
    RemoteBusinessError,
    StorageError,
    SyncCancelledError,
    SyncInProgressError,
    ValidationError,
    aborts_run,
    is_retryable,
)
from src.ledgersync.sync.local_records import LocalRecordAdapter
from src.ledgersync.sync.mapping_store import EntityMappingStore
from src.ledgersync.sync.schemas import (
    ACTION_FOR_ENTITY,
    AccountMappingRule,
    EntityMappingRead,
    EntityType,
    ItemOutcome,
    ItemResult,
    LinkReport,
    LocalInvoice,
    LocalRecord,
    RemoteRef,
    RunStatus,
    SyncAction,
    SyncDependencies,
    SyncReport,
    SyncStatusView,
)
from src.ledgersync.sync.transcoders import (
    TRANSCODERS,
    apply_payment_to_invoice,
    default_expense_account_name,
    expense_account_for,
    payment_applications,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Status sets that define the default working set of a push batch.
WORKING_SET_STATUSES: dict[EntityType, tuple[str, ...]] = {
    EntityType.CUSTOMER: ("active",),
    EntityType.INVOICE: ("sent", "viewed", "partial"),
    EntityType.EXPENSE: ("approved", "paid"),
    EntityType.PAYMENT: ("completed",),
}

# Statuses a record must be in to be pushed at all. None means any.
PUSHABLE_STATUSES: dict[EntityType, frozenset[str] | None] = {
    EntityType.CUSTOMER: None,
    EntityType.INVOICE: frozenset({"sent", "viewed", "partial", "overdue", "paid"}),
    EntityType.EXPENSE: frozenset({"approved", "paid"}),
    EntityType.PAYMENT: frozenset({"completed"}),
}

FULL_SYNC_PUSH_ORDER = (
    EntityType.CUSTOMER,
    EntityType.INVOICE,
    EntityType.EXPENSE,
    EntityType.PAYMENT,
)
# Payments before invoices: invoice balances are absolute and land last.
FULL_SYNC_PULL_ORDER = (
    EntityType.CUSTOMER,
    EntityType.PAYMENT,
    EntityType.INVOICE,
)

STALE_OBJECT_CODE = "5010"

# Skip reasons carried in ItemResult.detail["reason"]
REASON_STATUS = "status"
REASON_NOT_FOUND = "not_found"
REASON_NOT_MAPPED = "not_mapped"
REASON_PREREQUISITE = "prerequisite"
REASON_DELETED_REMOTELY = "deleted_remotely"
REASON_RUN_IN_PROGRESS = "run_in_progress"


# ── Run Helpers ─────────────────────────────────────────────────────────────


class _RunAccumulator:
    """Lock-protected counters shared by the workers of one run."""

    def __init__(self, tenant_id: str, error_cap: int) -> None:
        self._tenant_id = tenant_id
        self._error_cap = error_cap
        self._lock = asyncio.Lock()
        self.created = 0
        self.updated = 0
        self.skipped = 0
        self.failed = 0
        self.errors: list[str] = []

    @property
    def items_synced(self) -> int:
        return self.created + self.updated

    async def add(self, result: ItemResult) -> None:
        async with self._lock:
            if result.outcome == ItemOutcome.CREATED:
                self.created += 1
            elif result.outcome == ItemOutcome.UPDATED:
                self.updated += 1
            elif result.outcome == ItemOutcome.SKIPPED:
                self.skipped += 1
            else:
                self.failed += 1
                if len(self.errors) < self._error_cap:
                    ref = result.local_id or result.remote_id or "?"
                    self.errors.append(f"{result.entity_type.value} {ref}: {result.error}")
        sync_items_total.labels(
            entity_type=result.entity_type.value,
            outcome=result.outcome.value,
            tenant_id=self._tenant_id,
        ).inc()


@dataclass
class _PushContext:
    """Mappings and lookups preloaded once per push stage."""

    mappings: dict[str, EntityMappingRead] = field(default_factory=dict)
    customers: dict[str, EntityMappingRead] = field(default_factory=dict)
    invoices: dict[str, EntityMappingRead] = field(default_factory=dict)
    account_rules: list[AccountMappingRule] = field(default_factory=list)
    account_cache: dict[str, RemoteRef] = field(default_factory=dict)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "sync.remote_retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__ if exc else None,
    )


class SyncOrchestrator:
    """Coordinates mapping store, transcoders, API client and audit log.

    Args:
        client: Accounting platform API client.
        mappings: Entity mapping store.
        audit_log: Sync run audit log.
        records: Access to local business records.
        bank_account: Source account for expense purchases.
        concurrency: Worker pool size per run.
        error_cap: Maximum error strings kept per run.
        chunk_size: Maximum ids per local record fetch.
        page_size: Remote query page size for pulls.
        max_attempts: Attempts per remote call, including the first.
        retry_wait: tenacity wait strategy between attempts.
    """

    def __init__(
        self,
        client: AccountingClient,
        mappings: EntityMappingStore,
        audit_log: SyncAuditLog,
        records: LocalRecordAdapter,
        bank_account: RemoteRef,
        concurrency: int = 4,
        error_cap: int = 100,
        chunk_size: int = 30,
        page_size: int = 100,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._client = client
        self._mappings = mappings
        self._audit = audit_log
        self._records = records
        self._bank_account = bank_account
        self._concurrency = max(1, concurrency)
        self._error_cap = error_cap
        self._chunk_size = chunk_size
        self._page_size = page_size
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._start_locks: dict[tuple[str, SyncAction], asyncio.Lock] = {}
        # Held only while a record is in use; entries vanish once released.
        self._record_locks: weakref.WeakValueDictionary[
            tuple[str, EntityType, str], asyncio.Lock
        ] = weakref.WeakValueDictionary()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: AccountingClient,
        mappings: EntityMappingStore,
        audit_log: SyncAuditLog,
        records: LocalRecordAdapter,
    ) -> SyncOrchestrator:
        return cls(
            client=client,
            mappings=mappings,
            audit_log=audit_log,
            records=records,
            bank_account=RemoteRef(
                value=settings.DEFAULT_BANK_ACCOUNT_ID,
                name=settings.DEFAULT_BANK_ACCOUNT_NAME,
            ),
            concurrency=settings.SYNC_WORKER_CONCURRENCY,
            error_cap=settings.SYNC_ERROR_CAP,
            chunk_size=settings.MAPPING_QUERY_CHUNK_SIZE,
            page_size=settings.REMOTE_PAGE_SIZE,
            max_attempts=settings.REMOTE_MAX_ATTEMPTS,
            retry_wait=wait_exponential(
                multiplier=1,
                min=settings.REMOTE_BACKOFF_MIN_SECONDS,
                max=settings.REMOTE_BACKOFF_MAX_SECONDS,
            ),
        )

    # ── Batch Operations ────────────────────────────────────────────────

    async def push_batch(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_ids: Sequence[str] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Push local records to the remote platform as one audited run.

        Args:
            tenant_id: Tenant to sync.
            entity_type: Entity kind to push.
            local_ids: Explicit records; defaults to the status-filtered working set.
            cancel: Optional signal; when set, the run stops after in-flight items.

        Returns:
            SyncReport with created/updated/skipped/failed counts.

        Raises:
            SyncInProgressError: A run for the same action is already started.
            AuthError: Credentials are missing or rejected.
            StorageError: Mapping store or audit log is unavailable.
        """

        async def body(acc: _RunAccumulator) -> None:
            await self._push_stage(tenant_id, entity_type, local_ids, acc, cancel)

        return await self._run(tenant_id, ACTION_FOR_ENTITY[entity_type], body)

    async def pull(
        self,
        tenant_id: str,
        entity_type: EntityType,
        modified_since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Apply remote-authoritative fields to mapped local records.

        Queries remote objects changed since ``modified_since`` (all when
        None). Unmapped remote objects are skipped.
        """

        async def body(acc: _RunAccumulator) -> None:
            await self._pull_stage(tenant_id, entity_type, modified_since, acc, cancel)

        return await self._run(tenant_id, ACTION_FOR_ENTITY[entity_type], body)

    async def full_sync(
        self,
        tenant_id: str,
        modified_since: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Push every entity type in dependency order, then pull balances."""

        async def body(acc: _RunAccumulator) -> None:
            for entity_type in FULL_SYNC_PUSH_ORDER:
                await self._push_stage(tenant_id, entity_type, None, acc, cancel)
            for entity_type in FULL_SYNC_PULL_ORDER:
                await self._pull_stage(tenant_id, entity_type, modified_since, acc, cancel)

        return await self._run(tenant_id, SyncAction.FULL_SYNC, body)

    # ── Single-Item Operations ──────────────────────────────────────────

    async def push_one(self, tenant_id: str, entity_type: EntityType, local_id: str) -> ItemResult:
        """Push one record outside of an audited run (local status events).

        Skipped while a run covering the entity type is started; that run, or
        the next scheduled one, picks the record up.
        """
        for action in (ACTION_FOR_ENTITY[entity_type], SyncAction.FULL_SYNC):
            if await self._audit.in_progress(tenant_id, action):
                logger.info(
                    "sync.push_one_deferred_to_run",
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    local_id=local_id,
                    action=action.value,
                )
                return ItemResult(
                    entity_type=entity_type,
                    local_id=local_id,
                    outcome=ItemOutcome.SKIPPED,
                    detail={"reason": REASON_RUN_IN_PROGRESS, "action": action.value},
                )

        records = await self._records.get_records(tenant_id, entity_type, [local_id])
        record = next((r for r in records if r.id == local_id), None)
        if record is None:
            result = ItemResult(
                entity_type=entity_type,
                local_id=local_id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_NOT_FOUND},
            )
        else:
            context = await self._build_context(tenant_id, entity_type, [record])
            result = await self._push_item(tenant_id, entity_type, record, context)
        sync_items_total.labels(
            entity_type=entity_type.value, outcome=result.outcome.value, tenant_id=tenant_id
        ).inc()
        logger.info(
            "sync.push_one",
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            local_id=local_id,
            outcome=result.outcome.value,
        )
        return result

    async def reconcile_remote(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
        operation: str = "Update",
    ) -> ItemResult:
        """Pull one remote object by id (remote change notifications)."""
        transcoder = TRANSCODERS[entity_type]

        if operation == "Delete":
            mapping = await self._mappings.find_by_remote_id(tenant_id, entity_type, remote_id)
            if mapping is None:
                return ItemResult(
                    entity_type=entity_type,
                    remote_id=remote_id,
                    outcome=ItemOutcome.SKIPPED,
                    detail={"reason": REASON_NOT_MAPPED},
                )
            await self._mappings.mark_error(mapping.id, "deleted in accounting platform")
            logger.warning(
                "sync.remote_deleted",
                tenant_id=tenant_id,
                entity_type=entity_type.value,
                local_id=mapping.local_id,
                remote_id=remote_id,
            )
            return ItemResult(
                entity_type=entity_type,
                local_id=mapping.local_id,
                remote_id=remote_id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_DELETED_REMOTELY},
            )

        try:
            remote = await self._call(self._client.get, tenant_id, transcoder.remote_kind, remote_id)
        except Exception as exc:
            if aborts_run(exc):
                raise
            return ItemResult(
                entity_type=entity_type,
                remote_id=remote_id,
                outcome=ItemOutcome.FAILED,
                error=str(exc),
            )
        if remote is None:
            return ItemResult(
                entity_type=entity_type,
                remote_id=remote_id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_NOT_FOUND},
            )

        if entity_type == EntityType.PAYMENT:
            result = await self._pull_payment(tenant_id, remote)
        else:
            mapping = await self._mappings.find_by_remote_id(tenant_id, entity_type, remote_id)
            result = await self._pull_item(tenant_id, entity_type, remote, mapping)
        sync_items_total.labels(
            entity_type=entity_type.value, outcome=result.outcome.value, tenant_id=tenant_id
        ).inc()
        return result

    async def auto_link_customers(self, tenant_id: str) -> LinkReport:
        """Link unmapped active customers to existing remote customers by email."""
        customers = await self._records.list_by_status(
            tenant_id, EntityType.CUSTOMER, WORKING_SET_STATUSES[EntityType.CUSTOMER]
        )
        existing = await self._mappings.find_many_by_local_ids(
            tenant_id, EntityType.CUSTOMER, [c.id for c in customers]
        )
        report = LinkReport()

        for customer in customers:
            if customer.id in existing:
                continue
            email = getattr(customer, "email", None)
            if not email:
                report.not_found += 1
                continue
            try:
                page = await self._call(
                    self._client.query,
                    tenant_id,
                    "Customer",
                    f"PrimaryEmailAddr = {quote(email)}",
                    1,
                )
                if not page.items:
                    report.not_found += 1
                    continue
                remote = page.items[0]
                await self._mappings.upsert(
                    tenant_id,
                    EntityType.CUSTOMER,
                    customer.id,
                    str(remote["Id"]),
                    str(remote.get("SyncToken", "0")),
                )
                report.linked += 1
            except Exception as exc:
                if aborts_run(exc):
                    raise
                report.errors.append(f"{customer.id}: {exc}")

        logger.info(
            "sync.customers_auto_linked",
            tenant_id=tenant_id,
            linked=report.linked,
            not_found=report.not_found,
            errors=len(report.errors),
        )
        return report

    async def void_invoice(self, tenant_id: str, local_id: str) -> bool:
        """Void the remote counterpart of a local invoice.

        Returns False when the invoice was never synced and True once the
        remote invoice is voided or already gone.

        Raises:
            ValidationError: The remote invoice has payments applied.
        """
        mapping = await self._mappings.find(tenant_id, EntityType.INVOICE, local_id)
        if mapping is None:
            return False

        remote = await self._call(self._client.get, tenant_id, "Invoice", mapping.remote_id)
        if remote is None:
            return True

        balance = remote.get("Balance")
        total = remote.get("TotalAmt")
        if balance is not None and total is not None and balance < total:
            raise ValidationError("Cannot void invoice with payments. Refund payments first.")

        voided = await self._call(
            self._client.void,
            tenant_id,
            "Invoice",
            mapping.remote_id,
            str(remote.get("SyncToken", mapping.remote_version_token)),
        )
        await self._mappings.upsert(
            tenant_id,
            EntityType.INVOICE,
            local_id,
            mapping.remote_id,
            str(voided.get("SyncToken") or remote.get("SyncToken")),
        )
        logger.info(
            "sync.invoice_voided",
            tenant_id=tenant_id,
            local_id=local_id,
            remote_id=mapping.remote_id,
        )
        return True

    async def get_sync_status(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> SyncStatusView:
        return await self._mappings.get_status(tenant_id, entity_type, local_id)

    # ── Run Wrapper ─────────────────────────────────────────────────────

    async def _run(
        self,
        tenant_id: str,
        action: SyncAction,
        body: Callable[[_RunAccumulator], Awaitable[None]],
    ) -> SyncReport:
        lock = self._start_locks.setdefault((tenant_id, action), asyncio.Lock())
        async with lock:
            if await self._audit.in_progress(tenant_id, action):
                raise SyncInProgressError(tenant_id, action.value)
            run_id = await self._audit.start(tenant_id, action)

        acc = _RunAccumulator(tenant_id, self._error_cap)
        log = logger.bind(tenant_id=tenant_id, action=action.value, run_id=run_id)
        log.info("sync.run_started")
        sync_runs_in_progress.inc()

        try:
            with structlog.contextvars.bound_contextvars(run_id=run_id):
                await body(acc)
        except SyncCancelledError:
            log.warning("sync.run_cancelled", items_synced=acc.items_synced, items_failed=acc.failed)
            try:
                await self._fail_run(run_id, "cancelled", acc)
            except StorageError:
                log.error("sync.run_failure_unrecorded", exc_info=True)
            record_run(action.value, RunStatus.FAILED.value, tenant_id, None)
            return self._report(run_id, tenant_id, action, RunStatus.FAILED, acc, cancelled=True)
        except asyncio.CancelledError:
            log.warning("sync.run_task_cancelled")
            await self._fail_run(run_id, "cancelled", acc)
            raise
        except Exception as exc:
            log.error("sync.run_aborted", error=str(exc), error_type=type(exc).__name__)
            try:
                await self._fail_run(run_id, str(exc) or type(exc).__name__, acc)
            except StorageError:
                log.error("sync.run_failure_unrecorded", exc_info=True)
            record_run(action.value, RunStatus.FAILED.value, tenant_id, None)
            raise
        finally:
            sync_runs_in_progress.dec()

        await self._audit.complete(run_id, acc.items_synced, acc.failed, acc.errors)
        run = await self._audit.get(run_id)
        record_run(
            action.value,
            RunStatus.COMPLETED.value,
            tenant_id,
            run.duration_ms if run else None,
        )
        log.info(
            "sync.run_completed",
            created=acc.created,
            updated=acc.updated,
            skipped=acc.skipped,
            failed=acc.failed,
        )
        return self._report(run_id, tenant_id, action, RunStatus.COMPLETED, acc)

    def _record_lock(self, tenant_id: str, entity_type: EntityType, local_id: str) -> asyncio.Lock:
        """Lock serializing writes that touch one local record or its mapping."""
        key = (tenant_id, entity_type, local_id)
        lock = self._record_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._record_locks[key] = lock
        return lock

    async def _fail_run(self, run_id: str, message: str, acc: _RunAccumulator) -> None:
        await self._audit.fail(
            run_id,
            message,
            items_synced=acc.items_synced,
            items_failed=acc.failed,
            errors=acc.errors,
        )

    @staticmethod
    def _report(
        run_id: str,
        tenant_id: str,
        action: SyncAction,
        status: RunStatus,
        acc: _RunAccumulator,
        cancelled: bool = False,
    ) -> SyncReport:
        return SyncReport(
            run_id=run_id,
            tenant_id=tenant_id,
            action=action,
            status=status,
            created=acc.created,
            updated=acc.updated,
            skipped=acc.skipped,
            failed=acc.failed,
            errors=list(acc.errors),
            cancelled=cancelled,
        )

    async def _drain(
        self,
        items: Iterable[T],
        handle: Callable[[T], Awaitable[ItemResult]],
        acc: _RunAccumulator,
        cancel: asyncio.Event | None,
    ) -> None:
        """Run ``handle`` over ``items`` on the bounded worker pool."""
        semaphore = asyncio.Semaphore(self._concurrency)

        async def worker(item: T) -> None:
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    return
                await acc.add(await handle(item))

        tasks = [asyncio.create_task(worker(item)) for item in items]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if cancel is not None and cancel.is_set():
            raise SyncCancelledError()

    async def _call(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Invoke a client method, retrying retryable failures with backoff."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await fn(*args)
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    # ── Push ────────────────────────────────────────────────────────────

    async def _push_stage(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_ids: Sequence[str] | None,
        acc: _RunAccumulator,
        cancel: asyncio.Event | None,
    ) -> None:
        if local_ids is not None:
            wanted = list(dict.fromkeys(local_ids))
            records = await self._fetch_records(tenant_id, entity_type, wanted)
            found = {r.id for r in records}
            for missing in (i for i in wanted if i not in found):
                await acc.add(ItemResult(
                    entity_type=entity_type,
                    local_id=missing,
                    outcome=ItemOutcome.SKIPPED,
                    detail={"reason": REASON_NOT_FOUND},
                ))
        else:
            records = await self._records.list_by_status(
                tenant_id, entity_type, WORKING_SET_STATUSES[entity_type]
            )

        if cancel is not None and cancel.is_set():
            raise SyncCancelledError()
        if not records:
            return

        context = await self._build_context(tenant_id, entity_type, records)
        await self._drain(
            records,
            lambda record: self._push_item(tenant_id, entity_type, record, context),
            acc,
            cancel,
        )

    async def _fetch_records(
        self, tenant_id: str, entity_type: EntityType, local_ids: Sequence[str]
    ) -> list[LocalRecord]:
        """get_records in chunks of at most chunk_size ids."""
        records: list[LocalRecord] = []
        for start in range(0, len(local_ids), self._chunk_size):
            chunk = list(local_ids[start:start + self._chunk_size])
            records.extend(await self._records.get_records(tenant_id, entity_type, chunk))
        return records

    async def _build_context(
        self, tenant_id: str, entity_type: EntityType, records: Sequence[LocalRecord]
    ) -> _PushContext:
        context = _PushContext()
        context.mappings = await self._mappings.find_many_by_local_ids(
            tenant_id, entity_type, [r.id for r in records]
        )

        customer_ids = [
            r.customer_id for r in records if getattr(r, "customer_id", None)
        ]
        if customer_ids:
            context.customers = await self._mappings.find_many_by_local_ids(
                tenant_id, EntityType.CUSTOMER, customer_ids
            )

        if entity_type == EntityType.PAYMENT:
            invoice_ids = [a.invoice_id for r in records for a in r.applications]
            if invoice_ids:
                context.invoices = await self._mappings.find_many_by_local_ids(
                    tenant_id, EntityType.INVOICE, invoice_ids
                )

        if entity_type == EntityType.EXPENSE:
            context.account_rules = await self._records.get_account_mappings(tenant_id)
        return context

    async def _resolve_dependencies(
        self,
        tenant_id: str,
        entity_type: EntityType,
        record: LocalRecord,
        context: _PushContext,
    ) -> SyncDependencies:
        """Resolve remote references the transcoder needs.

        Raises:
            PrerequisiteError: A referenced customer or invoice is not mapped.
        """
        deps = SyncDependencies()
        if entity_type == EntityType.CUSTOMER:
            return deps

        customer_id = getattr(record, "customer_id", None)
        if customer_id:
            customer = context.customers.get(customer_id)
            if customer is None:
                raise PrerequisiteError(EntityType.CUSTOMER.value, customer_id)
            deps.customer_ref = RemoteRef(value=customer.remote_id)
        elif entity_type in (EntityType.INVOICE, EntityType.PAYMENT):
            raise ValidationError(f"{entity_type.value} {record.id} has no customer")

        if entity_type == EntityType.PAYMENT:
            for application in record.applications:
                invoice = context.invoices.get(application.invoice_id)
                if invoice is None:
                    raise PrerequisiteError(EntityType.INVOICE.value, application.invoice_id)
                deps.invoice_refs[application.invoice_id] = invoice.remote_id

        if entity_type == EntityType.EXPENSE:
            deps.bank_account = self._bank_account
            deps.expense_account = await self._expense_account(tenant_id, record.category, context)
        return deps

    async def _expense_account(
        self, tenant_id: str, category: str, context: _PushContext
    ) -> RemoteRef:
        override = expense_account_for(category, context.account_rules)
        if override is not None:
            return override

        name = default_expense_account_name(category)
        cached = context.account_cache.get(name)
        if cached is not None:
            return cached

        page = await self._call(self._client.query, tenant_id, "Account", f"Name = {quote(name)}", 1)
        if not page.items:
            raise ValidationError(f"no ledger account named '{name}' for category {category}")
        ref = RemoteRef(value=str(page.items[0]["Id"]), name=name)
        context.account_cache[name] = ref
        return ref

    async def _push_item(
        self,
        tenant_id: str,
        entity_type: EntityType,
        record: LocalRecord,
        context: _PushContext,
    ) -> ItemResult:
        log = logger.bind(tenant_id=tenant_id, entity_type=entity_type.value, local_id=record.id)

        allowed = PUSHABLE_STATUSES[entity_type]
        status = getattr(record, "status", None)
        if allowed is not None and status not in allowed:
            log.debug("sync.item_skipped_status", status=status)
            return ItemResult(
                entity_type=entity_type,
                local_id=record.id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_STATUS, "status": status},
            )

        async with self._record_lock(tenant_id, entity_type, record.id):
            mapping = context.mappings.get(record.id)
            if mapping is None:
                # Another push may have linked the record after the batch lookup.
                mapping = await self._mappings.find(tenant_id, entity_type, record.id)
            return await self._push_linked(tenant_id, entity_type, record, context, mapping, log)

    async def _push_linked(
        self,
        tenant_id: str,
        entity_type: EntityType,
        record: LocalRecord,
        context: _PushContext,
        mapping: EntityMappingRead | None,
        log: Any,
    ) -> ItemResult:
        """Create or update one record; caller holds its record lock."""
        transcoder = TRANSCODERS[entity_type]
        kind = transcoder.remote_kind
        try:
            deps = await self._resolve_dependencies(tenant_id, entity_type, record, context)
        except PrerequisiteError as exc:
            log.info("sync.item_skipped_prerequisite", missing=exc.entity_type, missing_id=exc.local_id)
            return ItemResult(
                entity_type=entity_type,
                local_id=record.id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_PREREQUISITE, "missing": f"{exc.entity_type}:{exc.local_id}"},
            )
        except Exception as exc:
            if aborts_run(exc):
                raise
            return await self._item_failed(log, entity_type, record.id, mapping, exc)

        try:
            payload = transcoder.to_remote(record, deps)
            if mapping is not None:
                await self._mappings.mark_pending(mapping.id)
                remote = await self._update_remote(tenant_id, kind, mapping, payload)
                token = remote.get("SyncToken") or mapping.remote_version_token
                await self._mappings.upsert(
                    tenant_id, entity_type, record.id, mapping.remote_id, str(token)
                )
                log.debug("sync.item_updated", remote_id=mapping.remote_id)
                return ItemResult(
                    entity_type=entity_type,
                    local_id=record.id,
                    remote_id=mapping.remote_id,
                    outcome=ItemOutcome.UPDATED,
                )

            remote = await self._call(self._client.create, tenant_id, kind, payload)
            remote_id = remote.get("Id")
            if not remote_id:
                raise RemoteBusinessError("SYNC_ERROR", f"{kind} created but no Id returned")
            await self._mappings.upsert(
                tenant_id, entity_type, record.id, str(remote_id), str(remote.get("SyncToken", "0"))
            )
            log.debug("sync.item_created", remote_id=remote_id)
            return ItemResult(
                entity_type=entity_type,
                local_id=record.id,
                remote_id=str(remote_id),
                outcome=ItemOutcome.CREATED,
            )
        except Exception as exc:
            if aborts_run(exc):
                raise
            return await self._item_failed(log, entity_type, record.id, mapping, exc)

    async def _update_remote(
        self,
        tenant_id: str,
        kind: str,
        mapping: EntityMappingRead,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Update with the stored version token, refreshing it once if stale."""
        update = {**payload, "Id": mapping.remote_id, "SyncToken": mapping.remote_version_token}
        try:
            return await self._call(self._client.update, tenant_id, kind, update)
        except RemoteBusinessError as exc:
            if exc.code != STALE_OBJECT_CODE:
                raise
            current = await self._call(self._client.get, tenant_id, kind, mapping.remote_id)
            if current is None:
                raise
            logger.info(
                "sync.version_token_refreshed",
                tenant_id=tenant_id,
                entity_kind=kind,
                remote_id=mapping.remote_id,
                stale=mapping.remote_version_token,
                current=current.get("SyncToken"),
            )
            update["SyncToken"] = current.get("SyncToken")
            return await self._call(self._client.update, tenant_id, kind, update)

    async def _item_failed(
        self,
        log: Any,
        entity_type: EntityType,
        local_id: str,
        mapping: EntityMappingRead | None,
        exc: Exception,
    ) -> ItemResult:
        log.warning("sync.item_failed", error=str(exc), error_type=type(exc).__name__)
        if mapping is not None:
            await self._mappings.mark_error(mapping.id, str(exc))
        return ItemResult(
            entity_type=entity_type,
            local_id=local_id,
            remote_id=mapping.remote_id if mapping else None,
            outcome=ItemOutcome.FAILED,
            error=str(exc),
        )

    # ── Pull ────────────────────────────────────────────────────────────

    async def _pull_stage(
        self,
        tenant_id: str,
        entity_type: EntityType,
        modified_since: datetime | None,
        acc: _RunAccumulator,
        cancel: asyncio.Event | None,
    ) -> None:
        transcoder = TRANSCODERS[entity_type]
        kind = transcoder.remote_kind
        filter_expr = None
        if modified_since is not None:
            filter_expr = f"MetaData.LastUpdatedTime > {quote(modified_since.isoformat())}"

        start = 1
        while True:
            if cancel is not None and cancel.is_set():
                raise SyncCancelledError()
            page = await self._call(
                self._client.query, tenant_id, kind, filter_expr, self._page_size, start
            )
            items = [item for item in page.items if item.get("Id") is not None]
            if items:
                await self._pull_page(tenant_id, entity_type, items, acc, cancel)
            if len(page.items) < self._page_size:
                break
            start += len(page.items)

    async def _pull_page(
        self,
        tenant_id: str,
        entity_type: EntityType,
        items: list[dict[str, Any]],
        acc: _RunAccumulator,
        cancel: asyncio.Event | None,
    ) -> None:
        if entity_type == EntityType.PAYMENT:
            await self._drain(
                items, lambda remote: self._pull_payment(tenant_id, remote), acc, cancel
            )
            return

        mappings = await self._mappings.find_many_by_remote_ids(
            tenant_id, entity_type, [str(item["Id"]) for item in items]
        )
        await self._drain(
            items,
            lambda remote: self._pull_item(
                tenant_id, entity_type, remote, mappings.get(str(remote["Id"]))
            ),
            acc,
            cancel,
        )

    async def _pull_item(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote: dict[str, Any],
        mapping: EntityMappingRead | None,
    ) -> ItemResult:
        remote_id = str(remote.get("Id"))
        if mapping is None:
            return ItemResult(
                entity_type=entity_type,
                remote_id=remote_id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_NOT_MAPPED},
            )

        log = logger.bind(
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            local_id=mapping.local_id,
            remote_id=remote_id,
        )
        try:
            fields = TRANSCODERS[entity_type].from_remote(remote)
            if fields:
                await self._records.apply_remote_update(
                    tenant_id, entity_type, mapping.local_id, fields
                )
            await self._mappings.upsert(
                tenant_id,
                entity_type,
                mapping.local_id,
                remote_id,
                str(remote.get("SyncToken", mapping.remote_version_token)),
            )
        except Exception as exc:
            if aborts_run(exc):
                raise
            return await self._item_failed(log, entity_type, mapping.local_id, mapping, exc)

        log.debug("sync.item_pulled", fields=sorted(fields))
        return ItemResult(
            entity_type=entity_type,
            local_id=mapping.local_id,
            remote_id=remote_id,
            outcome=ItemOutcome.UPDATED,
        )

    async def _pull_payment(self, tenant_id: str, remote: dict[str, Any]) -> ItemResult:
        """Fan one remote payment out over every invoice it is linked to.

        Each linked invoice is resolved independently; unmapped ones are
        skipped and reported in ``detail["unmapped_remote_invoices"]``.
        """
        remote_id = str(remote.get("Id"))
        applications = payment_applications(remote)
        if not applications:
            return ItemResult(
                entity_type=EntityType.PAYMENT,
                remote_id=remote_id,
                outcome=ItemOutcome.SKIPPED,
                detail={"reason": REASON_NOT_MAPPED},
            )

        applied: list[str] = []
        try:
            invoice_mappings = await self._mappings.find_many_by_remote_ids(
                tenant_id, EntityType.INVOICE, list(applications)
            )
            unmapped = [rid for rid in applications if rid not in invoice_mappings]

            for remote_invoice_id, mapping in invoice_mappings.items():
                # Read-apply-write per invoice under its lock; payments
                # sharing an invoice must see each other's applications.
                async with self._record_lock(tenant_id, EntityType.INVOICE, mapping.local_id):
                    found = await self._records.get_records(
                        tenant_id, EntityType.INVOICE, [mapping.local_id]
                    )
                    invoice = next((r for r in found if r.id == mapping.local_id), None)
                    if not isinstance(invoice, LocalInvoice):
                        unmapped.append(remote_invoice_id)
                        continue
                    fields = apply_payment_to_invoice(
                        invoice, remote_id, applications[remote_invoice_id]
                    )
                    if fields:
                        await self._records.apply_remote_update(
                            tenant_id, EntityType.INVOICE, invoice.id, fields
                        )
                applied.append(invoice.id)

            payment_mapping = await self._mappings.find_by_remote_id(
                tenant_id, EntityType.PAYMENT, remote_id
            )
            if payment_mapping is not None:
                await self._mappings.upsert(
                    tenant_id,
                    EntityType.PAYMENT,
                    payment_mapping.local_id,
                    remote_id,
                    str(remote.get("SyncToken", payment_mapping.remote_version_token)),
                )
        except Exception as exc:
            if aborts_run(exc):
                raise
            logger.warning(
                "sync.payment_pull_failed",
                tenant_id=tenant_id,
                remote_id=remote_id,
                applied=applied,
                error=str(exc),
            )
            return ItemResult(
                entity_type=EntityType.PAYMENT,
                remote_id=remote_id,
                outcome=ItemOutcome.FAILED,
                error=str(exc),
                detail={"applied_invoices": applied},
            )

        detail: dict[str, Any] = {
            "applied_invoices": applied,
            "unmapped_remote_invoices": unmapped,
        }
        if not applied:
            detail["reason"] = REASON_PREREQUISITE
            logger.info(
                "sync.payment_skipped_unmapped",
                tenant_id=tenant_id,
                remote_id=remote_id,
                unmapped=unmapped,
            )
            return ItemResult(
                entity_type=EntityType.PAYMENT,
                remote_id=remote_id,
                outcome=ItemOutcome.SKIPPED,
                detail=detail,
            )
        return ItemResult(
            entity_type=EntityType.PAYMENT,
            remote_id=remote_id,
            outcome=ItemOutcome.UPDATED,
            detail=detail,
        )
