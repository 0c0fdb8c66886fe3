"""Field transcoders between local records and accounting platform payloads.

Defines one pure to_remote/from_remote pair per entity type:
- customer <-> Customer
- invoice  <-> Invoice
- expense  <-> Purchase
- payment  <-> Payment

Rules shared by every pair:
- Free-text fields are truncated to NOTE_LIMIT characters, never rejected.
- Optional remote fields are omitted when the local value is absent; no
  nulls are sent that could clear remote data.
- from_remote returns only fields the remote side is authoritative for
  (balances, paid status). Names and descriptions are owned locally.
- Money is rounded to cents here and nowhere earlier.

TRANSCODERS maps each EntityType to its remote kind, the two functions, and
the field sets each side reads or writes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.ledgersync.sync.exceptions import ValidationError
from src.ledgersync.sync.schemas import (
    AccountMappingRule,
    EntityType,
    LocalAddress,
    LocalCustomer,
    LocalExpense,
    LocalInvoice,
    LocalPayment,
    RemoteRef,
    SyncDependencies,
)

NOTE_LIMIT = 4000
CENT = Decimal("0.01")


# ── Expense Account Defaults ───────────────────────────────────────────────
# Ledger account names by expense category; tenants override through
# AccountMappingRule entries.

DEFAULT_EXPENSE_ACCOUNTS: dict[str, str] = {
    "materials": "Cost of Goods Sold",
    "tools": "Tools and Equipment",
    "equipment_rental": "Equipment Rental",
    "fuel": "Automobile Expense",
    "vehicle": "Automobile Expense",
    "subcontractor": "Subcontractors",
    "permits": "Permits and Fees",
    "labor": "Labor Costs",
    "office": "Office Expenses",
    "travel": "Travel Expense",
    "meals": "Meals and Entertainment",
    "insurance": "Insurance Expense",
    "utilities": "Utilities",
    "marketing": "Advertising and Marketing",
    "other": "Miscellaneous Expense",
}

FALLBACK_EXPENSE_ACCOUNT = "Miscellaneous Expense"

PAYMENT_TYPES: dict[str, str] = {
    "cash": "Cash",
    "check": "Check",
    "credit_card": "CreditCard",
    "debit_card": "CreditCard",
    "company_card": "CreditCard",
}


# ── Helpers ────────────────────────────────────────────────────────────────


def money(value: Decimal | int | float | str) -> Decimal:
    """Round to cents, half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def truncate(text: str | None, limit: int = NOTE_LIMIT) -> str | None:
    if not text:
        return None
    return text[:limit]


def format_date(value: date | datetime) -> str:
    """Remote date format is YYYY-MM-DD."""
    if isinstance(value, datetime):
        value = value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    return value.isoformat()


def _remote_money(remote: dict[str, Any], key: str) -> Decimal | None:
    raw = remote.get(key)
    if raw is None:
        return None
    return money(raw)


def _remote_timestamp(remote: dict[str, Any]) -> datetime:
    raw = (remote.get("MetaData") or {}).get("LastUpdatedTime")
    if raw:
        try:
            parsed = datetime.fromisoformat(str(raw))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _require_ref(ref: RemoteRef | None, what: str) -> dict[str, str]:
    if ref is None:
        raise ValidationError(f"{what} reference was not resolved")
    return ref.to_payload()


# ── Customer ───────────────────────────────────────────────────────────────


def _billing_address(addresses: list[LocalAddress]) -> LocalAddress | None:
    for address in addresses:
        if address.type == "billing" or address.is_default:
            return address
    return addresses[0] if addresses else None


def address_to_remote(address: LocalAddress) -> dict[str, str]:
    fields = {
        "Line1": address.street,
        "Line2": address.line2,
        "City": address.city,
        "CountrySubDivisionCode": address.state,
        "PostalCode": address.zip,
    }
    remote = {key: value for key, value in fields.items() if value}
    remote["Country"] = "US"
    return remote


def customer_to_remote(customer: LocalCustomer, deps: SyncDependencies | None = None) -> dict[str, Any]:
    """Convert a local customer to a Customer payload."""
    payload: dict[str, Any] = {
        "DisplayName": customer.display_name,
        "Active": customer.status == "active",
    }
    if customer.first_name:
        payload["GivenName"] = customer.first_name
    if customer.last_name:
        payload["FamilyName"] = customer.last_name
    if customer.is_commercial and customer.company_name:
        payload["CompanyName"] = customer.company_name
    if customer.email:
        payload["PrimaryEmailAddr"] = {"Address": customer.email}
    if customer.phone:
        payload["PrimaryPhone"] = {"FreeFormNumber": customer.phone}

    address = _billing_address(customer.addresses)
    if address is not None:
        payload["BillAddr"] = address_to_remote(address)

    pinned = truncate("\n".join(note.content for note in customer.notes if note.pinned))
    if pinned:
        payload["Notes"] = pinned
    return payload


def customer_from_remote(remote: dict[str, Any]) -> dict[str, Any]:
    """Running balance is the only customer field the remote side owns."""
    balance = _remote_money(remote, "Balance")
    return {"balance": balance} if balance is not None else {}


# ── Invoice ────────────────────────────────────────────────────────────────


def invoice_to_remote(invoice: LocalInvoice, deps: SyncDependencies) -> dict[str, Any]:
    """Convert a local invoice to an Invoice payload.

    The customer reference must already be resolved into ``deps``.
    """
    lines: list[dict[str, Any]] = []
    for index, item in enumerate(invoice.line_items, start=1):
        line: dict[str, Any] = {
            "LineNum": index,
            "Amount": money(item.line_total),
            "DetailType": "SalesItemLineDetail",
            "SalesItemLineDetail": {
                "UnitPrice": money(item.unit_price),
                "Qty": item.quantity,
            },
        }
        if item.description:
            line["Description"] = truncate(item.description)
        lines.append(line)

    subtotal = invoice.subtotal
    if subtotal is None:
        subtotal = sum((item.line_total for item in invoice.line_items), Decimal("0"))
    lines.append({
        "Amount": money(subtotal),
        "DetailType": "SubTotalLineDetail",
        "SubTotalLineDetail": {},
    })

    payload: dict[str, Any] = {
        "TxnDate": format_date(invoice.issue_date),
        "CustomerRef": _require_ref(deps.customer_ref, "customer"),
        "Line": lines,
    }
    if invoice.number:
        payload["DocNumber"] = invoice.number
    if invoice.due_date:
        payload["DueDate"] = format_date(invoice.due_date)
    if invoice.customer_email:
        payload["BillEmail"] = {"Address": invoice.customer_email}
    memo = truncate(invoice.customer_message)
    if memo:
        payload["CustomerMemo"] = {"value": memo}
    private_note = truncate(invoice.internal_notes)
    if private_note:
        payload["PrivateNote"] = private_note
    return payload


def invoice_from_remote(remote: dict[str, Any]) -> dict[str, Any]:
    """Balance-derived fields: amount due/paid, and paid status once settled."""
    balance = _remote_money(remote, "Balance")
    if balance is None:
        return {}
    total = _remote_money(remote, "TotalAmt") or Decimal("0.00")

    update: dict[str, Any] = {
        "amount_due": balance,
        "amount_paid": money(total - balance),
    }
    if balance == 0 and total > 0:
        update["status"] = "paid"
        update["paid_at"] = _remote_timestamp(remote)
    return update


def apply_payment_to_invoice(
    invoice: LocalInvoice,
    remote_payment_id: str,
    amount: Decimal,
) -> dict[str, Any]:
    """Sync-owned invoice fields after applying one remote payment's share.

    Re-applying the same payment replaces its previous share, so the update
    is idempotent per (invoice, payment). Returns an empty dict when nothing
    changes.
    """
    amount = money(amount)
    previous = invoice.payment_applications.get(remote_payment_id, Decimal("0"))
    delta = amount - money(previous)
    if delta == 0:
        return {}

    total = money(invoice.total)
    amount_paid = min(max(money(invoice.amount_paid) + delta, Decimal("0.00")), total)
    amount_due = money(total - amount_paid)
    applications = {**invoice.payment_applications, remote_payment_id: amount}

    update: dict[str, Any] = {
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "payment_applications": applications,
    }
    if amount_due == 0 and total > 0:
        update["status"] = "paid"
        update["paid_at"] = datetime.now(timezone.utc)
    elif amount_paid > 0:
        update["status"] = "partial"
    return update


# ── Expense ────────────────────────────────────────────────────────────────


def payment_type_for(method: str | None) -> str:
    return PAYMENT_TYPES.get(method or "", "Cash")


def expense_account_for(
    category: str,
    rules: list[AccountMappingRule],
) -> RemoteRef | None:
    """Tenant override for a category, if any."""
    for rule in rules:
        if rule.source_type == "expense_category" and rule.source_value == category:
            return RemoteRef(value=rule.target_account_id, name=rule.target_account_name)
    return None


def default_expense_account_name(category: str) -> str:
    return DEFAULT_EXPENSE_ACCOUNTS.get(category, FALLBACK_EXPENSE_ACCOUNT)


def expense_to_remote(expense: LocalExpense, deps: SyncDependencies) -> dict[str, Any]:
    """Convert an approved local expense to a Purchase payload."""
    detail: dict[str, Any] = {
        "AccountRef": _require_ref(deps.expense_account, "expense account"),
        "BillableStatus": "Billable" if expense.billable else "NotBillable",
    }
    if expense.billable and deps.customer_ref is not None:
        detail["CustomerRef"] = deps.customer_ref.to_payload()

    line: dict[str, Any] = {
        "Amount": money(expense.amount),
        "DetailType": "AccountBasedExpenseLineDetail",
        "AccountBasedExpenseLineDetail": detail,
    }
    description = truncate(expense.description)
    if description:
        line["Description"] = description

    payload: dict[str, Any] = {
        "PaymentType": payment_type_for(expense.payment_method),
        "AccountRef": _require_ref(deps.bank_account, "bank account"),
        "TxnDate": format_date(expense.date),
        "TotalAmt": money(expense.amount),
        "Line": [line],
    }
    if expense.vendor_name:
        payload["EntityRef"] = RemoteRef(
            value=expense.vendor_remote_id or "0",
            name=expense.vendor_name,
        ).to_payload()
    note = truncate(expense.notes)
    if note:
        payload["PrivateNote"] = note
    return payload


def expense_from_remote(remote: dict[str, Any]) -> dict[str, Any]:
    """Purchases carry nothing the local expense does not already own."""
    return {}


# ── Payment ────────────────────────────────────────────────────────────────


def payment_to_remote(payment: LocalPayment, deps: SyncDependencies) -> dict[str, Any]:
    """Convert a local payment to a Payment payload linked to its invoices."""
    lines: list[dict[str, Any]] = []
    for application in payment.applications:
        remote_invoice_id = deps.invoice_refs.get(application.invoice_id)
        if remote_invoice_id is None:
            raise ValidationError(
                f"invoice {application.invoice_id} reference was not resolved"
            )
        lines.append({
            "Amount": money(application.amount),
            "LinkedTxn": [{"TxnId": remote_invoice_id, "TxnType": "Invoice"}],
        })

    payload: dict[str, Any] = {
        "CustomerRef": _require_ref(deps.customer_ref, "customer"),
        "TotalAmt": money(payment.amount),
        "TxnDate": format_date(payment.date),
    }
    if lines:
        payload["Line"] = lines
    if payment.reference:
        payload["PaymentRefNum"] = payment.reference[:21]
    note = truncate(payment.notes)
    if note:
        payload["PrivateNote"] = note
    return payload


def payment_from_remote(remote: dict[str, Any]) -> dict[str, Any]:
    """Payments update invoices, not themselves; see payment_applications()."""
    return {}


def payment_applications(remote: dict[str, Any]) -> dict[str, Decimal]:
    """Amount applied per remote invoice id across all Invoice-linked lines."""
    applied: dict[str, Decimal] = {}
    for line in remote.get("Line") or []:
        amount = line.get("Amount")
        if amount is None:
            continue
        for linked in line.get("LinkedTxn") or []:
            if linked.get("TxnType") != "Invoice" or not linked.get("TxnId"):
                continue
            txn_id = str(linked["TxnId"])
            applied[txn_id] = money(applied.get(txn_id, Decimal("0")) + money(amount))
    return applied


# ── Registry ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Transcoder:
    """Transcoder pair for one entity type.

    local_fields are the local attributes to_remote reads; remote_fields are
    the local attributes from_remote may write. They never overlap.
    """

    entity_type: EntityType
    remote_kind: str
    to_remote: Callable[..., dict[str, Any]]
    from_remote: Callable[[dict[str, Any]], dict[str, Any]]
    local_fields: frozenset[str]
    remote_fields: frozenset[str]


TRANSCODERS: dict[EntityType, Transcoder] = {
    EntityType.CUSTOMER: Transcoder(
        entity_type=EntityType.CUSTOMER,
        remote_kind="Customer",
        to_remote=customer_to_remote,
        from_remote=customer_from_remote,
        local_fields=frozenset({
            "display_name", "first_name", "last_name", "company_name",
            "is_commercial", "email", "phone", "status", "addresses", "notes",
        }),
        remote_fields=frozenset({"balance"}),
    ),
    EntityType.INVOICE: Transcoder(
        entity_type=EntityType.INVOICE,
        remote_kind="Invoice",
        to_remote=invoice_to_remote,
        from_remote=invoice_from_remote,
        local_fields=frozenset({
            "number", "customer_id", "issue_date", "due_date", "line_items",
            "subtotal", "customer_email", "customer_message", "internal_notes",
        }),
        remote_fields=frozenset({
            "amount_due", "amount_paid", "status", "paid_at", "payment_applications",
        }),
    ),
    EntityType.EXPENSE: Transcoder(
        entity_type=EntityType.EXPENSE,
        remote_kind="Purchase",
        to_remote=expense_to_remote,
        from_remote=expense_from_remote,
        local_fields=frozenset({
            "category", "amount", "date", "description", "vendor_name",
            "vendor_remote_id", "payment_method", "billable", "customer_id", "notes",
        }),
        remote_fields=frozenset(),
    ),
    EntityType.PAYMENT: Transcoder(
        entity_type=EntityType.PAYMENT,
        remote_kind="Payment",
        to_remote=payment_to_remote,
        from_remote=payment_from_remote,
        local_fields=frozenset({
            "customer_id", "amount", "date", "reference", "notes", "applications",
        }),
        remote_fields=frozenset(),
    ),
}

ENTITY_FOR_REMOTE_KIND: dict[str, EntityType] = {
    transcoder.remote_kind: entity_type for entity_type, transcoder in TRANSCODERS.items()
}
