"""Error taxonomy for the sync engine.

Run-level errors (AuthError, StorageError) abort an orchestrated run and are
re-raised to the caller. Everything else is recorded against the single
item that produced it and the batch continues.

Retry policy lives with the caller, which consults ``is_retryable``:
only TransientError and HttpError for 5xx/429 are retried.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    retryable: bool = False
    aborts_run: bool = False


class AuthError(SyncError):
    """Access token is absent or rejected. Re-authorization is required."""

    aborts_run = True


class ValidationError(SyncError):
    """Payload or request shape is invalid. Never retried."""


class PrerequisiteError(SyncError):
    """A dependency entity (usually the customer) is not mapped yet.

    Counted as ``skipped`` rather than failed.
    """

    def __init__(self, entity_type: str, local_id: str, message: str | None = None) -> None:
        self.entity_type = entity_type
        self.local_id = local_id
        super().__init__(message or f"{entity_type} {local_id} is not synced yet")


class RemoteBusinessError(SyncError):
    """The accounting platform rejected the operation semantically.

    ``detail`` is the platform's message, surfaced verbatim.
    """

    def __init__(self, code: str, detail: str) -> None:
        self.code = code
        self.detail = detail
        super().__init__(f"[{code}] {detail}")


class HttpError(SyncError):
    """Non-2xx response without a structured fault body."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500 or self.status_code == 429


class TransientError(SyncError):
    """Timeout or connection failure talking to the remote platform."""

    retryable = True


class StorageError(SyncError):
    """Mapping store or audit log is unavailable."""

    aborts_run = True


class SyncInProgressError(SyncError):
    """A run for the same (tenant, action) pair is already started."""

    def __init__(self, tenant_id: str, action: str) -> None:
        self.tenant_id = tenant_id
        self.action = action
        super().__init__(f"{action} already in progress for tenant {tenant_id}")


class SyncCancelledError(SyncError):
    """Run stopped because its cancellation signal was set."""

    def __init__(self) -> None:
        super().__init__("cancelled")


def is_retryable(exc: BaseException) -> bool:
    """Return True if the caller may retry the operation that raised ``exc``."""
    return isinstance(exc, SyncError) and bool(exc.retryable)


def aborts_run(exc: BaseException) -> bool:
    """Return True if ``exc`` must unwind the whole batch."""
    return isinstance(exc, SyncError) and exc.aborts_run
