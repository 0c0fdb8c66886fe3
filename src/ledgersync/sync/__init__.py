"""Accounting sync engine: mapping store, transcoders, API client, orchestrator, audit log.

Exports:
    SyncOrchestrator: Push/pull runs against the accounting platform.
    EntityMappingStore: Durable local <-> remote id links.
    SyncAuditLog: Run history and in-progress guard.
    AccountingClient: Async REST client for the accounting platform.
    SyncTriggerAdapter: Batch, local event and webhook entry points.
"""

# Import concrete classes from their modules, e.g.
#   from src.ledgersync.sync.orchestrator import SyncOrchestrator
# so importing the package does not pull in the database stack.

__all__ = [
    "AccountingClient",
    "EntityMappingStore",
    "SyncAuditLog",
    "SyncOrchestrator",
    "SyncTriggerAdapter",
]
