"""Deferred queue for remote changes that arrived before their prerequisites.

A remote payment notification can reference invoices that are not mapped
yet. Instead of dropping it, the trigger adapter parks the remote id here and
the scheduler replays it after the next push cycle.

Key pattern: t:{tenant_id}:sync:deferred
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.ledgersync.sync.schemas import EntityType, ItemOutcome, ItemResult

logger = structlog.get_logger(__name__)

MAX_DEFERRED = 1000
MAX_REPLAY_ATTEMPTS = 5


class DeferredSyncQueue:
    """Per-tenant Redis Stream of remote ids waiting on a prerequisite.

    Args:
        redis: Raw async Redis client (decode_responses=True).
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"t:{tenant_id}:sync:deferred"

    async def defer(
        self,
        tenant_id: str,
        entity_type: EntityType,
        remote_id: str,
        reason: str,
        attempts: int = 0,
    ) -> str:
        """Park a remote id for a later retry. Returns the stream message id."""
        data = {
            "entity_type": entity_type.value,
            "remote_id": remote_id,
            "reason": reason,
            "attempts": str(attempts),
            "deferred_at": datetime.now(timezone.utc).isoformat(),
        }
        message_id = await self._redis.xadd(
            self._key(tenant_id), data, maxlen=MAX_DEFERRED, approximate=True
        )
        logger.info(
            "deferred.queued",
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            remote_id=remote_id,
            reason=reason,
            attempts=attempts,
        )
        return message_id

    async def list(self, tenant_id: str, count: int = 100) -> list[tuple[str, dict[str, Any]]]:
        return await self._redis.xrange(self._key(tenant_id), count=count)

    async def remove(self, tenant_id: str, message_id: str) -> int:
        return await self._redis.xdel(self._key(tenant_id), message_id)

    async def replay(self, tenant_id: str, orchestrator: Any, count: int = 100) -> dict[str, int]:
        """Re-run reconcile_remote for every parked entry.

        Entries still blocked are re-queued with an incremented attempt
        count until MAX_REPLAY_ATTEMPTS, then dropped with a warning.
        """
        results = {"resolved": 0, "requeued": 0, "dropped": 0}
        for message_id, data in await self.list(tenant_id, count=count):
            entity_type = EntityType(data["entity_type"])
            remote_id = data["remote_id"]
            attempts = int(data.get("attempts", "0")) + 1

            result: ItemResult = await orchestrator.reconcile_remote(
                tenant_id, entity_type, remote_id
            )
            await self.remove(tenant_id, message_id)

            if not needs_deferral(result):
                results["resolved"] += 1
                continue
            if attempts >= MAX_REPLAY_ATTEMPTS:
                results["dropped"] += 1
                logger.warning(
                    "deferred.dropped",
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    remote_id=remote_id,
                    attempts=attempts,
                )
                continue
            await self.defer(tenant_id, entity_type, remote_id, data.get("reason", ""), attempts)
            results["requeued"] += 1

        logger.info("deferred.replayed", tenant_id=tenant_id, **results)
        return results


def needs_deferral(result: ItemResult) -> bool:
    """True when a pulled payment left linked invoices unresolved."""
    if result.entity_type != EntityType.PAYMENT:
        return False
    if result.outcome == ItemOutcome.FAILED:
        return False
    return bool(result.detail.get("unmapped_remote_invoices"))
