"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, lifespan events
for database initialization, and the v1 API router.

The sync engine needs two host-supplied adapters: a TokenProvider (OAuth
tokens live elsewhere) and a LocalRecordAdapter (business records live
elsewhere). Without them the app still starts and sync routes answer 503.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx
import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.ledgersync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.ledgersync.api.v1.router import router as v1_router
from src.ledgersync.config import Settings, get_settings
from src.ledgersync.core.database import close_db, get_session, init_db
from src.ledgersync.core.monitoring import MetricsMiddleware, get_metrics_response
from src.ledgersync.core.redis import close_redis, get_redis_pool
from src.ledgersync.sync.audit_log import SyncAuditLog
from src.ledgersync.sync.client import AccountingClient
from src.ledgersync.sync.deferred import DeferredSyncQueue
from src.ledgersync.sync.local_records import LocalRecordAdapter
from src.ledgersync.sync.mapping_store import EntityMappingStore
from src.ledgersync.sync.orchestrator import SyncOrchestrator
from src.ledgersync.sync.runner import SyncRunner
from src.ledgersync.sync.scheduler import SyncScheduler
from src.ledgersync.sync.token_provider import TokenProvider
from src.ledgersync.sync.triggers import SyncTriggerAdapter

logger = structlog.get_logger(__name__)


def build_sync_engine(
    state: Any,
    settings: Settings,
    token_provider: TokenProvider,
    local_records: LocalRecordAdapter,
    session_factory: Callable[..., Any] = get_session,
    redis: aioredis.Redis | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Wire every sync component onto ``state`` (normally ``app.state``)."""
    mapping_store = EntityMappingStore(
        session_factory, chunk_size=settings.MAPPING_QUERY_CHUNK_SIZE
    )
    audit_log = SyncAuditLog(session_factory, error_cap=settings.SYNC_ERROR_CAP)
    client = AccountingClient(
        token_provider,
        base_url=settings.accounting_base_url,
        minor_version=settings.ACCOUNTING_MINOR_VERSION,
        timeout=settings.REMOTE_TIMEOUT_SECONDS,
        transport=transport,
    )
    orchestrator = SyncOrchestrator.from_settings(
        settings, client, mapping_store, audit_log, local_records
    )
    runner = SyncRunner(orchestrator, audit_log)
    deferred = DeferredSyncQueue(redis) if redis is not None else None

    state.mapping_store = mapping_store
    state.audit_log = audit_log
    state.accounting_client = client
    state.orchestrator = orchestrator
    state.sync_runner = runner
    state.deferred_queue = deferred
    state.trigger_adapter = SyncTriggerAdapter(orchestrator, runner, token_provider, deferred)
    state.sync_scheduler = SyncScheduler(
        runner,
        orchestrator,
        audit_log,
        token_provider,
        deferred=deferred,
        interval_minutes=settings.SYNC_INTERVAL_MINUTES,
        retention=settings.SYNC_LOG_RETENTION,
        stale_after=timedelta(minutes=settings.SYNC_STALE_RUN_MINUTES),
    )


def create_app(
    token_provider: TokenProvider | None = None,
    local_records: LocalRecordAdapter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: init DB and the sync engine, tear down on shutdown."""
        settings = get_settings()
        configure_structlog()
        await init_db()

        if token_provider is not None and local_records is not None:
            build_sync_engine(
                app.state,
                settings,
                token_provider,
                local_records,
                redis=get_redis_pool(),
            )
            if settings.SYNC_INTERVAL_MINUTES > 0:
                app.state.sync_scheduler.start()
            logger.info("sync_engine.initialized", base_url=settings.accounting_base_url)
        else:
            app.state.trigger_adapter = None
            logger.warning(
                "sync_engine.not_configured",
                reason="token provider or local record adapter missing",
            )

        yield

        scheduler = getattr(app.state, "sync_scheduler", None)
        if scheduler is not None:
            scheduler.stop()
        runner = getattr(app.state, "sync_runner", None)
        if runner is not None:
            await runner.shutdown()
        await close_redis()
        await close_db()

    app = FastAPI(
        title="ledgersync",
        description="Multi-tenant accounting sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app
