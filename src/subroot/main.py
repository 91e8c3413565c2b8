"""
Subscription Root Service - Main Entry Point

Keeps the subscriber-set Merkle root published on the ledger and serves
membership proofs.
"""

import signal
import sys
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from prometheus_client import Gauge, make_asgi_app
from sqlalchemy import text
from starlette.responses import Response

from subroot.api.v1 import router as api_v1_router
from subroot.core.auth import APIKeyAuthMiddleware, check_auth_config
from subroot.core.config import settings
from subroot.core.logging import setup_logging
from subroot.crypto.authority import AuthoritySigner
from subroot.db import async_session_factory, close_db, init_db
from subroot.db.repository import RootStateRepository, SubscriberRepository
from subroot.services.ledger_client import LedgerClient, get_ledger_client
from subroot.services.proof_service import ProofService
from subroot.services.root_sync import RootSyncError, RootSyncService

setup_logging()
logger = structlog.get_logger(__name__)

# Prometheus metrics
LEDGER_CONFIG_READY = Gauge(
    "subroot_ledger_config_ready",
    "Ledger config bootstrap status (1=ready, 0=not bootstrapped)",
)
SCHEDULER_LAST_RUN = Gauge(
    "subroot_scheduler_last_run_timestamp",
    "Timestamp of last scheduled sync run",
)

# Scheduler for periodic sync
scheduler = AsyncIOScheduler()

# Global service instances
ledger_client: LedgerClient | None = None
root_sync: RootSyncService | None = None


def load_authority() -> AuthoritySigner:
    """Load the update authority key, or generate an ephemeral one."""
    if settings.AUTHORITY_KEY_FILE:
        signer = AuthoritySigner.from_pem_file(settings.AUTHORITY_KEY_FILE)
        logger.info("Loaded authority key", path=settings.AUTHORITY_KEY_FILE)
        return signer

    logger.warning(
        "No AUTHORITY_KEY_FILE configured - using an ephemeral authority key",
        environment=settings.ENV,
    )
    return AuthoritySigner.generate()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global ledger_client, root_sync

    logger.info(
        "Starting Subscription Root Service",
        version=settings.VERSION,
        environment=settings.ENV,
        ledger_backend=settings.LEDGER_BACKEND,
    )

    check_auth_config()

    # Initialize database
    await init_db()

    subscribers = SubscriberRepository(async_session_factory)
    root_log = RootStateRepository(async_session_factory)

    # Initialize ledger client
    ledger_client = get_ledger_client()
    await ledger_client.connect()

    root_sync = RootSyncService(
        store=subscribers,
        root_log=root_log,
        ledger=ledger_client,
        authority=load_authority(),
    )

    try:
        await root_sync.bootstrap()
        LEDGER_CONFIG_READY.set(1)
    except RootSyncError as e:
        logger.warning(
            "Failed to bootstrap ledger config on startup - sync will fail until resolved",
            error=str(e),
        )
        LEDGER_CONFIG_READY.set(0)

    # Store services in app state for access in routes
    app.state.root_sync = root_sync
    app.state.root_log = root_log
    app.state.proof_service = ProofService(subscribers, root_log)

    if settings.SCHEDULER_ENABLED:
        scheduler.add_job(
            run_sync_job,
            "interval",
            minutes=settings.SYNC_INTERVAL_MINUTES,
            id="root_sync",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info(
            "Scheduler started",
            sync_interval_minutes=settings.SYNC_INTERVAL_MINUTES,
        )

    yield

    # Shutdown
    logger.info("Shutting down Subscription Root Service")

    if settings.SCHEDULER_ENABLED:
        scheduler.shutdown()

    if ledger_client:
        await ledger_client.disconnect()

    await close_db()

    logger.info("Subscription Root Service shutdown complete")


async def run_sync_job() -> None:
    """Execute the scheduled sync cycle."""
    global root_sync

    logger.debug("Running scheduled sync job")
    SCHEDULER_LAST_RUN.set(time.time())

    if not root_sync:
        logger.error("Root sync service not initialized")
        return

    if not root_sync.config_handle:
        try:
            await root_sync.bootstrap()
            LEDGER_CONFIG_READY.set(1)
        except RootSyncError as e:
            logger.error("Ledger config bootstrap failed", error=str(e))
            return

    result = await root_sync.sync()
    if result.success:
        logger.info(
            "Scheduled sync completed",
            outcome=result.outcome.value,
            leaf_count=result.leaf_count,
            duration=result.duration_seconds,
        )
    else:
        logger.error("Scheduled sync failed", error=result.error)


def create_application() -> FastAPI:
    """Create FastAPI application."""
    app = FastAPI(
        title="Subscription Root API",
        description="Merkle subscription-root commitment and proof service",
        version=settings.VERSION,
        docs_url="/docs" if settings.ENV != "production" else None,
        redoc_url="/redoc" if settings.ENV != "production" else None,
        lifespan=lifespan,
    )

    app.add_middleware(APIKeyAuthMiddleware)

    # Include routers
    app.include_router(api_v1_router, prefix="/api/v1")

    # Metrics endpoint
    if settings.METRICS_ENABLED:
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    # Health endpoints
    @app.get("/health")
    async def health() -> dict:
        """Overall service health check."""
        global root_sync

        last = root_sync.last_result if root_sync else None
        return {
            "status": "healthy",
            "service": "subroot",
            "version": settings.VERSION,
            "ledger_backend": settings.LEDGER_BACKEND,
            "config_ready": bool(root_sync and root_sync.config_handle),
            "sync_state": root_sync.state.value if root_sync else "unknown",
            "last_sync": last.to_dict() if last else None,
        }

    @app.get("/ready")
    async def ready() -> Response:
        """
        Readiness probe for Kubernetes.

        Checks database connectivity as the critical dependency.
        """
        try:
            async with async_session_factory() as session:
                await session.execute(text("SELECT 1"))
            return Response(status_code=200, content="ready")
        except Exception as e:
            logger.error("Readiness check failed - database unreachable", error=str(e))
            return Response(status_code=503, content="not ready - database unavailable")

    @app.get("/live")
    async def live() -> Response:
        """Liveness probe for Kubernetes."""
        return Response(status_code=200, content="alive")

    return app


app = create_application()


def handle_signal(signum: int, frame: object) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}, initiating shutdown")
    sys.exit(0)


def main() -> None:
    """Run the service."""
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    logger.info(
        "Starting Subscription Root service",
        host=settings.HOST,
        port=settings.PORT,
        ledger_backend=settings.LEDGER_BACKEND,
    )

    uvicorn.run(
        "subroot.main:app",
        host=settings.HOST,
        port=settings.PORT,
        workers=settings.WORKERS,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
