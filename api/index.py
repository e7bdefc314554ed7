"""
Checkout Payments - Main FastAPI Application

Single entry point for the payment session API, QPay webhooks, cron
triggers, health check and Prometheus metrics.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from checkout.config import validate_required_config
from checkout.logging import get_logger
from checkout.routers.cron import router as cron_router
from checkout.routers.deps import get_container, shutdown_services
from checkout.routers.sessions import router as sessions_router
from checkout.routers.webhooks import router as webhooks_router
from checkout.services.scheduler import PeriodicJob, SweepScheduler

logger = get_logger(__name__)


# ==================== FASTAPI APP ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup: refuse to run without gateway, storage and secrets
    settings = validate_required_config()

    scheduler = None
    if settings.sweeps_enabled:
        container = await get_container()
        scheduler = SweepScheduler(
            [
                PeriodicJob("reconcile", settings.reconcile_interval_seconds, container.reconcile.run_once),
                PeriodicJob("cleanup", settings.cleanup_interval_seconds, container.cleanup.run_once),
            ]
        )
        scheduler.start()

    logger.info("Checkout service started (sweeps %s)", "on" if scheduler else "off")
    yield

    # Shutdown
    if scheduler is not None:
        await scheduler.stop()
    await shutdown_services()


app = FastAPI(
    title="Checkout Payments",
    description="QPay payment sessions with webhook and reconciliation confirmation",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(sessions_router)
app.include_router(webhooks_router)
app.include_router(cron_router)

# Prometheus exposition
app.mount("/metrics", make_asgi_app())


# ==================== HEALTH CHECK ====================

@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "service": "checkout-payments"}
