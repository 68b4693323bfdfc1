from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from couponhub_api.core.settings import settings
from couponhub_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import WebhookRetentionWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    retention_worker = WebhookRetentionWorker(
        session_factory=_session_factory,
        interval_seconds=settings.webhook_retention_interval_seconds,
        retention_days=settings.webhook_event_retention_days,
    )
    app.state.webhook_retention_worker = retention_worker

    retention_enabled = settings.webhook_retention_worker_enabled
    if retention_enabled:
        retention_worker.start()
        logger.info(
            "Webhook retention worker enabled",
            interval_seconds=retention_worker.interval_seconds,
            retention_days=retention_worker.retention_days,
        )
    else:
        logger.info(
            "Webhook retention worker disabled",
            reason="webhook_retention_worker_enabled is false",
        )

    try:
        yield
    finally:
        if retention_enabled and retention_worker.is_running:
            await retention_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the CouponHub entitlement API."""
    configure_logging(
        service_name="couponhub-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="CouponHub Entitlements API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="couponhub-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
