"""FastAPI application for PlanSync: webhook receiver, manual sync, health."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.base import BaseHTTPMiddleware

from plansync import __version__
from plansync.config import get_config
from plansync.core.logging import configure_logging
from plansync.db.connection import init_db
from plansync.services import build_services
from plansync.web.routes import health, sync, webhooks

# Initialize structured logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    services = build_services(config)
    await init_db(services.engine)
    app.state.services = services
    logger.info(
        "plansync_started",
        sync_enabled=config.webhook.sync_enabled,
        ado_configured=config.ado.is_configured,
        productboard_configured=config.productboard.is_configured,
    )
    try:
        yield
    finally:
        await services.close()
        logger.info("plansync_stopped")


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=request.url.path
        )

        logger.info(
            "request_started",
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            logger.info("request_completed", status_code=response.status_code)
            return response

        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


def create_app() -> FastAPI:
    app = FastAPI(
        title="PlanSync",
        description="ProductBoard <-> Azure DevOps synchronization service",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)

    # Prometheus Metrics
    Instrumentator().instrument(app).expose(app)

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(sync.router)
    return app


app = create_app()
