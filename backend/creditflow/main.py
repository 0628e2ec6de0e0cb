"""FastAPI application entry point."""

import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from creditflow.container import ServiceContainer, build_container, get_container
from creditflow.core.circuit_breaker import CircuitOpenError
from creditflow.core.config import settings
from creditflow.core.database import engine, init_models
from creditflow.core.logging import setup_logging
from creditflow.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from creditflow.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from creditflow.core.tracing import setup_tracing, shutdown_tracing
from creditflow.modules.identity.router import router as identity_router
from creditflow.modules.job.router import router as job_router
from creditflow.modules.ledger.router import router as ledger_router
from creditflow.modules.ledger.service import InvalidAmountError, InvalidEventMetadataError
from creditflow.modules.webhook.router import router as webhook_router


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the application.

    Args:
        container: Prebuilt services (tests pass one bound to a scratch
            database); by default one is built from settings at startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_container = container is None
        app.state.container = container or build_container(settings)
        if owns_container and settings.DATABASE_URL.startswith("sqlite"):
            # Local development; deployed databases are migrated with alembic
            await init_models(engine)
        try:
            yield
        finally:
            if owns_container:
                await app.state.container.aclose()
            shutdown_tracing()

    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
    )
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
        enable_console_export=settings.DEBUG,
    )
    set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Credit ledger, generation jobs and payment webhooks",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health and dependency status"},
            {"name": "credits", "description": "Balances, billing history and reconciliation"},
            {"name": "jobs", "description": "Generation job queue and worker leases"},
            {"name": "webhooks", "description": "Payment provider events"},
            {"name": "accounts", "description": "Identity provider synchronisation"},
        ],
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(TracingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.exception_handler(CircuitOpenError)
    async def circuit_open_handler(request: Request, exc: CircuitOpenError) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"detail": f"{exc.dependency} temporarily unavailable"},
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
        )

    @app.exception_handler(InvalidAmountError)
    @app.exception_handler(InvalidEventMetadataError)
    async def invalid_input_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/health/dependencies", tags=["health"])
    async def dependency_health(
        container: ServiceContainer = Depends(get_container),
    ) -> dict:
        """Circuit breaker state per dependency."""
        snapshots = [snapshot.to_dict() for snapshot in container.breakers.snapshot()]
        degraded = any(snapshot["state"] != "closed" for snapshot in snapshots)
        return {"status": "degraded" if degraded else "healthy", "dependencies": snapshots}

    @app.post("/health/dependencies/{name}/close", tags=["health"])
    async def force_close_breaker(
        name: str,
        container: ServiceContainer = Depends(get_container),
    ) -> dict:
        """Operator override: close a breaker without waiting for a trial call."""
        if name not in container.breakers:
            raise HTTPException(status_code=404, detail=f"Unknown dependency: {name}")
        breaker = container.breakers.get(name)
        breaker.force_close()
        return breaker.get_state().to_dict()

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    app.include_router(webhook_router, prefix=settings.API_V1_PREFIX)
    app.include_router(job_router, prefix=settings.API_V1_PREFIX)
    app.include_router(ledger_router, prefix=settings.API_V1_PREFIX)
    app.include_router(identity_router, prefix=settings.API_V1_PREFIX)
    return app


app = create_app()
