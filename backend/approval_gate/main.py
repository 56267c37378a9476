"""FastAPI application entrypoint and router wiring for the approval service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi_pagination import add_pagination

from approval_gate.api.action_types import router as action_types_router
from approval_gate.api.approval_requests import router as approval_requests_router
from approval_gate.core.config import settings
from approval_gate.core.error_handling import install_error_handling
from approval_gate.core.logging import configure_logging, get_logger
from approval_gate.db.session import async_session_maker, init_db
from approval_gate.schemas.health import HealthStatusResponse
from approval_gate.services.escalation_scheduler import EscalationScheduler

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)
OPENAPI_TAGS = [
    {
        "name": "health",
        "description": (
            "Service liveness/readiness probes used by infrastructure and runtime checks."
        ),
    },
    {
        "name": "approval-requests",
        "description": (
            "Submission, voting, cancellation, and audit reads for gated critical actions."
        ),
    },
    {
        "name": "action-types",
        "description": "Critical action catalog, approval policies, and standing approvers.",
    },
]


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncIterator[None]:
    """Initialize the schema and run the escalation sweep while serving."""
    logger.info(
        "app.lifecycle.starting",
        extra={
            "environment": settings.environment,
            "db_auto_migrate": settings.db_auto_migrate,
        },
    )
    await init_db()
    scheduler: EscalationScheduler | None = None
    if settings.escalation_sweep_enabled:
        scheduler = EscalationScheduler(async_session_maker)
        await scheduler.start()
    fastapi_app.state.escalation_scheduler = scheduler
    logger.info("app.lifecycle.started")
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        logger.info("app.lifecycle.stopped")


app = FastAPI(
    title="Approval Gate API",
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=OPENAPI_TAGS,
)

origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Total-Count", "X-Limit", "X-Offset"],
    )
    logger.info("app.cors.enabled", extra={"origins_count": len(origins)})
else:
    logger.info("app.cors.disabled")

install_error_handling(app)


@app.get(
    "/health",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Check",
    description="Lightweight liveness probe endpoint.",
    responses={
        status.HTTP_200_OK: {
            "description": "Service is alive.",
            "content": {"application/json": {"example": {"ok": True}}},
        }
    },
)
def health() -> HealthStatusResponse:
    """Lightweight liveness probe endpoint."""
    return HealthStatusResponse(ok=True)


@app.get(
    "/healthz",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Health Alias Check",
    description="Alias liveness probe endpoint for platform compatibility.",
)
def healthz() -> HealthStatusResponse:
    """Alias liveness probe endpoint for platform compatibility."""
    return HealthStatusResponse(ok=True)


@app.get(
    "/readyz",
    tags=["health"],
    response_model=HealthStatusResponse,
    summary="Readiness Check",
    description="Readiness probe endpoint for service orchestration checks.",
)
def readyz() -> HealthStatusResponse:
    """Readiness probe endpoint for service orchestration checks."""
    return HealthStatusResponse(ok=True)


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(approval_requests_router)
api_v1.include_router(action_types_router)
app.include_router(api_v1)

add_pagination(app)
logger.debug("app.routes.registered", extra={"count": len(app.routes)})
