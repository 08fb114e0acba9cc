"""Liveness, readiness and service info probes."""

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from ..core.clock import utcnow
from ..core.config import settings
from ..core.database import ping_database
from ..core.observability import SERVICE_NAME, SERVICE_VERSION
from ..schemas.health import HealthResponse, HealthStatus, ReadinessChecks, ReadinessResponse, ServiceInfo

logger = logging.getLogger(__name__)

# Unversioned probes for load balancers and orchestrators
probe_router = APIRouter(tags=["Health"])

router = APIRouter(prefix="/v1/health", tags=["health"])


def _liveness() -> HealthResponse:
    return HealthResponse(
        status=HealthStatus.HEALTHY,
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        environment=settings.environment,
        timestamp=utcnow(),
    )


@probe_router.get("/health", response_model=HealthResponse, summary="Liveness probe")
async def health_check() -> HealthResponse:
    return _liveness()


@probe_router.get("/ready", response_model=ReadinessResponse, summary="Readiness probe")
async def readiness_check(request: Request) -> JSONResponse:
    """503 until the database answers; also reports which background workers are running."""
    database_ok = await ping_database()
    workers = getattr(request.app.state, "workers", None)
    body = ReadinessResponse(
        status=HealthStatus.READY if database_ok else HealthStatus.NOT_READY,
        service=SERVICE_NAME,
        checks=ReadinessChecks(
            database="ok" if database_ok else "unavailable",
            workers=workers.get_worker_status() if workers is not None else {},
        ),
    )
    if not database_ok:
        logger.warning("Readiness check failed", extra={"database": "unavailable"})
    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(mode="json"),
    )


@probe_router.get("/info", response_model=ServiceInfo, summary="Service information")
async def service_info() -> ServiceInfo:
    return ServiceInfo(
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        environment=settings.environment,
        currency=settings.currency,
        hold_duration_seconds=settings.hold_duration_seconds,
        features={
            "idempotency": True,
            "referrals": True,
            "deposit_payments": True,
            "payment_webhooks": bool(settings.payment_webhook_secret),
        },
    )


@router.post("/ping", response_model=HealthResponse)
async def health_ping() -> HealthResponse:
    """RPC-style liveness check under the versioned API prefix."""
    return _liveness()
