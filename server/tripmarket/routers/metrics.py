"""Metrics endpoint for Prometheus scraping."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession
from ..core.observability import MetricsCollector, get_prometheus_metrics
from ..models.trip import Trip

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Endpoint for Prometheus to scrape metrics",
    response_class=Response,
    tags=["Observability"]
)
async def metrics(db: AsyncSession = DatabaseSession):
    """
    Return Prometheus metrics.

    The remaining-seats gauge is refreshed from the database for active
    trips on every scrape so it survives restarts.
    """
    result = await db.execute(
        select(Trip.id, Trip.capacity, Trip.seats_consumed).where(Trip.is_active.is_(True))
    )
    for trip_id, capacity, seats_consumed in result:
        MetricsCollector.record_seats_remaining(str(trip_id), capacity - seats_consumed)

    return Response(content=get_prometheus_metrics(), media_type=CONTENT_TYPE_LATEST)
