"""Trip router for catalogue operations."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, Requester, StaffAuth
from ..schemas.trip import CreateTripRequest, GetTripRequest, ListTripsRequest, SetTripActiveRequest, Trip, TripList
from ..services.trip_service import TripService, parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/trip", tags=["trip"])


@router.post("/create", response_model=Trip, status_code=201)
async def create_trip(
    request: CreateTripRequest,
    requester: Requester = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Create a trip with its capacity and pricing rules.

    Pricing rules are validated up front so that every trip in the
    catalogue can be quoted.
    """
    trip_service = TripService(db)
    trip = await trip_service.create_trip(request, organizer_id=requester.user_id)

    response_data = Trip.model_validate(trip)
    return JSONResponse(status_code=201, content=response_data.model_dump(mode="json"))


@router.post("/get", response_model=Trip)
async def get_trip(
    request: GetTripRequest,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Get trip details including remaining seats."""
    trip_service = TripService(db)
    trip = await trip_service.get_trip_or_raise(parse_uuid(request.trip_id, "trip"))

    response_data = Trip.model_validate(trip)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/list", response_model=TripList)
async def list_trips(
    request: ListTripsRequest,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    trip_service = TripService(db)
    trips, total = await trip_service.list_trips(request)

    response_data = TripList(items=[Trip.model_validate(t) for t in trips], total=total)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/set-active", response_model=Trip)
async def set_trip_active(
    request: SetTripActiveRequest,
    requester: Requester = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Activate or deactivate a trip.

    A deactivated trip rejects new bookings; existing holds and bookings
    keep their state.
    """
    trip_service = TripService(db)
    trip = await trip_service.set_active(parse_uuid(request.trip_id, "trip"), request.is_active, requester)

    response_data = Trip.model_validate(trip)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
