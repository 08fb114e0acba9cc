"""Trip catalogue service."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.dependencies import Requester
from ..core.exceptions import AuthorizationError, NotFoundError
from ..models.trip import Trip
from ..schemas.pricing import TripPricing
from ..schemas.trip import CreateTripRequest, ListTripsRequest
from .pricing_service import validate_pricing

logger = logging.getLogger(__name__)


def parse_uuid(value: str, resource_type: str) -> UUID:
    """Parse an id from a request body, treating malformed ids as missing resources."""
    try:
        return UUID(str(value))
    except ValueError:
        raise NotFoundError(resource_type=resource_type, resource_id=str(value))


class TripService:
    """Service for trip catalogue operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_trip(self, request: CreateTripRequest, organizer_id: str) -> Trip:
        """
        Create a trip owned by ``organizer_id``.

        Raises:
            InvalidPricingConfigError: If the pricing rules cannot be priced
        """
        validate_pricing(TripPricing(**request.model_dump(include=set(TripPricing.model_fields))))

        trip = Trip(organizer_id=organizer_id, seats_consumed=0, is_active=True, **request.model_dump())
        self.db.add(trip)
        await self.db.commit()
        await self.db.refresh(trip)

        logger.info(
            "Trip created successfully",
            extra={
                "trip_id": str(trip.id),
                "organizer_id": organizer_id,
                "capacity": trip.capacity,
                "base_price": trip.base_price,
            }
        )
        return trip

    async def get_trip_by_id(self, trip_id: UUID) -> Optional[Trip]:
        stmt = select(Trip).where(Trip.id == trip_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_trip_or_raise(self, trip_id: UUID) -> Trip:
        """Get trip by ID or raise NotFoundError."""
        trip = await self.get_trip_by_id(trip_id)
        if trip is None:
            logger.warning("Trip not found", extra={"trip_id": str(trip_id)})
            raise NotFoundError(resource_type="trip", resource_id=str(trip_id))
        return trip

    async def list_trips(self, request: ListTripsRequest) -> tuple[list[Trip], int]:
        conditions = []
        if request.active_only:
            conditions.append(Trip.is_active.is_(True))
        if request.destination:
            conditions.append(func.lower(Trip.destination) == request.destination.lower())

        total = await self.db.scalar(select(func.count()).select_from(Trip).where(*conditions))
        result = await self.db.execute(
            select(Trip)
            .where(*conditions)
            .order_by(Trip.created_at.desc(), Trip.id)
            .limit(request.limit)
            .offset(request.offset)
        )
        return list(result.scalars()), total or 0

    async def set_active(self, trip_id: UUID, is_active: bool, requester: Requester) -> Trip:
        """
        Activate or deactivate a trip.

        Deactivation only stops new holds; existing bookings are untouched.
        Organizers may only change their own trips; admins any trip.
        """
        trip = await self.get_trip_or_raise(trip_id)
        if not (requester.is_admin or requester.organizes(trip.organizer_id)):
            raise AuthorizationError("Only the trip's organizer or an admin can change its status")

        await self.db.execute(
            update(Trip)
            .where(Trip.id == trip_id)
            .values(is_active=is_active, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            "Trip active flag changed",
            extra={"trip_id": str(trip_id), "is_active": is_active, "actor": requester.user_id}
        )
        return await self.get_trip_or_raise(trip_id)
