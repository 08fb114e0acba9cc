"""Inventory service: the only code allowed to move a trip's seat counter."""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.exceptions import (
    InsufficientCapacityError,
    InvalidSeatCountError,
    NotFoundError,
    TripInactiveError,
)
from ..core.observability import MetricsCollector
from ..models.booking import HoldStatus, SeatHold
from ..models.trip import Trip

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Seat holds against a trip's capacity.

    Every counter change is a single conditional UPDATE, so no seat can be
    granted twice regardless of how many processes run concurrently. Methods
    flush but never commit: the caller's transaction decides whether a hold
    and the booking that owns it persist together.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def try_hold(self, trip_id: UUID, seats: int) -> SeatHold:
        """
        Atomically take ``seats`` seats from a trip.

        Raises:
            InvalidSeatCountError: If seats < 1
            NotFoundError: If the trip does not exist
            TripInactiveError: If the trip no longer accepts bookings
            InsufficientCapacityError: If the seats do not fit; carries the
                remaining count read right after the failed update
        """
        if seats < 1:
            raise InvalidSeatCountError(requested_seats=seats)

        stmt = (
            update(Trip)
            .where(
                Trip.id == trip_id,
                Trip.is_active.is_(True),
                Trip.seats_consumed + seats <= Trip.capacity,
            )
            .values(seats_consumed=Trip.seats_consumed + seats, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)

        if result.rowcount != 1:
            state = await self._trip_state(trip_id)
            if not state.is_active:
                logger.info(
                    "Hold rejected - trip inactive",
                    extra={"trip_id": str(trip_id), "requested_seats": seats}
                )
                raise TripInactiveError(str(trip_id))

            remaining = state.capacity - state.seats_consumed
            MetricsCollector.record_hold_rejected()
            logger.warning(
                "Hold rejected - insufficient capacity",
                extra={
                    "trip_id": str(trip_id),
                    "requested_seats": seats,
                    "remaining_seats": remaining,
                }
            )
            raise InsufficientCapacityError(str(trip_id), seats, remaining)

        hold = SeatHold(trip_id=trip_id, seats=seats, status=HoldStatus.ACTIVE.value)
        self.db.add(hold)
        await self.db.flush()

        remaining = await self.remaining(trip_id)
        MetricsCollector.record_hold_created(str(trip_id), remaining)
        logger.info(
            "Seat hold granted",
            extra={
                "hold_id": str(hold.id),
                "trip_id": str(trip_id),
                "seats": seats,
                "remaining_seats": remaining,
            }
        )
        return hold

    async def release(self, hold_id: UUID, reason: str = "released") -> bool:
        """
        Return an active hold's seats to its trip.

        Unknown, committed, or already-released holds are left alone so that
        duplicate cleanup triggers are harmless.

        Returns:
            True if this call released the seats
        """
        hold = await self._hold_row(hold_id)
        if hold is None:
            logger.info("Release of unknown hold ignored", extra={"hold_id": str(hold_id)})
            return False

        result = await self.db.execute(
            update(SeatHold)
            .where(SeatHold.id == hold_id, SeatHold.status == HoldStatus.ACTIVE.value)
            .values(status=HoldStatus.RELEASED.value, release_reason=reason, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "Release of inactive hold ignored",
                extra={"hold_id": str(hold_id), "reason": reason}
            )
            return False

        await self.db.execute(
            update(Trip)
            .where(Trip.id == hold.trip_id)
            .values(seats_consumed=Trip.seats_consumed - hold.seats, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()

        remaining = await self.remaining(hold.trip_id)
        MetricsCollector.record_hold_released(str(hold.trip_id), reason, remaining)
        logger.info(
            "Seat hold released",
            extra={
                "hold_id": str(hold_id),
                "trip_id": str(hold.trip_id),
                "seats": hold.seats,
                "reason": reason,
                "remaining_seats": remaining,
            }
        )
        return True

    async def commit(self, hold_id: UUID) -> bool:
        """Mark an active hold as permanent. The counter already includes its seats."""
        result = await self.db.execute(
            update(SeatHold)
            .where(SeatHold.id == hold_id, SeatHold.status == HoldStatus.ACTIVE.value)
            .values(status=HoldStatus.COMMITTED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        committed = result.rowcount == 1
        if committed:
            logger.info("Seat hold committed", extra={"hold_id": str(hold_id)})
        return committed

    async def remaining(self, trip_id: UUID) -> int:
        """Seats still available on a trip."""
        state = await self._trip_state(trip_id)
        return state.capacity - state.seats_consumed

    async def get_hold(self, hold_id: UUID) -> SeatHold | None:
        result = await self.db.execute(
            select(SeatHold).where(SeatHold.id == hold_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _trip_state(self, trip_id: UUID):
        # Column-level read so a stale Trip in the identity map is never consulted
        result = await self.db.execute(
            select(Trip.capacity, Trip.seats_consumed, Trip.is_active).where(Trip.id == trip_id)
        )
        row = result.one_or_none()
        if row is None:
            raise NotFoundError(resource_type="trip", resource_id=str(trip_id))
        return row

    async def _hold_row(self, hold_id: UUID):
        result = await self.db.execute(
            select(SeatHold.trip_id, SeatHold.seats).where(SeatHold.id == hold_id)
        )
        return result.one_or_none()
