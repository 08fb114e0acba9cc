"""Booking lifecycle: creation, confirmation, cancellation and expiry."""

import logging
import re
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.config import settings
from ..core.dependencies import Requester
from ..core.exceptions import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    TripInactiveError,
    ValidationError,
)
from ..core.observability import MetricsCollector
from ..models.booking import Booking, BookingStatus, ChargeMode, PaymentStatus
from ..models.trip import Trip
from ..schemas.booking import CreateBookingRequest, ListBookingsRequest
from ..schemas.pricing import PriceBreakdown, ReferralContext, TripPricing
from .inventory_service import InventoryService
from .notification_service import (
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_EXPIRED,
    NotificationDispatcher,
    notification_dispatcher,
)
from .pricing_service import calculate_price
from .referral_service import ReferralService
from .trip_service import TripService, parse_uuid

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 \-]{6,18}[0-9]$")

SUPPORT_MESSAGE = "Payment not confirmed, please contact support with booking code {code}."


class BookingService:
    """
    Service for the booking state machine.

    pending -> confirmed | cancelled | expired, and confirmed -> cancelled.
    Every transition is an UPDATE guarded by the expected prior state, so
    concurrent actors (API, reconciliation, the expiry sweep) cannot both win.
    """

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.inventory = InventoryService(db)
        self.trips = TripService(db)
        self.referrals = ReferralService(db)
        self.notifier = notifier or notification_dispatcher

    def _generate_booking_code(self, length: int = 8) -> str:
        """Generate a random booking confirmation code."""
        alphabet = string.ascii_uppercase + string.digits
        return "TM-" + "".join(secrets.choice(alphabet) for _ in range(length))

    def _validate_contact(self, request: CreateBookingRequest) -> None:
        errors = {}
        if not request.participant_name.strip():
            errors["participant_name"] = "Name is required"
        if not EMAIL_PATTERN.match(request.participant_email.strip()):
            errors["participant_email"] = "Enter a valid email address"
        if not PHONE_PATTERN.match(request.participant_phone.strip()):
            errors["participant_phone"] = "Enter a valid phone number"
        if errors:
            raise ValidationError("Participant contact details are invalid", errors=errors)

    async def quote(
        self,
        trip_id: UUID,
        seats: int,
        requester: Requester,
        charge_mode: ChargeMode = ChargeMode.FULL,
        now: Optional[datetime] = None,
    ) -> tuple[PriceBreakdown, ReferralContext, int]:
        """Price a prospective booking without side effects."""
        trip = await self.trips.get_trip_or_raise(trip_id)
        referral = await self.referrals.referral_context(requester.user_id, trip)
        remaining = trip.capacity - trip.seats_consumed
        breakdown = calculate_price(
            TripPricing.model_validate(trip),
            seats=seats,
            remaining_capacity=remaining,
            now=now or utcnow(),
            referral=referral,
            charge_mode=charge_mode,
            currency=settings.currency,
        )
        return breakdown, referral, remaining

    async def create_booking(self, request: CreateBookingRequest, requester: Requester) -> Booking:
        """
        Price the request, hold the seats and record a pending booking.

        The hold and the booking commit in one transaction; on any failure
        neither exists.

        Raises:
            ValidationError: malformed participant contact details
            NotFoundError: unknown trip
            TripInactiveError: trip is deactivated
            InvalidSeatCountError, InvalidPricingConfigError: from pricing
            InsufficientCapacityError: seats taken concurrently
        """
        self._validate_contact(request)
        trip_id = parse_uuid(request.trip_id, "trip")
        trip = await self.trips.get_trip_or_raise(trip_id)
        if not trip.is_active:
            raise TripInactiveError(str(trip_id))

        now = utcnow()
        breakdown, referral, _ = await self.quote(trip_id, request.seats, requester, request.charge_mode, now)

        try:
            hold = await self.inventory.try_hold(trip_id, request.seats)

            booking_code = self._generate_booking_code()
            while await self.get_booking_by_code(booking_code):
                booking_code = self._generate_booking_code()

            booking = Booking(
                code=booking_code,
                trip_id=trip_id,
                user_id=requester.user_id,
                hold_id=hold.id,
                seats=request.seats,
                total_amount=breakdown.amount_due,
                full_price_amount=breakdown.total,
                charge_mode=breakdown.charge_mode.value,
                currency=breakdown.currency,
                price_breakdown=breakdown.model_dump_json(),
                booking_status=BookingStatus.PENDING.value,
                payment_status=PaymentStatus.UNPAID.value,
                hold_expires_at=now + timedelta(seconds=settings.hold_duration_seconds),
                participant_name=request.participant_name.strip(),
                participant_email=request.participant_email.strip(),
                participant_phone=request.participant_phone.strip(),
                special_requirements=request.special_requirements,
                referrer_id=referral.referrer_id if referral.is_referred else None,
                referral_discount_amount=breakdown.referral_discount,
            )
            self.db.add(booking)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(booking)
        MetricsCollector.record_booking_created(booking.charge_mode)
        logger.info(
            "Booking created",
            extra={
                "booking_id": str(booking.id),
                "booking_code": booking.code,
                "trip_id": str(trip_id),
                "user_id": requester.user_id,
                "seats": booking.seats,
                "total_amount": booking.total_amount,
                "charge_mode": booking.charge_mode,
                "hold_expires_at": booking.hold_expires_at.isoformat(),
            }
        )
        return booking

    async def get_booking_by_id(self, booking_id: UUID) -> Optional[Booking]:
        stmt = select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_booking_or_raise(self, booking_id: UUID) -> Booking:
        """Get booking by ID or raise NotFoundError."""
        booking = await self.get_booking_by_id(booking_id)
        if booking is None:
            logger.warning("Booking not found", extra={"booking_id": str(booking_id)})
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        return booking

    async def get_booking_by_code(self, code: str) -> Optional[Booking]:
        result = await self.db.execute(select(Booking).where(Booking.code == code))
        return result.scalar_one_or_none()

    async def can_manage(self, booking: Booking, requester: Requester) -> bool:
        """Admins, and the organizer of the booking's own trip, act on it as operators."""
        if requester.is_admin:
            return True
        organizer_id = await self.db.scalar(select(Trip.organizer_id).where(Trip.id == booking.trip_id))
        return organizer_id is not None and requester.organizes(organizer_id)

    async def can_access(self, booking: Booking, requester: Requester) -> bool:
        return booking.user_id == requester.user_id or await self.can_manage(booking, requester)

    async def _authorize(self, booking: Booking, requester: Requester) -> None:
        if not await self.can_access(booking, requester):
            raise AuthorizationError(
                "Bookings can only be viewed or changed by their owner, the trip's organizer or an admin"
            )

    async def authorize_operator(self, booking_id: UUID, requester: Requester) -> Booking:
        """Load a booking for an operator action; organizers are limited to their own trips."""
        booking = await self.get_booking_or_raise(booking_id)
        if not await self.can_manage(booking, requester):
            logger.warning(
                "Operator action on another organizer's booking refused",
                extra={"booking_id": str(booking_id), "requester": requester.user_id}
            )
            raise AuthorizationError("Only the trip's organizer or an admin can act on this booking")
        return booking

    async def get_booking(self, booking_id: UUID, requester: Requester) -> Booking:
        """Load a booking for its owner, its trip's organizer or an admin, expiring it first if its hold lapsed."""
        booking = await self.get_booking_or_raise(booking_id)
        await self._authorize(booking, requester)
        return await self.apply_lazy_expiry(booking)

    async def list_bookings(self, requester: Requester, request: ListBookingsRequest) -> tuple[list[Booking], int]:
        conditions = [Booking.user_id == requester.user_id]
        if request.status:
            conditions.append(Booking.booking_status == request.status.value)

        total = await self.db.scalar(select(func.count()).select_from(Booking).where(*conditions))
        result = await self.db.execute(
            select(Booking)
            .where(*conditions)
            .order_by(Booking.created_at.desc())
            .limit(request.limit)
            .offset(request.offset)
        )
        bookings = [await self.apply_lazy_expiry(b) for b in result.scalars().all()]
        return bookings, total or 0

    @staticmethod
    def support_message(booking: Booking) -> Optional[str]:
        """Message for a traveler whose payment never reached confirmation."""
        stuck_pending = (
            booking.booking_status == BookingStatus.PENDING.value
            and booking.payment_status in (PaymentStatus.AWAITING_CONFIRMATION.value, PaymentStatus.FAILED.value)
        )
        lapsed_after_payment = (
            booking.booking_status == BookingStatus.EXPIRED.value
            and booking.payment_status == PaymentStatus.AWAITING_CONFIRMATION.value
        )
        if stuck_pending or lapsed_after_payment:
            return SUPPORT_MESSAGE.format(code=booking.code)
        return None

    # Expiry

    async def apply_lazy_expiry(self, booking: Booking) -> Booking:
        """Expire ``booking`` if it is pending past its hold deadline; return its current state."""
        if booking.booking_status == BookingStatus.PENDING.value and booking.hold_expires_at <= utcnow():
            await self.expire_booking(booking.id)
            return await self.get_booking_or_raise(booking.id)
        return booking

    async def expire_booking(self, booking_id: UUID, now: Optional[datetime] = None) -> bool:
        """
        Move a pending booking past its deadline to expired and release its seats.

        The deadline is part of the guard, so a booking whose hold is still
        valid can never be expired. Returns True if this call expired it.
        """
        now = now or utcnow()
        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.booking_status == BookingStatus.PENDING.value,
                Booking.hold_expires_at <= now,
            )
            .values(booking_status=BookingStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        row = (await self.db.execute(
            select(Booking.hold_id, Booking.code, Booking.trip_id, Booking.seats).where(Booking.id == booking_id)
        )).one()
        await self.inventory.release(row.hold_id, reason="expired")
        await self.db.commit()

        MetricsCollector.record_booking_expired()
        logger.info(
            "Booking expired and seats released",
            extra={"booking_id": str(booking_id), "booking_code": row.code, "seats_restored": row.seats}
        )
        self.notifier.publish(BOOKING_EXPIRED, {
            "booking_id": str(booking_id),
            "booking_code": row.code,
            "trip_id": str(row.trip_id),
        })
        return True

    async def expire_overdue(self, batch_size: int = 100) -> int:
        """Expire up to ``batch_size`` overdue pending bookings. Returns how many this call expired."""
        now = utcnow()
        result = await self.db.execute(
            select(Booking.id)
            .where(
                Booking.booking_status == BookingStatus.PENDING.value,
                Booking.hold_expires_at <= now,
            )
            .order_by(Booking.hold_expires_at)
            .limit(batch_size)
        )
        candidates = list(result.scalars())
        # Close the read before the per-booking write transactions
        await self.db.commit()

        expired = 0
        for booking_id in candidates:
            try:
                if await self.expire_booking(booking_id, now=now):
                    expired += 1
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Failed to expire booking",
                    extra={"booking_id": str(booking_id), "error": str(e)},
                    exc_info=True
                )

        if expired:
            logger.info(
                "Booking expiry batch completed",
                extra={"expired_count": expired, "candidates": len(candidates), "batch_size": batch_size}
            )
        return expired

    # Payment progress

    async def mark_payment_initiated(self, booking_id: UUID, gateway_order_id: str) -> bool:
        """Record that a gateway order exists for a pending booking."""
        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.booking_status == BookingStatus.PENDING.value,
                Booking.payment_status != PaymentStatus.COMPLETED.value,
            )
            .values(
                payment_status=PaymentStatus.AWAITING_CONFIRMATION.value,
                gateway_order_id=gateway_order_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_payment_failed(self, booking_id: UUID, reason: Optional[str] = None) -> bool:
        """
        Record a failed payment attempt. The hold stays until its deadline so
        the traveler can retry.
        """
        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.booking_status == BookingStatus.PENDING.value,
                Booking.payment_status != PaymentStatus.COMPLETED.value,
            )
            .values(payment_status=PaymentStatus.FAILED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        changed = result.rowcount == 1
        if changed:
            logger.info("Payment attempt failed", extra={"booking_id": str(booking_id), "reason": reason})
        return changed

    # Confirmation

    async def confirm_paid(self, booking_id: UUID, source: str = "gateway") -> bool:
        """
        pending -> confirmed with payment completed.

        Commits the seat hold, attributes a referral purchase when the
        traveler was referred, commits the transaction (including anything
        the caller staged in the session) and publishes booking.confirmed.
        A booking that is not pending, or whose hold has lapsed, is left
        untouched and nothing is committed.

        Returns:
            True if this call confirmed the booking
        """
        now = utcnow()
        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.booking_status == BookingStatus.PENDING.value,
                Booking.hold_expires_at > now,
            )
            .values(
                booking_status=BookingStatus.CONFIRMED.value,
                payment_status=PaymentStatus.COMPLETED.value,
                confirmed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        booking = await self.get_booking_or_raise(booking_id)
        await self.inventory.commit(booking.hold_id)

        attribution = None
        if booking.referrer_id:
            trip = await self.trips.get_trip_or_raise(booking.trip_id)
            attribution = await self.referrals.attribute_purchase(
                referrer_id=booking.referrer_id,
                referred_user_id=booking.user_id,
                booking_id=booking.id,
                trip_id=booking.trip_id,
                discount_amount=booking.referral_discount_amount,
                min_purchases=trip.referral_min_purchases,
            )

        await self.db.commit()

        MetricsCollector.record_booking_confirmed(source)
        logger.info(
            "Booking confirmed",
            extra={
                "booking_id": str(booking_id),
                "booking_code": booking.code,
                "source": source,
                "referral_recorded": bool(attribution and attribution.recorded),
            }
        )
        self.notifier.publish(BOOKING_CONFIRMED, {
            "booking_id": str(booking_id),
            "booking_code": booking.code,
            "trip_id": str(booking.trip_id),
            "user_id": booking.user_id,
            "participant_email": booking.participant_email,
            "seats": booking.seats,
            "amount": booking.total_amount,
            "currency": booking.currency,
        })
        return True

    # Cancellation

    async def cancel_booking(
        self,
        booking_id: UUID,
        requester: Requester,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Cancel a booking on behalf of its owner, its trip's organizer or an admin.

        pending -> cancelled releases the seats. confirmed -> cancelled keeps
        them consumed and marks the booking refund-due. Cancelling a cancelled
        booking is a no-op; an expired booking cannot be cancelled.
        """
        booking = await self.get_booking_or_raise(booking_id)
        await self._authorize(booking, requester)
        return await self._cancel(
            booking,
            actor=requester.user_id,
            reason=reason,
            allowed_from=(BookingStatus.PENDING, BookingStatus.CONFIRMED),
        )

    async def reject_booking(self, booking_id: UUID, actor: str, reason: Optional[str] = None) -> Booking:
        """Operator rejection: cancellation restricted to pending bookings."""
        booking = await self.get_booking_or_raise(booking_id)
        return await self._cancel(booking, actor=actor, reason=reason, allowed_from=(BookingStatus.PENDING,))

    async def _cancel(
        self,
        booking: Booking,
        actor: str,
        reason: Optional[str],
        allowed_from: tuple[BookingStatus, ...],
    ) -> Booking:
        booking_id = booking.id
        for _ in range(2):
            booking = await self.apply_lazy_expiry(booking)
            status = BookingStatus(booking.booking_status)

            if status == BookingStatus.CANCELLED:
                logger.info("Booking already cancelled", extra={"booking_id": str(booking.id)})
                return booking

            if status not in allowed_from:
                raise InvalidTransitionError(str(booking.id), status.value, BookingStatus.CANCELLED.value)

            now = utcnow()
            values = {
                "booking_status": BookingStatus.CANCELLED.value,
                "cancelled_at": now,
                "cancelled_by": actor,
                "cancellation_reason": reason,
                "updated_at": now,
            }
            if status == BookingStatus.CONFIRMED:
                values["refund_due"] = True

            result = await self.db.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.booking_status == status.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another actor moved the booking first; decide again on its new state
                await self.db.rollback()
                booking = await self.get_booking_or_raise(booking_id)
                continue

            if status == BookingStatus.PENDING:
                await self.inventory.release(booking.hold_id, reason="cancelled")
            await self.db.commit()

            MetricsCollector.record_booking_cancelled(status.value)
            logger.info(
                "Booking cancelled",
                extra={
                    "booking_id": str(booking.id),
                    "booking_code": booking.code,
                    "previous_status": status.value,
                    "actor": actor,
                    "refund_due": status == BookingStatus.CONFIRMED,
                }
            )
            self.notifier.publish(BOOKING_CANCELLED, {
                "booking_id": str(booking.id),
                "booking_code": booking.code,
                "trip_id": str(booking.trip_id),
                "previous_status": status.value,
                "refund_due": status == BookingStatus.CONFIRMED,
            })
            return await self.get_booking_or_raise(booking.id)

        current = await self.get_booking_or_raise(booking_id)
        raise InvalidTransitionError(str(booking_id), current.booking_status, BookingStatus.CANCELLED.value)
