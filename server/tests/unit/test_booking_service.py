"""Unit tests for the booking service."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import RUPEE, booking_request
from tripmarket.core.clock import utcnow
from tripmarket.core.exceptions import (
    AuthorizationError,
    InvalidSeatCountError,
    InvalidTransitionError,
    TripInactiveError,
    ValidationError,
)
from tripmarket.models.booking import Booking, BookingStatus, ChargeMode, HoldStatus, PaymentStatus
from tripmarket.schemas.booking import ListBookingsRequest
from tripmarket.services.booking_service import BookingService
from tripmarket.services.inventory_service import InventoryService
from tripmarket.services.notification_service import (
    BOOKING_CANCELLED,
    BOOKING_EXPIRED,
    notification_dispatcher,
)
from tripmarket.services.trip_service import TripService


async def lapse_hold(session, booking_id):
    """Move a booking's hold deadline into the past."""
    await session.execute(
        update(Booking)
        .where(Booking.id == booking_id)
        .values(hold_expires_at=utcnow() - timedelta(seconds=1))
        .execution_options(synchronize_session=False)
    )
    await session.commit()


def published_events():
    return [message["event"] for message in notification_dispatcher.published]


@pytest.mark.asyncio
async def test_create_booking_holds_seats_and_snapshots_price(test_session, couple_trip, traveler):
    """Test a booking is pending, holds its seats and stores the computed total."""
    trip = await couple_trip(capacity=6)
    service = BookingService(test_session)

    booking = await service.create_booking(booking_request(trip.id, seats=2), traveler)

    assert booking.booking_status == BookingStatus.PENDING.value
    assert booking.payment_status == PaymentStatus.UNPAID.value
    assert booking.total_amount == 14_400 * RUPEE
    assert booking.full_price_amount == 14_400 * RUPEE
    assert booking.currency == "INR"
    assert booking.code.startswith("TM-")
    assert booking.hold_expires_at > utcnow()

    inventory = InventoryService(test_session)
    assert await inventory.remaining(trip.id) == 4
    hold = await inventory.get_hold(booking.hold_id)
    assert hold.status == HoldStatus.ACTIVE.value
    assert hold.seats == 2


@pytest.mark.asyncio
async def test_create_booking_deposit_mode(test_session, make_trip, traveler):
    trip = await make_trip(prebooking_amount=2_000 * RUPEE)

    booking = await BookingService(test_session).create_booking(
        booking_request(trip.id, seats=2, charge_mode=ChargeMode.DEPOSIT), traveler
    )

    assert booking.total_amount == 4_000 * RUPEE
    assert booking.full_price_amount == 20_000 * RUPEE
    assert booking.charge_mode == ChargeMode.DEPOSIT.value


@pytest.mark.asyncio
async def test_create_booking_rejects_invalid_contact(test_session, make_trip, traveler):
    trip = await make_trip()

    with pytest.raises(ValidationError) as exc_info:
        await BookingService(test_session).create_booking(
            booking_request(trip.id, participant_email="not-an-email", participant_phone="12"),
            traveler,
        )

    errors = exc_info.value.problem_details["errors"]
    assert set(errors) == {"participant_email", "participant_phone"}


@pytest.mark.asyncio
async def test_create_booking_on_inactive_trip(test_session, make_trip, traveler, organizer):
    trip = await make_trip()
    trip_id = trip.id
    await TripService(test_session).set_active(trip_id, False, organizer)

    with pytest.raises(TripInactiveError):
        await BookingService(test_session).create_booking(booking_request(trip_id), traveler)


@pytest.mark.asyncio
async def test_create_booking_beyond_remaining_seats(test_session, make_trip, traveler):
    """Test a request for more seats than remain records neither a hold nor a booking."""
    trip = await make_trip(capacity=3)
    trip_id = trip.id
    service = BookingService(test_session)
    await service.create_booking(booking_request(trip_id, seats=2), traveler)

    with pytest.raises(InvalidSeatCountError) as exc_info:
        await service.create_booking(booking_request(trip_id, seats=2), traveler)

    assert exc_info.value.problem_details["remaining_seats"] == 1
    assert await InventoryService(test_session).remaining(trip_id) == 1
    _, total = await service.list_bookings(traveler, ListBookingsRequest())
    assert total == 1


@pytest.mark.asyncio
async def test_get_booking_applies_lazy_expiry(test_session, make_trip, traveler):
    """Test reading a booking past its deadline expires it and frees its seats."""
    trip = await make_trip(capacity=4)
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id, seats=3), traveler)
    await lapse_hold(test_session, booking.id)

    current = await service.get_booking(booking.id, traveler)

    assert current.booking_status == BookingStatus.EXPIRED.value
    assert await InventoryService(test_session).remaining(trip.id) == 4
    assert BOOKING_EXPIRED in published_events()


@pytest.mark.asyncio
async def test_get_booking_of_another_user_is_forbidden(test_session, make_trip, traveler):
    from tripmarket.core.dependencies import Requester

    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)

    with pytest.raises(AuthorizationError):
        await service.get_booking(booking.id, Requester(user_id="someone-else"))


@pytest.mark.asyncio
async def test_organizer_acts_only_on_own_trip_bookings(test_session, make_trip, traveler, organizer):
    from tripmarket.core.dependencies import Requester

    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)
    booking_id = booking.id
    await service.confirm_paid(booking_id)
    foreign_organizer = Requester(user_id="organizer-2", roles=["organizer"])

    assert (await service.get_booking(booking_id, organizer)).participant_email == "asha@example.com"
    with pytest.raises(AuthorizationError):
        await service.get_booking(booking_id, foreign_organizer)
    with pytest.raises(AuthorizationError):
        await service.cancel_booking(booking_id, foreign_organizer)
    with pytest.raises(AuthorizationError):
        await service.authorize_operator(booking_id, foreign_organizer)
    with pytest.raises(AuthorizationError):
        await service.authorize_operator(booking_id, traveler)

    current = await service.get_booking_or_raise(booking_id)
    assert current.booking_status == BookingStatus.CONFIRMED.value
    assert current.refund_due is False
    assert (await service.authorize_operator(booking_id, organizer)).id == booking_id


@pytest.mark.asyncio
async def test_admin_may_act_on_any_booking(test_session, make_trip, traveler, admin):
    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)

    assert await service.can_manage(booking, admin) is True
    assert await service.can_manage(booking, traveler) is False
    assert await service.can_access(booking, traveler) is True


@pytest.mark.asyncio
async def test_expire_overdue_only_touches_lapsed_bookings(test_session, make_trip, traveler):
    trip = await make_trip(capacity=10)
    service = BookingService(test_session)
    lapsed = await service.create_booking(booking_request(trip.id, seats=2), traveler)
    fresh = await service.create_booking(booking_request(trip.id, seats=3), traveler)
    await lapse_hold(test_session, lapsed.id)

    assert await service.expire_overdue(batch_size=10) == 1
    assert await service.expire_overdue(batch_size=10) == 0

    assert (await service.get_booking_or_raise(lapsed.id)).booking_status == BookingStatus.EXPIRED.value
    assert (await service.get_booking_or_raise(fresh.id)).booking_status == BookingStatus.PENDING.value
    assert await InventoryService(test_session).remaining(trip.id) == 7


@pytest.mark.asyncio
async def test_expire_booking_respects_deadline(test_session, make_trip, traveler):
    """Test a booking whose hold is still valid cannot be expired."""
    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)

    assert await service.expire_booking(booking.id) is False
    await test_session.commit()
    assert (await service.get_booking_or_raise(booking.id)).booking_status == BookingStatus.PENDING.value


@pytest.mark.asyncio
async def test_cancel_pending_releases_seats(test_session, make_trip, traveler):
    trip = await make_trip(capacity=5)
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id, seats=4), traveler)

    cancelled = await service.cancel_booking(booking.id, traveler, reason="plans changed")

    assert cancelled.booking_status == BookingStatus.CANCELLED.value
    assert cancelled.cancellation_reason == "plans changed"
    assert cancelled.refund_due is False
    assert await InventoryService(test_session).remaining(trip.id) == 5
    assert BOOKING_CANCELLED in published_events()


@pytest.mark.asyncio
async def test_cancel_confirmed_keeps_seats_and_marks_refund_due(test_session, make_trip, traveler):
    trip = await make_trip(capacity=5)
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id, seats=2), traveler)
    assert await service.confirm_paid(booking.id) is True

    cancelled = await service.cancel_booking(booking.id, traveler)

    assert cancelled.booking_status == BookingStatus.CANCELLED.value
    assert cancelled.refund_due is True
    assert await InventoryService(test_session).remaining(trip.id) == 3


@pytest.mark.asyncio
async def test_cancel_twice_is_a_no_op(test_session, make_trip, traveler):
    trip = await make_trip(capacity=5)
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id, seats=2), traveler)

    await service.cancel_booking(booking.id, traveler)
    again = await service.cancel_booking(booking.id, traveler)

    assert again.booking_status == BookingStatus.CANCELLED.value
    assert await InventoryService(test_session).remaining(trip.id) == 5
    assert published_events().count(BOOKING_CANCELLED) == 1


@pytest.mark.asyncio
async def test_cancel_expired_booking_is_invalid(test_session, make_trip, traveler):
    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)
    booking_id = booking.id
    await lapse_hold(test_session, booking_id)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.cancel_booking(booking_id, traveler)

    assert exc_info.value.code == "INVALID_TRANSITION"
    assert (await service.get_booking_or_raise(booking_id)).booking_status == BookingStatus.EXPIRED.value


@pytest.mark.asyncio
async def test_reject_only_applies_to_pending(test_session, make_trip, traveler, admin):
    trip = await make_trip(capacity=5)
    service = BookingService(test_session)
    pending = await service.create_booking(booking_request(trip.id, seats=1), traveler)
    confirmed = await service.create_booking(booking_request(trip.id, seats=1), traveler)
    confirmed_id = confirmed.id
    await service.confirm_paid(confirmed_id)

    rejected = await service.reject_booking(pending.id, actor=admin.user_id, reason="duplicate request")
    assert rejected.booking_status == BookingStatus.CANCELLED.value

    with pytest.raises(InvalidTransitionError):
        await service.reject_booking(confirmed_id, actor=admin.user_id)


@pytest.mark.asyncio
async def test_confirm_paid_requires_live_hold(test_session, make_trip, traveler):
    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)
    await lapse_hold(test_session, booking.id)

    assert await service.confirm_paid(booking.id) is False
    await test_session.rollback()


@pytest.mark.asyncio
async def test_confirm_paid_commits_hold(test_session, make_trip, traveler):
    trip = await make_trip(capacity=3)
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id, seats=2), traveler)
    booking_id = booking.id

    assert await service.confirm_paid(booking_id) is True
    assert await service.confirm_paid(booking_id) is False
    await test_session.rollback()

    current = await service.get_booking_or_raise(booking_id)
    hold = await InventoryService(test_session).get_hold(current.hold_id)
    assert current.booking_status == BookingStatus.CONFIRMED.value
    assert current.payment_status == PaymentStatus.COMPLETED.value
    assert current.confirmed_at is not None
    assert hold.status == HoldStatus.COMMITTED.value


@pytest.mark.asyncio
async def test_support_message_for_unconfirmed_payment(test_session, make_trip, traveler):
    trip = await make_trip()
    service = BookingService(test_session)
    booking = await service.create_booking(booking_request(trip.id), traveler)
    assert BookingService.support_message(booking) is None

    await service.mark_payment_initiated(booking.id, "order_1")
    current = await service.get_booking_or_raise(booking.id)

    assert current.payment_status == PaymentStatus.AWAITING_CONFIRMATION.value
    assert current.code in BookingService.support_message(current)


@pytest.mark.asyncio
async def test_list_bookings_filters_by_status(test_session, make_trip, traveler):
    trip = await make_trip()
    service = BookingService(test_session)
    first = await service.create_booking(booking_request(trip.id), traveler)
    await service.create_booking(booking_request(trip.id), traveler)
    await service.cancel_booking(first.id, traveler)

    pending, pending_total = await service.list_bookings(
        traveler, ListBookingsRequest(status=BookingStatus.PENDING)
    )
    everything, total = await service.list_bookings(traveler, ListBookingsRequest())

    assert pending_total == 1
    assert pending[0].booking_status == BookingStatus.PENDING.value
    assert total == 2
    assert len(everything) == 2
