"""Unit tests for payment reconciliation."""

import json
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from conftest import RUPEE, booking_request
from tripmarket.core.clock import utcnow
from tripmarket.core.config import settings
from tripmarket.core.dependencies import Requester
from tripmarket.core.exceptions import (
    AmountMismatchError,
    ConflictError,
    InvalidTransitionError,
    PaymentSignatureError,
    UnknownBookingError,
)
from tripmarket.models.booking import Booking, BookingStatus, PaymentStatus
from tripmarket.models.payment import Payment, PaymentOutcome, ReviewReason
from tripmarket.schemas.payment import (
    ConfirmPaymentRequest,
    ListReviewFlagsRequest,
    PaymentSignal,
    ReconcileOutcome,
)
from tripmarket.services.booking_service import BookingService
from tripmarket.services.inventory_service import InventoryService
from tripmarket.services.notification_service import BOOKING_CONFIRMED, notification_dispatcher
from tripmarket.services.payment_gateway import sign
from tripmarket.services.payment_service import PaymentService
from tripmarket.services.referral_service import ReferralService


def signal(booking, ref="pay_A", amount=None, currency="INR") -> PaymentSignal:
    return PaymentSignal(
        transaction_ref=ref,
        amount=booking.total_amount if amount is None else amount,
        currency=currency,
        booking_id=str(booking.id),
    )


async def payments_for(session, booking_id):
    result = await session.execute(select(Payment).where(Payment.booking_id == booking_id))
    return list(result.scalars())


@pytest.mark.asyncio
async def test_matching_payment_confirms_booking(test_session, couple_trip, traveler):
    """Test the ₹14,400 couple booking confirms on a matching signal."""
    trip = await couple_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id, seats=2), traveler)
    assert booking.total_amount == 14_400 * RUPEE

    result = await PaymentService(test_session).reconcile(signal(booking))

    assert result.outcome == ReconcileOutcome.CONFIRMED
    assert result.booking_status == BookingStatus.CONFIRMED
    assert result.payment_outcome == PaymentOutcome.APPLIED

    current = await BookingService(test_session).get_booking_or_raise(booking.id)
    assert current.payment_status == PaymentStatus.COMPLETED.value
    assert await InventoryService(test_session).remaining(trip.id) == 8
    assert [m["event"] for m in notification_dispatcher.published].count(BOOKING_CONFIRMED) == 1


@pytest.mark.asyncio
async def test_repeated_signal_is_a_no_op(test_session, make_trip, traveler):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)

    await service.reconcile(signal(booking))
    again = await service.reconcile(signal(booking))

    assert again.outcome == ReconcileOutcome.DUPLICATE_SIGNAL
    assert again.booking_status == BookingStatus.CONFIRMED
    assert len(await payments_for(test_session, booking.id)) == 1
    assert [m["event"] for m in notification_dispatcher.published].count(BOOKING_CONFIRMED) == 1


@pytest.mark.asyncio
async def test_second_payment_for_confirmed_booking_is_recorded_not_applied(test_session, make_trip, traveler):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)
    await service.reconcile(signal(booking, ref="pay_A"))

    second = await service.reconcile(signal(booking, ref="pay_B"))

    assert second.outcome == ReconcileOutcome.ALREADY_CONFIRMED
    assert second.payment_outcome == PaymentOutcome.DUPLICATE_BOOKING
    outcomes = sorted(p.outcome for p in await payments_for(test_session, booking.id))
    assert outcomes == [PaymentOutcome.APPLIED.value, PaymentOutcome.DUPLICATE_BOOKING.value]


@pytest.mark.asyncio
async def test_amount_mismatch_flags_and_keeps_booking_pending(test_session, make_trip, traveler):
    """Test a short payment never confirms and leaves a review flag."""
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)

    with pytest.raises(AmountMismatchError) as exc_info:
        await service.reconcile(signal(booking, amount=1_000 * RUPEE))

    assert exc_info.value.code == "AMOUNT_MISMATCH"
    assert exc_info.value.booking_id == str(booking.id)

    current = await BookingService(test_session).get_booking_or_raise(booking.id)
    assert current.booking_status == BookingStatus.PENDING.value

    flags, total = await service.list_review_flags(ListReviewFlagsRequest())
    assert total == 1
    assert flags[0].reason == ReviewReason.AMOUNT_MISMATCH.value
    details = json.loads(flags[0].details)
    assert details["expected_amount"] == 10_000 * RUPEE
    assert details["received_amount"] == 1_000 * RUPEE


@pytest.mark.asyncio
async def test_currency_mismatch_is_an_amount_mismatch(test_session, make_trip, traveler):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)

    with pytest.raises(AmountMismatchError):
        await PaymentService(test_session).reconcile(signal(booking, currency="usd"))


@pytest.mark.asyncio
async def test_correct_payment_after_mismatch_still_confirms(test_session, make_trip, traveler):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)
    with pytest.raises(AmountMismatchError):
        await service.reconcile(signal(booking, ref="pay_short", amount=1))

    result = await service.reconcile(signal(booking, ref="pay_full"))

    assert result.outcome == ReconcileOutcome.CONFIRMED


@pytest.mark.asyncio
async def test_payment_for_expired_booking_is_flagged(test_session, make_trip, traveler):
    """Test money for a booking whose hold lapsed is recorded and routed to review."""
    trip = await make_trip(capacity=2)
    booking = await BookingService(test_session).create_booking(booking_request(trip.id, seats=2), traveler)
    await test_session.execute(
        update(Booking)
        .where(Booking.id == booking.id)
        .values(hold_expires_at=utcnow() - timedelta(seconds=1))
        .execution_options(synchronize_session=False)
    )
    await test_session.commit()

    result = await PaymentService(test_session).reconcile(signal(booking))

    assert result.outcome == ReconcileOutcome.FLAGGED_FOR_REVIEW
    assert result.booking_status == BookingStatus.EXPIRED
    assert result.payment_outcome == PaymentOutcome.ORPHANED
    assert result.review_flag_id is not None
    assert await InventoryService(test_session).remaining(trip.id) == 2


@pytest.mark.asyncio
async def test_payment_for_cancelled_booking_is_flagged(test_session, make_trip, traveler):
    trip = await make_trip()
    bookings = BookingService(test_session)
    booking = await bookings.create_booking(booking_request(trip.id), traveler)
    await bookings.cancel_booking(booking.id, traveler)

    result = await PaymentService(test_session).reconcile(signal(booking))

    assert result.outcome == ReconcileOutcome.FLAGGED_FOR_REVIEW
    flags, _ = await PaymentService(test_session).list_review_flags(ListReviewFlagsRequest())
    assert flags[0].reason == ReviewReason.PAYMENT_FOR_INACTIVE_BOOKING.value


@pytest.mark.asyncio
@pytest.mark.parametrize("booking_ref", [lambda: str(uuid4()), lambda: "not-a-booking"])
async def test_payment_for_unknown_booking_records_nothing(test_session, booking_ref):
    service = PaymentService(test_session)

    with pytest.raises(UnknownBookingError) as exc_info:
        await service.reconcile(PaymentSignal(
            transaction_ref="pay_X", amount=100, currency="INR", booking_id=booking_ref()
        ))

    assert exc_info.value.code == "UNKNOWN_BOOKING"
    assert await service.get_payment_by_ref("pay_X") is None


@pytest.mark.asyncio
async def test_manual_confirm(test_session, make_trip, traveler, admin):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    booking_id = booking.id
    service = PaymentService(test_session)

    confirmed = await service.manual_confirm(booking_id, operator=admin.user_id, note="bank transfer")

    assert confirmed.booking_status == BookingStatus.CONFIRMED.value
    payment = await service.get_payment_by_ref(f"offline:{confirmed.code}")
    assert payment.method == "offline"
    assert payment.amount == confirmed.total_amount

    with pytest.raises(InvalidTransitionError):
        await service.manual_confirm(booking_id, operator=admin.user_id)


@pytest.mark.asyncio
async def test_manual_confirm_with_known_reference_conflicts(test_session, make_trip, traveler, admin):
    trip = await make_trip()
    bookings = BookingService(test_session)
    first = await bookings.create_booking(booking_request(trip.id), traveler)
    second = await bookings.create_booking(booking_request(trip.id), traveler)
    second_id = second.id
    service = PaymentService(test_session)
    await service.reconcile(signal(first, ref="utr-123"))

    with pytest.raises(ConflictError):
        await service.manual_confirm(second_id, operator=admin.user_id, transaction_ref="utr-123")

    current = await bookings.get_booking_or_raise(second_id)
    assert current.booking_status == BookingStatus.PENDING.value


@pytest.mark.asyncio
async def test_referred_purchase_is_attributed_once(test_session, make_trip, traveler):
    """Test a referred traveler's confirmed booking adds one purchase to the referrer's ledger."""
    referrals = ReferralService(test_session)
    code = await referrals.get_or_create_code("referrer-1")
    await referrals.attribute_signup(code.code, traveler.user_id)
    trip = await make_trip(referral_enabled=True, referral_discount_percent=Decimal("5"))

    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    assert booking.total_amount == 9_500 * RUPEE
    assert booking.referrer_id == "referrer-1"

    service = PaymentService(test_session)
    await service.reconcile(signal(booking, ref="pay_A"))
    await service.reconcile(signal(booking, ref="pay_A"))
    await service.reconcile(signal(booking, ref="pay_B"))

    stats = await referrals.stats("referrer-1")
    assert stats["total_signups"] == 1
    assert stats["total_purchases"] == 1
    assert stats["referred_discount_total"] == 500 * RUPEE


@pytest.mark.asyncio
async def test_resolve_review_flag(test_session, make_trip, traveler, admin):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)
    with pytest.raises(AmountMismatchError):
        await service.reconcile(signal(booking, amount=1))
    flags, _ = await service.list_review_flags(ListReviewFlagsRequest())

    resolved = await service.resolve_review_flag(flags[0].id, admin.user_id, note="refunded")

    assert resolved.resolved_at is not None
    assert resolved.resolved_by == admin.user_id
    _, unresolved = await service.list_review_flags(ListReviewFlagsRequest())
    _, everything = await service.list_review_flags(ListReviewFlagsRequest(unresolved_only=False))
    assert unresolved == 0
    assert everything == 1


# Gateway-facing flows

@pytest.mark.asyncio
async def test_checkout_flow_confirms_with_gateway_amount(
    test_session, make_trip, traveler, gateway_client, fake_gateway
):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)

    initiated, order = await service.initiate_payment(booking.id, traveler, gateway_client)
    assert initiated.payment_status == PaymentStatus.AWAITING_CONFIRMATION.value
    assert initiated.gateway_order_id == order.id
    assert fake_gateway.orders[order.id]["amount"] == booking.total_amount

    payment_id = fake_gateway.add_payment(order.id, booking.total_amount)
    signature = sign(settings.payment_gateway_key_secret, f"{order.id}|{payment_id}".encode())
    result = await service.confirm_checkout(
        ConfirmPaymentRequest(
            booking_id=str(booking.id),
            gateway_order_id=order.id,
            gateway_payment_id=payment_id,
            signature=signature,
        ),
        traveler,
        gateway_client,
    )

    assert result.outcome == ReconcileOutcome.CONFIRMED


@pytest.mark.asyncio
async def test_checkout_with_underpaid_gateway_amount(test_session, make_trip, traveler, gateway_client, fake_gateway):
    """Test the amount reported by the gateway, not the client, is what gets checked."""
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)
    _, order = await service.initiate_payment(booking.id, traveler, gateway_client)
    payment_id = fake_gateway.add_payment(order.id, 1 * RUPEE)

    with pytest.raises(AmountMismatchError):
        await service.confirm_checkout(
            ConfirmPaymentRequest(
                booking_id=str(booking.id),
                gateway_order_id=order.id,
                gateway_payment_id=payment_id,
                signature=sign(settings.payment_gateway_key_secret, f"{order.id}|{payment_id}".encode()),
            ),
            traveler,
            gateway_client,
        )


@pytest.mark.asyncio
async def test_checkout_rejects_bad_signature(test_session, make_trip, traveler, gateway_client):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)

    with pytest.raises(PaymentSignatureError):
        await PaymentService(test_session).confirm_checkout(
            ConfirmPaymentRequest(
                booking_id=str(booking.id),
                gateway_order_id="order_1",
                gateway_payment_id="pay_1",
                signature="forged",
            ),
            traveler,
            gateway_client,
        )


@pytest.mark.asyncio
async def test_checkout_with_failed_gateway_payment(test_session, make_trip, traveler, gateway_client, fake_gateway):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)
    _, order = await service.initiate_payment(booking.id, traveler, gateway_client)
    payment_id = fake_gateway.add_payment(order.id, booking.total_amount, status="failed")

    result = await service.confirm_checkout(
        ConfirmPaymentRequest(
            booking_id=str(booking.id),
            gateway_order_id=order.id,
            gateway_payment_id=payment_id,
            signature=sign(settings.payment_gateway_key_secret, f"{order.id}|{payment_id}".encode()),
        ),
        traveler,
        gateway_client,
    )

    assert result.outcome == ReconcileOutcome.PAYMENT_FAILED
    assert result.booking_status == BookingStatus.PENDING
    current = await BookingService(test_session).get_booking_or_raise(booking.id)
    assert current.payment_status == PaymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_checkout_for_someone_elses_booking(test_session, make_trip, traveler, gateway_client):
    from tripmarket.core.exceptions import NotFoundError

    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)

    with pytest.raises(NotFoundError):
        await PaymentService(test_session).confirm_checkout(
            ConfirmPaymentRequest(
                booking_id=str(booking.id), gateway_order_id="order_1", gateway_payment_id="pay_1", signature="x"
            ),
            Requester(user_id="intruder"),
            gateway_client,
        )


@pytest.mark.asyncio
async def test_checkout_by_organizer_of_another_trip(
    test_session, make_trip, traveler, gateway_client, fake_gateway
):
    from tripmarket.core.exceptions import NotFoundError

    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    booking_id = booking.id
    service = PaymentService(test_session)
    _, order = await service.initiate_payment(booking_id, traveler, gateway_client)
    payment_id = fake_gateway.add_payment(order.id, booking.total_amount)

    with pytest.raises(NotFoundError):
        await service.confirm_checkout(
            ConfirmPaymentRequest(
                booking_id=str(booking_id),
                gateway_order_id=order.id,
                gateway_payment_id=payment_id,
                signature=sign(settings.payment_gateway_key_secret, f"{order.id}|{payment_id}".encode()),
            ),
            Requester(user_id="organizer-2", roles=["organizer"]),
            gateway_client,
        )

    current = await BookingService(test_session).get_booking_or_raise(booking_id)
    assert current.booking_status == BookingStatus.PENDING.value


def webhook_event(event, booking_id, amount, payment_id="pay_W"):
    return {
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": "order_W",
                    "amount": amount,
                    "currency": "INR",
                    "status": "captured" if event != "payment.failed" else "failed",
                    "notes": {"booking_id": str(booking_id)},
                }
            }
        },
    }


@pytest.mark.asyncio
async def test_webhook_captured_event_confirms(test_session, make_trip, traveler):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    service = PaymentService(test_session)

    first = await service.handle_webhook_event(webhook_event("payment.captured", booking.id, booking.total_amount))
    replay = await service.handle_webhook_event(webhook_event("order.paid", booking.id, booking.total_amount))

    assert first.outcome == ReconcileOutcome.CONFIRMED
    assert replay.outcome == ReconcileOutcome.DUPLICATE_SIGNAL


@pytest.mark.asyncio
async def test_webhook_failed_event_marks_payment_failed(test_session, make_trip, traveler):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)

    result = await PaymentService(test_session).handle_webhook_event(
        webhook_event("payment.failed", booking.id, booking.total_amount)
    )

    assert result.outcome == ReconcileOutcome.PAYMENT_FAILED
    current = await BookingService(test_session).get_booking_or_raise(booking.id)
    assert current.payment_status == PaymentStatus.FAILED.value
    assert current.booking_status == BookingStatus.PENDING.value


@pytest.mark.asyncio
async def test_webhook_for_unknown_booking_is_ignored(test_session):
    result = await PaymentService(test_session).handle_webhook_event(
        webhook_event("payment.captured", uuid4(), 100)
    )

    assert result.outcome == ReconcileOutcome.IGNORED


@pytest.mark.asyncio
async def test_webhook_unrelated_event_is_ignored(test_session):
    result = await PaymentService(test_session).handle_webhook_event({"event": "refund.created", "payload": {}})

    assert result.outcome == ReconcileOutcome.IGNORED


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [None, "not-a-number", {"value": 100}])
async def test_webhook_with_unreadable_amount_is_ignored(test_session, make_trip, traveler, amount):
    trip = await make_trip()
    booking = await BookingService(test_session).create_booking(booking_request(trip.id), traveler)
    booking_id = booking.id

    result = await PaymentService(test_session).handle_webhook_event(
        webhook_event("payment.captured", booking_id, amount)
    )

    assert result.outcome == ReconcileOutcome.IGNORED
    current = await BookingService(test_session).get_booking_or_raise(booking_id)
    assert current.booking_status == BookingStatus.PENDING.value
    payments = (await test_session.execute(select(Payment).where(Payment.booking_id == booking_id))).scalars().all()
    assert payments == []
