"""Payment reconciliation: applies gateway signals to bookings idempotently."""

import json
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.dependencies import Requester
from ..core.exceptions import (
    AmountMismatchError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentSignatureError,
    UnknownBookingError,
)
from ..core.observability import MetricsCollector, get_logger
from ..models.booking import Booking, BookingStatus
from ..models.payment import Payment, PaymentMethod, PaymentOutcome, ReviewFlag, ReviewReason
from ..schemas.payment import (
    ConfirmPaymentRequest,
    ListReviewFlagsRequest,
    PaymentSignal,
    ReconcileOutcome,
    ReconcileResult,
)
from .booking_service import BookingService
from .notification_service import NotificationDispatcher
from .payment_gateway import GatewayOrder, PaymentGatewayClient
from .trip_service import parse_uuid

logger = logging.getLogger(__name__)
audit = get_logger("tripmarket.reconciliation")

CAPTURED_STATUSES = {"captured", "authorized"}


class PaymentService:
    """
    Service for payment initiation and reconciliation.

    Reconciliation is keyed by booking id and guarded by the booking's current
    state; the Payment table's unique transaction reference makes a repeated
    delivery of the same signal a no-op.
    """

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.bookings = BookingService(db, notifier=notifier)

    async def get_payment_by_ref(self, transaction_ref: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.transaction_ref == transaction_ref))
        return result.scalar_one_or_none()

    def _stage_payment(self, booking: Booking, signal: PaymentSignal, outcome: PaymentOutcome) -> Payment:
        payment = Payment(
            booking_id=booking.id,
            transaction_ref=signal.transaction_ref,
            gateway_order_id=signal.gateway_order_id,
            amount=signal.amount,
            currency=signal.currency,
            method=signal.method.value,
            outcome=outcome.value,
        )
        self.db.add(payment)
        return payment

    async def _stage_review_flag(
        self,
        booking: Booking,
        payment: Payment,
        reason: ReviewReason,
        details: dict[str, Any],
    ) -> ReviewFlag:
        await self.db.flush()
        flag = ReviewFlag(
            booking_id=booking.id,
            payment_id=payment.id,
            reason=reason.value,
            details=json.dumps(details, sort_keys=True),
        )
        self.db.add(flag)
        await self.db.flush()
        return flag

    async def _duplicate_result(self, booking_id: UUID, transaction_ref: str) -> ReconcileResult:
        existing = await self.get_payment_by_ref(transaction_ref)
        booking = await self.bookings.get_booking_or_raise(booking_id)
        MetricsCollector.record_payment_signal(ReconcileOutcome.DUPLICATE_SIGNAL.value)
        logger.info(
            "Duplicate payment signal ignored",
            extra={"booking_id": str(booking_id), "transaction_ref": transaction_ref}
        )
        return ReconcileResult(
            booking_id=booking_id,
            outcome=ReconcileOutcome.DUPLICATE_SIGNAL,
            booking_status=booking.booking_status,
            payment_outcome=existing.outcome if existing else None,
        )

    async def reconcile(self, signal: PaymentSignal) -> ReconcileResult:
        """
        Apply one payment signal to its booking.

        Raises:
            UnknownBookingError: The booking does not exist; nothing is recorded
            AmountMismatchError: Amount or currency differs from the booking
                total; the booking stays pending and a review flag is recorded
        """
        try:
            booking_id = UUID(signal.booking_id)
        except ValueError:
            booking_id = None
        booking = await self.bookings.get_booking_by_id(booking_id) if booking_id else None
        if booking is None:
            MetricsCollector.record_payment_signal("unknown_booking")
            audit.warning(
                "payment_for_unknown_booking",
                booking_id=signal.booking_id,
                transaction_ref=signal.transaction_ref,
                amount=signal.amount,
                currency=signal.currency,
            )
            raise UnknownBookingError(signal.booking_id)

        if await self.get_payment_by_ref(signal.transaction_ref) is not None:
            return await self._duplicate_result(booking_id, signal.transaction_ref)

        for _ in range(2):
            booking = await self.bookings.apply_lazy_expiry(booking)
            status = BookingStatus(booking.booking_status)

            try:
                if status == BookingStatus.CONFIRMED:
                    return await self._on_confirmed(booking, signal)
                if status == BookingStatus.PENDING:
                    result = await self._on_pending(booking, signal)
                    if result is not None:
                        return result
                    # Lost a race with another transition; decide again
                    await self.db.rollback()
                    booking = await self.bookings.get_booking_or_raise(booking_id)
                    continue
                return await self._on_inactive(booking, signal)
            except IntegrityError:
                # A concurrent delivery of the same signal committed first
                await self.db.rollback()
                return await self._duplicate_result(booking_id, signal.transaction_ref)

        return await self._on_inactive(await self.bookings.get_booking_or_raise(booking_id), signal)

    async def _on_confirmed(self, booking: Booking, signal: PaymentSignal) -> ReconcileResult:
        payment = self._stage_payment(booking, signal, PaymentOutcome.DUPLICATE_BOOKING)
        await self.db.commit()

        MetricsCollector.record_payment_signal(ReconcileOutcome.ALREADY_CONFIRMED.value)
        audit.warning(
            "payment_for_confirmed_booking",
            booking_id=str(booking.id),
            transaction_ref=signal.transaction_ref,
            amount=signal.amount,
        )
        return ReconcileResult(
            booking_id=booking.id,
            outcome=ReconcileOutcome.ALREADY_CONFIRMED,
            booking_status=BookingStatus.CONFIRMED,
            payment_outcome=PaymentOutcome(payment.outcome),
        )

    async def _on_pending(self, booking: Booking, signal: PaymentSignal) -> Optional[ReconcileResult]:
        if signal.amount != booking.total_amount or signal.currency != booking.currency:
            payment = self._stage_payment(booking, signal, PaymentOutcome.MISMATCHED)
            flag = await self._stage_review_flag(booking, payment, ReviewReason.AMOUNT_MISMATCH, {
                "expected_amount": booking.total_amount,
                "expected_currency": booking.currency,
                "received_amount": signal.amount,
                "received_currency": signal.currency,
                "transaction_ref": signal.transaction_ref,
            })
            await self.db.commit()

            MetricsCollector.record_payment_signal("amount_mismatch")
            MetricsCollector.record_review_flag(ReviewReason.AMOUNT_MISMATCH.value)
            audit.warning(
                "payment_amount_mismatch",
                booking_id=str(booking.id),
                review_flag_id=str(flag.id),
                expected_amount=booking.total_amount,
                received_amount=signal.amount,
                expected_currency=booking.currency,
                received_currency=signal.currency,
            )
            raise AmountMismatchError(
                str(booking.id),
                expected_amount=booking.total_amount,
                received_amount=signal.amount,
                expected_currency=booking.currency,
                received_currency=signal.currency,
            )

        self._stage_payment(booking, signal, PaymentOutcome.APPLIED)
        if not await self.bookings.confirm_paid(booking.id, source=signal.method.value):
            return None

        MetricsCollector.record_payment_signal(ReconcileOutcome.CONFIRMED.value)
        audit.info(
            "payment_applied",
            booking_id=str(booking.id),
            transaction_ref=signal.transaction_ref,
            amount=signal.amount,
            method=signal.method.value,
        )
        return ReconcileResult(
            booking_id=booking.id,
            outcome=ReconcileOutcome.CONFIRMED,
            booking_status=BookingStatus.CONFIRMED,
            payment_outcome=PaymentOutcome.APPLIED,
        )

    async def _on_inactive(self, booking: Booking, signal: PaymentSignal) -> ReconcileResult:
        """Money arrived for a booking that no longer holds seats: route it to operations."""
        payment = self._stage_payment(booking, signal, PaymentOutcome.ORPHANED)
        flag = await self._stage_review_flag(booking, payment, ReviewReason.PAYMENT_FOR_INACTIVE_BOOKING, {
            "booking_status": booking.booking_status,
            "received_amount": signal.amount,
            "received_currency": signal.currency,
            "transaction_ref": signal.transaction_ref,
        })
        await self.db.commit()

        MetricsCollector.record_payment_signal(ReconcileOutcome.FLAGGED_FOR_REVIEW.value)
        MetricsCollector.record_review_flag(ReviewReason.PAYMENT_FOR_INACTIVE_BOOKING.value)
        audit.warning(
            "payment_for_inactive_booking",
            booking_id=str(booking.id),
            booking_status=booking.booking_status,
            review_flag_id=str(flag.id),
            transaction_ref=signal.transaction_ref,
            amount=signal.amount,
        )
        return ReconcileResult(
            booking_id=booking.id,
            outcome=ReconcileOutcome.FLAGGED_FOR_REVIEW,
            booking_status=booking.booking_status,
            payment_outcome=PaymentOutcome.ORPHANED,
            review_flag_id=flag.id,
        )

    async def manual_confirm(
        self,
        booking_id: UUID,
        operator: str,
        transaction_ref: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Booking:
        """
        Confirm a pending booking paid out of band. No amount check.

        Raises:
            NotFoundError: Unknown booking
            InvalidTransitionError: The booking is not pending
            ConflictError: ``transaction_ref`` was already recorded
        """
        booking = await self.bookings.get_booking_or_raise(booking_id)
        booking = await self.bookings.apply_lazy_expiry(booking)
        if booking.booking_status != BookingStatus.PENDING.value:
            raise InvalidTransitionError(str(booking_id), booking.booking_status, BookingStatus.CONFIRMED.value)

        signal = PaymentSignal(
            transaction_ref=transaction_ref or f"offline:{booking.code}",
            amount=booking.total_amount,
            currency=booking.currency,
            booking_id=str(booking.id),
            method=PaymentMethod.OFFLINE,
        )
        self._stage_payment(booking, signal, PaymentOutcome.APPLIED)
        try:
            confirmed = await self.bookings.confirm_paid(booking.id, source=PaymentMethod.OFFLINE.value)
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                detail=f"Transaction reference '{signal.transaction_ref}' was already recorded",
                conflicting_resource={"transaction_ref": signal.transaction_ref},
                code="DUPLICATE_TRANSACTION_REF",
            )

        if not confirmed:
            await self.db.rollback()
            current = await self.bookings.get_booking_or_raise(booking_id)
            raise InvalidTransitionError(str(booking_id), current.booking_status, BookingStatus.CONFIRMED.value)

        audit.info(
            "booking_confirmed_offline",
            booking_id=str(booking_id),
            operator=operator,
            transaction_ref=signal.transaction_ref,
            note=note,
        )
        return await self.bookings.get_booking_or_raise(booking_id)

    # Gateway-facing flows

    async def initiate_payment(
        self,
        booking_id: UUID,
        requester: Requester,
        gateway: PaymentGatewayClient,
    ) -> tuple[Booking, GatewayOrder]:
        """
        Create a gateway order for the booking's chargeable total.

        Gateway failures propagate as PaymentGatewayError; the booking and its
        hold are untouched so the traveler can retry.
        """
        booking = await self.bookings.get_booking(booking_id, requester)
        if booking.booking_status != BookingStatus.PENDING.value:
            raise InvalidTransitionError(str(booking_id), booking.booking_status, "awaiting_confirmation")

        order = await gateway.create_order(
            amount=booking.total_amount,
            currency=booking.currency,
            receipt=gateway.receipt_for(booking.code),
            notes={
                "booking_id": str(booking.id),
                "trip_id": str(booking.trip_id),
                "seats": str(booking.seats),
            },
        )
        await self.bookings.mark_payment_initiated(booking.id, order.id)
        return await self.bookings.get_booking_or_raise(booking.id), order

    async def confirm_checkout(
        self,
        request: ConfirmPaymentRequest,
        requester: Requester,
        gateway: PaymentGatewayClient,
    ) -> ReconcileResult:
        """
        Handle the checkout callback: verify the signature, then reconcile
        using the amount the gateway reports for the payment.
        """
        booking_id = parse_uuid(request.booking_id, "booking")
        booking = await self.bookings.get_booking_or_raise(booking_id)
        if not await self.bookings.can_access(booking, requester):
            raise NotFoundError(resource_type="booking", resource_id=request.booking_id)

        if not gateway.verify_payment_signature(
            request.gateway_order_id, request.gateway_payment_id, request.signature
        ):
            audit.warning(
                "payment_signature_invalid",
                booking_id=request.booking_id,
                order_id=request.gateway_order_id,
                payment_id=request.gateway_payment_id,
            )
            raise PaymentSignatureError(request.gateway_order_id)

        payment = await gateway.fetch_payment(request.gateway_payment_id)
        if payment.order_id and payment.order_id != request.gateway_order_id:
            raise PaymentSignatureError(request.gateway_order_id)

        if payment.status not in CAPTURED_STATUSES:
            await self.bookings.mark_payment_failed(booking_id, reason=f"gateway status {payment.status}")
            current = await self.bookings.get_booking_or_raise(booking_id)
            return ReconcileResult(
                booking_id=booking_id,
                outcome=ReconcileOutcome.PAYMENT_FAILED,
                booking_status=current.booking_status,
            )

        return await self.reconcile(PaymentSignal(
            transaction_ref=payment.id,
            amount=payment.amount,
            currency=payment.currency,
            booking_id=str(booking_id),
            gateway_order_id=request.gateway_order_id,
        ))

    async def handle_webhook_event(self, event: dict[str, Any]) -> ReconcileResult:
        """
        Apply a gateway webhook event (payment.captured, order.paid, payment.failed).

        Unknown bookings are logged and dropped so the gateway stops retrying.
        """
        event_type = event.get("event")
        entity = (((event.get("payload") or {}).get("payment") or {}).get("entity")) or {}
        booking_ref = (entity.get("notes") or {}).get("booking_id")

        if not booking_ref or event_type not in ("payment.captured", "order.paid", "payment.failed"):
            logger.info("Webhook event ignored", extra={"event_type": event_type, "booking_ref": booking_ref})
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED)

        if event_type == "payment.failed":
            try:
                booking_id = UUID(str(booking_ref))
            except ValueError:
                return ReconcileResult(outcome=ReconcileOutcome.IGNORED)
            await self.bookings.mark_payment_failed(booking_id, reason=entity.get("error_description"))
            return ReconcileResult(booking_id=booking_id, outcome=ReconcileOutcome.PAYMENT_FAILED)

        try:
            amount = int(entity.get("amount"))
        except (TypeError, ValueError):
            logger.warning(
                "Webhook event with unreadable amount ignored",
                extra={"event_type": event_type, "booking_ref": booking_ref, "amount": entity.get("amount")}
            )
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED)

        signal = PaymentSignal(
            transaction_ref=str(entity.get("id")),
            amount=amount,
            currency=str(entity.get("currency", "")),
            booking_id=str(booking_ref),
            gateway_order_id=entity.get("order_id"),
        )
        try:
            return await self.reconcile(signal)
        except UnknownBookingError:
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED)

    # Review flags

    async def list_review_flags(self, request: ListReviewFlagsRequest) -> tuple[list[ReviewFlag], int]:
        conditions = []
        if request.unresolved_only:
            conditions.append(ReviewFlag.resolved_at.is_(None))

        total = await self.db.scalar(select(func.count()).select_from(ReviewFlag).where(*conditions))
        result = await self.db.execute(
            select(ReviewFlag)
            .where(*conditions)
            .order_by(ReviewFlag.created_at)
            .limit(request.limit)
            .offset(request.offset)
        )
        return list(result.scalars()), total or 0

    async def resolve_review_flag(self, flag_id: UUID, operator: str, note: Optional[str] = None) -> ReviewFlag:
        """Mark a flag resolved. Resolving an already-resolved flag changes nothing."""
        now = utcnow()
        await self.db.execute(
            update(ReviewFlag)
            .where(ReviewFlag.id == flag_id, ReviewFlag.resolved_at.is_(None))
            .values(resolved_at=now, resolved_by=operator, resolution_note=note)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        result = await self.db.execute(
            select(ReviewFlag).where(ReviewFlag.id == flag_id).execution_options(populate_existing=True)
        )
        flag = result.scalar_one_or_none()
        if flag is None:
            raise NotFoundError(resource_type="review_flag", resource_id=str(flag_id))

        logger.info("Review flag resolved", extra={"flag_id": str(flag_id), "operator": operator})
        return flag
