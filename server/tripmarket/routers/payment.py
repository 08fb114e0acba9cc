"""Payment router: gateway checkout, callbacks and webhooks."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, RequiredAuth, Requester
from ..core.exceptions import AmountMismatchError, PaymentSignatureError, ValidationError
from ..schemas.payment import (
    ConfirmPaymentRequest,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentFailedRequest,
    ReconcileOutcome,
    ReconcileResult,
)
from ..services.payment_gateway import PaymentGatewayClient, get_payment_gateway
from ..services.payment_service import PaymentService
from ..services.trip_service import parse_uuid
from .booking import booking_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payment", tags=["payment"])

GATEWAY_DEPENDENCY = Depends(get_payment_gateway)
WEBHOOK_SIGNATURE_HEADER = Header(None, alias="X-Razorpay-Signature")


@router.post("/initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    request: InitiatePaymentRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
    gateway: PaymentGatewayClient = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """
    Create a gateway order for a pending booking's chargeable amount.

    The booking's payment status becomes awaiting_confirmation. A gateway
    failure leaves the booking unchanged and is safe to retry.
    """
    payment_service = PaymentService(db)
    booking, order = await payment_service.initiate_payment(
        parse_uuid(request.booking_id, "booking"), requester, gateway
    )

    logger.info(
        "Payment initiated",
        extra={"booking_id": str(booking.id), "order_id": order.id, "amount": order.amount}
    )

    response_data = InitiatePaymentResponse(
        booking_id=booking.id,
        order_id=order.id,
        amount=order.amount,
        currency=order.currency,
        key_id=gateway.key_id,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/confirm", response_model=ReconcileResult)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
    gateway: PaymentGatewayClient = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """
    Checkout callback from the client after the gateway accepted a payment.

    The signature is verified and the amount is taken from the gateway, not
    from the client.
    """
    payment_service = PaymentService(db)
    result = await payment_service.confirm_checkout(request, requester, gateway)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.post("/fail")
async def payment_failed(
    request: PaymentFailedRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Record a failed checkout attempt; the seats stay held until the deadline."""
    payment_service = PaymentService(db)
    booking_id = parse_uuid(request.booking_id, "booking")

    await payment_service.bookings.get_booking(booking_id, requester)
    await payment_service.bookings.mark_payment_failed(booking_id, reason=request.reason)
    booking = await payment_service.bookings.get_booking_or_raise(booking_id)

    return JSONResponse(status_code=200, content=booking_to_schema(booking).model_dump(mode="json"))


@router.post("/webhook", response_model=ReconcileResult)
async def payment_webhook(
    request: Request,
    db: AsyncSession = DatabaseSession,
    gateway: PaymentGatewayClient = GATEWAY_DEPENDENCY,
    signature: Optional[str] = WEBHOOK_SIGNATURE_HEADER,
) -> JSONResponse:
    """
    Gateway webhook. May be delivered late, repeatedly or out of order.

    Any verified delivery is acknowledged with 200 so the gateway stops
    retrying; amount mismatches are acknowledged after being flagged.
    """
    body = await request.body()
    if not gateway.verify_webhook_signature(body, signature):
        logger.warning("Webhook signature verification failed", extra={"has_signature": bool(signature)})
        raise PaymentSignatureError("webhook")

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    payment_service = PaymentService(db)
    try:
        result = await payment_service.handle_webhook_event(event)
    except AmountMismatchError as e:
        result = ReconcileResult(
            booking_id=e.booking_id,
            outcome=ReconcileOutcome.FLAGGED_FOR_REVIEW,
        )

    logger.info(
        "Webhook processed",
        extra={"event_type": event.get("event"), "outcome": result.outcome.value}
    )
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))
