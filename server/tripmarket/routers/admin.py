"""Operator router: offline confirmation, rejection and payment review."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import AdminAuth, DatabaseSession, Requester, StaffAuth
from ..schemas.admin import AdminBookingActionRequest
from ..schemas.booking import Booking
from ..schemas.payment import (
    ListReviewFlagsRequest,
    ManualConfirmRequest,
    PaymentSignal,
    ReconcileResult,
    ResolveReviewFlagRequest,
    ReviewFlag,
    ReviewFlagList,
)
from ..services.payment_service import PaymentService
from ..services.trip_service import parse_uuid
from .booking import booking_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.post("/booking/confirm", response_model=Booking)
async def confirm_offline_payment(
    request: ManualConfirmRequest,
    operator: Requester = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Confirm a pending booking paid outside the gateway.

    Recorded as an offline payment for the booking total.
    """
    payment_service = PaymentService(db)
    booking_id = parse_uuid(request.booking_id, "booking")
    await payment_service.bookings.authorize_operator(booking_id, operator)
    booking = await payment_service.manual_confirm(
        booking_id,
        operator=operator.user_id,
        transaction_ref=request.transaction_ref,
        note=request.note,
    )
    return JSONResponse(status_code=200, content=booking_to_schema(booking).model_dump(mode="json"))


@router.post("/booking/reject", response_model=Booking)
async def reject_booking(
    request: AdminBookingActionRequest,
    operator: Requester = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Reject a pending booking and release its seats."""
    payment_service = PaymentService(db)
    booking_id = parse_uuid(request.booking_id, "booking")
    await payment_service.bookings.authorize_operator(booking_id, operator)
    booking = await payment_service.bookings.reject_booking(booking_id, actor=operator.user_id, reason=request.reason)
    return JSONResponse(status_code=200, content=booking_to_schema(booking).model_dump(mode="json"))


@router.post("/booking/cancel", response_model=Booking)
async def cancel_booking(
    request: AdminBookingActionRequest,
    operator: Requester = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Cancel a booking on the operator's trip (any trip for admins); confirmed bookings become refund-due."""
    payment_service = PaymentService(db)
    booking_id = parse_uuid(request.booking_id, "booking")
    await payment_service.bookings.authorize_operator(booking_id, operator)
    booking = await payment_service.bookings.cancel_booking(booking_id, operator, reason=request.reason)
    return JSONResponse(status_code=200, content=booking_to_schema(booking).model_dump(mode="json"))


@router.post("/payment/reconcile", response_model=ReconcileResult)
async def reconcile_payment(
    signal: PaymentSignal,
    operator: Requester = AdminAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Replay a payment signal taken from the gateway dashboard."""
    logger.info(
        "Operator replaying payment signal",
        extra={"operator": operator.user_id, "transaction_ref": signal.transaction_ref}
    )
    result = await PaymentService(db).reconcile(signal)
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))


@router.post("/review/list", response_model=ReviewFlagList)
async def list_review_flags(
    request: ListReviewFlagsRequest,
    operator: Requester = AdminAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    flags, total = await PaymentService(db).list_review_flags(request)
    response_data = ReviewFlagList(items=[ReviewFlag.model_validate(f) for f in flags], total=total)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/review/resolve", response_model=ReviewFlag)
async def resolve_review_flag(
    request: ResolveReviewFlagRequest,
    operator: Requester = AdminAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    flag = await PaymentService(db).resolve_review_flag(
        parse_uuid(request.flag_id, "review_flag"), operator=operator.user_id, note=request.note
    )
    return JSONResponse(status_code=200, content=ReviewFlag.model_validate(flag).model_dump(mode="json"))
