"""Booking router for booking operations."""

import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, IdempotencyKey, RequiredAuth, Requester
from ..schemas.booking import (
    Booking,
    BookingList,
    CancelBookingRequest,
    CreateBookingRequest,
    GetBookingRequest,
    ListBookingsRequest,
)
from ..services.booking_service import BookingService
from ..services.idempotency_service import handle_idempotent_operation
from ..services.trip_service import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/booking", tags=["booking"])


def booking_to_schema(booking_model) -> Booking:
    """Convert booking model to schema, attaching the support message when payment stalled."""
    booking = Booking.model_validate(booking_model)
    booking.support_message = BookingService.support_message(booking_model)
    return booking


@router.post("/create", response_model=Booking, status_code=201)
async def create_booking(
    request: CreateBookingRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
    idempotency_key: Optional[str] = IdempotencyKey,
) -> JSONResponse:
    """
    Hold seats and create a pending booking.

    The price is computed server-side; the response carries the amount the
    payment must match. Retries with the same Idempotency-Key replay the
    first response instead of holding seats again.
    """
    booking_service = BookingService(db)

    async def operation():
        booking = await booking_service.create_booking(request, requester)

        logger.info(
            "Booking created successfully",
            extra={
                "booking_id": str(booking.id),
                "booking_code": booking.code,
                "trip_id": request.trip_id,
                "seats": request.seats,
                "user_id": requester.user_id,
                "idempotency_key": idempotency_key,
            }
        )

        return booking_to_schema(booking).model_dump(mode="json")

    return await handle_idempotent_operation(
        db,
        operation="booking/create",
        user_id=requester.user_id,
        idempotency_key=idempotency_key,
        request_body=request.model_dump(mode="json"),
        operation_func=operation,
        success_status=201,
    )


@router.post("/cancel", response_model=Booking)
async def cancel_booking(
    request: CancelBookingRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
    idempotency_key: Optional[str] = IdempotencyKey,
) -> JSONResponse:
    """
    Cancel a booking.

    Pending bookings release their seats; confirmed bookings are marked
    refund-due. Cancelling an already cancelled booking returns it unchanged.
    """
    booking_service = BookingService(db)
    booking_id = parse_uuid(request.booking_id, "booking")

    async def operation():
        booking = await booking_service.cancel_booking(booking_id, requester, reason=request.reason)

        logger.info(
            "Booking cancelled successfully",
            extra={
                "booking_id": request.booking_id,
                "booking_code": booking.code,
                "refund_due": booking.refund_due,
                "idempotency_key": idempotency_key,
            }
        )

        return booking_to_schema(booking).model_dump(mode="json")

    return await handle_idempotent_operation(
        db,
        operation="booking/cancel",
        user_id=requester.user_id,
        idempotency_key=idempotency_key,
        request_body=request.model_dump(mode="json"),
        operation_func=operation,
    )


@router.post("/get", response_model=Booking)
async def get_booking(
    request: GetBookingRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Get booking details.

    A pending booking whose hold has lapsed is expired before it is returned.
    """
    booking_service = BookingService(db)
    booking = await booking_service.get_booking(parse_uuid(request.booking_id, "booking"), requester)

    logger.info(
        "Booking retrieved successfully",
        extra={"booking_id": request.booking_id, "booking_code": booking.code}
    )

    return JSONResponse(status_code=200, content=booking_to_schema(booking).model_dump(mode="json"))


@router.post("/list", response_model=BookingList)
async def list_bookings(
    request: ListBookingsRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """List the caller's bookings, newest first."""
    booking_service = BookingService(db)
    bookings, total = await booking_service.list_bookings(requester, request)

    response_data = BookingList(items=[booking_to_schema(b) for b in bookings], total=total)
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
