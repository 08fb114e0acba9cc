"""Pricing router: side-effect-free quotes."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, RequiredAuth, Requester
from ..schemas.pricing import QuoteRequest, QuoteResponse
from ..services.booking_service import BookingService
from ..services.trip_service import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/pricing", tags=["pricing"])


@router.post("/quote", response_model=QuoteResponse)
async def quote(
    request: QuoteRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Price a prospective booking for the caller.

    Applies the same rules as booking creation, including the caller's
    referral eligibility, without holding seats.
    """
    booking_service = BookingService(db)
    breakdown, referral, remaining = await booking_service.quote(
        parse_uuid(request.trip_id, "trip"),
        request.seats,
        requester,
        charge_mode=request.charge_mode,
    )

    logger.debug(
        "Quote computed",
        extra={
            "trip_id": request.trip_id,
            "seats": request.seats,
            "total": breakdown.total,
            "amount_due": breakdown.amount_due,
        }
    )

    response_data = QuoteResponse(
        trip_id=request.trip_id,
        remaining_seats=remaining,
        referral=referral,
        breakdown=breakdown,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
