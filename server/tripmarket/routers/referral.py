"""Referral router: codes, signup attribution and stats."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, RequiredAuth, Requester
from ..schemas.referral import (
    Referral,
    ReferralCode,
    ReferralList,
    ReferralStats,
    SignupAttributionRequest,
    SignupAttributionResponse,
)
from ..services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/referral", tags=["referral"])


@router.post("/code", response_model=ReferralCode)
async def get_referral_code(
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Return the caller's referral code, creating it on first use."""
    code = await ReferralService(db).get_or_create_code(requester.user_id)
    return JSONResponse(status_code=200, content=ReferralCode.model_validate(code).model_dump(mode="json"))


@router.post("/signup", response_model=SignupAttributionResponse)
async def attribute_signup(
    request: SignupAttributionRequest,
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Attribute the caller's signup to a referral code.

    Never fails on a bad code: the response just reports that nothing was
    attributed.
    """
    referral = await ReferralService(db).attribute_signup(request.referral_code, requester.user_id)
    response_data = SignupAttributionResponse(
        attributed=referral is not None,
        referral=Referral.model_validate(referral) if referral is not None else None,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/stats", response_model=ReferralStats)
async def referral_stats(
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    stats = await ReferralService(db).stats(requester.user_id)
    return JSONResponse(status_code=200, content=ReferralStats(**stats).model_dump(mode="json"))


@router.post("/list", response_model=ReferralList)
async def list_referrals(
    requester: Requester = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    referrals = await ReferralService(db).list_referrals(requester.user_id)
    response_data = ReferralList(items=[Referral.model_validate(r) for r in referrals], total=len(referrals))
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
