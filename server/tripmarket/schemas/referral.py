"""Referral-related Pydantic schemas."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..models.referral import ReferralStatus, ReferralType


class ReferralCode(BaseModel):
    """The caller's shareable referral code."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    is_active: bool


class SignupAttributionRequest(BaseModel):
    """Sent once after signup with the code the new user arrived with, if any."""

    referral_code: Optional[str] = Field(None, max_length=32)


class Referral(BaseModel):
    """Referral ledger entry response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    referrer_id: str
    referred_user_id: str
    referral_type: ReferralType
    status: ReferralStatus
    trip_id: Optional[UUID] = None
    booking_id: Optional[UUID] = None
    discount_amount: int
    converted_at: Optional[datetime] = None
    created_at: datetime


class SignupAttributionResponse(BaseModel):
    attributed: bool
    referral: Optional[Referral] = None


class ReferralStats(BaseModel):
    total_signups: int
    total_purchases: int
    referred_discount_total: int = Field(
        ..., description="Discounts the caller's referred travelers received on purchases, minor units; not a referrer payout"
    )
    pending_referrals: int


class ReferralList(BaseModel):
    items: List[Referral]
    total: int
