"""Payment and reconciliation Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.booking import BookingStatus
from ..models.payment import PaymentMethod, PaymentOutcome


class PaymentSignal(BaseModel):
    """A payment confirmation as delivered by the gateway, possibly more than once."""

    transaction_ref: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(..., ge=0, description="Amount in minor units")
    currency: str = Field(..., min_length=3, max_length=3)
    booking_id: str
    gateway_order_id: Optional[str] = None
    method: PaymentMethod = PaymentMethod.GATEWAY

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class ReconcileOutcome(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    DUPLICATE_SIGNAL = "duplicate_signal"
    PAYMENT_FAILED = "payment_failed"
    IGNORED = "ignored"


class ReconcileResult(BaseModel):
    """What reconciling one signal did."""

    booking_id: Optional[UUID] = None
    outcome: ReconcileOutcome
    booking_status: Optional[BookingStatus] = None
    payment_outcome: Optional[PaymentOutcome] = None
    review_flag_id: Optional[UUID] = None


class InitiatePaymentRequest(BaseModel):
    """Request schema for creating a gateway order for a pending booking."""

    booking_id: str


class InitiatePaymentResponse(BaseModel):
    booking_id: UUID
    order_id: str
    amount: int
    currency: str
    key_id: str


class ConfirmPaymentRequest(BaseModel):
    """Checkout callback: the gateway's order/payment ids and signature."""

    booking_id: str
    gateway_order_id: str = Field(..., min_length=1, max_length=64)
    gateway_payment_id: str = Field(..., min_length=1, max_length=128)
    signature: str = Field(..., min_length=1, max_length=256)


class PaymentFailedRequest(BaseModel):
    booking_id: str
    reason: Optional[str] = Field(None, max_length=500)


class ManualConfirmRequest(BaseModel):
    """Operator confirmation of an offline payment."""

    booking_id: str
    transaction_ref: Optional[str] = Field(None, min_length=1, max_length=128)
    note: Optional[str] = Field(None, max_length=1000)


class ReviewFlag(BaseModel):
    """Review flag response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID
    payment_id: Optional[UUID] = None
    reason: str
    details: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None


class ListReviewFlagsRequest(BaseModel):
    unresolved_only: bool = True
    limit: int = Field(50, ge=1, le=200)
    offset: int = Field(0, ge=0)


class ReviewFlagList(BaseModel):
    items: List[ReviewFlag]
    total: int


class ResolveReviewFlagRequest(BaseModel):
    flag_id: str
    note: Optional[str] = Field(None, max_length=1000)
