"""Booking-related Pydantic schemas."""

import json
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.booking import BookingStatus, ChargeMode, PaymentStatus
from .pricing import PriceBreakdown


class CreateBookingRequest(BaseModel):
    """Request schema for booking seats on a trip. Amounts are always computed server-side."""

    trip_id: str = Field(..., description="Trip to book")
    seats: int = Field(..., description="Number of seats")
    charge_mode: ChargeMode = Field(ChargeMode.FULL, description="Pay in full or the prebooking deposit only")
    participant_name: str = Field(..., max_length=255)
    participant_email: str = Field(..., max_length=255)
    participant_phone: str = Field(..., max_length=32)
    special_requirements: Optional[str] = Field(None, max_length=2000)


class GetBookingRequest(BaseModel):
    """Request schema for getting a booking."""

    booking_id: str = Field(..., description="Booking to retrieve")


class CancelBookingRequest(BaseModel):
    """Request schema for cancelling a booking."""

    booking_id: str = Field(..., description="Booking to cancel")
    reason: Optional[str] = Field(None, max_length=1000)


class ListBookingsRequest(BaseModel):
    """Request schema for listing the caller's bookings."""

    status: Optional[BookingStatus] = None
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0)


class Booking(BaseModel):
    """Booking response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    trip_id: UUID
    user_id: str
    seats: int
    total_amount: int = Field(..., description="Amount the payment must match")
    full_price_amount: int
    charge_mode: ChargeMode
    currency: str
    booking_status: BookingStatus
    payment_status: PaymentStatus
    hold_expires_at: datetime
    participant_name: str
    participant_email: str
    participant_phone: str
    special_requirements: Optional[str] = None
    referral_discount_amount: int
    gateway_order_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_due: bool
    created_at: datetime
    price_breakdown: Optional[PriceBreakdown] = None
    support_message: Optional[str] = None

    @field_validator("price_breakdown", mode="before")
    @classmethod
    def parse_breakdown(cls, v):
        if isinstance(v, str):
            return json.loads(v)
        return v


class BookingList(BaseModel):
    items: List[Booking]
    total: int
