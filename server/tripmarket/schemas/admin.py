"""Operator-facing Pydantic schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class AdminBookingActionRequest(BaseModel):
    """Request schema for an operator cancelling or rejecting a booking."""

    booking_id: str = Field(..., description="Booking to act on")
    reason: Optional[str] = Field(None, max_length=1000)
