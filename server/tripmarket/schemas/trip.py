"""Trip-related Pydantic schemas."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CreateTripRequest(BaseModel):
    """Request schema for creating a trip. Amounts are in minor units (paise)."""

    title: str = Field(..., min_length=1, max_length=255, description="Trip title")
    destination: str = Field(..., min_length=1, max_length=255, description="Destination")
    description: Optional[str] = Field(None, max_length=5000)
    starts_on: Optional[datetime] = None

    base_price: int = Field(..., description="Per-seat base price")
    original_price: Optional[int] = Field(None, description="Display-only pre-discount price")
    prebooking_amount: Optional[int] = Field(None, description="Per-seat deposit for deposit-mode bookings")
    early_bird_price: Optional[int] = None
    early_bird_deadline: Optional[datetime] = None

    couple_discount_enabled: bool = False
    couple_discount_percent: Optional[Decimal] = Field(None, max_digits=5, decimal_places=2)

    referral_enabled: bool = False
    referral_discount_percent: Optional[Decimal] = Field(None, max_digits=5, decimal_places=2)
    referral_min_purchases: int = 0

    capacity: int = Field(..., ge=1, le=10000, description="Total seats")

    @field_validator("starts_on", "early_bird_deadline")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Stored timestamps are naive UTC."""
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class GetTripRequest(BaseModel):
    """Request schema for getting a trip."""

    trip_id: str = Field(..., description="Trip to retrieve")


class SetTripActiveRequest(BaseModel):
    """Request schema for activating or deactivating a trip."""

    trip_id: str = Field(..., description="Trip to update")
    is_active: bool = Field(..., description="Whether the trip accepts new bookings")


class ListTripsRequest(BaseModel):
    """Request schema for listing trips."""

    destination: Optional[str] = Field(None, max_length=255)
    active_only: bool = True
    limit: int = Field(20, ge=1, le=100)
    offset: int = Field(0, ge=0)


class Trip(BaseModel):
    """Trip response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organizer_id: str
    title: str
    destination: str
    description: Optional[str] = None
    starts_on: Optional[datetime] = None
    base_price: int
    original_price: Optional[int] = None
    prebooking_amount: Optional[int] = None
    early_bird_price: Optional[int] = None
    early_bird_deadline: Optional[datetime] = None
    couple_discount_enabled: bool
    couple_discount_percent: Optional[Decimal] = None
    referral_enabled: bool
    referral_discount_percent: Optional[Decimal] = None
    referral_min_purchases: int
    capacity: int
    seats_consumed: int
    remaining_seats: int
    is_active: bool
    created_at: datetime


class TripList(BaseModel):
    """Page of trips."""

    items: List[Trip]
    total: int
