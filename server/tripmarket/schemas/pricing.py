"""Pricing-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.booking import ChargeMode


class TripPricing(BaseModel):
    """
    The pricing rules of one trip, as read from the catalogue.

    Values are deliberately unconstrained here: the calculator itself decides
    whether a configuration is usable and reports InvalidPricingConfig.
    """

    model_config = ConfigDict(from_attributes=True)

    base_price: int
    original_price: Optional[int] = None
    prebooking_amount: Optional[int] = None
    early_bird_price: Optional[int] = None
    early_bird_deadline: Optional[datetime] = None
    couple_discount_enabled: bool = False
    couple_discount_percent: Optional[Decimal] = None
    referral_enabled: bool = False
    referral_discount_percent: Optional[Decimal] = None
    referral_min_purchases: int = 0


class ReferralContext(BaseModel):
    """Whether the requester was referred, and whether their referrer qualifies."""

    is_referred: bool = False
    referrer_id: Optional[str] = None
    referrer_completed_purchases: int = 0
    threshold_met: bool = False


class DiscountKind(str, Enum):
    EARLY_BIRD = "early_bird"
    COUPLE = "couple"
    REFERRAL = "referral"


class DiscountLine(BaseModel):
    """One itemized adjustment. Informational lines are already reflected in the unit price."""

    kind: DiscountKind
    label: str
    amount: int = Field(..., ge=0, description="Amount in minor units")
    percent: Optional[Decimal] = None
    informational: bool = False


class PriceBreakdown(BaseModel):
    """Itemized result of pricing a request."""

    currency: str
    seats: int = Field(..., ge=1)
    base_price: int
    unit_price: int
    early_bird_applied: bool
    subtotal: int
    lines: List[DiscountLine] = Field(default_factory=list)
    discount_total: int
    total: int = Field(..., ge=0, description="Full price after discounts")
    charge_mode: ChargeMode
    amount_due: int = Field(..., ge=0, description="What the traveler pays now")
    balance_due: int = Field(..., ge=0, description="Remainder payable later in deposit mode")
    savings_vs_original: Optional[int] = None

    def line(self, kind: DiscountKind) -> Optional[DiscountLine]:
        for item in self.lines:
            if item.kind == kind:
                return item
        return None

    @property
    def referral_discount(self) -> int:
        item = self.line(DiscountKind.REFERRAL)
        return item.amount if item else 0


class QuoteRequest(BaseModel):
    """Request schema for pricing a prospective booking."""

    trip_id: str = Field(..., description="Trip to price")
    seats: int = Field(..., description="Number of seats")
    charge_mode: ChargeMode = Field(ChargeMode.FULL, description="Charge the full total or the deposit only")


class QuoteResponse(BaseModel):
    """Response schema for a quote."""

    trip_id: str
    remaining_seats: int
    referral: ReferralContext
    breakdown: PriceBreakdown
