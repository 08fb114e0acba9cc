"""Pricing calculator: trip rules + request -> itemized price breakdown.

Everything here is pure. The same inputs always produce the same breakdown,
which lets the booking flow re-derive amounts instead of trusting clients.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..core.exceptions import InvalidPricingConfigError, InvalidSeatCountError
from ..models.booking import ChargeMode
from ..schemas.pricing import (
    DiscountKind,
    DiscountLine,
    PriceBreakdown,
    ReferralContext,
    TripPricing,
)

HUNDRED = Decimal(100)
COUPLE_SEATS = 2


def percent_of(amount: int, percent: Decimal) -> int:
    """``percent`` % of ``amount`` minor units, rounded half-up to a whole unit."""
    return int((Decimal(amount) * percent / HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def validate_pricing(pricing: TripPricing) -> None:
    """
    Reject configurations the calculator cannot price.

    Raises:
        InvalidPricingConfigError: on a negative price, a percentage outside
            [0, 100], or an early-bird price above the base price
    """
    for field in ("base_price", "original_price", "prebooking_amount", "early_bird_price"):
        value = getattr(pricing, field)
        if value is not None and value < 0:
            raise InvalidPricingConfigError(f"{field} must not be negative (got {value})", field=field)

    for field in ("couple_discount_percent", "referral_discount_percent"):
        value = getattr(pricing, field)
        if value is not None and not (Decimal(0) <= value <= HUNDRED):
            raise InvalidPricingConfigError(f"{field} must be between 0 and 100 (got {value})", field=field)

    if pricing.early_bird_price is not None and pricing.early_bird_price > pricing.base_price:
        raise InvalidPricingConfigError(
            f"early_bird_price ({pricing.early_bird_price}) exceeds base_price ({pricing.base_price})",
            field="early_bird_price",
        )

    if pricing.referral_min_purchases < 0:
        raise InvalidPricingConfigError(
            "referral_min_purchases must not be negative", field="referral_min_purchases"
        )


def early_bird_qualifies(pricing: TripPricing, now: datetime) -> bool:
    # Deadline is inclusive; an early-bird price without a deadline never applies
    return (
        pricing.early_bird_price is not None
        and pricing.early_bird_deadline is not None
        and now <= pricing.early_bird_deadline
    )


def calculate_price(
    pricing: TripPricing,
    seats: int,
    remaining_capacity: int,
    now: datetime,
    referral: Optional[ReferralContext] = None,
    charge_mode: ChargeMode = ChargeMode.FULL,
    currency: str = "INR",
) -> PriceBreakdown:
    """
    Price ``seats`` seats of a trip.

    The unit price is the lowest qualifying price (base, or early-bird before
    its deadline). Percentage discounts are each computed against the same
    subtotal and summed: couple first, then referral. In deposit mode the
    amount due is the per-seat prebooking amount, capped at the total.

    Raises:
        InvalidSeatCountError: seats < 1 or seats > remaining_capacity
        InvalidPricingConfigError: see ``validate_pricing``; also deposit mode
            on a trip without a prebooking amount
    """
    if seats < 1:
        raise InvalidSeatCountError(requested_seats=seats)
    if seats > remaining_capacity:
        raise InvalidSeatCountError(requested_seats=seats, remaining_seats=max(remaining_capacity, 0))

    validate_pricing(pricing)

    charge_mode = ChargeMode(charge_mode)
    if charge_mode == ChargeMode.DEPOSIT and not pricing.prebooking_amount:
        raise InvalidPricingConfigError(
            "Deposit payment is not offered for this trip", field="prebooking_amount"
        )

    referral = referral or ReferralContext()
    lines: list[DiscountLine] = []

    unit_price = pricing.base_price
    early_bird = early_bird_qualifies(pricing, now)
    if early_bird and pricing.early_bird_price < unit_price:
        unit_price = pricing.early_bird_price
    early_bird_applied = unit_price < pricing.base_price

    if early_bird_applied:
        lines.append(DiscountLine(
            kind=DiscountKind.EARLY_BIRD,
            label="Early-bird price",
            amount=(pricing.base_price - unit_price) * seats,
            informational=True,
        ))

    subtotal = unit_price * seats

    if pricing.couple_discount_enabled and seats == COUPLE_SEATS and pricing.couple_discount_percent:
        lines.append(DiscountLine(
            kind=DiscountKind.COUPLE,
            label=f"Couple discount ({pricing.couple_discount_percent.normalize():f}%)",
            amount=percent_of(subtotal, pricing.couple_discount_percent),
            percent=pricing.couple_discount_percent,
        ))

    if (
        pricing.referral_enabled
        and pricing.referral_discount_percent
        and referral.is_referred
        and referral.threshold_met
    ):
        lines.append(DiscountLine(
            kind=DiscountKind.REFERRAL,
            label=f"Referral discount ({pricing.referral_discount_percent.normalize():f}%)",
            amount=percent_of(subtotal, pricing.referral_discount_percent),
            percent=pricing.referral_discount_percent,
        ))

    discount_total = sum(line.amount for line in lines if not line.informational)
    total = max(0, subtotal - discount_total)

    if charge_mode == ChargeMode.DEPOSIT:
        amount_due = min(total, pricing.prebooking_amount * seats)
    else:
        amount_due = total

    savings = None
    if pricing.original_price is not None:
        savings = max(0, pricing.original_price * seats - total)

    return PriceBreakdown(
        currency=currency,
        seats=seats,
        base_price=pricing.base_price,
        unit_price=unit_price,
        early_bird_applied=early_bird_applied,
        subtotal=subtotal,
        lines=lines,
        discount_total=discount_total,
        total=total,
        charge_mode=charge_mode,
        amount_due=amount_due,
        balance_due=total - amount_due,
        savings_vs_original=savings,
    )
