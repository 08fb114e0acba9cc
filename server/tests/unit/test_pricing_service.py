"""Unit tests for the pricing calculator."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from tripmarket.core.exceptions import InvalidPricingConfigError, InvalidSeatCountError
from tripmarket.models.booking import ChargeMode
from tripmarket.schemas.pricing import DiscountKind, ReferralContext, TripPricing
from tripmarket.services.pricing_service import calculate_price, percent_of, validate_pricing

NOW = datetime(2026, 3, 1, 12, 0, 0)
RUPEE = 100


def pricing(**overrides) -> TripPricing:
    data = {"base_price": 10_000 * RUPEE}
    data.update(overrides)
    return TripPricing(**data)


COUPLE_EARLY_BIRD = pricing(
    early_bird_price=8_000 * RUPEE,
    early_bird_deadline=NOW + timedelta(days=1),
    couple_discount_enabled=True,
    couple_discount_percent=Decimal("10"),
)


def test_early_bird_couple_scenario():
    """₹10,000 base, ₹8,000 early bird until tomorrow, couple 10%, 2 seats -> ₹14,400."""
    breakdown = calculate_price(COUPLE_EARLY_BIRD, seats=2, remaining_capacity=10, now=NOW)

    assert breakdown.unit_price == 8_000 * RUPEE
    assert breakdown.subtotal == 16_000 * RUPEE
    assert breakdown.line(DiscountKind.COUPLE).amount == 1_600 * RUPEE
    assert breakdown.discount_total == 1_600 * RUPEE
    assert breakdown.total == 14_400 * RUPEE
    assert breakdown.amount_due == 14_400 * RUPEE
    assert breakdown.balance_due == 0
    assert breakdown.early_bird_applied is True


def test_early_bird_line_is_informational():
    breakdown = calculate_price(COUPLE_EARLY_BIRD, seats=2, remaining_capacity=10, now=NOW)

    early_bird = breakdown.line(DiscountKind.EARLY_BIRD)
    assert early_bird.informational is True
    assert early_bird.amount == 4_000 * RUPEE
    assert [line.kind for line in breakdown.lines] == [DiscountKind.EARLY_BIRD, DiscountKind.COUPLE]


def test_early_bird_deadline_is_inclusive():
    at_deadline = calculate_price(
        COUPLE_EARLY_BIRD, seats=1, remaining_capacity=10, now=COUPLE_EARLY_BIRD.early_bird_deadline
    )
    after_deadline = calculate_price(
        COUPLE_EARLY_BIRD,
        seats=1,
        remaining_capacity=10,
        now=COUPLE_EARLY_BIRD.early_bird_deadline + timedelta(seconds=1),
    )

    assert at_deadline.unit_price == 8_000 * RUPEE
    assert after_deadline.unit_price == 10_000 * RUPEE
    assert after_deadline.early_bird_applied is False


def test_early_bird_without_deadline_never_applies():
    breakdown = calculate_price(pricing(early_bird_price=8_000 * RUPEE), seats=1, remaining_capacity=5, now=NOW)

    assert breakdown.unit_price == 10_000 * RUPEE
    assert breakdown.line(DiscountKind.EARLY_BIRD) is None


@pytest.mark.parametrize("seats", [1, 3, 4])
def test_couple_discount_requires_exactly_two_seats(seats):
    breakdown = calculate_price(COUPLE_EARLY_BIRD, seats=seats, remaining_capacity=10, now=NOW)

    assert breakdown.line(DiscountKind.COUPLE) is None
    assert breakdown.total == 8_000 * RUPEE * seats


def test_referral_discount_requires_threshold():
    trip = pricing(referral_enabled=True, referral_discount_percent=Decimal("5"), referral_min_purchases=2)
    below = ReferralContext(is_referred=True, referrer_id="ref-1", referrer_completed_purchases=1, threshold_met=False)
    met = ReferralContext(is_referred=True, referrer_id="ref-1", referrer_completed_purchases=2, threshold_met=True)

    without = calculate_price(trip, seats=1, remaining_capacity=5, now=NOW, referral=below)
    with_discount = calculate_price(trip, seats=1, remaining_capacity=5, now=NOW, referral=met)

    assert without.referral_discount == 0
    assert with_discount.referral_discount == 500 * RUPEE
    assert with_discount.total == 9_500 * RUPEE


def test_percentage_discounts_do_not_compound():
    """Couple and referral percentages are both taken from the same subtotal."""
    trip = pricing(
        couple_discount_enabled=True,
        couple_discount_percent=Decimal("10"),
        referral_enabled=True,
        referral_discount_percent=Decimal("5"),
    )
    referral = ReferralContext(is_referred=True, referrer_id="ref-1", threshold_met=True)

    breakdown = calculate_price(trip, seats=2, remaining_capacity=5, now=NOW, referral=referral)

    assert [line.kind for line in breakdown.lines] == [DiscountKind.COUPLE, DiscountKind.REFERRAL]
    assert breakdown.line(DiscountKind.COUPLE).amount == 2_000 * RUPEE
    assert breakdown.line(DiscountKind.REFERRAL).amount == 1_000 * RUPEE
    assert breakdown.total == 17_000 * RUPEE


def test_total_never_negative():
    trip = pricing(
        base_price=1_000,
        couple_discount_enabled=True,
        couple_discount_percent=Decimal("100"),
        referral_enabled=True,
        referral_discount_percent=Decimal("100"),
    )
    referral = ReferralContext(is_referred=True, referrer_id="ref-1", threshold_met=True)

    breakdown = calculate_price(trip, seats=2, remaining_capacity=5, now=NOW, referral=referral)

    assert breakdown.total == 0
    assert breakdown.amount_due == 0


def test_deposit_mode_charges_prebooking_amount_per_seat():
    trip = pricing(prebooking_amount=2_000 * RUPEE)

    breakdown = calculate_price(trip, seats=3, remaining_capacity=5, now=NOW, charge_mode=ChargeMode.DEPOSIT)

    assert breakdown.total == 30_000 * RUPEE
    assert breakdown.amount_due == 6_000 * RUPEE
    assert breakdown.balance_due == 24_000 * RUPEE


def test_deposit_capped_at_total():
    trip = pricing(base_price=1_000 * RUPEE, prebooking_amount=1_000 * RUPEE,
                   couple_discount_enabled=True, couple_discount_percent=Decimal("50"))

    breakdown = calculate_price(trip, seats=2, remaining_capacity=5, now=NOW, charge_mode=ChargeMode.DEPOSIT)

    assert breakdown.total == 1_000 * RUPEE
    assert breakdown.amount_due == 1_000 * RUPEE
    assert breakdown.balance_due == 0


def test_deposit_without_prebooking_amount_is_rejected():
    with pytest.raises(InvalidPricingConfigError):
        calculate_price(pricing(), seats=1, remaining_capacity=5, now=NOW, charge_mode=ChargeMode.DEPOSIT)


def test_savings_against_original_price():
    breakdown = calculate_price(pricing(original_price=12_000 * RUPEE), seats=2, remaining_capacity=5, now=NOW)

    assert breakdown.savings_vs_original == 4_000 * RUPEE


@pytest.mark.parametrize("seats", [0, -1])
def test_seat_count_below_one_rejected(seats):
    with pytest.raises(InvalidSeatCountError) as exc_info:
        calculate_price(pricing(), seats=seats, remaining_capacity=5, now=NOW)

    assert exc_info.value.code == "INVALID_SEAT_COUNT"


def test_seat_count_above_remaining_rejected():
    with pytest.raises(InvalidSeatCountError) as exc_info:
        calculate_price(pricing(), seats=4, remaining_capacity=3, now=NOW)

    assert exc_info.value.problem_details["remaining_seats"] == 3


@pytest.mark.parametrize("overrides, field", [
    ({"base_price": -1}, "base_price"),
    ({"couple_discount_percent": Decimal("120")}, "couple_discount_percent"),
    ({"referral_discount_percent": Decimal("-5")}, "referral_discount_percent"),
    ({"early_bird_price": 11_000 * RUPEE}, "early_bird_price"),
    ({"referral_min_purchases": -1}, "referral_min_purchases"),
])
def test_invalid_pricing_config(overrides, field):
    with pytest.raises(InvalidPricingConfigError) as exc_info:
        validate_pricing(pricing(**overrides))

    assert exc_info.value.problem_details["field"] == field
    assert exc_info.value.status_code == 422


def test_percent_of_rounds_half_up():
    assert percent_of(333, Decimal("50")) == 167
    assert percent_of(1_000, Decimal("12.5")) == 125
    assert percent_of(1, Decimal("49")) == 0


def test_same_inputs_same_breakdown():
    first = calculate_price(COUPLE_EARLY_BIRD, seats=2, remaining_capacity=10, now=NOW)
    second = calculate_price(COUPLE_EARLY_BIRD, seats=2, remaining_capacity=10, now=NOW)

    assert first == second
