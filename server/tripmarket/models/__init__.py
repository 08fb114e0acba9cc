"""Models module exporting all database models."""

from .booking import Booking, BookingStatus, ChargeMode, HoldStatus, PaymentStatus, SeatHold
from .idempotency import IdempotencyRecord
from .payment import Payment, PaymentMethod, PaymentOutcome, ReviewFlag, ReviewReason
from .referral import Referral, ReferralCode, ReferralStatus, ReferralType
from .trip import Trip

__all__ = [
    # Catalogue
    "Trip",

    # Booking entities
    "SeatHold",
    "HoldStatus",
    "Booking",
    "BookingStatus",
    "PaymentStatus",
    "ChargeMode",

    # Payment entities
    "Payment",
    "PaymentMethod",
    "PaymentOutcome",
    "ReviewFlag",
    "ReviewReason",

    # Referral entities
    "ReferralCode",
    "Referral",
    "ReferralType",
    "ReferralStatus",

    # Idempotency entity
    "IdempotencyRecord",
]
