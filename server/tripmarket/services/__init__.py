"""Service layer package."""

from .booking_service import BookingService
from .idempotency_service import IdempotencyService
from .inventory_service import InventoryService
from .payment_service import PaymentService
from .referral_service import ReferralService
from .trip_service import TripService

__all__ = [
    "BookingService",
    "IdempotencyService",
    "InventoryService",
    "PaymentService",
    "ReferralService",
    "TripService",
]
