"""FastAPI routers package."""

from .admin import router as admin_router
from .booking import router as booking_router
from .health import router as health_router
from .metrics import router as metrics_router
from .payment import router as payment_router
from .pricing import router as pricing_router
from .referral import router as referral_router
from .trip import router as trip_router

__all__ = [
    "admin_router",
    "booking_router",
    "health_router",
    "metrics_router",
    "payment_router",
    "pricing_router",
    "referral_router",
    "trip_router",
]
