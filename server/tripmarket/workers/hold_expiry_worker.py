"""Background worker for expiring lapsed booking holds."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import settings
from ..core.database import async_session_factory
from ..services.booking_service import BookingService
from ..services.notification_service import NotificationDispatcher
from .base import BaseWorker

logger = logging.getLogger(__name__)


class HoldExpiryWorker(BaseWorker):
    """
    Periodically expires pending bookings whose hold deadline has passed,
    returning their seats to the trip.

    Reads apply the same expiry lazily, so the sweep only bounds how long an
    untouched booking can keep seats off sale.
    """

    def __init__(
        self,
        interval_seconds: float = 60,
        batch_size: int = 100,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        super().__init__(name="HoldExpiry", interval_seconds=interval_seconds)
        self.batch_size = batch_size
        self.session_factory = session_factory or async_session_factory
        self.notifier = notifier
        self.expired_total = 0

    async def process(self) -> int:
        """Expire batches until a short batch shows the backlog is clear."""
        expired = 0
        async with self.session_factory() as db:
            booking_service = BookingService(db, notifier=self.notifier)
            while True:
                count = await booking_service.expire_overdue(self.batch_size)
                expired += count
                if count < self.batch_size:
                    break

        self.expired_total += expired
        if expired:
            logger.info("Expired lapsed bookings", extra={"expired_count": expired, "worker": self.name})
        return expired


def build_hold_expiry_worker() -> HoldExpiryWorker:
    return HoldExpiryWorker(
        interval_seconds=settings.hold_expiry_interval_seconds,
        batch_size=settings.hold_expiry_batch_size,
    )
