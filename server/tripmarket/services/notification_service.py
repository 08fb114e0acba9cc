"""Fire-and-forget publication of booking lifecycle events."""

import asyncio
import logging
from collections import deque
from typing import Any, Optional

import httpx

from ..core.clock import utcnow
from ..core.config import settings

logger = logging.getLogger(__name__)

BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_EXPIRED = "booking.expired"


class NotificationDispatcher:
    """
    Posts lifecycle events to an optional webhook without making callers wait.

    Delivery failures are logged and dropped; no acknowledgement is expected.
    Without a webhook URL, events are only logged.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self._pending: set[asyncio.Task] = set()
        # Most recent events, for inspection
        self.published: deque = deque(maxlen=200)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        """Schedule delivery of ``event`` and return immediately."""
        message = {"event": event, "occurred_at": utcnow().isoformat() + "Z", "data": payload}
        self.published.append(message)
        logger.info("Booking event published", extra={"event": event, **payload})

        if not self.webhook_url:
            return

        task = asyncio.create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, message: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=message)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Booking event delivery failed",
                extra={"event": message["event"], "error": str(e)}
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries, used at shutdown."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def clear(self) -> None:
        self.published.clear()


notification_dispatcher = NotificationDispatcher(webhook_url=settings.notification_webhook_url)
