"""HTTP client for the payment gateway (Razorpay-compatible orders API)."""

import hashlib
import hmac
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from ..core.clock import utcnow
from ..core.config import settings
from ..core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


class GatewayPayment(BaseModel):
    id: str
    order_id: Optional[str] = None
    amount: int
    currency: str
    status: str
    method: Optional[str] = None


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class PaymentGatewayClient:
    """
    Creates orders and looks up payments on the gateway.

    Gateway internals are opaque: any transport failure or non-2xx answer
    becomes a retryable PaymentGatewayError and the booking stays pending.
    """

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Payment gateway rejected request",
                extra={"path": path, "status_code": e.response.status_code, "body": e.response.text[:500]}
            )
            raise PaymentGatewayError(f"Payment gateway returned {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Payment gateway unreachable", extra={"path": path, "error": str(e)})
            raise PaymentGatewayError()

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, str]] = None,
    ) -> GatewayOrder:
        """Create an order for ``amount`` minor units."""
        body = await self._request(
            "POST",
            "/v1/orders",
            json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        order = GatewayOrder.model_validate(body)
        logger.info(
            "Payment order created",
            extra={"order_id": order.id, "amount": order.amount, "currency": order.currency, "receipt": receipt}
        )
        return order

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment so its amount and currency come from the gateway, not the client."""
        body = await self._request("GET", f"/v1/payments/{payment_id}")
        return GatewayPayment.model_validate(body)

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Checkout signature: HMAC-SHA256 of ``order_id|payment_id`` with the key secret."""
        if not self.key_secret or not signature:
            return False
        expected = sign(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Webhook signature: HMAC-SHA256 of the raw request body with the webhook secret."""
        if not self.webhook_secret or not signature:
            return False
        return hmac.compare_digest(sign(self.webhook_secret, body), signature)

    @staticmethod
    def receipt_for(booking_code: str) -> str:
        return f"booking_{booking_code}_{int(utcnow().timestamp())}"


def build_payment_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient(
        base_url=settings.payment_gateway_base_url,
        key_id=settings.payment_gateway_key_id,
        key_secret=settings.payment_gateway_key_secret,
        webhook_secret=settings.payment_webhook_secret,
        timeout_seconds=settings.payment_gateway_timeout_seconds,
    )


async def get_payment_gateway() -> PaymentGatewayClient:
    """FastAPI dependency; overridden in tests with a MockTransport-backed client."""
    return build_payment_gateway()
