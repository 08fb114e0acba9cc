"""Test configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("BEARER_TOKEN_SECRET", "test-bearer-secret")
os.environ.setdefault("PAYMENT_GATEWAY_BASE_URL", "https://gateway.test")
os.environ.setdefault("PAYMENT_GATEWAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("PAYMENT_GATEWAY_KEY_SECRET", "test-key-secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")

import json  # noqa: E402
from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from itertools import count  # noqa: E402

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tripmarket.core.clock import utcnow  # noqa: E402
from tripmarket.core.config import settings  # noqa: E402
from tripmarket.core.database import Base  # noqa: E402
from tripmarket.core.dependencies import Requester, get_db  # noqa: E402
from tripmarket.models import *  # noqa: E402,F403 - Import all models
from tripmarket.schemas.booking import CreateBookingRequest  # noqa: E402
from tripmarket.schemas.trip import CreateTripRequest  # noqa: E402
from tripmarket.services.notification_service import notification_dispatcher  # noqa: E402
from tripmarket.services.payment_gateway import PaymentGatewayClient, get_payment_gateway  # noqa: E402
from tripmarket.services.trip_service import TripService  # noqa: E402

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

RUPEE = 100  # paise


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_notifications():
    notification_dispatcher.clear()
    yield
    notification_dispatcher.clear()


# Identities

def make_token(user_id: str, roles=None, email=None) -> str:
    claims = {"sub": user_id, "roles": roles or ["user"]}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.bearer_token_secret, algorithm="HS256")


def auth_headers(user_id: str, roles=None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, roles)}"}


@pytest.fixture
def traveler() -> Requester:
    return Requester(user_id="traveler-1", email="asha@example.com", roles=["user"])


@pytest.fixture
def organizer() -> Requester:
    return Requester(user_id="organizer-1", roles=["organizer"])


@pytest.fixture
def admin() -> Requester:
    return Requester(user_id="admin-1", roles=["admin"])


# Trips and bookings

def trip_request(**overrides) -> CreateTripRequest:
    """A ₹10,000 trip with 10 seats and every discount switched off."""
    data = {
        "title": "Spiti Valley Winter Expedition",
        "destination": "Spiti",
        "description": "Eight days across the frozen valley",
        "starts_on": utcnow() + timedelta(days=60),
        "base_price": 10_000 * RUPEE,
        "capacity": 10,
    }
    data.update(overrides)
    return CreateTripRequest(**data)


@pytest.fixture
def make_trip(test_session, organizer):
    async def _make_trip(**overrides):
        return await TripService(test_session).create_trip(trip_request(**overrides), organizer.user_id)
    return _make_trip


@pytest.fixture
def couple_trip(make_trip):
    """The ₹10,000 trip with an ₹8,000 early-bird price until tomorrow and a 10% couple discount."""
    async def _couple_trip(**overrides):
        params = {
            "early_bird_price": 8_000 * RUPEE,
            "early_bird_deadline": utcnow() + timedelta(days=1),
            "couple_discount_enabled": True,
            "couple_discount_percent": Decimal("10"),
        }
        params.update(overrides)
        return await make_trip(**params)
    return _couple_trip


def booking_request(trip_id, seats: int = 1, **overrides) -> CreateBookingRequest:
    data = {
        "trip_id": str(trip_id),
        "seats": seats,
        "participant_name": "Asha Verma",
        "participant_email": "asha@example.com",
        "participant_phone": "+91 98765 43210",
    }
    data.update(overrides)
    return CreateBookingRequest(**data)


# Payment gateway

class FakeGateway:
    """In-memory Razorpay-style gateway served through httpx.MockTransport."""

    def __init__(self):
        self._ids = count(1)
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.fail_with: int | None = None
        self.requests: list[httpx.Request] = []

    def add_payment(self, order_id: str, amount: int, currency: str = "INR", status: str = "captured") -> str:
        payment_id = f"pay_{next(self._ids)}"
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "status": status,
            "method": "upi",
        }
        return payment_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"description": "gateway down"}})

        if request.method == "POST" and request.url.path == "/v1/orders":
            body = json.loads(request.content)
            order_id = f"order_{next(self._ids)}"
            order = {**body, "id": order_id, "status": "created"}
            self.orders[order_id] = order
            return httpx.Response(200, json=order)

        if request.method == "GET" and request.url.path.startswith("/v1/payments/"):
            payment = self.payments.get(request.url.path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(404, json={"error": {"description": "not found"}})
            return httpx.Response(200, json=payment)

        return httpx.Response(404)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateway_client(fake_gateway) -> PaymentGatewayClient:
    return PaymentGatewayClient(
        base_url=settings.payment_gateway_base_url,
        key_id=settings.payment_gateway_key_id,
        key_secret=settings.payment_gateway_key_secret,
        webhook_secret=settings.payment_webhook_secret,
        transport=httpx.MockTransport(fake_gateway.handler),
    )


# Application

@pytest_asyncio.fixture(scope="function")
async def test_app(test_session, gateway_client):
    """Create the application without workers or table creation, bound to the test session."""
    from tripmarket.main import create_app
    from tripmarket.workers.manager import WorkerManager

    app = create_app(workers=WorkerManager(workers={}), create_tables=False)

    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway_client

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
