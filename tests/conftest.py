import asyncio
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import get_settings
from libs.db.base import Base
from services.orders_service import models as _order_models  # noqa: F401
from services.orders_service.courier_client import CourierDelivery
from services.orders_service.services.notifier import InMemoryNotifier
from services.orders_service.stripe_client import PaymentIntent, Refund
from tests.factories import BusinessHoursFactory, OrganizationFactory, ProductFactory

settings = get_settings()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    A fresh SQLite file per test.

    Sessions in a test really commit, so concurrent sessions see each
    other's writes the way they would against Postgres.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


# ---------------------------------------------------------------------------
# Outbound fakes
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory Stripe stand-in that de-duplicates on the idempotency key."""

    def __init__(self):
        self.intents = {}
        self.delay = 0.0
        self.create_payment_intent = AsyncMock(side_effect=self._create_intent)
        self.create_refund = AsyncMock(side_effect=self._create_refund)

    async def _create_intent(
        self,
        amount_cents,
        currency,
        idempotency_key,
        metadata=None,
        receipt_email=None,
    ):
        if self.delay:
            await asyncio.sleep(self.delay)
        intent = self.intents.get(idempotency_key)
        if intent is None:
            number = len(self.intents) + 1
            intent = PaymentIntent(
                id=f"pi_test_{number}",
                client_secret=f"pi_test_{number}_secret_abc",
                status="requires_payment_method",
                amount=amount_cents,
                currency=currency,
            )
            self.intents[idempotency_key] = intent
        return intent

    async def _create_refund(self, payment_intent_id, idempotency_key):
        return Refund(
            id=f"re_{payment_intent_id}",
            payment_intent=payment_intent_id,
            status="succeeded",
            amount=0,
        )


class FakeCourier:
    """In-memory courier network; ``gate`` holds create calls until set."""

    def __init__(self):
        self.gate: Optional[asyncio.Event] = None
        self.deliveries = {}
        self.create_delivery = AsyncMock(side_effect=self._create_delivery)
        self.get_delivery = AsyncMock(side_effect=self._get_delivery)

    async def _create_delivery(
        self, pickup, dropoff, manifest_description, idempotency_key
    ):
        if self.gate is not None:
            await self.gate.wait()
        delivery = self.deliveries.get(idempotency_key)
        if delivery is None:
            number = len(self.deliveries) + 1
            delivery = CourierDelivery(
                id=f"del_{number}",
                status="pending",
                tracking_url=f"https://courier.example/track/del_{number}",
                fee_cents=899,
            )
            self.deliveries[idempotency_key] = delivery
        return delivery

    async def _get_delivery(self, delivery_id):
        for delivery in self.deliveries.values():
            if delivery.id == delivery_id:
                return delivery
        raise AssertionError(f"unknown delivery {delivery_id}")

    def set_status(self, delivery_id: str, status: str) -> None:
        for delivery in self.deliveries.values():
            if delivery.id == delivery_id:
                delivery.status = status


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_courier() -> FakeCourier:
    return FakeCourier()


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@dataclass
class Restaurant:
    org: object
    products: List[object]


@pytest_asyncio.fixture
async def restaurant(db_session) -> Restaurant:
    """An organization open around the clock with two menu items."""
    org = OrganizationFactory.create()
    db_session.add(org)
    await db_session.flush()
    db_session.add_all(BusinessHoursFactory.week(org.id))
    products = [
        ProductFactory.create(org.id, name="Tourtière", price_cents=2800),
        ProductFactory.create(org.id, name="Poutine", price_cents=1200),
    ]
    db_session.add_all(products)
    await db_session.commit()
    return Restaurant(org=org, products=products)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def make_token(org_id, role: str = "owner", user_id: Optional[str] = None) -> str:
    """A Supabase-style HS256 JWT carrying organization membership."""
    claims = {
        "sub": user_id or f"user-{uuid.uuid4().hex[:8]}",
        "email": "staff@example.com",
        "role": "authenticated",
        "app_metadata": {"org_id": str(org_id) if org_id else None, "org_role": role},
        "exp": int(time.time()) + 3600,
    }
    return jwt.encode(claims, settings.SUPABASE_JWT_SECRET, algorithm="HS256")


def auth_headers(org_id, role: str = "owner") -> dict:
    return {"Authorization": f"Bearer {make_token(org_id, role)}"}


# ---------------------------------------------------------------------------
# Webhook signing
# ---------------------------------------------------------------------------


def sign_stripe(payload: bytes, secret: str = "whsec_test", timestamp=None) -> str:
    timestamp = str(int(time.time()) if timestamp is None else timestamp)
    digest = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + b"." + payload,
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def sign_courier(payload: bytes, secret: str = "courier-test-secret") -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def stripe_event(event_type: str, intent: dict) -> bytes:
    return json.dumps(
        {
            "id": f"evt_{uuid.uuid4().hex[:8]}",
            "type": event_type,
            "data": {"object": intent},
        }
    ).encode("utf-8")


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    session_factory, fake_gateway, fake_courier, notifier
) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient against the app with DB, gateway, courier and
    notifier dependencies overridden. Each request gets its own session.
    """
    from libs.db.session import get_async_db
    from services.orders_service.app.main import app
    from services.orders_service.routers._helpers import (
        get_courier,
        get_payment_gateway,
        get_realtime_notifier,
    )

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_courier] = lambda: fake_courier
    app.dependency_overrides[get_realtime_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
