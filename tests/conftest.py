"""
Pytest fixtures for test database, client, gateway fakes and authentication.

Each test gets its own SQLite file database, so state never leaks between
tests and concurrent sessions really contend for the same rows.
"""

import json
import os
import time
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

# Settings are read once at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./booking_engine_test.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("GATEWAY_APP_ID", "test-app-id")
os.environ.setdefault("GATEWAY_SECRET_KEY", "test-gateway-secret")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from booking_engine.config import get_settings
from booking_engine.database import create_session_factory, get_db
from booking_engine.main import app
from booking_engine.models import Base, Booking, Event, TicketType
from booking_engine.models.base import utcnow
from booking_engine.services.gateway_client import GatewayOrder
from booking_engine.utils.auth import CallerIdentity, create_access_token
from booking_engine.utils.dependencies import get_gateway_client, get_side_effects
from booking_engine.utils.exceptions import PaymentServiceError
from booking_engine.utils.webhook_signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    compute_signature,
)

BUYER_ID = "user-buyer-1"
OTHER_ID = "user-other-2"
HOST_ID = "host-1"


class FakeGatewayClient:
    """In-memory stand-in for the payment gateway's order API."""

    def __init__(self):
        self.orders: Dict[str, GatewayOrder] = {}
        self.created: List[str] = []
        self.unreachable = False

    def set_order(self, order_id: str, status: str, amount) -> None:
        self.orders[order_id] = GatewayOrder(
            order_id=order_id,
            order_status=status,
            amount=Decimal(str(amount)) if amount is not None else None,
            payment_session_id=f"session_{order_id}",
        )

    async def create_order(self, order_id, amount, customer_id, **kwargs) -> GatewayOrder:
        if self.unreachable:
            raise PaymentServiceError("Gateway request timed out")
        self.created.append(order_id)
        self.set_order(order_id, "ACTIVE", amount)
        return self.orders[order_id]

    async def get_order(self, order_id: str) -> GatewayOrder:
        if self.unreachable:
            raise PaymentServiceError("Gateway request timed out")
        if order_id not in self.orders:
            raise PaymentServiceError("Gateway answered 404", status_code=404)
        return self.orders[order_id]


class RecordingSideEffects:
    """Captures dispatches instead of queueing Celery tasks."""

    def __init__(self):
        self.reserved: List = []
        self.confirmed: List = []

    def booking_reserved(self, booking_id, expires_at) -> None:
        self.reserved.append((booking_id, expires_at))

    def booking_confirmed(self, booking_id) -> None:
        self.confirmed.append(booking_id)


@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh file database with all tables created."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGatewayClient:
    return FakeGatewayClient()


@pytest.fixture
def side_effects() -> RecordingSideEffects:
    return RecordingSideEffects()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, gateway, side_effects) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the database, gateway and task queue swapped for test doubles."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_side_effects] = lambda: side_effects

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_token(user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
    return create_access_token(data={"sub": user_id, "email": email, "name": name})


@pytest.fixture
def buyer() -> CallerIdentity:
    return CallerIdentity(user_id=BUYER_ID, email="buyer@example.com", name="Test Buyer")


@pytest.fixture
def other_caller() -> CallerIdentity:
    return CallerIdentity(user_id=OTHER_ID, email="other@example.com", name="Other Person")


@pytest.fixture
def auth_headers() -> dict:
    """Authorization headers with Bearer token for the buyer."""
    return {"Authorization": f"Bearer {make_token(BUYER_ID, 'buyer@example.com', 'Test Buyer')}"}


@pytest.fixture
def other_auth_headers() -> dict:
    return {"Authorization": f"Bearer {make_token(OTHER_ID, 'other@example.com')}"}


@pytest.fixture
def sign_webhook(settings):
    """Build a signed webhook request body and headers from a payload."""

    def _sign(payload, secret: Optional[str] = None, timestamp: Optional[str] = None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        ts = timestamp or str(int(time.time()))
        signature = compute_signature(secret or settings.effective_webhook_secret, ts, body)
        headers = {
            TIMESTAMP_HEADER: ts,
            SIGNATURE_HEADER: signature,
            "Content-Type": "application/json",
        }
        return body, headers

    return _sign


@pytest_asyncio.fixture
async def ticketed_event(db_session: AsyncSession):
    """Event with a capped GENERAL type (1 left of 100) and an uncapped VIP type."""
    event = Event(name="Test Concert", host_id=HOST_ID, venue="Test Arena")
    event.ticket_types = [
        TicketType(name="GENERAL", price=Decimal("200.00"), total_quantity=100, tickets_sold=99),
        TicketType(name="VIP", price=Decimal("500.00"), total_quantity=None),
    ]
    db_session.add(event)
    await db_session.commit()
    return event


@pytest_asyncio.fixture
async def legacy_event(db_session: AsyncSession):
    """Event without ticket types, capped by the event-level counter."""
    event = Event(name="Legacy Show", host_id=HOST_ID, venue="Old Hall", max_tickets=10, tickets_sold=0)
    db_session.add(event)
    await db_session.commit()
    return event


def ticket_type_named(event: Event, name: str) -> TicketType:
    return next(tt for tt in event.ticket_types if tt.name == name)


def booking_payload(event: Event, ticket_type: Optional[TicketType] = None, quantity: int = 1, **extra) -> dict:
    """Request body for POST /api/v1/bookings."""
    unit_price = ticket_type.price if ticket_type else Decimal("100.00")
    payload = {
        "event_id": str(event.id),
        "items": [
            {
                "ticket_type_id": str(ticket_type.id) if ticket_type else "general",
                "quantity": quantity,
                "price": str(unit_price),
            }
        ],
        "total_amount": str(unit_price * quantity),
        "location_id": "loc1",
        "location_name": "Downtown",
        "venue_id": "ven1",
        "venue_name": "Test Arena",
        "show_id": "show1",
        "show_date": "2025-01-15",
        "show_time": "19:00",
    }
    payload.update(extra)
    return payload


async def backdate_booking(session_factory, booking_id, minutes: int) -> None:
    """Move a booking's creation time into the past."""
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(created_at=utcnow() - timedelta(minutes=minutes))
            )


async def attach_order(session_factory, booking_id, order_id: str) -> None:
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Booking).where(Booking.id == booking_id).values(order_id=order_id)
            )


async def fetch(session_factory, model, ident):
    async with session_factory() as session:
        return await session.get(model, ident)
