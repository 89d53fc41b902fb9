"""
Tests for the expiry sweeper and its cleanup endpoint.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import delete

from booking_engine.models import Booking, Event, EventBooking, TicketType
from booking_engine.models.booking import BookingStatus, PaymentStatus
from booking_engine.schemas.booking import BookingCreateRequest
from booking_engine.services.booking_service import BookingService
from booking_engine.services.expiry_service import ExpiryService

from tests.conftest import backdate_booking, booking_payload, fetch, ticket_type_named


async def create_booking(session_factory, caller, event, ticket_type=None, quantity=1):
    async with session_factory() as session:
        return await BookingService(session).create_pending_booking(
            caller, BookingCreateRequest(**booking_payload(event, ticket_type, quantity=quantity))
        )


@pytest.mark.asyncio
async def test_stale_booking_expires_and_releases(db_session, session_factory, ticketed_event, buyer):
    general = ticket_type_named(ticketed_event, "GENERAL")
    booking = await create_booking(session_factory, buyer, ticketed_event, general)
    assert (await fetch(session_factory, TicketType, general.id)).tickets_sold == 100

    await backdate_booking(session_factory, booking.id, minutes=16)
    sweep = await ExpiryService(db_session).expire_stale_bookings()

    assert sweep.cleaned == 1
    assert sweep.failed == 0
    assert sweep.total == 1

    expired = await fetch(session_factory, Booking, booking.id)
    assert expired.booking_status == BookingStatus.EXPIRED
    assert expired.payment_status == PaymentStatus.FAILED
    assert expired.expired_at is not None
    assert (await fetch(session_factory, EventBooking, booking.id)).booking_status == BookingStatus.EXPIRED
    assert (await fetch(session_factory, TicketType, general.id)).tickets_sold == 99


@pytest.mark.asyncio
async def test_fresh_and_resolved_bookings_are_left_alone(db_session, session_factory, ticketed_event, buyer):
    vip = ticket_type_named(ticketed_event, "VIP")
    fresh = await create_booking(session_factory, buyer, ticketed_event, vip)
    stale = await create_booking(session_factory, buyer, ticketed_event, vip)
    await backdate_booking(session_factory, stale.id, minutes=30)

    service = ExpiryService(db_session)
    # Another process confirms it first
    async with session_factory() as session:
        async with session.begin():
            booking = await session.get(Booking, stale.id)
            booking.booking_status = BookingStatus.CONFIRMED
            booking.payment_status = PaymentStatus.SUCCESS

    assert await service.expire_booking(stale.id) is False
    sweep = await service.expire_stale_bookings()

    assert sweep.total == 0
    assert (await fetch(session_factory, Booking, fresh.id)).booking_status == BookingStatus.PENDING
    assert (await fetch(session_factory, Booking, stale.id)).booking_status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_legacy_reservation_released(db_session, session_factory, legacy_event, buyer):
    booking = await create_booking(session_factory, buyer, legacy_event, quantity=4)
    assert (await fetch(session_factory, Event, legacy_event.id)).tickets_sold == 4

    await backdate_booking(session_factory, booking.id, minutes=20)
    await ExpiryService(db_session).expire_stale_bookings()

    assert (await fetch(session_factory, Event, legacy_event.id)).tickets_sold == 0


@pytest.mark.asyncio
async def test_ghost_booking_still_expires(db_session, session_factory, ticketed_event, buyer):
    general = ticket_type_named(ticketed_event, "GENERAL")
    booking = await create_booking(session_factory, buyer, ticketed_event, general)
    await backdate_booking(session_factory, booking.id, minutes=16)

    async with session_factory() as session:
        async with session.begin():
            await session.execute(delete(Event).where(Event.id == ticketed_event.id))

    sweep = await ExpiryService(db_session).expire_stale_bookings()

    assert sweep.cleaned == 1
    assert (await fetch(session_factory, Booking, booking.id)).booking_status == BookingStatus.EXPIRED


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_batch(db_session, session_factory, ticketed_event, buyer, monkeypatch):
    vip = ticket_type_named(ticketed_event, "VIP")
    broken = await create_booking(session_factory, buyer, ticketed_event, vip)
    healthy = await create_booking(session_factory, buyer, ticketed_event, vip)
    for booking in (broken, healthy):
        await backdate_booking(session_factory, booking.id, minutes=16)

    original = ExpiryService.expire_booking

    async def flaky(self, booking_id, cutoff=None):
        if booking_id == broken.id:
            raise RuntimeError("store unavailable")
        return await original(self, booking_id, cutoff=cutoff)

    monkeypatch.setattr(ExpiryService, "expire_booking", flaky)

    sweep = await ExpiryService(db_session).expire_stale_bookings()

    assert sweep.cleaned == 1
    assert sweep.failed == 1
    assert sweep.errors == [{"booking_id": str(broken.id), "error": "store unavailable"}]
    assert (await fetch(session_factory, Booking, healthy.id)).booking_status == BookingStatus.EXPIRED
    assert (await fetch(session_factory, Booking, broken.id)).booking_status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_batch_size_bounds_each_run(db_session, session_factory, ticketed_event, buyer):
    vip = ticket_type_named(ticketed_event, "VIP")
    for _ in range(3):
        booking = await create_booking(session_factory, buyer, ticketed_event, vip)
        await backdate_booking(session_factory, booking.id, minutes=16)

    service = ExpiryService(db_session)
    assert (await service.expire_stale_bookings(batch_size=2)).cleaned == 2
    assert (await service.expire_stale_bookings(batch_size=2)).cleaned == 1


@pytest.mark.asyncio
async def test_cleanup_endpoint_requires_cron_secret(client: AsyncClient, settings, session_factory, ticketed_event, buyer):
    general = ticket_type_named(ticketed_event, "GENERAL")
    booking = await create_booking(session_factory, buyer, ticketed_event, general)
    await backdate_booking(session_factory, booking.id, minutes=16)

    assert (await client.post("/api/v1/bookings/cleanup")).status_code == 401
    assert (await client.get("/api/v1/bookings/cleanup", headers={"X-Cron-Key": "wrong"})).status_code == 401

    response = await client.post(
        "/api/v1/bookings/cleanup", headers={"Authorization": f"Bearer {settings.cron_secret}"}
    )
    assert response.status_code == 200
    assert response.json() == {"cleaned": 1, "failed": 0, "skipped": 0, "total": 1}

    response = await client.get("/api/v1/bookings/cleanup", headers={"X-Cron-Key": settings.cron_secret})
    assert response.status_code == 200
    assert response.json()["total"] == 0


@pytest.mark.asyncio
async def test_cleanup_endpoint_fails_closed_in_production(client: AsyncClient, settings, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)
    monkeypatch.setattr(settings, "environment", "production")

    response = await client.post("/api/v1/bookings/cleanup")

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cleanup_endpoint_open_in_development_without_secret(client: AsyncClient, settings, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)

    response = await client.get("/api/v1/bookings/cleanup")

    assert response.status_code == 200
    assert response.json()["cleaned"] == 0
