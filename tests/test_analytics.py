"""
Tests for analytics aggregation of confirmed bookings.
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from booking_engine.models import Booking, Event, EventAnalytics, EventShowAnalytics, HostAnalytics
from booking_engine.models.booking import BookingStatus, PaymentStatus
from booking_engine.schemas.booking import BookingCreateRequest
from booking_engine.services import analytics_service
from booking_engine.services.analytics_service import AnalyticsResult, AnalyticsService, ShowBreakdown
from booking_engine.services.booking_service import BookingService

from tests.conftest import HOST_ID, booking_payload, fetch, ticket_type_named


async def confirmed_booking(session_factory, caller, event, ticket_type, quantity=1, **extra):
    async with session_factory() as session:
        booking = await BookingService(session).create_pending_booking(
            caller, BookingCreateRequest(**booking_payload(event, ticket_type, quantity=quantity, **extra))
        )
        async with session.begin():
            await session.execute(
                update(Booking)
                .where(Booking.id == booking.id)
                .values(booking_status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.SUCCESS)
            )
    return booking


@pytest.mark.parametrize(
    "parts, expected",
    [
        (("loc1", "ven1", "2025-01-15", "show1"), "loc1_ven1_2025-01-15_show1"),
        (("loc1", "ven1", "15/01/2025", "show1"), None),
        (("loc1", None, "2025-01-15", "show1"), None),
        (("", "ven1", "2025-01-15", "show1"), None),
    ],
)
def test_breakdown_key(parts, expected):
    assert ShowBreakdown(*parts).key == expected


@pytest.mark.asyncio
async def test_record_booking_counts_once(db_session, session_factory, ticketed_event, buyer):
    vip = ticket_type_named(ticketed_event, "VIP")
    booking = await confirmed_booking(session_factory, buyer, ticketed_event, vip, quantity=2)

    service = AnalyticsService(db_session)
    assert await service.record_booking(booking.id) == AnalyticsResult.RECORDED
    assert await service.record_booking(booking.id) == AnalyticsResult.ALREADY_RECORDED

    host = await fetch(session_factory, HostAnalytics, HOST_ID)
    assert host.total_tickets_sold == 2
    assert host.total_revenue == Decimal("1000.00")

    event_totals = await fetch(session_factory, EventAnalytics, ticketed_event.id)
    assert event_totals.total_tickets_sold == 2
    assert event_totals.host_id == HOST_ID

    show = await fetch(session_factory, EventShowAnalytics, "loc1_ven1_2025-01-15_show1")
    assert show.tickets_sold == 2
    assert show.revenue == Decimal("1000.00")
    assert show.event_id == ticketed_event.id


@pytest.mark.asyncio
async def test_counters_accumulate_across_bookings(db_session, session_factory, ticketed_event, buyer, other_caller):
    vip = ticket_type_named(ticketed_event, "VIP")
    first = await confirmed_booking(session_factory, buyer, ticketed_event, vip, quantity=1)
    second = await confirmed_booking(session_factory, other_caller, ticketed_event, vip, quantity=3)

    service = AnalyticsService(db_session)
    await service.record_booking(first.id)
    await service.record_booking(second.id)

    host = await fetch(session_factory, HostAnalytics, HOST_ID)
    assert host.total_tickets_sold == 4
    assert host.total_revenue == Decimal("2000.00")


@pytest.mark.asyncio
async def test_pending_booking_is_not_counted(db_session, session_factory, ticketed_event, buyer):
    vip = ticket_type_named(ticketed_event, "VIP")
    async with session_factory() as session:
        booking = await BookingService(session).create_pending_booking(
            buyer, BookingCreateRequest(**booking_payload(ticketed_event, vip))
        )

    assert await AnalyticsService(db_session).record_booking(booking.id) == AnalyticsResult.SKIPPED
    assert await fetch(session_factory, HostAnalytics, HOST_ID) is None


@pytest.mark.asyncio
async def test_missing_breakdown_still_counts_totals(db_session, session_factory, ticketed_event, buyer):
    vip = ticket_type_named(ticketed_event, "VIP")
    booking = await confirmed_booking(session_factory, buyer, ticketed_event, vip, show_id=None)

    assert await AnalyticsService(db_session).record_booking(booking.id) == AnalyticsResult.RECORDED
    assert (await fetch(session_factory, HostAnalytics, HOST_ID)).total_tickets_sold == 1
    async with session_factory() as session:
        assert await session.get(EventShowAnalytics, "loc1_ven1_2025-01-15_show1") is None


@pytest.mark.asyncio
async def test_event_without_host_is_a_noop(db_session, session_factory):
    event = Event(name="Orphan Event", host_id=None)
    db_session.add(event)
    await db_session.commit()

    applied = await AnalyticsService(db_session).on_confirmed(event.id, 2, Decimal("100.00"))

    assert applied is False
    assert await fetch(session_factory, EventAnalytics, event.id) is None


@pytest.mark.asyncio
async def test_on_confirmed_never_raises(db_session, ticketed_event, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    service = AnalyticsService(db_session)
    monkeypatch.setattr(service, "_increment", broken)

    assert await service.on_confirmed(ticketed_event.id, 1, Decimal("10.00")) is False


@pytest.mark.asyncio
async def test_zero_sale_is_ignored(db_session, ticketed_event):
    service = AnalyticsService(db_session)
    assert await service.on_confirmed(ticketed_event.id, 0, Decimal("0")) is False


@pytest.mark.asyncio
async def test_unsupported_dialect_skips_without_raising(db_session, session_factory, ticketed_event, monkeypatch):
    monkeypatch.setattr(analytics_service, "UPSERT_INSERTS", {})
    service = AnalyticsService(db_session)

    async with db_session.begin():
        applied = await service._apply(ticketed_event.id, 2, Decimal("400.00"), None)

    assert applied is False
    assert await fetch(session_factory, HostAnalytics, HOST_ID) is None
