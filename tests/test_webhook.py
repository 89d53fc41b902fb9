"""
Tests for the gateway webhook: signature gate, idempotent confirmation,
amount integrity and inventory release on failure.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from httpx import AsyncClient

from booking_engine.models import Booking, EventBooking, TicketType
from booking_engine.models.booking import BookingStatus, PaymentStatus
from booking_engine.schemas.booking import BookingCreateRequest
from booking_engine.services.booking_service import BookingService
from booking_engine.services import payment_service
from booking_engine.services.gateway_client import GatewayOrder, PaymentOutcome, classify_payment_status
from booking_engine.services.payment_service import PaymentService, SettlementOutcome

from tests.conftest import attach_order, booking_payload, fetch, ticket_type_named

WEBHOOK_URL = "/api/v1/payments/webhook"
ORDER_ID = "BKG-1700000000000-ABCDEFG"


@pytest_asyncio.fixture
async def pending_booking(session_factory, ticketed_event, buyer):
    """PENDING booking for the last GENERAL ticket with a gateway order attached."""
    general = ticket_type_named(ticketed_event, "GENERAL")
    async with session_factory() as session:
        booking = await BookingService(session).create_pending_booking(
            buyer, BookingCreateRequest(**booking_payload(ticketed_event, general))
        )
    await attach_order(session_factory, booking.id, ORDER_ID)
    return booking


def success_payload(amount="200.00", status="SUCCESS"):
    return {
        "type": "PAYMENT_SUCCESS_WEBHOOK",
        "data": {
            "order": {"order_id": ORDER_ID, "order_amount": amount},
            "payment": {"payment_status": status, "payment_amount": amount},
        },
    }


@pytest.mark.asyncio
async def test_duplicate_success_webhook_confirms_once(
    client: AsyncClient, sign_webhook, pending_booking, session_factory, side_effects
):
    body, headers = sign_webhook(success_payload())

    first = await client.post(WEBHOOK_URL, content=body, headers=headers)
    assert first.status_code == 200
    assert first.text == "OK"

    confirmed = await fetch(session_factory, Booking, pending_booking.id)
    assert confirmed.booking_status == BookingStatus.CONFIRMED
    assert confirmed.payment_status == PaymentStatus.SUCCESS
    assert confirmed.ticket_id.startswith("TKT-")
    assert confirmed.webhook_received_at is not None
    ticket_id = confirmed.ticket_id

    second = await client.post(WEBHOOK_URL, content=body, headers=headers)
    assert second.status_code == 200

    again = await fetch(session_factory, Booking, pending_booking.id)
    assert again.ticket_id == ticket_id
    assert side_effects.confirmed == [pending_booking.id]

    mirror = await fetch(session_factory, EventBooking, pending_booking.id)
    assert mirror.booking_status == BookingStatus.CONFIRMED
    assert mirror.ticket_id == ticket_id


@pytest.mark.asyncio
async def test_parallel_duplicate_webhooks_dispatch_once(
    client: AsyncClient, sign_webhook, pending_booking, session_factory, side_effects
):
    body, headers = sign_webhook(success_payload())

    responses = await asyncio.gather(
        *(client.post(WEBHOOK_URL, content=body, headers=headers) for _ in range(4))
    )

    assert [response.status_code for response in responses] == [200, 200, 200, 200]
    assert side_effects.confirmed == [pending_booking.id]
    booking = await fetch(session_factory, Booking, pending_booking.id)
    assert booking.booking_status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_processing_error_is_acknowledged_without_state_change(
    client: AsyncClient, sign_webhook, pending_booking, session_factory, ticketed_event, side_effects, monkeypatch
):
    async def store_down(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(payment_service, "transition_booking", store_down)
    body, headers = sign_webhook(success_payload())

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    assert response.text == "OK"
    booking = await fetch(session_factory, Booking, pending_booking.id)
    assert booking.booking_status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.INITIATED
    assert booking.ticket_id is None
    assert side_effects.confirmed == []
    general = ticket_type_named(ticketed_event, "GENERAL")
    assert (await fetch(session_factory, TicketType, general.id)).tickets_sold == 100

@pytest.mark.asyncio
async def test_amount_mismatch_leaves_booking_untouched(
    client: AsyncClient, sign_webhook, pending_booking, session_factory, ticketed_event, side_effects
):
    body, headers = sign_webhook(success_payload(amount="500.00"))

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    booking = await fetch(session_factory, Booking, pending_booking.id)
    assert booking.booking_status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.INITIATED
    assert booking.ticket_id is None
    general = ticket_type_named(ticketed_event, "GENERAL")
    assert (await fetch(session_factory, TicketType, general.id)).tickets_sold == 100
    assert side_effects.confirmed == []


@pytest.mark.asyncio
async def test_failed_payment_cancels_and_releases(
    client: AsyncClient, sign_webhook, pending_booking, session_factory, ticketed_event
):
    general = ticket_type_named(ticketed_event, "GENERAL")
    assert (await fetch(session_factory, TicketType, general.id)).tickets_sold == 100

    body, headers = sign_webhook({"order_id": ORDER_ID, "order_status": "ACTIVE", "payment_status": "USER_DROPPED"})
    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    booking = await fetch(session_factory, Booking, pending_booking.id)
    assert booking.booking_status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.FAILED
    assert booking.cancelled_at is not None
    # Back where it was before the reservation
    assert (await fetch(session_factory, TicketType, general.id)).tickets_sold == 99


@pytest.mark.asyncio
async def test_late_success_does_not_resurrect_cancelled_booking(
    client: AsyncClient, sign_webhook, pending_booking, session_factory
):
    fail_body, fail_headers = sign_webhook({"order_id": ORDER_ID, "payment_status": "FAILED"})
    await client.post(WEBHOOK_URL, content=fail_body, headers=fail_headers)

    body, headers = sign_webhook(success_payload())
    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    booking = await fetch(session_factory, Booking, pending_booking.id)
    assert booking.booking_status == BookingStatus.CANCELLED
    assert booking.ticket_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"x-webhook-timestamp": "1700000000"},
        {"x-webhook-timestamp": "1700000000", "x-webhook-signature": "bm90LXRoZS1zaWduYXR1cmU="},
    ],
)
async def test_unsigned_webhook_is_rejected(client: AsyncClient, pending_booking, session_factory, headers):
    body = json.dumps(success_payload()).encode()

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 401
    booking = await fetch(session_factory, Booking, pending_booking.id)
    assert booking.booking_status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_signature_over_other_body_is_rejected(client: AsyncClient, sign_webhook, pending_booking, session_factory):
    _, headers = sign_webhook(success_payload(amount="1.00"))
    tampered = json.dumps(success_payload()).encode()

    response = await client.post(WEBHOOK_URL, content=tampered, headers=headers)

    assert response.status_code == 401
    assert (await fetch(session_factory, Booking, pending_booking.id)).booking_status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_unparseable_payload_returns_400(client: AsyncClient, sign_webhook):
    body, headers = sign_webhook(b"{not json")
    assert (await client.post(WEBHOOK_URL, content=body, headers=headers)).status_code == 400

    body, headers = sign_webhook({"data": {"payment": {"payment_status": "SUCCESS"}}})
    assert (await client.post(WEBHOOK_URL, content=body, headers=headers)).status_code == 400


@pytest.mark.asyncio
async def test_unknown_order_is_acknowledged(client: AsyncClient, sign_webhook, pending_booking, session_factory):
    body, headers = sign_webhook({"order_id": "SOMEONE-ELSES-ORDER", "payment_status": "SUCCESS"})

    response = await client.post(WEBHOOK_URL, content=body, headers=headers)

    assert response.status_code == 200
    assert (await fetch(session_factory, Booking, pending_booking.id)).booking_status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_callback_outcomes(db_session, sign_webhook, pending_booking, gateway, side_effects):
    service = PaymentService(db_session, gateway=gateway, side_effects=side_effects)

    body, headers = sign_webhook({"order_id": ORDER_ID, "order_status": "ACTIVE"})
    outcome = await service.handle_gateway_callback(
        body, headers["x-webhook-timestamp"], headers["x-webhook-signature"]
    )
    assert outcome == SettlementOutcome.PENDING

    body, headers = sign_webhook({"order_id": ORDER_ID, "order_status": "PAID", "order_amount": 200})
    outcome = await service.handle_gateway_callback(
        body, headers["x-webhook-timestamp"], headers["x-webhook-signature"]
    )
    assert outcome == SettlementOutcome.CONFIRMED

    outcome = await service.handle_gateway_callback(
        body, headers["x-webhook-timestamp"], headers["x-webhook-signature"]
    )
    assert outcome == SettlementOutcome.ALREADY_CONFIRMED


@pytest.mark.asyncio
async def test_closed_order_marks_booking_failed(db_session, sign_webhook, pending_booking, gateway, side_effects):
    service = PaymentService(db_session, gateway=gateway, side_effects=side_effects)
    body, headers = sign_webhook({"order_id": ORDER_ID, "order_status": "EXPIRED"})

    outcome = await service.handle_gateway_callback(
        body, headers["x-webhook-timestamp"], headers["x-webhook-signature"]
    )

    assert outcome == SettlementOutcome.FAILED
    async with db_session.begin():
        booking = await db_session.get(Booking, pending_booking.id, populate_existing=True)
    assert booking.booking_status == BookingStatus.FAILED
    assert booking.payment_status == PaymentStatus.FAILED
    assert booking.failed_at is not None


def test_status_classification():
    assert classify_payment_status("success") == PaymentOutcome.SUCCESS
    assert classify_payment_status("ACTIVE", "PAID") == PaymentOutcome.SUCCESS
    assert classify_payment_status("CANCELED") == PaymentOutcome.FAILED
    assert classify_payment_status("TERMINATED") == PaymentOutcome.CLOSED
    assert classify_payment_status("ACTIVE") == PaymentOutcome.PENDING
    assert classify_payment_status(None) == PaymentOutcome.PENDING


def test_non_string_gateway_statuses_are_tolerated():
    order = GatewayOrder.from_response(
        {"order_status": 404, "payment_status": {"code": "X"}, "order_amount": "200.00"},
        ORDER_ID,
    )

    assert order.order_status == "404"
    assert isinstance(order.payment_status, str)
    assert order.outcome == PaymentOutcome.PENDING
    assert classify_payment_status(200) == PaymentOutcome.PENDING
