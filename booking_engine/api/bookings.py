"""
FastAPI routes for the booking lifecycle.
"""

import hmac
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..database import get_db
from ..schemas.booking import (
    BookingCreateRequest,
    BookingCreateResponse,
    BookingListResponse,
    BookingStatusResponse,
    CleanupError,
    CleanupResponse,
)
from ..schemas.common import ERROR_RESPONSES
from ..schemas.payment import (
    ManualConfirmationResponse,
    PaymentSessionRequest,
    PaymentSessionResponse,
)
from ..services.booking_service import BookingService
from ..services.expiry_service import ExpiryService
from ..services.gateway_client import PaymentGatewayClient
from ..services.payment_service import PaymentService, SettlementOutcome
from ..tasks.dispatch import BookingSideEffects
from ..utils.auth import CallerIdentity
from ..utils.dependencies import get_current_caller, get_gateway_client, get_side_effects
from ..utils.exceptions import AuthenticationError, AuthorizationError
from ..utils.logging_config import log_security_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])


MANUAL_CONFIRMATION_MESSAGES = {
    SettlementOutcome.CONFIRMED: "Payment verified, booking confirmed",
    SettlementOutcome.ALREADY_CONFIRMED: "Booking is already confirmed",
    SettlementOutcome.CANCELLED: "Payment failed, booking cancelled",
    SettlementOutcome.FAILED: "Payment order closed, booking failed",
    SettlementOutcome.PENDING: "Payment is still pending at the gateway",
    SettlementOutcome.TERMINAL_IGNORED: "Booking is no longer pending",
}


async def verify_cron_caller(
    authorization: Optional[str] = Header(None),
    x_cron_key: Optional[str] = Header(None),
) -> None:
    """
    Guard for the cleanup trigger.

    A secret is required in production or whenever one is configured; it may
    be sent as ``Authorization: Bearer <secret>`` or ``X-Cron-Key``.
    """
    settings = get_settings()
    secret = settings.cron_secret

    if not secret:
        if settings.is_production:
            log_security_event("cron_secret_missing", {"endpoint": "cleanup"}, severity="ERROR")
            raise AuthorizationError("Cleanup trigger is not configured")
        return

    presented = x_cron_key
    if authorization and authorization.lower().startswith("bearer "):
        presented = authorization[7:].strip()

    if not presented or not hmac.compare_digest(presented.encode(), secret.encode()):
        log_security_event("cron_auth_failed", {"endpoint": "cleanup"})
        raise AuthenticationError("Invalid cron credentials")


@router.post(
    "",
    response_model=BookingCreateResponse,
    status_code=status.HTTP_200_OK,
    responses=ERROR_RESPONSES,
)
async def create_booking(
    request: BookingCreateRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    side_effects: BookingSideEffects = Depends(get_side_effects),
):
    """
    Create a PENDING booking and reserve its tickets.

    Inventory is taken atomically; if the tickets are not paid for within the
    hold timeout the booking expires and the tickets go back on sale.
    """
    booking_service = BookingService(db)
    booking = await booking_service.create_pending_booking(caller, request)
    hold_expires_at = booking_service.hold_expires_at(booking)
    side_effects.booking_reserved(booking.id, hold_expires_at)

    return BookingCreateResponse(
        booking_id=booking.id,
        booking_status=booking.booking_status,
        payment_status=booking.payment_status,
        total_amount=booking.total_amount,
        quantity=booking.quantity,
        hold_expires_at=hold_expires_at,
    )


@router.get("", response_model=BookingListResponse, responses=ERROR_RESPONSES)
async def list_my_bookings(
    limit: int = Query(50, ge=1, le=100, description="Maximum number of bookings to return"),
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's own bookings, newest first."""
    bookings = await BookingService(db).list_bookings_for_caller(caller, limit)
    return BookingListResponse(
        bookings=[BookingStatusResponse.from_booking(booking) for booking in bookings],
        count=len(bookings),
    )


@router.api_route(
    "/cleanup",
    methods=["GET", "POST"],
    response_model=CleanupResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(verify_cron_caller)],
)
async def cleanup_stale_bookings(db: AsyncSession = Depends(get_db)):
    """Expire one batch of stale PENDING bookings. Meant for external schedulers."""
    sweep = await ExpiryService(db).expire_stale_bookings()
    return CleanupResponse(
        cleaned=sweep.cleaned,
        failed=sweep.failed,
        skipped=sweep.skipped,
        total=sweep.total,
        errors=[CleanupError(**error) for error in sweep.errors] or None,
    )


@router.get("/{booking_id}", response_model=BookingStatusResponse, responses=ERROR_RESPONSES)
async def get_booking(
    booking_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingService(db).get_booking_for_caller(caller, booking_id)
    return BookingStatusResponse.from_booking(booking)


@router.post(
    "/{booking_id}/payment-session",
    response_model=PaymentSessionResponse,
    responses=ERROR_RESPONSES,
)
async def create_payment_session(
    booking_id: UUID,
    request: Optional[PaymentSessionRequest] = None,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
    side_effects: BookingSideEffects = Depends(get_side_effects),
):
    """Create the gateway order for a PENDING booking, or return the existing one."""
    payment_service = PaymentService(db, gateway=gateway, side_effects=side_effects)
    booking, order = await payment_service.create_payment_session(
        caller,
        booking_id,
        customer_phone=request.customer_phone if request else None,
    )
    return PaymentSessionResponse(
        booking_id=booking.id,
        order_id=order.order_id,
        payment_session_id=order.payment_session_id,
        order_status=order.order_status,
    )


@router.post(
    "/{booking_id}/confirm-manual",
    response_model=ManualConfirmationResponse,
    responses=ERROR_RESPONSES,
)
async def confirm_booking_manually(
    booking_id: UUID,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
    side_effects: BookingSideEffects = Depends(get_side_effects),
):
    """
    Check the gateway for this booking's order and apply the result.

    Used when the webhook never arrived, e.g. after the user returns from
    the payment page.
    """
    payment_service = PaymentService(db, gateway=gateway, side_effects=side_effects)
    settlement = await payment_service.confirm_manually(caller, booking_id)
    booking = settlement.booking

    return ManualConfirmationResponse(
        ok=settlement.outcome in (SettlementOutcome.CONFIRMED, SettlementOutcome.ALREADY_CONFIRMED),
        booking_id=booking.id,
        booking_status=booking.booking_status,
        payment_status=booking.payment_status,
        ticket_id=booking.ticket_id,
        message=MANUAL_CONFIRMATION_MESSAGES.get(settlement.outcome, settlement.outcome.value),
    )
