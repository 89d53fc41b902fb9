"""
Payment confirmation: gateway webhooks, manual confirmation and reconciliation.

All three paths funnel into ``PaymentService._settle`` so a booking is moved
out of PENDING exactly once, by whichever path gets there first. Gateway
calls always happen outside database transactions.
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models.base import utcnow
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..schemas.payment import GatewayNotification, ReconciliationItem
from ..tasks.dispatch import BookingSideEffects
from ..utils.auth import CallerIdentity
from ..utils.exceptions import (
    AmountMismatchError,
    BookingNotFoundError,
    InvalidBookingStateError,
    PaymentServiceError,
    ValidationError,
)
from ..utils.logging_config import log_business_event, log_security_event
from ..utils.retry import retry_on_concurrency_error
from ..utils.webhook_signature import verify_webhook_signature
from .booking_service import ensure_owner
from .booking_state import (
    generate_order_id,
    generate_ticket_id,
    load_booking,
    transition_booking,
)
from .gateway_client import (
    GatewayOrder,
    PaymentGatewayClient,
    PaymentOutcome,
    classify_payment_status,
)
from .inventory import release_reservation

logger = logging.getLogger(__name__)


class SettlementOutcome(str, enum.Enum):
    CONFIRMED = "CONFIRMED"
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    TERMINAL_IGNORED = "TERMINAL_IGNORED"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    ERROR = "ERROR"


UPDATED_OUTCOMES = frozenset({
    SettlementOutcome.CONFIRMED,
    SettlementOutcome.CANCELLED,
    SettlementOutcome.FAILED,
})


class ConfirmationSource(str, enum.Enum):
    WEBHOOK = "webhook"
    MANUAL = "manual"
    RECONCILIATION = "reconciliation"


# Column stamped by the transition each source causes
SOURCE_TIMESTAMPS = {
    ConfirmationSource.WEBHOOK: "webhook_received_at",
    ConfirmationSource.MANUAL: "manual_confirmation_at",
    ConfirmationSource.RECONCILIATION: "reconciled_at",
}


@dataclass
class Settlement:
    outcome: SettlementOutcome
    booking: Booking

    @property
    def updated(self) -> bool:
        return self.outcome in UPDATED_OUTCOMES


@dataclass
class ReconciliationReport:
    checked: int = 0
    updated: int = 0
    results: List[ReconciliationItem] = field(default_factory=list)


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


class PaymentService:
    """Drives bookings from PENDING to a terminal state based on gateway truth."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGatewayClient] = None,
        side_effects: Optional[BookingSideEffects] = None,
    ):
        self.session = session
        self.settings = get_settings()
        self.gateway = gateway or PaymentGatewayClient()
        self.side_effects = side_effects or BookingSideEffects()

    # Webhook

    async def handle_gateway_callback(
        self,
        raw_body: bytes,
        timestamp: Optional[str],
        signature: Optional[str],
    ) -> SettlementOutcome:
        """
        Process a signed gateway callback.

        Signature and payload problems raise (401 / 400). Everything after
        that is logged and reported as an outcome so the gateway always
        receives 200 and stops redelivering.
        """
        verify_webhook_signature(raw_body, timestamp, signature, self.settings.effective_webhook_secret)

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Webhook payload is not valid JSON") from e

        notification = GatewayNotification.from_payload(payload)
        if notification is None:
            raise ValidationError("Webhook payload has no order id")

        try:
            outcome = await self._process_notification(notification)
        except Exception:
            logger.exception(f"Webhook processing failed for order {notification.order_id}")
            return SettlementOutcome.ERROR

        logger.info(f"Webhook for order {notification.order_id} handled: {outcome.value}")
        return outcome

    async def _process_notification(self, notification: GatewayNotification) -> SettlementOutcome:
        async with self.session.begin():
            result = await self.session.execute(
                select(Booking)
                .where(Booking.order_id == notification.order_id)
                .execution_options(populate_existing=True)
            )
            booking = result.scalars().first()

        if booking is None:
            logger.warning(f"Webhook for unknown order {notification.order_id}, ignoring")
            return SettlementOutcome.BOOKING_NOT_FOUND

        outcome = classify_payment_status(notification.payment_status, notification.order_status)
        settlement = await self._settle(
            booking,
            outcome,
            notification.amount,
            ConfirmationSource.WEBHOOK,
            strict_release=True,
        )
        return settlement.outcome

    # Manual confirmation

    async def confirm_manually(self, caller: CallerIdentity, booking_id: UUID) -> Settlement:
        """
        Ask the gateway for the order status and apply it.

        Raises:
            BookingNotFoundError, AuthorizationError: Unknown or foreign booking
            InvalidBookingStateError: Booking already failed, cancelled or expired
            ValidationError: Booking has no gateway order yet
            AmountMismatchError: Gateway amount differs from the booking total
            PaymentServiceError: Gateway unreachable or erroring
        """
        booking = await self._load_owned_booking(caller, booking_id)

        if booking.is_confirmed:
            return Settlement(SettlementOutcome.ALREADY_CONFIRMED, booking)
        if booking.is_terminal_failure:
            raise InvalidBookingStateError(str(booking.id), booking.booking_status.value, BookingStatus.PENDING.value)
        if not booking.order_id:
            raise ValidationError("No order ID found for this booking")

        order = await self.gateway.get_order(booking.order_id)
        logger.info(
            f"Manual confirmation for booking {booking.id}: gateway order status {order.order_status}"
        )

        settlement = await self._settle(
            booking,
            order.outcome,
            order.amount,
            ConfirmationSource.MANUAL,
            strict_release=False,
        )
        if settlement.outcome == SettlementOutcome.AMOUNT_MISMATCH:
            raise AmountMismatchError(str(booking.id), str(money(booking.total_amount)), str(order.amount))
        return settlement

    # Reconciliation

    async def reconcile_user_bookings(self, caller: CallerIdentity) -> ReconciliationReport:
        """Re-check the caller's bookings still waiting on the gateway."""
        bookings = await self._find_initiated_bookings(caller.user_id)
        logger.info(f"Reconciling {len(bookings)} initiated bookings for user {caller.user_id}")
        return await self._reconcile(bookings)

    async def reconcile_stale_orders(self, limit: Optional[int] = None) -> ReconciliationReport:
        """Scheduled pass over all users' orders that have been pending for a while."""
        cutoff = utcnow() - timedelta(minutes=self.settings.reconciliation_min_age_minutes)
        async with self.session.begin():
            result = await self.session.execute(
                select(Booking)
                .where(
                    Booking.payment_status == PaymentStatus.INITIATED,
                    Booking.booking_status == BookingStatus.PENDING,
                    Booking.order_id.is_not(None),
                    Booking.created_at <= cutoff,
                )
                .order_by(Booking.created_at)
                .limit(limit or self.settings.reconciliation_batch_size)
            )
            bookings = list(result.scalars())

        report = await self._reconcile(bookings)
        logger.info(f"Scheduled reconciliation checked {report.checked}, updated {report.updated}")
        return report

    async def _find_initiated_bookings(self, user_id: str) -> List[Booking]:
        try:
            return await self._query_initiated_bookings(user_id)
        except (OperationalError, ProgrammingError) as e:
            logger.warning(
                f"Indexed reconciliation query failed ({e.__class__.__name__}), "
                f"falling back to a filtered scan for user {user_id}"
            )

        async with self.session.begin():
            result = await self.session.execute(
                select(Booking)
                .where(Booking.user_id == user_id)
                .limit(self.settings.reconciliation_fallback_scan_limit)
            )
            candidates = list(result.scalars())

        pending = [
            booking for booking in candidates
            if booking.payment_status == PaymentStatus.INITIATED
            and booking.booking_status == BookingStatus.PENDING
        ]
        return pending[: self.settings.reconciliation_batch_size]

    async def _query_initiated_bookings(self, user_id: str) -> List[Booking]:
        async with self.session.begin():
            result = await self.session.execute(
                select(Booking)
                .where(
                    Booking.user_id == user_id,
                    Booking.payment_status == PaymentStatus.INITIATED,
                    Booking.booking_status == BookingStatus.PENDING,
                )
                .order_by(Booking.created_at)
                .limit(self.settings.reconciliation_batch_size)
            )
            return list(result.scalars())

    async def _reconcile(self, bookings: List[Booking]) -> ReconciliationReport:
        report = ReconciliationReport()

        for booking in bookings:
            report.checked += 1
            item = ReconciliationItem(
                booking_id=booking.id,
                order_id=booking.order_id,
                booking_status=booking.booking_status,
            )
            report.results.append(item)

            if not booking.order_id:
                continue

            try:
                order = await self.gateway.get_order(booking.order_id)
            except PaymentServiceError as e:
                logger.warning(f"Could not fetch order {booking.order_id} for booking {booking.id}: {e.message}")
                continue

            item.gateway_status = order.order_status
            try:
                settlement = await self._settle(
                    booking,
                    order.outcome,
                    order.amount,
                    ConfirmationSource.RECONCILIATION,
                    strict_release=False,
                )
            except Exception:
                logger.exception(f"Reconciliation of booking {booking.id} failed")
                continue

            item.booking_status = settlement.booking.booking_status
            item.updated = settlement.updated
            if settlement.updated:
                report.updated += 1

        return report

    # Payment sessions

    async def create_payment_session(
        self,
        caller: CallerIdentity,
        booking_id: UUID,
        customer_phone: Optional[str] = None,
    ) -> Tuple[Booking, GatewayOrder]:
        """Create (or reuse) the gateway order a PENDING booking is paid through."""
        booking = await self._load_owned_booking(caller, booking_id)
        if not booking.is_pending:
            raise InvalidBookingStateError(str(booking.id), booking.booking_status.value, BookingStatus.PENDING.value)

        if booking.order_id:
            logger.info(f"Reusing gateway order {booking.order_id} for booking {booking.id}")
            return booking, await self.gateway.get_order(booking.order_id)

        order_id = generate_order_id(self.settings.order_id_prefix)
        order = await self.gateway.create_order(
            order_id=order_id,
            amount=money(booking.total_amount),
            customer_id=caller.user_id,
            customer_email=booking.user_email,
            customer_name=booking.user_name,
            customer_phone=customer_phone,
            return_url=f"{self.settings.app_url}/booking/verify?order_id={order_id}",
        )

        async with self.session.begin():
            applied = await transition_booking(
                self.session,
                booking.id,
                {"order_id": order_id, "payment_gateway": self.settings.gateway_name},
                extra_criteria=(Booking.order_id.is_(None),),
            )
            current = await load_booking(self.session, booking.id)

        if not applied:
            if current.is_pending and current.order_id:
                logger.warning(
                    f"Booking {booking.id} got order {current.order_id} concurrently; "
                    f"discarding order {order_id}"
                )
                return current, await self.gateway.get_order(current.order_id)
            raise InvalidBookingStateError(str(booking.id), current.booking_status.value, BookingStatus.PENDING.value)

        return current, order

    # Shared transitions

    async def _load_owned_booking(self, caller: CallerIdentity, booking_id: UUID) -> Booking:
        async with self.session.begin():
            booking = await load_booking(self.session, booking_id)
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        ensure_owner(caller, booking)
        return booking

    async def _settle(
        self,
        booking: Booking,
        outcome: PaymentOutcome,
        amount: Optional[Decimal],
        source: ConfirmationSource,
        strict_release: bool,
    ) -> Settlement:
        """Apply a gateway verdict to a booking.

        ``strict_release`` makes status change and inventory release succeed
        or fail together; otherwise a failed release still lets the status
        change land.
        """
        if amount is not None and money(amount) != money(booking.total_amount):
            logger.error(
                f"Amount mismatch for booking {booking.id}: booking total {booking.total_amount}, "
                f"gateway reported {amount}; leaving booking untouched"
            )
            log_security_event(
                "payment_amount_mismatch",
                {
                    "booking_id": str(booking.id),
                    "expected_amount": str(booking.total_amount),
                    "received_amount": str(amount),
                    "source": source.value,
                },
                severity="ERROR",
            )
            return Settlement(SettlementOutcome.AMOUNT_MISMATCH, booking)

        if booking.is_confirmed:
            return Settlement(SettlementOutcome.ALREADY_CONFIRMED, booking)

        if outcome == PaymentOutcome.PENDING:
            return Settlement(SettlementOutcome.PENDING, booking)

        if not booking.is_pending:
            if outcome == PaymentOutcome.SUCCESS:
                logger.error(
                    f"Payment succeeded for booking {booking.id} which is already "
                    f"{booking.booking_status.value}; needs refund review"
                )
            return Settlement(SettlementOutcome.TERMINAL_IGNORED, booking)

        if outcome == PaymentOutcome.SUCCESS:
            return await self._confirm(booking, source)
        return await self._fail(booking, outcome, source, strict_release)

    async def _confirm(self, booking: Booking, source: ConfirmationSource) -> Settlement:
        now = utcnow()
        values = {
            "booking_status": BookingStatus.CONFIRMED,
            "payment_status": PaymentStatus.SUCCESS,
            "ticket_id": booking.ticket_id or generate_ticket_id(),
            "confirmed_at": now,
            SOURCE_TIMESTAMPS[source]: now,
        }
        applied, current = await self._apply_transition(booking, values, release=False)

        if not applied:
            if current.is_confirmed:
                return Settlement(SettlementOutcome.ALREADY_CONFIRMED, current)
            logger.error(
                f"Booking {booking.id} left PENDING as {current.booking_status.value} "
                f"before a successful payment could be applied; needs refund review"
            )
            return Settlement(SettlementOutcome.TERMINAL_IGNORED, current)

        logger.info(f"Booking {current.id} confirmed via {source.value}, ticket {current.ticket_id}")
        log_business_event(
            "booking_confirmed",
            {
                "booking_id": str(current.id),
                "event_id": str(current.event_id),
                "ticket_id": current.ticket_id,
                "total_amount": str(current.total_amount),
                "source": source.value,
            },
            user_id=current.user_id,
        )
        # Only the transaction that performed the transition dispatches
        self.side_effects.booking_confirmed(current.id)
        return Settlement(SettlementOutcome.CONFIRMED, current)

    async def _fail(
        self,
        booking: Booking,
        outcome: PaymentOutcome,
        source: ConfirmationSource,
        strict_release: bool,
    ) -> Settlement:
        now = utcnow()
        if outcome == PaymentOutcome.FAILED:
            booking_status, timestamp_column = BookingStatus.CANCELLED, "cancelled_at"
        else:
            booking_status, timestamp_column = BookingStatus.FAILED, "failed_at"

        values = {
            "booking_status": booking_status,
            "payment_status": PaymentStatus.FAILED,
            timestamp_column: now,
            SOURCE_TIMESTAMPS[source]: now,
        }

        try:
            applied, current = await self._apply_transition(booking, values, release=True)
        except Exception:
            if strict_release:
                raise
            logger.exception(
                f"Inventory release failed for booking {booking.id}; recording {booking_status.value} without it"
            )
            applied, current = await self._apply_transition(booking, values, release=False)

        if not applied:
            if current.is_confirmed:
                return Settlement(SettlementOutcome.ALREADY_CONFIRMED, current)
            return Settlement(SettlementOutcome.TERMINAL_IGNORED, current)

        logger.info(f"Booking {current.id} marked {booking_status.value} via {source.value}")
        log_business_event(
            f"booking_{booking_status.value.lower()}",
            {"booking_id": str(current.id), "event_id": str(current.event_id), "source": source.value},
            user_id=current.user_id,
        )
        outcome_map = {
            BookingStatus.CANCELLED: SettlementOutcome.CANCELLED,
            BookingStatus.FAILED: SettlementOutcome.FAILED,
        }
        return Settlement(outcome_map[booking_status], current)

    @retry_on_concurrency_error(max_attempts=3, base_delay=0.1, max_delay=1.0)
    async def _apply_transition(self, booking: Booking, values: dict, release: bool) -> Tuple[bool, Booking]:
        """Compare-and-set the booking out of PENDING, releasing inventory in the same transaction."""
        async with self.session.begin():
            applied = await transition_booking(self.session, booking.id, values)
            if applied and release:
                await release_reservation(self.session, booking)
            current = await load_booking(self.session, booking.id)
        return applied, current
