"""
Booking service: pending-booking creation with atomic inventory reservation.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models.base import as_utc
from ..models.booking import (
    Booking,
    BookingStatus,
    EventBooking,
    InventoryMode,
    PaymentStatus,
)
from ..models.event import Event, TicketType
from ..schemas.booking import BookingCreateRequest
from ..utils.auth import CallerIdentity
from ..utils.exceptions import (
    AuthorizationError,
    BookingNotFoundError,
    EventNotFoundError,
    ValidationError,
)
from ..utils.logging_config import log_business_event, log_security_event
from ..utils.retry import retry_on_concurrency_error
from .booking_state import load_booking
from .inventory import (
    aggregate_quantities,
    capped,
    reserve_event_capacity,
    reserve_ticket_type,
    ticket_type_index,
)

logger = logging.getLogger(__name__)


class BookingService:
    """Service for creating and reading bookings."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settings = get_settings()

    @retry_on_concurrency_error(max_attempts=3, base_delay=0.1, max_delay=1.0)
    async def create_pending_booking(
        self,
        caller: CallerIdentity,
        request: BookingCreateRequest,
    ) -> Booking:
        """
        Create a PENDING booking, reserving inventory in the same transaction.

        Args:
            caller: Verified identity the booking is created for
            request: Event, line items, totals and show metadata

        Returns:
            The created booking

        Raises:
            ValidationError: Bad quantities or unknown ticket types
            EventNotFoundError: The event does not exist
            InsufficientCapacityError: A capped counter cannot take the request
            ConcurrencyError: Store contention persisted across retries
        """
        self._validate_items(request)
        quantities = aggregate_quantities(request.items)

        logger.info(
            f"Creating booking for user {caller.user_id}, event {request.event_id}, "
            f"quantity {request.total_quantity}"
        )

        async with self.session.begin():
            event = await self.session.get(Event, request.event_id, populate_existing=True)
            if event is None:
                raise EventNotFoundError(str(request.event_id))
            if not event.is_active:
                raise ValidationError(f"Event {event.id} is not open for booking")

            ticket_types = list(
                (
                    await self.session.execute(
                        select(TicketType).where(TicketType.event_id == event.id)
                    )
                ).scalars()
            )

            inventory_mode, reserved_items = await self._reserve(event, ticket_types, quantities)

            booking = Booking(
                user_id=caller.user_id,
                event_id=event.id,
                items=[
                    {
                        "ticket_type_id": item.ticket_type_id,
                        "quantity": item.quantity,
                        "price": str(item.price),
                    }
                    for item in request.items
                ],
                quantity=request.total_quantity,
                total_amount=request.total_amount,
                booking_fee=request.booking_fee,
                inventory_mode=inventory_mode,
                reserved_items=reserved_items,
                payment_gateway=self.settings.gateway_name,
                booking_status=BookingStatus.PENDING,
                payment_status=PaymentStatus.INITIATED,
                location_id=request.location_id,
                location_name=request.location_name,
                venue_id=request.venue_id,
                venue_name=request.venue_name,
                show_id=request.show_id,
                show_date=request.show_date,
                show_time=request.show_time,
                user_email=request.user_email or caller.email,
                user_name=request.user_name or caller.name,
            )
            self.session.add(booking)
            await self.session.flush()
            self.session.add(EventBooking.from_booking(booking))

        logger.info(f"Booking {booking.id} created ({inventory_mode.value} inventory)")
        log_business_event(
            "booking_created",
            {
                "booking_id": str(booking.id),
                "event_id": str(booking.event_id),
                "quantity": booking.quantity,
                "total_amount": str(booking.total_amount),
                "inventory_mode": inventory_mode.value,
            },
            user_id=caller.user_id,
        )
        return booking

    def _validate_items(self, request: BookingCreateRequest) -> None:
        field_errors: Dict[str, List[str]] = {}
        for index, item in enumerate(request.items):
            if item.quantity < 1:
                field_errors.setdefault(f"items.{index}.quantity", []).append("must be positive")
            if item.quantity > self.settings.max_booking_quantity:
                field_errors.setdefault(f"items.{index}.quantity", []).append(
                    f"at most {self.settings.max_booking_quantity} tickets per line item"
                )
        if field_errors:
            raise ValidationError("Invalid ticket quantities", field_errors=field_errors)

    async def _reserve(
        self,
        event: Event,
        ticket_types: List[TicketType],
        quantities: Dict[str, int],
    ) -> Tuple[InventoryMode, List[dict]]:
        """Pick the authoritative counter and reserve against it.

        Ticket type counters win whenever the event declares ticket types; the
        event-level pair is only used for events without them.
        """
        if ticket_types:
            index = ticket_type_index(ticket_types)
            resolved: Dict[str, int] = {}
            for raw_id, quantity in quantities.items():
                key = self._normalize_ticket_type_id(raw_id)
                if key not in index:
                    raise ValidationError(
                        f"Ticket type {raw_id} does not belong to event {event.id}",
                        field_errors={"items": [f"unknown ticket type {raw_id}"]},
                    )
                resolved[key] = resolved.get(key, 0) + quantity

            reserved = []
            for key, quantity in resolved.items():
                if capped(index[key]):
                    await reserve_ticket_type(self.session, index[key], quantity)
                    reserved.append({"ticket_type_id": key, "quantity": quantity})

            if reserved:
                return InventoryMode.TICKET_TYPE, reserved
            return InventoryMode.NONE, []

        if event.max_tickets is not None:
            quantity = sum(quantities.values())
            await reserve_event_capacity(self.session, event.id, quantity)
            return InventoryMode.EVENT, [{"ticket_type_id": None, "quantity": quantity}]

        return InventoryMode.NONE, []

    @staticmethod
    def _normalize_ticket_type_id(raw_id: str) -> str:
        try:
            return str(UUID(raw_id))
        except ValueError:
            return raw_id

    async def get_booking_for_caller(self, caller: CallerIdentity, booking_id: UUID) -> Booking:
        """Load a booking owned by the caller."""
        async with self.session.begin():
            booking = await load_booking(self.session, booking_id)

        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        ensure_owner(caller, booking)
        return booking

    async def list_bookings_for_caller(self, caller: CallerIdentity, limit: int = 50) -> List[Booking]:
        """
        List the caller's bookings, newest first.

        Args:
            caller: Verified identity whose bookings are listed
            limit: Maximum number of bookings, capped by configuration
        """
        limit = max(1, min(limit, self.settings.booking_list_max_limit))
        async with self.session.begin():
            result = await self.session.execute(
                select(Booking)
                .where(Booking.user_id == caller.user_id)
                .order_by(Booking.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars())

    def hold_expires_at(self, booking: Booking):
        return as_utc(booking.created_at) + timedelta(minutes=self.settings.booking_hold_timeout_minutes)


def ensure_owner(caller: CallerIdentity, booking: Booking) -> None:
    if booking.user_id != caller.user_id:
        log_security_event(
            "booking_ownership_violation",
            {"booking_id": str(booking.id), "caller_id": caller.user_id},
        )
        raise AuthorizationError("You do not have access to this booking")
