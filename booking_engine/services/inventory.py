"""
Reservation and release of inventory counters.

Both run inside the caller's transaction together with the booking write.
Counters are changed with conditional UPDATEs so the capacity check and the
increment are a single atomic statement.
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import Booking, InventoryMode
from ..models.event import Event, TicketType
from ..utils.exceptions import InsufficientCapacityError

logger = logging.getLogger(__name__)


def _floored_decrement(column, quantity: int):
    return case((column >= quantity, column - quantity), else_=0)


async def reserve_ticket_type(session: AsyncSession, ticket_type: TicketType, quantity: int) -> None:
    """Increment a capped ticket type's sold count or raise InsufficientCapacityError."""
    current = (
        await session.execute(
            select(TicketType.tickets_sold, TicketType.total_quantity)
            .where(TicketType.id == ticket_type.id)
        )
    ).one()
    sold, capacity = current
    if sold + quantity > capacity:
        raise InsufficientCapacityError(
            requested=quantity,
            available=max(capacity - sold, 0),
            event_id=str(ticket_type.event_id),
            ticket_type_id=str(ticket_type.id),
        )

    result = await session.execute(
        update(TicketType)
        .where(
            TicketType.id == ticket_type.id,
            TicketType.tickets_sold + quantity <= TicketType.total_quantity,
        )
        .values(
            tickets_sold=TicketType.tickets_sold + quantity,
            version=TicketType.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Lost the race between the read and the update
        raise InsufficientCapacityError(
            requested=quantity,
            available=0,
            event_id=str(ticket_type.event_id),
            ticket_type_id=str(ticket_type.id),
        )


async def reserve_event_capacity(session: AsyncSession, event_id: UUID, quantity: int) -> None:
    """Legacy event-level reservation against ``max_tickets``."""
    sold, capacity = (
        await session.execute(
            select(Event.tickets_sold, Event.max_tickets).where(Event.id == event_id)
        )
    ).one()
    if sold + quantity > capacity:
        raise InsufficientCapacityError(
            requested=quantity,
            available=max(capacity - sold, 0),
            event_id=str(event_id),
        )

    result = await session.execute(
        update(Event)
        .where(Event.id == event_id, Event.tickets_sold + quantity <= Event.max_tickets)
        .values(tickets_sold=Event.tickets_sold + quantity, version=Event.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientCapacityError(requested=quantity, available=0, event_id=str(event_id))


async def release_reservation(session: AsyncSession, booking: Booking) -> bool:
    """Give back exactly what ``booking`` reserved, floored at zero.

    Returns False when nothing was released: no reservation was taken, or the
    event no longer exists (ghost booking).
    """
    if booking.inventory_mode == InventoryMode.NONE or not booking.reserved_items:
        return False

    event_exists = await session.scalar(select(Event.id).where(Event.id == booking.event_id))
    if event_exists is None:
        logger.warning(
            f"Ghost booking {booking.id}: event {booking.event_id} is gone, skipping inventory release"
        )
        return False

    if booking.inventory_mode == InventoryMode.EVENT:
        quantity = sum(int(item["quantity"]) for item in booking.reserved_items)
        await session.execute(
            update(Event)
            .where(Event.id == booking.event_id)
            .values(
                tickets_sold=_floored_decrement(Event.tickets_sold, quantity),
                version=Event.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Released {quantity} event-level tickets for booking {booking.id}")
        return True

    for item in booking.reserved_items:
        quantity = int(item["quantity"])
        result = await session.execute(
            update(TicketType)
            .where(
                TicketType.id == UUID(str(item["ticket_type_id"])),
                TicketType.event_id == booking.event_id,
            )
            .values(
                tickets_sold=_floored_decrement(TicketType.tickets_sold, quantity),
                version=TicketType.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                f"Ticket type {item['ticket_type_id']} missing while releasing booking {booking.id}"
            )

    logger.info(f"Released ticket types {describe_reservation(booking.reserved_items)} for booking {booking.id}")
    return True


def describe_reservation(reserved_items: List[Dict]) -> str:
    return ", ".join(f"{item['ticket_type_id']}x{item['quantity']}" for item in reserved_items)


def aggregate_quantities(items) -> Dict[str, int]:
    """Sum line item quantities per ticket type, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for item in items:
        totals[item.ticket_type_id] = totals.get(item.ticket_type_id, 0) + item.quantity
    return totals


def ticket_type_index(ticket_types: List[TicketType]) -> Dict[str, TicketType]:
    return {str(ticket_type.id): ticket_type for ticket_type in ticket_types}


def capped(ticket_type: Optional[TicketType]) -> bool:
    return ticket_type is not None and ticket_type.total_quantity is not None
