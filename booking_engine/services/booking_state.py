"""
Compare-and-set transitions on bookings and their event mirrors.

A transition only applies while the booking is still in one of the expected
states; the caller whose UPDATE matched is the one that performed it.
"""

import logging
import secrets
import string
import time
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import Booking, BookingStatus, EventBooking

logger = logging.getLogger(__name__)

MIRROR_COLUMNS = frozenset(EventBooking.__table__.columns.keys()) - {"id", "created_at", "updated_at"}

_ALPHABET = string.ascii_uppercase + string.digits


def generate_ticket_id() -> str:
    """Ticket ids look like ``TKT-1718000000000-7Q2XK9ABC``."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"TKT-{int(time.time() * 1000)}-{suffix}"


def generate_order_id(prefix: str) -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


async def load_booking(session: AsyncSession, booking_id: UUID) -> Optional[Booking]:
    """Read the booking as currently stored, bypassing the identity map."""
    result = await session.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def sync_mirror(session: AsyncSession, booking_id: UUID, values: Dict[str, Any]) -> None:
    mirror_values = {key: value for key, value in values.items() if key in MIRROR_COLUMNS}
    if not mirror_values:
        return
    result = await session.execute(
        update(EventBooking)
        .where(EventBooking.id == booking_id)
        .values(**mirror_values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Event (and with it the mirror) was deleted
        logger.debug(f"No event mirror for booking {booking_id}")


async def transition_booking(
    session: AsyncSession,
    booking_id: UUID,
    values: Dict[str, Any],
    expected_statuses: Iterable[BookingStatus] = (BookingStatus.PENDING,),
    extra_criteria: Iterable[Any] = (),
) -> bool:
    """Apply ``values`` if the booking is still in an expected state.

    Must run inside the caller's transaction; returns False when another
    process already moved the booking on.
    """
    result = await session.execute(
        update(Booking)
        .where(
            Booking.id == booking_id,
            Booking.booking_status.in_(list(expected_statuses)),
            *extra_criteria,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await sync_mirror(session, booking_id, values)
    return True
