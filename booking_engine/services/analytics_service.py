"""
Best-effort analytics aggregation for confirmed bookings.

Counters are only ever incremented, with upserts so the first write creates
the row. Nothing here raises to the caller.
"""

import enum
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.analytics import EventAnalytics, EventShowAnalytics, HostAnalytics
from ..models.base import utcnow
from ..models.booking import Booking
from ..models.event import Event
from .booking_state import load_booking

logger = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Dialects with INSERT ... ON CONFLICT DO UPDATE
UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class AnalyticsResult(str, enum.Enum):
    RECORDED = "RECORDED"
    ALREADY_RECORDED = "ALREADY_RECORDED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ShowBreakdown:
    """Location/venue/date/show coordinates of a sale."""
    location_id: Optional[str]
    venue_id: Optional[str]
    show_date: Optional[str]
    show_id: Optional[str]

    @property
    def key(self) -> Optional[str]:
        """Composite id, or None unless every part is present and the date is YYYY-MM-DD."""
        if not (self.location_id and self.venue_id and self.show_date and self.show_id):
            return None
        if not DATE_PATTERN.match(self.show_date):
            return None
        return f"{self.location_id}_{self.venue_id}_{self.show_date}_{self.show_id}"

    @classmethod
    def from_booking(cls, booking: Booking) -> "ShowBreakdown":
        show_date = booking.show_date
        if not show_date and booking.date_time_key:
            show_date = booking.date_time_key.split("_")[0]
        return cls(booking.location_id, booking.venue_id, show_date, booking.show_id)


class AnalyticsService:
    """Maintains host, event and per-show sales counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_booking(self, booking_id: UUID) -> AnalyticsResult:
        """
        Count a confirmed booking exactly once.

        The booking's ``analytics_recorded_at`` marker is claimed in the same
        transaction as the increments, so a redelivered task is a no-op.
        """
        try:
            async with self.session.begin():
                booking = await load_booking(self.session, booking_id)
                if booking is None or not booking.is_confirmed:
                    logger.warning(f"Skipping analytics for booking {booking_id}: not confirmed")
                    return AnalyticsResult.SKIPPED

                claimed = await self.session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.analytics_recorded_at.is_(None))
                    .values(analytics_recorded_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    logger.info(f"Analytics already recorded for booking {booking_id}")
                    return AnalyticsResult.ALREADY_RECORDED

                applied = await self._apply(
                    booking.event_id,
                    booking.quantity,
                    Decimal(booking.total_amount),
                    ShowBreakdown.from_booking(booking),
                )
                if not applied:
                    # Nothing to count; keep the marker so retries stay no-ops
                    return AnalyticsResult.SKIPPED
            return AnalyticsResult.RECORDED
        except Exception:
            logger.exception(f"Analytics update failed for booking {booking_id}")
            return AnalyticsResult.FAILED

    async def on_confirmed(
        self,
        event_id: UUID,
        ticket_count: int,
        revenue: Decimal,
        breakdown: Optional[ShowBreakdown] = None,
    ) -> bool:
        """Increment host, event and optional per-show counters. Never raises."""
        try:
            async with self.session.begin():
                return await self._apply(event_id, ticket_count, revenue, breakdown)
        except Exception:
            logger.exception(f"Analytics update failed for event {event_id}")
            return False

    async def _apply(
        self,
        event_id: UUID,
        ticket_count: int,
        revenue: Decimal,
        breakdown: Optional[ShowBreakdown],
    ) -> bool:
        if ticket_count <= 0 or revenue <= 0:
            logger.info(f"Skipping analytics for event {event_id}: nothing sold")
            return False

        event = await self.session.get(Event, event_id)
        if event is None or not event.host_id:
            logger.info(f"Skipping analytics for event {event_id}: host unresolved")
            return False

        dialect = self.session.get_bind().dialect.name
        insert = UPSERT_INSERTS.get(dialect)
        if insert is None:
            logger.error(f"Analytics upserts are not supported on {dialect}, event {event_id} not counted")
            return False

        await self._increment(
            insert,
            HostAnalytics,
            {"id": event.host_id},
            {"total_tickets_sold": ticket_count, "total_revenue": revenue},
        )
        await self._increment(
            insert,
            EventAnalytics,
            {"id": event_id, "host_id": event.host_id},
            {"total_tickets_sold": ticket_count, "total_revenue": revenue},
        )

        key = breakdown.key if breakdown else None
        if key:
            await self._increment(
                insert,
                EventShowAnalytics,
                {
                    "id": key,
                    "event_id": event_id,
                    "location_id": breakdown.location_id,
                    "venue_id": breakdown.venue_id,
                    "show_date": breakdown.show_date,
                    "show_id": breakdown.show_id,
                },
                {"tickets_sold": ticket_count, "revenue": revenue},
            )

        logger.info(
            f"Analytics updated for event {event_id}: +{ticket_count} tickets, +{revenue} revenue"
            + (f", breakdown {key}" if key else "")
        )
        return True

    async def _increment(
        self, insert, model, identity: Dict[str, Any], increments: Dict[str, Any]
    ) -> None:
        """Insert the row with ``increments`` as initial values, or add them to the existing row."""
        now = utcnow()
        stmt = insert(model).values(**identity, **increments, created_at=now, updated_at=now)
        set_ = {
            column: getattr(model, column) + getattr(stmt.excluded, column)
            for column in increments
        }
        set_["updated_at"] = now
        await self.session.execute(stmt.on_conflict_do_update(index_elements=["id"], set_=set_))
