"""
Aggregate counters maintained by the analytics aggregator.

These tables are keyed by natural ids and only ever mutated through
atomic increments; the booking path never reads them.
"""

import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class HostAnalytics(Base):
    """Lifetime totals per host."""

    __tablename__ = "host_analytics"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    total_tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)


class EventAnalytics(Base):
    """Totals per event."""

    __tablename__ = "event_analytics"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    host_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    total_tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)


class EventShowAnalytics(Base):
    """Per location/venue/date/show breakdown of an event.

    ``id`` is the composite key ``{location}_{venue}_{date}_{show}``.
    """

    __tablename__ = "event_show_analytics"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    location_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    venue_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    show_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    show_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
