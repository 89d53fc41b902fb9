"""
Event and ticket type models holding inventory counters.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class Event(Base):
    """Event owned by a host.

    ``max_tickets``/``tickets_sold`` is the legacy event-level counter pair,
    consulted only when the event declares no ticket types.
    """

    __tablename__ = "events"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    host_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    venue: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Legacy capacity; NULL means unlimited
    max_tickets: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Bumped on every counter change
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    ticket_types: Mapped[List["TicketType"]] = relationship(
        "TicketType",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("tickets_sold >= 0", name="ck_events_tickets_sold_non_negative"),
        CheckConstraint(
            "max_tickets IS NULL OR tickets_sold <= max_tickets",
            name="ck_events_capacity",
        ),
        CheckConstraint("version > 0", name="ck_events_version_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<Event(id={self.id}, name='{self.name}', "
            f"sold={self.tickets_sold}/{self.max_tickets})>"
        )


class TicketType(Base):
    """Per ticket type inventory counter."""

    __tablename__ = "ticket_types"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    # NULL means the type is not capped
    total_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    event: Mapped["Event"] = relationship("Event", back_populates="ticket_types")

    __table_args__ = (
        CheckConstraint("tickets_sold >= 0", name="ck_ticket_types_tickets_sold_non_negative"),
        CheckConstraint(
            "total_quantity IS NULL OR tickets_sold <= total_quantity",
            name="ck_ticket_types_capacity",
        ),
    )

    @property
    def available(self) -> Optional[int]:
        if self.total_quantity is None:
            return None
        return max(self.total_quantity - self.tickets_sold, 0)

    def __repr__(self) -> str:
        return (
            f"<TicketType(id={self.id}, name='{self.name}', "
            f"sold={self.tickets_sold}/{self.total_quantity})>"
        )
