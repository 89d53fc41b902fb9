"""
Booking model and its per-event mirror.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class BookingStatus(str, enum.Enum):
    """Lifecycle state of a booking."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class PaymentStatus(str, enum.Enum):
    """Payment state of a booking."""
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class InventoryMode(str, enum.Enum):
    """Which counter a booking reserved against."""
    TICKET_TYPE = "TICKET_TYPE"
    EVENT = "EVENT"
    NONE = "NONE"


TERMINAL_FAILURE_STATUSES = (
    BookingStatus.CANCELLED,
    BookingStatus.EXPIRED,
    BookingStatus.FAILED,
)


def _status_column(enum_cls, default):
    return mapped_column(
        Enum(enum_cls, native_enum=False, length=16, validate_strings=True),
        default=default,
        nullable=False,
        index=True,
    )


class Booking(Base):
    """A buyer's reservation of tickets for one event.

    ``event_id`` deliberately has no foreign key: bookings are kept for audit
    after their event document is removed (ghost bookings).
    """

    __tablename__ = "bookings"

    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Commercial details
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal('0.00')
    )
    booking_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal('0.00')
    )

    # Reservation bookkeeping, released verbatim on failure or expiry
    inventory_mode: Mapped[InventoryMode] = mapped_column(
        Enum(InventoryMode, native_enum=False, length=16),
        default=InventoryMode.NONE,
        nullable=False,
    )
    reserved_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Payment linkage
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    payment_gateway: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    booking_status: Mapped[BookingStatus] = _status_column(BookingStatus, BookingStatus.PENDING)
    payment_status: Mapped[PaymentStatus] = _status_column(PaymentStatus, PaymentStatus.INITIATED)

    ticket_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)

    # Show metadata
    location_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    location_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    venue_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    venue_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    show_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    show_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    show_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    # Buyer contact
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Confirmation email markers
    confirmation_email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmation_email_lock_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confirmation_email_locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmation_email_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Transition timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    manual_confirmation_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    analytics_recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bookings_quantity_positive"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_amount_non_negative"),
    )

    @property
    def is_pending(self) -> bool:
        return self.booking_status == BookingStatus.PENDING

    @property
    def is_confirmed(self) -> bool:
        return (
            self.booking_status == BookingStatus.CONFIRMED
            and self.payment_status == PaymentStatus.SUCCESS
        )

    @property
    def is_terminal_failure(self) -> bool:
        return self.booking_status in TERMINAL_FAILURE_STATUSES

    @property
    def location_venue_key(self) -> Optional[str]:
        if self.location_id and self.venue_id:
            return f"{self.location_id}_{self.venue_id}"
        return None

    @property
    def venue_show_key(self) -> Optional[str]:
        if self.venue_id and self.show_id:
            return f"{self.venue_id}_{self.show_id}"
        return None

    @property
    def date_time_key(self) -> Optional[str]:
        if self.show_date and self.show_time:
            return f"{self.show_date}_{self.show_time}"
        return None

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, user_id={self.user_id}, event_id={self.event_id}, "
            f"status={self.booking_status.value}/{self.payment_status.value})>"
        )


class EventBooking(Base):
    """Event-scoped copy of a booking for host-side queries.

    Derived data: written in the same transaction as every status-changing
    write to ``bookings`` and never consulted for invariants.
    """

    __tablename__ = "event_bookings"

    # Shares the booking's primary key
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_gateway: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    booking_status: Mapped[BookingStatus] = _status_column(BookingStatus, BookingStatus.PENDING)
    payment_status: Mapped[PaymentStatus] = _status_column(PaymentStatus, PaymentStatus.INITIATED)
    ticket_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    location_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    location_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    venue_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    show_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    show_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    show_time: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    location_venue_key: Mapped[Optional[str]] = mapped_column(String(130), nullable=True, index=True)
    venue_show_key: Mapped[Optional[str]] = mapped_column(String(130), nullable=True)
    date_time_key: Mapped[Optional[str]] = mapped_column(String(27), nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmation_email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmation_email_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @classmethod
    def from_booking(cls, booking: Booking) -> "EventBooking":
        return cls(
            id=booking.id,
            event_id=booking.event_id,
            user_id=booking.user_id,
            quantity=booking.quantity,
            total_amount=booking.total_amount,
            order_id=booking.order_id,
            payment_gateway=booking.payment_gateway,
            booking_status=booking.booking_status,
            payment_status=booking.payment_status,
            ticket_id=booking.ticket_id,
            location_id=booking.location_id,
            location_name=booking.location_name,
            venue_id=booking.venue_id,
            show_id=booking.show_id,
            show_date=booking.show_date,
            show_time=booking.show_time,
            location_venue_key=booking.location_venue_key,
            venue_show_key=booking.venue_show_key,
            date_time_key=booking.date_time_key,
        )
