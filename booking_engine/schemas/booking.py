"""
Pydantic schemas for booking-related API requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..models.booking import Booking, BookingStatus, PaymentStatus

# Largest value a Numeric(10, 2) amount column holds
MAX_AMOUNT = Decimal("99999999.99")


class LineItem(BaseModel):
    """One ticket type and how many of it are requested."""

    ticket_type_id: str = Field(..., min_length=1, max_length=64, description="Ticket type being booked")
    quantity: int = Field(..., ge=1, description="Number of tickets of this type")
    price: Decimal = Field(Decimal("0.00"), ge=0, description="Unit price used to compute the total")


class BookingCreateRequest(BaseModel):
    """Schema for creating a pending booking."""

    event_id: UUID = Field(..., description="ID of the event to book")
    items: List[LineItem] = Field(..., min_length=1, description="Ordered line items")
    total_amount: Decimal = Field(
        ..., ge=0, le=MAX_AMOUNT, description="Total computed by the client, fees included"
    )
    booking_fee: Decimal = Field(Decimal("0.00"), ge=0, le=MAX_AMOUNT)

    # Show metadata
    location_id: Optional[str] = Field(None, max_length=64)
    location_name: Optional[str] = Field(None, max_length=255)
    venue_id: Optional[str] = Field(None, max_length=64)
    venue_name: Optional[str] = Field(None, max_length=255)
    show_id: Optional[str] = Field(None, max_length=64)
    show_date: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    show_time: Optional[str] = Field(None, max_length=16)

    # Buyer contact, defaults to the token claims
    user_email: Optional[str] = Field(None, max_length=255)
    user_name: Optional[str] = Field(None, max_length=255)

    @field_validator("total_amount", "booking_fee")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return v.quantize(Decimal("0.01"))

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)


class BookingCreateResponse(BaseModel):
    """Schema returned once inventory is reserved."""

    booking_id: UUID
    booking_status: BookingStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    quantity: int
    hold_expires_at: datetime


class BookingStatusResponse(BaseModel):
    """Current state of a booking, used by the verify/poll path."""

    booking_id: UUID
    event_id: UUID
    booking_status: BookingStatus
    payment_status: PaymentStatus
    quantity: int
    total_amount: Decimal
    order_id: Optional[str] = None
    ticket_id: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingStatusResponse":
        return cls(
            booking_id=booking.id,
            event_id=booking.event_id,
            booking_status=booking.booking_status,
            payment_status=booking.payment_status,
            quantity=booking.quantity,
            total_amount=booking.total_amount,
            order_id=booking.order_id,
            ticket_id=booking.ticket_id,
            created_at=booking.created_at,
            confirmed_at=booking.confirmed_at,
            expired_at=booking.expired_at,
        )


class BookingListResponse(BaseModel):
    """The caller's bookings, newest first."""

    bookings: List[BookingStatusResponse]
    count: int


class CleanupError(BaseModel):
    booking_id: UUID
    error: str


class CleanupResponse(BaseModel):
    """Result of one expiry sweep."""

    cleaned: int
    failed: int
    skipped: int = 0
    total: int
    errors: Optional[List[CleanupError]] = None
