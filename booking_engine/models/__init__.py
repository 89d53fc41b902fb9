"""
Database models for the booking engine.
"""

from .base import Base
from .event import Event, TicketType
from .booking import (
    Booking,
    BookingStatus,
    EventBooking,
    InventoryMode,
    PaymentStatus,
)
from .analytics import EventAnalytics, EventShowAnalytics, HostAnalytics

__all__ = [
    "Base",
    "Event",
    "TicketType",
    "Booking",
    "BookingStatus",
    "EventBooking",
    "InventoryMode",
    "PaymentStatus",
    "HostAnalytics",
    "EventAnalytics",
    "EventShowAnalytics",
]
