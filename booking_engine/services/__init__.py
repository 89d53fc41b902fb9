"""Business logic services for the booking engine."""

from .booking_service import BookingService
from .payment_service import PaymentService
from .expiry_service import ExpiryService
from .analytics_service import AnalyticsService
from .notification_service import NotificationService

__all__ = ["BookingService", "PaymentService", "ExpiryService", "AnalyticsService", "NotificationService"]
