"""
Dispatch of booking lifecycle side effects onto the task queue.
"""

import logging
from datetime import datetime
from uuid import UUID

logger = logging.getLogger(__name__)


class BookingSideEffects:
    """Queue follow-up work for newly reserved and newly confirmed bookings.

    Enqueue failures are logged and swallowed: a booking must never look
    failed because the broker is down. The periodic sweep still expires
    holds whose scheduled expiry was never queued.
    """

    def booking_reserved(self, booking_id: UUID, expires_at: datetime) -> None:
        from .booking_tasks import schedule_booking_expiration

        try:
            schedule_booking_expiration(booking_id, expires_at)
        except Exception as e:
            logger.warning(f"Failed to schedule expiration for booking {booking_id}: {e}")

    def booking_confirmed(self, booking_id: UUID) -> None:
        from .notification_tasks import (
            record_booking_analytics_task,
            send_booking_confirmation_task,
        )

        try:
            record_booking_analytics_task.delay(str(booking_id))
            logger.info(f"Analytics update queued for booking {booking_id}")
        except Exception as e:
            logger.warning(f"Failed to queue analytics update for booking {booking_id}: {e}")

        try:
            send_booking_confirmation_task.delay(str(booking_id))
            logger.info(f"Booking confirmation notification queued for {booking_id}")
        except Exception as e:
            logger.warning(f"Failed to queue booking confirmation notification: {e}")
