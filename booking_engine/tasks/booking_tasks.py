"""
Celery tasks for booking expiration and payment reconciliation.
"""

import logging
from datetime import datetime
from uuid import UUID

from .celery_app import celery_app, run_async
from ..database import task_session
from ..services.expiry_service import ExpiryService
from ..services.payment_service import PaymentService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="expire_stale_bookings")
def expire_stale_bookings(self):
    """
    Periodic task that expires one batch of abandoned PENDING bookings.

    Runs every minute from beat; anything beyond the batch size waits for
    the next tick.
    """

    async def _sweep():
        async with task_session() as session:
            return await ExpiryService(session).expire_stale_bookings()

    logger.info("Starting booking expiration sweep")
    sweep = run_async(_sweep())
    logger.info(
        f"Expiration sweep done: {sweep.cleaned} cleaned, {sweep.failed} failed, {sweep.skipped} skipped"
    )
    return {
        "cleaned": sweep.cleaned,
        "failed": sweep.failed,
        "skipped": sweep.skipped,
        "total": sweep.total,
        "errors": sweep.errors,
    }


@celery_app.task(bind=True, name="expire_single_booking")
def expire_single_booking(self, booking_id: str):
    """
    Expire one booking if it is still PENDING past the hold timeout.

    Args:
        booking_id: ID of the booking to expire
    """

    async def _expire():
        async with task_session() as session:
            return await ExpiryService(session).expire_booking(UUID(booking_id))

    expired = run_async(_expire())
    if not expired:
        logger.info(f"Booking {booking_id} was not expired (already resolved or still fresh)")
    return {"booking_id": booking_id, "expired": expired}


@celery_app.task(bind=True, name="reconcile_stale_orders")
def reconcile_stale_orders(self):
    """Ask the gateway about orders that have been INITIATED for too long."""

    async def _reconcile():
        async with task_session() as session:
            return await PaymentService(session).reconcile_stale_orders()

    report = run_async(_reconcile())
    return {"checked": report.checked, "updated": report.updated}


def schedule_booking_expiration(booking_id: UUID, expires_at: datetime):
    """
    Schedule a booking to be expired when its hold runs out.

    Args:
        booking_id: ID of the booking to expire
        expires_at: When the hold ends
    """
    expire_single_booking.apply_async(args=[str(booking_id)], eta=expires_at)
    logger.info(f"Scheduled expiration for booking {booking_id} at {expires_at}")
