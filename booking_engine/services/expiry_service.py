"""
Expiry sweeper for abandoned PENDING bookings.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models.base import as_utc, utcnow
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..utils.logging_config import log_business_event, log_performance
from ..utils.retry import retry_on_concurrency_error
from .booking_state import load_booking, transition_booking
from .inventory import release_reservation

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    cleaned: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.cleaned + self.failed + self.skipped


class ExpiryService:
    """Expires stale PENDING bookings and gives their inventory back."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settings = get_settings()

    def stale_cutoff(self, threshold_minutes: Optional[int] = None) -> datetime:
        minutes = threshold_minutes or self.settings.booking_hold_timeout_minutes
        return utcnow() - timedelta(minutes=minutes)

    async def expire_stale_bookings(
        self,
        threshold_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> SweepResult:
        """
        Expire one batch of PENDING bookings older than the hold timeout.

        Each booking is handled in its own transaction; a failure is recorded
        and the sweep moves on. Whatever does not fit in the batch is left for
        the next run.
        """
        started = time.time()
        cutoff = self.stale_cutoff(threshold_minutes)
        limit = batch_size or self.settings.expiry_batch_size

        async with self.session.begin():
            result = await self.session.execute(
                select(Booking.id)
                .where(
                    Booking.booking_status == BookingStatus.PENDING,
                    Booking.created_at < cutoff,
                )
                .order_by(Booking.created_at)
                .limit(limit)
            )
            booking_ids = list(result.scalars())

        sweep = SweepResult()
        if not booking_ids:
            logger.debug("No stale bookings to expire")
            return sweep

        logger.info(f"Found {len(booking_ids)} stale pending bookings")

        for booking_id in booking_ids:
            try:
                if await self.expire_booking(booking_id, cutoff=cutoff):
                    sweep.cleaned += 1
                else:
                    sweep.skipped += 1
            except Exception as e:
                sweep.failed += 1
                sweep.errors.append({"booking_id": str(booking_id), "error": str(e)})
                logger.exception(f"Failed to expire booking {booking_id}")

        log_performance(
            "expire_stale_bookings",
            time.time() - started,
            cleaned=sweep.cleaned,
            failed=sweep.failed,
            skipped=sweep.skipped,
        )
        return sweep

    @retry_on_concurrency_error(max_attempts=3, base_delay=0.1, max_delay=1.0)
    async def expire_booking(self, booking_id: UUID, cutoff: Optional[datetime] = None) -> bool:
        """
        Expire a single booking if it is still PENDING and older than ``cutoff``.

        Returns False when another process resolved the booking first.
        """
        cutoff = cutoff or self.stale_cutoff()

        async with self.session.begin():
            booking = await load_booking(self.session, booking_id)
            if booking is None or not booking.is_pending:
                return False
            if as_utc(booking.created_at) >= cutoff:
                return False

            applied = await transition_booking(
                self.session,
                booking.id,
                {
                    "booking_status": BookingStatus.EXPIRED,
                    "payment_status": PaymentStatus.FAILED,
                    "expired_at": utcnow(),
                },
            )
            if not applied:
                return False

            released = await release_reservation(self.session, booking)

        logger.info(f"Expired booking {booking_id} (inventory released: {released})")
        log_business_event(
            "booking_expired",
            {"booking_id": str(booking_id), "event_id": str(booking.event_id), "released": released},
            user_id=booking.user_id,
        )
        return True
