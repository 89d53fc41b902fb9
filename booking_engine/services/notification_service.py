"""
Notification service for booking confirmation emails.

Each confirmed booking gets at most one email. Senders coordinate through
lock markers stored on the booking row, so concurrent or redelivered tasks
never mail the same ticket twice.
"""

import enum
import html
import logging
import smtplib
import uuid
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models.base import utcnow
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.event import Event
from .booking_state import load_booking, transition_booking

logger = logging.getLogger(__name__)


class NotificationResult(str, enum.Enum):
    SENT = "SENT"
    ALREADY_SENT = "ALREADY_SENT"
    LOCKED = "LOCKED"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    NO_RECIPIENT = "NO_RECIPIENT"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    FAILED = "FAILED"


class NotificationService:
    """Service for handling email notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settings = get_settings()

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_server and self.settings.smtp_username)

    async def send_booking_confirmation(self, booking_id: UUID) -> NotificationResult:
        """
        Send the confirmation email for a confirmed booking.

        Args:
            booking_id: ID of the confirmed booking

        Returns:
            NotificationResult: FAILED is the only outcome worth retrying
        """
        if not self.is_configured:
            logger.warning("Email configuration not available, skipping confirmation email")
            return NotificationResult.NOT_CONFIGURED

        lock_id = uuid.uuid4().hex
        async with self.session.begin():
            booking = await load_booking(self.session, booking_id)
            if booking is None or not booking.is_confirmed:
                logger.warning(f"Booking {booking_id} is not confirmed, no email sent")
                return NotificationResult.NOT_CONFIRMED
            if booking.confirmation_email_sent_at is not None:
                logger.info(f"Confirmation email already sent for booking {booking_id}")
                return NotificationResult.ALREADY_SENT

            if not await self._acquire_lock(booking_id, lock_id):
                logger.info(f"Confirmation email for booking {booking_id} is being sent elsewhere")
                return NotificationResult.LOCKED

            event = await self.session.get(Event, booking.event_id)
            template_data = self._template_data(booking, event)

        if not booking.user_email:
            await self._release_lock(booking_id, lock_id, error="No recipient email on booking")
            logger.warning(f"Booking {booking_id} has no recipient email")
            return NotificationResult.NO_RECIPIENT

        try:
            await self._send_email(
                to_email=booking.user_email,
                subject=f"Booking Confirmed - {template_data['event_name']}",
                html_content=self._render_booking_confirmation_template(template_data),
                text_content=self._render_booking_confirmation_text(template_data),
            )
        except Exception as e:
            logger.error(f"Failed to send confirmation email for booking {booking_id}: {e}")
            await self._release_lock(booking_id, lock_id, error=str(e)[:500])
            return NotificationResult.FAILED

        await self._mark_sent(booking_id, lock_id)
        logger.info(f"Booking confirmation sent for booking {booking_id}")
        return NotificationResult.SENT

    async def _acquire_lock(self, booking_id: UUID, lock_id: str) -> bool:
        stale_before = utcnow() - timedelta(minutes=self.settings.email_lock_timeout_minutes)
        return await transition_booking(
            self.session,
            booking_id,
            {
                "confirmation_email_lock_id": lock_id,
                "confirmation_email_locked_at": utcnow(),
            },
            expected_statuses=(BookingStatus.CONFIRMED,),
            extra_criteria=(
                Booking.payment_status == PaymentStatus.SUCCESS,
                Booking.confirmation_email_sent_at.is_(None),
                or_(
                    Booking.confirmation_email_lock_id.is_(None),
                    Booking.confirmation_email_locked_at < stale_before,
                ),
            ),
        )

    async def _release_lock(self, booking_id: UUID, lock_id: str, error: Optional[str] = None) -> None:
        async with self.session.begin():
            await transition_booking(
                self.session,
                booking_id,
                {
                    "confirmation_email_lock_id": None,
                    "confirmation_email_locked_at": None,
                    "confirmation_email_last_error": error,
                },
                expected_statuses=(BookingStatus.CONFIRMED,),
                extra_criteria=(Booking.confirmation_email_lock_id == lock_id,),
            )

    async def _mark_sent(self, booking_id: UUID, lock_id: str) -> None:
        async with self.session.begin():
            applied = await transition_booking(
                self.session,
                booking_id,
                {
                    "confirmation_email_sent_at": utcnow(),
                    "confirmation_email_lock_id": None,
                    "confirmation_email_locked_at": None,
                    "confirmation_email_last_error": None,
                },
                expected_statuses=(BookingStatus.CONFIRMED,),
                extra_criteria=(Booking.confirmation_email_lock_id == lock_id,),
            )
        if not applied:
            logger.warning(f"Lock for booking {booking_id} was taken over before the send was recorded")

    def _template_data(self, booking: Booking, event: Optional[Event]) -> Dict[str, str]:
        show = " ".join(part for part in (booking.show_date, booking.show_time) if part)
        if not show and event is not None and event.event_date is not None:
            show = event.event_date.strftime("%B %d, %Y at %I:%M %p")
        return {
            "user_name": booking.user_name or "there",
            "event_name": event.name if event else "your event",
            "venue": booking.venue_name or (event.venue if event else "") or "",
            "show": show,
            "quantity": str(booking.quantity),
            "total_amount": f"{booking.total_amount:.2f}",
            "ticket_id": booking.ticket_id or "",
            "booking_id": str(booking.id),
            "booking_url": f"{self.settings.app_url.rstrip('/')}/bookings/{booking.id}",
        }

    async def _send_email(self, to_email: str, subject: str, html_content: str, text_content: str) -> None:
        """
        Send email using SMTP.

        Raises:
            smtplib.SMTPException, OSError: The message could not be delivered
        """
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.from_email or self.settings.smtp_username
        msg["To"] = to_email

        msg.attach(MIMEText(text_content, "plain"))
        msg.attach(MIMEText(html_content, "html"))

        with smtplib.SMTP(self.settings.smtp_server, self.settings.smtp_port) as server:
            if self.settings.smtp_use_tls:
                server.starttls()
            server.login(self.settings.smtp_username, self.settings.smtp_password or "")
            server.send_message(msg)

        logger.info(f"Email sent successfully to {to_email}")

    def _render_booking_confirmation_template(self, data: Dict[str, str]) -> str:
        """Render HTML template for booking confirmation."""
        data = {key: html.escape(value) for key, value in data.items()}
        return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <title>Booking Confirmed</title>
            <style>
                body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
                .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
                .header {{ background-color: #4CAF50; color: white; padding: 20px; text-align: center; }}
                .ticket {{ background-color: white; padding: 15px; margin: 15px 0; border-radius: 5px; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header"><h1>You're going!</h1></div>
                <p>Hi {data['user_name']},</p>
                <p>Your payment went through and your tickets are confirmed.</p>
                <div class="ticket">
                    <p><strong>Ticket:</strong> {data['ticket_id']}</p>
                    <p><strong>Event:</strong> {data['event_name']}</p>
                    <p><strong>Venue:</strong> {data['venue']}</p>
                    <p><strong>Show:</strong> {data['show']}</p>
                    <p><strong>Quantity:</strong> {data['quantity']} ticket(s)</p>
                    <p><strong>Total paid:</strong> {data['total_amount']}</p>
                </div>
                <p><a href="{data['booking_url']}">View your booking</a></p>
            </div>
        </body>
        </html>
        """

    def _render_booking_confirmation_text(self, data: Dict[str, str]) -> str:
        return f"""
        BOOKING CONFIRMED

        Hi {data['user_name']},

        Your payment went through and your tickets are confirmed.

        Ticket: {data['ticket_id']}
        Event: {data['event_name']}
        Venue: {data['venue']}
        Show: {data['show']}
        Quantity: {data['quantity']} ticket(s)
        Total paid: {data['total_amount']}

        View your booking: {data['booking_url']}
        """
