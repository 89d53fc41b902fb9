"""
Celery tasks for post-confirmation side effects: analytics and email.

Both are retried with exponential backoff; once retries run out the job is
parked on a Redis dead-letter list instead of being dropped silently.
"""

import json
import logging
from typing import Any, Dict
from uuid import UUID

import redis

from .celery_app import celery_app, run_async
from ..config import get_settings
from ..database import task_session
from ..models.base import utcnow
from ..services.analytics_service import AnalyticsResult, AnalyticsService
from ..services.notification_service import NotificationResult, NotificationService

logger = logging.getLogger(__name__)


class SideEffectFailed(Exception):
    """The side effect reported a retryable failure."""


def push_dead_letter(task_name: str, booking_id: str, error: str) -> None:
    """Record an exhausted side-effect job for manual follow-up."""
    settings = get_settings()
    record = {
        "task": task_name,
        "booking_id": booking_id,
        "error": error,
        "failed_at": utcnow().isoformat(),
    }
    try:
        client = redis.Redis.from_url(settings.redis_url)
        try:
            client.rpush(settings.dead_letter_key, json.dumps(record))
        finally:
            client.close()
        logger.error(f"Moved {task_name} for booking {booking_id} to dead letter: {error}")
    except redis.RedisError as e:
        logger.critical(
            f"Could not dead-letter {task_name} for booking {booking_id} ({error}): {e}"
        )


def retry_or_dead_letter(task, booking_id: str, exc: Exception) -> Dict[str, Any]:
    max_retries = get_settings().side_effect_max_retries
    if task.request.retries < max_retries:
        countdown = 2 ** task.request.retries
        logger.warning(
            f"{task.name} failed for booking {booking_id}, retrying in {countdown}s: {exc}"
        )
        raise task.retry(exc=exc, countdown=countdown, max_retries=max_retries)

    push_dead_letter(task.name, booking_id, str(exc))
    return {"booking_id": booking_id, "status": "dead_lettered", "error": str(exc)}


@celery_app.task(bind=True, name="record_booking_analytics")
def record_booking_analytics_task(self, booking_id: str):
    """
    Count a confirmed booking in host, event and per-show analytics.

    Args:
        booking_id: ID of the confirmed booking
    """

    async def _record() -> AnalyticsResult:
        async with task_session() as session:
            return await AnalyticsService(session).record_booking(UUID(booking_id))

    try:
        result = run_async(_record())
        if result == AnalyticsResult.FAILED:
            raise SideEffectFailed("analytics update failed")
    except Exception as e:
        return retry_or_dead_letter(self, booking_id, e)

    logger.info(f"Analytics for booking {booking_id}: {result.value}")
    return {"booking_id": booking_id, "status": result.value}


@celery_app.task(bind=True, name="send_booking_confirmation")
def send_booking_confirmation_task(self, booking_id: str):
    """
    Task to send the booking confirmation email.

    Args:
        booking_id: ID of the confirmed booking
    """

    async def _send() -> NotificationResult:
        async with task_session() as session:
            return await NotificationService(session).send_booking_confirmation(UUID(booking_id))

    try:
        result = run_async(_send())
        if result == NotificationResult.FAILED:
            raise SideEffectFailed("confirmation email could not be delivered")
    except Exception as e:
        return retry_or_dead_letter(self, booking_id, e)

    logger.info(f"Confirmation email for booking {booking_id}: {result.value}")
    return {"booking_id": booking_id, "status": result.value}
