"""
Celery application configuration for background tasks.
"""

import asyncio
from typing import Any, Coroutine

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from ..config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "booking_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "booking_engine.tasks.booking_tasks",
        "booking_engine.tasks.notification_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Periodic tasks configuration
celery_app.conf.beat_schedule = {
    "expire-stale-bookings": {
        "task": "expire_stale_bookings",
        "schedule": 60.0,
    },
    "reconcile-stale-orders": {
        "task": "reconcile_stale_orders",
        "schedule": 300.0,
    },
}


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    from ..utils.logging_config import setup_logging
    setup_logging()


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine to completion on a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        asyncio.set_event_loop(None)
        loop.close()
