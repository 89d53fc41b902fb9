"""
Tests for side-effect dispatch, retry and dead-lettering.
"""

import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import redis

from booking_engine.tasks import booking_tasks, notification_tasks
from booking_engine.tasks.dispatch import BookingSideEffects
from booking_engine.tasks.notification_tasks import push_dead_letter, retry_or_dead_letter


class FakeRedis:
    def __init__(self):
        self.lists = {}

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)

    def close(self):
        pass


class RetryRequested(Exception):
    pass


class FakeTask:
    name = "send_booking_confirmation"

    def __init__(self, retries):
        self.request = SimpleNamespace(retries=retries)
        self.retry_calls = []

    def retry(self, exc=None, countdown=None, max_retries=None):
        self.retry_calls.append(countdown)
        return RetryRequested(str(exc))


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(redis.Redis, "from_url", classmethod(lambda cls, url, **kwargs: client))
    return client


def test_dispatch_survives_broker_outage(monkeypatch):
    queued = []

    def broken_delay(booking_id):
        raise ConnectionError("broker down")

    monkeypatch.setattr(notification_tasks.record_booking_analytics_task, "delay", broken_delay)
    monkeypatch.setattr(notification_tasks.send_booking_confirmation_task, "delay", queued.append)

    BookingSideEffects().booking_confirmed("0f8fad5b-d9cb-469f-a165-70867728950e")

    assert queued == ["0f8fad5b-d9cb-469f-a165-70867728950e"]


def test_reservation_schedules_single_booking_expiry(monkeypatch):
    scheduled = []
    expires_at = datetime(2030, 1, 1, 12, 15, tzinfo=timezone.utc)

    def apply_async(args=None, eta=None, **kwargs):
        scheduled.append((args, eta))

    monkeypatch.setattr(booking_tasks.expire_single_booking, "apply_async", apply_async)

    BookingSideEffects().booking_reserved("0f8fad5b-d9cb-469f-a165-70867728950e", expires_at)

    assert scheduled == [(["0f8fad5b-d9cb-469f-a165-70867728950e"], expires_at)]


def test_reservation_survives_broker_outage(monkeypatch):
    def broken_apply_async(*args, **kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(booking_tasks.expire_single_booking, "apply_async", broken_apply_async)

    BookingSideEffects().booking_reserved(
        "0f8fad5b-d9cb-469f-a165-70867728950e", datetime(2030, 1, 1, tzinfo=timezone.utc)
    )


def test_failed_side_effect_is_retried_with_backoff(fake_redis):
    task = FakeTask(retries=1)

    with pytest.raises(RetryRequested):
        retry_or_dead_letter(task, "booking-1", RuntimeError("smtp down"))

    assert task.retry_calls == [2]
    assert fake_redis.lists == {}


def test_exhausted_side_effect_is_dead_lettered(fake_redis, settings):
    task = FakeTask(retries=settings.side_effect_max_retries)

    result = retry_or_dead_letter(task, "booking-1", RuntimeError("smtp down"))

    assert result["status"] == "dead_lettered"
    records = [json.loads(raw) for raw in fake_redis.lists[settings.dead_letter_key]]
    assert records[0]["task"] == "send_booking_confirmation"
    assert records[0]["booking_id"] == "booking-1"
    assert records[0]["error"] == "smtp down"


def test_dead_letter_tolerates_redis_outage(monkeypatch):
    def unavailable(cls, url, **kwargs):
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(redis.Redis, "from_url", classmethod(unavailable))

    push_dead_letter("record_booking_analytics", "booking-2", "analytics update failed")
