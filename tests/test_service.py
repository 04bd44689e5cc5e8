import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from delayed_notifier.delayed_queue import DelayedQueue
from delayed_notifier.errors import DeliveryExhaustedError, QueueStoreError
from delayed_notifier.models import DelayedNotification, InstantNotification
from delayed_notifier.persistence import AuditStore
from delayed_notifier.service import (
    LIST_OPERATION,
    SCHEDULE_OPERATION,
    SEND_NOW_OPERATION,
    NotificationService,
)


class DummySender:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send(self, notification, stop_event=None):
        if self.error:
            raise self.error
        self.sent.append(notification)


@pytest_asyncio.fixture
async def audit(tmp_path):
    store = AuditStore(str(tmp_path / "audit.db"))
    await store.init_db()
    return store


def delayed():
    return DelayedNotification(
        to="b@example.com",
        subject="Later",
        body="Soon",
        due_time=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.mark.asyncio
async def test_send_now_sends_then_records(fake_redis, audit, metrics):
    sender = DummySender()
    service = NotificationService(sender, DelayedQueue(fake_redis), audit, metrics=metrics)

    notification_id = await service.send_now(InstantNotification(to="a@example.com", subject="S", body="B"))

    assert [n.to for n in sender.sent] == ["a@example.com"]
    assert (await service.get(notification_id))["kind"] == "instant"
    assert metrics.count("success", SEND_NOW_OPERATION) == 1
    assert metrics.count("success", LIST_OPERATION) == 1


@pytest.mark.asyncio
async def test_failed_send_is_not_recorded(fake_redis, audit, metrics):
    sender = DummySender(error=DeliveryExhaustedError(4, OSError("refused")))
    service = NotificationService(sender, DelayedQueue(fake_redis), audit, metrics=metrics)

    with pytest.raises(DeliveryExhaustedError):
        await service.send_now(InstantNotification(to="a@example.com", subject="S", body="B"))

    assert await service.list_notifications() == []
    assert metrics.count("error", SEND_NOW_OPERATION) == 1


@pytest.mark.asyncio
async def test_schedule_enqueues_then_records(fake_redis, audit, metrics):
    queue = DelayedQueue(fake_redis)
    service = NotificationService(DummySender(), queue, audit, metrics=metrics)

    notification_id = await service.schedule(delayed())

    assert await service.pending() == 1
    record = await service.get(notification_id)
    assert record["kind"] == "delayed"
    assert [r["id"] for r in await service.list_notifications("b@example.com")] == [notification_id]
    assert metrics.count("success", SCHEDULE_OPERATION) == 1


@pytest.mark.asyncio
async def test_schedule_store_error_is_not_recorded(fake_redis, audit, metrics):
    fake_redis.failures["zadd"] = ConnectionError("refused")
    service = NotificationService(DummySender(), DelayedQueue(fake_redis), audit, metrics=metrics)

    with pytest.raises(QueueStoreError):
        await service.schedule(delayed())

    assert await service.list_notifications() == []
    assert metrics.count("error", SCHEDULE_OPERATION) == 1


@pytest.mark.asyncio
async def test_send_now_timeout_is_counted(fake_redis, audit, metrics):
    class SlowSender(DummySender):
        async def send(self, notification, stop_event=None):
            raise asyncio.TimeoutError()

    service = NotificationService(SlowSender(), DelayedQueue(fake_redis), audit, metrics=metrics)
    with pytest.raises(asyncio.TimeoutError):
        await service.send_now(InstantNotification(to="a@example.com", subject="S", body="B"))
    assert metrics.count("timeout", SEND_NOW_OPERATION) == 1
