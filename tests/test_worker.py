import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from delayed_notifier.delayed_queue import DEFAULT_QUEUE_KEY, DelayedQueue
from delayed_notifier.errors import (
    DeliveryCanceledError,
    DeliveryExhaustedError,
    FatalWorkerError,
    QueueStoreError,
)
from delayed_notifier.models import DelayedNotification, encode_entry
from delayed_notifier.smtp_client import SMTPClient, SMTPConfig
from delayed_notifier.worker import WORKER_OPERATION, DispatchWorker


class DummySender:
    def __init__(self, fail_for=(), crash_for=(), block=False):
        self.sent = []
        self.fail_for = set(fail_for)
        self.crash_for = set(crash_for)
        self.block = block
        self.started = asyncio.Event()

    async def send(self, notification, stop_event=None):
        self.started.set()
        if self.block:
            await stop_event.wait()
            raise DeliveryCanceledError("canceled during retry pause")
        if notification.to in self.crash_for:
            raise RuntimeError("boom")
        if notification.to in self.fail_for:
            raise DeliveryExhaustedError(3, OSError("refused"))
        self.sent.append(notification.to)


class FailingQueue:
    def __init__(self):
        self.polls = 0

    async def pop_due(self):
        self.polls += 1
        raise QueueStoreError("PopDue: refused")

    async def pending_count(self):
        raise QueueStoreError("ZCARD: refused")


def seed(fake_redis, to, seconds_from_now=-1):
    due = datetime.now(timezone.utc) + timedelta(seconds=seconds_from_now)
    member, score = encode_entry(DelayedNotification(to=to, subject="S", body="B", due_time=due))
    fake_redis.sets.setdefault(DEFAULT_QUEUE_KEY, {})[member] = score
    return member


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_delivers_due_entries_and_updates_pending(fake_redis, metrics):
    seed(fake_redis, "a@example.com")
    seed(fake_redis, "b@example.com")
    seed(fake_redis, "later@example.com", 3600)
    sender = DummySender()
    worker = DispatchWorker(DelayedQueue(fake_redis), sender, tick_interval=0.01, metrics=metrics)

    await worker.start()
    await wait_until(lambda: len(sender.sent) == 2)
    await worker.stop()

    assert sorted(sender.sent) == ["a@example.com", "b@example.com"]
    assert metrics.pending == 1
    assert metrics.count("success", WORKER_OPERATION) >= 1
    assert metrics.count("canceled", WORKER_OPERATION) >= 1
    assert not worker.running


@pytest.mark.asyncio
async def test_delayed_send_waits_for_due_time(fake_redis):
    queue = DelayedQueue(fake_redis)
    sender = DummySender()
    await queue.enqueue(
        DelayedNotification(
            to="a@example.com",
            subject="S",
            body="B",
            due_time=datetime.now(timezone.utc).replace(microsecond=0) + timedelta(seconds=2),
        )
    )
    worker = DispatchWorker(queue, sender, tick_interval=0.05)

    await worker.start()
    await asyncio.sleep(0.5)
    assert sender.sent == []
    await wait_until(lambda: sender.sent == ["a@example.com"], timeout=4)
    await worker.stop()
    assert await queue.pending_count() == 0


@pytest.mark.asyncio
async def test_empty_polls_send_nothing(fake_redis):
    sender = DummySender()
    worker = DispatchWorker(DelayedQueue(fake_redis), sender, tick_interval=0.01)
    await worker.start()
    await asyncio.sleep(0.1)
    await worker.stop()
    assert sender.sent == []
    assert fake_redis.calls.count("zrangebyscore") >= 2
    assert "zrem" not in fake_redis.calls


@pytest.mark.asyncio
async def test_stop_drains_in_flight_batch(fake_redis, metrics):
    seed(fake_redis, "a@example.com")
    seed(fake_redis, "b@example.com")
    sender = DummySender(block=True)
    worker = DispatchWorker(DelayedQueue(fake_redis), sender, tick_interval=0.01, metrics=metrics)

    await worker.start()
    await asyncio.wait_for(sender.started.wait(), timeout=2)
    await asyncio.wait_for(worker.stop(), timeout=2)

    assert sender.sent == []
    assert not worker.running
    assert metrics.count("canceled", WORKER_OPERATION) >= 2


@pytest.mark.asyncio
async def test_undecodable_and_failed_entries_are_skipped(metrics):
    sender = DummySender(fail_for={"bad@example.com"})
    worker = DispatchWorker(object(), sender, metrics=metrics)
    good = encode_entry(DelayedNotification(to="good@example.com", subject="S", body="B", due_time=1))[0]
    failing = encode_entry(DelayedNotification(to="bad@example.com", subject="S", body="B", due_time=1))[0]

    await worker.process_entries(["{not json", failing, good], asyncio.Event())

    assert sender.sent == ["good@example.com"]
    assert metrics.count("error", WORKER_OPERATION) == 2


@pytest.mark.asyncio
async def test_process_entries_stops_when_signal_set():
    sender = DummySender()
    worker = DispatchWorker(object(), sender)
    entry = encode_entry(DelayedNotification(to="a@example.com", subject="S", body="B", due_time=1))[0]
    stop = asyncio.Event()
    stop.set()
    await worker.process_entries([entry], stop)
    assert sender.sent == []


@pytest.mark.asyncio
async def test_queue_errors_do_not_stop_the_worker(metrics):
    queue = FailingQueue()
    worker = DispatchWorker(queue, DummySender(), tick_interval=0.01, metrics=metrics)
    stop = asyncio.Event()
    task = asyncio.create_task(worker.run(stop))
    await wait_until(lambda: queue.polls >= 3)
    stop.set()
    await asyncio.wait_for(task, timeout=2)
    assert metrics.count("error", WORKER_OPERATION) >= 3


@pytest.mark.asyncio
async def test_unexpected_batch_error_is_fatal(fake_redis, metrics):
    seed(fake_redis, "crash@example.com")
    sender = DummySender(crash_for={"crash@example.com"})
    worker = DispatchWorker(DelayedQueue(fake_redis), sender, tick_interval=0.01, metrics=metrics)

    with pytest.raises(FatalWorkerError) as excinfo:
        await asyncio.wait_for(worker.run(asyncio.Event()), timeout=2)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert metrics.count("error", WORKER_OPERATION) >= 1


@pytest.mark.asyncio
async def test_stop_reraises_fatal_error_from_background_task(fake_redis):
    seed(fake_redis, "crash@example.com")
    worker = DispatchWorker(DelayedQueue(fake_redis), DummySender(crash_for={"crash@example.com"}), tick_interval=0.01)
    await worker.start()
    await wait_until(lambda: not worker.running)
    with pytest.raises(FatalWorkerError):
        await worker.stop()


@pytest.mark.asyncio
async def test_run_returns_immediately_when_already_stopped(fake_redis):
    stop = asyncio.Event()
    stop.set()
    worker = DispatchWorker(DelayedQueue(fake_redis), DummySender(), tick_interval=10)
    await asyncio.wait_for(worker.run(stop), timeout=1)
    assert fake_redis.calls == []


def raw_entry(**fields):
    data = {"kind": "delayed", "time": "1", "to": "a@example.com", "subject": "S", "body": "B"}
    data.update(fields)
    return json.dumps(data)


@pytest.mark.asyncio
async def test_malformed_time_and_header_breaking_entries_are_skipped(metrics):
    sender = DummySender()
    worker = DispatchWorker(object(), sender, metrics=metrics)
    good = raw_entry(to="good@example.com")

    await worker.process_entries(
        [raw_entry(time="--5"), raw_entry(time="²"), raw_entry(subject="Hi\nthere"), good],
        asyncio.Event(),
    )

    assert sender.sent == ["good@example.com"]
    assert metrics.count("error", WORKER_OPERATION) == 3


@pytest.mark.asyncio
async def test_stored_multiline_subject_does_not_stop_real_delivery(fake_redis, monkeypatch):
    delivered = []

    class RecordingSMTP:
        def __init__(self, **kwargs):
            pass

        async def connect(self):
            pass

        async def send_message(self, message):
            delivered.append(str(message["To"]))

        async def quit(self):
            pass

    monkeypatch.setattr("delayed_notifier.smtp_client.aiosmtplib.SMTP", RecordingSMTP)
    fake_redis.sets[DEFAULT_QUEUE_KEY] = {
        raw_entry(subject="Hi\nthere", to="bad@example.com"): 1,
        raw_entry(to="good@example.com"): 2,
    }
    sender = SMTPClient(SMTPConfig(sender_email="noreply@example.com", max_retries=0))
    worker = DispatchWorker(DelayedQueue(fake_redis), sender, tick_interval=0.01)

    await worker.start()
    await wait_until(lambda: delivered == ["good@example.com"])
    assert worker.running
    await worker.stop()


@pytest.mark.asyncio
async def test_failed_flag_set_after_fatal_stop(fake_redis):
    seed(fake_redis, "crash@example.com")
    worker = DispatchWorker(DelayedQueue(fake_redis), DummySender(crash_for={"crash@example.com"}), tick_interval=0.01)
    assert not worker.failed
    await worker.start()
    await wait_until(lambda: worker.failed)
    assert not worker.running
    with pytest.raises(FatalWorkerError):
        await worker.stop()
    assert not worker.failed
