import pytest

from delayed_notifier.models import DelayedNotification, InstantNotification
from delayed_notifier.persistence import AuditStore


@pytest.mark.asyncio
async def test_save_and_fetch_records(tmp_path):
    store = AuditStore(str(tmp_path / "audit.db"))
    await store.init_db()
    await store.init_db()

    instant_id = await store.save(InstantNotification(to="a@example.com", subject="Hi", body="Now"))
    delayed = DelayedNotification(to="b@example.com", subject="Later", body="Soon", due_time="2030-01-01 09:00:00")
    delayed_id = await store.save(delayed)

    assert delayed_id == instant_id + 1

    record = await store.fetch_by_id(instant_id)
    assert record["kind"] == "instant"
    assert record["due_ts"] is None
    assert record["to"] == "a@example.com"
    assert record["created_at"]

    record = await store.fetch_by_id(delayed_id)
    assert record["kind"] == "delayed"
    assert record["due_ts"] == delayed.score
    assert record["body"] == "Soon"

    assert await store.fetch_by_id(999) is None


@pytest.mark.asyncio
async def test_fetch_by_recipient_and_all(tmp_path):
    store = AuditStore(str(tmp_path / "audit.db"))
    await store.init_db()
    for to in ("a@example.com", "b@example.com", "a@example.com"):
        await store.save(InstantNotification(to=to, subject="S", body="B"))

    by_recipient = await store.fetch_by_recipient("a@example.com")
    assert [r["id"] for r in by_recipient] == [1, 3]
    assert len(await store.fetch_all()) == 3
    assert await store.fetch_by_recipient("nobody@example.com") == []
