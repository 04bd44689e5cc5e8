import asyncio

import pytest


class FakeRedis:
    """Dict-backed stand-in for the sorted-set commands of ``redis.asyncio.Redis``."""

    def __init__(self):
        self.sets = {}
        self.failures = {}
        self.delays = {}
        self.calls = []
        self.closed = False

    async def _maybe_fail(self, command):
        self.calls.append(command)
        if command in self.delays:
            await asyncio.sleep(self.delays[command])
        if command in self.failures:
            raise self.failures[command]

    async def zadd(self, key, mapping):
        await self._maybe_fail("zadd")
        zset = self.sets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrangebyscore(self, key, low, high):
        await self._maybe_fail("zrangebyscore")
        low = float(low)
        high = float(high)
        zset = self.sets.get(key, {})
        return [m for m, s in sorted(zset.items(), key=lambda item: (item[1], item[0])) if low <= s <= high]

    async def zrem(self, key, *members):
        await self._maybe_fail("zrem")
        zset = self.sets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zcard(self, key):
        await self._maybe_fail("zcard")
        return len(self.sets.get(key, {}))

    async def aclose(self):
        await self._maybe_fail("aclose")
        self.closed = True


class DummyMetrics:
    """Records every call as ``(method, operation)``."""

    def __init__(self):
        self.events = []
        self.pending = None

    def inc_success(self, operation):
        self.events.append(("success", operation))

    def inc_error(self, operation):
        self.events.append(("error", operation))

    def inc_canceled(self, operation):
        self.events.append(("canceled", operation))

    def inc_timeout(self, operation):
        self.events.append(("timeout", operation))

    def observe(self, operation, start):
        self.events.append(("observe", operation))

    def set_pending(self, value):
        self.pending = value

    def count(self, kind, operation):
        return self.events.count((kind, operation))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def metrics():
    return DummyMetrics()
