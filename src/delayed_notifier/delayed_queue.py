# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Time-ordered queue of pending notifications backed by a Redis sorted set.

Each delayed notification is stored as a JSON member whose score is its
due-time in integer Unix seconds. Scheduling is a single ``ZADD`` and
finding everything due is a single ``ZRANGEBYSCORE -inf now``, so neither
operation ever scans the whole queue.

Dequeue semantics are at-least-once: :meth:`DelayedQueue.pop_due` reads the
due members and then issues a separate ``ZREM`` for exactly those members.
A crash or a concurrent reader between the two commands can hand the same
entry out twice. If a stronger guarantee is ever needed, the read and the
delete must move into one atomic server-side step (a Lua script, or a queue
service with acknowledgements).

Example:
    Scheduling and popping::

        queue = DelayedQueue.from_url("redis://localhost:6379/0", timeout=3.0)
        await queue.enqueue(DelayedNotification(to="a@example.com", subject="S", body="M",
                                                due_time="2030-01-01 09:00:00"))
        entries = await queue.pop_due()   # list of JSON strings, possibly empty
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import InvalidTimeFormatError, PayloadValidationError, QueueStoreError, QueueTimeoutError
from .logger import get_logger
from .models import DelayedNotification, build_notification, encode_entry, ensure_future
from .prometheus import Metrics, NoopMetrics

DEFAULT_QUEUE_KEY = "delayedSending"
DEFAULT_TIMEOUT = 3.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


class DelayedQueue:
    """Redis sorted-set queue addressable by due-time.

    The Redis client owns the connection pool, so one queue instance can be
    shared by the API and by concurrent worker batches.

    Attributes:
        redis: An async Redis client (``redis.asyncio.Redis`` or compatible).
        key: Sorted-set key holding the pending entries.
        timeout: Upper bound in seconds for each store round-trip.
        shutdown_timeout: Upper bound in seconds for :meth:`close`.
        metrics: Metrics sink receiving per-operation and per-command outcomes.
    """

    def __init__(
        self,
        redis: Any,
        *,
        key: str = DEFAULT_QUEUE_KEY,
        timeout: float | None = None,
        shutdown_timeout: float | None = None,
        metrics: Metrics | None = None,
        logger=None,
    ):
        self.redis = redis
        self.key = key
        self.timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout and shutdown_timeout > 0 else DEFAULT_SHUTDOWN_TIMEOUT
        )
        self.metrics = metrics or NoopMetrics()
        self.logger = logger or get_logger("DelayedQueue")

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> DelayedQueue:
        """Create a queue with a pooled ``redis.asyncio`` client for ``url``."""
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    async def _round_trip(self, name: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one store command under the per-call timeout and record its outcome."""
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(call(), timeout=self.timeout)
        except asyncio.CancelledError:
            self.metrics.inc_canceled(name)
            self.logger.warning("%s: canceled", name)
            raise
        except (asyncio.TimeoutError, RedisTimeoutError) as exc:
            self.metrics.inc_timeout(name)
            self.logger.error("%s: deadline exceeded timeout=%ss", name, self.timeout)
            raise QueueTimeoutError(f"{name}: deadline exceeded after {self.timeout}s") from exc
        except (RedisError, OSError) as exc:
            self.metrics.inc_error(name)
            self.logger.error("%s: store error=%r", name, exc)
            raise QueueStoreError(f"{name}: {exc}") from exc
        self.metrics.observe(name, start)
        self.metrics.inc_success(name)
        return result

    def _record_failure(self, operation: str, exc: BaseException) -> None:
        if isinstance(exc, QueueTimeoutError):
            self.metrics.inc_timeout(operation)
        else:
            self.metrics.inc_error(operation)

    async def enqueue(self, notification: DelayedNotification | Mapping[str, Any]) -> None:
        """Schedule a delayed notification.

        Args:
            notification: A :class:`DelayedNotification`, or raw fields that are
                validated into one.

        Raises:
            InvalidTimeFormatError: The payload carries no usable due-time.
            TimeNotInFutureError: The due-time is not after now.
            PayloadValidationError: Any other invalid field.
            QueueTimeoutError: Redis did not acknowledge within ``timeout``.
            QueueStoreError: Redis reported an error.
        """
        operation = "Enqueue"
        start = time.perf_counter()
        try:
            if isinstance(notification, Mapping):
                notification = build_notification({"kind": "delayed", **notification})
            if not isinstance(notification, DelayedNotification):
                raise InvalidTimeFormatError("Enqueue: only delayed notifications carry a due time")
            ensure_future(notification)
            member, score = encode_entry(notification)
        except PayloadValidationError as exc:
            self.metrics.inc_error(operation)
            self.logger.error("Enqueue: cannot parse notification error=%s", exc)
            raise

        try:
            await self._round_trip("ZADD", lambda: self.redis.zadd(self.key, {member: score}))
        except QueueStoreError as exc:
            self._record_failure(operation, exc)
            raise

        self.metrics.observe(operation, start)
        self.metrics.inc_success(operation)
        self.logger.info("Enqueue: scheduled notification to=%s score=%s", notification.to, score)

    async def pop_due(self) -> list[str]:
        """Remove and return every entry whose due-time has elapsed.

        The delete is best effort: if ``ZREM`` fails the members are still
        returned, so the caller never loses them, at the price of a possible
        second delivery on a later poll.

        Returns:
            Serialised entries, possibly empty, in the order Redis returned them.

        Raises:
            QueueTimeoutError: The range query timed out.
            QueueStoreError: The range query failed.
        """
        operation = "PopDue"
        start = time.perf_counter()
        now = int(time.time())
        try:
            members = await self._round_trip(
                "ZRANGEBYSCORE", lambda: self.redis.zrangebyscore(self.key, "-inf", now)
            )
        except QueueStoreError as exc:
            self._record_failure(operation, exc)
            raise

        members = list(members or [])
        if members:
            try:
                await self._round_trip("ZREM", lambda: self.redis.zrem(self.key, *members))
            except QueueStoreError as exc:
                self.logger.warning("PopDue: cannot remove entries count=%s error=%s", len(members), exc)

        self.metrics.observe(operation, start)
        self.metrics.inc_success(operation)
        return [m.decode("utf-8") if isinstance(m, bytes) else m for m in members]

    async def pending_count(self) -> int:
        """Return the number of entries waiting in the queue."""
        count = await self._round_trip("ZCARD", lambda: self.redis.zcard(self.key))
        return int(count or 0)

    async def close(self) -> None:
        """Close the Redis client within ``shutdown_timeout`` seconds.

        Raises:
            QueueTimeoutError: The client did not close in time.
            QueueStoreError: Closing failed.
        """
        operation = "Close"
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self.redis.aclose(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError as exc:
            self.metrics.inc_timeout(operation)
            self.logger.error("Close: timeout closing redis client")
            raise QueueTimeoutError("Close: timeout closing redis client") from exc
        except (RedisError, OSError) as exc:
            self.metrics.inc_error(operation)
            self.logger.error("Close: cannot close redis client error=%r", exc)
            raise QueueStoreError(f"Close: {exc}") from exc
        self.metrics.observe(operation, start)
        self.metrics.inc_success(operation)
