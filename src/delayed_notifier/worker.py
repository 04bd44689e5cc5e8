# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch worker polling the delayed queue and delivering due batches.

The worker runs one poll loop and any number of batch tasks inside a single
``asyncio.TaskGroup``:

- Every ``tick_interval`` seconds the poll loop pops all due entries.
- A non-empty result becomes a new batch task, so a slow batch never delays
  the next poll.
- A batch decodes and sends its entries one after the other. Undecodable
  entries and failed sends are logged and skipped; nothing is requeued.

Setting the stop event ends the poll loop; the task group then waits for
every batch to notice the event and return (drain). An unclassified exception
escaping a batch is fatal: the task group cancels the remaining tasks and
:meth:`DispatchWorker.run` raises :class:`FatalWorkerError`.

Delivery is best effort after dequeue. An entry whose send fails after it
was popped is dropped, as the queue hands entries out at-least-once and the
worker never returns them.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from .errors import DeliveryCanceledError, FatalWorkerError, NotifierError, PayloadValidationError
from .logger import get_logger
from .models import decode_entry
from .prometheus import Metrics, NoopMetrics

DEFAULT_TICK_INTERVAL = 1.0
WORKER_OPERATION = "Worker"


class DispatchWorker:
    """Stateless loop moving due queue entries to the SMTP client.

    Attributes:
        queue: Object exposing ``pop_due()`` and ``pending_count()``.
        sender: Object exposing ``send(notification, stop_event)``.
        tick_interval: Seconds between two polls.
        metrics: Metrics sink receiving ``Worker`` outcomes.
    """

    def __init__(
        self,
        queue: Any,
        sender: Any,
        *,
        tick_interval: float | None = None,
        metrics: Metrics | None = None,
        logger=None,
    ):
        self.queue = queue
        self.sender = sender
        self.tick_interval = tick_interval if tick_interval and tick_interval > 0 else DEFAULT_TICK_INTERVAL
        self.metrics = metrics or NoopMetrics()
        self.logger = logger or get_logger("Worker")
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Run :meth:`run` as a background task until :meth:`stop` is called."""
        self._stop.clear()
        self._task = asyncio.create_task(self.run(self._stop), name="dispatch-worker")
        self._task.add_done_callback(self._on_task_done)

    async def stop(self) -> None:
        """Signal the background worker to stop and wait for the drain.

        Raises:
            FatalWorkerError: If the worker had already stopped on a fatal error.
        """
        self._stop.set()
        task, self._task = self._task, None
        if task is not None:
            await task

    @property
    def running(self) -> bool:
        """True while the background task started by :meth:`start` is alive."""
        return self._task is not None and not self._task.done()

    @property
    def failed(self) -> bool:
        """True when the background task ended on a fatal error."""
        task = self._task
        return task is not None and task.done() and not task.cancelled() and task.exception() is not None

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Worker: background task stopped, no further deliveries error=%r", exc)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll and dispatch until ``stop_event`` is set.

        Returns only after every spawned batch has finished.

        Args:
            stop_event: Stop signal shared with every batch and every send.

        Raises:
            FatalWorkerError: A batch failed with an unclassified error. The
                original exception is chained as ``__cause__``.
        """
        stop = stop_event if stop_event is not None else asyncio.Event()
        self.logger.info("Worker: started tick_interval=%ss", self.tick_interval)
        try:
            async with asyncio.TaskGroup() as group:
                group.create_task(self._poll_loop(group, stop), name="dispatch-poll-loop")
        except ExceptionGroup as eg:
            first = eg.exceptions[0]
            self.metrics.inc_error(WORKER_OPERATION)
            self.logger.error("Worker: shutting down with error=%r", first)
            raise FatalWorkerError(f"Worker: batch failed: {first!r}") from first

        self.metrics.inc_canceled(WORKER_OPERATION)
        self.logger.info("Worker: graceful shutdown completed")

    # ---------------------------------------------------------------- poll loop
    async def _poll_loop(self, group: asyncio.TaskGroup, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.tick_interval
        while True:
            if await self._wait_for_tick(stop, next_tick - loop.time()):
                self.logger.info("Worker: stop signal received")
                return
            await self._poll_once(group, stop)
            next_tick += self.tick_interval
            if next_tick < loop.time():
                # Missed ticks are dropped rather than fired back to back.
                next_tick = loop.time() + self.tick_interval

    async def _wait_for_tick(self, stop: asyncio.Event, delay: float) -> bool:
        """Wait ``delay`` seconds; return True if the stop event fired first."""
        if stop.is_set():
            return True
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return False
        return True

    async def _poll_once(self, group: asyncio.TaskGroup, stop: asyncio.Event) -> None:
        try:
            entries = await self.queue.pop_due()
        except NotifierError as exc:
            self.metrics.inc_error(WORKER_OPERATION)
            self.logger.error("Worker: failed check queue error=%s", exc)
            return

        await self._refresh_pending()
        if not entries:
            return

        batch = list(entries)
        self.logger.info("Worker: got entries from queue count=%s", len(batch))
        group.create_task(self._run_batch(batch, stop))

    async def _refresh_pending(self) -> None:
        try:
            count = await self.queue.pending_count()
        except NotifierError as exc:
            self.logger.debug("Worker: cannot refresh pending gauge error=%s", exc)
            return
        self.metrics.set_pending(count)

    # ------------------------------------------------------------------ batches
    async def _run_batch(self, entries: list[str], stop: asyncio.Event) -> None:
        start = time.perf_counter()
        try:
            await self.process_entries(entries, stop)
        except Exception as exc:
            self.metrics.inc_error(WORKER_OPERATION)
            self.logger.error("Worker: failed process entries error=%r", exc)
            raise
        self.metrics.observe(WORKER_OPERATION, start)
        self.metrics.inc_success(WORKER_OPERATION)

    async def process_entries(self, entries: list[str], stop: asyncio.Event) -> None:
        """Decode and send ``entries`` sequentially.

        Decode and classified send failures skip the entry. A canceled send or
        a set stop event ends the batch early. Any other exception propagates.
        """
        for index, entry in enumerate(entries):
            if stop.is_set():
                self.metrics.inc_canceled(WORKER_OPERATION)
                self.logger.info("processEntries: stop signal received remaining=%s", len(entries) - index)
                return

            try:
                notification = decode_entry(entry)
            except PayloadValidationError as exc:
                self.metrics.inc_error(WORKER_OPERATION)
                self.logger.error("processEntries: failed to decode entry=%r error=%s", entry, exc)
                continue

            try:
                await self.sender.send(notification, stop)
            except DeliveryCanceledError:
                self.metrics.inc_canceled(WORKER_OPERATION)
                self.logger.warning("processEntries: send canceled to=%s", notification.to)
                return
            except NotifierError as exc:
                self.metrics.inc_error(WORKER_OPERATION)
                self.logger.error("processEntries: failed to send message to=%s error=%s", notification.to, exc)
                continue

            self.logger.info("Worker: successfully sent delayed message to=%s", notification.to)
