# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Notification intake: immediate sends, scheduling and audit lookups.

``NotificationService`` is what the HTTP API and the CLI talk to. It sends
instant notifications through the SMTP client, schedules delayed ones in the
delayed queue, and records every accepted notification in the audit store
once the send or the enqueue has succeeded.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from .errors import DeliveryCanceledError, NotifierError
from .logger import get_logger
from .models import DelayedNotification, InstantNotification
from .prometheus import Metrics, NoopMetrics

SEND_NOW_OPERATION = "SendNotification"
SCHEDULE_OPERATION = "SendNotificationViaTime"
LIST_OPERATION = "ListNotification"


class NotificationService:
    """Coordinate the SMTP client, the delayed queue and the audit store."""

    def __init__(self, sender: Any, queue: Any, audit: Any, *, metrics: Metrics | None = None, logger=None):
        self.sender = sender
        self.queue = queue
        self.audit = audit
        self.metrics = metrics or NoopMetrics()
        self.logger = logger or get_logger("NotificationService")

    async def _observed(self, operation: str, call):
        start = time.perf_counter()
        try:
            result = await call()
        except DeliveryCanceledError:
            self.metrics.inc_canceled(operation)
            raise
        except asyncio.TimeoutError:
            self.metrics.inc_timeout(operation)
            raise
        except NotifierError:
            self.metrics.inc_error(operation)
            raise
        self.metrics.observe(operation, start)
        self.metrics.inc_success(operation)
        return result

    async def send_now(self, notification: InstantNotification, stop_event: asyncio.Event | None = None) -> int:
        """Deliver ``notification`` now and record it; return the audit id."""

        async def _send() -> int:
            await self.sender.send(notification, stop_event)
            notification_id = await self.audit.save(notification)
            self.logger.info("SendNotification: sent and recorded id=%s to=%s", notification_id, notification.to)
            return notification_id

        return await self._observed(SEND_NOW_OPERATION, _send)

    async def schedule(self, notification: DelayedNotification) -> int:
        """Enqueue ``notification`` for its due-time and record it; return the audit id."""

        async def _schedule() -> int:
            await self.queue.enqueue(notification)
            notification_id = await self.audit.save(notification)
            self.logger.info(
                "SendNotificationViaTime: scheduled and recorded id=%s to=%s due=%s",
                notification_id,
                notification.to,
                notification.due_time.isoformat(),
            )
            return notification_id

        return await self._observed(SCHEDULE_OPERATION, _schedule)

    async def get(self, notification_id: int) -> dict[str, Any] | None:
        """Return the audit record for ``notification_id``, or None."""
        return await self._observed(LIST_OPERATION, lambda: self.audit.fetch_by_id(notification_id))

    async def list_notifications(self, to: str | None = None) -> list[dict[str, Any]]:
        """Return audit records, optionally only those addressed to ``to``."""
        if to:
            return await self._observed(LIST_OPERATION, lambda: self.audit.fetch_by_recipient(to))
        return await self._observed(LIST_OPERATION, self.audit.fetch_all)

    async def pending(self) -> int:
        """Return the number of notifications waiting in the delayed queue."""
        return await self.queue.pending_count()
