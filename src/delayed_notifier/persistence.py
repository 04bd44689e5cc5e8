# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed audit store for accepted notifications.

Every notification accepted by the service (sent immediately or scheduled)
is recorded here once, so operators can look up what was submitted. The
store is a record of intake, not of delivery: the delayed queue owns the
pending work.

The layer uses aiosqlite, supporting both file-based databases and
in-memory databases for testing.

Example:
    Basic usage::

        audit = AuditStore("/data/notifications.db")
        await audit.init_db()
        notification_id = await audit.save(notification)
        record = await audit.fetch_by_id(notification_id)
"""

from __future__ import annotations

from typing import Any

import aiosqlite

from .models import DelayedNotification, InstantNotification


class AuditStore:
    """Async SQLite audit log of notifications.

    Each operation opens and closes its own connection, making the store
    safe for concurrent use.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: str = "/data/notifications.db"):
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the schema. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    due_ts INTEGER,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON notifications(recipient)"
            )
            await db.commit()

    async def save(self, notification: InstantNotification | DelayedNotification) -> int:
        """Record ``notification`` and return its id."""
        due_ts = notification.score if isinstance(notification, DelayedNotification) else None
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO notifications (kind, due_ts, recipient, subject, body)
                VALUES (?, ?, ?, ?, ?)
                """,
                (notification.kind, due_ts, notification.to, notification.subject, notification.body),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def fetch_by_id(self, notification_id: int) -> dict[str, Any] | None:
        """Return the record with ``notification_id``, or None."""
        rows = await self._select("WHERE id = ?", (int(notification_id),))
        return rows[0] if rows else None

    async def fetch_by_recipient(self, recipient: str) -> list[dict[str, Any]]:
        """Return every record addressed to ``recipient``, oldest first."""
        return await self._select("WHERE recipient = ?", (recipient,))

    async def fetch_all(self) -> list[dict[str, Any]]:
        """Return every record, oldest first."""
        return await self._select("", ())

    async def _select(self, where: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT id, kind, due_ts, recipient, subject, body, created_at FROM notifications {where} ORDER BY id",
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            {
                "id": row["id"],
                "kind": row["kind"],
                "due_ts": row["due_ts"],
                "to": row["recipient"],
                "subject": row["subject"],
                "body": row["body"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]
