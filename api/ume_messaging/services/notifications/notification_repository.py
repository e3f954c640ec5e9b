"""Async SQLite repository for in-app notifications."""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite

from ume_messaging.models.notification import Notification, NotificationCreate

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    link TEXT,
    order_id TEXT,
    listing_id TEXT,
    read INTEGER NOT NULL DEFAULT 0 CHECK(read IN (0, 1)),
    created_at TEXT NOT NULL
);
"""

CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read, created_at);",
]


def _row_to_notification(row: aiosqlite.Row) -> Notification:
    d = dict(row)
    d["read"] = bool(d.get("read"))
    d["created_at"] = datetime.fromisoformat(d["created_at"])
    return Notification(**d)


class NotificationRepository:
    """Async repository for notification rows."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_TABLE_SQL)
            for idx_sql in CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("NotificationRepository initialized at %s", self.db_path)

    async def create(self, data: NotificationCreate) -> Notification:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                INSERT INTO notifications (
                    id, user_id, type, title, message, link,
                    order_id, listing_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING *
                """,
                (
                    uuid.uuid4().hex,
                    data.user_id,
                    data.type.value,
                    data.title,
                    data.message,
                    data.link,
                    data.order_id,
                    data.listing_id,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return _row_to_notification(rows[0])

    async def get_by_id(self, notification_id: str) -> Optional[Notification]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            )
            row = await cursor.fetchone()
            return _row_to_notification(row) if row else None

    async def list_for_user(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> List[Notification]:
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND read = 0"
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, (user_id, limit))
            rows = await cursor.fetchall()
            return [_row_to_notification(r) for r in rows]

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        """Mark one notification read. False if it does not belong to the user."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE notifications SET read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def mark_all_read(self, user_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0",
                (user_id,),
            )
            await db.commit()
            return cursor.rowcount

    async def count_unread(self, user_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read = 0",
                (user_id,),
            )
            row = await cursor.fetchone()
            return row[0] if row else 0
