"""Async SQLite repository for chat messages.

Rows are soft-deleted by flag; the only hard delete is the explicit
delete-conversation path.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite

from ume_messaging.models.message import Message

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    listing_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    receiver_id TEXT NOT NULL,
    body TEXT NOT NULL,
    client_id TEXT,
    read INTEGER NOT NULL DEFAULT 0 CHECK(read IN (0, 1)),
    delivered_at TEXT,
    seen_at TEXT,
    edited INTEGER NOT NULL DEFAULT 0 CHECK(edited IN (0, 1)),
    deleted INTEGER NOT NULL DEFAULT 0 CHECK(deleted IN (0, 1)),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK(sender_id <> receiver_id)
);
"""

CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(listing_id, sender_id, receiver_id, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_messages_unread ON messages(receiver_id, read, deleted);",
]

# Messages between a pair about one listing, in either direction
_PAIR_CLAUSE = """
    listing_id = ?
    AND ((sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?))
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_message(row: aiosqlite.Row) -> Message:
    """Convert an aiosqlite Row to a Message model."""
    d = dict(row)
    d.pop("seq", None)
    for key in ("delivered_at", "seen_at", "created_at", "updated_at"):
        d[key] = _parse_datetime(d.get(key))
    for key in ("read", "edited", "deleted"):
        d[key] = bool(d.get(key))
    return Message(**d)


class MessageRepository:
    """Async repository for message rows."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the table and indices if not present."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_TABLE_SQL)
            for idx_sql in CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("MessageRepository initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        listing_id: str,
        sender_id: str,
        receiver_id: str,
        body: str,
        client_id: Optional[str] = None,
    ) -> Message:
        message_id = uuid.uuid4().hex
        now = _now()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                INSERT INTO messages (
                    id, listing_id, sender_id, receiver_id, body, client_id,
                    delivered_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    listing_id,
                    sender_id,
                    receiver_id,
                    body,
                    client_id,
                    now,
                    now,
                    now,
                ),
            )
            await db.commit()
            cursor = await db.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
            return _row_to_message(row)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_by_id(self, message_id: str) -> Optional[Message]:
        """Direct lookup, including soft-deleted rows."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
            return _row_to_message(row) if row else None

    async def list_between(
        self, listing_id: str, user_a: str, user_b: str
    ) -> List[Message]:
        """Non-deleted messages of the pair for a listing, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"""
                SELECT * FROM messages
                WHERE {_PAIR_CLAUSE} AND deleted = 0
                ORDER BY created_at ASC, seq ASC
                """,
                (listing_id, user_a, user_b, user_b, user_a),
            )
            rows = await cursor.fetchall()
            return [_row_to_message(r) for r in rows]

    async def count_unread(
        self, listing_id: str, receiver_id: str, sender_id: str
    ) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE listing_id = ? AND receiver_id = ? AND sender_id = ?
                  AND read = 0 AND deleted = 0
                """,
                (listing_id, receiver_id, sender_id),
            )
            row = await cursor.fetchone()
            return row[0] if row else 0

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_body(self, message_id: str, body: str) -> Optional[Message]:
        """Replace the body and flag the message as edited."""
        return await self._update_returning(
            "UPDATE messages SET body = ?, edited = 1, updated_at = ? WHERE id = ? RETURNING *",
            (body, _now(), message_id),
        )

    async def mark_deleted(self, message_id: str) -> Optional[Message]:
        return await self._update_returning(
            "UPDATE messages SET deleted = 1, updated_at = ? WHERE id = ? RETURNING *",
            (_now(), message_id),
        )

    async def _update_returning(self, sql: str, params: tuple) -> Optional[Message]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            await db.commit()
            return _row_to_message(rows[0]) if rows else None

    async def mark_read(
        self, listing_id: str, sender_id: str, receiver_id: str
    ) -> List[Message]:
        """Flip unread, non-deleted rows from ``sender_id`` to read.

        Returns only the rows this call changed, so a repeated call returns
        an empty list.
        """
        now = _now()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                UPDATE messages
                SET read = 1, seen_at = ?, updated_at = ?
                WHERE listing_id = ? AND sender_id = ? AND receiver_id = ?
                  AND read = 0 AND deleted = 0
                RETURNING *
                """,
                (now, now, listing_id, sender_id, receiver_id),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return [_row_to_message(r) for r in rows]

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_between(
        self, listing_id: str, user_a: str, user_b: str
    ) -> List[Message]:
        """Hard-delete every message of the pair for a listing."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"DELETE FROM messages WHERE {_PAIR_CLAUSE} RETURNING *",
                (listing_id, user_a, user_b, user_b, user_a),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return [_row_to_message(r) for r in rows]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def count_unread_total(self, receiver_id: str) -> int:
        """Unread, non-deleted messages addressed to ``receiver_id``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND read = 0 AND deleted = 0",
                (receiver_id,),
            )
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def list_threads_for_user(self, user_id: str) -> List[tuple]:
        """Distinct ``(listing_id, other_user_id)`` pairs the user has messages in."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT DISTINCT listing_id,
                    CASE WHEN sender_id = ? THEN receiver_id ELSE sender_id END
                FROM messages
                WHERE sender_id = ? OR receiver_id = ?
                """,
                (user_id, user_id, user_id),
            )
            rows = await cursor.fetchall()
            return [(r[0], r[1]) for r in rows]
