"""Async SQLite repository for the conversation aggregate.

There is exactly one row per (listing, sorted participant pair). The
snapshot and unread columns are never incremented; :meth:`recompute`
derives them from the messages table in a single UPDATE, so a failed or
skipped recompute is repaired by the next one.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import aiosqlite

from ume_messaging.models.conversation import Conversation, canonical_pair

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    listing_id TEXT NOT NULL,
    participant_1_id TEXT NOT NULL,
    participant_2_id TEXT NOT NULL,
    last_message_id TEXT,
    last_message_body TEXT,
    last_message_at TEXT,
    participant_1_unread_count INTEGER NOT NULL DEFAULT 0
        CHECK(participant_1_unread_count >= 0),
    participant_2_unread_count INTEGER NOT NULL DEFAULT 0
        CHECK(participant_2_unread_count >= 0),
    email_notified_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(listing_id, participant_1_id, participant_2_id),
    CHECK(participant_1_id < participant_2_id)
);
"""

CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_conversations_p1 ON conversations(participant_1_id, last_message_at);",
    "CREATE INDEX IF NOT EXISTS idx_conversations_p2 ON conversations(participant_2_id, last_message_at);",
]

# Correlated on the conversations row being updated
_LATEST_MESSAGE_SQL = """
    SELECT {column} FROM messages m
    WHERE m.listing_id = conversations.listing_id
      AND m.deleted = 0
      AND ((m.sender_id = conversations.participant_1_id
            AND m.receiver_id = conversations.participant_2_id)
        OR (m.sender_id = conversations.participant_2_id
            AND m.receiver_id = conversations.participant_1_id))
    ORDER BY m.created_at DESC, m.seq DESC
    LIMIT 1
"""

_UNREAD_SQL = """
    SELECT COUNT(*) FROM messages m
    WHERE m.listing_id = conversations.listing_id
      AND m.receiver_id = conversations.{receiver}
      AND m.sender_id = conversations.{sender}
      AND m.read = 0 AND m.deleted = 0
"""

RECOMPUTE_SQL = f"""
UPDATE conversations SET
    last_message_id = ({_LATEST_MESSAGE_SQL.format(column="m.id")}),
    last_message_body = ({_LATEST_MESSAGE_SQL.format(column="m.body")}),
    last_message_at = COALESCE(
        ({_LATEST_MESSAGE_SQL.format(column="m.created_at")}),
        conversations.created_at
    ),
    participant_1_unread_count = ({_UNREAD_SQL.format(receiver="participant_1_id", sender="participant_2_id")}),
    participant_2_unread_count = ({_UNREAD_SQL.format(receiver="participant_2_id", sender="participant_1_id")}),
    updated_at = ?
WHERE listing_id = ? AND participant_1_id = ? AND participant_2_id = ?
RETURNING *
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_conversation(row: aiosqlite.Row) -> Conversation:
    d = dict(row)
    for key in ("last_message_at", "email_notified_at", "created_at", "updated_at"):
        d[key] = _parse_datetime(d.get(key))
    return Conversation(**d)


class ConversationRepository:
    """Async repository for conversation aggregate rows."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the table and indices if not present."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_TABLE_SQL)
            for idx_sql in CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("ConversationRepository initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    async def recompute(
        self, listing_id: str, user_a: str, user_b: str
    ) -> Tuple[Conversation, bool]:
        """Create the row if needed and refresh it from the messages table.

        Returns the refreshed row and whether it was created by this call.
        """
        p1, p2 = canonical_pair(user_a, user_b)
        now = _now()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                INSERT INTO conversations (
                    id, listing_id, participant_1_id, participant_2_id,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(listing_id, participant_1_id, participant_2_id) DO NOTHING
                """,
                (uuid.uuid4().hex, listing_id, p1, p2, now, now),
            )
            created = cursor.rowcount == 1
            cursor = await db.execute(RECOMPUTE_SQL, (now, listing_id, p1, p2))
            rows = await cursor.fetchall()
            await db.commit()
            return _row_to_conversation(rows[0]), created

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_by_pair(
        self, listing_id: str, user_a: str, user_b: str
    ) -> Optional[Conversation]:
        p1, p2 = canonical_pair(user_a, user_b)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE listing_id = ? AND participant_1_id = ? AND participant_2_id = ?
                """,
                (listing_id, p1, p2),
            )
            row = await cursor.fetchone()
            return _row_to_conversation(row) if row else None

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """Conversations the user takes part in, most recent activity first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE participant_1_id = ? OR participant_2_id = ?
                ORDER BY last_message_at DESC, created_at DESC
                """,
                (user_id, user_id),
            )
            rows = await cursor.fetchall()
            return [_row_to_conversation(r) for r in rows]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def mark_email_notified(
        self, conversation_id: str, at: Optional[datetime] = None
    ) -> Optional[Conversation]:
        stamp = (at or datetime.now(timezone.utc)).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                UPDATE conversations SET email_notified_at = ?, updated_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (stamp, _now(), conversation_id),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return _row_to_conversation(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_by_pair(
        self, listing_id: str, user_a: str, user_b: str
    ) -> Optional[Conversation]:
        p1, p2 = canonical_pair(user_a, user_b)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                DELETE FROM conversations
                WHERE listing_id = ? AND participant_1_id = ? AND participant_2_id = ?
                RETURNING *
                """,
                (listing_id, p1, p2),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return _row_to_conversation(rows[0]) if rows else None
