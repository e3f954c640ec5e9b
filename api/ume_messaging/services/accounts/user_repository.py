"""Profile mirror and presence signal.

Profiles are owned by the auth platform; this table only mirrors what the
messaging pipeline needs (email, display name) and records ``last_active``.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite

from ume_messaging.models.user import UserProfile

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    username TEXT,
    display_name TEXT,
    last_active TEXT
);
"""


def _row_to_profile(row: aiosqlite.Row) -> UserProfile:
    d = dict(row)
    if d.get("last_active"):
        d["last_active"] = datetime.fromisoformat(d["last_active"])
    return UserProfile(**d)


class UserRepository:
    """Async repository for user profiles and activity timestamps."""

    def __init__(self, db_path: str, debounce_seconds: int = 60) -> None:
        self.db_path = db_path
        self.debounce_seconds = debounce_seconds

    async def initialize(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_TABLE_SQL)
            await db.commit()
        logger.info("UserRepository initialized at %s", self.db_path)

    async def upsert(self, profile: UserProfile) -> UserProfile:
        """Insert or refresh a mirrored profile."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                INSERT INTO users (id, email, username, display_name, last_active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    username = excluded.username,
                    display_name = excluded.display_name,
                    last_active = COALESCE(excluded.last_active, users.last_active)
                RETURNING *
                """,
                (
                    profile.id,
                    profile.email,
                    profile.username,
                    profile.display_name,
                    profile.last_active.isoformat() if profile.last_active else None,
                ),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return _row_to_profile(rows[0])

    async def get_by_id(self, user_id: str) -> Optional[UserProfile]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = await cursor.fetchone()
            return _row_to_profile(row) if row else None

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def touch_activity(
        self, user_id: str, now: Optional[datetime] = None
    ) -> bool:
        """Record activity for ``user_id``.

        Writes at most once per debounce interval. Returns True when the
        timestamp was actually written.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=self.debounce_seconds)).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO users (id, last_active) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET last_active = excluded.last_active
                WHERE users.last_active IS NULL OR users.last_active <= ?
                """,
                (user_id, now.isoformat(), cutoff),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_last_active(self, user_id: str) -> Optional[datetime]:
        profile = await self.get_by_id(user_id)
        return profile.last_active if profile else None

    async def is_user_active(
        self,
        user_id: str,
        threshold_minutes: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """True if the user was active within ``threshold_minutes``."""
        last_active = await self.get_last_active(user_id)
        if last_active is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - last_active < timedelta(minutes=threshold_minutes)
