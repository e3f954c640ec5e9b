"""Global daily email counter.

One row per UTC day. The increment and the read-back happen in a single
upsert statement, so concurrent dispatchers always see distinct counts.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS email_daily_counts (
    day TEXT PRIMARY KEY,
    count INTEGER NOT NULL DEFAULT 0 CHECK(count >= 0)
);
"""


def today_key(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).date().isoformat()


class DailyEmailCounter:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_TABLE_SQL)
            await db.commit()

    async def get_count(self, day: Optional[str] = None) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT count FROM email_daily_counts WHERE day = ?",
                (day or today_key(),),
            )
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def increment(self, day: Optional[str] = None) -> int:
        """Atomically add one to the day's count and return the new value."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO email_daily_counts (day, count) VALUES (?, 1)
                ON CONFLICT(day) DO UPDATE SET count = count + 1
                RETURNING count
                """,
                (day or today_key(),),
            )
            rows = await cursor.fetchall()
            await db.commit()
            return rows[0][0]

    async def set_count(self, count: int, day: Optional[str] = None) -> None:
        """Overwrite a day's count. Used by operators and tests."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO email_daily_counts (day, count) VALUES (?, ?)
                ON CONFLICT(day) DO UPDATE SET count = excluded.count
                """,
                (day or today_key(), count),
            )
            await db.commit()
