"""Read-side mirror of marketplace listings, used for notification text."""

import logging
from typing import Optional

import aiosqlite

from ume_messaging.models.user import Listing

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    seller_id TEXT
);
"""


class ListingRepository:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(CREATE_TABLE_SQL)
            await db.commit()

    async def upsert(self, listing: Listing) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO listings (id, title, seller_id) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title, seller_id = excluded.seller_id
                """,
                (listing.id, listing.title, listing.seller_id),
            )
            await db.commit()

    async def get_by_id(self, listing_id: str) -> Optional[Listing]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM listings WHERE id = ?", (listing_id,)
            )
            row = await cursor.fetchone()
            return Listing(**dict(row)) if row else None
