"""Profile mirror used for presence and email lookups."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UserProfile(BaseModel):
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    last_active: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username or "Someone"


class Listing(BaseModel):
    id: str
    title: str
    seller_id: Optional[str] = None
