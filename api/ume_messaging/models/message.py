"""Pydantic models for chat messages."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Core data models
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """Full message record (database row)."""

    id: str
    listing_id: str
    sender_id: str
    receiver_id: str
    body: str
    client_id: Optional[str] = Field(
        default=None, description="Client correlation id, never used as identity"
    )
    read: bool = False
    delivered_at: Optional[datetime] = None
    seen_at: Optional[datetime] = None
    edited: bool = False
    deleted: bool = False
    created_at: datetime
    updated_at: datetime

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)


# ---------------------------------------------------------------------------
# API request models
# ---------------------------------------------------------------------------


class SendMessageRequest(BaseModel):
    listing_id: str = Field(..., max_length=128)
    receiver_id: str = Field(..., max_length=128)
    body: str
    client_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("listing_id", "receiver_id", mode="before")
    @classmethod
    def strip_ids(cls, v: str) -> str:
        return v.strip() if isinstance(v, str) else v


class EditMessageRequest(BaseModel):
    body: str


class MarkReadRequest(BaseModel):
    listing_id: str = Field(..., min_length=1, max_length=128)
    other_user_id: str = Field(..., min_length=1, max_length=128)


class MarkReadResponse(BaseModel):
    updated: int
