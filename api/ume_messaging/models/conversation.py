"""Pydantic models for the per-pair conversation aggregate."""

from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Return the participant pair in stored order (lowest id first)."""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class Conversation(BaseModel):
    """Conversation aggregate row.

    ``participant_1_id`` always sorts before ``participant_2_id``. The
    snapshot and unread columns are derived from the messages table.
    """

    id: str
    listing_id: str
    participant_1_id: str
    participant_2_id: str
    last_message_id: Optional[str] = None
    last_message_body: Optional[str] = None
    last_message_at: Optional[datetime] = None
    participant_1_unread_count: int = 0
    participant_2_unread_count: int = 0
    email_notified_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_1_id:
            return self.participant_2_id
        if user_id == self.participant_2_id:
            return self.participant_1_id
        raise ValueError(f"{user_id} is not a participant")

    def unread_count_for(self, user_id: str) -> int:
        if user_id == self.participant_1_id:
            return self.participant_1_unread_count
        if user_id == self.participant_2_id:
            return self.participant_2_unread_count
        raise ValueError(f"{user_id} is not a participant")


class ConversationSummary(BaseModel):
    """A conversation as seen by one participant."""

    id: str
    listing_id: str
    listing_title: Optional[str] = None
    other_user_id: str
    other_user_name: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0


class UnreadCountResponse(BaseModel):
    unread_count: int
