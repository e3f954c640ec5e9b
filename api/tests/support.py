"""Shared constants and test doubles."""

from datetime import datetime, timedelta, timezone
from typing import List

from ume_messaging.core.security import generate_identity_token
from ume_messaging.services.email.transport import EmailResult

TEST_SECRET = "test-identity-secret-0123456789abcdef"

ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"
LISTING = "listing-calc-textbook"
LISTING_TITLE = "Calculus Textbook"


class RecordingEmailTransport:
    """Email transport double that records every send."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[dict] = []

    async def send_email(self, to: str, subject: str, html: str) -> EmailResult:
        self.sent.append({"to": to, "subject": subject, "html": html})
        if self.succeed:
            return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")
        return EmailResult(success=False, error="provider unavailable")


def long_ago() -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=2)


def make_token(user_id: str, secret: str = TEST_SECRET, ttl: int = 3600) -> str:
    return generate_identity_token(user_id, secret, ttl)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}
