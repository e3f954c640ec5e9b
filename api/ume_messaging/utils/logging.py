import re

_EMAIL_RE = re.compile(r"([a-zA-Z0-9._%+-])[a-zA-Z0-9._%+-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")


def redact_email(text: str) -> str:
    """Mask the local part of email addresses, keeping the first character.

    ``alice@uni.edu`` becomes ``a***@uni.edu``.
    """
    return _EMAIL_RE.sub(r"\1***@\2", text or "")


def preview_text(body: str, limit: int = 80) -> str:
    """Single-line preview truncated to ``limit`` characters plus an ellipsis."""
    text = " ".join((body or "").split())
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
