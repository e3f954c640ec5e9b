"""
Identity token verification for the UME messaging API.

Tokens are issued by the surrounding auth platform. They are HMAC-SHA256
signed, base64url encoded JSON payloads of the form ``<body>.<signature>``.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from ume_messaging.core.config import Settings, get_settings
from ume_messaging.core.exceptions import UnauthenticatedError

logger = logging.getLogger(__name__)

IDENTITY_PURPOSE = "identity"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(body: str, signing_key: str) -> str:
    mac = hmac.new(signing_key.encode("utf-8"), body.encode("utf-8"), hashlib.sha256)
    return _b64url(mac.digest())


@dataclass(frozen=True)
class IdentityTokenPayload:
    user_id: str
    jti: str
    iat: int
    exp: int


def generate_identity_token(user_id: str, signing_key: str, ttl_seconds: int) -> str:
    """Issue a signed identity token for ``user_id``."""
    now = int(time.time())
    payload = {
        "sub": user_id,
        "purpose": IDENTITY_PURPOSE,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + max(0, ttl_seconds),
    }
    body = _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{body}.{_sign(body, signing_key)}"


def verify_identity_token(
    token: str, signing_key: str
) -> Optional[IdentityTokenPayload]:
    """Return the payload of a valid token, or None.

    Rejects tokens with a bad signature, wrong purpose, missing subject or
    past expiry. An empty signing key rejects everything.
    """
    if not token or not signing_key:
        return None
    try:
        body, signature = token.split(".", 1)
        expected = _sign(body, signing_key)
        if not hmac.compare_digest(signature, expected):
            return None
        payload = json.loads(_b64url_decode(body))
        if payload.get("purpose") != IDENTITY_PURPOSE:
            return None
        if not payload.get("sub"):
            return None
        if int(payload.get("exp", 0)) <= int(time.time()):
            return None
        return IdentityTokenPayload(
            user_id=str(payload["sub"]),
            jti=str(payload.get("jti", "")),
            iat=int(payload.get("iat", 0)),
            exp=int(payload["exp"]),
        )
    except (ValueError, TypeError, KeyError, json.JSONDecodeError):
        return None


def _extract_bearer(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def resolve_user_id(request: Request, settings: Settings) -> Optional[str]:
    """Resolve the caller from the request without raising.

    The result is cached on ``request.state`` so middleware and route
    dependencies verify the token only once.
    """
    if hasattr(request.state, "user_id"):
        return request.state.user_id
    token = _extract_bearer(request)
    payload = (
        verify_identity_token(token, settings.IDENTITY_TOKEN_SECRET) if token else None
    )
    user_id = payload.user_id if payload else None
    request.state.user_id = user_id
    return user_id


def get_current_user_id(
    request: Request, settings: Settings = Depends(get_settings)
) -> str:
    """FastAPI dependency returning the authenticated caller id.

    Raises:
        UnauthenticatedError: If the request carries no valid identity token
    """
    user_id = resolve_user_id(request, settings)
    if not user_id:
        logger.debug("Rejected unauthenticated request to %s", request.url.path)
        raise UnauthenticatedError()
    return user_id
