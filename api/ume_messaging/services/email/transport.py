"""
Outbound email transport backed by the Brevo transactional API.

``send_email`` never raises: every failure is reported through
:class:`EmailResult` so callers can treat email as best effort.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ume_messaging.core.config import Settings
from ume_messaging.metrics.messaging_metrics import (
    email_send_duration_seconds,
    email_send_total,
)
from ume_messaging.utils.logging import redact_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class EmailTransport(Protocol):
    """Contract for anything that can deliver one HTML email."""

    async def send_email(self, to: str, subject: str, html: str) -> EmailResult:
        """Deliver the email and report the outcome without raising."""


class BrevoEmailTransport:
    """Email transport using Brevo's ``/v3/smtp/email`` endpoint."""

    def __init__(self, settings: Settings):
        self.api_key = settings.BREVO_API_KEY
        self.api_url = settings.BREVO_API_URL
        self.sender_email = settings.BREVO_SENDER_EMAIL
        self.sender_name = settings.BREVO_SENDER_NAME
        self.reply_to = settings.SUPPORT_EMAIL
        self.timeout = settings.EMAIL_TIMEOUT_SECONDS
        self.max_attempts = settings.EMAIL_MAX_ATTEMPTS
        self.retry_base_seconds = settings.EMAIL_RETRY_BASE_SECONDS
        self.test_mode = settings.EMAIL_TEST_MODE
        self.test_log_path = Path(settings.EMAIL_TEST_LOG_FILE_PATH)
        self._client: Optional[httpx.AsyncClient] = None
        self._log_lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.api_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the shared HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _build_payload(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html,
        }
        if self.reply_to:
            payload["replyTo"] = {"email": self.reply_to}
        return payload

    async def send_email(self, to: str, subject: str, html: str) -> EmailResult:
        payload = self._build_payload(to, subject, html)

        if self.test_mode:
            try:
                await self._append_test_log(payload)
            except OSError as e:
                logger.error(f"Failed to write email test log: {e}")
                email_send_total.labels(result="failure").inc()
                return EmailResult(success=False, error=str(e))
            logger.info("Email test mode: logged email to %s", redact_email(to))
            email_send_total.labels(result="test_mode").inc()
            return EmailResult(success=True, message_id="test-mode")

        if not self.api_key:
            logger.error("BREVO_API_KEY is not configured; email not sent")
            email_send_total.labels(result="not_configured").inc()
            return EmailResult(success=False, error="Email transport not configured")

        start = time.perf_counter()
        try:
            response = await self._post(payload)
            data = response.json() if response.content else {}
        except httpx.TimeoutException:
            logger.warning("Brevo request timed out sending to %s", redact_email(to))
            email_send_total.labels(result="failure").inc()
            return EmailResult(success=False, error="Email transport timed out")
        except httpx.HTTPStatusError as e:
            logger.error(
                "Brevo rejected email to %s: %s %s",
                redact_email(to),
                e.response.status_code,
                e.response.text[:200],
            )
            email_send_total.labels(result="failure").inc()
            return EmailResult(
                success=False, error=f"Email API error {e.response.status_code}"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.exception("Brevo HTTP error")
            email_send_total.labels(result="failure").inc()
            return EmailResult(success=False, error=str(e))
        finally:
            email_send_duration_seconds.observe(time.perf_counter() - start)

        email_send_total.labels(result="success").inc()
        return EmailResult(success=True, message_id=data.get("messageId"))

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        """POST to Brevo, retrying connection failures and timeouts.

        Error statuses are not retried; the last exception is re-raised.
        """
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.retry_base_seconds, min=0, max=10
            ),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                response = await client.post(
                    "/v3/smtp/email",
                    json=payload,
                    headers={"api-key": self.api_key, "accept": "application/json"},
                )
                response.raise_for_status()
        return response

    async def _append_test_log(self, payload: Dict[str, Any]) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "to": payload["to"][0]["email"],
            "subject": payload["subject"],
            "html": payload["htmlContent"],
        }
        async with self._log_lock:
            await asyncio.to_thread(self._write_test_log_entry, entry)

    def _write_test_log_entry(self, entry: Dict[str, Any]) -> None:
        self.test_log_path.parent.mkdir(parents=True, exist_ok=True)
        entries: List[Dict[str, Any]] = []
        if self.test_log_path.exists():
            try:
                entries = json.loads(self.test_log_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Email test log was corrupt, starting a new one")
                entries = []
        entries.append(entry)
        self.test_log_path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
