"""Transactional email via the Resend API.

Every send carries an ``Idempotency-Key`` header so the provider collapses
repeated attempts for the same logical message into one delivery.
"""

from __future__ import annotations

import hashlib
import html as html_module
import re
import time
from collections.abc import Callable

import httpx
from aws_lambda_powertools import Logger
from pydantic import BaseModel, Field

from .config import Settings

logger = Logger()

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5


class EmailAttachment(BaseModel):
    filename: str
    content: str  # base64
    content_type: str | None = None


class EmailTag(BaseModel):
    name: str
    value: str


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    text: str | None = None
    reply_to: str | None = None
    attachments: list[EmailAttachment] = Field(default_factory=list)
    tags: list[EmailTag] = Field(default_factory=list)
    idempotency_key: str


class SendResult(BaseModel):
    ok: bool
    attempts: int = 0
    status_code: int | None = None
    message_id: str | None = None
    error: str | None = None


def html_to_text(content: str) -> str:
    """Rough plain-text alternative for inbox previews."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<br\s*/?>|</p>|</h\d>|</div>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\s*\n\s*", "\n", text).strip()
    return html_module.unescape(text)


def key_fingerprint(api_key: str | None) -> str:
    if not api_key:
        return "missing"
    return hashlib.sha256(api_key.encode()).hexdigest()[:8]


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ResendClient:
    def __init__(
        self,
        api_key: str | None,
        sender: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
        max_attempts: int = RESEND_MAX_ATTEMPTS,
        base_delay: float = RESEND_RETRY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._http = http_client or httpx.Client(timeout=timeout)
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        logger.debug(
            "Email client configured",
            extra={
                "key_present": bool(api_key),
                "key_length": len(api_key or ""),
                "key_fp": key_fingerprint(api_key),
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ResendClient:
        return cls(settings.resend_api_key, settings.email_from, timeout=settings.email_timeout_seconds)

    def _payload(self, message: EmailMessage) -> dict[str, object]:
        payload: dict[str, object] = {
            "from": self._sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        text = message.text or html_to_text(message.html)
        if text:
            payload["text"] = text
        if message.reply_to:
            payload["reply_to"] = message.reply_to
        if message.attachments:
            payload["attachments"] = [a.model_dump(exclude_none=True) for a in message.attachments]
        if message.tags:
            payload["tags"] = [t.model_dump() for t in message.tags]
        return payload

    def send(self, message: EmailMessage) -> SendResult:
        """Send with up to ``max_attempts`` tries.

        429, 5xx, timeouts and transport errors are retried with linearly
        growing backoff; any other response is final. A 409 means the
        provider already accepted this idempotency key.
        """
        log_ctx = {"idempotency_key": message.idempotency_key}
        if not self._api_key:
            logger.error("Email provider key missing; skipping send", extra=log_ctx)
            return SendResult(ok=False, error="Email provider not configured")

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Idempotency-Key": message.idempotency_key,
        }
        payload = self._payload(message)

        result = SendResult(ok=False)
        for attempt in range(1, self._max_attempts + 1):
            result.attempts = attempt
            retryable = False
            try:
                response = self._http.post(RESEND_SEND_URL, headers=headers, json=payload)
            except httpx.TimeoutException:
                result.status_code, result.error, retryable = None, "Connection timeout", True
            except httpx.RequestError as exc:
                result.status_code, result.error = None, f"Connection error: {exc.__class__.__name__}"
                retryable = True
            else:
                result.status_code = response.status_code
                if 200 <= response.status_code < 300 or response.status_code == 409:
                    result.ok, result.error = True, None
                    result.message_id = _message_id(response)
                    logger.info(
                        "Email sent",
                        extra={**log_ctx, "attempt": attempt, "status_code": response.status_code},
                    )
                    return result
                result.error = _error_detail(response)
                retryable = is_retryable_status(response.status_code)

            logger.warning(
                "Email send attempt failed",
                extra={
                    **log_ctx,
                    "attempt": attempt,
                    "status_code": result.status_code,
                    "error": result.error,
                    "retryable": retryable,
                },
            )
            if not retryable or attempt >= self._max_attempts:
                break
            self._sleep(self._base_delay * attempt)

        return result


def _message_id(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        mid = data.get("id")
        if isinstance(mid, str) and mid:
            return mid
    return None


def _error_detail(response: httpx.Response) -> str:
    error_msg = f"Resend API error: {response.status_code}"
    try:
        data = response.json()
    except ValueError:
        return error_msg
    if isinstance(data, dict):
        detail = data.get("message") or data.get("error")
        if detail:
            error_msg = f"{error_msg} ({detail})"
    return error_msg
