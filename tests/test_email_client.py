from __future__ import annotations

import json
from collections.abc import Callable
from http import HTTPStatus

import httpx
import pytest

from omninet.email_client import (
    RESEND_SEND_URL,
    EmailAttachment,
    EmailMessage,
    EmailTag,
    ResendClient,
    html_to_text,
    is_retryable_status,
    key_fingerprint,
)

API_KEY = "re_test_0123456789"


def make_client(
    handler: Callable[[httpx.Request], httpx.Response], sleeps: list[float] | None = None
) -> ResendClient:
    return ResendClient(
        API_KEY,
        "OmniNet <notify@omninethq.co.uk>",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=(sleeps if sleeps is not None else []).append,
    )


def message(**overrides) -> EmailMessage:
    base = dict(
        to="ana@bookings.co.uk",
        subject="📅 Booking Request Received",
        html="<h2>Thanks!</h2><p>We got it &amp; will reply.</p>",
        idempotency_key="booking-request-confirmation/b-1",
    )
    base.update(overrides)
    return EmailMessage(**base)


def test_send_success_posts_expected_request():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(HTTPStatus.OK, json={"id": "em_123"})

    result = make_client(handler).send(
        message(
            reply_to="ana@bookings.co.uk",
            tags=[EmailTag(name="booking", value="b-1")],
            attachments=[EmailAttachment(filename="booking.ics", content="QkVHSU4=")],
        )
    )

    assert result.ok is True
    assert result.attempts == 1
    assert result.message_id == "em_123"
    request = seen[0]
    assert str(request.url) == RESEND_SEND_URL
    assert request.headers["Authorization"] == f"Bearer {API_KEY}"
    assert request.headers["Idempotency-Key"] == "booking-request-confirmation/b-1"
    body = json.loads(request.content)
    assert body["from"] == "OmniNet <notify@omninethq.co.uk>"
    assert body["to"] == ["ana@bookings.co.uk"]
    assert body["text"] == "Thanks!\nWe got it & will reply."
    assert body["reply_to"] == "ana@bookings.co.uk"
    assert body["tags"] == [{"name": "booking", "value": "b-1"}]
    assert body["attachments"] == [{"filename": "booking.ics", "content": "QkVHSU4="}]


def test_retries_server_errors_with_same_key():
    keys: list[str] = []
    sleeps: list[float] = []
    statuses = iter([HTTPStatus.INTERNAL_SERVER_ERROR, HTTPStatus.BAD_GATEWAY, HTTPStatus.OK])

    def handler(request: httpx.Request) -> httpx.Response:
        keys.append(request.headers["Idempotency-Key"])
        return httpx.Response(next(statuses), json={"id": "em_9"})

    result = make_client(handler, sleeps).send(message())

    assert result.ok is True
    assert result.attempts == 3  # noqa: PLR2004
    assert keys == ["booking-request-confirmation/b-1"] * 3
    assert sleeps == [0.5, 1.0]


def test_rate_limit_is_retried():
    statuses = iter([HTTPStatus.TOO_MANY_REQUESTS, HTTPStatus.OK])
    result = make_client(lambda request: httpx.Response(next(statuses), json={})).send(message())
    assert result.ok is True
    assert result.attempts == 2  # noqa: PLR2004


def test_conflict_means_already_sent():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(HTTPStatus.CONFLICT, json={"message": "Idempotency key already used"})

    result = make_client(handler).send(message())
    assert result.ok is True
    assert len(calls) == 1


def test_client_errors_are_final():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(HTTPStatus.UNPROCESSABLE_ENTITY, json={"message": "Invalid `to` field"})

    result = make_client(handler).send(message())

    assert result.ok is False
    assert result.attempts == 1
    assert result.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert result.error == "Resend API error: 422 (Invalid `to` field)"
    assert len(calls) == 1


def test_timeouts_exhaust_attempts():
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    result = make_client(handler, sleeps).send(message())

    assert result.ok is False
    assert result.attempts == 3  # noqa: PLR2004
    assert result.error == "Connection timeout"
    assert sleeps == [0.5, 1.0]


def test_connection_errors_are_retried():
    statuses: list[int | None] = [None, HTTPStatus.OK]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status is None:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status, json={"id": "em_1"})

    result = make_client(handler).send(message())
    assert result.ok is True
    assert result.attempts == 2  # noqa: PLR2004


def test_missing_api_key_sends_nothing():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    transport = httpx.MockTransport(handler)
    client = ResendClient(None, "OmniNet <notify@omninethq.co.uk>", http_client=httpx.Client(transport=transport))
    result = client.send(message())
    assert result.ok is False
    assert result.attempts == 0
    assert result.error == "Email provider not configured"


def test_key_fingerprint_never_reveals_key():
    fp = key_fingerprint(API_KEY)
    assert len(fp) == 8  # noqa: PLR2004
    assert fp not in API_KEY
    assert key_fingerprint(API_KEY) == fp
    assert key_fingerprint(None) == "missing"


@pytest.mark.parametrize(
    "status, retryable",
    [(429, True), (500, True), (503, True), (400, False), (404, False), (422, False)],
)
def test_is_retryable_status(status, retryable):
    assert is_retryable_status(status) is retryable


def test_html_to_text():
    html = "<style>p{color:red}</style><h2>Hi</h2><p>Line one<br/>Line two</p><p>A &lt;b&gt; c</p>"
    assert html_to_text(html) == "Hi\nLine one\nLine two\nA <b> c"
