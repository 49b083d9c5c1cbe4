from __future__ import annotations

import json
from collections.abc import Iterator
from http import HTTPStatus
from typing import Any
from unittest.mock import MagicMock

import pytest
from aws_lambda_powertools.metrics import MetricUnit

from omninet import api_handler
from omninet.api import app
from omninet.api_handler import lambda_handler
from omninet.models import OwnerBookings
from omninet.wiring import get_lifecycle


def gateway_event(path: str, *, sub: str | None = None, request_id: str = "req-1") -> dict[str, Any]:
    request_context: dict[str, Any] = {
        "requestId": request_id,
        "http": {"method": "GET", "path": path, "protocol": "HTTP/1.1"},
    }
    if sub is not None:
        request_context["authorizer"] = {"jwt": {"claims": {"sub": sub}}}
    return {
        "version": "2.0",
        "rawPath": path,
        "routeKey": f"GET {path}",
        "rawQueryString": "",
        "headers": {"host": "api.omninethq.co.uk"},
        "requestContext": request_context,
        "isBase64Encoded": False,
    }


@pytest.fixture()
def lifecycle() -> Iterator[MagicMock]:
    mock = MagicMock()
    mock.list_all_for_owner.return_value = OwnerBookings()
    app.dependency_overrides[get_lifecycle] = lambda: mock
    yield mock
    app.dependency_overrides.clear()


def test_health_through_lambda_entrypoint() -> None:
    resp = lambda_handler(gateway_event("/health"), context={})  # type: ignore[arg-type]
    assert resp["statusCode"] == HTTPStatus.OK
    assert json.loads(resp["body"]) == {"status": "ok"}


def test_authorizer_claims_reach_owner_routes(lifecycle: MagicMock) -> None:
    resp = lambda_handler(gateway_event("/bookings", sub="user-7"), context={})  # type: ignore[arg-type]

    assert resp["statusCode"] == HTTPStatus.OK
    assert json.loads(resp["body"]) == {"pending": [], "others": []}
    lifecycle.list_all_for_owner.assert_called_once_with("user-7")


def test_missing_claims_are_unauthenticated(lifecycle: MagicMock) -> None:
    resp = lambda_handler(gateway_event("/bookings"), context={})  # type: ignore[arg-type]

    assert resp["statusCode"] == HTTPStatus.UNAUTHORIZED
    lifecycle.list_all_for_owner.assert_not_called()


def test_request_id_becomes_correlation_id() -> None:
    lambda_handler(gateway_event("/health", request_id="req-42"), context={})  # type: ignore[arg-type]
    assert api_handler.logger.get_correlation_id() == "req-42"


def test_metrics_flushed_after_each_invocation(capsys: pytest.CaptureFixture[str]) -> None:
    api_handler.metrics.add_metric(name="BookingSubmitted", value=1, unit=MetricUnit.Count)

    lambda_handler(gateway_event("/health"), context={})  # type: ignore[arg-type]

    emitted = [json.loads(line) for line in capsys.readouterr().out.splitlines() if "_aws" in line]
    assert emitted
    assert emitted[-1]["_aws"]["CloudWatchMetrics"][0]["Namespace"] == "OmniNet"
    assert "BookingSubmitted" in emitted[-1]
