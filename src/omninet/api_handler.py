from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import Metrics
from mangum import Mangum
from mangum.types import LambdaContext

from omninet.api import app

logger = Logger()
metrics = Metrics(namespace="OmniNet")
handler = Mangum(app, lifespan="off")


@metrics.log_metrics
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    request_context = event.setdefault("requestContext", {})
    # Bare HTTP API v2.0 events (sam local, tests) lack the gateway-filled fields
    if event.get("version") == "2.0":
        http_ctx = request_context.setdefault("http", {})
        http_ctx.setdefault("sourceIp", "127.0.0.1")
        http_ctx.setdefault("userAgent", "local")
        request_context.setdefault("stage", "$default")

    logger.set_correlation_id(request_context.get("requestId"))
    logger.append_keys(route=event.get("routeKey"))
    return handler(event, context)
