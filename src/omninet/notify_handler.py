from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics
from aws_lambda_powertools.utilities.typing import LambdaContext
from pydantic import ValidationError

from omninet.events import EVENT_SOURCE, parse_event
from omninet.wiring import get_dispatcher

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="OmniNet")


@metrics.log_metrics
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    # Triggered by EventBridge when the API publishes a booking event
    if event.get("source") != EVENT_SOURCE:
        logger.info("Ignoring event from unexpected source", extra={"source": event.get("source")})
        return {"dispatched": 0, "sent": 0}

    try:
        booking_event = parse_event(event.get("detail") or {})
    except ValidationError:
        # Malformed detail will never parse; retrying would not help
        logger.exception("Unparseable booking event", extra={"detail_type": event.get("detail-type")})
        return {"dispatched": 0, "sent": 0}

    results = get_dispatcher().dispatch(booking_event)
    sent = sum(1 for r in results if r.ok)
    logger.info(
        "Booking event handled",
        extra={"event": booking_event.type, "booking_id": booking_event.booking.booking_id, "sent": sent},
    )
    return {"dispatched": len(results), "sent": sent}
