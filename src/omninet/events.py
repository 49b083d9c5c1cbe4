"""Booking lifecycle events and the publishers that hand them to notification."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Protocol

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field, TypeAdapter

from .models import Booking, BookingStatus

logger = Logger()

EVENT_SOURCE = "omninet.bookings"


class BookingCreated(BaseModel):
    type: Literal["BookingCreated"] = "BookingCreated"
    booking: Booking
    owner_id: str | None = None
    owner_email: str | None = None


class BookingStatusChanged(BaseModel):
    type: Literal["BookingStatusChanged"] = "BookingStatusChanged"
    booking: Booking
    previous_status: BookingStatus
    owner_id: str | None = None
    owner_email: str | None = None


BookingEvent = Annotated[BookingCreated | BookingStatusChanged, Field(discriminator="type")]

_event_adapter: TypeAdapter[BookingCreated | BookingStatusChanged] = TypeAdapter(BookingEvent)


def parse_event(payload: dict[str, Any]) -> BookingCreated | BookingStatusChanged:
    return _event_adapter.validate_python(payload)


class EventHandler(Protocol):
    def dispatch(self, event: BookingCreated | BookingStatusChanged) -> Any: ...


class EventPublisher(Protocol):
    def publish(self, event: BookingCreated | BookingStatusChanged) -> None: ...


class InlinePublisher:
    """Runs the handler in-process; nothing it raises reaches the caller."""

    def __init__(self, handler: EventHandler) -> None:
        self._handler = handler

    def publish(self, event: BookingCreated | BookingStatusChanged) -> None:
        try:
            self._handler.dispatch(event)
        except Exception:
            logger.exception(
                "Booking event handler failed",
                extra={"event": event.type, "booking_id": event.booking.booking_id},
            )


class EventBridgePublisher:
    """Puts events on a bus for the notification Lambda to consume."""

    def __init__(self, client: Any, bus_name: str = "default") -> None:
        self._client = client
        self._bus_name = bus_name

    def publish(self, event: BookingCreated | BookingStatusChanged) -> None:
        entry = {
            "Source": EVENT_SOURCE,
            "DetailType": event.type,
            "Detail": event.model_dump_json(),
            "EventBusName": self._bus_name,
        }
        try:
            resp = self._client.put_events(Entries=[entry])
        except (ClientError, BotoCoreError):
            logger.exception(
                "Failed to publish booking event",
                extra={"event": event.type, "booking_id": event.booking.booking_id},
            )
            return
        if resp.get("FailedEntryCount"):
            logger.error(
                "Booking event rejected by bus",
                extra={"event": event.type, "booking_id": event.booking.booking_id, "entries": resp.get("Entries")},
            )
            return
        logger.info("Emitting booking event", extra={"event": event.type, "booking_id": event.booking.booking_id})
