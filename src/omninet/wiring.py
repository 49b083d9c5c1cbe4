"""Construction of the service graph from settings.

Clients are built once per process; none of them hold booking or block state.
"""

from __future__ import annotations

from functools import lru_cache

import boto3

from .availability import AvailabilityLedger
from .bookings import BookingLifecycle
from .config import Settings
from .dal import Datastore
from .email_client import ResendClient
from .events import EventBridgePublisher, EventPublisher, InlinePublisher
from .identity import IdentityDirectory
from .notifications import NotificationDispatcher


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_datastore() -> Datastore:
    return Datastore.from_settings(get_settings())


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    return NotificationDispatcher(
        ResendClient.from_settings(settings),
        get_datastore(),
        IdentityDirectory.from_settings(settings),
        settings,
    )


def build_publisher(settings: Settings) -> EventPublisher:
    if settings.notify_transport == "eventbridge":
        return EventBridgePublisher(boto3.client("events"), settings.event_bus_name)
    return InlinePublisher(get_dispatcher())


@lru_cache(maxsize=1)
def get_lifecycle() -> BookingLifecycle:
    return BookingLifecycle(get_datastore(), build_publisher(get_settings()))


@lru_cache(maxsize=1)
def get_ledger() -> AvailabilityLedger:
    return AvailabilityLedger(get_datastore())
