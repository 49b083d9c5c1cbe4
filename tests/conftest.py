from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fakes import NOW, OWNER, FakeTable, RecordingPublisher

from omninet.availability import AvailabilityLedger
from omninet.bookings import BookingLifecycle
from omninet.dal import Datastore


@pytest.fixture()
def tables() -> dict[str, FakeTable]:
    return {
        "tags": FakeTable("tag_id"),
        "bookings": FakeTable("booking_id"),
        "blocks": FakeTable("block_id"),
    }


@pytest.fixture()
def store(tables: dict[str, FakeTable]) -> Datastore:
    return Datastore(tables["tags"], tables["bookings"], tables["blocks"])


@pytest.fixture()
def seed_tag(tables: dict[str, FakeTable]) -> Callable[..., dict[str, Any]]:
    def _seed(tag_id: str = "t-1", owner_id: str = OWNER, enabled: bool = True, **extra: Any) -> dict[str, Any]:
        item = {"tag_id": tag_id, "owner_id": owner_id, "title": "Saturday haircuts", "bookings_enabled": enabled}
        item.update(extra)
        tables["tags"].put_item(Item=item)
        return item

    return _seed


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def lifecycle(store: Datastore, publisher: RecordingPublisher) -> BookingLifecycle:
    return BookingLifecycle(store, publisher)


@pytest.fixture()
def ledger(store: Datastore) -> AvailabilityLedger:
    return AvailabilityLedger(store, clock=lambda: NOW)
