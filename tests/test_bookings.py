from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fakes import OWNER, booking_request

from omninet.auth import SYSTEM_ACTOR
from omninet.bookings import BookingLifecycle, status_for_action
from omninet.errors import (
    BookingsDisabled,
    BookingTagMismatch,
    ConcurrentModification,
    InvalidRequest,
    InvalidTransition,
    NotAuthorized,
    NotFound,
)
from omninet.events import BookingCreated, BookingStatusChanged


def test_submit_creates_pending_booking_and_emits_event(lifecycle, seed_tag, store, publisher):
    seed_tag(owner_email="owner@shop.co.uk")

    result = lifecycle.submit("t-1", booking_request())

    assert result.status == "pending"
    stored = store.get_booking(result.booking_id)
    assert stored.tag_id == "t-1"
    assert stored.requester_email == "ana@bookings.co.uk"
    assert len(publisher.events) == 1
    event = publisher.events[0]
    assert isinstance(event, BookingCreated)
    assert event.booking.booking_id == result.booking_id
    assert event.owner_id == OWNER
    assert event.owner_email == "owner@shop.co.uk"


def test_submit_rejected_when_bookings_disabled_leaves_no_row(lifecycle, seed_tag, tables, publisher):
    seed_tag(enabled=False)

    with pytest.raises(BookingsDisabled):
        lifecycle.submit("t-1", booking_request())

    assert tables["bookings"].items == {}
    assert publisher.events == []


def test_submit_unknown_tag(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.submit("missing", booking_request())


def test_preferred_at_round_trips_unchanged(lifecycle, seed_tag, store):
    seed_tag()
    naive = datetime(2030, 5, 1, 14, 30)
    aware = datetime(2030, 5, 1, 14, 30, tzinfo=timezone(timedelta(hours=1)))

    first = lifecycle.submit("t-1", booking_request(preferred_at=naive))
    second = lifecycle.submit("t-1", booking_request(preferred_at=aware))

    read_naive = store.get_booking(first.booking_id).preferred_at
    read_aware = store.get_booking(second.booking_id).preferred_at
    assert read_naive == naive
    assert read_naive.tzinfo is None
    assert read_aware == aware
    assert read_aware.utcoffset() == timedelta(hours=1)


def test_blank_optional_fields_are_dropped(lifecycle, seed_tag, tables):
    seed_tag()
    result = lifecycle.submit("t-1", booking_request(requester_phone="  ", message=""))
    item = tables["bookings"].items[result.booking_id]
    assert "requester_phone" not in item
    assert "message" not in item


def _pending(lifecycle: BookingLifecycle) -> str:
    return lifecycle.submit("t-1", booking_request()).booking_id


def test_owner_accepts_pending_booking(lifecycle, seed_tag, store, publisher):
    seed_tag()
    booking_id = _pending(lifecycle)

    result = lifecycle.transition(booking_id, "accepted", OWNER)

    assert result.changed is True
    assert result.booking.status == "accepted"
    assert store.get_booking(booking_id).status == "accepted"
    event = publisher.events[-1]
    assert isinstance(event, BookingStatusChanged)
    assert event.previous_status == "pending"
    assert event.booking.status == "accepted"


def test_same_status_is_a_no_op_without_event(lifecycle, seed_tag, publisher):
    seed_tag()
    booking_id = _pending(lifecycle)
    lifecycle.transition(booking_id, "declined", OWNER)
    events_before = len(publisher.events)

    again = lifecycle.transition(booking_id, "declined", OWNER)

    assert again.changed is False
    assert again.message == "Booking is already declined"
    assert len(publisher.events) == events_before


def test_non_owner_is_rejected_and_status_unchanged(lifecycle, seed_tag, store, publisher):
    seed_tag()
    booking_id = _pending(lifecycle)

    with pytest.raises(NotAuthorized):
        lifecycle.transition(booking_id, "accepted", "someone-else")

    assert store.get_booking(booking_id).status == "pending"
    assert not any(isinstance(e, BookingStatusChanged) for e in publisher.events)


def test_system_actor_may_decide(lifecycle, seed_tag):
    seed_tag()
    booking_id = _pending(lifecycle)
    result = lifecycle.transition(booking_id, "declined", SYSTEM_ACTOR)
    assert result.booking.status == "declined"


@pytest.mark.parametrize("claim", ["system", "omninet:system", "SystemActor.SYSTEM"])
def test_user_claim_never_acts_as_system(lifecycle, seed_tag, store, claim):
    seed_tag()
    booking_id = _pending(lifecycle)

    with pytest.raises(NotAuthorized):
        lifecycle.transition(booking_id, "accepted", claim)
    assert store.get_booking(booking_id).status == "pending"


def test_ownership_follows_current_tag_owner(lifecycle, seed_tag):
    seed_tag()
    booking_id = _pending(lifecycle)
    seed_tag(owner_id="new-owner")

    with pytest.raises(NotAuthorized):
        lifecycle.transition(booking_id, "accepted", OWNER)
    assert lifecycle.transition(booking_id, "accepted", "new-owner").changed is True


def test_decided_booking_cannot_change(lifecycle, seed_tag, store):
    seed_tag()
    booking_id = _pending(lifecycle)
    lifecycle.transition(booking_id, "accepted", OWNER)

    with pytest.raises(InvalidTransition):
        lifecycle.transition(booking_id, "declined", OWNER)
    assert store.get_booking(booking_id).status == "accepted"


@pytest.mark.parametrize("target", ["pending", "cancelled", "confirmed"])
def test_only_owner_decisions_can_be_requested(lifecycle, seed_tag, target):
    seed_tag()
    booking_id = _pending(lifecycle)
    with pytest.raises(InvalidRequest):
        lifecycle.transition(booking_id, target, OWNER)  # type: ignore[arg-type]


def test_unknown_booking(lifecycle, seed_tag):
    seed_tag()
    with pytest.raises(NotFound):
        lifecycle.transition("nope", "accepted", OWNER)


def test_booking_from_another_tag_is_refused(lifecycle, seed_tag, store):
    seed_tag()
    seed_tag(tag_id="t-2")
    booking_id = _pending(lifecycle)

    with pytest.raises(BookingTagMismatch):
        lifecycle.transition(booking_id, "accepted", OWNER, expected_tag_id="t-2")
    assert store.get_booking(booking_id).status == "pending"


def test_non_owner_learns_nothing_about_the_booking_tag(lifecycle, seed_tag):
    seed_tag()
    seed_tag(tag_id="t-2", owner_id="someone-else")
    booking_id = _pending(lifecycle)

    with pytest.raises(NotAuthorized):
        lifecycle.transition(booking_id, "accepted", "someone-else", expected_tag_id="t-2")


def test_lost_race_to_same_status_reports_already(lifecycle, seed_tag, store, tables, monkeypatch):
    seed_tag()
    booking_id = _pending(lifecycle)

    def racing_update(bid, status, *, expected):
        tables["bookings"].items[bid]["status"] = "accepted"
        raise ConcurrentModification()

    monkeypatch.setattr(store, "update_booking_status", racing_update)
    result = lifecycle.transition(booking_id, "accepted", OWNER)
    assert result.changed is False
    assert result.message == "Booking is already accepted"


def test_lost_race_to_other_status_is_invalid(lifecycle, seed_tag, store, tables, monkeypatch):
    seed_tag()
    booking_id = _pending(lifecycle)

    def racing_update(bid, status, *, expected):
        tables["bookings"].items[bid]["status"] = "declined"
        raise ConcurrentModification()

    monkeypatch.setattr(store, "update_booking_status", racing_update)
    with pytest.raises(InvalidTransition):
        lifecycle.transition(booking_id, "accepted", OWNER)


def test_list_for_owner_newest_first(lifecycle, seed_tag, tables):
    seed_tag()
    older = _pending(lifecycle)
    newer = _pending(lifecycle)
    tables["bookings"].items[older]["created_at"] = "2030-01-01T10:00:00.000000+00:00"
    tables["bookings"].items[newer]["created_at"] = "2030-01-02T10:00:00.000000+00:00"

    ids = [b.booking_id for b in lifecycle.list_for_owner("t-1", OWNER)]
    assert ids == [newer, older]

    with pytest.raises(NotAuthorized):
        lifecycle.list_for_owner("t-1", "someone-else")


def test_set_bookings_enabled_requires_owner(lifecycle, seed_tag):
    seed_tag(enabled=False)
    assert lifecycle.set_bookings_enabled("t-1", OWNER, True).bookings_enabled is True
    with pytest.raises(NotAuthorized):
        lifecycle.set_bookings_enabled("t-1", "someone-else", False)


def test_status_for_action():
    assert status_for_action("accept") == "accepted"
    assert status_for_action("decline") == "declined"
    with pytest.raises(InvalidRequest):
        status_for_action("cancel")


def test_list_all_for_owner_spans_tags(lifecycle, seed_tag, tables):
    seed_tag()
    seed_tag(tag_id="t-2")
    seed_tag(tag_id="t-3", owner_id="someone-else")
    first = lifecycle.submit("t-1", booking_request()).booking_id
    second = lifecycle.submit("t-2", booking_request()).booking_id
    decided = lifecycle.submit("t-2", booking_request()).booking_id
    foreign = lifecycle.submit("t-3", booking_request()).booking_id
    for day, booking_id in enumerate([first, second, decided, foreign], start=1):
        tables["bookings"].items[booking_id]["created_at"] = f"2030-01-0{day}T10:00:00.000000+00:00"
    lifecycle.transition(decided, "declined", OWNER)

    listing = lifecycle.list_all_for_owner(OWNER)

    assert [b.booking_id for b in listing.pending] == [second, first]
    assert [b.booking_id for b in listing.others] == [decided]
    assert lifecycle.list_all_for_owner("nobody").pending == []
