"""Booking lifecycle: request submission and owner decisions.

States::

    pending -> accepted | declined     (owner or system decision)
    pending -> cancelled               (out of band, never driven here)

``accepted``, ``declined`` and ``cancelled`` have no outgoing transitions.
"""

from __future__ import annotations

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit

from .auth import Actor, is_system
from .dal import Datastore
from .errors import (
    BookingsDisabled,
    BookingTagMismatch,
    ConcurrentModification,
    InvalidRequest,
    InvalidTransition,
    NotAuthorized,
)
from .events import BookingCreated, BookingStatusChanged, EventPublisher
from .models import (
    Booking,
    BookingCreate,
    BookingStatus,
    OwnerBookings,
    SubmitResult,
    Tag,
    TransitionResult,
)

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="OmniNet")

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    "pending": frozenset({"accepted", "declined", "cancelled"}),
    "accepted": frozenset(),
    "declined": frozenset(),
    "cancelled": frozenset(),
}
OWNER_DECISIONS: frozenset[BookingStatus] = frozenset({"accepted", "declined"})
DEEP_LINK_ACTIONS: dict[str, BookingStatus] = {"accept": "accepted", "decline": "declined"}

ALREADY_IN_STATE = "Booking is already {status}"


def status_for_action(action: str) -> BookingStatus:
    try:
        return DEEP_LINK_ACTIONS[action]
    except KeyError:
        raise InvalidRequest(f"Unknown booking action: {action!r}") from None


class BookingLifecycle:
    def __init__(self, store: Datastore, publisher: EventPublisher) -> None:
        self._store = store
        self._publisher = publisher

    @tracer.capture_method
    def submit(self, tag_id: str, payload: BookingCreate) -> SubmitResult:
        tag = self._store.get_tag(tag_id)
        if not tag.bookings_enabled:
            logger.info("Booking rejected, tag not accepting bookings", extra={"tag_id": tag_id})
            raise BookingsDisabled()

        booking = self._store.create_booking(tag_id, payload)
        metrics.add_metric(name="BookingSubmitted", value=1, unit=MetricUnit.Count)
        self._publisher.publish(
            BookingCreated(booking=booking, owner_id=tag.owner_id, owner_email=tag.owner_email)
        )
        return SubmitResult(booking_id=booking.booking_id, status=booking.status)

    def get_tag(self, tag_id: str) -> Tag:
        return self._store.get_tag(tag_id)

    def get_for_owner(self, booking_id: str, actor: Actor) -> Booking:
        booking = self._store.get_booking(booking_id)
        self._authorize(self._store.get_tag(booking.tag_id), actor, booking_id)
        return booking

    def list_for_owner(self, tag_id: str, actor: Actor) -> list[Booking]:
        self._authorize(self._store.get_tag(tag_id), actor, None)
        return self._store.list_bookings_for_tag(tag_id)

    def list_all_for_owner(self, owner_id: str) -> OwnerBookings:
        """Bookings across every tag ``owner_id`` owns, split into pending and the rest."""
        bookings = [
            booking
            for tag in self._store.list_tags_for_owner(owner_id)
            for booking in self._store.list_bookings_for_tag(tag.tag_id)
        ]
        bookings.sort(key=lambda b: b.created_at, reverse=True)
        return OwnerBookings(
            pending=[b for b in bookings if b.status == "pending"],
            others=[b for b in bookings if b.status != "pending"],
        )

    def set_bookings_enabled(self, tag_id: str, actor: Actor, enabled: bool) -> Tag:
        self._authorize(self._store.get_tag(tag_id), actor, None)
        logger.info("Bookings toggled", extra={"tag_id": tag_id, "enabled": enabled})
        return self._store.set_bookings_enabled(tag_id, enabled)

    @tracer.capture_method
    def transition(
        self,
        booking_id: str,
        status: BookingStatus,
        actor: Actor,
        *,
        expected_tag_id: str | None = None,
    ) -> TransitionResult:
        """Move a booking to an owner decision.

        ``expected_tag_id`` is the tag the request arrived through (the tag page
        a deep link points at); a booking from another tag is refused.
        """
        if status not in OWNER_DECISIONS:
            raise InvalidRequest(f"Unsupported booking status: {status!r}")

        booking = self._store.get_booking(booking_id)
        # owner resolved now, not when the booking was made
        tag = self._store.get_tag(booking.tag_id)
        self._authorize(tag, actor, booking_id)
        if expected_tag_id is not None and booking.tag_id != expected_tag_id:
            logger.warning(
                "Booking/tag mismatch",
                extra={"booking_id": booking_id, "tag_id": booking.tag_id, "expected_tag_id": expected_tag_id},
            )
            raise BookingTagMismatch()

        if booking.status == status:
            return TransitionResult(
                booking=booking, changed=False, message=ALREADY_IN_STATE.format(status=status)
            )
        if status not in ALLOWED_TRANSITIONS[booking.status]:
            raise InvalidTransition(f"Booking is {booking.status} and can no longer change")

        previous = booking.status
        try:
            updated = self._store.update_booking_status(booking_id, status, expected=previous)
        except ConcurrentModification:
            current = self._store.get_booking(booking_id)
            if current.status == status:
                return TransitionResult(
                    booking=current, changed=False, message=ALREADY_IN_STATE.format(status=status)
                )
            raise InvalidTransition(f"Booking is {current.status} and can no longer change") from None

        logger.info(
            "Booking transitioned",
            extra={"booking_id": booking_id, "from": previous, "to": status, "tag_id": tag.tag_id},
        )
        metrics.add_metric(name="BookingTransitioned", value=1, unit=MetricUnit.Count)
        self._publisher.publish(
            BookingStatusChanged(
                booking=updated,
                previous_status=previous,
                owner_id=tag.owner_id,
                owner_email=tag.owner_email,
            )
        )
        return TransitionResult(booking=updated, changed=True, message=f"Booking {status}")

    def _authorize(self, tag: Tag, actor: Actor, booking_id: str | None) -> None:
        if is_system(actor) or actor == tag.owner_id:
            return
        logger.warning(
            "Actor is not the tag owner",
            extra={"tag_id": tag.tag_id, "booking_id": booking_id, "actor": actor},
        )
        raise NotAuthorized()
