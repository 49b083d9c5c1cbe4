"""Booking notification dispatch.

Turns booking lifecycle events into transactional emails. Each message has a
deduplication key derived from a fixed label and the booking id, so retries
of the same logical message collapse at the provider, and correlation tags
(type, tag, owner, booking) so delivery webhooks can be matched back without
a join. Delivery is best effort: a message that exhausts its retries is
logged and dropped.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime
from html import escape

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit

from . import ics
from .config import Settings
from .dal import Datastore
from .email_client import EmailAttachment, EmailMessage, EmailTag, ResendClient, SendResult
from .errors import OmniNetError
from .events import BookingCreated, BookingStatusChanged
from .identity import IdentityDirectory
from .models import Booking

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="OmniNet")

KEY_REQUEST_CONFIRMATION = "booking-request-confirmation/{booking_id}"
KEY_OWNER_NOTIFICATION = "booking-owner-notification/{booking_id}"
KEY_ACCEPTED = "booking-accepted/{booking_id}"
KEY_ACCEPTED_NO_ATTACHMENT = "booking-accepted-no-attachment/{booking_id}"
KEY_DECLINED = "booking-declined/{booking_id}"

TYPE_REQUEST_CONFIRMATION = "booking_request_confirmation"
TYPE_OWNER_NOTIFICATION = "booking_owner_notification"
TYPE_ACCEPTED = "booking_accepted"
TYPE_DECLINED = "booking_declined"

CALENDAR_FILENAME = "booking.ics"
CALENDAR_CONTENT_TYPE = "text/calendar"

_TAG_VALUE_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def dedup_key(template: str, booking_id: str) -> str:
    return template.format(booking_id=booking_id)


def correlation_tags(kind: str, booking: Booking, owner_id: str | None) -> list[EmailTag]:
    """Tags the delivery webhook parses back into owner/tag/booking ids."""
    pairs = [("type", kind), ("tag", booking.tag_id), ("owner", owner_id), ("booking", booking.booking_id)]
    return [
        EmailTag(name=name, value=_TAG_VALUE_UNSAFE.sub("_", value))
        for name, value in pairs
        if value
    ]


def _fmt_when(dt: datetime) -> str:
    return dt.strftime("%a %d %b %Y, %H:%M")


class NotificationDispatcher:
    def __init__(
        self,
        email: ResendClient,
        store: Datastore,
        identity: IdentityDirectory,
        settings: Settings,
        *,
        build_calendar: Callable[..., str] = ics.build_event,
    ) -> None:
        self._email = email
        self._store = store
        self._identity = identity
        self._settings = settings
        self._build_calendar = build_calendar

    @tracer.capture_method
    def dispatch(self, event: BookingCreated | BookingStatusChanged) -> list[SendResult]:
        booking = event.booking
        logger.info(
            "Dispatching booking notifications",
            extra={"event": event.type, "booking_id": booking.booking_id, "status": booking.status},
        )
        if isinstance(event, BookingCreated):
            return self._on_created(event)
        if booking.status == "accepted":
            owner_id, _ = self._resolve_owner(event, need_email=False)
            return [self._send_acceptance(booking, owner_id)]
        if booking.status == "declined":
            owner_id, _ = self._resolve_owner(event, need_email=False)
            return [self._send(self._decline_message(booking, owner_id))]
        logger.info("No notification for status", extra={"booking_id": booking.booking_id, "status": booking.status})
        return []

    # -- recipients -------------------------------------------------------

    def _resolve_owner(
        self, event: BookingCreated | BookingStatusChanged, *, need_email: bool
    ) -> tuple[str | None, str | None]:
        owner_id, owner_email = event.owner_id, event.owner_email
        if owner_id and (owner_email or not need_email):
            return owner_id, owner_email

        booking_id = event.booking.booking_id
        if not owner_id:
            try:
                tag = self._store.get_tag(event.booking.tag_id)
            except OmniNetError:
                logger.warning("Could not load tag to resolve owner", extra={"booking_id": booking_id})
                return None, owner_email
            owner_id = tag.owner_id
            owner_email = owner_email or tag.owner_email
        if need_email and not owner_email:
            owner_email = self._identity.get_email(owner_id)
        return owner_id, owner_email

    def _on_created(self, event: BookingCreated) -> list[SendResult]:
        booking = event.booking
        owner_id, owner_email = self._resolve_owner(event, need_email=True)
        results = [self._send(self._confirmation_message(booking, owner_id))]
        if owner_email:
            results.append(self._send(self._owner_message(booking, owner_id, owner_email)))
        else:
            logger.warning(
                "Owner contact unresolved; owner not notified",
                extra={"booking_id": booking.booking_id, "tag_id": booking.tag_id, "owner_id": owner_id},
            )
        return results

    # -- sending ----------------------------------------------------------

    def _send(self, message: EmailMessage) -> SendResult:
        try:
            result = self._email.send(message)
        except Exception as exc:
            logger.exception("Email client raised", extra={"idempotency_key": message.idempotency_key})
            result = SendResult(ok=False, error=exc.__class__.__name__)
        if result.ok:
            metrics.add_metric(name="NotificationSent", value=1, unit=MetricUnit.Count)
        else:
            metrics.add_metric(name="NotificationFailed", value=1, unit=MetricUnit.Count)
            logger.error(
                "Notification dropped",
                extra={
                    "idempotency_key": message.idempotency_key,
                    "attempts": result.attempts,
                    "status_code": result.status_code,
                    "error": result.error,
                },
            )
        return result

    def _send_acceptance(self, booking: Booking, owner_id: str | None) -> SendResult:
        attachment = self._calendar_attachment(booking)
        if attachment is None:
            return self._send(self._acceptance_message(booking, owner_id, None))

        result = self._send(self._acceptance_message(booking, owner_id, attachment))
        if result.ok:
            return result
        logger.warning(
            "Acceptance with calendar attachment failed; resending without it",
            extra={"booking_id": booking.booking_id, "status_code": result.status_code},
        )
        return self._send(self._acceptance_message(booking, owner_id, None))

    def _calendar_attachment(self, booking: Booking) -> EmailAttachment | None:
        try:
            document = self._build_calendar(
                booking_id=booking.booking_id,
                start=booking.preferred_at,
                summary="OmniNet booking",
                description=booking.message or "Booking confirmed via OmniNet",
                url=self._settings.tag_url(booking.tag_id),
            )
            content = ics.encode_attachment(document)
        except Exception:
            logger.exception("Calendar attachment generation failed", extra={"booking_id": booking.booking_id})
            return None
        return EmailAttachment(filename=CALENDAR_FILENAME, content=content, content_type=CALENDAR_CONTENT_TYPE)

    # -- messages ---------------------------------------------------------

    def _confirmation_message(self, booking: Booking, owner_id: str | None) -> EmailMessage:
        when = escape(_fmt_when(booking.preferred_at))
        html = (
            "<h2>Thanks for your booking request!</h2>"
            f"<p>We received your request for <strong>{when}</strong>.</p>"
            "<p>The tag owner has been notified and will get back to you soon.</p>"
        )
        return EmailMessage(
            to=booking.requester_email,
            subject="📅 Booking Request Received",
            html=html,
            tags=correlation_tags(TYPE_REQUEST_CONFIRMATION, booking, owner_id),
            idempotency_key=dedup_key(KEY_REQUEST_CONFIRMATION, booking.booking_id),
        )

    def _owner_message(self, booking: Booking, owner_id: str | None, owner_email: str) -> EmailMessage:
        tag_link = self._settings.tag_url(booking.tag_id)
        accept_link = f"{tag_link}?action=accept&booking={booking.booking_id}"
        decline_link = f"{tag_link}?action=decline&booking={booking.booking_id}"
        phone = (
            f"<p><b>Phone:</b> {escape(booking.requester_phone)}</p>" if booking.requester_phone else ""
        )
        html = (
            "<h2>You have a new booking request</h2>"
            f"<p><b>From:</b> {escape(booking.requester_name)} ({escape(booking.requester_email)})</p>"
            f"{phone}"
            f"<p><b>Preferred date:</b> {escape(_fmt_when(booking.preferred_at))}</p>"
            f"<p><b>Message:</b> {escape(booking.message or '(no message)')}</p>"
            '<div style="margin:20px 0;">'
            f'<a href="{escape(accept_link)}" style="background:#16a34a;color:#fff;padding:10px 20px;'
            'border-radius:8px;text-decoration:none;margin-right:10px;">✅ Accept</a>'
            f'<a href="{escape(decline_link)}" style="background:#dc2626;color:#fff;padding:10px 20px;'
            'border-radius:8px;text-decoration:none;">❌ Decline</a>'
            "</div>"
            f'<p>Or open the full request here: <a href="{escape(tag_link)}">{escape(tag_link)}</a></p>'
        )
        return EmailMessage(
            to=owner_email,
            subject="📅 New Booking Request on Your Tag",
            html=html,
            reply_to=booking.requester_email,
            tags=correlation_tags(TYPE_OWNER_NOTIFICATION, booking, owner_id),
            idempotency_key=dedup_key(KEY_OWNER_NOTIFICATION, booking.booking_id),
        )

    def _acceptance_message(
        self, booking: Booking, owner_id: str | None, attachment: EmailAttachment | None
    ) -> EmailMessage:
        when = _fmt_when(booking.preferred_at)
        tag_link = self._settings.tag_url(booking.tag_id)
        calendar_link = ics.google_calendar_link(
            start=booking.preferred_at, summary="OmniNet booking", details=tag_link
        )
        html = (
            "<h2>Good news!</h2>"
            f"<p>Your booking for <strong>{escape(when)}</strong> has been <b>ACCEPTED</b>.</p>"
            "<p>The tag owner will contact you soon.</p>"
            f'<p><a href="{escape(calendar_link)}">Add to Google Calendar</a></p>'
        )
        key = KEY_ACCEPTED if attachment is not None else KEY_ACCEPTED_NO_ATTACHMENT
        return EmailMessage(
            to=booking.requester_email,
            subject="✅ Your Booking was Accepted!",
            html=html,
            attachments=[attachment] if attachment is not None else [],
            tags=correlation_tags(TYPE_ACCEPTED, booking, owner_id),
            idempotency_key=dedup_key(key, booking.booking_id),
        )

    def _decline_message(self, booking: Booking, owner_id: str | None) -> EmailMessage:
        html = (
            "<h2>We’re sorry.</h2>"
            f"<p>Your booking for <strong>{escape(_fmt_when(booking.preferred_at))}</strong> "
            "was <b>DECLINED</b>.</p>"
            "<p>You can try booking another time or contacting the owner.</p>"
        )
        return EmailMessage(
            to=booking.requester_email,
            subject="❌ Your Booking was Declined",
            html=html,
            tags=correlation_tags(TYPE_DECLINED, booking, owner_id),
            idempotency_key=dedup_key(KEY_DECLINED, booking.booking_id),
        )
