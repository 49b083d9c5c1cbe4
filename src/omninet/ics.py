"""Single-event iCalendar documents for accepted bookings."""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

DEFAULT_DURATION = timedelta(minutes=60)
PRODID = "-//OmniNet//Bookings//EN"
UID_DOMAIN = "omninethq.co.uk"


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _format_dt(dt: datetime) -> str:
    # naive times stay floating (the visitor's wall clock), aware ones go to UTC
    if dt.tzinfo is None:
        return dt.strftime("%Y%m%dT%H%M%S")
    return dt.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def _fold(line: str) -> str:
    # RFC 5545: lines longer than 75 octets continue with a leading space;
    # a break never splits a multi-byte character
    chunks: list[str] = []
    current, size = "", 0
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > 75:
            chunks.append(current)
            current, size = " ", 1
        current += char
        size += width
    chunks.append(current)
    return "\r\n".join(chunks)


def booking_uid(booking_id: str) -> str:
    return f"booking-{booking_id}@{UID_DOMAIN}"


def build_event(
    *,
    booking_id: str,
    start: datetime,
    summary: str,
    description: str,
    url: str,
    duration: timedelta = DEFAULT_DURATION,
    now: datetime | None = None,
) -> str:
    stamp = (now or datetime.now(UTC)).astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{booking_uid(booking_id)}",
        f"DTSTAMP:{stamp}",
        f"CREATED:{stamp}",
        f"DTSTART:{_format_dt(start)}",
        f"DTEND:{_format_dt(start + duration)}",
        f"SUMMARY:{_escape(summary)}",
        f"DESCRIPTION:{_escape(description)}",
        f"URL:{url}",
        "STATUS:CONFIRMED",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(_fold(line) for line in lines) + "\r\n"


def encode_attachment(document: str) -> str:
    return base64.b64encode(document.encode("utf-8")).decode("ascii")


def google_calendar_link(
    *, start: datetime, summary: str, details: str, duration: timedelta = DEFAULT_DURATION
) -> str:
    params = {
        "action": "TEMPLATE",
        "text": summary,
        "dates": f"{_format_dt(start)}/{_format_dt(start + duration)}",
        "details": details,
    }
    return "https://calendar.google.com/calendar/render?" + urlencode(params)
