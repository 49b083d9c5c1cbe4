"""Error taxonomy shared by the service layer and the HTTP surface."""

from __future__ import annotations


class OmniNetError(Exception):
    status_code = 500
    public_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidRequest(OmniNetError):
    status_code = 400
    public_message = "Invalid request"


class BookingsDisabled(InvalidRequest):
    public_message = "This tag is not accepting bookings right now"


class BookingTagMismatch(InvalidRequest):
    public_message = "Booking does not belong to this tag"


class NotAuthenticated(OmniNetError):
    status_code = 401
    public_message = "Sign in required"


class NotAuthorized(OmniNetError):
    # Callers only ever see the generic message; the detail stays in logs.
    status_code = 403
    public_message = "Not allowed"


class NotFound(OmniNetError):
    status_code = 404
    public_message = "Not found"


class InvalidTransition(OmniNetError):
    status_code = 409
    public_message = "Booking can no longer change status"


class BlockUnavailable(OmniNetError):
    status_code = 409
    public_message = "No longer available"


class ConcurrentModification(OmniNetError):
    status_code = 409
    public_message = "Modified by another request, reload and retry"


class DatastoreUnavailable(OmniNetError):
    status_code = 503
    public_message = "Temporarily unavailable, please retry"
