from __future__ import annotations

from aws_lambda_powertools import Logger
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from starlette.responses import Response

from .auth import current_actor, optional_actor
from .availability import AvailabilityLedger
from .bookings import BookingLifecycle, status_for_action
from .errors import DatastoreUnavailable, NotAuthenticated, NotAuthorized, OmniNetError
from .models import (
    ActionResult,
    AvailabilityBlock,
    AvailabilityBlockCreate,
    AvailabilityBlockUpdate,
    Booking,
    BookingCreate,
    BookingsEnabledUpdate,
    BookingTransition,
    OwnerBookings,
    OwnerListing,
    PublicListing,
    SubmitResult,
    Tag,
    TransitionResult,
)
from .wiring import get_ledger, get_lifecycle

logger = Logger()

app = FastAPI(title="OmniNet Bookings API", version="0.1.0")


class PublicTag(BaseModel):
    tag_id: str
    owner_id: str
    title: str
    description: str | None = None
    bookings_enabled: bool


def _public_tag(tag: Tag) -> PublicTag:
    return PublicTag.model_validate(tag.model_dump(exclude={"owner_email"}))


@app.exception_handler(OmniNetError)
def handle_omninet_error(request: Request, exc: OmniNetError) -> JSONResponse:
    # ownership details never leave the service
    detail = exc.public_message if isinstance(exc, NotAuthorized) else exc.message
    headers = {"Retry-After": "1"} if isinstance(exc, DatastoreUnavailable) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": detail}, headers=headers)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# -- tags & bookings ---------------------------------------------------------


@app.get("/tags/{tag_id}", response_model=PublicTag)
def get_tag(
    tag_id: str,
    request: Request,
    booking: str | None = None,
    action: str | None = None,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str | None = Depends(optional_actor),
) -> Response | PublicTag:
    """Tag page; ``?booking=&action=`` is the owner's emailed Accept/Decline link."""
    if booking and action:
        if actor is None:
            raise NotAuthenticated()
        result = lifecycle.transition(booking, status_for_action(action), actor, expected_tag_id=tag_id)
        # strip the action so reloading the page cannot repeat it
        clean_url = request.url.remove_query_params(["booking", "action"])
        return RedirectResponse(
            str(clean_url), status_code=303, headers={"X-Booking-Result": result.booking.status}
        )
    return _public_tag(lifecycle.get_tag(tag_id))


@app.put("/tags/{tag_id}/bookings-enabled", response_model=PublicTag)
def set_bookings_enabled(
    tag_id: str,
    payload: BookingsEnabledUpdate,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str = Depends(current_actor),
) -> PublicTag:
    return _public_tag(lifecycle.set_bookings_enabled(tag_id, actor, payload.bookings_enabled))


@app.post("/tags/{tag_id}/bookings", response_model=SubmitResult, status_code=201)
def submit_booking(
    tag_id: str,
    payload: BookingCreate,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str | None = Depends(optional_actor),
) -> SubmitResult:
    return lifecycle.submit(tag_id, payload.model_copy(update={"requester_id": actor}))


@app.get("/tags/{tag_id}/bookings", response_model=list[Booking])
def list_bookings(
    tag_id: str,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str = Depends(current_actor),
) -> list[Booking]:
    return lifecycle.list_for_owner(tag_id, actor)


@app.get("/bookings", response_model=OwnerBookings)
def my_bookings(
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str = Depends(current_actor),
) -> OwnerBookings:
    return lifecycle.list_all_for_owner(actor)


@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str = Depends(current_actor),
) -> Booking:
    return lifecycle.get_for_owner(booking_id, actor)


@app.post("/bookings/{booking_id}/status", response_model=TransitionResult)
def transition_booking(
    booking_id: str,
    payload: BookingTransition,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
    actor: str = Depends(current_actor),
) -> TransitionResult:
    return lifecycle.transition(booking_id, payload.status, actor)


# -- availability ------------------------------------------------------------


@app.get("/tags/{tag_id}/availability", response_model=PublicListing)
def public_availability(tag_id: str, ledger: AvailabilityLedger = Depends(get_ledger)) -> PublicListing:
    return ledger.list_public(tag_id)


@app.get("/tags/{tag_id}/availability/manage", response_model=OwnerListing)
def owner_availability(
    tag_id: str,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> OwnerListing:
    return ledger.list_for_owner(tag_id, actor)


@app.post("/tags/{tag_id}/availability", response_model=AvailabilityBlock, status_code=201)
def create_block(
    tag_id: str,
    payload: AvailabilityBlockCreate,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> AvailabilityBlock:
    return ledger.create(tag_id, actor, payload)


@app.patch("/availability/{block_id}", response_model=AvailabilityBlock)
def update_block(
    block_id: str,
    payload: AvailabilityBlockUpdate,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> AvailabilityBlock:
    return ledger.update(block_id, actor, payload)


@app.post("/availability/{block_id}/duplicate", response_model=AvailabilityBlock, status_code=201)
def duplicate_block(
    block_id: str,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> AvailabilityBlock:
    return ledger.duplicate(block_id, actor)


@app.post("/availability/{block_id}/toggle", response_model=AvailabilityBlock)
def toggle_block(
    block_id: str,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> AvailabilityBlock:
    return ledger.toggle_live(block_id, actor)


@app.post("/availability/{block_id}/sold-out", response_model=AvailabilityBlock)
def mark_block_sold_out(
    block_id: str,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> AvailabilityBlock:
    return ledger.mark_sold_out(block_id, actor)


@app.delete("/availability/{block_id}")
def delete_block(
    block_id: str,
    ledger: AvailabilityLedger = Depends(get_ledger),
    actor: str = Depends(current_actor),
) -> Response:
    ledger.delete(block_id, actor)
    return Response(status_code=204)


@app.post("/availability/{block_id}/actions", response_model=ActionResult)
def take_block_action(block_id: str, ledger: AvailabilityLedger = Depends(get_ledger)) -> ActionResult:
    return ledger.take_action(block_id)
