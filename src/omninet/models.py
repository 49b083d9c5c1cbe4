from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

BookingStatus = Literal["pending", "accepted", "declined", "cancelled"]
OwnerDecision = Literal["accepted", "declined"]
BlockStatus = Literal["draft", "live", "paused", "sold_out", "expired"]
ActionType = Literal["book", "order", "reserve", "enquire", "pay"]
Visibility = Literal["public", "unlisted", "private"]

PAID_ACTION_TYPES = ("pay", "order")


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class Tag(BaseModel):
    tag_id: str
    owner_id: str
    title: str = ""
    description: str | None = None
    bookings_enabled: bool = False
    # contact address copied onto the tag by the owner; absent for most tags
    owner_email: str | None = None


class BookingCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    requester_name: str = Field(..., min_length=1, max_length=200)
    requester_email: EmailStr
    requester_phone: str | None = Field(default=None, max_length=32)
    # wall-clock time as entered by the visitor; kept timezone-naive if given so
    preferred_at: datetime
    message: str | None = Field(default=None, max_length=2000)
    requester_id: str | None = None

    @field_validator("requester_phone", "message")
    @classmethod
    def _optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class Booking(BaseModel):
    booking_id: str
    tag_id: str
    requester_id: str | None = None
    requester_name: str
    requester_email: str
    requester_phone: str | None = None
    preferred_at: datetime
    message: str | None = None
    status: BookingStatus = "pending"
    created_at: datetime


class BookingTransition(BaseModel):
    status: OwnerDecision


class SubmitResult(BaseModel):
    booking_id: str
    status: BookingStatus


class TransitionResult(BaseModel):
    booking: Booking
    changed: bool
    message: str


class OwnerBookings(BaseModel):
    """Every booking across an owner's tags, newest first in each group."""

    pending: list[Booking] = Field(default_factory=list)
    others: list[Booking] = Field(default_factory=list)


class BookingsEnabledUpdate(BaseModel):
    bookings_enabled: bool


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class _BlockWindow(BaseModel):
    start_at: datetime | None = None
    end_at: datetime | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> Any:
        if self.end_at is not None and self.start_at is None:
            raise ValueError("Set a start time if you set an end time")
        if self.start_at is not None and self.end_at is not None and self.end_at < self.start_at:
            raise ValueError("End time must not be before start time")
        return self


class AvailabilityBlockCreate(_BlockWindow):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    timezone: str = "Europe/London"
    capacity_total: int | None = Field(default=None, ge=0)
    status: BlockStatus = "live"
    action_type: ActionType = "book"
    price_pence: int | None = Field(default=None, ge=0)
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    visibility: Visibility = "public"
    sort_rank: int = 0
    meta: dict[str, Any] | None = None

    @field_validator("description")
    @classmethod
    def _optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class AvailabilityBlockUpdate(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    capacity_total: int | None = Field(default=None, ge=0)
    capacity_remaining: int | None = Field(default=None, ge=0)
    status: BlockStatus | None = None
    action_type: ActionType | None = None
    price_pence: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    visibility: Visibility | None = None
    sort_rank: int | None = None
    meta: dict[str, Any] | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else as_utc(value)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str | None) -> str | None:
        return None if value is None else value.upper()


class AvailabilityBlock(BaseModel):
    block_id: str
    tag_id: str
    owner_id: str
    title: str
    description: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str = "Europe/London"
    capacity_total: int | None = None
    capacity_remaining: int | None = None
    status: BlockStatus = "draft"
    action_type: ActionType = "book"
    price_pence: int | None = None
    currency: str = "GBP"
    visibility: Visibility = "public"
    sort_rank: int = 0
    meta: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_limited(self) -> bool:
        return self.capacity_total is not None

    @property
    def capacity_exhausted(self) -> bool:
        return self.is_limited and (self.capacity_remaining or 0) <= 0

    def is_past(self, now: datetime) -> bool:
        return self.end_at is not None and self.end_at < now


class PublicBlock(BaseModel):
    block_id: str
    tag_id: str
    title: str
    description: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str
    action_type: ActionType
    action_label: str
    price_pence: int | None = None
    currency: str
    capacity_total: int | None = None
    capacity_remaining: int | None = None
    capacity_text: str
    sort_rank: int = 0


class PublicListing(BaseModel):
    always: list[PublicBlock] = Field(default_factory=list)
    upcoming: list[PublicBlock] = Field(default_factory=list)


class OwnerListing(BaseModel):
    always: list[AvailabilityBlock] = Field(default_factory=list)
    upcoming: list[AvailabilityBlock] = Field(default_factory=list)
    past: list[AvailabilityBlock] = Field(default_factory=list)


class ActionResult(BaseModel):
    block: AvailabilityBlock
    capacity_remaining: int | None = None
    sold_out: bool = False
