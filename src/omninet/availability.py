"""Availability blocks: owner management, public listing and capacity consumption."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit

from .auth import Actor, is_system
from .dal import Datastore
from .errors import BlockUnavailable, InvalidRequest, NotAuthorized
from .models import (
    PAID_ACTION_TYPES,
    ActionResult,
    AvailabilityBlock,
    AvailabilityBlockCreate,
    AvailabilityBlockUpdate,
    OwnerListing,
    PublicBlock,
    PublicListing,
    Tag,
)

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="OmniNet")

LOW_CAPACITY_THRESHOLD = 3
ACTION_LABELS = {
    "book": "Book",
    "reserve": "Reserve",
    "enquire": "Enquire",
    "order": "Order",
    "pay": "Pay now",
}
CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€"}


def _utcnow() -> datetime:
    return datetime.now(UTC)


# -- read-path classification ----------------------------------------------


def classify_blocks(blocks: Iterable[AvailabilityBlock], now: datetime) -> OwnerListing:
    """Partition into always / upcoming / past.

    Past is decided by ``end_at`` alone; the stored status never keeps an
    ended block out of the past group.
    """
    listing = OwnerListing()
    for block in blocks:
        if block.is_past(now):
            listing.past.append(block)
        elif block.start_at is None and block.end_at is None:
            listing.always.append(block)
        else:
            listing.upcoming.append(block)

    # stable sorts: secondary key first
    listing.upcoming.sort(key=lambda b: -b.sort_rank)
    listing.upcoming.sort(key=lambda b: b.start_at or datetime.min.replace(tzinfo=UTC))
    listing.always.sort(key=lambda b: -b.sort_rank)
    listing.past.sort(key=lambda b: b.end_at or datetime.min.replace(tzinfo=UTC), reverse=True)
    return listing


def is_effectively_live(block: AvailabilityBlock, now: datetime) -> bool:
    return block.status == "live" and not block.capacity_exhausted and not block.is_past(now)


def format_money(pence: int | None, currency: str | None) -> str | None:
    if pence is None:
        return None
    code = (currency or "GBP").upper()
    amount = f"{pence / 100:.2f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    return f"{symbol}{amount}" if symbol else f"{code} {amount}"


def capacity_text(block: AvailabilityBlock) -> str:
    if not block.is_limited:
        return "Unlimited"
    left = max(0, block.capacity_remaining or 0)
    return f"Only {left} left" if left <= LOW_CAPACITY_THRESHOLD else f"{left} left"


def action_label(block: AvailabilityBlock) -> str:
    base = ACTION_LABELS.get(block.action_type, "Open")
    price = format_money(block.price_pence, block.currency) if block.action_type in PAID_ACTION_TYPES else None
    return f"{base} · {price}" if price else base


def to_public(block: AvailabilityBlock) -> PublicBlock:
    return PublicBlock(
        block_id=block.block_id,
        tag_id=block.tag_id,
        title=block.title,
        description=block.description,
        start_at=block.start_at,
        end_at=block.end_at,
        timezone=block.timezone,
        action_type=block.action_type,
        action_label=action_label(block),
        price_pence=block.price_pence,
        currency=block.currency,
        capacity_total=block.capacity_total,
        capacity_remaining=max(0, block.capacity_remaining) if block.capacity_remaining is not None else None,
        capacity_text=capacity_text(block),
        sort_rank=block.sort_rank,
    )


# -- ledger ------------------------------------------------------------------


class AvailabilityLedger:
    def __init__(self, store: Datastore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def _authorize_tag(self, tag_id: str, actor: Actor) -> Tag:
        tag = self._store.get_tag(tag_id)
        if not is_system(actor) and actor != tag.owner_id:
            logger.warning("Actor is not the tag owner", extra={"tag_id": tag_id, "actor": actor})
            raise NotAuthorized()
        return tag

    def _owned_block(self, block_id: str, actor: Actor) -> AvailabilityBlock:
        block = self._store.get_block(block_id)
        # ownership follows the tag, not the owner_id stamped on the block
        self._authorize_tag(block.tag_id, actor)
        return block

    @tracer.capture_method
    def create(self, tag_id: str, actor: Actor, payload: AvailabilityBlockCreate) -> AvailabilityBlock:
        tag = self._authorize_tag(tag_id, actor)
        owner_id = actor if isinstance(actor, str) else tag.owner_id
        block = self._store.create_block(tag_id, owner_id, payload)
        logger.info("Availability block created", extra={"block_id": block.block_id, "tag_id": tag_id})
        return block

    def duplicate(self, block_id: str, actor: Actor) -> AvailabilityBlock:
        source = self._owned_block(block_id, actor)
        fields = source.model_dump(include=set(AvailabilityBlockCreate.model_fields))
        fields.update(title=f"{source.title[:193]} (copy)", status="draft")
        # a fresh block starts full: create_block seeds remaining from the total
        payload = AvailabilityBlockCreate.model_validate(fields)
        owner_id = actor if isinstance(actor, str) else source.owner_id
        block = self._store.create_block(source.tag_id, owner_id, payload)
        logger.info("Availability block duplicated", extra={"block_id": block.block_id, "source_id": block_id})
        return block

    @tracer.capture_method
    def update(self, block_id: str, actor: Actor, patch: AvailabilityBlockUpdate) -> AvailabilityBlock:
        block = self._owned_block(block_id, actor)
        changes: dict[str, Any] = {name: getattr(patch, name) for name in patch.model_fields_set}
        if not changes:
            return block

        start_at = changes.get("start_at", block.start_at)
        end_at = changes.get("end_at", block.end_at)
        if end_at is not None and start_at is None:
            raise InvalidRequest("Set a start time if you set an end time")
        if start_at is not None and end_at is not None and end_at < start_at:
            raise InvalidRequest("End time must not be before start time")
        for required in ("title", "timezone", "status", "action_type", "currency", "visibility", "sort_rank"):
            if required in changes and changes[required] is None:
                raise InvalidRequest(f"{required} cannot be cleared")

        changes.update(self._capacity_changes(block, changes))
        updated = self._store.update_block(block_id, changes, expected_remaining=block.capacity_remaining)
        logger.info("Availability block updated", extra={"block_id": block_id, "fields": sorted(changes)})
        return updated

    @staticmethod
    def _capacity_changes(block: AvailabilityBlock, changes: dict[str, Any]) -> dict[str, Any]:
        """Keep 0 <= capacity_remaining <= capacity_total after a capacity edit."""
        if "capacity_total" not in changes and "capacity_remaining" not in changes:
            return {}
        total = changes.get("capacity_total", block.capacity_total)
        if total is None:
            if changes.get("capacity_remaining") is not None:
                raise InvalidRequest("Unlimited blocks have no remaining capacity")
            return {"capacity_total": None, "capacity_remaining": None}

        if "capacity_remaining" in changes and changes["capacity_remaining"] is not None:
            remaining = changes["capacity_remaining"]
            if remaining > total:
                raise InvalidRequest("Remaining capacity cannot exceed total capacity")
        elif block.capacity_total is None:
            remaining = total
        else:
            # carry over what has already been consumed
            consumed = block.capacity_total - (block.capacity_remaining or 0)
            remaining = min(total, max(0, total - consumed))
        return {"capacity_total": total, "capacity_remaining": remaining}

    def toggle_live(self, block_id: str, actor: Actor) -> AvailabilityBlock:
        block = self._owned_block(block_id, actor)
        status = "paused" if block.status == "live" else "live"
        return self._store.update_block(block_id, {"status": status}, expected_remaining=block.capacity_remaining)

    def mark_sold_out(self, block_id: str, actor: Actor) -> AvailabilityBlock:
        block = self._owned_block(block_id, actor)
        return self._store.update_block(
            block_id, {"status": "sold_out"}, expected_remaining=block.capacity_remaining
        )

    def delete(self, block_id: str, actor: Actor) -> None:
        self._owned_block(block_id, actor)
        self._store.delete_block(block_id)
        logger.info("Availability block deleted", extra={"block_id": block_id})

    def list_public(self, tag_id: str) -> PublicListing:
        now = self._clock()
        visible = [
            b
            for b in self._store.list_blocks_for_tag(tag_id)
            if b.visibility == "public" and is_effectively_live(b, now)
        ]
        grouped = classify_blocks(visible, now)
        return PublicListing(
            always=[to_public(b) for b in grouped.always],
            upcoming=[to_public(b) for b in grouped.upcoming],
        )

    def list_for_owner(self, tag_id: str, actor: Actor) -> OwnerListing:
        self._authorize_tag(tag_id, actor)
        return classify_blocks(self._store.list_blocks_for_tag(tag_id), self._clock())

    @tracer.capture_method
    def take_action(self, block_id: str) -> ActionResult:
        """A visitor acts on a block; limited blocks give up one unit atomically."""
        now = self._clock()
        block = self._store.get_block(block_id)
        if block.visibility == "private" or not is_effectively_live(block, now):
            metrics.add_metric(name="CapacityRejected", value=1, unit=MetricUnit.Count)
            raise BlockUnavailable()
        if not block.is_limited:
            return ActionResult(block=block)

        updated = self._store.consume_capacity(block_id, now)
        if updated is None:
            logger.info("Capacity exhausted at consumption", extra={"block_id": block_id})
            metrics.add_metric(name="CapacityRejected", value=1, unit=MetricUnit.Count)
            raise BlockUnavailable()

        metrics.add_metric(name="CapacityConsumed", value=1, unit=MetricUnit.Count)
        remaining = updated.capacity_remaining or 0
        if remaining == 0 and self._store.mark_sold_out_if_exhausted(block_id):
            updated = updated.model_copy(update={"status": "sold_out"})
        logger.info("Capacity consumed", extra={"block_id": block_id, "remaining": remaining})
        return ActionResult(block=updated, capacity_remaining=remaining, sold_out=remaining == 0)
