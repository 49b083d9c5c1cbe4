from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Attr, ConditionBase, Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    DynamoDBTable = Any  # type: ignore[assignment]

from .config import Settings
from .errors import ConcurrentModification, DatastoreUnavailable, NotFound
from .models import (
    AvailabilityBlock,
    AvailabilityBlockCreate,
    Booking,
    BookingCreate,
    BookingStatus,
    Tag,
)

logger = Logger()

TAG_NOT_FOUND = "Tag not found"
BOOKING_NOT_FOUND = "Booking not found"
BLOCK_NOT_FOUND = "Availability block not found"
TAG_INDEX = "tag_id_index"
OWNER_INDEX = "owner_id_index"

_CONDITIONAL_FAILURE = "ConditionalCheckFailedException"


class BookingItem(TypedDict, total=False):
    booking_id: str
    tag_id: str
    requester_id: str
    requester_name: str
    requester_email: str
    requester_phone: str
    preferred_at: str
    message: str
    status: str
    created_at: str


def _dt_to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    # fixed width so stored values order lexicographically
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _iso_to_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _now() -> datetime:
    return datetime.now(UTC)


def _to_dynamo(value: Any) -> Any:
    # DynamoDB rejects floats; free-form metadata may carry them
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == _CONDITIONAL_FAILURE


@contextmanager
def _datastore_call(operation: str, **context: Any) -> Iterator[None]:
    """Translate driver failures into a retryable error.

    Conditional-check failures pass through untouched so callers can map them
    to the conflict they represent.
    """
    try:
        yield
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise
        code = exc.response.get("Error", {}).get("Code")
        logger.warning("Datastore call failed", extra={"operation": operation, "code": code, **context})
        raise DatastoreUnavailable() from exc
    except BotoCoreError as exc:
        logger.warning(
            "Datastore unreachable",
            extra={"operation": operation, "error": exc.__class__.__name__, **context},
        )
        raise DatastoreUnavailable() from exc


class Datastore:
    """Typed access to the tags, bookings and availability tables."""

    def __init__(
        self,
        tags_table: DynamoDBTable,
        bookings_table: DynamoDBTable,
        availability_table: DynamoDBTable,
    ) -> None:
        self._tags = tags_table
        self._bookings = bookings_table
        self._blocks = availability_table

    @classmethod
    def from_settings(cls, settings: Settings) -> Datastore:
        config = Config(
            connect_timeout=settings.datastore_timeout_seconds,
            read_timeout=settings.datastore_timeout_seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        )
        dynamodb = boto3.resource("dynamodb", config=config)
        return cls(
            dynamodb.Table(settings.tags_table),
            dynamodb.Table(settings.bookings_table),
            dynamodb.Table(settings.availability_table),
        )

    # -- tags -------------------------------------------------------------

    def get_tag(self, tag_id: str) -> Tag:
        with _datastore_call("get_tag", tag_id=tag_id):
            resp = cast(dict[str, Any], self._tags.get_item(Key={"tag_id": tag_id}))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise NotFound(TAG_NOT_FOUND)
        return Tag.model_validate(_from_dynamo(item))

    def set_bookings_enabled(self, tag_id: str, enabled: bool) -> Tag:
        try:
            with _datastore_call("set_bookings_enabled", tag_id=tag_id):
                resp = cast(
                    dict[str, Any],
                    self._tags.update_item(
                        Key={"tag_id": tag_id},
                        UpdateExpression="SET #e = :e",
                        ConditionExpression=Attr("tag_id").exists(),
                        ExpressionAttributeNames={"#e": "bookings_enabled"},
                        ExpressionAttributeValues={":e": enabled},
                        ReturnValues="ALL_NEW",
                    ),
                )
        except ClientError as exc:
            raise NotFound(TAG_NOT_FOUND) from exc
        return Tag.model_validate(_from_dynamo(resp.get("Attributes") or {}))

    def list_tags_for_owner(self, owner_id: str) -> list[Tag]:
        items = self._query_index(self._tags, OWNER_INDEX, "owner_id", owner_id, "list_tags_for_owner")
        return [Tag.model_validate(_from_dynamo(it)) for it in items]

    # -- bookings ---------------------------------------------------------

    def create_booking(self, tag_id: str, payload: BookingCreate) -> Booking:
        booking_id = str(uuid.uuid4())
        item: BookingItem = {
            "booking_id": booking_id,
            "tag_id": tag_id,
            "requester_name": payload.requester_name,
            "requester_email": str(payload.requester_email),
            # stored exactly as given so a naive wall-clock time reads back unchanged
            "preferred_at": payload.preferred_at.isoformat(),
            "status": "pending",
            "created_at": _dt_to_iso(_now()),
        }
        if payload.requester_id:
            item["requester_id"] = payload.requester_id
        if payload.requester_phone:
            item["requester_phone"] = payload.requester_phone
        if payload.message:
            item["message"] = payload.message

        logger.info("Creating booking", extra={"booking_id": booking_id, "tag_id": tag_id})
        with _datastore_call("create_booking", booking_id=booking_id):
            self._bookings.put_item(
                Item=cast(dict[str, Any], item),
                ConditionExpression=Attr("booking_id").not_exists(),
            )
        return _to_booking(item)

    def get_booking(self, booking_id: str) -> Booking:
        with _datastore_call("get_booking", booking_id=booking_id):
            resp = cast(dict[str, Any], self._bookings.get_item(Key={"booking_id": booking_id}))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise NotFound(BOOKING_NOT_FOUND)
        return _to_booking(cast(BookingItem, item))

    def list_bookings_for_tag(self, tag_id: str) -> list[Booking]:
        items = self._query_index(self._bookings, TAG_INDEX, "tag_id", tag_id, "list_bookings_for_tag")
        bookings = [_to_booking(cast(BookingItem, it)) for it in items]
        return sorted(bookings, key=lambda b: b.created_at, reverse=True)

    def update_booking_status(
        self, booking_id: str, status: BookingStatus, *, expected: BookingStatus
    ) -> Booking:
        """Set ``status`` only if the stored status is still ``expected``."""
        try:
            with _datastore_call("update_booking_status", booking_id=booking_id):
                resp = cast(
                    dict[str, Any],
                    self._bookings.update_item(
                        Key={"booking_id": booking_id},
                        UpdateExpression="SET #s = :s",
                        ConditionExpression=Attr("status").eq(expected),
                        ExpressionAttributeNames={"#s": "status"},
                        ExpressionAttributeValues={":s": status},
                        ReturnValues="ALL_NEW",
                    ),
                )
        except ClientError as exc:
            raise ConcurrentModification() from exc
        attrs = cast(dict[str, Any], resp.get("Attributes") or {})
        return _to_booking(cast(BookingItem, attrs))

    # -- availability blocks ---------------------------------------------

    def create_block(self, tag_id: str, owner_id: str, payload: AvailabilityBlockCreate) -> AvailabilityBlock:
        now = _now()
        block = AvailabilityBlock(
            block_id=str(uuid.uuid4()),
            tag_id=tag_id,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
            capacity_remaining=payload.capacity_total,
            **payload.model_dump(),
        )
        return self.put_block(block)

    def put_block(self, block: AvailabilityBlock) -> AvailabilityBlock:
        item = _block_to_item(block)
        logger.info("Writing availability block", extra={"block_id": block.block_id, "tag_id": block.tag_id})
        with _datastore_call("put_block", block_id=block.block_id):
            self._blocks.put_item(Item=item, ConditionExpression=Attr("block_id").not_exists())
        return block

    def get_block(self, block_id: str) -> AvailabilityBlock:
        with _datastore_call("get_block", block_id=block_id):
            resp = cast(dict[str, Any], self._blocks.get_item(Key={"block_id": block_id}))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise NotFound(BLOCK_NOT_FOUND)
        return _to_block(item)

    def list_blocks_for_tag(self, tag_id: str) -> list[AvailabilityBlock]:
        items = self._query_index(self._blocks, TAG_INDEX, "tag_id", tag_id, "list_blocks_for_tag")
        return [_to_block(it) for it in items]

    def update_block(
        self,
        block_id: str,
        changes: dict[str, Any],
        *,
        expected_remaining: int | None,
    ) -> AvailabilityBlock:
        """Apply ``changes``; ``None`` values remove the attribute.

        The write only lands if capacity_remaining still holds
        ``expected_remaining``, so a concurrent consumption is never clobbered.
        """
        set_parts: list[str] = []
        remove_parts: list[str] = []
        names: dict[str, str] = {}
        values: dict[str, Any] = {}

        def set_attr(name: str, value: Any) -> None:
            names[f"#_{name}"] = name
            values[f":{name}"] = value
            set_parts.append(f"#_{name} = :{name}")

        for name, value in {**changes, "updated_at": _now()}.items():
            if value is None:
                names[f"#_{name}"] = name
                remove_parts.append(f"#_{name}")
            elif isinstance(value, datetime):
                set_attr(name, _dt_to_iso(value))
            else:
                set_attr(name, _to_dynamo(value))

        update_expr = " ".join(
            part
            for part in (
                ("SET " + ", ".join(set_parts)) if set_parts else "",
                ("REMOVE " + ", ".join(remove_parts)) if remove_parts else "",
            )
            if part
        )
        remaining_cond: ConditionBase = (
            Attr("capacity_remaining").not_exists()
            if expected_remaining is None
            else Attr("capacity_remaining").eq(expected_remaining)
        )
        try:
            with _datastore_call("update_block", block_id=block_id):
                resp = cast(
                    dict[str, Any],
                    self._blocks.update_item(
                        Key={"block_id": block_id},
                        UpdateExpression=update_expr,
                        ConditionExpression=Attr("block_id").exists() & remaining_cond,
                        ExpressionAttributeNames=names,
                        ExpressionAttributeValues=values,
                        ReturnValues="ALL_NEW",
                    ),
                )
        except ClientError as exc:
            raise ConcurrentModification() from exc
        return _to_block(cast(dict[str, Any], resp.get("Attributes") or {}))

    def delete_block(self, block_id: str) -> None:
        with _datastore_call("delete_block", block_id=block_id):
            self._blocks.delete_item(Key={"block_id": block_id})

    def consume_capacity(self, block_id: str, now: datetime) -> AvailabilityBlock | None:
        """Atomically take one unit from a live, unexpired, limited block.

        Returns the updated block, or ``None`` when the conditional write was
        rejected (no capacity left, not live, or past its end).
        """
        condition = (
            Attr("status").eq("live")
            & Attr("visibility").ne("private")
            & Attr("capacity_remaining").gt(0)
            & (Attr("end_at").not_exists() | Attr("end_at").gt(_dt_to_iso(now)))
        )
        try:
            with _datastore_call("consume_capacity", block_id=block_id):
                resp = cast(
                    dict[str, Any],
                    self._blocks.update_item(
                        Key={"block_id": block_id},
                        UpdateExpression="SET #r = #r - :one, #u = :now",
                        ConditionExpression=condition,
                        ExpressionAttributeNames={"#r": "capacity_remaining", "#u": "updated_at"},
                        ExpressionAttributeValues={":one": 1, ":now": _dt_to_iso(now)},
                        ReturnValues="ALL_NEW",
                    ),
                )
        except ClientError:
            return None
        return _to_block(cast(dict[str, Any], resp.get("Attributes") or {}))

    def mark_sold_out_if_exhausted(self, block_id: str) -> bool:
        try:
            with _datastore_call("mark_sold_out_if_exhausted", block_id=block_id):
                self._blocks.update_item(
                    Key={"block_id": block_id},
                    UpdateExpression="SET #s = :sold_out",
                    ConditionExpression=Attr("status").eq("live") & Attr("capacity_remaining").eq(0),
                    ExpressionAttributeNames={"#s": "status"},
                    ExpressionAttributeValues={":sold_out": "sold_out"},
                )
        except ClientError:
            return False
        return True

    # -- helpers ----------------------------------------------------------

    def _query_index(
        self, table: DynamoDBTable, index: str, key: str, value: str, operation: str
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {
            "IndexName": index,
            "KeyConditionExpression": Key(key).eq(value),
        }
        while True:
            with _datastore_call(operation, **{key: value}):
                resp = cast(dict[str, Any], table.query(**kwargs))
            items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key


def _to_booking(item: BookingItem) -> Booking:
    return Booking(
        booking_id=item["booking_id"],
        tag_id=item["tag_id"],
        requester_id=item.get("requester_id"),
        requester_name=item["requester_name"],
        requester_email=item["requester_email"],
        requester_phone=item.get("requester_phone"),
        preferred_at=_iso_to_dt(item["preferred_at"]),
        message=item.get("message"),
        status=item.get("status", "pending"),  # type: ignore[arg-type]
        created_at=_iso_to_dt(item["created_at"]),
    )


def _block_to_item(block: AvailabilityBlock) -> dict[str, Any]:
    item: dict[str, Any] = {}
    for name, value in block.model_dump().items():
        if value is None:
            continue
        item[name] = _dt_to_iso(value) if isinstance(value, datetime) else _to_dynamo(value)
    return item


def _to_block(item: dict[str, Any]) -> AvailabilityBlock:
    data = _from_dynamo(item)
    for name in ("start_at", "end_at", "created_at", "updated_at"):
        if data.get(name):
            data[name] = _iso_to_dt(data[name])
    data["capacity_total"] = _optional_int(data.get("capacity_total"))
    data["capacity_remaining"] = _optional_int(data.get("capacity_remaining"))
    return AvailabilityBlock.model_validate(data)
