"""
Change events as they travel through the stream log.

An Event is one normalized row change. The producer builds it from an
upstream change and appends its flat wire form; every consumer decodes
the same wire form back into an Event.

Invariants:
    - entry_id is assigned by the stream log, never by the producer
    - payload values are primitives only (str, int, float, bool, None)
    - payload key order follows the source schema's column order
    - The wire form is a flat str -> str mapping

How to change safely:
    - Add new wire fields as optional; old entries must still decode
    - Never rename existing wire fields (consumers of old entries break)
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .stream.base import EntryId, StreamEntry, StreamSerializationError

Primitive = str | int | float | bool | None

STREAM_PREFIX = "events:"


class Operation(Enum):
    """Kind of row change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_str(cls, value: str) -> Operation:
        """Convert wire string to Operation.

        Raises:
            ValueError: If value is not a known operation
        """
        for op in cls:
            if op.value == value:
                return op
        raise ValueError(f"Invalid operation '{value}'. Valid operations: {[o.value for o in cls]}")


def stream_key_for(entity_type: str) -> str:
    """Stream key carrying the changes of one entity type."""
    return f"{STREAM_PREFIX}{entity_type}"


def _flat_image(entry: StreamEntry, name: str, image: Any) -> dict[str, Primitive]:
    """Check a decoded row image is an object of finite primitives."""
    if not isinstance(image, dict):
        raise StreamSerializationError(
            f"Entry {entry.entry_id} on {entry.stream_key}: {name} is not a JSON object"
        )
    for column, value in image.items():
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise StreamSerializationError(
                f"Entry {entry.entry_id} on {entry.stream_key}: {name}.{column} is not a primitive"
            )
        if isinstance(value, float) and not math.isfinite(value):
            raise StreamSerializationError(
                f"Entry {entry.entry_id} on {entry.stream_key}: {name}.{column} is not finite"
            )
    return image


@dataclass
class Event:
    """A normalized change event.

    Attributes:
        stream_key: Stream the event lives on
        entity_type: Entity type (e.g. "movie")
        entity_key: Identity of the row, "<entity_type>:<id>"
        table: Source table
        operation: create, update or delete
        payload: Ordered field -> primitive mapping (after image; before
            image for deletes)
        source_timestamp: Commit time at the source (Unix ms)
        before_image: Previous row image, if the source provided one
        entry_id: Position in the stream (None until appended)

    Example:
        {
            "entity_type": "movie",
            "op": "update",
            "key": "movie:1",
            "table": "movies",
            "ts": "1730000000000",
            "payload": "{\"title\":\"Arrival\",\"year\":2017}",
            "before": ""
        }
    """

    stream_key: str
    entity_type: str
    entity_key: str
    table: str
    operation: Operation
    payload: dict[str, Primitive]
    source_timestamp: int
    before_image: dict[str, Primitive] | None = None
    entry_id: EntryId | None = None

    @property
    def version(self) -> tuple[int, EntryId]:
        """Last-write-wins version of this event."""
        if self.entry_id is None:
            raise ValueError(f"Event for {self.entity_key} has not been appended")
        return (self.source_timestamp, self.entry_id)

    def to_fields(self) -> dict[str, str]:
        """Encode as the flat wire mapping."""
        return {
            "entity_type": self.entity_type,
            "op": self.operation.value,
            "key": self.entity_key,
            "table": self.table,
            "ts": str(self.source_timestamp),
            "payload": json.dumps(self.payload, separators=(",", ":")),
            "before": (
                json.dumps(self.before_image, separators=(",", ":"))
                if self.before_image is not None
                else ""
            ),
        }

    @classmethod
    def from_entry(cls, entry: StreamEntry) -> Event:
        """Decode a stream entry.

        Raises:
            StreamSerializationError: If required fields are missing or invalid,
                or an image is not a flat object of primitives
        """
        fields = entry.fields
        required = ["entity_type", "op", "key", "ts", "payload"]
        missing = [f for f in required if f not in fields]
        if missing:
            raise StreamSerializationError(
                f"Entry {entry.entry_id} on {entry.stream_key} missing fields: {missing}"
            )

        try:
            payload = json.loads(fields["payload"])
            before_raw = fields.get("before") or ""
            before = json.loads(before_raw) if before_raw else None
            operation = Operation.from_str(fields["op"])
            source_timestamp = int(fields["ts"])
        except (ValueError, TypeError) as e:
            raise StreamSerializationError(
                f"Entry {entry.entry_id} on {entry.stream_key} is not a valid event: {e}"
            ) from e

        return cls(
            stream_key=entry.stream_key,
            entity_type=fields["entity_type"],
            entity_key=fields["key"],
            table=fields.get("table", ""),
            operation=operation,
            payload=_flat_image(entry, "payload", payload),
            source_timestamp=source_timestamp,
            before_image=_flat_image(entry, "before", before) if before is not None else None,
            entry_id=entry.entry_id,
        )

    def notification(self, topic: str) -> dict[str, Any]:
        """Outbound notification body for websocket clients."""
        return {
            "topic": topic,
            "operation": self.operation.value,
            "key": self.entity_key,
            "entity_type": self.entity_type,
            "payload": self.payload,
        }
