"""
Upstream row changes.

A RowChange is the raw input of the producer: one row-level write
captured from the relational database's replication log, before any
type normalization.

Two encodings are accepted:
- Plain: {"table", "op", "before", "after", "ts"}
- Debezium envelope: {"payload": {"op", "before", "after", "source": {...}, "ts_ms"}}
  (the outer "schema"/"payload" wrapper is optional)

Debezium operation codes map as follows: "c" and "r" (snapshot read)
are creates, "u" is an update, "d" is a delete.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any

from ..errors import SourceDecodeError
from ..events import Operation

OP_CODES = {
    "c": Operation.CREATE,
    "r": Operation.CREATE,
    "u": Operation.UPDATE,
    "d": Operation.DELETE,
    "create": Operation.CREATE,
    "update": Operation.UPDATE,
    "delete": Operation.DELETE,
}


@dataclass(frozen=True)
class RowChange:
    """A single captured row change.

    Attributes:
        table: Source table
        operation: create, update or delete
        before: Row image before the change (None for creates)
        after: Row image after the change (None for deletes)
        timestamp: Commit time at the source (Unix ms)
    """

    table: str
    operation: Operation
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    timestamp: int

    @property
    def row(self) -> dict[str, Any] | None:
        """The row image an event carries: before for deletes, after otherwise."""
        return self.before if self.operation == Operation.DELETE else self.after

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowChange:
        """Decode the plain encoding.

        Raises:
            SourceDecodeError: If the change is malformed
        """
        table = data.get("table")
        if not isinstance(table, str) or not table:
            raise SourceDecodeError("Change has no table", unprocessable=True)

        operation = _operation(data.get("op"), table)
        ts = data.get("ts", data.get("ts_ms"))
        return cls(
            table=table,
            operation=operation,
            before=_image(data.get("before"), table, "before"),
            after=_image(data.get("after"), table, "after"),
            timestamp=_timestamp(ts, table),
        )

    @classmethod
    def from_debezium(cls, envelope: dict[str, Any] | None) -> RowChange:
        """Decode a Debezium change envelope.

        Raises:
            SourceDecodeError: If the envelope is a tombstone or malformed
        """
        if envelope is None:
            raise SourceDecodeError("Tombstone record", unprocessable=True)

        payload = envelope.get("payload", envelope) if "op" not in envelope else envelope
        if payload is None:
            raise SourceDecodeError("Tombstone record", unprocessable=True)
        if not isinstance(payload, dict):
            raise SourceDecodeError("Debezium payload is not an object", unprocessable=True)

        source = payload.get("source") or {}
        table = source.get("table") if isinstance(source, dict) else None
        if not isinstance(table, str) or not table:
            raise SourceDecodeError("Debezium envelope has no source table", unprocessable=True)

        operation = _operation(payload.get("op"), table)
        ts = source.get("ts_ms") or payload.get("ts_ms")
        return cls(
            table=table,
            operation=operation,
            before=_image(payload.get("before"), table, "before"),
            after=_image(payload.get("after"), table, "after"),
            timestamp=_timestamp(ts, table),
        )


def decode_change(raw: RowChange | dict[str, Any] | str | bytes | None) -> RowChange:
    """Decode any supported encoding into a RowChange.

    Raises:
        SourceDecodeError: If the input is not a decodable change
    """
    if isinstance(raw, RowChange):
        return raw
    if raw is None:
        raise SourceDecodeError("Tombstone record", unprocessable=True)
    if isinstance(raw, (str, bytes)):
        if not raw.strip():
            raise SourceDecodeError("Tombstone record", unprocessable=True)
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SourceDecodeError(f"Change is not valid JSON: {e}", unprocessable=True) from e
    if raw is None:
        raise SourceDecodeError("Tombstone record", unprocessable=True)
    if not isinstance(raw, dict):
        raise SourceDecodeError("Change is not a JSON object", unprocessable=True)

    if "table" in raw:
        return RowChange.from_dict(raw)
    return RowChange.from_debezium(raw)


def _operation(value: Any, table: str) -> Operation:
    operation = OP_CODES.get(value) if isinstance(value, str) else None
    if operation is None:
        raise SourceDecodeError(f"Unknown operation {value!r}", table=table)
    return operation


def _image(value: Any, table: str, name: str) -> dict[str, Any] | None:
    if value is None or isinstance(value, dict):
        return value
    raise SourceDecodeError(f"Row image '{name}' is not an object", table=table)


def _timestamp(value: Any, table: str) -> int:
    if value is None:
        return int(time.time() * 1000)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SourceDecodeError(f"Invalid source timestamp {value!r}", table=table)
    return int(value)
