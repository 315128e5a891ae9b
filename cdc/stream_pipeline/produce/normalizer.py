"""
Normalization of row changes into stream events.

The normalizer maps source column types onto stream primitives:

    TINYINT/SMALLINT/INT/BIGINT      -> int
    TINYINT(1)/BIT(1)/BOOLEAN        -> bool
    DECIMAL (string or number)       -> float
    FLOAT/DOUBLE                     -> float
    CHAR/VARCHAR/TEXT/ENUM           -> str (unchanged)
    DATE (days since epoch or ISO)   -> "YYYY-MM-DD"
    DATETIME/TIMESTAMP (epoch ms or ISO) -> ISO-8601 UTC string
    JSON (text or structure)         -> compact JSON text

Invariants:
    - Fields are never silently dropped: an unknown column is an error
    - Payload key order is the schema's column order
    - None is accepted only for nullable columns
    - Key columns must be present and non-null

How to change safely:
    - Keep conversions lossless for the values the source emits
    - A new source type needs a ColumnType and a converter here
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from ..errors import SourceDecodeError
from ..events import Event, Primitive, stream_key_for
from ..schema.registry import SchemaRegistry
from ..schema.types import ColumnDef, ColumnType, TableSchema
from .change import RowChange

EPOCH = date(1970, 1, 1)


class _Mismatch(ValueError):
    pass


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise _Mismatch("boolean is not an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise _Mismatch(f"'{value}' is not an integer") from None
    raise _Mismatch(f"{type(value).__name__} is not an integer")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("0", "1", "true", "false"):
        return value.strip().lower() in ("1", "true")
    raise _Mismatch(f"{value!r} is not a boolean")


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise _Mismatch("boolean is not a number")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise _Mismatch(f"'{value}' is not a number") from None
    else:
        raise _Mismatch(f"{type(value).__name__} is not a number")
    if not math.isfinite(number):
        raise _Mismatch(f"{value!r} is not a finite number")
    return number


def _to_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    raise _Mismatch(f"{type(value).__name__} is not a string")


def _to_date(value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return (EPOCH + timedelta(days=value)).isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10]).isoformat()
        except ValueError:
            raise _Mismatch(f"'{value}' is not a date") from None
    raise _Mismatch(f"{type(value).__name__} is not a date")


def _format_utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_datetime(value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return _format_utc(datetime.fromtimestamp(value / 1000, tz=timezone.utc))
    if isinstance(value, str):
        text = value.strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            raise _Mismatch(f"'{value}' is not a timestamp") from None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return _format_utc(moment)
    raise _Mismatch(f"{type(value).__name__} is not a timestamp")


def _to_json(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            raise _Mismatch("not valid JSON text") from None
    try:
        return json.dumps(value, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError):
        raise _Mismatch(f"{type(value).__name__} is not JSON serializable") from None


_CONVERTERS: dict[ColumnType, Callable[[Any], Primitive]] = {
    ColumnType.TINYINT: _to_int,
    ColumnType.SMALLINT: _to_int,
    ColumnType.INT: _to_int,
    ColumnType.BIGINT: _to_int,
    ColumnType.BOOLEAN: _to_bool,
    ColumnType.BIT: _to_int,
    ColumnType.DECIMAL: _to_float,
    ColumnType.FLOAT: _to_float,
    ColumnType.DOUBLE: _to_float,
    ColumnType.CHAR: _to_str,
    ColumnType.VARCHAR: _to_str,
    ColumnType.TEXT: _to_str,
    ColumnType.ENUM: _to_str,
    ColumnType.DATE: _to_date,
    ColumnType.DATETIME: _to_datetime,
    ColumnType.TIMESTAMP: _to_datetime,
    ColumnType.JSON: _to_json,
}


def normalize_value(column: ColumnDef, value: Any) -> Primitive:
    """Convert one source value to its stream primitive.

    Raises:
        ValueError: If the value does not fit the column type
    """
    if value is None:
        if not column.nullable:
            raise _Mismatch("NULL in a non-nullable column")
        return None
    if column.is_boolean:
        return _to_bool(value)
    return _CONVERTERS[column.type](value)


class Normalizer:
    """Turns RowChanges into Events using the schema registry.

    Example:
        >>> normalizer = Normalizer(load_catalog())
        >>> event = normalizer.normalize(change)
        >>> event.entity_key
        'movie:1'
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    def schema_for(self, table: str) -> TableSchema:
        """Schema of a source table.

        Raises:
            SourceDecodeError: If the table is not in the catalog
        """
        schema = self.registry.get_table(table)
        if schema is None:
            raise SourceDecodeError(f"Unknown table '{table}'", table=table, unprocessable=True)
        return schema

    def stream_key_for(self, table: str) -> str | None:
        """Stream a table's changes go to, or None if the table is unknown."""
        schema = self.registry.get_table(table)
        return stream_key_for(schema.entity_type) if schema else None

    def normalize_row(self, schema: TableSchema, row: dict[str, Any]) -> dict[str, Primitive]:
        """Normalize a full row image in column order.

        Raises:
            SourceDecodeError: On unknown columns or values that do not fit
        """
        stream_key = stream_key_for(schema.entity_type)
        unknown = [name for name in row if schema.get_column(name) is None]
        if unknown:
            raise SourceDecodeError(
                f"Unknown column '{unknown[0]}' in table '{schema.table}'",
                table=schema.table,
                stream_key=stream_key,
                column=unknown[0],
            )

        for key in schema.key_columns:
            if row.get(key) is None:
                raise SourceDecodeError(
                    f"Missing key column '{key}' in table '{schema.table}'",
                    table=schema.table,
                    stream_key=stream_key,
                    column=key,
                )

        result: dict[str, Primitive] = {}
        for column in schema.columns:
            try:
                result[column.name] = normalize_value(column, row.get(column.name))
            except ValueError as e:
                raise SourceDecodeError(
                    f"Column '{schema.table}.{column.name}' ({column.type.value}): {e}",
                    table=schema.table,
                    stream_key=stream_key,
                    column=column.name,
                ) from e
        return result

    def normalize(self, change: RowChange) -> Event:
        """Build the event for a change (entry_id unset).

        Raises:
            SourceDecodeError: If the change does not match its table schema
        """
        schema = self.schema_for(change.table)
        stream_key = stream_key_for(schema.entity_type)

        row = change.row
        if row is None:
            image = "before" if change.operation.value == "delete" else "after"
            raise SourceDecodeError(
                f"{change.operation.value} on '{schema.table}' has no {image} image",
                table=schema.table,
                stream_key=stream_key,
            )

        payload = self.normalize_row(schema, row)
        before = None
        if change.before is not None and change.row is not change.before:
            before = self.normalize_row(schema, change.before)

        return Event(
            stream_key=stream_key,
            entity_type=schema.entity_type,
            entity_key=schema.entity_key(payload),
            table=schema.table,
            operation=change.operation,
            payload=payload,
            source_timestamp=change.timestamp,
            before_image=before,
        )
