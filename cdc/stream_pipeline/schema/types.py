"""
Core type definitions for the source schema catalog.

This module describes the relational tables the pipeline captures:
- ColumnType: Source database column types (MySQL/Debezium names)
- ColumnDef: A single column of a source table
- EdgeDef: A foreign-key-like column that becomes a graph edge
- TableSchema: One captured table and the entity type it produces

Invariants:
    - Every table has at least one key column
    - Key columns and edge columns must be declared columns
    - Column order is the payload order of every event for the table
    - entity_type is unique across the catalog (one stream per type)

How to change safely:
    - Add new columns as nullable; producers reject unknown columns
    - Never change the type of an existing column without a backfill
    - Changing key_columns changes entity identity (full re-projection)

Example:
    >>> from cdc.stream_pipeline.schema.types import TableSchema, column
    >>> Movies = TableSchema(
    ...     table="movies",
    ...     entity_type="movie",
    ...     key_columns=("movie_id",),
    ...     columns=(
    ...         column("movie_id", "INT", nullable=False),
    ...         column("title", "VARCHAR"),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any


class ColumnType(Enum):
    """Supported source column types.

    Values are the type names reported by the source database. The
    normalizer maps each one onto a stream primitive.
    """

    TINYINT = "TINYINT"
    SMALLINT = "SMALLINT"
    INT = "INT"
    BIGINT = "BIGINT"
    BOOLEAN = "BOOLEAN"
    BIT = "BIT"
    DECIMAL = "DECIMAL"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    CHAR = "CHAR"
    VARCHAR = "VARCHAR"
    TEXT = "TEXT"
    ENUM = "ENUM"
    DATE = "DATE"
    DATETIME = "DATETIME"
    TIMESTAMP = "TIMESTAMP"
    JSON = "JSON"

    @classmethod
    def from_str(cls, value: str) -> ColumnType:
        """Convert a source type name to ColumnType.

        Accepts case-insensitive names and aliases INTEGER/BOOL.

        Raises:
            ValueError: If value is not a supported column type
        """
        name = value.strip().upper()
        aliases = {"INTEGER": "INT", "BOOL": "BOOLEAN", "MEDIUMINT": "INT", "LONGTEXT": "TEXT"}
        name = aliases.get(name, name)
        for kind in cls:
            if kind.value == name:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid column type '{value}'. Valid types: {valid}")

    @property
    def is_integer(self) -> bool:
        return self in (ColumnType.TINYINT, ColumnType.SMALLINT, ColumnType.INT, ColumnType.BIGINT)


@dataclass(frozen=True)
class ColumnDef:
    """Definition of a single source column.

    Attributes:
        name: Column name as captured
        type: Source column type
        nullable: Whether NULL is allowed
        length: Declared display width/length (TINYINT(1) and BIT(1)
            are booleans)
    """

    name: str
    type: ColumnType
    nullable: bool = True
    length: int | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Column name cannot be empty")

    @property
    def is_boolean(self) -> bool:
        """Whether values of this column normalize to bool."""
        if self.type == ColumnType.BOOLEAN:
            return True
        return self.type in (ColumnType.TINYINT, ColumnType.BIT) and self.length == 1

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "type": self.type.value}
        if not self.nullable:
            result["nullable"] = False
        if self.length is not None:
            result["length"] = self.length
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnDef:
        return cls(
            name=data["name"],
            type=ColumnType.from_str(data["type"]),
            nullable=data.get("nullable", True),
            length=data.get("length"),
        )


def column(
    name: str,
    type: str | ColumnType,
    *,
    nullable: bool = True,
    length: int | None = None,
) -> ColumnDef:
    """Convenience function to create a ColumnDef.

    Example:
        >>> title = column("title", "VARCHAR", nullable=False)
        >>> active = column("active", "TINYINT", length=1)
    """
    if isinstance(type, str):
        type = ColumnType.from_str(type)
    return ColumnDef(name=name, type=type, nullable=nullable, length=length)


@dataclass(frozen=True)
class EdgeDef:
    """A column whose value references another entity.

    The graph projector turns each non-null edge column into an outgoing
    edge from the row's node to "<target_type>:<value>".

    Attributes:
        field: Column holding the referenced id
        target_type: Entity type of the referenced row
        label: Edge label in the graph
    """

    field: str
    target_type: str
    label: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "target_type": self.target_type, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EdgeDef:
        return cls(field=data["field"], target_type=data["target_type"], label=data["label"])


@dataclass(frozen=True)
class TableSchema:
    """Definition of one captured source table.

    Attributes:
        table: Source table name
        entity_type: Entity type produced from its rows
        key_columns: Columns forming the row identity
        columns: All columns, in payload order
        edges: Columns that become graph edges
        topic: Notification topic (defaults to entity_type)
        description: Human-readable description

    Example:
        >>> Comments = TableSchema(
        ...     table="comments",
        ...     entity_type="comment",
        ...     key_columns=("comment_id",),
        ...     columns=(column("comment_id", "BIGINT", nullable=False),
        ...              column("movie_id", "INT")),
        ...     edges=(EdgeDef("movie_id", "movie", "ABOUT"),),
        ...     topic="comments",
        ... )
    """

    table: str
    entity_type: str
    key_columns: tuple[str, ...]
    columns: tuple[ColumnDef, ...] = dataclass_field(default_factory=tuple)
    edges: tuple[EdgeDef, ...] = dataclass_field(default_factory=tuple)
    topic: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        """Validate table definition."""
        if not self.table:
            raise ValueError("Table name cannot be empty")
        if not self.entity_type:
            raise ValueError(f"Table '{self.table}' has no entity_type")
        if ":" in self.entity_type:
            raise ValueError(f"entity_type '{self.entity_type}' cannot contain ':'")
        if not self.key_columns:
            raise ValueError(f"Table '{self.table}' needs at least one key column")

        names = [c.name for c in self.columns]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate column name in table '{self.table}'")
        for key in self.key_columns:
            if key not in names:
                raise ValueError(f"Key column '{key}' is not a column of '{self.table}'")
        for edge in self.edges:
            if edge.field not in names:
                raise ValueError(f"Edge column '{edge.field}' is not a column of '{self.table}'")

        if not self.topic:
            object.__setattr__(self, "topic", self.entity_type)

    def get_column(self, name: str) -> ColumnDef | None:
        for c in self.columns:
            if c.name == name:
                return c
        return None

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def entity_key(self, row: dict[str, Any]) -> str:
        """Identity of a normalized row, "<entity_type>:<id>".

        Composite keys are joined with ":" in key-column order.

        Raises:
            KeyError: If a key column is absent or null
        """
        parts = []
        for key in self.key_columns:
            value = row.get(key)
            if value is None:
                raise KeyError(key)
            parts.append(str(value))
        return f"{self.entity_type}:{':'.join(parts)}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {
            "table": self.table,
            "entity_type": self.entity_type,
            "key_columns": list(self.key_columns),
            "columns": [c.to_dict() for c in self.columns],
            "topic": self.topic,
        }
        if self.edges:
            result["edges"] = [e.to_dict() for e in self.edges]
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableSchema:
        """Create from dictionary representation.

        Raises:
            KeyError: If a required key is missing
            ValueError: If the definition is invalid
        """
        key_columns = data["key_columns"]
        if isinstance(key_columns, str):
            key_columns = [key_columns]
        return cls(
            table=data["table"],
            entity_type=data["entity_type"],
            key_columns=tuple(key_columns),
            columns=tuple(ColumnDef.from_dict(c) for c in data.get("columns", [])),
            edges=tuple(EdgeDef.from_dict(e) for e in data.get("edges", [])),
            topic=data.get("topic", ""),
            description=data.get("description", ""),
        )
