"""
Schema Registry for the CDC pipeline.

The SchemaRegistry is the central authority for captured tables. It
provides:
- Registration of table schemas
- Lookup by source table or entity type
- Schema fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new tables can be registered
    - Table names and entity types are globally unique
    - Fingerprint changes when the catalog changes

How to change safely:
    - Register all tables before calling freeze()
    - Never modify registered tables after freeze

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register_table(Movies)
    >>> registry.freeze()
    'sha256:...'
    >>> registry.get_table("movies")
    TableSchema(table='movies', entity_type='movie', ...)
"""

from __future__ import annotations

import hashlib
import json
import threading
from typing import Dict, Iterator, Optional
import logging

from .types import TableSchema

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a duplicate table or entity type."""
    pass


class SchemaRegistry:
    """Central registry for captured table schemas.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the catalog (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._tables: Dict[str, TableSchema] = {}
        self._by_entity_type: Dict[str, TableSchema] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Catalog fingerprint (available after freeze)."""
        return self._fingerprint

    def register_table(self, schema: TableSchema) -> None:
        """Register a table schema.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the table or entity type is taken
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register table '{schema.table}': registry is frozen"
                )

            if schema.table in self._tables:
                raise DuplicateRegistrationError(f"Table '{schema.table}' already registered")

            if schema.entity_type in self._by_entity_type:
                existing = self._by_entity_type[schema.entity_type]
                raise DuplicateRegistrationError(
                    f"Entity type '{schema.entity_type}' already produced by table '{existing.table}'"
                )

            for edge in schema.edges:
                if edge.target_type not in self._by_entity_type and edge.target_type != schema.entity_type:
                    logger.debug(
                        f"Table '{schema.table}' references entity type '{edge.target_type}' "
                        "not registered yet"
                    )

            self._tables[schema.table] = schema
            self._by_entity_type[schema.entity_type] = schema
            logger.debug(f"Registered table: {schema.table} (entity_type={schema.entity_type})")

    def get_table(self, table: str) -> Optional[TableSchema]:
        """Get a table schema by source table name."""
        return self._tables.get(table)

    def get_by_entity_type(self, entity_type: str) -> Optional[TableSchema]:
        """Get a table schema by the entity type it produces."""
        return self._by_entity_type.get(entity_type)

    def tables(self) -> Iterator[TableSchema]:
        """Iterate over all registered tables."""
        yield from self._tables.values()

    def entity_types(self) -> list[str]:
        return list(self._by_entity_type)

    def topic_for(self, entity_type: str) -> str:
        """Notification topic of an entity type (the type itself if unknown)."""
        schema = self._by_entity_type.get(entity_type)
        return schema.topic if schema else entity_type

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Catalog fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Schema registry frozen with {len(self._tables)} tables, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the canonical JSON catalog."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'))
        hash_bytes = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation, sorted by table."""
        return {
            "tables": [self._tables[name].to_dict() for name in sorted(self._tables)],
        }

    @classmethod
    def from_dict(cls, data: dict) -> SchemaRegistry:
        """Create registry from dictionary representation (not frozen)."""
        registry = cls()
        for table_data in data.get("tables", []):
            registry.register_table(TableSchema.from_dict(table_data))
        return registry

    def validate_all(self) -> list[str]:
        """Validate cross-table references.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        for schema in self._tables.values():
            for edge in schema.edges:
                if edge.target_type not in self._by_entity_type:
                    errors.append(
                        f"Edge '{edge.label}' on table '{schema.table}' references "
                        f"unknown entity type '{edge.target_type}'"
                    )
        return errors
