"""
Source schema catalog.

This module describes the relational tables the pipeline captures:
- Table/column/edge definitions (TableSchema, ColumnDef, EdgeDef)
- Schema registry with freeze and fingerprint
- YAML catalog loading, with a built-in movie-database catalog

Invariants:
    - Every change the producer publishes matches a registered table
    - The registry is frozen before the producer starts

How to change safely:
    - Add columns as nullable
    - Keep key columns stable; they define entity identity
"""

from .catalog import CatalogError, load_catalog, parse_catalog, parse_yaml
from .registry import DuplicateRegistrationError, RegistryFrozenError, SchemaRegistry
from .types import ColumnDef, ColumnType, EdgeDef, TableSchema, column

__all__ = [
    # Types
    "ColumnDef",
    "ColumnType",
    "EdgeDef",
    "TableSchema",
    "column",
    # Registry
    "SchemaRegistry",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
    # Catalog
    "CatalogError",
    "load_catalog",
    "parse_catalog",
    "parse_yaml",
]
