"""
Catalog loading for source table schemas.

Catalogs are YAML (or JSON) documents listing the captured tables:

```yaml
version: 1
tables:
  - table: movies
    entity_type: movie
    key_columns: [movie_id]
    columns:
      - {name: movie_id, type: INT, nullable: false}
      - {name: title, type: VARCHAR}
    edges:
      - {field: lead_actor_id, target_type: actor, label: STARRING}
```

A movie-database catalog ships with the package and is used when no
catalog path is configured.
"""

from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from .registry import SchemaRegistry

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = "movies.yaml"


class CatalogError(ValueError):
    """A catalog document could not be parsed into table schemas."""
    pass


def parse_catalog(data: dict[str, Any]) -> SchemaRegistry:
    """Build a registry from a parsed catalog document (not frozen).

    Raises:
        CatalogError: If the document is malformed
    """
    if not isinstance(data, dict) or not isinstance(data.get("tables"), list):
        raise CatalogError("Catalog must be a mapping with a 'tables' list")
    try:
        registry = SchemaRegistry.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogError(f"Invalid catalog: {e}") from e

    for problem in registry.validate_all():
        logger.warning(problem)
    return registry


def parse_yaml(yaml_str: str) -> SchemaRegistry:
    """Parse a catalog from a YAML string."""
    try:
        data = yaml.safe_load(yaml_str)
    except yaml.YAMLError as e:
        raise CatalogError(f"Invalid YAML catalog: {e}") from e
    return parse_catalog(data or {})


def load_catalog(path: str | Path | None = None, freeze: bool = True) -> SchemaRegistry:
    """Load a catalog file, or the built-in movie catalog when path is None.

    Args:
        path: YAML or JSON catalog file
        freeze: Freeze the registry before returning

    Returns:
        SchemaRegistry with all tables registered
    """
    if path is None:
        text = resources.files(__package__).joinpath(DEFAULT_CATALOG).read_text(encoding="utf-8")
        source = f"builtin:{DEFAULT_CATALOG}"
    else:
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        source = str(path)

    if source.endswith(".json"):
        try:
            registry = parse_catalog(json.loads(text))
        except json.JSONDecodeError as e:
            raise CatalogError(f"Invalid JSON catalog: {e}") from e
    else:
        registry = parse_yaml(text)

    if freeze:
        registry.freeze()

    logger.info(
        "Schema catalog loaded",
        extra={
            "source": source,
            "tables": [s.table for s in registry.tables()],
            "fingerprint": registry.fingerprint,
        },
    )
    return registry
