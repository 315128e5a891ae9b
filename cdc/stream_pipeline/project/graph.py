"""
Graph projector: entity events -> nodes and edges.

Nodes are keyed by entity key. Outgoing edges come from the table's
edge columns: a non-null value v in column c with EdgeDef(c, T, L)
becomes the edge (node) -[L]-> "T:v"; a null value means no edge.

create/update: node upsert plus full rewrite of outgoing edges
(delete-then-insert), applied as one atomic store operation so the
write is idempotent under redelivery.
delete: the node and every edge referencing it are removed.
"""

from __future__ import annotations

import logging
from typing import Any

from ..events import Event, Operation
from ..schema.registry import SchemaRegistry
from ..store.base import GraphEdge, GraphNode, GraphStore
from ..stream.base import StreamLog
from .base import Projector

logger = logging.getLogger(__name__)


def derive_edges(registry: SchemaRegistry, event: Event) -> list[GraphEdge]:
    """Outgoing edges of an event's node from its schema's edge columns."""
    schema = registry.get_by_entity_type(event.entity_type)
    if schema is None:
        logger.warning(
            "No schema for entity type, projecting node without edges",
            extra={"entity_type": event.entity_type, "entity_key": event.entity_key},
        )
        return []

    edges = []
    for edge in schema.edges:
        value = event.payload.get(edge.field)
        if value is None:
            continue
        edges.append(GraphEdge(event.entity_key, f"{edge.target_type}:{value}", edge.label))
    return edges


class GraphProjector(Projector):
    """Folds entity streams into a GraphStore.

    Example:
        >>> projector = GraphProjector(log, SqliteGraphStore(data_dir), registry, ["events:movie"])
        >>> await projector.start()
    """

    name = "graph"

    def __init__(
        self,
        stream_log: StreamLog,
        store: GraphStore,
        registry: SchemaRegistry,
        stream_keys: list[str],
        group_id: str = "graph-projector",
        consumer: str = "graph-1",
        **kwargs: Any,
    ) -> None:
        super().__init__(stream_log, stream_keys, group_id, consumer, **kwargs)
        self.store = store
        self.registry = registry

    async def write(self, event: Event) -> bool:
        if event.operation == Operation.DELETE:
            return await self.store.apply_delete(event.entity_key, event.version)

        node = GraphNode(event.entity_key, event.entity_type, dict(event.payload))
        return await self.store.apply_upsert(node, derive_edges(self.registry, event), event.version)
