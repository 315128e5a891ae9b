"""
Comment projector: comment events -> keyed comment/metadata store.

A secondary, simpler projector. Each comment is stored under its entity
key and indexed by every entity its edge columns reference (the movie
it is about, the user who wrote it), so the front end can list the
comments of a movie without scanning.
"""

from __future__ import annotations

from typing import Any

from ..events import Event, Operation
from ..schema.registry import SchemaRegistry
from ..store.base import CommentStore
from ..stream.base import StreamLog
from .base import Projector
from .graph import derive_edges


class CommentProjector(Projector):
    """Folds comment streams into a CommentStore."""

    name = "comments"

    def __init__(
        self,
        stream_log: StreamLog,
        store: CommentStore,
        registry: SchemaRegistry,
        stream_keys: list[str],
        group_id: str = "comment-projector",
        consumer: str = "comments-1",
        **kwargs: Any,
    ) -> None:
        super().__init__(stream_log, stream_keys, group_id, consumer, **kwargs)
        self.store = store
        self.registry = registry

    async def write(self, event: Event) -> bool:
        if event.operation == Operation.DELETE:
            return await self.store.apply_delete(event.entity_key, event.version)

        targets = [edge.to_key for edge in derive_edges(self.registry, event)]
        return await self.store.apply_upsert(
            event.entity_key,
            targets,
            dict(event.payload),
            event.source_timestamp,
            event.version,
        )
