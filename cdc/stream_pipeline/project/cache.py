"""
Cache projector: entity events -> key-value cache.

State per identity:
    Absent  --create-->  Present
    Present --update-->  Present (full replacement)
    Present --delete-->  Absent  (evicted, tombstone version kept)

The cache key is the event's entity key ("movie:1") and the value is
the event payload, so a reader always sees a complete row.
"""

from __future__ import annotations

from typing import Any

from ..events import Event, Operation
from ..store.base import KeyValueStore
from ..stream.base import StreamLog
from .base import Projector


class CacheProjector(Projector):
    """Folds entity streams into a KeyValueStore.

    Example:
        >>> projector = CacheProjector(log, InMemoryKeyValueStore(), ["events:movie"])
        >>> await projector.poll("events:movie")
    """

    name = "cache"

    def __init__(
        self,
        stream_log: StreamLog,
        store: KeyValueStore,
        stream_keys: list[str],
        group_id: str = "cache-projector",
        consumer: str = "cache-1",
        **kwargs: Any,
    ) -> None:
        super().__init__(stream_log, stream_keys, group_id, consumer, **kwargs)
        self.store = store

    async def write(self, event: Event) -> bool:
        if event.operation == Operation.DELETE:
            return await self.store.apply_delete(event.entity_key, event.version)
        return await self.store.apply_put(event.entity_key, dict(event.payload), event.version)
