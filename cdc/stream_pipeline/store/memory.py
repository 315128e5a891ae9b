"""
In-memory projection stores for testing and local runs.

Provides KeyValueStore and GraphStore implementations with:
- The same last-write-wins version bookkeeping as the real stores
- Failure injection (fail_next) to exercise projector retry paths

Invariants:
    - All data is lost on process exit
    - Each apply_* call compares and swaps record and version under one
      lock, so a reader never sees a node without its edges and a stale
      event never overwrites a newer one
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from ..errors import ProjectionWriteError
from .base import GraphEdge, GraphNode, Version, is_newer

logger = logging.getLogger(__name__)


class _FailureInjector:
    def __init__(self, name: str) -> None:
        self.name = name
        self._remaining = 0
        self.rejected_writes = 0

    def fail_next(self, count: int) -> None:
        """Reject the next count writes with ProjectionWriteError (testing helper)."""
        self._remaining = count

    def _check(self, key: str) -> None:
        if self._remaining > 0:
            self._remaining -= 1
            self.rejected_writes += 1
            raise ProjectionWriteError(f"Injected write failure on {key}", store=self.name, key=key)


class InMemoryKeyValueStore(_FailureInjector):
    """Dictionary-backed KeyValueStore.

    Example:
        >>> store = InMemoryKeyValueStore()
        >>> store.fail_next(3)  # next three writes are rejected
    """

    def __init__(self, name: str = "memory-cache") -> None:
        super().__init__(name)
        self._data: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, Version] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        async with self._lock:
            self._check(key)
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._check(key)
            return self._data.pop(key, None) is not None

    async def get_version(self, key: str) -> Version | None:
        return self._versions.get(key)

    async def apply_put(self, key: str, value: dict[str, Any], version: Version) -> bool:
        async with self._lock:
            self._check(key)
            if not is_newer(version, self._versions.get(key)):
                return False
            self._data[key] = copy.deepcopy(value)
            self._versions[key] = version
            return True

    async def apply_delete(self, key: str, version: Version) -> bool:
        async with self._lock:
            self._check(key)
            if not is_newer(version, self._versions.get(key)):
                return False
            self._data.pop(key, None)
            self._versions[key] = version
            return True

    def keys(self) -> list[str]:
        """All live keys (testing helper)."""
        return sorted(self._data)

    async def close(self) -> None:
        pass


class InMemoryGraphStore(_FailureInjector):
    """Dictionary-backed GraphStore."""

    def __init__(self, name: str = "memory-graph") -> None:
        super().__init__(name)
        self._nodes: dict[str, GraphNode] = {}
        self._edges: set[GraphEdge] = set()
        self._versions: dict[str, Version] = {}
        self._lock = asyncio.Lock()

    async def get_node(self, key: str) -> GraphNode | None:
        node = self._nodes.get(key)
        return copy.deepcopy(node) if node is not None else None

    async def edges_from(self, key: str) -> list[GraphEdge]:
        return sorted((e for e in self._edges if e.from_key == key), key=lambda e: (e.label, e.to_key))

    async def edges_to(self, key: str) -> list[GraphEdge]:
        return sorted((e for e in self._edges if e.to_key == key), key=lambda e: (e.label, e.from_key))

    async def upsert_node(self, node: GraphNode) -> None:
        async with self._lock:
            self._check(node.key)
            self._nodes[node.key] = copy.deepcopy(node)

    async def replace_edges(self, node_key: str, edges: list[GraphEdge]) -> None:
        async with self._lock:
            self._check(node_key)
            self._edges = {e for e in self._edges if e.from_key != node_key} | set(edges)

    async def delete_node(self, key: str) -> bool:
        async with self._lock:
            self._check(key)
            return self._remove(key)

    def _remove(self, key: str) -> bool:
        existed = self._nodes.pop(key, None) is not None
        self._edges = {e for e in self._edges if e.from_key != key and e.to_key != key}
        return existed

    async def get_version(self, key: str) -> Version | None:
        return self._versions.get(key)

    async def apply_upsert(self, node: GraphNode, edges: list[GraphEdge], version: Version) -> bool:
        async with self._lock:
            self._check(node.key)
            if not is_newer(version, self._versions.get(node.key)):
                return False
            remaining = {e for e in self._edges if e.from_key != node.key}
            self._nodes[node.key] = copy.deepcopy(node)
            self._edges = remaining | set(edges)
            self._versions[node.key] = version
            return True

    async def apply_delete(self, key: str, version: Version) -> bool:
        async with self._lock:
            self._check(key)
            if not is_newer(version, self._versions.get(key)):
                return False
            self._remove(key)
            self._versions[key] = version
            return True

    async def close(self) -> None:
        pass
