"""
Capability interfaces for projection stores.

Projectors write through these protocols only, so storage engines are
swappable without touching projector logic:
- KeyValueStore: put/delete (cache projections)
- GraphStore: upsert_node/replace_edges/delete_node (graph projections)
- CommentStore: keyed records indexed by the entities they reference

Every store also keeps a last-write-wins version per key. A version is
(source_timestamp, entry_id) of the event that last wrote the key,
kept after deletes as a tombstone, so redelivered or older events are
recognised and skipped.

Invariants:
    - apply_* operations compare the event version against the stored one
      and write the record and its version in the same atomic step
    - apply_* returns False, writing nothing, when the stored version is
      at least as new
    - Backend failures surface as ProjectionWriteError
    - Versions are compared, never parsed by projectors

How to change safely:
    - New stores must implement the whole protocol, including versions
    - Keep apply_* atomic; projectors rely on it for idempotence
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..stream.base import EntryId

Version = tuple[int, EntryId]


def encode_version(version: Version) -> str:
    """Serialize a version as "<source_ts>|<entry_id>"."""
    ts, entry_id = version
    return f"{ts}|{entry_id}"


def decode_version(value: str | None) -> Version | None:
    """Parse encode_version() output (None passes through)."""
    if not value:
        return None
    ts, _, entry_id = value.partition("|")
    return (int(ts), EntryId.parse(entry_id))


def is_newer(version: Version, stored: Version | None) -> bool:
    """Whether an event version supersedes the stored one."""
    return stored is None or version > stored


@dataclass
class GraphNode:
    """A node in the graph projection.

    Attributes:
        key: Entity key, e.g. "movie:1"
        entity_type: Entity type (node label)
        properties: Latest payload
    """

    key: str
    entity_type: str
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "entity_type": self.entity_type, "properties": self.properties}


@dataclass(frozen=True)
class GraphEdge:
    """A directed, labelled edge between two entity keys."""

    from_key: str
    to_key: str
    label: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.from_key, "to": self.to_key, "label": self.label}


@dataclass
class Comment:
    """A comment/metadata record.

    Attributes:
        key: Entity key of the comment, e.g. "comment:5"
        targets: Entity keys the comment references ("movie:1", "user:7")
        payload: Latest payload
        created_at: Source timestamp of the first write (Unix ms)
        updated_at: Source timestamp of the latest write (Unix ms)
    """

    key: str
    targets: list[str]
    payload: dict[str, Any]
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "targets": self.targets,
            "payload": self.payload,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@runtime_checkable
class KeyValueStore(Protocol):
    """Key-value capability used by the cache projector."""

    name: str

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Current value of a key, or None."""
        ...

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any]) -> None:
        """Replace the value of a key."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Evict a key. Returns whether it existed."""
        ...

    @abstractmethod
    async def get_version(self, key: str) -> Version | None:
        """Version of the last write to a key (including deletes)."""
        ...

    @abstractmethod
    async def apply_put(self, key: str, value: dict[str, Any], version: Version) -> bool:
        """Atomically replace a value and record its version.

        Returns False without writing when the stored version is not older.
        """
        ...

    @abstractmethod
    async def apply_delete(self, key: str, version: Version) -> bool:
        """Atomically evict a key and record the tombstone version.

        Returns False without writing when the stored version is not older.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


@runtime_checkable
class GraphStore(Protocol):
    """Graph capability used by the graph projector."""

    name: str

    @abstractmethod
    async def get_node(self, key: str) -> GraphNode | None:
        ...

    @abstractmethod
    async def edges_from(self, key: str) -> list[GraphEdge]:
        """Outgoing edges of a node."""
        ...

    @abstractmethod
    async def edges_to(self, key: str) -> list[GraphEdge]:
        """Incoming edges of a node."""
        ...

    @abstractmethod
    async def upsert_node(self, node: GraphNode) -> None:
        ...

    @abstractmethod
    async def replace_edges(self, node_key: str, edges: list[GraphEdge]) -> None:
        """Delete all outgoing edges of a node, then insert edges."""
        ...

    @abstractmethod
    async def delete_node(self, key: str) -> bool:
        """Remove a node and every edge referencing it."""
        ...

    @abstractmethod
    async def get_version(self, key: str) -> Version | None:
        ...

    @abstractmethod
    async def apply_upsert(self, node: GraphNode, edges: list[GraphEdge], version: Version) -> bool:
        """upsert_node + replace_edges + version as one atomic compare-and-set."""
        ...

    @abstractmethod
    async def apply_delete(self, key: str, version: Version) -> bool:
        """delete_node + tombstone version as one atomic compare-and-set."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


@runtime_checkable
class CommentStore(Protocol):
    """Keyed comment/metadata capability used by the comment projector."""

    name: str

    @abstractmethod
    async def get(self, key: str) -> Comment | None:
        ...

    @abstractmethod
    async def list_by_target(self, target: str, limit: int = 100) -> list[Comment]:
        """Comments referencing an entity, newest first."""
        ...

    @abstractmethod
    async def get_version(self, key: str) -> Version | None:
        ...

    @abstractmethod
    async def apply_upsert(
        self,
        key: str,
        targets: list[str],
        payload: dict[str, Any],
        ts: int,
        version: Version,
    ) -> bool:
        ...

    @abstractmethod
    async def apply_delete(self, key: str, version: Version) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
