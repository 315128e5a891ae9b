"""
Projection stores.

Derived stores written by the projectors, behind capability interfaces:
- KeyValueStore: Redis strings or in-memory (cache projection)
- GraphStore: SQLite or in-memory (graph projection)
- CommentStore: SQLite with FTS5 (comment projection)

Invariants:
    - Stores can be rebuilt by replaying the stream log
    - Every store keeps last-write-wins versions per key
"""

from .base import (
    Comment,
    CommentStore,
    GraphEdge,
    GraphNode,
    GraphStore,
    KeyValueStore,
    Version,
    decode_version,
    encode_version,
    is_newer,
)
from .comment_store import SqliteCommentStore
from .graph_store import SqliteGraphStore
from .memory import InMemoryGraphStore, InMemoryKeyValueStore
from .redis_cache import RedisKeyValueStore

__all__ = [
    # Capabilities
    "KeyValueStore",
    "GraphStore",
    "CommentStore",
    "GraphNode",
    "GraphEdge",
    "Comment",
    "Version",
    "encode_version",
    "decode_version",
    "is_newer",
    # Implementations
    "InMemoryKeyValueStore",
    "InMemoryGraphStore",
    "RedisKeyValueStore",
    "SqliteGraphStore",
    "SqliteCommentStore",
]
