"""
Stream Log abstraction for the CDC pipeline.

This module provides a pluggable stream backend interface supporting:
- Redis Streams (default, consumer groups native)
- Kafka/Redpanda
- In-memory (for testing)

The stream log is the durable, ordered record of every row change.
Cache, graph and comment stores are derived views that can be rebuilt
by replaying it.

Invariants:
    - append() returns only after the backend accepted the entry
    - Entries are totally ordered per stream key
    - Each consumer group has its own cursor, advanced only by ack()
    - Delivery is at-least-once

How to change safely:
    - New backends must implement the StreamLog protocol
    - Keep the in-memory backend's semantics aligned with Redis Streams
    - Verify pending/claim behaviour with crash scenarios
"""

from .base import (
    MIN_ENTRY_ID,
    EntryId,
    GroupInfo,
    PendingEntry,
    StreamConnectionError,
    StreamEntry,
    StreamError,
    StreamLog,
    StreamSerializationError,
    StreamTimeoutError,
    create_stream_log,
)
from .kafka import KafkaStreamLog
from .memory import InMemoryStreamLog
from .redis_streams import RedisStreamLog

__all__ = [
    # Protocol and types
    "StreamLog",
    "StreamEntry",
    "EntryId",
    "MIN_ENTRY_ID",
    "PendingEntry",
    "GroupInfo",
    "StreamError",
    "StreamConnectionError",
    "StreamTimeoutError",
    "StreamSerializationError",
    # Factory
    "create_stream_log",
    # Implementations
    "RedisStreamLog",
    "KafkaStreamLog",
    "InMemoryStreamLog",
]
