"""
Base protocol and types for the stream log abstraction.

This module defines the StreamLog protocol that all backends must implement,
along with common types for entry IDs, entries, consumer-group state and
errors.

Invariants:
    - EntryId is totally ordered and strictly increasing per stream key
    - StreamEntry fields are a flat mapping of strings
    - A consumer group's cursor advances only through ack()
    - All backends provide at-least-once delivery per consumer group

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
    - Keep the wire format flat (no nested structures)
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable
import logging

if TYPE_CHECKING:
    from ..config import PipelineConfig

logger = logging.getLogger(__name__)


class StreamError(Exception):
    """Base exception for stream log operations."""
    pass


class StreamConnectionError(StreamError):
    """Connection to the stream backend failed."""
    pass


class StreamTimeoutError(StreamError):
    """Stream operation timed out."""
    pass


class StreamSerializationError(StreamError):
    """Failed to encode/decode a stream entry."""
    pass


@dataclass(frozen=True, order=True)
class EntryId:
    """Opaque, totally ordered identifier of an entry within a stream key.

    Redis-style logs use (milliseconds, sequence); the Kafka backend uses
    (offset, 0). Comparison is lexicographic on (major, minor).

    Attributes:
        major: Primary ordering component
        minor: Tie-breaker within the same major value
    """
    major: int
    minor: int = 0

    @classmethod
    def parse(cls, value: str | bytes | EntryId) -> EntryId:
        """Parse the "major-minor" string form.

        Raises:
            StreamSerializationError: If the value is not a valid entry id
        """
        if isinstance(value, EntryId):
            return value
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        major, _, minor = value.partition("-")
        try:
            return cls(int(major), int(minor or 0))
        except ValueError as e:
            raise StreamSerializationError(f"Invalid entry id '{value}'") from e

    def next(self) -> EntryId:
        """Smallest id strictly greater than this one."""
        return EntryId(self.major, self.minor + 1)

    def __str__(self) -> str:
        return f"{self.major}-{self.minor}"


MIN_ENTRY_ID = EntryId(0, 0)


@dataclass
class StreamEntry:
    """An entry read from a stream.

    Attributes:
        stream_key: Stream the entry belongs to
        entry_id: Position within the stream
        fields: Flat field -> string mapping as appended
        delivery_count: Times this entry was delivered to the group

    Example:
        >>> entries = await log.read_group("cache", "cache-1", "events:movie", 10, 1000)
        >>> for entry in entries:
        ...     event = Event.from_entry(entry)
        ...     await log.ack("cache", entry.stream_key, [entry.entry_id])
    """
    stream_key: str
    entry_id: EntryId
    fields: dict[str, str]
    delivery_count: int = 1

    def __str__(self) -> str:
        return f"StreamEntry(stream={self.stream_key}, id={self.entry_id})"


@dataclass(frozen=True)
class PendingEntry:
    """An entry delivered to a group member but not yet acknowledged.

    Attributes:
        entry_id: Position of the pending entry
        consumer: Group member currently owning it
        idle_ms: Milliseconds since last delivery
        delivery_count: Times delivered so far
    """
    entry_id: EntryId
    consumer: str
    idle_ms: int
    delivery_count: int


@dataclass(frozen=True)
class GroupInfo:
    """Consumer-group state for one stream key, used for lag reporting.

    Attributes:
        group_id: Consumer group
        stream_key: Stream key
        pending: Entries delivered but not acknowledged
        lag: Entries appended but not yet delivered to the group
        last_delivered_id: Last entry handed to any member
        last_entry_id: Latest entry in the stream
    """
    group_id: str
    stream_key: str
    pending: int
    lag: int
    last_delivered_id: EntryId | None = None
    last_entry_id: EntryId | None = None

    @property
    def outstanding(self) -> int:
        """Entries not yet acknowledged by the group."""
        return self.pending + self.lag

    def to_dict(self) -> dict[str, object]:
        return {
            "group_id": self.group_id,
            "stream_key": self.stream_key,
            "pending": self.pending,
            "lag": self.lag,
            "outstanding": self.outstanding,
            "last_delivered_id": str(self.last_delivered_id) if self.last_delivered_id else None,
            "last_entry_id": str(self.last_entry_id) if self.last_entry_id else None,
        }


@runtime_checkable
class StreamLog(Protocol):
    """Protocol for stream log backends.

    Durability contract:
        - append() returns only after the backend accepted the entry
        - For Redis: XADD reply; for Kafka: acks=all

    Ordering contract:
        - Entries of one stream key are totally ordered by EntryId
        - No ordering across stream keys

    Consumer-group contract:
        - read_group() hands each new entry to one member of the group
        - Delivered entries stay pending until ack()
        - claim() moves long-idle pending entries to another member

    Example:
        >>> log = RedisStreamLog(config)
        >>> await log.connect()
        >>> entry_id = await log.append("events:movie", {"op": "create"})
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            StreamConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the backend connection and release resources."""
        ...

    @abstractmethod
    async def append(self, stream_key: str, fields: dict[str, str]) -> EntryId:
        """Append an entry to a stream.

        Args:
            stream_key: Stream to append to
            fields: Flat field -> string mapping

        Returns:
            EntryId assigned to the entry

        Raises:
            StreamConnectionError: If not connected
            StreamTimeoutError: If the write times out
            StreamError: For other write failures
        """
        ...

    @abstractmethod
    async def ensure_group(
        self,
        group_id: str,
        stream_key: str,
        start_id: EntryId | str = "0",
    ) -> None:
        """Create a consumer group on a stream if it does not exist.

        Args:
            group_id: Consumer group ID
            stream_key: Stream key
            start_id: "0" to consume from the beginning, "$" for new entries only
        """
        ...

    @abstractmethod
    async def read_group(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[StreamEntry]:
        """Read entries as a member of a consumer group.

        Args:
            group_id: Consumer group ID
            consumer: Name of this group member
            stream_key: Stream key
            count: Maximum entries to return
            block_ms: Maximum time to wait for new entries
            pending: Return this member's unacknowledged entries instead
                of new ones (does not block)

        Returns:
            Entries in stream order (may be empty on timeout)
        """
        ...

    @abstractmethod
    async def ack(self, group_id: str, stream_key: str, entry_ids: list[EntryId]) -> int:
        """Acknowledge processed entries.

        Returns:
            Number of entries that were pending and are now acknowledged
        """
        ...

    @abstractmethod
    async def pending(self, group_id: str, stream_key: str) -> list[PendingEntry]:
        """List entries delivered to the group but not yet acknowledged."""
        ...

    @abstractmethod
    async def claim(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        min_idle_ms: int,
        count: int,
    ) -> list[StreamEntry]:
        """Take over pending entries idle for at least min_idle_ms.

        Returns:
            The claimed entries, now owned by consumer
        """
        ...

    @abstractmethod
    async def read(
        self,
        stream_key: str,
        after_id: EntryId,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        """Read entries after a position without a consumer group."""
        ...

    @abstractmethod
    async def last_entry_id(self, stream_key: str) -> EntryId | None:
        """Latest entry id in a stream, or None if empty."""
        ...

    @abstractmethod
    async def group_info(self, group_id: str, stream_key: str) -> GroupInfo:
        """Pending count and lag of a consumer group on a stream."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_stream_log(config: "PipelineConfig") -> StreamLog:
    """Factory function to create a stream log from configuration.

    Args:
        config: Pipeline configuration

    Returns:
        Appropriate StreamLog implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StreamBackend
    from .kafka import KafkaStreamLog
    from .memory import InMemoryStreamLog
    from .redis_streams import RedisStreamLog

    if config.stream_backend == StreamBackend.REDIS:
        return RedisStreamLog(config.redis)
    elif config.stream_backend == StreamBackend.KAFKA:
        return KafkaStreamLog(config.kafka)
    elif config.stream_backend == StreamBackend.MEMORY:
        return InMemoryStreamLog()
    else:
        raise ValueError(f"Unsupported stream backend: {config.stream_backend}")
