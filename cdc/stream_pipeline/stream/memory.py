"""
In-memory stream log implementation for testing.

This module provides an in-memory backend with full consumer-group
semantics for:
- Unit tests
- Integration tests (crash/redelivery scenarios)
- Local development without Redis or Kafka

Invariants:
    - All data is lost on process exit
    - Entry ids follow Redis rules: (ms, seq), strictly increasing per stream
    - Consumer groups track last-delivered id and a pending entries list
    - Safe for concurrent use from multiple coroutines

How to change safely:
    - Keep semantics aligned with the Redis Streams backend
    - Keep interface compatible with the StreamLog protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
import logging

from .base import (
    MIN_ENTRY_ID,
    EntryId,
    GroupInfo,
    PendingEntry,
    StreamConnectionError,
    StreamEntry,
    StreamError,
)

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    """Ownership record of one delivered, unacknowledged entry."""
    consumer: str
    delivered_at: float
    delivery_count: int


@dataclass
class _Group:
    """Consumer-group cursor and pending entries list."""
    last_delivered: EntryId
    pending: dict[EntryId, _Pending] = field(default_factory=dict)


@dataclass
class _Stream:
    """In-memory stream storage."""
    entries: list[tuple[EntryId, dict[str, str]]] = field(default_factory=list)
    last_id: EntryId = MIN_ENTRY_ID
    groups: dict[str, _Group] = field(default_factory=dict)
    new_entry: asyncio.Event = field(default_factory=asyncio.Event)

    def after(self, entry_id: EntryId, count: int) -> list[tuple[EntryId, dict[str, str]]]:
        result = []
        for eid, fields in self.entries:
            if eid > entry_id:
                result.append((eid, fields))
                if len(result) >= count:
                    break
        return result

    def lookup(self, entry_id: EntryId) -> dict[str, str] | None:
        for eid, fields in self.entries:
            if eid == entry_id:
                return fields
        return None


def _now_ms() -> float:
    return time.monotonic() * 1000


class InMemoryStreamLog:
    """In-memory implementation of the StreamLog protocol.

    Provides the same consumer-group behaviour as Redis Streams:
    - read_group() hands new entries to one member and marks them pending
    - ack() removes entries from the pending list
    - claim() transfers idle pending entries to another member

    Example:
        >>> log = InMemoryStreamLog()
        >>> await log.connect()
        >>> await log.ensure_group("cache", "events:movie")
        >>> await log.append("events:movie", {"op": "create"})
        >>> entries = await log.read_group("cache", "c1", "events:movie", 10, 100)
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory stream log."""
        self._streams: dict[str, _Stream] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._failing_appends = 0

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryStreamLog connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._streams.clear()
        logger.debug("InMemoryStreamLog closed")

    def _check_connected(self) -> None:
        if not self._connected:
            raise StreamConnectionError("Not connected")

    def _stream(self, stream_key: str) -> _Stream:
        stream = self._streams.get(stream_key)
        if stream is None:
            stream = _Stream()
            self._streams[stream_key] = stream
        return stream

    def _group(self, group_id: str, stream_key: str) -> _Group:
        stream = self._streams.get(stream_key)
        if stream is None or group_id not in stream.groups:
            raise StreamError(f"NOGROUP no consumer group '{group_id}' on '{stream_key}'")
        return stream.groups[group_id]

    async def append(self, stream_key: str, fields: dict[str, str]) -> EntryId:
        """Append an entry, assigning the next (ms, seq) id."""
        self._check_connected()

        if self._failing_appends > 0:
            self._failing_appends -= 1
            raise StreamConnectionError("Injected append failure")

        async with self._lock:
            stream = self._stream(stream_key)
            now = int(time.time() * 1000)
            if now > stream.last_id.major:
                entry_id = EntryId(now, 0)
            else:
                entry_id = stream.last_id.next()

            stream.entries.append((entry_id, dict(fields)))
            stream.last_id = entry_id

            # Wake blocked readers and arm a fresh event for the next append
            stream.new_entry.set()
            stream.new_entry = asyncio.Event()

        logger.debug(
            "Entry appended to in-memory stream",
            extra={"stream_key": stream_key, "entry_id": str(entry_id)},
        )
        return entry_id

    async def ensure_group(
        self,
        group_id: str,
        stream_key: str,
        start_id: EntryId | str = "0",
    ) -> None:
        """Create a consumer group (and the stream) if missing."""
        self._check_connected()
        async with self._lock:
            stream = self._stream(stream_key)
            if group_id in stream.groups:
                return
            if start_id == "$":
                last = stream.last_id
            else:
                last = EntryId.parse(start_id)
            stream.groups[group_id] = _Group(last_delivered=last)
            logger.debug(
                "Consumer group created",
                extra={"group_id": group_id, "stream_key": stream_key, "start_id": str(last)},
            )

    async def read_group(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[StreamEntry]:
        """Read new entries (or own pending entries) as a group member."""
        self._check_connected()

        if pending:
            async with self._lock:
                group = self._group(group_id, stream_key)
                stream = self._streams[stream_key]
                result = []
                for entry_id in sorted(group.pending):
                    state = group.pending[entry_id]
                    if state.consumer != consumer:
                        continue
                    fields = stream.lookup(entry_id)
                    if fields is None:
                        continue
                    state.delivery_count += 1
                    state.delivered_at = _now_ms()
                    result.append(
                        StreamEntry(stream_key, entry_id, dict(fields), state.delivery_count)
                    )
                    if len(result) >= count:
                        break
                return result

        deadline = time.monotonic() + block_ms / 1000.0
        while True:
            async with self._lock:
                group = self._group(group_id, stream_key)
                stream = self._streams[stream_key]
                fresh = stream.after(group.last_delivered, count)
                if fresh:
                    now = _now_ms()
                    result = []
                    for entry_id, fields in fresh:
                        group.pending[entry_id] = _Pending(consumer, now, 1)
                        result.append(StreamEntry(stream_key, entry_id, dict(fields), 1))
                    group.last_delivered = fresh[-1][0]
                    return result
                waiter = stream.new_entry

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            try:
                await asyncio.wait_for(waiter.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return []

    async def ack(self, group_id: str, stream_key: str, entry_ids: list[EntryId]) -> int:
        """Remove entries from the group's pending list."""
        self._check_connected()
        async with self._lock:
            group = self._group(group_id, stream_key)
            acked = 0
            for entry_id in entry_ids:
                if group.pending.pop(entry_id, None) is not None:
                    acked += 1
            return acked

    async def pending(self, group_id: str, stream_key: str) -> list[PendingEntry]:
        """List pending entries of a group, oldest first."""
        self._check_connected()
        async with self._lock:
            group = self._group(group_id, stream_key)
            now = _now_ms()
            return [
                PendingEntry(
                    entry_id=entry_id,
                    consumer=state.consumer,
                    idle_ms=int(now - state.delivered_at),
                    delivery_count=state.delivery_count,
                )
                for entry_id, state in sorted(group.pending.items())
            ]

    async def claim(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        min_idle_ms: int,
        count: int,
    ) -> list[StreamEntry]:
        """Transfer idle pending entries to consumer."""
        self._check_connected()
        async with self._lock:
            group = self._group(group_id, stream_key)
            stream = self._streams[stream_key]
            now = _now_ms()
            claimed = []
            for entry_id in sorted(group.pending):
                state = group.pending[entry_id]
                if now - state.delivered_at < min_idle_ms:
                    continue
                fields = stream.lookup(entry_id)
                if fields is None:
                    group.pending.pop(entry_id)
                    continue
                previous_owner = state.consumer
                state.consumer = consumer
                state.delivered_at = now
                state.delivery_count += 1
                claimed.append(
                    StreamEntry(stream_key, entry_id, dict(fields), state.delivery_count)
                )
                logger.debug(
                    "Pending entry claimed",
                    extra={
                        "stream_key": stream_key,
                        "entry_id": str(entry_id),
                        "from": previous_owner,
                        "to": consumer,
                    },
                )
                if len(claimed) >= count:
                    break
            return claimed

    async def read(
        self,
        stream_key: str,
        after_id: EntryId,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        """Read entries after after_id without a consumer group."""
        self._check_connected()
        deadline = time.monotonic() + block_ms / 1000.0
        while True:
            async with self._lock:
                stream = self._stream(stream_key)
                fresh = stream.after(after_id, count)
                if fresh:
                    return [StreamEntry(stream_key, eid, dict(fields), 0) for eid, fields in fresh]
                waiter = stream.new_entry

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            try:
                await asyncio.wait_for(waiter.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return []

    async def last_entry_id(self, stream_key: str) -> EntryId | None:
        """Latest entry id, or None for an empty stream."""
        self._check_connected()
        stream = self._streams.get(stream_key)
        if stream is None or not stream.entries:
            return None
        return stream.last_id

    async def group_info(self, group_id: str, stream_key: str) -> GroupInfo:
        """Pending count and undelivered entries for a group."""
        self._check_connected()
        async with self._lock:
            group = self._group(group_id, stream_key)
            stream = self._streams[stream_key]
            lag = sum(1 for eid, _ in stream.entries if eid > group.last_delivered)
            return GroupInfo(
                group_id=group_id,
                stream_key=stream_key,
                pending=len(group.pending),
                lag=lag,
                last_delivered_id=group.last_delivered if group.last_delivered != MIN_ENTRY_ID else None,
                last_entry_id=stream.last_id if stream.entries else None,
            )

    # Testing helpers

    def get_all_entries(self, stream_key: str) -> list[StreamEntry]:
        """Get all entries of a stream (testing helper)."""
        stream = self._streams.get(stream_key)
        if stream is None:
            return []
        return [StreamEntry(stream_key, eid, dict(fields), 0) for eid, fields in stream.entries]

    def get_entry_count(self, stream_key: str) -> int:
        """Get entry count of a stream (testing helper)."""
        stream = self._streams.get(stream_key)
        return len(stream.entries) if stream else 0

    def fail_appends(self, count: int) -> None:
        """Make the next count appends raise StreamConnectionError (testing helper)."""
        self._failing_appends = count

    async def wait_for_entries(
        self,
        stream_key: str,
        count: int,
        timeout: float = 5.0,
    ) -> bool:
        """Wait for a stream to reach a number of entries (testing helper).

        Returns:
            True if count reached, False if timeout
        """
        start = time.monotonic()
        while time.monotonic() - start < timeout:
            if self.get_entry_count(stream_key) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
