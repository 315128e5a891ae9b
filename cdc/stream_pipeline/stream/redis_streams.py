"""
Redis Streams stream log implementation.

This module maps the StreamLog protocol onto Redis Streams commands:
- append -> XADD
- ensure_group -> XGROUP CREATE ... MKSTREAM
- read_group -> XREADGROUP (">" for new entries, "0" for own pending)
- ack -> XACK
- pending -> XPENDING
- claim -> XAUTOCLAIM
- group_info -> XINFO GROUPS

Invariants:
    - Entry ids are Redis ids ("ms-seq"), strictly increasing per stream
    - Pending entries stay owned by a consumer until XACK or XAUTOCLAIM
    - Backend exceptions are translated into StreamError subclasses

How to change safely:
    - Requires Redis >= 7.0 (XAUTOCLAIM deleted-ids reply, XINFO lag)
    - MAXLEN trimming is off unless stream_maxlen is set; keep it
      approximate and generous, trimming pending entries loses redelivery
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .base import (
    EntryId,
    GroupInfo,
    PendingEntry,
    StreamConnectionError,
    StreamEntry,
    StreamError,
    StreamTimeoutError,
)

logger = logging.getLogger(__name__)


class RedisStreamLog:
    """Redis Streams implementation of the StreamLog protocol.

    Attributes:
        config: RedisConfig with connection settings

    Example:
        >>> log = RedisStreamLog(RedisConfig(url="redis://localhost:6379/0"))
        >>> await log.connect()
        >>> entry_id = await log.append("events:movie", {"op": "create"})
    """

    def __init__(self, config: Any) -> None:
        """Initialize Redis stream log.

        Args:
            config: RedisConfig instance with connection settings
        """
        self.config = config
        self._client: redis.Redis | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connected to Redis."""
        return self._connected and self._client is not None

    @contextmanager
    def _translate(self, operation: str, stream_key: str) -> Iterator[None]:
        try:
            yield
        except RedisTimeoutError as e:
            raise StreamTimeoutError(f"Redis {operation} timed out on {stream_key}: {e}") from e
        except RedisConnectionError as e:
            raise StreamConnectionError(f"Redis connection lost during {operation}: {e}") from e
        except RedisError as e:
            raise StreamError(f"Redis {operation} failed on {stream_key}: {e}") from e

    def _require_client(self) -> redis.Redis:
        if self._client is None:
            raise StreamConnectionError("Not connected to Redis")
        return self._client

    async def connect(self) -> None:
        """Connect to Redis and verify with PING.

        Raises:
            StreamConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._client = redis.from_url(
                self.config.url,
                decode_responses=True,
                max_connections=self.config.max_connections,
                socket_timeout=self.config.socket_timeout_s,
                retry_on_timeout=True,
            )
            await self._client.ping()
            self._connected = True
            logger.info("Connected to Redis stream log", extra={"url": self.config.redacted_url})
        except RedisError as e:
            self._connected = False
            raise StreamConnectionError(f"Failed to connect to Redis: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis client: {e}")
            self._client = None
        self._connected = False
        logger.info("Redis stream log closed")

    async def append(self, stream_key: str, fields: dict[str, str]) -> EntryId:
        """Append with XADD and return the assigned id."""
        client = self._require_client()
        with self._translate("XADD", stream_key):
            raw_id = await client.xadd(
                stream_key,
                fields,
                maxlen=self.config.stream_maxlen or None,
                approximate=True,
            )
        entry_id = EntryId.parse(raw_id)
        logger.debug(
            "Entry appended to Redis stream",
            extra={"stream_key": stream_key, "entry_id": str(entry_id)},
        )
        return entry_id

    async def ensure_group(
        self,
        group_id: str,
        stream_key: str,
        start_id: EntryId | str = "0",
    ) -> None:
        """Create the group with MKSTREAM, ignoring BUSYGROUP."""
        client = self._require_client()
        try:
            await client.xgroup_create(stream_key, group_id, id=str(start_id), mkstream=True)
            logger.info(
                "Consumer group created",
                extra={"group_id": group_id, "stream_key": stream_key},
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise StreamError(f"Failed to create group {group_id} on {stream_key}: {e}") from e
        except RedisError as e:
            raise StreamConnectionError(f"Failed to create group {group_id}: {e}") from e

    async def read_group(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[StreamEntry]:
        """XREADGROUP new entries, or own pending entries with id 0."""
        client = self._require_client()

        delivery_counts: dict[str, int] = {}
        if pending:
            with self._translate("XPENDING", stream_key):
                rows = await client.xpending_range(
                    stream_key, group_id, min="-", max="+", count=count, consumername=consumer
                )
            if not rows:
                return []
            delivery_counts = {row["message_id"]: row["times_delivered"] for row in rows}

        with self._translate("XREADGROUP", stream_key):
            reply = await client.xreadgroup(
                group_id,
                consumer,
                {stream_key: "0" if pending else ">"},
                count=count,
                block=None if pending or block_ms <= 0 else block_ms,
            )

        entries = []
        for _stream, messages in reply or []:
            for raw_id, fields in messages:
                if fields is None:
                    logger.warning(
                        "Pending entry was trimmed from the stream, nothing left to deliver",
                        extra={"stream_key": stream_key, "entry_id": raw_id, "group_id": group_id},
                    )
                    continue
                entries.append(
                    StreamEntry(
                        stream_key=stream_key,
                        entry_id=EntryId.parse(raw_id),
                        fields=dict(fields),
                        delivery_count=delivery_counts.get(raw_id, 1),
                    )
                )
        return entries

    async def ack(self, group_id: str, stream_key: str, entry_ids: list[EntryId]) -> int:
        """XACK the given entries."""
        if not entry_ids:
            return 0
        client = self._require_client()
        with self._translate("XACK", stream_key):
            return int(await client.xack(stream_key, group_id, *[str(e) for e in entry_ids]))

    async def pending(self, group_id: str, stream_key: str) -> list[PendingEntry]:
        """XPENDING extended form over the whole stream."""
        client = self._require_client()
        with self._translate("XPENDING", stream_key):
            rows = await client.xpending_range(
                stream_key, group_id, min="-", max="+", count=self.config.pending_scan_count
            )
        return [
            PendingEntry(
                entry_id=EntryId.parse(row["message_id"]),
                consumer=row["consumer"],
                idle_ms=int(row["time_since_delivered"]),
                delivery_count=int(row["times_delivered"]),
            )
            for row in rows
        ]

    async def claim(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        min_idle_ms: int,
        count: int,
    ) -> list[StreamEntry]:
        """XAUTOCLAIM entries idle for at least min_idle_ms."""
        client = self._require_client()
        with self._translate("XAUTOCLAIM", stream_key):
            reply = await client.xautoclaim(
                stream_key,
                group_id,
                consumer,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count,
            )
        messages = reply[1] if len(reply) > 1 else []
        claimed = [
            StreamEntry(
                stream_key=stream_key,
                entry_id=EntryId.parse(raw_id),
                fields=dict(fields),
                delivery_count=2,
            )
            for raw_id, fields in messages
            if fields is not None
        ]
        if claimed:
            logger.info(
                "Claimed idle pending entries",
                extra={"stream_key": stream_key, "consumer": consumer, "count": len(claimed)},
            )
        return claimed

    async def read(
        self,
        stream_key: str,
        after_id: EntryId,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        """XREAD after a position, no consumer group."""
        client = self._require_client()
        with self._translate("XREAD", stream_key):
            reply = await client.xread(
                {stream_key: str(after_id)},
                count=count,
                block=block_ms if block_ms > 0 else None,
            )
        return [
            StreamEntry(stream_key, EntryId.parse(raw_id), dict(fields), 0)
            for _stream, messages in reply or []
            for raw_id, fields in messages
        ]

    async def last_entry_id(self, stream_key: str) -> EntryId | None:
        """Id of the newest entry via XREVRANGE."""
        client = self._require_client()
        with self._translate("XREVRANGE", stream_key):
            rows = await client.xrevrange(stream_key, max="+", min="-", count=1)
        if not rows:
            return None
        return EntryId.parse(rows[0][0])

    async def group_info(self, group_id: str, stream_key: str) -> GroupInfo:
        """XINFO GROUPS for pending and lag of one group."""
        client = self._require_client()
        with self._translate("XINFO GROUPS", stream_key):
            groups = await client.xinfo_groups(stream_key)
            match = next((g for g in groups if g["name"] == group_id), None)
            if match is None:
                raise StreamError(f"NOGROUP no consumer group '{group_id}' on '{stream_key}'")

            last_delivered = match.get("last-delivered-id")
            lag = match.get("lag")
            if lag is None:
                # Redis cannot compute lag after deletions; count explicitly
                tail = await client.xrange(stream_key, min=f"({last_delivered}", max="+")
                lag = len(tail)

        last_entry = await self.last_entry_id(stream_key)
        delivered = EntryId.parse(last_delivered) if last_delivered else None
        if delivered is not None and delivered.major == 0 and delivered.minor == 0:
            delivered = None
        return GroupInfo(
            group_id=group_id,
            stream_key=stream_key,
            pending=int(match.get("pending", 0)),
            lag=int(lag),
            last_delivered_id=delivered,
            last_entry_id=last_entry,
        )

    async def health_check(self) -> bool:
        """Check if the Redis connection is healthy."""
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False
