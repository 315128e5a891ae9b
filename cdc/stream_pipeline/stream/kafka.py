"""
Kafka/Redpanda stream log implementation.

This module maps the StreamLog protocol onto Kafka. It works with:
- Apache Kafka
- Amazon MSK
- Redpanda

Mapping:
    - One single-partition topic per stream key (total order per key)
    - EntryId is (offset, 0)
    - Pending entries are tracked by the member that received them
    - The committed offset advances to the lowest unacknowledged offset,
      so a crashed member's pending entries are redelivered after the
      group rebalances
    - claim() returns nothing; Kafka's group coordinator owns reassignment

Invariants:
    - Producer uses acks=all and the idempotent producer
    - Consumers never auto-commit
    - Backend exceptions are translated into StreamError subclasses

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Do not add partitions to pipeline topics; ordering relies on one
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import (
    EntryId,
    GroupInfo,
    PendingEntry,
    StreamConnectionError,
    StreamEntry,
    StreamError,
    StreamSerializationError,
    StreamTimeoutError,
)

logger = logging.getLogger(__name__)

PARTITION = 0


@dataclass
class _MemberState:
    """Delivery bookkeeping of one group member on one stream."""
    consumer: AIOKafkaConsumer
    consumer_name: str
    pending: dict[int, tuple[StreamEntry, float]] = field(default_factory=dict)
    last_delivered: int = -1
    committed: int = 0


class KafkaStreamLog:
    """Kafka implementation of the StreamLog protocol.

    Uses aiokafka for async producer/consumer operations.

    Durability configuration:
        - acks='all': Wait for all in-sync replicas
        - enable_idempotence=True: Prevent duplicates on retry

    Example:
        >>> log = KafkaStreamLog(KafkaConfig(brokers="localhost:9092"))
        >>> await log.connect()
        >>> entry_id = await log.append("events:movie", {"op": "create"})
    """

    def __init__(self, config: Any) -> None:
        """Initialize Kafka stream log.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._members: dict[tuple[str, str], _MemberState] = {}
        self._start_policy: dict[tuple[str, str], str] = {}
        self._tail_consumer: AIOKafkaConsumer | None = None
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._producer is not None

    def topic_for(self, stream_key: str) -> str:
        """Kafka topic backing a stream key (':' is not legal in topic names)."""
        return f"{self.config.topic_prefix}{stream_key.replace(':', '.')}"

    def _security_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            settings["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            settings["sasl_mechanism"] = self.config.sasl_mechanism
            settings["sasl_plain_username"] = self.config.sasl_username
            settings["sasl_plain_password"] = self.config.sasl_password
        return settings

    async def connect(self) -> None:
        """Connect the producer.

        Raises:
            StreamConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_settings(),
            )
            await self._producer.start()
            self._connected = True
            logger.info(
                "Connected to Kafka",
                extra={"brokers": self.config.brokers, "acks": self.config.acks},
            )
        except KafkaError as e:
            self._connected = False
            raise StreamConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop all consumers and the producer."""
        for member in self._members.values():
            try:
                await member.consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
        self._members.clear()

        if self._tail_consumer is not None:
            await self._tail_consumer.stop()
            self._tail_consumer = None

        if self._producer is not None:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def append(self, stream_key: str, fields: dict[str, str]) -> EntryId:
        """Send to the stream's topic and wait for acks=all."""
        if self._producer is None:
            raise StreamConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                self.topic_for(stream_key),
                value=json.dumps(fields).encode("utf-8"),
                key=fields.get("key", stream_key).encode("utf-8"),
                partition=PARTITION,
            )
        except KafkaTimeoutError as e:
            raise StreamTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise StreamConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise StreamError(f"Kafka send failed: {e}") from e

        entry_id = EntryId(metadata.offset, 0)
        logger.debug(
            "Entry appended to Kafka",
            extra={"stream_key": stream_key, "entry_id": str(entry_id)},
        )
        return entry_id

    async def ensure_group(
        self,
        group_id: str,
        stream_key: str,
        start_id: EntryId | str = "0",
    ) -> None:
        """Record where a new group starts; Kafka creates groups on join."""
        reset = "latest" if start_id == "$" else "earliest"
        self._start_policy[(group_id, stream_key)] = reset

    async def _member(self, group_id: str, consumer: str, stream_key: str) -> _MemberState:
        key = (group_id, stream_key)
        async with self._lock:
            member = self._members.get(key)
            if member is not None:
                return member

            kafka_consumer = AIOKafkaConsumer(
                self.topic_for(stream_key),
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                client_id=consumer,
                auto_offset_reset=self._start_policy.get(key, "earliest"),
                enable_auto_commit=False,
                session_timeout_ms=self.config.session_timeout_ms,
                **self._security_settings(),
            )
            try:
                await kafka_consumer.start()
            except KafkaError as e:
                raise StreamConnectionError(f"Failed to join group {group_id}: {e}") from e

            member = _MemberState(consumer=kafka_consumer, consumer_name=consumer)
            self._members[key] = member
            logger.info(
                "Joined Kafka consumer group",
                extra={"group_id": group_id, "stream_key": stream_key, "consumer": consumer},
            )
            return member

    @staticmethod
    def _decode(stream_key: str, message: Any) -> StreamEntry:
        try:
            fields = json.loads(message.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StreamSerializationError(
                f"Undecodable Kafka record at offset {message.offset}: {e}"
            ) from e
        if not isinstance(fields, dict):
            raise StreamSerializationError(
                f"Kafka record at offset {message.offset} is not a JSON object"
            )
        return StreamEntry(stream_key, EntryId(message.offset, 0), fields, 1)

    async def read_group(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[StreamEntry]:
        """Fetch new records, or redeliver this member's pending entries."""
        member = await self._member(group_id, consumer, stream_key)

        if pending:
            entries = []
            for offset in sorted(member.pending)[:count]:
                entry, _ = member.pending[offset]
                entry.delivery_count += 1
                member.pending[offset] = (entry, time.monotonic())
                entries.append(entry)
            return entries

        try:
            batches = await member.consumer.getmany(timeout_ms=block_ms, max_records=count)
        except KafkaError as e:
            raise StreamError(f"Consumer error: {e}") from e

        entries = []
        now = time.monotonic()
        for messages in batches.values():
            for message in messages:
                try:
                    entry = self._decode(stream_key, message)
                except StreamSerializationError as e:
                    # Delivered without fields; the consumer acks and reports it
                    logger.error(str(e), extra={"stream_key": stream_key, "group_id": group_id})
                    entry = StreamEntry(stream_key, EntryId(message.offset, 0), {}, 1)
                member.pending[message.offset] = (entry, now)
                member.last_delivered = max(member.last_delivered, message.offset)
                entries.append(entry)
        entries.sort(key=lambda e: e.entry_id)
        return entries

    async def ack(self, group_id: str, stream_key: str, entry_ids: list[EntryId]) -> int:
        """Drop acked entries and commit up to the lowest unacked offset."""
        member = self._members.get((group_id, stream_key))
        if member is None:
            return 0

        acked = 0
        for entry_id in entry_ids:
            if member.pending.pop(entry_id.major, None) is not None:
                acked += 1

        commit_to = min(member.pending) if member.pending else member.last_delivered + 1
        if commit_to > member.committed:
            tp = TopicPartition(self.topic_for(stream_key), PARTITION)
            try:
                await member.consumer.commit({tp: OffsetAndMetadata(commit_to, "")})
            except KafkaError as e:
                raise StreamError(f"Failed to commit: {e}") from e
            member.committed = commit_to
        return acked

    async def pending(self, group_id: str, stream_key: str) -> list[PendingEntry]:
        """Pending entries known to this process."""
        member = self._members.get((group_id, stream_key))
        if member is None:
            return []
        now = time.monotonic()
        return [
            PendingEntry(
                entry_id=EntryId(offset, 0),
                consumer=member.consumer_name,
                idle_ms=int((now - delivered_at) * 1000),
                delivery_count=entry.delivery_count,
            )
            for offset, (entry, delivered_at) in sorted(member.pending.items())
        ]

    async def claim(
        self,
        group_id: str,
        consumer: str,
        stream_key: str,
        min_idle_ms: int,
        count: int,
    ) -> list[StreamEntry]:
        """Kafka reassigns partitions on rebalance; nothing to claim."""
        return []

    async def _tail(self) -> AIOKafkaConsumer:
        if self._tail_consumer is None:
            self._tail_consumer = AIOKafkaConsumer(
                bootstrap_servers=self.config.brokers,
                enable_auto_commit=False,
                **self._security_settings(),
            )
            await self._tail_consumer.start()
        return self._tail_consumer

    async def read(
        self,
        stream_key: str,
        after_id: EntryId,
        count: int,
        block_ms: int,
    ) -> list[StreamEntry]:
        """Read past after_id with a group-less assigned consumer."""
        tp = TopicPartition(self.topic_for(stream_key), PARTITION)
        try:
            consumer = await self._tail()
            assigned = set(consumer.assignment())
            if tp not in assigned:
                consumer.assign(list(assigned | {tp}))
            consumer.seek(tp, after_id.major + 1)
            batches = await consumer.getmany(tp, timeout_ms=block_ms, max_records=count)
        except KafkaError as e:
            raise StreamError(f"Tail read failed on {stream_key}: {e}") from e
        return [self._decode(stream_key, m) for m in batches.get(tp, [])]

    async def last_entry_id(self, stream_key: str) -> EntryId | None:
        """Offset of the newest record, from the end offset."""
        tp = TopicPartition(self.topic_for(stream_key), PARTITION)
        try:
            consumer = await self._tail()
            end_offsets = await consumer.end_offsets([tp])
        except KafkaError as e:
            raise StreamError(f"Failed to read end offset for {stream_key}: {e}") from e
        end = end_offsets.get(tp, 0)
        return EntryId(end - 1, 0) if end > 0 else None

    async def group_info(self, group_id: str, stream_key: str) -> GroupInfo:
        """Local pending count and distance to the end offset."""
        member = self._members.get((group_id, stream_key))
        last_entry = await self.last_entry_id(stream_key)
        last_delivered = member.last_delivered if member else -1
        end = last_entry.major + 1 if last_entry else 0
        return GroupInfo(
            group_id=group_id,
            stream_key=stream_key,
            pending=len(member.pending) if member else 0,
            lag=max(0, end - (last_delivered + 1)),
            last_delivered_id=EntryId(last_delivered, 0) if last_delivered >= 0 else None,
            last_entry_id=last_entry,
        )
