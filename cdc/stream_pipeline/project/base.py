"""
Projector base: consumer-group member folding stream events into a store.

A Projector consumes entity streams as one member of a consumer group
and applies each event to its projection store. It ensures:
- Idempotent processing (last-write-wins versions per entity key)
- Acknowledgement only after the store write succeeded
- Ordered processing per entity key (per stream, per shard)
- Recovery of its own unacknowledged entries after restart or failure
- Takeover of entries left idle by a crashed group member

Invariants:
    - An entry is acked only after apply_event() returned
    - A failed entry stops the rest of its shard's batch; those entries
      stay pending and are re-read first on the next poll
    - Store failures are retried with exponential backoff, then left
      pending (never acked, never skipped)
    - An event older than the stored version is acked without writing;
      the store decides this atomically with the write
    - An unexpected error in a stream loop is logged and backed off;
      the loop keeps running and the projector reports unhealthy

How to change safely:
    - Subclasses implement write() only, delegating the version check
      to the store's apply_* compare-and-set
    - Keep write() idempotent; redelivery is normal, not exceptional
    - Test with crash (read, no ack) and claim scenarios
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import zlib
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Union

from ..errors import ProjectionWriteError
from ..events import Event
from ..stream.base import EntryId, StreamEntry, StreamError, StreamLog, StreamSerializationError

logger = logging.getLogger(__name__)

FailureCallback = Callable[[str, StreamEntry, Exception], Union[Awaitable[None], None]]


class Projector(ABC):
    """Consumer-group member that materializes events into a store.

    Thread safety:
        One task per stream key. Different projector instances share
        no state; run several with distinct consumer names to scale.

    Example:
        >>> projector = CacheProjector(log, store, ["events:movie"], consumer="cache-1")
        >>> await projector.start()  # Runs until stopped
    """

    name = "projector"

    def __init__(
        self,
        stream_log: StreamLog,
        stream_keys: list[str],
        group_id: str,
        consumer: str,
        batch_size: int = 100,
        block_ms: int = 1000,
        max_retries: int = 5,
        base_delay_ms: int = 50,
        max_delay_ms: int = 2000,
        shards: int = 1,
        claim_idle_ms: int = 30000,
        claim_interval_ms: int = 5000,
        on_failure: FailureCallback | None = None,
    ) -> None:
        """Initialize the projector.

        Args:
            stream_log: Stream log to consume from
            stream_keys: Streams this projector folds
            group_id: Consumer group ID
            consumer: This member's name within the group
            batch_size: Maximum entries per read
            block_ms: Maximum wait for new entries
            max_retries: Store retries per entry before leaving it pending
            base_delay_ms: First retry delay (doubles per attempt)
            max_delay_ms: Retry delay cap
            shards: Concurrent shards per batch (routed by entity key)
            claim_idle_ms: Idle time after which other members' entries
                are taken over
            claim_interval_ms: How often to look for idle entries
            on_failure: Called with (projector name, entry, error) when
                an entry exhausts its retries
        """
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.stream_log = stream_log
        self.stream_keys = list(stream_keys)
        self.group_id = group_id
        self.consumer = consumer
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.shards = shards
        self.claim_idle_ms = claim_idle_ms
        self.claim_interval_ms = claim_interval_ms
        self.on_failure = on_failure

        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._groups_ready: set[str] = set()
        self._recovering: dict[str, bool] = {key: True for key in self.stream_keys}
        self._last_claim: dict[str, float] = {key: time.monotonic() for key in self.stream_keys}

        self._processed_count = 0
        self._skipped_count = 0
        self._failed_count = 0
        self._retry_count = 0
        self._claimed_count = 0
        self._last_error: dict[str, Any] | None = None
        self._last_read: dict[str, EntryId] = {}
        self._failing_streams: set[str] = set()

    @abstractmethod
    async def write(self, event: Event) -> bool:
        """Apply the event to the store, recording its version atomically.

        Returns:
            False if the store already holds an equal or newer version

        Raises:
            ProjectionWriteError: If the store is unavailable or rejects the write
        """
        ...

    async def apply_event(self, event: Event) -> bool:
        """Apply one event unless a newer version is already stored.

        This is the core projection logic, separate from the consumption
        loop for testability.

        Returns:
            True if written, False if skipped as stale or duplicate
        """
        return await self.write(event)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def healthy(self) -> bool:
        """False while a stream loop is failing or has entries stuck pending."""
        return not self._failing_streams

    async def ensure_groups(self) -> None:
        """Create the consumer group on every stream (from the beginning)."""
        for stream_key in self.stream_keys:
            if stream_key not in self._groups_ready:
                await self.stream_log.ensure_group(self.group_id, stream_key, "0")
                self._groups_ready.add(stream_key)

    async def start(self) -> None:
        """Run one consume loop per stream key until stop() is called."""
        if self._running:
            logger.warning(f"{self.name} projector already running")
            return

        self._running = True
        await self.ensure_groups()
        logger.info(
            f"Starting {self.name} projector",
            extra={
                "group_id": self.group_id,
                "consumer": self.consumer,
                "streams": self.stream_keys,
                "shards": self.shards,
            },
        )

        self._tasks = [
            asyncio.create_task(self._consume(key), name=f"{self.name}:{key}")
            for key in self.stream_keys
        ]
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info(f"{self.name} projector cancelled")
            for task in self._tasks:
                task.cancel()
            raise
        finally:
            self._running = False
            self._tasks = []

    async def stop(self) -> None:
        """Stop reading; in-flight batches finish and ack."""
        self._running = False
        logger.info(f"Stopping {self.name} projector", extra={"consumer": self.consumer})

    async def _consume(self, stream_key: str) -> None:
        errors_in_a_row = 0
        while self._running:
            try:
                await self.poll(stream_key)
                errors_in_a_row = 0
            except StreamError as e:
                errors_in_a_row += 1
                delay_ms = self._loop_failed(stream_key, e, errors_in_a_row)
                logger.error(
                    f"{self.name} projector read failed, retrying in {delay_ms}ms: {e}",
                    extra={"stream_key": stream_key, "consumer": self.consumer},
                )
                await asyncio.sleep(delay_ms / 1000)
            except Exception as e:
                errors_in_a_row += 1
                delay_ms = self._loop_failed(stream_key, e, errors_in_a_row)
                logger.error(
                    f"{self.name} projector loop failed, retrying in {delay_ms}ms: {e}",
                    extra={"stream_key": stream_key, "consumer": self.consumer},
                    exc_info=True,
                )
                await asyncio.sleep(delay_ms / 1000)

    def _loop_failed(self, stream_key: str, error: Exception, errors_in_a_row: int) -> int:
        self._record_error(stream_key, None, error)
        self._failing_streams.add(stream_key)
        # Whatever was read before the failure is still pending
        self._recovering[stream_key] = True
        return self._backoff_ms(errors_in_a_row - 1)

    async def poll(self, stream_key: str) -> int:
        """One iteration: own pending entries, then idle claims, then new entries.

        Returns:
            Number of entries acknowledged
        """
        if stream_key not in self._groups_ready:
            await self.ensure_groups()

        entries: list[StreamEntry] = []
        if self._recovering[stream_key]:
            entries = await self.stream_log.read_group(
                self.group_id, self.consumer, stream_key, self.batch_size, 0, pending=True
            )
            if not entries:
                self._recovering[stream_key] = False

        if not entries and self._claim_due(stream_key):
            entries = await self.stream_log.claim(
                self.group_id, self.consumer, stream_key, self.claim_idle_ms, self.batch_size
            )
            if entries:
                self._claimed_count += len(entries)
                logger.info(
                    f"{self.name} projector claimed idle entries",
                    extra={"stream_key": stream_key, "count": len(entries), "consumer": self.consumer},
                )

        if not entries:
            entries = await self.stream_log.read_group(
                self.group_id, self.consumer, stream_key, self.batch_size, self.block_ms
            )

        if not entries:
            self._failing_streams.discard(stream_key)
            return 0
        return await self.process_batch(stream_key, entries)

    def _claim_due(self, stream_key: str) -> bool:
        now = time.monotonic()
        if (now - self._last_claim[stream_key]) * 1000 < self.claim_interval_ms:
            return False
        self._last_claim[stream_key] = now
        return True

    def shard_of(self, entity_key: str) -> int:
        """Shard an entity key is routed to (stable across processes)."""
        if self.shards == 1:
            return 0
        return zlib.crc32(entity_key.encode("utf-8")) % self.shards

    async def process_batch(self, stream_key: str, entries: list[StreamEntry]) -> int:
        """Apply a batch in order per shard and acknowledge what succeeded.

        Returns:
            Number of entries acknowledged
        """
        shards: dict[int, list[tuple[StreamEntry, Event]]] = {}
        undecodable: list[EntryId] = []

        for entry in entries:
            try:
                event = Event.from_entry(entry)
            except StreamSerializationError as e:
                # Not an event; retrying cannot change that
                self._failed_count += 1
                self._record_error(stream_key, entry, e)
                logger.error(
                    f"{self.name} projector acking undecodable entry: {e}",
                    extra={"stream_key": stream_key, "entry_id": str(entry.entry_id)},
                )
                await self._notify_failure(entry, e)
                undecodable.append(entry.entry_id)
                continue
            shards.setdefault(self.shard_of(event.entity_key), []).append((entry, event))

        acked = 0
        if undecodable:
            acked += await self.stream_log.ack(self.group_id, stream_key, undecodable)

        results = await asyncio.gather(
            *(self._process_shard(stream_key, items) for items in shards.values())
        )
        acked += sum(results)
        if all(done == len(items) for done, items in zip(results, shards.values())):
            self._failing_streams.discard(stream_key)
        else:
            self._failing_streams.add(stream_key)
        self._last_read[stream_key] = max(e.entry_id for e in entries)
        return acked

    async def _process_shard(
        self,
        stream_key: str,
        items: list[tuple[StreamEntry, Event]],
    ) -> int:
        done: list[EntryId] = []
        try:
            for entry, event in items:
                if not await self._apply_with_retry(stream_key, entry, event):
                    # Leave this and later entries of the shard pending
                    self._recovering[stream_key] = True
                    break
                done.append(entry.entry_id)
        finally:
            if done:
                await self.stream_log.ack(self.group_id, stream_key, done)
        return len(done)

    async def _apply_with_retry(self, stream_key: str, entry: StreamEntry, event: Event) -> bool:
        last_error: ProjectionWriteError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                applied = await self.apply_event(event)
            except ProjectionWriteError as e:
                last_error = e
                if attempt == self.max_retries:
                    break
                self._retry_count += 1
                delay_ms = self._backoff_ms(attempt)
                logger.warning(
                    f"{self.name} store write failed, retrying in {delay_ms}ms: {e.message}",
                    extra={"entity_key": event.entity_key, "attempt": attempt + 1},
                )
                await asyncio.sleep(delay_ms / 1000)
                continue

            if applied:
                self._processed_count += 1
                logger.debug(
                    f"{self.name} applied event",
                    extra={
                        "entity_key": event.entity_key,
                        "op": event.operation.value,
                        "entry_id": str(entry.entry_id),
                    },
                )
            else:
                self._skipped_count += 1
                logger.debug(
                    f"{self.name} skipped stale event",
                    extra={"entity_key": event.entity_key, "entry_id": str(entry.entry_id)},
                )
            return True

        assert last_error is not None
        self._failed_count += 1
        self._record_error(stream_key, entry, last_error)
        logger.error(
            f"{self.name} projector leaving entry pending after {self.max_retries + 1} attempts: "
            f"{last_error.message}",
            extra={
                "stream_key": stream_key,
                "entry_id": str(entry.entry_id),
                "entity_key": event.entity_key,
                "delivery_count": entry.delivery_count,
            },
        )
        await self._notify_failure(entry, last_error)
        return False

    def _backoff_ms(self, attempt: int) -> int:
        return min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)

    def _record_error(self, stream_key: str, entry: StreamEntry | None, error: Exception) -> None:
        self._last_error = {
            "stream_key": stream_key,
            "entry_id": str(entry.entry_id) if entry else None,
            "error": str(error),
            "at_ms": int(time.time() * 1000),
        }

    async def _notify_failure(self, entry: StreamEntry, error: Exception) -> None:
        if self.on_failure is None:
            return
        result = self.on_failure(self.name, entry, error)
        if inspect.isawaitable(result):
            await result

    async def lag(self) -> list[dict[str, Any]]:
        """Pending count and lag of this projector's group, per stream."""
        await self.ensure_groups()
        return [
            (await self.stream_log.group_info(self.group_id, key)).to_dict()
            for key in self.stream_keys
        ]

    @property
    def stats(self) -> dict[str, Any]:
        """Get projector statistics."""
        return {
            "name": self.name,
            "group_id": self.group_id,
            "consumer": self.consumer,
            "running": self._running,
            "healthy": self.healthy,
            "failing_streams": sorted(self._failing_streams),
            "processed_count": self._processed_count,
            "skipped_count": self._skipped_count,
            "failed_count": self._failed_count,
            "retry_count": self._retry_count,
            "claimed_count": self._claimed_count,
            "last_error": self._last_error,
            "last_read_ids": {k: str(v) for k, v in self._last_read.items()},
        }
