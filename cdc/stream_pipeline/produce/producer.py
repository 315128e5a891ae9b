"""
Change producer: upstream row changes -> stream log.

The producer normalizes each row change against the schema catalog and
appends it to the stream of its entity type. It ensures:
- Per-key ordering (one in-flight append per stream key)
- No silent data loss (undecodable changes halt their stream)
- Bounded retries with exponential backoff on append failures

Invariants:
    - A change is appended at most once per publish() call
    - Appends to one stream key are serialized in call order
    - A halted stream parks later changes in order until resumed
    - An ordering regression is reported but never reorders or drops

How to change safely:
    - Keep normalization in Normalizer; the producer only sequences
    - Test halt/resume with interleaved changes for several tables
    - Monitor ordering_violations and halted streams in production
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator

from ..errors import AppendError, OrderingViolation, SourceDecodeError, StreamHaltedError
from ..events import Event
from ..schema.registry import SchemaRegistry
from ..stream.base import EntryId, StreamError, StreamLog
from .change import RowChange, decode_change
from .normalizer import Normalizer

logger = logging.getLogger(__name__)


class ChangeProducer:
    """Publishes normalized row changes to the stream log.

    Example:
        >>> producer = ChangeProducer(stream_log, load_catalog())
        >>> entry_id = await producer.publish(change)
        >>> await producer.run(jsonl_feed("changes.jsonl"))
    """

    def __init__(
        self,
        stream_log: StreamLog,
        registry: SchemaRegistry,
        max_retries: int = 5,
        base_delay_ms: int = 100,
        max_delay_ms: int = 5000,
        ordering_window: int = 10000,
    ) -> None:
        """Initialize the producer.

        Args:
            stream_log: Stream log to append to
            registry: Frozen schema catalog
            max_retries: Append retries before AppendError
            base_delay_ms: First retry delay (doubles per attempt)
            max_delay_ms: Retry delay cap
            ordering_window: Entity keys tracked for ordering checks
        """
        self.stream_log = stream_log
        self.registry = registry
        self.normalizer = Normalizer(registry)
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.ordering_window = ordering_window

        self._stream_locks: dict[str, asyncio.Lock] = {}
        self._last_ts: OrderedDict[str, int] = OrderedDict()
        self._halted: dict[str, SourceDecodeError] = {}
        self._parked: dict[str, list[Any]] = {}
        self._failure: AppendError | None = None
        self._running = False

        self._published_count = 0
        self._skipped_count = 0
        self._ordering_violations = 0
        self._append_retries = 0

    @property
    def healthy(self) -> bool:
        """False after an append failed all retries, until the next success."""
        return self._failure is None

    @property
    def halted_streams(self) -> dict[str, dict[str, Any]]:
        """Halted streams with the halting error and parked change count."""
        return {
            stream_key: {
                "error": error.message,
                "column": error.column,
                "parked": len(self._parked.get(stream_key, [])),
            }
            for stream_key, error in self._halted.items()
        }

    async def publish(self, change: RowChange | dict[str, Any] | str | bytes | None) -> EntryId:
        """Normalize and append one change.

        Args:
            change: RowChange or any encoding accepted by decode_change()

        Returns:
            EntryId assigned by the stream log

        Raises:
            StreamHaltedError: If the change's stream is halted
            SourceDecodeError: If the change is malformed
            AppendError: If the log did not accept it after retries
        """
        change = decode_change(change)
        stream_key = self.normalizer.stream_key_for(change.table)
        if stream_key is not None and stream_key in self._halted:
            raise StreamHaltedError(stream_key, table=change.table)
        event = await self._publish(change)
        assert event.entry_id is not None
        return event.entry_id

    async def _publish(self, change: RowChange) -> Event:
        event = self.normalizer.normalize(change)

        lock = self._stream_locks.setdefault(event.stream_key, asyncio.Lock())
        async with lock:
            self._check_ordering(event)
            event.entry_id = await self._append(event)

        self._published_count += 1
        logger.debug(
            "Published change",
            extra={
                "stream_key": event.stream_key,
                "entity_key": event.entity_key,
                "op": event.operation.value,
                "entry_id": str(event.entry_id),
            },
        )
        return event

    def _check_ordering(self, event: Event) -> None:
        previous = self._last_ts.get(event.entity_key)
        if previous is not None and event.source_timestamp < previous:
            violation = OrderingViolation(event.entity_key, previous, event.source_timestamp)
            self._ordering_violations += 1
            logger.warning(violation.message, extra={"code": violation.code, **violation.details})
            latest = previous
        else:
            latest = event.source_timestamp

        self._last_ts[event.entity_key] = latest
        self._last_ts.move_to_end(event.entity_key)
        while len(self._last_ts) > self.ordering_window:
            self._last_ts.popitem(last=False)

    async def _append(self, event: Event) -> EntryId:
        fields = event.to_fields()
        last_error: StreamError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                entry_id = await self.stream_log.append(event.stream_key, fields)
                self._failure = None
                return entry_id
            except StreamError as e:
                last_error = e
                if attempt == self.max_retries:
                    break
                self._append_retries += 1
                delay_ms = min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)
                logger.warning(
                    f"Append failed, retrying in {delay_ms}ms: {e}",
                    extra={"stream_key": event.stream_key, "attempt": attempt + 1},
                )
                await asyncio.sleep(delay_ms / 1000)

        error = AppendError(
            f"Stream log rejected append to {event.stream_key} after "
            f"{self.max_retries + 1} attempts: {last_error}",
            stream_key=event.stream_key,
            attempts=self.max_retries + 1,
        )
        self._failure = error
        logger.error(error.message, extra={"code": error.code, **error.details})
        raise error from last_error

    async def run(self, feed: AsyncIterator[Any]) -> None:
        """Publish every change of a feed until it ends or stop() is called.

        Unprocessable changes are skipped, undecodable changes halt their
        stream, and AppendError ends the run.
        """
        self._running = True
        logger.info("Starting producer")
        try:
            async for raw in feed:
                if not self._running:
                    break
                await self.submit(raw)
        except asyncio.CancelledError:
            logger.info("Producer cancelled")
            raise
        finally:
            self._running = False

    async def submit(self, raw: Any) -> EntryId | None:
        """Publish one raw change with the feed's skip/halt policy.

        Returns:
            EntryId if appended, None if skipped or parked

        Raises:
            AppendError: If the log did not accept the change
        """
        try:
            change = decode_change(raw)
        except SourceDecodeError as e:
            # A known table with an undecodable change halts its stream
            stream_key = self.normalizer.stream_key_for(e.table) if e.table else None
            if e.unprocessable or stream_key is None:
                self._skip(e)
            elif stream_key in self._halted:
                self._parked[stream_key].append(raw)
            else:
                self._halt(stream_key, e, raw)
            return None

        stream_key = self.normalizer.stream_key_for(change.table)
        if stream_key is not None and stream_key in self._halted:
            self._parked[stream_key].append(change)
            logger.debug(
                "Parked change for halted stream",
                extra={"stream_key": stream_key, "parked": len(self._parked[stream_key])},
            )
            return None

        try:
            event = await self._publish(change)
        except SourceDecodeError as e:
            if e.unprocessable or e.stream_key is None:
                self._skip(e)
            else:
                self._halt(e.stream_key, e, change)
            return None
        return event.entry_id

    def _skip(self, error: SourceDecodeError) -> None:
        self._skipped_count += 1
        logger.warning(
            f"Skipping unprocessable change: {error.message}",
            extra={"code": error.code, **error.details},
        )

    def _halt(self, stream_key: str, error: SourceDecodeError, change: Any) -> None:
        self._halted[stream_key] = error
        self._parked.setdefault(stream_key, []).insert(0, change)
        logger.error(
            f"Halting stream {stream_key}: {error.message}",
            extra={"code": error.code, **error.details},
        )

    async def resume_stream(self, stream_key: str, drop_failed: bool = False) -> int:
        """Re-publish a halted stream's parked changes and lift the halt.

        Changes submitted while resuming are parked behind the ones being
        drained, so stream order is kept. If a parked change still fails
        to decode, the stream halts again on it.

        Args:
            stream_key: Halted stream
            drop_failed: Discard the change that caused the halt instead
                of retrying it

        Returns:
            Number of changes re-published
        """
        if stream_key not in self._halted:
            return 0

        parked = self._parked.setdefault(stream_key, [])
        if drop_failed and parked:
            dropped = parked.pop(0)
            logger.warning(
                "Dropped change that halted stream",
                extra={"stream_key": stream_key, "change": repr(dropped)[:200]},
            )

        logger.info("Resuming stream", extra={"stream_key": stream_key, "parked": len(parked)})
        republished = 0
        while parked:
            change = parked[0]
            try:
                await self._publish(decode_change(change))
            except SourceDecodeError as e:
                self._halted[stream_key] = e
                logger.error(
                    f"Stream {stream_key} halted again: {e.message}",
                    extra={"code": e.code, **e.details},
                )
                return republished
            parked.pop(0)
            republished += 1

        del self._halted[stream_key]
        del self._parked[stream_key]
        logger.info("Stream resumed", extra={"stream_key": stream_key, "republished": republished})
        return republished

    async def stop(self) -> None:
        """Stop the feed loop after the current change."""
        self._running = False
        logger.info("Stopping producer")

    @property
    def stats(self) -> dict[str, Any]:
        """Get producer statistics."""
        return {
            "running": self._running,
            "healthy": self.healthy,
            "published_count": self._published_count,
            "skipped_count": self._skipped_count,
            "ordering_violations": self._ordering_violations,
            "append_retries": self._append_retries,
            "halted_streams": self.halted_streams,
            "last_error": self._failure.message if self._failure else None,
        }
