"""
Notification dispatcher: stream log -> subscription registry.

The dispatcher tails the configured streams without a consumer group.
It starts at the latest entry present when it starts and keeps its
position in memory only, so there is no replay: events appended while
the dispatcher (or a client) was away are never pushed.

Invariants:
    - Entries of one stream key are published in log order
    - An undecodable entry is logged and skipped, never retried
    - Nothing the dispatcher does changes projector state

How to change safely:
    - Keep the notification shape {topic, operation, payload, key,
      entity_type} stable, front ends depend on it
    - Do not add a persisted cursor; live updates are best-effort
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..events import Event
from ..schema.registry import SchemaRegistry
from ..stream.base import MIN_ENTRY_ID, EntryId, StreamEntry, StreamError, StreamLog
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Tails entity streams and fans events out to subscribers.

    Example:
        >>> dispatcher = NotificationDispatcher(log, registry, subscriptions, ["events:comment"])
        >>> await dispatcher.start()
    """

    def __init__(
        self,
        stream_log: StreamLog,
        schema_registry: SchemaRegistry,
        subscriptions: SubscriptionRegistry,
        stream_keys: list[str],
        batch_size: int = 100,
        block_ms: int = 1000,
        error_backoff_ms: int = 1000,
    ) -> None:
        self.stream_log = stream_log
        self.schema_registry = schema_registry
        self.subscriptions = subscriptions
        self.stream_keys = list(stream_keys)
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.error_backoff_ms = error_backoff_ms

        self._running = False
        self._positions: dict[str, EntryId] = {}
        self._tasks: list[asyncio.Task] = []
        self._dispatched_count = 0
        self._skipped_count = 0
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def seek_latest(self) -> None:
        """Position every stream at its latest entry."""
        for stream_key in self.stream_keys:
            latest = await self.stream_log.last_entry_id(stream_key)
            self._positions[stream_key] = latest or MIN_ENTRY_ID

    async def start(self) -> None:
        """Start tailing; runs until stop() is called."""
        if self._running:
            logger.warning("Dispatcher already running")
            return

        await self.seek_latest()
        self._running = True
        logger.info(
            "Notification dispatcher started",
            extra={"stream_keys": self.stream_keys},
        )

        self._tasks = [
            asyncio.create_task(self._tail(key), name=f"notify-{key}")
            for key in self.stream_keys
        ]
        try:
            await asyncio.gather(*self._tasks)
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop tailing after the current read returns."""
        self._running = False
        logger.info("Notification dispatcher stopping")

    async def _tail(self, stream_key: str) -> None:
        while self._running:
            try:
                await self.poll(stream_key)
            except StreamError as e:
                self._last_error = str(e)
                logger.error(
                    "Stream read failed in dispatcher",
                    extra={"stream_key": stream_key, "error": str(e)},
                )
                await asyncio.sleep(self.error_backoff_ms / 1000.0)

    async def poll(self, stream_key: str) -> int:
        """Read one batch past the current position and publish it.

        Returns:
            Number of events published
        """
        position = self._positions.get(stream_key, MIN_ENTRY_ID)
        entries = await self.stream_log.read(stream_key, position, self.batch_size, self.block_ms)

        published = 0
        for entry in entries:
            self._positions[stream_key] = entry.entry_id
            if self.dispatch(entry):
                published += 1
        return published

    def dispatch(self, entry: StreamEntry) -> bool:
        """Publish one stream entry to the subscribers of its topic."""
        try:
            event = Event.from_entry(entry)
        except StreamError as e:
            self._skipped_count += 1
            self._last_error = str(e)
            logger.warning(
                "Skipping undecodable entry in dispatcher",
                extra={"stream_key": entry.stream_key, "entry_id": str(entry.entry_id), "error": str(e)},
            )
            return False

        topic = self.schema_registry.topic_for(event.entity_type)
        self.subscriptions.publish(event.notification(topic))
        self._dispatched_count += 1
        return True

    @property
    def stats(self) -> dict[str, Any]:
        """Get dispatcher statistics."""
        return {
            "running": self._running,
            "dispatched_count": self._dispatched_count,
            "skipped_count": self._skipped_count,
            "positions": {key: str(pos) for key, pos in self._positions.items()},
            "last_error": self._last_error,
        }
