"""
Subscription registry for live notifications.

Every connected client owns one Connection: the set of topics it is
subscribed to, a bounded outbound channel and a sender task that drains
the channel into the client's transport.

Invariants:
    - The registry is mutated only through connect, disconnect,
      subscribe, unsubscribe and publish
    - publish never blocks; a full channel drops its oldest notification
    - A transport failure tears down only the failing connection and
      discards its subscription
    - Notifications are not persisted; a disconnected client misses
      everything published while it was away

How to change safely:
    - Keep publish free of await points so fan-out stays atomic
      with respect to connect/disconnect
    - Do not retry failed sends; clients reconnect and resubscribe
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from ..errors import ConnectionError

logger = logging.getLogger(__name__)

Notification = dict[str, Any]
Transport = Callable[[Notification], Awaitable[None]]


@dataclass
class Connection:
    """One client connection and its outbound channel.

    Attributes:
        connection_id: Registry-unique identifier
        send: Coroutine function delivering one notification to the client
        topics: Topics the client is subscribed to
        channel: Bounded queue of notifications not yet sent
    """
    connection_id: str
    send: Transport
    buffer_size: int
    topics: set[str] = field(default_factory=set)
    channel: deque = field(default_factory=deque, init=False)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    sender: asyncio.Task | None = None
    sent_count: int = 0
    dropped_count: int = 0

    def __post_init__(self) -> None:
        self.channel = deque(maxlen=self.buffer_size)

    def enqueue(self, notification: Notification) -> None:
        if len(self.channel) == self.channel.maxlen:
            self.dropped_count += 1
        self.channel.append(notification)
        self.wakeup.set()

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "topics": sorted(self.topics),
            "queued": len(self.channel),
            "sent": self.sent_count,
            "dropped": self.dropped_count,
        }


class SubscriptionRegistry:
    """Connection-keyed subscription registry with per-connection channels.

    Example:
        >>> registry = SubscriptionRegistry(buffer_size=100)
        >>> conn_id = registry.connect(websocket.send_json)
        >>> registry.subscribe(conn_id, ["comments"])
        >>> registry.publish({"topic": "comments", "operation": "create", ...})
    """

    def __init__(self, buffer_size: int = 256) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self._connections: dict[str, Connection] = {}
        self._published_count = 0
        self._delivered_count = 0
        self._dropped_count = 0
        self._failed_connections = 0
        self._last_error: str | None = None

    def connect(self, send: Transport, connection_id: str | None = None) -> str:
        """Register a connection and start its sender task.

        Must be called from a running event loop.

        Returns:
            The connection id
        """
        connection_id = connection_id or uuid.uuid4().hex
        if connection_id in self._connections:
            raise ValueError(f"Connection '{connection_id}' already registered")

        conn = Connection(connection_id, send, self.buffer_size)
        conn.sender = asyncio.create_task(
            self._drain(conn), name=f"notify-sender-{connection_id}"
        )
        self._connections[connection_id] = conn
        logger.debug("Connection registered", extra={"connection_id": connection_id})
        return connection_id

    async def disconnect(self, connection_id: str) -> bool:
        """Remove a connection, discarding its subscription and queue.

        Returns:
            True if the connection was registered
        """
        conn = self._remove(connection_id)
        if conn is None:
            return False

        sender = conn.sender
        if sender is not None and sender is not asyncio.current_task() and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
        logger.debug("Connection disconnected", extra={"connection_id": connection_id})
        return True

    def subscribe(self, connection_id: str, topics: Iterable[str]) -> set[str]:
        """Add topics to a connection's subscription.

        Raises:
            ConnectionError: If the connection is not registered

        Returns:
            The connection's topics after the change
        """
        conn = self._get(connection_id)
        conn.topics.update(topics)
        return set(conn.topics)

    def unsubscribe(self, connection_id: str, topics: Iterable[str]) -> set[str]:
        """Remove topics from a connection's subscription."""
        conn = self._get(connection_id)
        conn.topics.difference_update(topics)
        return set(conn.topics)

    def publish(self, notification: Notification) -> int:
        """Enqueue a notification on every connection subscribed to its topic.

        Returns:
            Number of connections the notification was enqueued on
        """
        topic = notification.get("topic")
        self._published_count += 1
        delivered = 0
        for conn in self._connections.values():
            if topic in conn.topics:
                dropped_before = conn.dropped_count
                conn.enqueue(notification)
                self._dropped_count += conn.dropped_count - dropped_before
                delivered += 1
        self._delivered_count += delivered
        return delivered

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def topics_of(self, connection_id: str) -> set[str]:
        return set(self._get(connection_id).topics)

    async def wait_closed(self, connection_id: str) -> None:
        """Wait until a connection is torn down (returns at once if unknown)."""
        conn = self._connections.get(connection_id)
        if conn is not None:
            await conn.closed.wait()

    async def close(self) -> None:
        """Disconnect every connection."""
        for connection_id in list(self._connections):
            await self.disconnect(connection_id)

    def _get(self, connection_id: str) -> Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise ConnectionError(f"Connection '{connection_id}' is not registered", connection_id)
        return conn

    def _remove(self, connection_id: str) -> Connection | None:
        conn = self._connections.pop(connection_id, None)
        if conn is not None:
            conn.topics.clear()
            conn.channel.clear()
            conn.closed.set()
            conn.wakeup.set()
        return conn

    async def _drain(self, conn: Connection) -> None:
        """Sender task: move notifications from the channel to the transport."""
        while not conn.closed.is_set():
            if not conn.channel:
                conn.wakeup.clear()
                await conn.wakeup.wait()
                continue

            notification = conn.channel.popleft()
            try:
                await conn.send(notification)
            except Exception as e:
                error = ConnectionError(
                    f"Transport failed for connection '{conn.connection_id}': {e}",
                    conn.connection_id,
                )
                self._failed_connections += 1
                self._last_error = str(error)
                logger.warning(
                    "Notification transport failed, tearing down connection",
                    extra={**error.details, "error": str(e)},
                )
                self._remove(conn.connection_id)
                return
            conn.sent_count += 1

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def stats(self) -> dict[str, Any]:
        """Get registry statistics."""
        return {
            "connections": len(self._connections),
            "published_count": self._published_count,
            "delivered_count": self._delivered_count,
            "dropped_count": self._dropped_count,
            "failed_connections": self._failed_connections,
            "last_error": self._last_error,
        }

    def describe(self) -> list[dict[str, Any]]:
        return [conn.to_dict() for conn in self._connections.values()]
