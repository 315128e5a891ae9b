"""
Unit tests for the notification dispatcher.
"""

import asyncio

import pytest

from cdc.stream_pipeline.notify import NotificationDispatcher, SubscriptionRegistry


class Collector:
    def __init__(self):
        self.queue = asyncio.Queue()

    async def __call__(self, notification):
        await self.queue.put(notification)

    async def next(self, timeout=1.0):
        return await asyncio.wait_for(self.queue.get(), timeout)


class TestNotificationDispatcher:
    """Tests for NotificationDispatcher."""

    @pytest.fixture
    async def subscriptions(self):
        registry = SubscriptionRegistry()
        yield registry
        await registry.close()

    @pytest.fixture
    def dispatcher(self, stream_log, catalog, subscriptions):
        return NotificationDispatcher(
            stream_log,
            catalog,
            subscriptions,
            ["events:comment", "events:movie"],
            block_ms=0,
        )

    @pytest.mark.asyncio
    async def test_starts_at_latest_entry(self, dispatcher, append_event, subscriptions):
        await append_event("comment", "comment:1", "create", {"comment": "old"}, ts=1)
        await dispatcher.seek_latest()
        collector = Collector()
        subscriptions.subscribe(subscriptions.connect(collector), ["comments"])

        await append_event("comment", "comment:2", "create", {"comment": "new"}, ts=2)
        published = await dispatcher.poll("events:comment")

        assert published == 1
        notification = await collector.next()
        assert notification["key"] == "comment:2"
        assert notification["topic"] == "comments"
        assert notification["operation"] == "create"
        assert notification["payload"] == {"comment": "new"}

    @pytest.mark.asyncio
    async def test_topic_comes_from_catalog(self, dispatcher, append_event, subscriptions):
        await dispatcher.seek_latest()
        collector = Collector()
        subscriptions.subscribe(subscriptions.connect(collector), ["movie"])

        await append_event("movie", "movie:1", "update", {"title": "Arrival"}, ts=1)
        await dispatcher.poll("events:movie")

        assert (await collector.next())["topic"] == "movie"

    @pytest.mark.asyncio
    async def test_does_not_redeliver(self, dispatcher, append_event):
        await dispatcher.seek_latest()
        await append_event("comment", "comment:1", "create", {}, ts=1)

        assert await dispatcher.poll("events:comment") == 1
        assert await dispatcher.poll("events:comment") == 0
        assert dispatcher.stats["dispatched_count"] == 1

    @pytest.mark.asyncio
    async def test_skips_undecodable_entries(self, dispatcher, stream_log, append_event):
        await dispatcher.seek_latest()
        await stream_log.append("events:comment", {"garbage": "1"})
        await append_event("comment", "comment:1", "create", {}, ts=1)

        assert await dispatcher.poll("events:comment") == 1

        stats = dispatcher.stats
        assert stats["skipped_count"] == 1
        assert stats["last_error"] is not None

    @pytest.mark.asyncio
    async def test_does_not_touch_consumer_groups(self, dispatcher, stream_log, append_event):
        await stream_log.ensure_group("cache-projector", "events:comment")
        await dispatcher.seek_latest()
        await append_event("comment", "comment:1", "create", {}, ts=1)

        await dispatcher.poll("events:comment")

        info = await stream_log.group_info("cache-projector", "events:comment")
        assert info.lag == 1
        assert info.pending == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, dispatcher, append_event, subscriptions):
        collector = Collector()
        subscriptions.subscribe(subscriptions.connect(collector), ["comments"])
        dispatcher.block_ms = 20

        task = asyncio.create_task(dispatcher.start())
        await asyncio.sleep(0.05)
        assert dispatcher.running

        await append_event("comment", "comment:7", "create", {}, ts=1)
        assert (await collector.next())["key"] == "comment:7"

        await dispatcher.stop()
        await asyncio.wait_for(task, 1.0)
        assert not dispatcher.running
