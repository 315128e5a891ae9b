"""
Integration tests for the full change flow.

Tests cover:
- Producer -> stream log -> cache, graph and comment projections
- Live notifications reaching only connected subscribers
- Building every component from configuration
"""

import asyncio
import json
from pathlib import Path

import pytest

from cdc.stream_pipeline.config import (
    NotificationConfig,
    PipelineConfig,
    ProducerConfig,
    ProjectorConfig,
    StorageConfig,
)
from cdc.stream_pipeline.main import PipelineServer
from cdc.stream_pipeline.notify import NotificationDispatcher, SubscriptionRegistry
from cdc.stream_pipeline.produce import ChangeProducer, iterable_feed, jsonl_feed
from cdc.stream_pipeline.project import CacheProjector, CommentProjector, GraphProjector
from cdc.stream_pipeline.store import GraphEdge, InMemoryKeyValueStore, SqliteCommentStore, SqliteGraphStore

CHANGES = [
    {"table": "actors", "op": "c", "ts": 1000,
     "after": {"actor_id": 9, "first_name": "Amy", "last_name": "Adams", "date_of_birth": "1974-08-20"}},
    {"table": "movies", "op": "c", "ts": 1001,
     "after": {"movie_id": 1, "title": "Arrival", "release_year": 2016, "rating": "7.9", "lead_actor_id": 9}},
    {"table": "users", "op": "c", "ts": 1002,
     "after": {"user_id": 7, "login": "ada", "is_admin": 0}},
    {"table": "comments", "op": "c", "ts": 1003,
     "after": {"comment_id": 5, "movie_id": 1, "user_id": 7, "comment": "Stunning", "rating": 5}},
    {"table": "movies", "op": "u", "ts": 1004,
     "before": {"movie_id": 1, "title": "Arrival", "release_year": 2016, "rating": "7.9", "lead_actor_id": 9},
     "after": {"movie_id": 1, "title": "Arrival", "release_year": 2017, "rating": "7.9", "lead_actor_id": 9}},
]


async def drain_all(projector):
    for stream_key in projector.stream_keys:
        for _ in range(20):
            if await projector.poll(stream_key) == 0:
                break


class Collector:
    def __init__(self):
        self.queue = asyncio.Queue()

    async def __call__(self, notification):
        await self.queue.put(notification)

    async def next(self, timeout=1.0):
        return await asyncio.wait_for(self.queue.get(), timeout)


class TestChangeFlow:
    """Changes published by the producer reach every projection."""

    @pytest.fixture
    async def stores(self, data_dir):
        graph = SqliteGraphStore(data_dir=data_dir)
        await graph.initialize()
        return InMemoryKeyValueStore(), graph, SqliteCommentStore(data_dir=data_dir)

    @pytest.fixture
    def projectors(self, stream_log, catalog, stores):
        cache, graph, comments = stores
        all_streams = [f"events:{t}" for t in catalog.entity_types()]
        return [
            CacheProjector(stream_log, cache, all_streams, block_ms=0),
            GraphProjector(stream_log, graph, catalog, all_streams, block_ms=0),
            CommentProjector(stream_log, comments, catalog, ["events:comment"], block_ms=0),
        ]

    @pytest.mark.asyncio
    async def test_changes_reach_all_projections(self, stream_log, catalog, stores, projectors):
        cache, graph, comments = stores
        producer = ChangeProducer(stream_log, catalog)

        await producer.run(iterable_feed(CHANGES))
        for projector in projectors:
            await drain_all(projector)

        movie = await cache.get("movie:1")
        assert movie["release_year"] == 2017
        assert movie["rating"] == 7.9
        assert (await cache.get("actor:9"))["date_of_birth"] == "1974-08-20"
        assert (await cache.get("user:7"))["is_admin"] is False

        assert await graph.edges_from("movie:1") == [GraphEdge("movie:1", "actor:9", "STARRING")]
        assert [e.from_key for e in await graph.edges_to("movie:1")] == ["comment:5"]
        assert await graph.count_nodes() == 4

        [comment] = await comments.list_by_target("movie:1")
        assert comment.key == "comment:5"
        assert comment.targets == ["movie:1", "user:7"]
        assert [c.key for c in await comments.search("stunning")] == ["comment:5"]

        for projector in projectors:
            for stream in await projector.lag():
                assert stream["outstanding"] == 0

    @pytest.mark.asyncio
    async def test_halted_stream_does_not_block_projections(self, stream_log, catalog, stores, projectors):
        cache, _, _ = stores
        producer = ChangeProducer(stream_log, catalog)
        bad = {"table": "movies", "op": "c", "ts": 2000, "after": {"movie_id": 2, "title": "X", "budget": 1}}

        await producer.run(iterable_feed([CHANGES[0], bad, CHANGES[1]]))
        await drain_all(projectors[0])

        assert await cache.get("actor:9") is not None
        assert await cache.get("movie:1") is None

        await producer.resume_stream("events:movie", drop_failed=True)
        await drain_all(projectors[0])

        assert (await cache.get("movie:1"))["title"] == "Arrival"
        assert await cache.get("movie:2") is None


class TestLiveNotifications:
    """Subscribers receive only what is dispatched while they are connected."""

    @pytest.fixture
    async def subscriptions(self):
        registry = SubscriptionRegistry()
        yield registry
        await registry.close()

    @pytest.mark.asyncio
    async def test_disconnected_subscriber_misses_events(self, stream_log, catalog, subscriptions):
        producer = ChangeProducer(stream_log, catalog)
        dispatcher = NotificationDispatcher(
            stream_log, catalog, subscriptions, ["events:comment"], block_ms=0
        )
        await dispatcher.seek_latest()

        def comment(comment_id, text):
            return {"table": "comments", "op": "c", "ts": comment_id,
                    "after": {"comment_id": comment_id, "movie_id": 1, "comment": text}}

        first = Collector()
        conn_id = subscriptions.connect(first)
        subscriptions.subscribe(conn_id, ["comments"])
        await producer.publish(comment(1, "while connected"))
        await dispatcher.poll("events:comment")
        assert (await first.next())["payload"]["comment"] == "while connected"

        await subscriptions.disconnect(conn_id)
        await producer.publish(comment(2, "while away"))
        await dispatcher.poll("events:comment")

        second = Collector()
        subscriptions.subscribe(subscriptions.connect(second), ["comments"])
        await producer.publish(comment(3, "after reconnect"))
        await dispatcher.poll("events:comment")

        assert (await second.next())["key"] == "comment:3"
        await asyncio.sleep(0.01)
        assert second.queue.empty()
        assert first.queue.empty()

    @pytest.mark.asyncio
    async def test_notifications_do_not_affect_projections(self, stream_log, catalog, subscriptions):
        store = InMemoryKeyValueStore()
        projector = CacheProjector(stream_log, store, ["events:comment"], block_ms=0)
        dispatcher = NotificationDispatcher(stream_log, catalog, subscriptions, ["events:comment"], block_ms=0)
        subscriptions.subscribe(subscriptions.connect(Collector()), ["comments"])
        await projector.ensure_groups()
        await dispatcher.seek_latest()

        await ChangeProducer(stream_log, catalog).publish(
            {"table": "comments", "op": "c", "ts": 1, "after": {"comment_id": 1, "movie_id": 1, "comment": "x"}}
        )
        await dispatcher.poll("events:comment")

        assert (await projector.lag())[0]["lag"] == 1
        await drain_all(projector)
        assert await store.get("comment:1") is not None


class TestPipelineServer:
    """Tests for building the pipeline from configuration."""

    @pytest.fixture
    def config(self, data_dir):
        feed = Path(data_dir) / "changes.jsonl"
        feed.write_text("\n".join(json.dumps(change) for change in CHANGES) + "\n")
        return PipelineConfig(
            components=("producer", "cache", "graph", "comments", "notify", "api"),
            storage=StorageConfig(data_dir=data_dir),
            producer=ProducerConfig(feed_path=str(feed)),
            projector=ProjectorConfig(block_ms=0, consumer_name="test-1"),
        )

    @pytest.mark.asyncio
    async def test_build_wires_components(self, config):
        server = PipelineServer(config)
        await server.build()
        try:
            assert server.registry.frozen
            assert server.stream_log.is_connected
            assert [p.name for p in server.projectors] == ["cache", "graph", "comments"]
            assert all(p.consumer == "test-1" for p in server.projectors)
            assert server.projectors[2].stream_keys == ["events:comment"]
            assert server.subscriptions is not None
            assert set(server.dispatcher.stream_keys) == set(server.entity_stream_keys())

            await server.producer.run(jsonl_feed(config.producer.feed_path))
            for projector in server.projectors:
                await drain_all(projector)

            assert (await server.cache_store.get("movie:1"))["release_year"] == 2017
            assert await server.graph_store.count_nodes() == 4
            assert len(await server.comment_store.list_by_target("user:7")) == 1

            context = server.api_context()
            assert context.producer is server.producer
            assert len(context.projectors) == 3
        finally:
            await server.stop()

        assert server.stream_log is None

    @pytest.mark.asyncio
    async def test_notify_topics_filter_dispatched_streams(self, data_dir):
        config = PipelineConfig(
            components=("notify", "api"),
            storage=StorageConfig(data_dir=data_dir),
            notification=NotificationConfig(topics=("comments",)),
        )
        server = PipelineServer(config)
        await server.build()
        try:
            assert server.dispatcher.stream_keys == ["events:comment"]
            assert server.projectors == []
            assert server.producer is None
        finally:
            await server.stop()
