"""
Unit tests for projection stores.

Tests cover:
- Version encoding and last-write-wins comparison
- In-memory key-value and graph stores (including failure injection)
- SQLite graph store: atomic node/edge rewrite, deletes, persistence
- SQLite comment store: targets, ordering, full-text search
- Every store refusing writes older than its stored version
- Unopenable SQLite databases surfacing as ProjectionWriteError
"""

from pathlib import Path

import pytest

from cdc.stream_pipeline.errors import ProjectionWriteError
from cdc.stream_pipeline.store import (
    GraphEdge,
    GraphNode,
    InMemoryGraphStore,
    InMemoryKeyValueStore,
    SqliteCommentStore,
    SqliteGraphStore,
    decode_version,
    encode_version,
    is_newer,
)
from cdc.stream_pipeline.store.comment_store import generate_snippet
from cdc.stream_pipeline.stream import EntryId


def v(ts, major, minor=0):
    return (ts, EntryId(major, minor))


class TestVersions:
    """Tests for version helpers."""

    def test_encode_decode(self):
        version = v(1730000000000, 1730000000001, 2)
        assert encode_version(version) == "1730000000000|1730000000001-2"
        assert decode_version(encode_version(version)) == version
        assert decode_version(None) is None
        assert decode_version("") is None

    def test_is_newer(self):
        assert is_newer(v(1, 1), None)
        assert is_newer(v(2, 1), v(1, 5))
        assert is_newer(v(1, 2), v(1, 1))
        assert not is_newer(v(1, 1), v(1, 1))
        assert not is_newer(v(1, 9), v(2, 1))


class TestInMemoryKeyValueStore:
    """Tests for InMemoryKeyValueStore."""

    @pytest.fixture
    def store(self):
        return InMemoryKeyValueStore()

    @pytest.mark.asyncio
    async def test_apply_put_and_delete(self, store):
        await store.apply_put("movie:1", {"title": "Arrival"}, v(1, 1))
        assert await store.get("movie:1") == {"title": "Arrival"}
        assert await store.get_version("movie:1") == v(1, 1)

        await store.apply_delete("movie:1", v(2, 2))
        assert await store.get("movie:1") is None
        # Tombstone version survives the delete
        assert await store.get_version("movie:1") == v(2, 2)

    @pytest.mark.asyncio
    async def test_stale_writes_are_refused(self, store):
        assert await store.apply_put("movie:1", {"year": 2017}, v(2000, 2))

        assert not await store.apply_put("movie:1", {"year": 2016}, v(1000, 1))
        assert not await store.apply_put("movie:1", {"year": 2016}, v(2000, 2))
        assert not await store.apply_delete("movie:1", v(1000, 3))

        assert await store.get("movie:1") == {"year": 2017}
        assert await store.get_version("movie:1") == v(2000, 2)

    @pytest.mark.asyncio
    async def test_tombstone_refuses_older_put(self, store):
        assert await store.apply_delete("movie:1", v(2000, 2))

        assert not await store.apply_put("movie:1", {"year": 2016}, v(1000, 1))
        assert await store.get("movie:1") is None

    @pytest.mark.asyncio
    async def test_values_are_copies(self, store):
        value = {"title": "Arrival"}
        await store.apply_put("movie:1", value, v(1, 1))
        value["title"] = "changed"

        fetched = await store.get("movie:1")
        fetched["title"] = "also changed"
        assert await store.get("movie:1") == {"title": "Arrival"}

    @pytest.mark.asyncio
    async def test_fail_next(self, store):
        store.fail_next(2)

        for _ in range(2):
            with pytest.raises(ProjectionWriteError):
                await store.apply_put("movie:1", {}, v(1, 1))

        await store.apply_put("movie:1", {}, v(1, 1))
        assert store.rejected_writes == 2
        assert store.keys() == ["movie:1"]

    @pytest.mark.asyncio
    async def test_plain_put_delete(self, store):
        await store.put("k", {"a": 1})
        assert await store.delete("k")
        assert not await store.delete("k")
        assert await store.get_version("k") is None


class GraphStoreContract:
    """Behaviour shared by every GraphStore implementation."""

    @pytest.mark.asyncio
    async def test_upsert_replaces_outgoing_edges(self, store):
        node = GraphNode("movie:1", "movie", {"title": "Arrival"})
        await store.apply_upsert(node, [GraphEdge("movie:1", "actor:9", "STARRING")], v(1, 1))
        await store.apply_upsert(node, [GraphEdge("movie:1", "actor:10", "STARRING")], v(2, 2))

        assert await store.edges_from("movie:1") == [GraphEdge("movie:1", "actor:10", "STARRING")]
        assert await store.edges_to("actor:9") == []
        assert await store.get_version("movie:1") == v(2, 2)

    @pytest.mark.asyncio
    async def test_get_node(self, store):
        await store.apply_upsert(GraphNode("actor:9", "actor", {"first_name": "Amy"}), [], v(1, 1))

        node = await store.get_node("actor:9")
        assert node.entity_type == "actor"
        assert node.properties == {"first_name": "Amy"}
        assert await store.get_node("actor:404") is None

    @pytest.mark.asyncio
    async def test_delete_removes_node_and_edges(self, store):
        await store.apply_upsert(
            GraphNode("movie:1", "movie", {}), [GraphEdge("movie:1", "actor:9", "STARRING")], v(1, 1)
        )
        await store.apply_upsert(
            GraphNode("comment:5", "comment", {}), [GraphEdge("comment:5", "movie:1", "ABOUT")], v(1, 2)
        )

        await store.apply_delete("movie:1", v(3, 3))

        assert await store.get_node("movie:1") is None
        assert await store.edges_from("movie:1") == []
        assert await store.edges_from("comment:5") == []
        assert await store.get_version("movie:1") == v(3, 3)

    @pytest.mark.asyncio
    async def test_edges_sorted(self, store):
        edges = [
            GraphEdge("comment:5", "user:7", "WRITTEN_BY"),
            GraphEdge("comment:5", "movie:1", "ABOUT"),
        ]
        await store.apply_upsert(GraphNode("comment:5", "comment", {}), edges, v(1, 1))

        assert [e.label for e in await store.edges_from("comment:5")] == ["ABOUT", "WRITTEN_BY"]

    @pytest.mark.asyncio
    async def test_stale_upsert_and_delete_are_refused(self, store):
        node = GraphNode("movie:1", "movie", {"lead_actor_id": 10})
        assert await store.apply_upsert(node, [GraphEdge("movie:1", "actor:10", "STARRING")], v(2000, 2))

        stale = GraphNode("movie:1", "movie", {"lead_actor_id": 9})
        assert not await store.apply_upsert(stale, [GraphEdge("movie:1", "actor:9", "STARRING")], v(1000, 1))
        assert not await store.apply_delete("movie:1", v(1000, 3))

        assert (await store.get_node("movie:1")).properties == {"lead_actor_id": 10}
        assert await store.edges_from("movie:1") == [GraphEdge("movie:1", "actor:10", "STARRING")]
        assert await store.get_version("movie:1") == v(2000, 2)


class TestInMemoryGraphStore(GraphStoreContract):
    """Tests for InMemoryGraphStore."""

    @pytest.fixture
    def store(self):
        return InMemoryGraphStore()

    @pytest.mark.asyncio
    async def test_failed_upsert_changes_nothing(self, store):
        store.fail_next(1)

        with pytest.raises(ProjectionWriteError):
            await store.apply_upsert(GraphNode("movie:1", "movie", {}), [], v(1, 1))

        assert await store.get_node("movie:1") is None
        assert await store.get_version("movie:1") is None


class TestSqliteGraphStore(GraphStoreContract):
    """Tests for SqliteGraphStore."""

    @pytest.fixture
    async def store(self, data_dir):
        store = SqliteGraphStore(data_dir=data_dir)
        await store.initialize()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, store, data_dir):
        await store.apply_upsert(
            GraphNode("movie:1", "movie", {"title": "Arrival"}),
            [GraphEdge("movie:1", "actor:9", "STARRING")],
            v(1, 1),
        )

        reopened = SqliteGraphStore(data_dir=data_dir)
        assert (await reopened.get_node("movie:1")).properties == {"title": "Arrival"}
        assert await reopened.get_version("movie:1") == v(1, 1)
        assert await reopened.count_nodes() == 1
        assert await reopened.count_nodes("actor") == 0

    @pytest.mark.asyncio
    async def test_plain_operations(self, store):
        await store.upsert_node(GraphNode("user:7", "user", {}))
        await store.replace_edges("user:7", [GraphEdge("user:7", "movie:1", "LIKES")])

        assert len(await store.edges_to("movie:1")) == 1
        assert await store.delete_node("user:7")
        assert not await store.delete_node("user:7")
        assert await store.get_version("user:7") is None

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_projection_write_error(self, store):
        for path in store.db_path.parent.glob("graph.db*"):
            path.unlink()
        store.db_path.mkdir()

        with pytest.raises(ProjectionWriteError, match="SQLite read failed"):
            await store.get_version("movie:1")
        with pytest.raises(ProjectionWriteError, match="SQLite read failed"):
            await store.edges_to("movie:1")
        with pytest.raises(ProjectionWriteError, match="SQLite write failed"):
            await store.apply_upsert(GraphNode("movie:1", "movie", {}), [], v(1, 1))


class TestSqliteCommentStore:
    """Tests for SqliteCommentStore."""

    @pytest.fixture
    async def store(self, data_dir):
        store = SqliteCommentStore(data_dir=data_dir)
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store):
        await store.apply_upsert(
            "comment:5", ["movie:1", "user:7"], {"comment": "Loved it"}, 1000, v(1000, 1)
        )

        comment = await store.get("comment:5")
        assert comment.targets == ["movie:1", "user:7"]
        assert comment.payload == {"comment": "Loved it"}
        assert comment.created_at == 1000
        assert comment.updated_at == 1000
        assert await store.get_version("comment:5") == v(1000, 1)

    @pytest.mark.asyncio
    async def test_update_keeps_created_at(self, store):
        await store.apply_upsert("comment:5", ["movie:1"], {"comment": "ok"}, 1000, v(1000, 1))
        await store.apply_upsert("comment:5", ["movie:2"], {"comment": "edited"}, 2000, v(2000, 2))

        comment = await store.get("comment:5")
        assert comment.created_at == 1000
        assert comment.updated_at == 2000
        assert comment.targets == ["movie:2"]
        assert await store.list_by_target("movie:1") == []

    @pytest.mark.asyncio
    async def test_list_by_target_newest_first(self, store):
        for i, ts in enumerate([1000, 3000, 2000]):
            await store.apply_upsert(f"comment:{i}", ["movie:1"], {"comment": f"c{i}"}, ts, v(ts, i + 1))
        await store.apply_upsert("comment:9", ["movie:2"], {"comment": "other"}, 5000, v(5000, 9))

        comments = await store.list_by_target("movie:1")

        assert [c.key for c in comments] == ["comment:1", "comment:2", "comment:0"]
        assert len(await store.list_by_target("movie:1", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_delete_keeps_tombstone(self, store):
        await store.apply_upsert("comment:5", ["movie:1"], {"comment": "bye"}, 1000, v(1000, 1))

        await store.apply_delete("comment:5", v(2000, 2))

        assert await store.get("comment:5") is None
        assert await store.list_by_target("movie:1") == []
        assert await store.get_version("comment:5") == v(2000, 2)

    @pytest.mark.asyncio
    async def test_search(self, store):
        await store.apply_upsert("comment:1", ["movie:1"], {"comment": "Stunning visuals"}, 1, v(1, 1))
        await store.apply_upsert("comment:2", ["movie:1"], {"comment": "Too slow"}, 2, v(2, 2))

        results = await store.search("stunning")

        assert [c.key for c in results] == ["comment:1"]

    @pytest.mark.asyncio
    async def test_search_follows_updates_and_deletes(self, store):
        await store.apply_upsert("comment:1", ["movie:1"], {"comment": "draft"}, 1, v(1, 1))
        await store.apply_upsert("comment:1", ["movie:1"], {"comment": "final"}, 2, v(2, 2))

        assert await store.search("draft") == []
        assert len(await store.search("final")) == 1

        await store.apply_delete("comment:1", v(3, 3))
        assert await store.search("final") == []

    @pytest.mark.asyncio
    async def test_stale_writes_are_refused(self, store):
        assert await store.apply_upsert("comment:5", ["movie:1"], {"comment": "edited"}, 2000, v(2000, 2))

        assert not await store.apply_upsert("comment:5", ["movie:9"], {"comment": "draft"}, 1000, v(1000, 1))
        assert not await store.apply_delete("comment:5", v(1000, 3))

        comment = await store.get("comment:5")
        assert comment.payload == {"comment": "edited"}
        assert comment.targets == ["movie:1"]
        assert await store.list_by_target("movie:9") == []

    @pytest.mark.asyncio
    async def test_invalid_search_query(self, store):
        assert await store.search('"unbalanced') == []

    @pytest.mark.asyncio
    async def test_unopenable_database_raises_projection_write_error(self, data_dir):
        blocked = Path(data_dir) / "blocked"
        blocked.write_text("not a directory")
        store = SqliteCommentStore(data_dir=str(blocked))

        with pytest.raises(ProjectionWriteError, match="SQLite read failed"):
            await store.list_by_target("movie:1")
        with pytest.raises(ProjectionWriteError, match="SQLite read failed"):
            await store.search("anything")
        with pytest.raises(ProjectionWriteError, match="SQLite write failed"):
            await store.apply_delete("comment:5", v(1, 1))

    def test_generate_snippet(self):
        assert generate_snippet({"comment": "Great", "rating": 5, "title": "Arrival"}) == "Arrival Great"
