"""
Unit tests for the change producer.

Tests cover:
- Publishing normalized events to the entity's stream
- Per-key ordering and ordering-violation reporting
- Append retries and the AppendError health signal
- Skip/halt policy for bad changes, parking and resume
- Feeds (in-memory and JSON lines)
"""

import asyncio
import json
from pathlib import Path

import pytest

from cdc.stream_pipeline.errors import AppendError, SourceDecodeError, StreamHaltedError
from cdc.stream_pipeline.events import Event
from cdc.stream_pipeline.produce import ChangeProducer, iterable_feed, jsonl_feed


def movie(movie_id, title="Arrival", ts=1000, op="c", **extra):
    return {"table": "movies", "op": op, "after": {"movie_id": movie_id, "title": title, **extra}, "ts": ts}


def actor(actor_id, ts=1000):
    return {
        "table": "actors",
        "op": "c",
        "after": {"actor_id": actor_id, "first_name": "Amy", "last_name": "Adams"},
        "ts": ts,
    }


def bad_movie(movie_id=99):
    """A change for a known table that does not match its schema."""
    return movie(movie_id, budget=1000000)


def titles(stream_log, stream_key="events:movie"):
    return [Event.from_entry(e).payload["title"] for e in stream_log.get_all_entries(stream_key)]


class TestChangeProducer:
    """Tests for ChangeProducer."""

    @pytest.fixture
    def producer(self, stream_log, catalog):
        return ChangeProducer(stream_log, catalog, max_retries=3, base_delay_ms=0)

    @pytest.mark.asyncio
    async def test_publish_appends_to_entity_stream(self, producer, stream_log):
        entry_id = await producer.publish(movie(1))

        entries = stream_log.get_all_entries("events:movie")
        assert len(entries) == 1
        assert entries[0].entry_id == entry_id

        event = Event.from_entry(entries[0])
        assert event.entity_key == "movie:1"
        assert event.source_timestamp == 1000
        assert producer.stats["published_count"] == 1

    @pytest.mark.asyncio
    async def test_publish_keeps_call_order(self, producer, stream_log):
        await asyncio.gather(*(producer.publish(movie(1, title=f"v{i}", ts=i)) for i in range(20)))

        assert titles(stream_log) == [f"v{i}" for i in range(20)]

    @pytest.mark.asyncio
    async def test_ordering_violation_is_reported_not_reordered(self, producer, stream_log):
        await producer.publish(movie(1, title="newer", ts=2000))
        await producer.publish(movie(1, title="older", ts=1000))

        assert producer.stats["ordering_violations"] == 1
        assert titles(stream_log) == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_different_keys_are_not_violations(self, producer):
        await producer.publish(movie(1, ts=2000))
        await producer.publish(movie(2, ts=1000))

        assert producer.stats["ordering_violations"] == 0

    @pytest.mark.asyncio
    async def test_append_retries(self, producer, stream_log):
        stream_log.fail_appends(2)

        await producer.publish(movie(1))

        assert stream_log.get_entry_count("events:movie") == 1
        assert producer.stats["append_retries"] == 2
        assert producer.healthy

    @pytest.mark.asyncio
    async def test_append_error_after_retries(self, producer, stream_log):
        stream_log.fail_appends(10)

        with pytest.raises(AppendError) as exc_info:
            await producer.publish(movie(1))

        assert exc_info.value.attempts == 4
        assert exc_info.value.stream_key == "events:movie"
        assert not producer.healthy
        assert producer.stats["last_error"] is not None
        assert stream_log.get_entry_count("events:movie") == 0

        stream_log.fail_appends(0)
        await producer.publish(movie(1))
        assert producer.healthy

    @pytest.mark.asyncio
    async def test_publish_rejects_malformed_change(self, producer, stream_log):
        with pytest.raises(SourceDecodeError):
            await producer.publish(bad_movie())
        assert stream_log.get_entry_count("events:movie") == 0

    @pytest.mark.asyncio
    async def test_submit_skips_unprocessable(self, producer, stream_log):
        assert await producer.submit({"table": "audit_log", "op": "c", "after": {"id": 1}}) is None
        assert await producer.submit("not json") is None
        assert await producer.submit(None) is None

        assert producer.stats["skipped_count"] == 3
        assert producer.halted_streams == {}

    @pytest.mark.asyncio
    async def test_decode_failure_halts_only_its_stream(self, producer, stream_log):
        await producer.submit(movie(1, title="before"))
        await producer.submit(bad_movie())
        await producer.submit(movie(2, title="parked"))
        await producer.submit(actor(9))

        assert titles(stream_log) == ["before"]
        assert stream_log.get_entry_count("events:actor") == 1

        halted = producer.halted_streams
        assert list(halted) == ["events:movie"]
        assert halted["events:movie"]["column"] == "budget"
        assert halted["events:movie"]["parked"] == 2

    @pytest.mark.asyncio
    async def test_undecodable_envelope_of_known_table_halts(self, producer):
        await producer.submit({"table": "movies", "op": "merge", "after": {"movie_id": 1}})

        assert "events:movie" in producer.halted_streams

    @pytest.mark.asyncio
    async def test_publish_refused_while_halted(self, producer):
        await producer.submit(bad_movie())

        with pytest.raises(StreamHaltedError):
            await producer.publish(movie(1))

    @pytest.mark.asyncio
    async def test_resume_halts_again_on_same_failure(self, producer, stream_log):
        await producer.submit(bad_movie())
        await producer.submit(movie(2, title="parked"))

        republished = await producer.resume_stream("events:movie")

        assert republished == 0
        assert producer.halted_streams["events:movie"]["parked"] == 2
        assert stream_log.get_entry_count("events:movie") == 0

    @pytest.mark.asyncio
    async def test_resume_dropping_failed_change(self, producer, stream_log):
        await producer.submit(movie(1, title="first"))
        await producer.submit(bad_movie())
        await producer.submit(movie(2, title="second"))
        await producer.submit(movie(3, title="third"))

        republished = await producer.resume_stream("events:movie", drop_failed=True)

        assert republished == 2
        assert producer.halted_streams == {}
        assert titles(stream_log) == ["first", "second", "third"]

        await producer.submit(movie(4, title="fourth"))
        assert titles(stream_log)[-1] == "fourth"

    @pytest.mark.asyncio
    async def test_resume_unknown_stream(self, producer):
        assert await producer.resume_stream("events:movie") == 0

    @pytest.mark.asyncio
    async def test_run_iterable_feed(self, producer, stream_log):
        changes = [movie(1), bad_movie(), actor(9), {"table": "audit", "op": "c", "after": {}}]

        await producer.run(iterable_feed(changes))

        stats = producer.stats
        assert not stats["running"]
        assert stats["published_count"] == 2
        assert stats["skipped_count"] == 1
        assert "events:movie" in stats["halted_streams"]

    @pytest.mark.asyncio
    async def test_run_stops_on_append_error(self, producer, stream_log):
        stream_log.fail_appends(100)

        with pytest.raises(AppendError):
            await producer.run(iterable_feed([movie(1), movie(2)]))
        assert not producer.stats["running"]


class TestJsonlFeed:
    """Tests for the JSON-lines change feed."""

    @pytest.mark.asyncio
    async def test_reads_non_blank_lines(self, data_dir):
        path = Path(data_dir) / "changes.jsonl"
        path.write_text(json.dumps(movie(1)) + "\n\n" + json.dumps(actor(9)) + "\n")

        lines = [line async for line in jsonl_feed(path)]

        assert len(lines) == 2
        assert json.loads(lines[1])["table"] == "actors"

    @pytest.mark.asyncio
    async def test_last_line_without_newline(self, data_dir):
        path = Path(data_dir) / "changes.jsonl"
        path.write_text(json.dumps(movie(1)))

        lines = [line async for line in jsonl_feed(path)]
        assert len(lines) == 1

    @pytest.mark.asyncio
    async def test_producer_replays_file(self, data_dir, stream_log, catalog):
        path = Path(data_dir) / "changes.jsonl"
        path.write_text("\n".join(json.dumps(movie(i, title=f"m{i}", ts=i)) for i in range(5)) + "\n")
        producer = ChangeProducer(stream_log, catalog)

        await producer.run(jsonl_feed(path))

        assert titles(stream_log) == [f"m{i}" for i in range(5)]
