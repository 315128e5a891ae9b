"""
Unit tests for change events and their wire form.
"""

import json

import pytest

from cdc.stream_pipeline.events import Event, Operation, stream_key_for
from cdc.stream_pipeline.stream import EntryId, StreamEntry, StreamSerializationError


@pytest.fixture
def event():
    return Event(
        stream_key="events:movie",
        entity_type="movie",
        entity_key="movie:1",
        table="movies",
        operation=Operation.UPDATE,
        payload={"movie_id": 1, "title": "Arrival", "year": 2017},
        source_timestamp=1730000000000,
        before_image={"movie_id": 1, "title": "Arrival", "year": 2016},
    )


class TestEvent:
    """Tests for Event encoding and decoding."""

    def test_stream_key_for(self):
        assert stream_key_for("comment") == "events:comment"

    def test_operation_from_str(self):
        assert Operation.from_str("delete") == Operation.DELETE
        with pytest.raises(ValueError):
            Operation.from_str("truncate")

    def test_wire_fields_are_flat_strings(self, event):
        fields = event.to_fields()

        assert all(isinstance(v, str) for v in fields.values())
        assert fields["op"] == "update"
        assert fields["key"] == "movie:1"
        assert fields["ts"] == "1730000000000"
        assert list(json.loads(fields["payload"])) == ["movie_id", "title", "year"]

    def test_decode_entry(self, event):
        entry = StreamEntry("events:movie", EntryId(5, 1), event.to_fields())

        decoded = Event.from_entry(entry)

        assert decoded.entry_id == EntryId(5, 1)
        assert decoded.payload == event.payload
        assert decoded.before_image == event.before_image
        assert decoded.operation == Operation.UPDATE
        assert decoded.version == (1730000000000, EntryId(5, 1))

    def test_decode_without_before_image(self, event):
        event.before_image = None
        entry = StreamEntry("events:movie", EntryId(5, 0), event.to_fields())

        assert Event.from_entry(entry).before_image is None

    def test_version_requires_entry_id(self, event):
        with pytest.raises(ValueError):
            _ = event.version

    def test_missing_fields(self):
        entry = StreamEntry("events:movie", EntryId(1, 0), {"op": "create"})

        with pytest.raises(StreamSerializationError, match="missing fields"):
            Event.from_entry(entry)

    def test_invalid_payload(self, event):
        fields = event.to_fields()
        fields["payload"] = "{not json"

        with pytest.raises(StreamSerializationError):
            Event.from_entry(StreamEntry("events:movie", EntryId(1, 0), fields))

    @pytest.mark.parametrize(
        "payload",
        [
            "[1, 2]",
            '"Arrival"',
            "null",
            '{"cast": ["Amy Adams"]}',
            '{"meta": {"a": 1}}',
            '{"rating": NaN}',
        ],
    )
    def test_payload_must_be_flat_object_of_primitives(self, event, payload):
        fields = event.to_fields()
        fields["payload"] = payload

        with pytest.raises(StreamSerializationError):
            Event.from_entry(StreamEntry("events:movie", EntryId(1, 0), fields))

    def test_before_image_must_be_object(self, event):
        fields = event.to_fields()
        fields["before"] = "[1, 2]"

        with pytest.raises(StreamSerializationError, match="before is not a JSON object"):
            Event.from_entry(StreamEntry("events:movie", EntryId(1, 0), fields))

    def test_invalid_operation(self, event):
        fields = event.to_fields()
        fields["op"] = "merge"

        with pytest.raises(StreamSerializationError):
            Event.from_entry(StreamEntry("events:movie", EntryId(1, 0), fields))

    def test_notification_shape(self, event):
        assert event.notification("movie") == {
            "topic": "movie",
            "operation": "update",
            "key": "movie:1",
            "entity_type": "movie",
            "payload": {"movie_id": 1, "title": "Arrival", "year": 2017},
        }
