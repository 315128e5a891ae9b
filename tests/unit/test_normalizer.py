"""
Unit tests for change normalization against the movie catalog.

Tests cover:
- Type conversion per column type
- Payload completeness and column order
- Decode failures naming table, stream and column
"""

import pytest

from cdc.stream_pipeline.errors import SourceDecodeError
from cdc.stream_pipeline.events import Operation
from cdc.stream_pipeline.produce import Normalizer, RowChange, normalize_value
from cdc.stream_pipeline.schema import column


def change(table, op, row, ts=1000, before=None):
    operation = Operation.from_str(op)
    if operation == Operation.DELETE:
        return RowChange(table, operation, row, None, ts)
    return RowChange(table, operation, before, row, ts)


class TestNormalizeValue:
    """Tests for single-value conversions."""

    def test_integers(self):
        assert normalize_value(column("n", "INT"), 5) == 5
        assert normalize_value(column("n", "BIGINT"), "42") == 42
        with pytest.raises(ValueError):
            normalize_value(column("n", "INT"), True)
        with pytest.raises(ValueError):
            normalize_value(column("n", "INT"), "4.5")

    def test_booleans(self):
        flag = column("f", "TINYINT", length=1)
        assert normalize_value(flag, 1) is True
        assert normalize_value(flag, 0) is False
        assert normalize_value(flag, "true") is True
        with pytest.raises(ValueError):
            normalize_value(flag, 2)

    def test_decimals(self):
        assert normalize_value(column("d", "DECIMAL"), "7.9") == 7.9
        assert normalize_value(column("d", "DOUBLE"), 3) == 3.0

    @pytest.mark.parametrize("value", ["nan", "NaN", "inf", "-Infinity", float("nan"), float("inf")])
    def test_non_finite_numbers_rejected(self, value):
        with pytest.raises(ValueError, match="not a finite number"):
            normalize_value(column("d", "DOUBLE"), value)

    def test_json_rejects_non_finite_numbers(self):
        with pytest.raises(ValueError):
            normalize_value(column("j", "JSON"), {"score": float("nan")})

    def test_strings_unchanged(self):
        assert normalize_value(column("s", "VARCHAR"), "Arrival") == "Arrival"
        with pytest.raises(ValueError):
            normalize_value(column("s", "VARCHAR"), 12)

    def test_dates(self):
        assert normalize_value(column("d", "DATE"), 0) == "1970-01-01"
        assert normalize_value(column("d", "DATE"), "2016-11-11") == "2016-11-11"
        with pytest.raises(ValueError):
            normalize_value(column("d", "DATE"), "soon")

    def test_timestamps_are_utc_iso(self):
        ts = column("t", "TIMESTAMP")
        assert normalize_value(ts, 0) == "1970-01-01T00:00:00.000Z"
        assert normalize_value(ts, "2024-01-02 03:04:05") == "2024-01-02T03:04:05.000Z"
        assert normalize_value(ts, "2024-01-02T05:04:05+02:00") == "2024-01-02T03:04:05.000Z"

    def test_json(self):
        doc = column("j", "JSON")
        assert normalize_value(doc, {"theme": "dark"}) == '{"theme":"dark"}'
        assert normalize_value(doc, '{"a": 1}') == '{"a":1}'
        with pytest.raises(ValueError):
            normalize_value(doc, "{broken")

    def test_null_handling(self):
        assert normalize_value(column("s", "TEXT"), None) is None
        with pytest.raises(ValueError):
            normalize_value(column("s", "TEXT", nullable=False), None)


class TestNormalizer:
    """Tests for Normalizer with the bundled catalog."""

    @pytest.fixture
    def normalizer(self, catalog):
        return Normalizer(catalog)

    def test_create_event(self, normalizer):
        event = normalizer.normalize(
            change("movies", "create", {"movie_id": 1, "title": "Arrival", "rating": "7.9"}, ts=1234)
        )

        assert event.stream_key == "events:movie"
        assert event.entity_type == "movie"
        assert event.entity_key == "movie:1"
        assert event.table == "movies"
        assert event.operation == Operation.CREATE
        assert event.source_timestamp == 1234
        assert event.payload["rating"] == 7.9
        assert event.entry_id is None

    def test_payload_has_every_column_in_order(self, normalizer, catalog):
        event = normalizer.normalize(change("movies", "create", {"title": "Arrival", "movie_id": 1}))

        assert list(event.payload) == catalog.get_table("movies").column_names()
        assert event.payload["genre"] is None

    def test_user_row_types(self, normalizer):
        event = normalizer.normalize(
            change(
                "users",
                "update",
                {
                    "user_id": 7,
                    "login": "ada",
                    "is_admin": 1,
                    "preferences": {"theme": "dark"},
                    "last_login": 0,
                },
            )
        )

        assert event.payload["is_admin"] is True
        assert event.payload["preferences"] == '{"theme":"dark"}'
        assert event.payload["last_login"] == "1970-01-01T00:00:00.000Z"

    def test_composite_key(self, normalizer):
        event = normalizer.normalize(
            change("movie_actors", "create", {"movie_id": 1, "actor_id": 9, "role": "Louise"})
        )
        assert event.entity_key == "role:1:9"

    def test_delete_uses_before_image(self, normalizer):
        event = normalizer.normalize(change("movies", "delete", {"movie_id": 1, "title": "Arrival"}))

        assert event.operation == Operation.DELETE
        assert event.payload["title"] == "Arrival"
        assert event.before_image is None

    def test_update_keeps_before_image(self, normalizer):
        event = normalizer.normalize(
            change(
                "movies",
                "update",
                {"movie_id": 1, "title": "Arrival", "release_year": 2017},
                before={"movie_id": 1, "title": "Arrival", "release_year": 2016},
            )
        )
        assert event.before_image["release_year"] == 2016
        assert event.payload["release_year"] == 2017

    def test_unknown_table_is_unprocessable(self, normalizer):
        with pytest.raises(SourceDecodeError) as exc_info:
            normalizer.normalize(change("audit_log", "create", {"id": 1}))

        assert exc_info.value.unprocessable
        assert normalizer.stream_key_for("audit_log") is None

    def test_unknown_column(self, normalizer):
        with pytest.raises(SourceDecodeError) as exc_info:
            normalizer.normalize(change("movies", "create", {"movie_id": 1, "title": "A", "budget": 5}))

        error = exc_info.value
        assert error.column == "budget"
        assert error.stream_key == "events:movie"
        assert not error.unprocessable

    def test_missing_key_column(self, normalizer):
        with pytest.raises(SourceDecodeError) as exc_info:
            normalizer.normalize(change("movies", "create", {"title": "Arrival"}))
        assert exc_info.value.column == "movie_id"

    def test_type_mismatch(self, normalizer):
        with pytest.raises(SourceDecodeError) as exc_info:
            normalizer.normalize(change("movies", "create", {"movie_id": 1, "title": 12}))

        assert exc_info.value.column == "title"
        assert "VARCHAR" in exc_info.value.message

    def test_non_finite_rating_is_a_decode_error(self, normalizer):
        with pytest.raises(SourceDecodeError) as exc_info:
            normalizer.normalize(
                change("movies", "create", {"movie_id": 1, "title": "Arrival", "rating": "NaN"})
            )

        assert exc_info.value.column == "rating"

    def test_missing_row_image(self, normalizer):
        with pytest.raises(SourceDecodeError, match="no after image"):
            normalizer.normalize(RowChange("movies", Operation.CREATE, None, None, 1))
