"""
Shared fixtures for the pipeline test suite.
"""

import tempfile

import pytest

from cdc.stream_pipeline.events import Event, Operation, stream_key_for
from cdc.stream_pipeline.schema import load_catalog
from cdc.stream_pipeline.stream.memory import InMemoryStreamLog


@pytest.fixture
def catalog():
    """The bundled movie catalog, frozen."""
    return load_catalog()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def stream_log():
    """Connected in-memory stream log."""
    log = InMemoryStreamLog()
    await log.connect()
    yield log
    await log.close()


@pytest.fixture
def append_event(stream_log):
    """Append a hand-built event, bypassing the producer.

    Usage: await append_event("movie", "movie:1", "create", {"title": "Arrival"}, ts=1000)
    """

    async def _append(entity_type, entity_key, op, payload, ts, table=None):
        event = Event(
            stream_key=stream_key_for(entity_type),
            entity_type=entity_type,
            entity_key=entity_key,
            table=table or f"{entity_type}s",
            operation=Operation.from_str(op),
            payload=payload,
            source_timestamp=ts,
        )
        return await stream_log.append(event.stream_key, event.to_fields())

    return _append
