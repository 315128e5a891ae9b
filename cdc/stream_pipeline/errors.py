"""
Error types for the CDC stream pipeline.

This module defines the pipeline-level exceptions:
- PipelineError: Base exception
- SourceDecodeError: Malformed upstream change
- StreamHaltedError: Change refused because its stream is halted
- AppendError: Stream log unavailable after retries
- OrderingViolation: Upstream delivered a row's changes out of order
- ProjectionWriteError: Projection store rejected or failed a write
- ConnectionError: Notification transport failure

Invariants:
    - All errors inherit from PipelineError
    - Errors carry a stable code plus structured details for logging
    - OrderingViolation is reported, never raised out of the producer

Propagation:
    - Producer and log errors are fatal to pipeline progress
    - Projector errors are retried locally, then left pending
    - Notification errors are contained to one connection
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PIPELINE_ERROR"
        self.details = details or {}


class SourceDecodeError(PipelineError):
    """An upstream change could not be normalized.

    Raised when:
    - The change envelope is not decodable at all
    - The source table has no registered schema
    - A column is unknown, a key column is missing, or a value does
      not fit its column type

    Attributes:
        table: Source table, if it could be determined
        stream_key: Target stream, if the table is known
        column: Offending column, if any
        unprocessable: True when the change cannot be attributed to any
            stream and may be skipped without losing stream data
    """

    def __init__(
        self,
        message: str,
        table: str | None = None,
        stream_key: str | None = None,
        column: str | None = None,
        unprocessable: bool = False,
    ) -> None:
        super().__init__(
            message,
            code="SOURCE_DECODE_ERROR",
            details={
                "table": table,
                "stream_key": stream_key,
                "column": column,
                "unprocessable": unprocessable,
            },
        )
        self.table = table
        self.stream_key = stream_key
        self.column = column
        self.unprocessable = unprocessable


class StreamHaltedError(SourceDecodeError):
    """A change was refused because its stream is halted.

    The change is parked by the producer, not dropped.
    """

    def __init__(self, stream_key: str, table: str | None = None) -> None:
        super().__init__(
            f"Stream '{stream_key}' is halted after a decode failure",
            table=table,
            stream_key=stream_key,
        )
        self.code = "STREAM_HALTED"


class AppendError(PipelineError):
    """The stream log did not accept an append after all retries."""

    def __init__(
        self,
        message: str,
        stream_key: str,
        attempts: int,
    ) -> None:
        super().__init__(
            message,
            code="APPEND_ERROR",
            details={"stream_key": stream_key, "attempts": attempts},
        )
        self.stream_key = stream_key
        self.attempts = attempts


class OrderingViolation(PipelineError):
    """Upstream delivered a change older than one already published.

    Non-fatal. The change is still appended in received order and
    projectors resolve it with last-write-wins on source timestamp.
    """

    def __init__(
        self,
        entity_key: str,
        previous_ts: int,
        received_ts: int,
    ) -> None:
        super().__init__(
            f"Change for {entity_key} at {received_ts} arrived after {previous_ts}",
            code="ORDERING_VIOLATION",
            details={
                "entity_key": entity_key,
                "previous_ts": previous_ts,
                "received_ts": received_ts,
            },
        )
        self.entity_key = entity_key
        self.previous_ts = previous_ts
        self.received_ts = received_ts


class ProjectionWriteError(PipelineError):
    """A projection store was unavailable or rejected a write.

    Attributes:
        store: Store name
        key: Projection key being written
    """

    def __init__(
        self,
        message: str,
        store: str,
        key: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="PROJECTION_WRITE_ERROR",
            details={"store": store, "key": key},
        )
        self.store = store
        self.key = key


class ConnectionError(PipelineError):
    """Notification transport failed for one client connection.

    The connection is torn down and its subscription discarded.
    There is no retry.
    """

    def __init__(
        self,
        message: str,
        connection_id: str,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"connection_id": connection_id},
        )
        self.connection_id = connection_id
