"""
Upstream change feeds.

A feed is an async iterator of raw changes for ChangeProducer.run().
Raw changes are anything decode_change() accepts: RowChange objects,
dicts, or JSON text (plain or Debezium encoding).

- jsonl_feed: one JSON change per line from a file, optionally
  following the file as it grows (local runs and replays)
- iterable_feed: wraps an in-memory sequence (tests, scripted loads)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

logger = logging.getLogger(__name__)


async def jsonl_feed(
    path: str | Path,
    follow: bool = False,
    poll_interval: float = 0.5,
) -> AsyncIterator[str]:
    """Yield the non-blank lines of a JSON-lines change file.

    Args:
        path: File to read
        follow: Keep polling for appended lines instead of stopping at EOF
        poll_interval: Seconds between polls when following
    """
    path = Path(path)
    logger.info("Reading change feed", extra={"path": str(path), "follow": follow})
    line_count = 0

    with path.open("r", encoding="utf-8") as f:
        pending = ""
        while True:
            line = f.readline()
            if not line:
                if not follow:
                    break
                await asyncio.sleep(poll_interval)
                continue

            # A line without newline may still be being written
            if not line.endswith("\n") and follow:
                pending += line
                await asyncio.sleep(poll_interval)
                continue
            line, pending = pending + line, ""

            line_count += 1
            if line.strip():
                yield line.strip()
            # Let other tasks run between lines of a large file
            if line_count % 1000 == 0:
                await asyncio.sleep(0)

        if pending.strip():
            yield pending.strip()

    logger.info("Change feed finished", extra={"path": str(path), "lines": line_count})


async def iterable_feed(changes: Iterable[Any]) -> AsyncIterator[Any]:
    """Yield changes from an in-memory iterable."""
    for change in changes:
        yield change
        await asyncio.sleep(0)
