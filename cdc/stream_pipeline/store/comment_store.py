"""
SQLite comment/metadata store with FTS5.

This module manages the comment projection:
- Comment records keyed by entity key ("comment:5")
- A target index: every entity a comment references ("movie:1",
  "user:7") so comments can be listed per movie or per user
- A full-text index over the comment's text fields
- Last-write-wins versions per comment (kept after deletes)

Invariants:
    - Record, target index and version change in one transaction, and
      only when the stored version is older than the incoming one
    - FTS index is kept in sync by triggers
    - Deleting a comment removes its targets and FTS row

How to change safely:
    - Add new columns with defaults for backward compatibility
    - Test FTS index rebuild performance before deployment

Table schema:
    comments:
        - comment_key TEXT PRIMARY KEY
        - payload_json TEXT
        - snippet TEXT (searchable text)
        - created_at INTEGER (source ts of first write)
        - updated_at INTEGER (source ts of latest write)

    comment_targets:
        - comment_key TEXT
        - target_key TEXT
        - PRIMARY KEY (target_key, comment_key)

    fts_comments:
        - FTS5 virtual table over snippet

    versions:
        - comment_key TEXT PRIMARY KEY
        - source_ts INTEGER, entry_major INTEGER, entry_minor INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import ProjectionWriteError
from ..stream.base import EntryId
from .base import Comment, Version, is_newer

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("title", "name", "subject", "comment", "content", "body", "text", "description")


def generate_snippet(payload: dict[str, Any]) -> str:
    """Searchable text of a payload, from common text field names."""
    parts = [payload[name] for name in TEXT_FIELDS if isinstance(payload.get(name), str)]
    return " ".join(parts)[:1000]


class SqliteCommentStore:
    """CommentStore on a single SQLite database.

    Example:
        >>> store = SqliteCommentStore("/var/lib/cdc")
        >>> await store.apply_upsert(
        ...     "comment:5", ["movie:1", "user:7"], {"comment": "Loved it"},
        ...     1730000000000, (1730000000000, EntryId(1730000000000, 0)),
        ... )
        >>> await store.list_by_target("movie:1")
        [Comment(key='comment:5', ...)]
    """

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        name: str = "sqlite-comments",
    ) -> None:
        """Initialize the comment store.

        Args:
            data_dir: Directory for the database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            name: Store name used in errors and stats
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.name = name
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / "comments.db"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, ensuring the schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._ensure_schema(conn)
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        """Ensure database schema exists."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS comments (
                comment_key TEXT PRIMARY KEY,
                payload_json TEXT NOT NULL DEFAULT '{}',
                snippet TEXT NOT NULL DEFAULT '',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS comment_targets (
                comment_key TEXT NOT NULL,
                target_key TEXT NOT NULL,
                PRIMARY KEY (target_key, comment_key)
            );

            CREATE INDEX IF NOT EXISTS idx_targets_comment ON comment_targets(comment_key);

            CREATE TABLE IF NOT EXISTS versions (
                comment_key TEXT PRIMARY KEY,
                source_ts INTEGER NOT NULL,
                entry_major INTEGER NOT NULL,
                entry_minor INTEGER NOT NULL
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS fts_comments USING fts5(
                snippet,
                content='comments',
                content_rowid='rowid'
            );

            CREATE TRIGGER IF NOT EXISTS comments_ai AFTER INSERT ON comments BEGIN
                INSERT INTO fts_comments(rowid, snippet) VALUES (new.rowid, new.snippet);
            END;

            CREATE TRIGGER IF NOT EXISTS comments_ad AFTER DELETE ON comments BEGIN
                INSERT INTO fts_comments(fts_comments, rowid, snippet)
                VALUES('delete', old.rowid, old.snippet);
            END;

            CREATE TRIGGER IF NOT EXISTS comments_au AFTER UPDATE ON comments BEGIN
                INSERT INTO fts_comments(fts_comments, rowid, snippet)
                VALUES('delete', old.rowid, old.snippet);
                INSERT INTO fts_comments(rowid, snippet) VALUES (new.rowid, new.snippet);
            END;
        """)

    @contextmanager
    def _transaction(self, key: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except (sqlite3.Error, OSError) as e:
            raise ProjectionWriteError(f"SQLite write failed: {e}", store=self.name, key=key) from e

    @contextmanager
    def _reading(self, key: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._get_connection() as conn:
                yield conn
        except (sqlite3.Error, OSError) as e:
            raise ProjectionWriteError(f"SQLite read failed: {e}", store=self.name, key=key) from e

    @staticmethod
    def _row_to_comment(conn: sqlite3.Connection, row: sqlite3.Row) -> Comment:
        targets = [
            r["target_key"]
            for r in conn.execute(
                "SELECT target_key FROM comment_targets WHERE comment_key = ? ORDER BY target_key",
                (row["comment_key"],),
            )
        ]
        return Comment(
            key=row["comment_key"],
            targets=targets,
            payload=json.loads(row["payload_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, key: str) -> Comment | None:
        with self._reading(key) as conn:
            row = conn.execute("SELECT * FROM comments WHERE comment_key = ?", (key,)).fetchone()
            return self._row_to_comment(conn, row) if row else None

    async def list_by_target(self, target: str, limit: int = 100) -> list[Comment]:
        """Comments referencing an entity, newest first."""
        with self._reading(target) as conn:
            cursor = conn.execute(
                """
                SELECT c.* FROM comments c
                JOIN comment_targets t ON t.comment_key = c.comment_key
                WHERE t.target_key = ?
                ORDER BY c.created_at DESC, c.comment_key
                LIMIT ?
                """,
                (target, limit),
            )
            return [self._row_to_comment(conn, row) for row in cursor.fetchall()]

    async def search(self, query: str, limit: int = 20) -> list[Comment]:
        """Full-text search over comment text, best match first."""
        with self._reading(query) as conn:
            try:
                cursor = conn.execute(
                    """
                    SELECT c.* FROM comments c
                    JOIN fts_comments f ON c.rowid = f.rowid
                    WHERE fts_comments MATCH ?
                    ORDER BY rank
                    LIMIT ?
                    """,
                    (query, limit),
                )
                rows = cursor.fetchall()
            except sqlite3.OperationalError as e:
                logger.warning(f"Comment search failed: {e}", extra={"query": query})
                return []
            return [self._row_to_comment(conn, row) for row in rows]

    @staticmethod
    def _read_version(conn: sqlite3.Connection, key: str) -> Version | None:
        row = conn.execute("SELECT * FROM versions WHERE comment_key = ?", (key,)).fetchone()
        if not row:
            return None
        return (row["source_ts"], EntryId(row["entry_major"], row["entry_minor"]))

    async def get_version(self, key: str) -> Version | None:
        with self._reading(key) as conn:
            return self._read_version(conn, key)

    @staticmethod
    def _write_version(conn: sqlite3.Connection, key: str, version: Version) -> None:
        ts, entry_id = version
        conn.execute(
            """
            INSERT INTO versions (comment_key, source_ts, entry_major, entry_minor)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(comment_key) DO UPDATE SET
                source_ts = excluded.source_ts,
                entry_major = excluded.entry_major,
                entry_minor = excluded.entry_minor
            """,
            (key, ts, entry_id.major, entry_id.minor),
        )

    async def apply_upsert(
        self,
        key: str,
        targets: list[str],
        payload: dict[str, Any],
        ts: int,
        version: Version,
    ) -> bool:
        """Replace a comment, its targets and version in one transaction.

        Returns False, leaving the record untouched, when the stored
        version is at least as new.
        """
        async with self._lock:
            with self._transaction(key) as conn:
                if not is_newer(version, self._read_version(conn, key)):
                    return False
                conn.execute(
                    """
                    INSERT INTO comments (comment_key, payload_json, snippet, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(comment_key) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        snippet = excluded.snippet,
                        updated_at = excluded.updated_at
                    """,
                    (key, json.dumps(payload), generate_snippet(payload), ts, ts),
                )
                conn.execute("DELETE FROM comment_targets WHERE comment_key = ?", (key,))
                conn.executemany(
                    "INSERT OR IGNORE INTO comment_targets (comment_key, target_key) VALUES (?, ?)",
                    [(key, target) for target in targets],
                )
                self._write_version(conn, key, version)

        logger.debug("Stored comment", extra={"comment_key": key, "targets": targets})
        return True

    async def apply_delete(self, key: str, version: Version) -> bool:
        """Remove a comment and record the tombstone version."""
        async with self._lock:
            with self._transaction(key) as conn:
                if not is_newer(version, self._read_version(conn, key)):
                    return False
                conn.execute("DELETE FROM comment_targets WHERE comment_key = ?", (key,))
                conn.execute("DELETE FROM comments WHERE comment_key = ?", (key,))
                self._write_version(conn, key, version)

        logger.debug("Deleted comment", extra={"comment_key": key})
        return True

    async def close(self) -> None:
        pass
