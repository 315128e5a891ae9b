"""
SQLite graph store for the graph projection.

This module manages one SQLite database holding:
- Nodes keyed by entity key with their latest properties
- Directed, labelled edges between entity keys
- Last-write-wins versions per entity key (kept after deletes)

The graph store is a materialized view of the stream log and can be
rebuilt by replaying the entity streams from the beginning.

Invariants:
    - apply_upsert checks the stored version and writes node, outgoing
      edges and version in one BEGIN IMMEDIATE transaction; readers never
      see a node without its edges
    - Edges may point at nodes that do not exist (yet); there are no
      foreign keys between edges and nodes
    - Deleting a node removes incoming and outgoing edges

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations

Table schema:
    nodes:
        - node_key TEXT PRIMARY KEY
        - entity_type TEXT
        - properties_json TEXT
        - updated_at INTEGER (Unix ms)

    edges:
        - from_key TEXT
        - label TEXT
        - to_key TEXT
        - PRIMARY KEY (from_key, label, to_key)

    versions:
        - entity_key TEXT PRIMARY KEY
        - source_ts INTEGER
        - entry_major INTEGER
        - entry_minor INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import ProjectionWriteError
from ..stream.base import EntryId
from .base import GraphEdge, GraphNode, Version, is_newer

logger = logging.getLogger(__name__)


class SqliteGraphStore:
    """GraphStore on a single SQLite database.

    Thread safety:
        Each operation opens its own connection. Writes are serialized
        by an asyncio lock and SQLite's WAL mode.

    Example:
        >>> store = SqliteGraphStore("/var/lib/cdc")
        >>> await store.initialize()
        >>> await store.apply_upsert(
        ...     GraphNode("movie:1", "movie", {"title": "Arrival"}),
        ...     [GraphEdge("movie:1", "actor:9", "STARRING")],
        ...     (1730000000000, EntryId(1730000000000, 0)),
        ... )
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        name: str = "sqlite-graph",
    ) -> None:
        """Initialize the graph store.

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
        self._initialized = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / "graph.db"

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection (created on first use)."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, key: str) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back and wrapping on failure."""
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
        """Autocommit connection for reads, wrapping failures like writes."""
        try:
            with self._get_connection() as conn:
                yield conn
        except (sqlite3.Error, OSError) as e:
            raise ProjectionWriteError(f"SQLite read failed: {e}", store=self.name, key=key) from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS nodes (
                node_key TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                properties_json TEXT NOT NULL DEFAULT '{}',
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(entity_type);

            CREATE TABLE IF NOT EXISTS edges (
                from_key TEXT NOT NULL,
                label TEXT NOT NULL,
                to_key TEXT NOT NULL,
                PRIMARY KEY (from_key, label, to_key)
            );

            CREATE INDEX IF NOT EXISTS idx_edges_to ON edges(to_key);

            CREATE TABLE IF NOT EXISTS versions (
                entity_key TEXT PRIMARY KEY,
                source_ts INTEGER NOT NULL,
                entry_major INTEGER NOT NULL,
                entry_minor INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection():
                logger.info("Initialized graph store", extra={"path": str(self.db_path)})

    async def get_node(self, key: str) -> GraphNode | None:
        with self._reading(key) as conn:
            row = conn.execute("SELECT * FROM nodes WHERE node_key = ?", (key,)).fetchone()
            if not row:
                return None
            return GraphNode(
                key=row["node_key"],
                entity_type=row["entity_type"],
                properties=json.loads(row["properties_json"]),
            )

    async def edges_from(self, key: str) -> list[GraphEdge]:
        with self._reading(key) as conn:
            cursor = conn.execute(
                "SELECT * FROM edges WHERE from_key = ? ORDER BY label, to_key", (key,)
            )
            return [GraphEdge(row["from_key"], row["to_key"], row["label"]) for row in cursor]

    async def edges_to(self, key: str) -> list[GraphEdge]:
        with self._reading(key) as conn:
            cursor = conn.execute(
                "SELECT * FROM edges WHERE to_key = ? ORDER BY label, from_key", (key,)
            )
            return [GraphEdge(row["from_key"], row["to_key"], row["label"]) for row in cursor]

    async def count_nodes(self, entity_type: str | None = None) -> int:
        with self._reading(entity_type or "*") as conn:
            if entity_type is None:
                row = conn.execute("SELECT COUNT(*) FROM nodes").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM nodes WHERE entity_type = ?", (entity_type,)
                ).fetchone()
            return row[0]

    @staticmethod
    def _write_node(conn: sqlite3.Connection, node: GraphNode) -> None:
        conn.execute(
            """
            INSERT INTO nodes (node_key, entity_type, properties_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(node_key) DO UPDATE SET
                entity_type = excluded.entity_type,
                properties_json = excluded.properties_json,
                updated_at = excluded.updated_at
            """,
            (node.key, node.entity_type, json.dumps(node.properties), int(time.time() * 1000)),
        )

    @staticmethod
    def _write_edges(conn: sqlite3.Connection, node_key: str, edges: list[GraphEdge]) -> None:
        conn.execute("DELETE FROM edges WHERE from_key = ?", (node_key,))
        conn.executemany(
            "INSERT OR IGNORE INTO edges (from_key, label, to_key) VALUES (?, ?, ?)",
            [(node_key, e.label, e.to_key) for e in edges],
        )

    @staticmethod
    def _remove_node(conn: sqlite3.Connection, key: str) -> bool:
        conn.execute("DELETE FROM edges WHERE from_key = ? OR to_key = ?", (key, key))
        cursor = conn.execute("DELETE FROM nodes WHERE node_key = ?", (key,))
        return cursor.rowcount > 0

    @staticmethod
    def _write_version(conn: sqlite3.Connection, key: str, version: Version) -> None:
        ts, entry_id = version
        conn.execute(
            """
            INSERT INTO versions (entity_key, source_ts, entry_major, entry_minor)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(entity_key) DO UPDATE SET
                source_ts = excluded.source_ts,
                entry_major = excluded.entry_major,
                entry_minor = excluded.entry_minor
            """,
            (key, ts, entry_id.major, entry_id.minor),
        )

    async def upsert_node(self, node: GraphNode) -> None:
        async with self._lock:
            with self._transaction(node.key) as conn:
                self._write_node(conn, node)

    async def replace_edges(self, node_key: str, edges: list[GraphEdge]) -> None:
        async with self._lock:
            with self._transaction(node_key) as conn:
                self._write_edges(conn, node_key, edges)

    async def delete_node(self, key: str) -> bool:
        async with self._lock:
            with self._transaction(key) as conn:
                return self._remove_node(conn, key)

    @staticmethod
    def _read_version(conn: sqlite3.Connection, key: str) -> Version | None:
        row = conn.execute(
            "SELECT * FROM versions WHERE entity_key = ?", (key,)
        ).fetchone()
        if not row:
            return None
        return (row["source_ts"], EntryId(row["entry_major"], row["entry_minor"]))

    async def get_version(self, key: str) -> Version | None:
        with self._reading(key) as conn:
            return self._read_version(conn, key)

    async def apply_upsert(self, node: GraphNode, edges: list[GraphEdge], version: Version) -> bool:
        """Node upsert, outgoing edge rewrite and version in one transaction.

        The stored version is read inside the same transaction, so a
        concurrent writer holding a newer event cannot be overwritten.
        """
        async with self._lock:
            with self._transaction(node.key) as conn:
                if not is_newer(version, self._read_version(conn, node.key)):
                    return False
                self._write_node(conn, node)
                self._write_edges(conn, node.key, edges)
                self._write_version(conn, node.key, version)

        logger.debug(
            "Upserted graph node",
            extra={"node_key": node.key, "edges": len(edges)},
        )
        return True

    async def apply_delete(self, key: str, version: Version) -> bool:
        """Node and edge removal plus tombstone version in one transaction."""
        async with self._lock:
            with self._transaction(key) as conn:
                if not is_newer(version, self._read_version(conn, key)):
                    return False
                self._remove_node(conn, key)
                self._write_version(conn, key, version)

        logger.debug("Deleted graph node", extra={"node_key": key})
        return True

    async def close(self) -> None:
        pass
