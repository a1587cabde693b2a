"""
SQLite store shared by every factbase component.

One connection (WAL mode, check_same_thread=False) guarded by a re-entrant
lock. Worker threads, request-time fan-out threads and the foreground all
go through the same lock, so statements never interleave on the connection.
Multi-statement writes use transaction(), which takes the write lock up
front with BEGIN IMMEDIATE.

The schema is owned by migrate(), which is idempotent and tracked with
PRAGMA user_version.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


def utc_now() -> str:
    """Current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


_SCHEMA_V1 = [
    """
    CREATE TABLE IF NOT EXISTS statements (
        id            TEXT PRIMARY KEY,
        title         TEXT NOT NULL DEFAULT '',
        content       TEXT NOT NULL,
        source        TEXT NOT NULL DEFAULT '',
        source_type   TEXT NOT NULL DEFAULT 'manual',
        status        TEXT NOT NULL DEFAULT 'pending',
        embedding     BLOB,
        model         TEXT,
        created_at    TEXT NOT NULL,
        last_verified TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_statements_status
    ON statements(status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS issues (
        id          TEXT PRIMARY KEY,
        type        TEXT NOT NULL DEFAULT 'duplicate',
        status      TEXT NOT NULL DEFAULT 'open',
        statement_a TEXT NOT NULL,
        statement_b TEXT NOT NULL,
        pair_key    TEXT NOT NULL,
        score       REAL NOT NULL DEFAULT 0,
        explanation TEXT NOT NULL DEFAULT '',
        resolution  TEXT,
        created_at  TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    # At most one open issue per unordered pair
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_issues_open_pair
    ON issues(pair_key) WHERE status = 'open'
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_queue (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        task_type    TEXT NOT NULL,
        payload      TEXT NOT NULL DEFAULT '',
        priority     INTEGER NOT NULL DEFAULT 0,
        status       TEXT NOT NULL DEFAULT 'pending',
        attempts     INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        error        TEXT NOT NULL DEFAULT '',
        created_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_queue_claim
    ON processing_queue(task_type, status, priority DESC, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS model_audit (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        model       TEXT NOT NULL,
        operation   TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id   TEXT NOT NULL,
        duration_ms INTEGER NOT NULL,
        created_at  TEXT NOT NULL
    )
    """,
]

_SCHEMA_V2 = [
    """
    CREATE TABLE IF NOT EXISTS notes (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        path          TEXT UNIQUE NOT NULL,
        title         TEXT NOT NULL,
        tags          TEXT NOT NULL DEFAULT '',
        summary       TEXT NOT NULL DEFAULT '',
        indexed       INTEGER NOT NULL DEFAULT 0,
        created_at    TEXT NOT NULL,
        last_verified TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tree_nodes (
        id        INTEGER PRIMARY KEY AUTOINCREMENT,
        parent_id INTEGER REFERENCES tree_nodes(id),
        label     TEXT NOT NULL,
        summary   TEXT NOT NULL,
        is_leaf   INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tree_nodes_parent
    ON tree_nodes(parent_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS leaf_entries (
        id      INTEGER PRIMARY KEY AUTOINCREMENT,
        node_id INTEGER NOT NULL REFERENCES tree_nodes(id) ON DELETE CASCADE,
        note_id INTEGER NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
        UNIQUE(node_id, note_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS node_embeddings (
        node_id    INTEGER PRIMARY KEY,
        model      TEXT NOT NULL,
        embedding  BLOB NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]

_MIGRATIONS = {1: _SCHEMA_V1, 2: _SCHEMA_V2}


class Store:
    """
    SQLite-backed relational store.

    All reads and writes go through execute()/query helpers or
    transaction(), each of which holds the store lock for its duration.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._open()
        self.migrate()

    def _open(self) -> None:
        """Open the connection."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so we can use BEGIN IMMEDIATE for atomic claims
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        # WAL for concurrent readers across processes
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def lock(self) -> threading.RLock:
        """The store lock. Hold it to make several calls atomic."""
        return self._lock

    def migrate(self) -> int:
        """Bring the schema up to SCHEMA_VERSION. Safe to run repeatedly.

        Returns the schema version after migration.
        """
        with self._lock:
            version = self._conn.execute("PRAGMA user_version").fetchone()[0]
            if version >= SCHEMA_VERSION:
                return version
            for target in range(version + 1, SCHEMA_VERSION + 1):
                with self.transaction():
                    for sql in _MIGRATIONS[target]:
                        self._conn.execute(sql)
                    # PRAGMA doesn't accept bound parameters
                    self._conn.execute(f"PRAGMA user_version = {int(target)}")
                logger.info("Migrated %s to schema version %d", self._db_path.name, target)
            return SCHEMA_VERSION

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT.

        Rolls back and re-raises on any exception. Nested use joins the
        outer transaction.
        """
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a single statement (autocommit unless inside transaction())."""
        with self._lock:
            return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        try:
            self.close()
        except Exception:
            pass
