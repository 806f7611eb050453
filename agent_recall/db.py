"""
SQLite storage engine shared by every agent_recall subsystem.

All subsystems live in one database file and keep to their own tables:

* ``workflows`` / ``workflow_actions`` / ``workflow_commits`` — checkpoint store
* ``entities`` / ``relationships`` — knowledge graph
* ``graph_entities`` / ``graph_relationships`` / ``graph_file_metadata`` — code graph
* ``planning_entities`` / ``planning_relationships`` — planning stack

A single :meth:`Database.connect` block is one transaction: it commits on
success and rolls back on any exception.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from .errors import StorageError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id           TEXT    PRIMARY KEY,
    issue_number INTEGER NOT NULL,
    branch       TEXT    NOT NULL,
    worktree     TEXT    DEFAULT NULL,
    phase        TEXT    NOT NULL,
    status       TEXT    NOT NULL,
    retry_count  INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_actions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id TEXT    NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
    action      TEXT    NOT NULL,
    result      TEXT    NOT NULL,
    metadata    TEXT    DEFAULT NULL,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_commits (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    workflow_id TEXT    NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
    sha         TEXT    NOT NULL,
    message     TEXT    NOT NULL,
    created_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workflows_issue   ON workflows(issue_number);
CREATE INDEX IF NOT EXISTS idx_workflows_status  ON workflows(status);
CREATE INDEX IF NOT EXISTS idx_actions_workflow  ON workflow_actions(workflow_id);
CREATE INDEX IF NOT EXISTS idx_commits_workflow  ON workflow_commits(workflow_id);

CREATE TABLE IF NOT EXISTS entities (
    id           TEXT PRIMARY KEY,
    kind         TEXT NOT NULL,
    data         TEXT NOT NULL,
    embedding    BLOB DEFAULT NULL,
    content_hash TEXT DEFAULT NULL,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS relationships (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    from_id    TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    to_id      TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    type       TEXT NOT NULL,
    data       TEXT DEFAULT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (from_id, to_id, type)
);

CREATE INDEX IF NOT EXISTS idx_entities_kind       ON entities(kind);
CREATE INDEX IF NOT EXISTS idx_entities_hash       ON entities(content_hash);
CREATE INDEX IF NOT EXISTS idx_relationships_from  ON relationships(from_id);
CREATE INDEX IF NOT EXISTS idx_relationships_to    ON relationships(to_id);

CREATE TABLE IF NOT EXISTS graph_entities (
    id          TEXT    PRIMARY KEY,
    kind        TEXT    NOT NULL,
    name        TEXT    NOT NULL,
    file_path   TEXT    NOT NULL,
    line_number INTEGER NOT NULL DEFAULT 0,
    exported    INTEGER NOT NULL DEFAULT 0,
    package     TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS graph_relationships (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    from_entity TEXT NOT NULL,
    to_entity   TEXT NOT NULL,
    type        TEXT NOT NULL,
    package     TEXT NOT NULL,
    file_path   TEXT NOT NULL,
    UNIQUE (from_entity, to_entity, type)
);

CREATE TABLE IF NOT EXISTS graph_file_metadata (
    package      TEXT    NOT NULL,
    file_path    TEXT    NOT NULL,
    mtime_ms     REAL    NOT NULL,
    content_hash TEXT    DEFAULT NULL,
    entity_count INTEGER NOT NULL DEFAULT 0,
    updated_at   TEXT    NOT NULL,
    PRIMARY KEY (package, file_path)
);

CREATE INDEX IF NOT EXISTS idx_graph_entities_name    ON graph_entities(name);
CREATE INDEX IF NOT EXISTS idx_graph_entities_file    ON graph_entities(package, file_path);
CREATE INDEX IF NOT EXISTS idx_graph_rel_from         ON graph_relationships(from_entity);
CREATE INDEX IF NOT EXISTS idx_graph_rel_to           ON graph_relationships(to_entity);
CREATE INDEX IF NOT EXISTS idx_graph_rel_owner        ON graph_relationships(package, file_path);

CREATE TABLE IF NOT EXISTS planning_entities (
    id           TEXT    PRIMARY KEY,
    kind         TEXT    NOT NULL,
    title        TEXT    NOT NULL,
    status       TEXT    NOT NULL,
    stack_order  INTEGER DEFAULT NULL,
    data         TEXT    NOT NULL DEFAULT '{}',
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS planning_relationships (
    from_id TEXT NOT NULL REFERENCES planning_entities(id) ON DELETE CASCADE,
    to_id   TEXT NOT NULL REFERENCES planning_entities(id) ON DELETE CASCADE,
    type    TEXT NOT NULL,
    PRIMARY KEY (from_id, to_id, type)
);

CREATE INDEX IF NOT EXISTS idx_planning_stack ON planning_entities(stack_order);
CREATE INDEX IF NOT EXISTS idx_planning_kind  ON planning_entities(kind);
"""

# Applied to existing databases missing newer columns.
_MIGRATIONS = [
    "ALTER TABLE graph_file_metadata ADD COLUMN content_hash TEXT DEFAULT NULL",
]

MEMORY = ":memory:"

_TABLES = (
    "workflows", "workflow_actions", "workflow_commits",
    "entities", "relationships",
    "graph_entities", "graph_relationships", "graph_file_metadata",
    "planning_entities", "planning_relationships",
)


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string with milliseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by :func:`utc_now`."""
    return datetime.fromisoformat(value)


class Database:
    """
    Thin wrapper around a single SQLite file.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are created.
        ``":memory:"`` keeps one private in-memory database for the lifetime
        of this object.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._shared: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        if db_path == MEMORY:
            self._shared = sqlite3.connect(MEMORY, check_same_thread=False)
            self._shared.execute("PRAGMA foreign_keys=ON")
            self._shared.row_factory = sqlite3.Row
        else:
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._init_db()

    @property
    def path(self) -> str:
        return self._db_path

    @contextmanager
    def connect(self):
        """Yield a connected SQLite connection; the block is one transaction."""
        if self._shared is not None:
            with self._lock:
                try:
                    yield self._shared
                    self._shared.commit()
                except Exception:
                    self._shared.rollback()
                    raise
            return
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Like :meth:`connect`, but engine failures surface as StorageError."""
        try:
            with self.connect() as conn:
                yield conn
        except sqlite3.Error as exc:
            logger.debug("Transaction on %s rolled back: %s", self._db_path, exc)
            raise StorageError(str(exc)) from exc

    def _init_db(self) -> None:
        """Create tables and run any pending schema migrations."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)
            for stmt in _MIGRATIONS:
                try:
                    conn.execute(stmt)
                except sqlite3.OperationalError:
                    # column already present
                    pass

    def table_counts(self) -> dict[str, int]:
        """Return the row count of every agent_recall table."""
        with self.connect() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in _TABLES
            }
