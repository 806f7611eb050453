"""
Unit tests for agent_recall.db
"""

from __future__ import annotations

import os

import pytest

from agent_recall.db import MEMORY, Database
from agent_recall.errors import StorageError


def _insert_workflow(conn, workflow_id="workflow-1"):
    conn.execute(
        "INSERT INTO workflows (id, issue_number, branch, phase, status, retry_count, "
        "created_at, updated_at) VALUES (?, 1, 'b', 'research', 'running', 0, 'now', 'now')",
        (workflow_id,),
    )


# ---------------------------------------------------------------------------
# File database
# ---------------------------------------------------------------------------

class TestFileDatabase:

    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "state.db"
        Database(str(path))
        assert os.path.isfile(path)

    def test_every_table_starts_empty(self, tmp_path):
        counts = Database(str(tmp_path / "state.db")).table_counts()
        assert set(counts.values()) == {0}
        assert "planning_entities" in counts

    def test_failed_transaction_rolls_back(self, tmp_path):
        db = Database(str(tmp_path / "state.db"))
        with pytest.raises(StorageError):
            with db.transaction() as conn:
                _insert_workflow(conn)
                _insert_workflow(conn)
        assert db.table_counts()["workflows"] == 0


# ---------------------------------------------------------------------------
# In-memory database
# ---------------------------------------------------------------------------

class TestMemoryDatabase:

    def test_rows_survive_between_connections(self):
        db = Database(MEMORY)
        with db.transaction() as conn:
            _insert_workflow(conn)
        assert db.table_counts()["workflows"] == 1

    def test_failed_transaction_rolls_back(self):
        db = Database(MEMORY)
        with pytest.raises(StorageError):
            with db.transaction() as conn:
                _insert_workflow(conn)
                _insert_workflow(conn)
        assert db.table_counts()["workflows"] == 0

    def test_instances_are_isolated(self):
        first, second = Database(MEMORY), Database(MEMORY)
        with first.transaction() as conn:
            _insert_workflow(conn)
        assert second.table_counts()["workflows"] == 0
