"""
Unit tests for agent_recall.graph.indexer

Builds a throwaway Python project, indexes it, then edits and deletes files
to check that only changed files are re-parsed and deletions propagate.
"""

from __future__ import annotations

import os

import pytest

from agent_recall.db import Database
from agent_recall.graph import indexer as indexer_module
from agent_recall.graph.indexer import GraphIndexer, compute_file_hash
from agent_recall.graph.query import GraphQuery
from agent_recall.graph.store import GraphStore

pytest.importorskip("tree_sitter_python")


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def _bump_mtime(path, seconds=5):
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + seconds * 1_000_000_000))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "state.db"))


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    _write(root / "lib.py", "def bar():\n    return 1\n")
    _write(root / "app.py", "from lib import bar\n\ndef foo():\n    return bar()\n")
    return root


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestReindex:

    def test_first_run_indexes_everything(self, db, project):
        report = GraphIndexer(GraphStore(db)).reindex(str(project))
        assert report.changed_files == 2
        assert report.packages_updated == 1
        [caller] = GraphQuery(db).what_calls("bar")
        assert (caller.name, caller.file_path, caller.line_number) == ("foo", "app.py", 3)

    def test_second_run_is_a_no_op(self, db, project):
        indexer = GraphIndexer(GraphStore(db))
        indexer.reindex(str(project))
        before = GraphStore(db).counts()
        report = indexer.reindex(str(project))
        assert report.changed_files == 0
        assert report.deleted_files == 0
        assert GraphStore(db).counts() == before

    def test_only_changed_file_reparsed(self, db, project):
        indexer = GraphIndexer(GraphStore(db))
        indexer.reindex(str(project))
        _write(project / "lib.py", "def bar():\n    return 2\n\ndef baz():\n    pass\n")
        _bump_mtime(project / "lib.py")

        report = indexer.reindex(str(project))
        assert report.packages[0].changed_files == ["lib.py"]
        assert [e.name for e in GraphQuery(db).find_entities("baz")] == ["baz"]
        assert len(GraphQuery(db).what_calls("bar")) == 1

    def test_deleted_file_propagates(self, db, project):
        indexer = GraphIndexer(GraphStore(db))
        indexer.reindex(str(project))
        os.remove(project / "lib.py")

        report = indexer.reindex(str(project))
        assert report.packages[0].deleted_files == ["lib.py"]
        query = GraphQuery(db)
        assert query.find_entities("bar") == []
        assert query.what_calls("bar") == []
        assert "lib.py" not in GraphStore(db).get_file_metadata("proj")

    def test_hash_mode_ignores_touch(self, db, project):
        indexer = GraphIndexer(GraphStore(db), change_detection="hash")
        indexer.reindex(str(project))
        _bump_mtime(project / "app.py")
        assert indexer.reindex(str(project)).changed_files == 0

    def test_progress_callback(self, db, project):
        seen = []
        GraphIndexer(GraphStore(db)).reindex(
            str(project), progress_callback=lambda cur, total, name: seen.append((cur, total, name))
        )
        assert seen == [(1, 2, "app.py"), (2, 2, "lib.py")]

    def test_edit_during_parse_is_picked_up_next_run(self, db, project, monkeypatch):
        real_parse = indexer_module.parse_package

        def parse_then_edit(*args, **kwargs):
            result = real_parse(*args, **kwargs)
            _write(project / "lib.py", "def bar():\n    return 1\n\ndef late():\n    pass\n")
            _bump_mtime(project / "lib.py")
            return result

        monkeypatch.setattr(indexer_module, "parse_package", parse_then_edit)
        indexer = GraphIndexer(GraphStore(db))
        indexer.reindex(str(project))
        monkeypatch.setattr(indexer_module, "parse_package", real_parse)

        report = indexer.reindex(str(project))
        assert report.packages[0].changed_files == ["lib.py"]
        assert [e.name for e in GraphQuery(db).find_entities("late")] == ["late"]

    def test_unknown_mode_rejected(self, db):
        with pytest.raises(ValueError):
            GraphIndexer(GraphStore(db), change_detection="inotify")


def test_compute_file_hash(tmp_path):
    path = tmp_path / "f.txt"
    path.write_text("abc")
    assert compute_file_hash(str(path)) == compute_file_hash(str(path))
    assert compute_file_hash(str(tmp_path / "missing")) == ""
