"""
Unit tests for agent_recall.graph.store
"""

from __future__ import annotations

import pytest

from agent_recall.db import Database
from agent_recall.errors import StorageError
from agent_recall.graph.parser import (
    EntityKind,
    GraphEntity,
    GraphRelationship,
    ParseResult,
    RelType,
    entity_id,
    file_entity_id,
)
from agent_recall.graph.store import FileMetadata, GraphStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fn(pkg, path, name, line=1):
    return GraphEntity(
        id=entity_id(pkg, path, EntityKind.FUNCTION, name), kind=EntityKind.FUNCTION,
        name=name, file_path=path, line_number=line, exported=True, package=pkg,
    )


def _file(pkg, path):
    return GraphEntity(
        id=file_entity_id(pkg, path), kind=EntityKind.FILE, name=path,
        file_path=path, line_number=0, exported=False, package=pkg,
    )


def _call(src, dst_id=None, name=None):
    return GraphRelationship(
        from_id=src.id, to_id=dst_id, type=RelType.CALLS,
        file_path=src.file_path, target_name=name,
        target_kinds=(EntityKind.FUNCTION,) if name else (),
    )


@pytest.fixture
def store(tmp_path):
    return GraphStore(Database(str(tmp_path / "state.db")))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestStoreGraph:

    def test_full_replace(self, store):
        bar = _fn("pkg", "a.py", "bar")
        foo = _fn("pkg", "a.py", "foo", 4)
        stored = store.store_graph("pkg", ParseResult("pkg", [bar, foo], [_call(foo, bar.id)]))
        assert (stored.entities, stored.relationships) == (2, 1)

        store.store_graph("pkg", ParseResult("pkg", [bar]))
        assert store.counts("pkg") == {"entities": 1, "relationships": 0}

    def test_duplicate_relationships_collapse(self, store):
        bar = _fn("pkg", "a.py", "bar")
        foo = _fn("pkg", "a.py", "foo")
        stored = store.store_graph(
            "pkg", ParseResult("pkg", [bar, foo], [_call(foo, bar.id), _call(foo, bar.id)])
        )
        assert stored.relationships == 1
        assert store.counts()["relationships"] == 1

    def test_failed_write_leaves_graph_intact(self, store):
        bar = _fn("pkg", "a.py", "bar")
        store.store_graph("pkg", ParseResult("pkg", [bar]))
        before = store.counts()

        broken = _fn("pkg", "a.py", "baz")
        broken.kind = None
        with pytest.raises(StorageError):
            store.store_graph("pkg", ParseResult("pkg", [_fn("pkg", "a.py", "qux"), broken]))
        assert store.counts() == before

    def test_unresolved_target_resolved_by_name_across_files(self, store):
        bar = _fn("pkg", "a.py", "bar")
        store.store_graph("pkg", ParseResult("pkg", [bar]), replace_files=["a.py"])

        foo = _fn("pkg", "b.py", "foo")
        stored = store.store_graph(
            "pkg", ParseResult("pkg", [foo], [_call(foo, name="bar"), _call(foo, name="nowhere")]),
            replace_files=["b.py"],
        )
        assert stored.relationships == 1
        assert stored.unresolved == 1

    def test_same_package_preferred_when_resolving(self, store):
        other = _fn("other", "x.py", "bar")
        mine = _fn("pkg", "a.py", "bar")
        store.store_graph("other", ParseResult("other", [other]))
        store.store_graph("pkg", ParseResult("pkg", [mine]), replace_files=["a.py"])
        foo = _fn("pkg", "b.py", "foo")
        store.store_graph("pkg", ParseResult("pkg", [foo], [_call(foo, name="bar")]),
                          replace_files=["b.py"])
        with store._db.connect() as conn:
            [row] = conn.execute("SELECT to_entity FROM graph_relationships").fetchall()
        assert row["to_entity"] == mine.id

    def test_deleted_file_drops_rows_and_incoming_edges(self, store):
        bar = _fn("pkg", "a.py", "bar")
        foo = _fn("pkg", "b.py", "foo")
        store.store_graph(
            "pkg", ParseResult("pkg", [bar, foo], [_call(foo, bar.id)]),
            metadata=[FileMetadata("a.py", 1.0), FileMetadata("b.py", 1.0)],
        )
        store.store_graph("pkg", ParseResult("pkg"), replace_files=[], deleted_files=["a.py"])
        assert store.counts() == {"entities": 1, "relationships": 0}
        assert set(store.get_file_metadata("pkg")) == {"b.py"}

    def test_metadata_upsert_and_clear(self, store):
        f = _file("pkg", "a.py")
        store.store_graph("pkg", ParseResult("pkg", [f]),
                          metadata=[FileMetadata("a.py", 10.0, 1, "abc")])
        meta = store.get_file_metadata("pkg")["a.py"]
        assert (meta.mtime_ms, meta.entity_count, meta.content_hash) == (10.0, 1, "abc")
        assert store.last_indexed_at() is not None

        store.clear_package("pkg")
        assert store.get_file_metadata("pkg") == {}
        assert store.counts() == {"entities": 0, "relationships": 0}
