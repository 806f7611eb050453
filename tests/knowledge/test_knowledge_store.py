"""
Unit tests for agent_recall.knowledge.store
"""

from __future__ import annotations

import pytest

from agent_recall.db import Database
from agent_recall.errors import InvalidEnumError, ValidationError
from agent_recall.knowledge.models import (
    EntityKind,
    Learning,
    Mistake,
    Pattern,
    QueryFilter,
    RelationshipType,
    code_area_id,
    decode_entity,
    file_id,
    validate_relationship,
)
from agent_recall.knowledge.store import KnowledgeStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    return KnowledgeStore(Database(str(tmp_path / "state.db")))


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class TestModels:

    def test_empty_learning_rejected(self):
        with pytest.raises(ValidationError):
            Learning("   ")

    def test_supporting_ids_are_deterministic(self):
        assert code_area_id("Session Hooks") == "codearea-session-hooks"
        assert file_id("src/a.py") == file_id("src/a.py")
        assert file_id("src/a.py") != file_id("src/b.py")

    def test_relationship_endpoints_checked(self):
        validate_relationship(RelationshipType.ABOUT, EntityKind.LEARNING, EntityKind.CODE_AREA)
        with pytest.raises(InvalidEnumError):
            validate_relationship(RelationshipType.ABOUT, EntityKind.FILE, EntityKind.CODE_AREA)
        with pytest.raises(InvalidEnumError):
            validate_relationship("OWNS", EntityKind.LEARNING, EntityKind.FILE)

    def test_decode_unknown_kind(self):
        with pytest.raises(InvalidEnumError):
            decode_entity("Widget", {})


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

class TestStore:

    def test_learning_with_area_creates_node_and_edge(self, store):
        ids = store.store([Learning("X", code_area="API")])
        assert len(ids) == 1
        assert store.count_by_kind() == {EntityKind.LEARNING: 1, EntityKind.CODE_AREA: 1}
        assert store.relationships(RelationshipType.ABOUT) == [
            (ids[0], code_area_id("API"), RelationshipType.ABOUT),
        ]

    def test_learning_with_file_links_in_file(self, store):
        [lid] = store.store([Learning("Use WAL mode", file_path="agent_recall/db.py")])
        assert store.relationships(RelationshipType.IN_FILE) == [
            (lid, file_id("agent_recall/db.py"), RelationshipType.IN_FILE),
        ]

    def test_same_content_is_deduplicated(self, store):
        first = store.store([Learning("Retry flaky network calls", code_area="API")])
        second = store.store([Learning("  retry flaky   NETWORK calls ", code_area="API")])
        assert first == second
        assert store.count_by_kind()[EntityKind.LEARNING] == 1
        assert len(store.relationships(RelationshipType.ABOUT)) == 1

    def test_round_trip_through_get_entity(self, store):
        [lid] = store.store([Learning("Cache parsed trees", source_issue=12, confidence=0.9)])
        learning = store.get_entity(lid)
        assert isinstance(learning, Learning)
        assert learning.source_issue == 12
        assert learning.confidence == 0.9
        assert store.get_entity("learning-missing") is None

    def test_pattern_and_mistake_links(self, store):
        [lid] = store.store([Learning("Close cursors", file_path="db.py")])
        pid = store.store_pattern(Pattern("Context managers", "wrap connections", code_area="Database"), [lid])
        mid = store.store_mistake(Mistake("Leaked cursor", "use with-block", file_path="db.py"), lid)

        assert [p.id for p in store.get_patterns_for_area("Database")] == [pid]
        assert [m.id for m in store.get_mistakes_for_file("db.py")] == [mid]
        led_to = {(a, b) for a, b, _ in store.relationships(RelationshipType.LED_TO)}
        assert led_to == {(pid, lid), (mid, lid)}

    def test_link_to_unknown_learning_rejected(self, store):
        with pytest.raises(ValidationError):
            store.store_mistake(Mistake("oops", "fixed"), "learning-missing")
        assert store.count_by_kind() == {}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQuery:

    def test_ranking_issue_file_area_keyword(self, store):
        store.store([Learning("keyword cache hit", code_area="Other")])
        store.store([Learning("area match", code_area="API")])
        store.store([Learning("file match", file_path="src/api/routes.py")])
        store.store([Learning("issue match", source_issue=42)])

        results = store.query(QueryFilter(
            code_area="API", file_path="src/api/routes.py", issue_number=42, keywords=["cache"],
        ))
        assert [r.learning.content for r in results] == [
            "issue match", "file match", "area match", "keyword cache hit",
        ]
        assert [r.score for r in results] == [8, 4, 2, 1]

    def test_limit(self, store):
        store.store([Learning(f"note about parser {i}") for i in range(5)])
        assert len(store.query(QueryFilter(keywords=["parser"]), limit=2)) == 2

    def test_no_match_returns_empty(self, store):
        store.store([Learning("something", code_area="API")])
        assert store.query(QueryFilter(code_area="Database")) == []

    def test_query_creates_supporting_nodes(self, store):
        store.query(QueryFilter(code_area="Graph", file_path="graph.py"))
        counts = store.count_by_kind()
        assert counts[EntityKind.CODE_AREA] == 1
        assert counts[EntityKind.FILE] == 1

    def test_superseded_learnings_excluded(self, store):
        [old] = store.store([Learning("parser uses regex")])
        [new] = store.store([Learning("parser uses tree-sitter")])
        store.supersede(new, old)
        results = store.query(QueryFilter(keywords=["parser"]))
        assert [r.learning.id for r in results] == [new]

    def test_related_patterns_attached(self, store):
        [lid] = store.store([Learning("batch inserts", code_area="Database")])
        store.store_pattern(Pattern("Bulk writes", "executemany"), [lid])
        [result] = store.query(QueryFilter(code_area="Database"))
        assert [p.name for p in result.related_patterns] == ["Bulk writes"]
        assert result.to_dict()["related_patterns"][0]["name"] == "Bulk writes"

    def test_like_wildcards_are_literal(self, store):
        store.store([Learning("use 100% coverage")])
        store.store([Learning("use 100 tests")])
        results = store.query(QueryFilter(keywords=["100%"]))
        assert [r.learning.content for r in results] == ["use 100% coverage"]
