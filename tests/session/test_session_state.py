"""
Unit tests for agent_recall.session.state
"""

from __future__ import annotations

import json
import os

import pytest

from agent_recall.config import Config
from agent_recall.session.state import SESSION_ID_ENV, SessionContext


@pytest.fixture
def ctx(tmp_path):
    return SessionContext("s1", str(tmp_path / "sessions"))


class TestPersistence:

    def test_missing_state(self, ctx):
        assert ctx.load() is None
        assert ctx.has_graph_been_queried() is False
        assert ctx.clear() is False

    def test_init_writes_file(self, ctx):
        state = ctx.init()
        assert os.path.isfile(ctx.path)
        assert ctx.load() == state
        assert not [f for f in os.listdir(ctx.state_dir) if f.endswith(".tmp")]

    def test_corrupt_file_treated_as_missing(self, ctx):
        os.makedirs(ctx.state_dir)
        with open(ctx.path, "w") as fh:
            fh.write("{not json")
        assert ctx.load() is None

    def test_sessions_are_isolated(self, tmp_path):
        a = SessionContext("a", str(tmp_path))
        b = SessionContext("b", str(tmp_path))
        a.record_graph_query("graph_find", "foo", 2)
        assert a.has_graph_been_queried()
        assert not b.has_graph_been_queried()

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv(SESSION_ID_ENV, "abc")
        cfg = Config({"session_state_dir": str(tmp_path)})
        ctx = SessionContext.from_env(cfg)
        assert ctx.path == os.path.join(str(tmp_path), "abc.json")

        monkeypatch.delenv(SESSION_ID_ENV)
        assert SessionContext.from_env(cfg).session_id == "default"


class TestRecording:

    def test_counters_accumulate(self, ctx):
        ctx.record_graph_query("graph_callers", "save", 3)
        ctx.record_docs_search("retry policy", 1)
        ctx.record_grep(allowed=False)
        ctx.record_grep(allowed=False)
        ctx.record_grep(allowed=True)

        state = ctx.load()
        assert [(q.tool, q.query, q.result_count) for q in state.graph_queries] == [
            ("graph_callers", "save", 3),
        ]
        assert state.docs_searches[0].query == "retry policy"
        assert (state.grep_block_count, state.grep_allow_count) == (2, 1)
        assert ctx.has_docs_been_searched()

    def test_init_resets(self, ctx):
        ctx.record_grep(allowed=True)
        ctx.init()
        assert ctx.load().grep_allow_count == 0

    def test_file_is_plain_json(self, ctx):
        ctx.record_graph_query("graph_find", "x")
        with open(ctx.path) as fh:
            data = json.load(fh)
        assert data["session_id"] == "s1"
        assert data["graph_queries"][0]["tool"] == "graph_find"


class TestSummary:

    def test_no_state(self, ctx):
        assert ctx.usage_summary().startswith("No session state found")

    def test_no_queries_yet(self, ctx):
        ctx.init()
        assert ctx.usage_summary().startswith("No graph or docs queries made yet")

    def test_counts(self, ctx):
        ctx.record_graph_query("graph_find", "x")
        ctx.record_grep(allowed=False)
        assert ctx.usage_summary() == (
            "Session tool usage:\n"
            "  Graph queries: 1\n"
            "  Docs searches: 0\n"
            "  Grep blocked: 1\n"
            "  Grep allowed: 0"
        )
