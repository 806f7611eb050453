"""
Unit tests for agent_recall.session.context_builder
"""

from __future__ import annotations

import time

import pytest

from agent_recall.config import Config
from agent_recall.db import Database
from agent_recall.errors import SectionTimeoutError
from agent_recall.knowledge.embedder import EmbedderHandle
from agent_recall.knowledge.models import Learning
from agent_recall.knowledge.store import KnowledgeStore
from agent_recall.planning.stack import PlanningStack, StepStatus
from agent_recall.session.context_builder import (
    FOOTER,
    HEADER,
    SessionContextBuilder,
    run_with_timeout,
)


class _FakeEmbedder:
    def embed(self, texts):
        return [[1.0 if "cache" in t.lower() else 0.0, 0.0, 0.1] for t in texts]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "state.db"))


@pytest.fixture
def empty_root(tmp_path):
    root = tmp_path / "empty"
    root.mkdir()
    return str(root)


@pytest.fixture
def config():
    return Config({"section_timeout_ms": 5000, "max_learnings": 3})


def _builder(db, root, config, branch="main", **kwargs):
    return SessionContextBuilder(db, config, branch_lookup=lambda: branch,
                                 project_root=root, **kwargs)


def _goal_with_plan(db):
    stack = PlanningStack(db)
    goal = stack.push_goal("Implement proof verification", issue_number=84)
    plan = stack.push_plan(goal.id, "plan")
    steps = [stack.push_step(plan.id, t) for t in ("one", "two", "three")]
    stack.push_step(plan.id, "four", wave=2, depends_on=[steps[2].id])
    stack.set_step_status(steps[0].id, StepStatus.COMPLETED)
    stack.set_step_status(steps[1].id, StepStatus.COMPLETED)
    return goal


# ---------------------------------------------------------------------------
# run_with_timeout
# ---------------------------------------------------------------------------

class TestRunWithTimeout:

    def test_returns_value(self):
        assert run_with_timeout(lambda: 7, 1000, "x") == 7

    def test_propagates_errors(self):
        def boom():
            raise KeyError("k")
        with pytest.raises(KeyError):
            run_with_timeout(boom, 1000, "x")

    def test_times_out(self):
        with pytest.raises(SectionTimeoutError) as excinfo:
            run_with_timeout(lambda: time.sleep(0.5), 20, "slow")
        assert excinfo.value.section == "slow"


# ---------------------------------------------------------------------------
# build()
# ---------------------------------------------------------------------------

class TestBuild:

    def test_no_data_gives_empty_output(self, db, empty_root, config):
        block = _builder(db, empty_root, config).build()
        assert block.output == ""
        assert block.sections == {"planning": False, "graph": False, "learnings": False}
        assert block.timings_ms["total"] >= 0

    def test_stack_and_learnings_format(self, db, empty_root, config):
        _goal_with_plan(db)
        KnowledgeStore(db).store([Learning("Verify proofs server-side", source_issue=84)])

        block = _builder(db, empty_root, config).build()
        assert block.output == "\n".join([
            HEADER,
            "",
            "▸ Stack (depth: 1)",
            "  1. [Goal] Implement proof verification #84 (active, 50%)",
            "     Next: three",
            "",
            "▸ Learnings (1 relevant)",
            "  • Verify proofs server-side",
            "",
            FOOTER,
        ])
        assert block.sections == {"planning": True, "graph": False, "learnings": True}

    def test_paused_items_show_age(self, db, empty_root, config):
        stack = PlanningStack(db)
        stack.push_goal("Ship login")
        stack.push_interrupt("Hotfix prod", reason="outage")
        lines = _builder(db, empty_root, config).build().output.splitlines()
        assert "▸ Stack (depth: 2)" in lines
        assert "  1. [Interrupt] Hotfix prod (active)" in lines
        assert "  2. [Goal] Ship login (paused, 0m)" in lines

    def test_long_learnings_truncated(self, db, empty_root, config):
        PlanningStack(db).push_goal("Tune parser", issue_number=1)
        KnowledgeStore(db).store([Learning("x" * 100, source_issue=1)])
        lines = _builder(db, empty_root, config).build().output.splitlines()
        [bullet] = [l for l in lines if l.startswith("  • ")]
        assert bullet == "  • " + "x" * 77 + "..."

    def test_explicit_issue_overrides_goal(self, db, empty_root, config):
        PlanningStack(db).push_goal("Tune parser", issue_number=1)
        KnowledgeStore(db).store([
            Learning("from issue one", source_issue=1),
            Learning("from issue two", source_issue=2),
        ])
        output = _builder(db, empty_root, config).build(issue_number=2).output
        assert "from issue two" in output
        assert "from issue one" not in output


class TestResilience:

    def test_slow_section_is_dropped(self, db, empty_root, monkeypatch):
        cfg = Config({"section_timeout_ms": 50})
        PlanningStack(db).push_goal("Ship login")
        builder = _builder(db, empty_root, cfg)

        def slow(keywords):
            time.sleep(1)
            return ["▸ Graph (never)"]

        monkeypatch.setattr(builder, "_graph_section", slow)
        block = builder.build()
        assert block.sections["planning"] is True
        assert block.sections["graph"] is False
        assert "never" not in block.output
        assert block.timings_ms["graph"] < 1000

    def test_failing_planning_falls_back_to_branch_keywords(self, db, empty_root, config, monkeypatch):
        KnowledgeStore(db).store([Learning("cache layer invalidation rules")])
        builder = _builder(db, empty_root, config, branch="feat/issue-7-cache-layer")

        def broken():
            raise RuntimeError("planning tables unavailable")

        monkeypatch.setattr(builder, "_planning_section", broken)
        block = builder.build()
        assert block.sections == {"planning": False, "graph": False, "learnings": True}
        assert "cache layer invalidation rules" in block.output

    def test_all_sections_slow_gives_empty_block_within_bound(self, db, empty_root, monkeypatch):
        timeout_ms = 100
        builder = _builder(db, empty_root, Config({"section_timeout_ms": timeout_ms}))

        def slow(*args):
            time.sleep(1)
            return ["▸ never"]

        for section in ("_planning_section", "_graph_section", "_learnings_section"):
            monkeypatch.setattr(builder, section, slow)

        start = time.monotonic()
        block = builder.build()
        elapsed_ms = (time.monotonic() - start) * 1000

        assert block.output == ""
        assert block.sections == {"planning": False, "graph": False, "learnings": False}
        assert elapsed_ms < 3 * timeout_ms + 300
        assert block.timings_ms["total"] < 3 * timeout_ms + 300

    def test_slow_branch_lookup_stays_inside_planning_budget(self, db, empty_root, monkeypatch):
        timeout_ms = 100

        def slow_branch():
            time.sleep(1)
            return "feat/issue-7-cache-layer"

        builder = SessionContextBuilder(
            db, Config({"section_timeout_ms": timeout_ms}),
            branch_lookup=slow_branch, project_root=empty_root,
        )

        def broken():
            raise RuntimeError("planning tables unavailable")

        monkeypatch.setattr(builder, "_planning_section", broken)
        start = time.monotonic()
        block = builder.build()
        assert (time.monotonic() - start) * 1000 < 3 * timeout_ms + 300
        assert block.output == ""

    def test_never_raises(self, db, empty_root, config, monkeypatch):
        builder = _builder(db, empty_root, config)
        monkeypatch.setattr(builder, "_build_sections", lambda *a: 1 / 0)
        assert builder.build().output == ""


class TestLearningFallbacks:

    def test_semantic_results_preferred(self, db, empty_root, config):
        handle = EmbedderHandle(lambda: _FakeEmbedder())
        PlanningStack(db).push_goal("Cache layer", issue_number=5)
        KnowledgeStore(db, handle).store([
            Learning("issue note", source_issue=5),
            Learning("cache tips"),
        ])
        output = _builder(db, empty_root, config, embedder=handle).build().output
        assert "cache tips" in output
        assert "issue note" not in output

    def test_issue_then_keywords_without_embedder(self, db, empty_root, config):
        PlanningStack(db).push_goal("Cache layer", issue_number=5)
        KnowledgeStore(db).store([Learning("issue note", source_issue=5), Learning("cache tips")])
        output = _builder(db, empty_root, config).build().output
        assert "issue note" in output
        assert "cache tips" not in output

        PlanningStack(db).pop()
        PlanningStack(db).push_goal("Cache layer")
        output = _builder(db, empty_root, config).build().output
        assert "cache tips" in output


class TestGraphSection:

    def test_graph_lines(self, db, tmp_path, config):
        pytest.importorskip("tree_sitter_python")
        root = tmp_path / "proj"
        root.mkdir()
        (root / "lib.py").write_text("def cache_get():\n    return 1\n")
        (root / "app.py").write_text("from lib import cache_get\n\ndef handler():\n    return cache_get()\n")
        PlanningStack(db).push_goal("cache_get tuning")

        block = _builder(db, str(root), config).build()
        lines = block.output.splitlines()
        assert block.sections["graph"] is True
        graph_header = [l for l in lines if l.startswith("▸ Graph")][0]
        assert graph_header.startswith("▸ Graph (1 pkgs, ")
        assert graph_header.endswith("updated 2 files)")
        assert '  graph_find("cache") → cache_get (lib.py:1)' in lines
        assert '  graph_what_calls("cache") → handler (app.py:3)' in lines

        second = _builder(db, str(root), config).build().output
        assert "indexed " in second and "ms ago)" in second
