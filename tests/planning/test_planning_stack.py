"""
Unit tests for agent_recall.planning
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from agent_recall.db import Database
from agent_recall.errors import InvalidEnumError, StorageError, ValidationError
from agent_recall.knowledge.models import QueryFilter
from agent_recall.knowledge.store import KnowledgeStore
from agent_recall.planning.progress import PlanProgress, compute_plan_progress
from agent_recall.planning.stack import (
    ItemStatus,
    PlanningKind,
    PlanningRel,
    PlanningStack,
    StepStatus,
)
from agent_recall.planning.summarize import generate_summary


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "state.db"))


@pytest.fixture
def stack(db):
    return PlanningStack(db)


# ---------------------------------------------------------------------------
# Stack semantics
# ---------------------------------------------------------------------------

class TestStack:

    def test_empty_stack(self, stack):
        view = stack.peek_stack()
        assert view.depth == 0
        assert view.top_item is None
        assert stack.peek() is None
        assert stack.pop() is None

    def test_push_goal(self, stack):
        goal = stack.push_goal("Ship login", issue_number=42)
        assert goal.kind == PlanningKind.GOAL
        assert goal.status == ItemStatus.ACTIVE
        assert goal.issue_number == 42
        assert stack.peek().id == goal.id

    def test_blank_title_rejected(self, stack):
        with pytest.raises(ValidationError):
            stack.push_goal("   ")

    def test_interrupt_pauses_goal(self, db, stack):
        goal = stack.push_goal("Ship login")
        interrupt = stack.push_interrupt("Hotfix prod", reason="outage")

        view = stack.peek_stack()
        assert [i.id for i in view.items] == [interrupt.id, goal.id]
        assert [i.status for i in view.items] == [ItemStatus.ACTIVE, ItemStatus.PAUSED]
        assert [i.stack_order for i in view.items] == [0, 1]
        assert view.top_item.reason == "outage"
        assert view.top_item.data["interrupted_id"] == goal.id

        with db.connect() as conn:
            edges = conn.execute(
                "SELECT from_id, to_id FROM planning_relationships WHERE type = ?",
                (PlanningRel.INTERRUPTED_BY,),
            ).fetchall()
        assert [(e["from_id"], e["to_id"]) for e in edges] == [(goal.id, interrupt.id)]

    def test_pop_completes_and_promotes(self, stack):
        goal = stack.push_goal("Ship login")
        interrupt = stack.push_interrupt("Hotfix prod", reason="outage")

        popped = stack.pop()
        assert popped.id == interrupt.id
        assert popped.status == ItemStatus.COMPLETED
        assert stack.get_item(interrupt.id).stack_order is None

        top = stack.peek()
        assert top.id == goal.id
        assert top.status == ItemStatus.ACTIVE
        assert top.stack_order == 0
        assert stack.peek_stack().depth == 1

    def test_three_deep_orders_stay_contiguous(self, stack):
        a = stack.push_goal("a goal")
        b = stack.push_goal("b goal")
        c = stack.push_interrupt("c interrupt", reason="r")
        stack.pop()
        view = stack.peek_stack()
        assert [(i.id, i.stack_order) for i in view.items] == [(b.id, 0), (a.id, 1)]
        assert view.items[1].status == ItemStatus.PAUSED
        assert c.id not in {i.id for i in view.items}

    def test_labels(self, stack):
        assert stack.push_goal("g").label == "Goal"
        assert stack.push_interrupt("i", reason="r").label == "Interrupt"


# ---------------------------------------------------------------------------
# Plans and steps
# ---------------------------------------------------------------------------

class TestPlans:

    def test_one_plan_per_goal(self, stack):
        goal = stack.push_goal("Ship login")
        plan = stack.push_plan(goal.id, "Login plan", source_of_truth="issue")
        again = stack.push_plan(goal.id, "Other plan")
        assert again.id == plan.id
        assert stack.get_plan_by_goal(goal.id).source_of_truth == "issue"
        assert stack.get_plan(plan.id).goal_id == goal.id

    def test_plan_for_unknown_goal(self, stack):
        with pytest.raises(ValidationError):
            stack.push_plan("goal-missing", "x")

    def test_steps_ordered_by_wave_then_ordinal(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        late = stack.push_step(plan.id, "deploy", wave=2)
        first = stack.push_step(plan.id, "schema", wave=1)
        second = stack.push_step(plan.id, "api", wave=1)
        assert [s.id for s in stack.get_steps(plan.id)] == [first.id, second.id, late.id]
        assert (late.ordinal, first.ordinal, second.ordinal) == (1, 2, 3)

    def test_dependency_must_be_in_plan(self, stack):
        plan_a = stack.push_plan(stack.push_goal("a").id, "pa")
        plan_b = stack.push_plan(stack.push_goal("b").id, "pb")
        foreign = stack.push_step(plan_b.id, "other")
        with pytest.raises(ValidationError):
            stack.push_step(plan_a.id, "x", depends_on=[foreign.id])
        with pytest.raises(ValidationError):
            stack.push_step("plan-missing", "x")

    def test_dependencies_round_trip(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        base = stack.push_step(plan.id, "base")
        top = stack.push_step(plan.id, "top", wave=2, depends_on=[base.id, base.id])
        stored = {s.id: s for s in stack.get_steps(plan.id)}
        assert stored[top.id].depends_on == [base.id]

    def test_set_step_status(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        step = stack.push_step(plan.id, "s")
        assert stack.set_step_status(step.id, StepStatus.IN_PROGRESS)
        assert stack.get_steps(plan.id)[0].status == StepStatus.IN_PROGRESS
        assert stack.set_step_status("step-missing", StepStatus.COMPLETED) is False
        with pytest.raises(InvalidEnumError):
            stack.set_step_status(step.id, "done")


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class TestProgress:

    def test_half_done_with_blocked_second_wave(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        s1 = stack.push_step(plan.id, "one")
        s2 = stack.push_step(plan.id, "two")
        s3 = stack.push_step(plan.id, "three")
        stack.push_step(plan.id, "four", wave=2, depends_on=[s3.id])
        stack.set_step_status(s1.id, StepStatus.COMPLETED)
        stack.set_step_status(s2.id, StepStatus.COMPLETED)

        progress = compute_plan_progress(plan, stack.get_steps(plan.id))
        assert progress.total == 4
        assert progress.done == 2
        assert progress.percentage == 50
        assert progress.blocked == 1
        assert progress.not_started == 1
        assert progress.current_wave == 1
        assert [n.step.id for n in progress.next_steps] == [s3.id]

    def test_next_wave_opens_when_dependency_completes(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        s1 = stack.push_step(plan.id, "one")
        s2 = stack.push_step(plan.id, "two", wave=2, depends_on=[s1.id])
        stack.set_step_status(s1.id, StepStatus.COMPLETED)
        progress = compute_plan_progress(plan, stack.get_steps(plan.id))
        assert progress.current_wave == 2
        assert [(n.step.id, n.wave) for n in progress.next_steps] == [(s2.id, 2)]

    def test_in_progress_and_explicitly_blocked(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        a = stack.push_step(plan.id, "a")
        b = stack.push_step(plan.id, "b")
        stack.set_step_status(a.id, StepStatus.IN_PROGRESS)
        stack.set_step_status(b.id, StepStatus.BLOCKED)
        progress = compute_plan_progress(plan, stack.get_steps(plan.id))
        assert (progress.in_progress, progress.blocked, progress.not_started) == (1, 1, 0)
        assert [n.status for n in progress.next_steps] == [StepStatus.IN_PROGRESS]

    def test_all_done(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        step = stack.push_step(plan.id, "only")
        stack.set_step_status(step.id, StepStatus.COMPLETED)
        progress = compute_plan_progress(plan, stack.get_steps(plan.id))
        assert progress.percentage == 100
        assert progress.current_wave is None
        assert progress.next_steps == []

    def test_empty_plan(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        assert compute_plan_progress(plan, []) == PlanProgress()
        assert compute_plan_progress(plan, []).to_dict()["percentage"] == 0

    def test_next_steps_capped_at_three(self, stack):
        plan = stack.push_plan(stack.push_goal("g").id, "p")
        for i in range(5):
            stack.push_step(plan.id, f"s{i}")
        progress = compute_plan_progress(plan, stack.get_steps(plan.id))
        assert [n.step.title for n in progress.next_steps] == ["s0", "s1", "s2"]


# ---------------------------------------------------------------------------
# Completion summaries
# ---------------------------------------------------------------------------

class _FailingKnowledge:
    def store(self, learnings):
        raise StorageError("disk full")


@pytest.fixture
def knowledge(db):
    return KnowledgeStore(db)


@pytest.fixture
def summarizing_stack(db, knowledge, tmp_path):
    return PlanningStack(db, knowledge, repo_path=str(tmp_path))


class TestCompletionSummary:

    def test_pop_stores_goal_as_learning(self, summarizing_stack, knowledge):
        goal = summarizing_stack.push_goal("Ship login", issue_number=42, code_area="Auth")
        plan = summarizing_stack.push_plan(goal.id, "Login plan")
        first = summarizing_stack.push_step(plan.id, "schema")
        summarizing_stack.push_step(plan.id, "api")
        summarizing_stack.set_step_status(first.id, StepStatus.COMPLETED)

        popped = summarizing_stack.pop()

        assert popped.data["summary"] == 'Completed: "Ship login". 1/2 steps done. Duration: <1m.'
        results = knowledge.query(QueryFilter(code_area="Auth"))
        assert [r.learning.content for r in results] == [popped.data["summary"]]
        learning = results[0].learning
        assert learning.id == popped.data["completed_as"]
        assert learning.source_issue == 42
        assert learning.confidence == 0.7
        assert learning.metadata["planning_item_id"] == goal.id

    def test_summary_persisted_on_item(self, summarizing_stack):
        goal = summarizing_stack.push_goal("Ship login")
        summarizing_stack.pop()
        stored = summarizing_stack.get_item(goal.id)
        assert stored.status == ItemStatus.COMPLETED
        assert stored.data["summary"].startswith('Completed: "Ship login"')
        assert stored.data["completed_as"].startswith("learning-planning-")

    def test_interrupt_is_resolved_with_reason(self, summarizing_stack, knowledge):
        summarizing_stack.push_goal("Ship login")
        summarizing_stack.push_interrupt("Fix CI", reason="red main")
        popped = summarizing_stack.pop()
        assert popped.data["summary"] == 'Resolved: "Fix CI". Reason: red main. Duration: <1m.'
        assert knowledge.get_entity(popped.data["completed_as"]) is not None

    def test_plain_stack_stores_nothing(self, stack, knowledge):
        stack.push_goal("Ship login", code_area="Auth")
        popped = stack.pop()
        assert "summary" not in popped.data
        assert knowledge.query(QueryFilter(code_area="Auth")) == []

    def test_store_failure_is_logged(self, db, tmp_path, caplog):
        stack = PlanningStack(db, _FailingKnowledge(), repo_path=str(tmp_path))
        stack.push_goal("Ship login")
        with caplog.at_level(logging.WARNING):
            popped = stack.pop()
        assert popped.status == ItemStatus.COMPLETED
        assert "completed_as" not in popped.data
        assert popped.data["summary"].startswith("Completed")
        assert "disk full" in caplog.text

    def test_generate_summary_commits_and_duration(self, stack):
        goal = stack.push_goal("Ship login")
        text = generate_summary(goal, commit_count=4, duration_ms=2 * 3600 * 1000)
        assert text == 'Completed: "Ship login". 4 commits. Duration: 2h.'
        assert generate_summary(goal, commit_count=1, duration_ms=3 * 86400 * 1000) == (
            'Completed: "Ship login". 1 commit. Duration: 3d.'
        )


# ---------------------------------------------------------------------------
# Stale detection
# ---------------------------------------------------------------------------

def _age(db, item_id, days):
    stamp = (datetime.now(timezone.utc) - timedelta(days=days, hours=1)).isoformat(
        timespec="milliseconds"
    )
    with db.transaction() as conn:
        conn.execute("UPDATE planning_entities SET updated_at = ? WHERE id = ?", (stamp, item_id))


class TestStaleItems:

    def test_fresh_stack_has_nothing_stale(self, stack):
        stack.push_goal("a")
        stack.push_goal("b")
        assert stack.detect_stale_items() == []

    def test_old_paused_item_is_stale(self, db, stack):
        old = stack.push_goal("old work")
        stack.push_goal("current work")
        _age(db, old.id, 10)
        stack.push_goal("newer work")

        stale = stack.detect_stale_items(threshold_days=7)
        assert [s.item.id for s in stale] == [old.id]
        assert stale[0].reason == "No activity for 10 days while paused."
        assert stale[0].stale_since == stack.get_item(old.id).updated_at

    def test_old_active_item_is_not_stale(self, db, stack):
        top = stack.push_goal("focus")
        _age(db, top.id, 30)
        assert stack.detect_stale_items() == []

    def test_closed_issue_marks_goal_stale(self, stack):
        closed = stack.push_goal("done upstream", issue_number=7)
        stack.push_goal("still open", issue_number=8)
        stale = stack.detect_stale_items(issue_closed=lambda n: n == 7)
        assert [s.item.id for s in stale] == [closed.id]
        assert stale[0].reason.startswith("Issue #7 is closed")

    def test_detection_leaves_stack_alone(self, db, stack):
        old = stack.push_goal("old work")
        stack.push_goal("current work")
        _age(db, old.id, 10)
        stack.detect_stale_items()
        assert stack.peek_stack().depth == 2
        assert stack.get_item(old.id).status == ItemStatus.PAUSED
