"""
Completion summaries for the planning stack.

When a goal or interrupt is popped, a short template summary (title, step
tally, commits made since the item was pushed, duration) is stored in the
knowledge graph as a Learning, so finished work shows up in later queries.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..db import parse_timestamp
from ..errors import AgentRecallError
from ..git_utils import get_recent_commits
from ..knowledge.models import Learning
from .stack import PlanningKind, PlanStep, StackItem, StepStatus

logger = logging.getLogger(__name__)

SUMMARY_CONFIDENCE = 0.7
_MAX_COMMITS = 50


@dataclass
class CompletionSummary:
    item: StackItem
    summary: str
    duration_ms: int
    commit_count: int = 0
    learning_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "item": self.item.to_dict(),
            "summary": self.summary,
            "duration_ms": self.duration_ms,
            "commit_count": self.commit_count,
            "learning_id": self.learning_id,
        }


def _format_duration(ms: int) -> str:
    minutes = ms // 60000
    if minutes >= 60 * 24:
        return f"{minutes // (60 * 24)}d"
    if minutes >= 60:
        return f"{minutes // 60}h"
    if minutes > 0:
        return f"{minutes}m"
    return "<1m"


def _duration_ms(item: StackItem) -> int:
    age = datetime.now(timezone.utc) - parse_timestamp(item.created_at)
    return max(int(age.total_seconds() * 1000), 0)


def generate_summary(
    item: StackItem,
    steps: Iterable[PlanStep] = (),
    commit_count: int = 0,
    duration_ms: Optional[int] = None,
) -> str:
    """
    Render the one-line summary for a finished *item*, e.g.
    ``Completed: "Ship login". 2/3 steps done. 4 commits. Duration: 2h.``
    """
    prefix = "Completed" if item.kind == PlanningKind.GOAL else "Resolved"
    parts = [f'{prefix}: "{item.title}"']
    steps = list(steps)
    if steps:
        done = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
        parts.append(f"{done}/{len(steps)} steps done")
    if commit_count:
        parts.append(f"{commit_count} commit{'' if commit_count == 1 else 's'}")
    if item.kind == PlanningKind.INTERRUPT and item.reason:
        parts.append(f"Reason: {item.reason}")
    if duration_ms is None:
        duration_ms = _duration_ms(item)
    parts.append(f"Duration: {_format_duration(duration_ms)}")
    return ". ".join(parts) + "."


def summarize_completion(
    item: StackItem,
    knowledge,
    steps: Iterable[PlanStep] = (),
    repo_path: Optional[str] = None,
) -> CompletionSummary:
    """
    Summarise *item* and store the summary through *knowledge*.

    Parameters
    ----------
    item:
        The goal or interrupt that was just completed.
    knowledge:
        A :class:`~agent_recall.knowledge.store.KnowledgeStore`.
    steps:
        Steps of the goal's plan, if it has one.
    repo_path:
        Working tree used to count commits made since the item was pushed.

    A storage failure is logged; the summary is still returned, with
    ``learning_id`` left as ``None``.
    """
    commits = get_recent_commits(since=item.created_at, limit=_MAX_COMMITS, cwd=repo_path)
    duration_ms = _duration_ms(item)
    summary = generate_summary(item, steps, len(commits), duration_ms)
    result = CompletionSummary(
        item=item, summary=summary, duration_ms=duration_ms,
        commit_count=len(commits),
    )

    learning = Learning(
        content=summary,
        id=f"learning-planning-{uuid.uuid4()}",
        code_area=item.data.get("code_area") if item.kind == PlanningKind.GOAL else None,
        source_issue=item.issue_number,
        confidence=SUMMARY_CONFIDENCE,
        metadata={
            "source": "planning-stack",
            "planning_item_id": item.id,
            "planning_item_kind": item.kind,
            "duration_ms": duration_ms,
        },
    )
    try:
        result.learning_id = knowledge.store([learning])[0]
    except AgentRecallError as exc:
        logger.warning("Failed to store completion of %s as a learning: %s", item.id, exc)
    else:
        logger.debug("Stored completion of %s as %s", item.id, result.learning_id)
    return result
