"""
Session start context block.

Primes a new agent session with three short sections:

* **Stack**: the planning stack, with plan progress and the next step for
  the active goal;
* **Graph**: an incremental re-index followed by a summary and a couple of
  live lookups for the current keywords;
* **Learnings**: the most relevant stored learnings.

Each section runs on a daemon thread and is awaited with its own deadline.
A section that fails or misses its deadline is left out; :meth:`build`
never raises.  A timed-out section's thread is not killed and may finish
in the background; the work inside each section is bounded (capped result
counts, one re-index pass) so a late finisher does not run on indefinitely.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..config import Config
from ..db import Database, parse_timestamp
from ..errors import SectionTimeoutError
from ..git_utils import get_current_branch
from ..graph.indexer import GraphIndexer
from ..graph.query import GraphQuery
from ..graph.store import GraphStore
from ..keywords import extract_keywords, keywords_from_branch
from ..knowledge.embedder import EmbedderHandle
from ..knowledge.models import QueryFilter
from ..knowledge.semantic import SemanticIndex
from ..knowledge.store import KnowledgeStore
from ..planning.progress import compute_plan_progress
from ..planning.stack import ItemStatus, PlanningKind, PlanningStack, StackItem

logger = logging.getLogger(__name__)

HEADER = "═══ Session Context ═══"
FOOTER = "═══════════════════════"

SEMANTIC_THRESHOLD = 0.3
_LEARNING_WIDTH = 80
_STEP_WIDTH = 40
_FIND_KEYWORDS = 2
_FIND_LIMIT = 3
_SHOWN_PER_QUERY = 2


@dataclass
class SessionContextBlock:
    output: str = ""
    sections: dict[str, bool] = field(
        default_factory=lambda: {"planning": False, "graph": False, "learnings": False}
    )
    timings_ms: dict[str, int] = field(
        default_factory=lambda: {"planning": 0, "graph": 0, "learnings": 0, "total": 0}
    )


@dataclass
class _PlanningSection:
    lines: list[str]
    keywords: list[str]
    issue_number: Optional[int] = None


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[:width - 3] + "..."


def _format_age(updated_at: str) -> str:
    age = datetime.now(timezone.utc) - parse_timestamp(updated_at)
    minutes = max(int(age.total_seconds() // 60), 0)
    if minutes >= 60 * 24:
        return f"{minutes // (60 * 24)}d"
    if minutes >= 60:
        return f"{minutes // 60}h"
    return f"{minutes}m"


def run_with_timeout(fn: Callable, timeout_ms: int, label: str):
    """
    Run *fn* on a daemon thread and wait at most *timeout_ms* for it.

    Raises
    ------
    SectionTimeoutError
        If *fn* has not finished in time.  Exceptions raised by *fn*
        propagate unchanged.
    """
    future: concurrent.futures.Future = concurrent.futures.Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=_target, daemon=True, name=f"session-{label}").start()
    try:
        return future.result(timeout=timeout_ms / 1000)
    except concurrent.futures.TimeoutError:
        raise SectionTimeoutError(label, timeout_ms) from None


class SessionContextBuilder:
    """
    Builds the session start context block.

    Parameters
    ----------
    db:
        Shared database.
    config:
        Supplies section timeouts, ``MAX_LEARNINGS`` and ``CHANGE_DETECTION``.
    embedder:
        Optional embedding backend for semantic learning search.
    branch_lookup:
        Returns the current branch name; defaults to asking git.
    project_root:
        Root to index; defaults to the working directory.
    """

    def __init__(
        self,
        db: Database,
        config: Optional[Config] = None,
        embedder: Optional[EmbedderHandle] = None,
        branch_lookup: Optional[Callable[[], Optional[str]]] = None,
        project_root: Optional[str] = None,
    ) -> None:
        self._db = db
        self._config = config or Config()
        self._embedder = embedder
        self._project_root = project_root or os.getcwd()
        self._branch_lookup = branch_lookup or (
            lambda: get_current_branch(self._project_root)
        )

    # ------------------------------------------------------------------
    # Keywords
    # ------------------------------------------------------------------

    def _context_keywords(self, top: Optional[StackItem]) -> list[str]:
        if top is not None:
            return extract_keywords(top.title, 5)
        try:
            return keywords_from_branch(self._branch_lookup(), 5)
        except Exception as exc:
            logger.debug("Branch lookup failed: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _planning_section(self) -> _PlanningSection:
        stack = PlanningStack(self._db)
        view = stack.peek_stack()
        top = view.top_item
        section = _PlanningSection(
            lines=[],
            keywords=self._context_keywords(top),
            issue_number=top.issue_number if top is not None and top.kind == PlanningKind.GOAL else None,
        )
        if view.depth == 0:
            return section

        section.lines.append(f"▸ Stack (depth: {view.depth})")
        for idx, item in enumerate(view.items, start=1):
            issue_ref = f" #{item.issue_number}" if item.kind == PlanningKind.GOAL and item.issue_number else ""
            detail = item.status
            next_line = None
            if item.kind == PlanningKind.GOAL and item.status == ItemStatus.ACTIVE:
                plan = stack.get_plan_by_goal(item.id)
                if plan is not None:
                    try:
                        progress = run_with_timeout(
                            lambda: compute_plan_progress(plan, stack.get_steps(plan.id)),
                            self._config.PLAN_PROGRESS_TIMEOUT_MS,
                            "plan-progress",
                        )
                        detail += f", {progress.percentage}%"
                        if progress.next_steps:
                            next_line = f"     Next: {_truncate(progress.next_steps[0].step.title, _STEP_WIDTH)}"
                    except Exception as exc:
                        logger.debug("Plan progress for %s unavailable: %s", item.id, exc)
            elif item.status == ItemStatus.PAUSED:
                detail += f", {_format_age(item.updated_at)}"
            section.lines.append(f"  {idx}. [{item.label}] {item.title}{issue_ref} ({detail})")
            if next_line:
                section.lines.append(next_line)
        return section

    def _graph_section(self, keywords: list[str]) -> list[str]:
        indexer = GraphIndexer(GraphStore(self._db), self._config.CHANGE_DETECTION)
        report = indexer.reindex(self._project_root)

        query = GraphQuery(self._db)
        summary = query.get_summary()
        if summary["total_entities"] == 0:
            return []

        note = (
            f"updated {report.changed_files} files" if report.changed_files
            else f"indexed {report.elapsed_ms}ms ago"
        )
        lines = [
            f"▸ Graph ({len(summary['packages'])} pkgs, "
            f"{summary['total_entities']} entities, {note})"
        ]
        find_keywords = keywords[:_FIND_KEYWORDS]
        for keyword in find_keywords:
            found = query.find_entities(keyword, limit=_FIND_LIMIT)
            if found:
                shown = ", ".join(f"{e.name} ({e.location()})" for e in found[:_SHOWN_PER_QUERY])
                lines.append(f'  graph_find("{keyword}") → {shown}')
        if find_keywords:
            callers = query.what_calls(find_keywords[0])
            if callers:
                shown = ", ".join(f"{e.name} ({e.location()})" for e in callers[:_SHOWN_PER_QUERY])
                lines.append(f'  graph_what_calls("{find_keywords[0]}") → {shown}')
        return lines

    def _learnings_section(self, keywords: list[str], issue_number: Optional[int]) -> list[str]:
        if not keywords and issue_number is None:
            return []
        limit = self._config.MAX_LEARNINGS
        contents: list[str] = []

        if keywords:
            try:
                similar = SemanticIndex(self._db, self._embedder).search_similar(
                    " ".join(keywords), limit=limit, threshold=SEMANTIC_THRESHOLD,
                )
                contents = [s.learning.content for s in similar]
            except Exception as exc:
                logger.debug("Semantic search unavailable, falling back: %s", exc)

        store = KnowledgeStore(self._db)
        if not contents and issue_number is not None:
            results = store.query(QueryFilter(issue_number=issue_number), limit=limit)
            contents = [r.learning.content for r in results]
        if not contents and keywords:
            results = store.query(QueryFilter(keywords=keywords), limit=limit)
            contents = [r.learning.content for r in results]

        if not contents:
            return []
        lines = [f"▸ Learnings ({len(contents)} relevant)"]
        lines.extend(f"  • {_truncate(c, _LEARNING_WIDTH)}" for c in contents)
        return lines

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(self, issue_number: Optional[int] = None) -> SessionContextBlock:
        """
        Build the context block.

        Parameters
        ----------
        issue_number:
            Issue to pull learnings for; defaults to the active goal's issue.

        Returns
        -------
        SessionContextBlock
            ``output`` is empty when no section produced content.
        """
        block = SessionContextBlock()
        total_start = time.monotonic()
        try:
            body = self._build_sections(block, issue_number)
        except Exception as exc:
            logger.debug("Session context build failed: %s", exc)
            body = []
        if body:
            block.output = "\n".join([HEADER, ""] + body + ["", FOOTER])
        block.timings_ms["total"] = int((time.monotonic() - total_start) * 1000)
        return block

    def _build_sections(self, block: SessionContextBlock,
                        issue_number: Optional[int]) -> list[str]:
        timeout_ms = self._config.SECTION_TIMEOUT_MS
        parts: list[list[str]] = []

        def _timed(name: str, fn: Callable):
            start = time.monotonic()
            try:
                return run_with_timeout(fn, timeout_ms, name)
            except Exception as exc:
                logger.debug("%s section failed: %s", name.capitalize(), exc)
                return None
            finally:
                block.timings_ms[name] = int((time.monotonic() - start) * 1000)

        planning = _timed("planning", self._planning_section)
        if planning is None:
            # branch keywords spend what is left of the planning budget
            keywords = []
            remaining_ms = timeout_ms - block.timings_ms["planning"]
            if remaining_ms > 0:
                try:
                    keywords = run_with_timeout(
                        lambda: self._context_keywords(None), remaining_ms, "keywords"
                    )
                except SectionTimeoutError as exc:
                    logger.debug("Branch keyword lookup dropped: %s", exc)
        else:
            keywords = planning.keywords
            if issue_number is None:
                issue_number = planning.issue_number
            if planning.lines:
                parts.append(planning.lines)
                block.sections["planning"] = True

        graph = _timed("graph", lambda: self._graph_section(keywords))
        if graph:
            parts.append(graph)
            block.sections["graph"] = True

        learnings = _timed("learnings", lambda: self._learnings_section(keywords, issue_number))
        if learnings:
            parts.append(learnings)
            block.sections["learnings"] = True

        body: list[str] = []
        for part in parts:
            if body:
                body.append("")
            body.extend(part)
        return body
