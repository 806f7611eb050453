"""
Session lifecycle hooks.

``session_start`` tidies stale workflows and builds the context block shown
to a new agent session.  ``session_end`` turns the session's commits and
touched files into low-confidence learnings.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from ..checkpoint import ActionResult, Workflow, WorkflowStore
from ..config import Config
from ..db import Database
from ..git_utils import GitCommit
from ..knowledge.embedder import EmbedderHandle
from ..knowledge.models import Learning
from ..knowledge.store import KnowledgeStore
from .context_builder import SessionContextBlock, SessionContextBuilder
from .state import SessionContext

logger = logging.getLogger(__name__)

AUTO_EXTRACT_CONFIDENCE = 0.6
# file-based learnings are weaker evidence than commit messages
FILE_EXTRACT_CONFIDENCE = AUTO_EXTRACT_CONFIDENCE * 0.8

_CONVENTIONAL_RE = re.compile(
    r"^(feat|fix|refactor|test|docs|chore|build|ci|perf|style)(?:\(([^)]+)\))?:\s*(\S.*)$",
    re.IGNORECASE,
)

_COMMIT_PREFIXES = {
    "feat": "Added feature",
    "fix": "Fixed issue",
    "refactor": "Refactored",
    "test": "Added tests for",
    "docs": "Documented",
    "chore": "Maintenance",
    "build": "Build configuration",
    "ci": "CI/CD update",
    "perf": "Performance improvement",
    "style": "Code style update",
}

# First match wins.
_CODE_AREA_MAPPINGS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\.test\.[jt]sx?$"), "Testing"),
    (re.compile(r"\.spec\.[jt]sx?$"), "Testing"),
    (re.compile(r"__tests__/"), "Testing"),
    (re.compile(r"(^|/)test_[^/]*\.py$"), "Testing"),
    (re.compile(r"(^|/)tests/"), "Testing"),
    (re.compile(r"src/api/"), "API"),
    (re.compile(r"src/db/"), "Database"),
    (re.compile(r"src/services/"), "Services"),
    (re.compile(r"src/components/"), "Components"),
    (re.compile(r"src/views/"), "Views"),
    (re.compile(r"src/stores/"), "State"),
    (re.compile(r"src/utils/"), "Utilities"),
    (re.compile(r"src/types/"), "Types"),
    (re.compile(r"src/hooks/"), "Hooks"),
    (re.compile(r"\.config\.[jt]s$"), "Configuration"),
    (re.compile(r"tsconfig\.json$"), "Configuration"),
    (re.compile(r"package\.json$"), "Configuration"),
    (re.compile(r"(pyproject\.toml|setup\.py|setup\.cfg)$"), "Configuration"),
    (re.compile(r"\.md$"), "Documentation"),
    (re.compile(r"docs/"), "Documentation"),
    (re.compile(r"scripts/"), "Scripts"),
    (re.compile(r"\.github/workflows/"), "CI/CD"),
]


@dataclass
class ConventionalCommit:
    type: str
    scope: Optional[str]
    description: str


def parse_conventional_commit(message: str) -> Optional[ConventionalCommit]:
    """Parse the first line of *message* as ``type(scope): description``."""
    lines = (message or "").strip().splitlines()
    match = _CONVENTIONAL_RE.match(lines[0].strip()) if lines else None
    if not match:
        return None
    return ConventionalCommit(
        type=match.group(1).lower(),
        scope=match.group(2),
        description=match.group(3).strip(),
    )


def format_commit_content(commit_type: str, description: str) -> str:
    return f"{_COMMIT_PREFIXES.get(commit_type, 'Completed')}: {description}"


def infer_code_area(file_path: str) -> Optional[str]:
    """Map a file path to a code area name, or None if nothing matches."""
    if not file_path:
        return None
    normalized = file_path.replace("\\", "/")
    for pattern, area in _CODE_AREA_MAPPINGS:
        if pattern.search(normalized):
            return area
    return None


def infer_code_areas(file_paths: Iterable[str]) -> list[str]:
    """Distinct code areas of *file_paths*, most frequent first."""
    counts = Counter(a for a in (infer_code_area(p) for p in file_paths) if a)
    return [area for area, _ in counts.most_common()]


# ---------------------------------------------------------------------------
# session_start
# ---------------------------------------------------------------------------

@dataclass
class SessionStartResult:
    context: SessionContextBlock
    stale_workflows: list[str] = field(default_factory=list)
    active_workflows: list[Workflow] = field(default_factory=list)


def session_start(
    db: Database,
    config: Optional[Config] = None,
    embedder: Optional[EmbedderHandle] = None,
    issue_number: Optional[int] = None,
    project_root: Optional[str] = None,
    branch_lookup: Optional[Callable[[], Optional[str]]] = None,
    session: Optional[SessionContext] = None,
) -> SessionStartResult:
    """
    Prepare a new agent session.

    Stale running workflows are marked failed, the remaining active ones are
    listed, session tool-usage state is reset and the context block is built.
    Housekeeping failures are logged; they never prevent the context block.
    """
    cfg = config or Config()
    workflows = WorkflowStore(db)
    result = SessionStartResult(context=SessionContextBlock())

    try:
        result.stale_workflows = workflows.cleanup_stale_workflows(cfg.STALE_HOURS)
        result.active_workflows = workflows.list_active()
    except Exception as exc:
        logger.warning("Workflow housekeeping failed: %s", exc)

    if session is not None:
        try:
            session.init()
        except OSError as exc:
            logger.warning("Could not initialise session state %s: %s", session.path, exc)

    builder = SessionContextBuilder(
        db, cfg, embedder=embedder, branch_lookup=branch_lookup, project_root=project_root,
    )
    result.context = builder.build(issue_number=issue_number)
    return result


# ---------------------------------------------------------------------------
# session_end
# ---------------------------------------------------------------------------

@dataclass
class SessionEndResult:
    learnings_stored: int = 0
    learning_ids: list[str] = field(default_factory=list)
    interruption_logged: bool = False


def extract_learnings(
    commits: Iterable[GitCommit],
    modified_files: Iterable[str] = (),
) -> list[Learning]:
    """
    Derive learnings from conventional commits and touched files.

    Each conventional commit yields one learning whose code area is the
    commit scope.  Modified files are grouped by inferred code area and each
    area not already covered by a commit yields one learning.
    """
    learnings: list[Learning] = []
    for commit in commits:
        parsed = parse_conventional_commit(commit.message)
        if parsed is None:
            continue
        learnings.append(Learning(
            content=format_commit_content(parsed.type, parsed.description),
            code_area=parsed.scope,
            confidence=AUTO_EXTRACT_CONFIDENCE,
            metadata={
                "source": "auto-extracted",
                "commit_sha": commit.sha,
                "commit_type": parsed.type,
            },
        ))

    by_area: dict[str, list[str]] = {}
    for path in modified_files:
        area = infer_code_area(path)
        if area:
            by_area.setdefault(area, []).append(path)
    covered = {l.code_area for l in learnings}
    for area, files in by_area.items():
        if area in covered:
            continue
        learnings.append(Learning(
            content=f"Worked on {area}: modified {len(files)} file(s)",
            code_area=area,
            confidence=FILE_EXTRACT_CONFIDENCE,
            metadata={
                "source": "auto-extracted",
                "file_count": len(files),
                "files": files[:5],
            },
        ))
    return learnings


def session_end(
    db: Database,
    workflow_id: Optional[str] = None,
    commits: Iterable[GitCommit] = (),
    modified_files: Iterable[str] = (),
    interrupted: bool = False,
    session_id: Optional[str] = None,
    embedder: Optional[EmbedderHandle] = None,
) -> SessionEndResult:
    """
    Record the end of an agent session.

    Parameters
    ----------
    workflow_id:
        Workflow the session was working on, if any.
    commits:
        Commits made during the session.
    modified_files:
        Paths touched during the session.
    interrupted:
        True if the session ended before its workflow completed; logs a
        pending ``session_interrupted`` action (best-effort).

    Returns
    -------
    SessionEndResult
        Nothing is stored if extraction yields no learnings or the store
        fails; a store failure is logged, not raised.
    """
    result = SessionEndResult()
    if interrupted and workflow_id:
        result.interruption_logged = WorkflowStore(db).log_action_safe(
            workflow_id,
            "session_interrupted",
            ActionResult.PENDING,
            {"reason": "Session ended before workflow completion", "session_id": session_id},
        )

    learnings = extract_learnings(commits, modified_files)
    if not learnings:
        return result
    try:
        result.learning_ids = KnowledgeStore(db, embedder).store(learnings)
    except Exception as exc:
        logger.error("Failed to store %d session learning(s): %s", len(learnings), exc)
        return result
    result.learnings_stored = len(result.learning_ids)
    logger.info("Stored %d session learning(s)", result.learnings_stored)
    return result
