"""
Workflow checkpoint store — persists the state machine of an in-flight task
so an interrupted agent can pick up where it left off.

A checkpoint is a workflow row plus its append-only audit trail of actions
and commits.  The store validates phase/status values but imposes no phase
ordering; callers sequence phases themselves.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .db import Database, utc_now
from .errors import InvalidEnumError, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Phase:
    RESEARCH = "research"
    IMPLEMENT = "implement"
    REVIEW = "review"
    FINALIZE = "finalize"
    PLANNING = "planning"
    EXECUTE = "execute"
    MERGE = "merge"
    CLEANUP = "cleanup"

    ALL = (RESEARCH, IMPLEMENT, REVIEW, FINALIZE, PLANNING, EXECUTE, MERGE, CLEANUP)


class WorkflowStatus:
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (RUNNING, PAUSED, COMPLETED, FAILED)


class ActionResult:
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"

    ALL = (SUCCESS, FAILED, PENDING)


def _check(field_name: str, value: str, allowed: tuple[str, ...]) -> str:
    if value not in allowed:
        raise InvalidEnumError(field_name, value, allowed)
    return value


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Workflow:
    id: str
    issue_number: int
    branch: str
    worktree: Optional[str]
    phase: str
    status: str
    retry_count: int
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row) -> "Workflow":
        return cls(
            id=row["id"],
            issue_number=row["issue_number"],
            branch=row["branch"],
            worktree=row["worktree"],
            phase=row["phase"],
            status=row["status"],
            retry_count=row["retry_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Action:
    workflow_id: str
    action: str
    result: str
    metadata: dict[str, Any]
    created_at: str


@dataclass
class Commit:
    workflow_id: str
    sha: str
    message: str
    created_at: str


@dataclass
class Checkpoint:
    """A workflow with its full audit trail, in insertion order."""
    workflow: Workflow
    actions: list[Action] = field(default_factory=list)
    commits: list[Commit] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "workflow": asdict(self.workflow),
            "actions": [asdict(a) for a in self.actions],
            "commits": [asdict(c) for c in self.commits],
        }


def _decode_metadata(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Malformed action metadata: {exc}") from exc
    return value if isinstance(value, dict) else {"value": value}


def _new_workflow_id(issue_number: int) -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"workflow-{issue_number}-{int(time.time() * 1000)}-{suffix}"


# ---------------------------------------------------------------------------
# WorkflowStore
# ---------------------------------------------------------------------------

class WorkflowStore:
    """
    Checkpoint persistence for workflows, actions and commits.

    Parameters
    ----------
    db:
        Shared :class:`~agent_recall.db.Database`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Workflow lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        issue_number: int,
        branch: str,
        worktree: Optional[str] = None,
    ) -> Workflow:
        """
        Create a new workflow in the first phase with status ``running``.

        Parameters
        ----------
        issue_number:
            Issue the workflow is working on.
        branch:
            VCS branch the work happens on.
        worktree:
            Optional worktree path.
        """
        now = utc_now()
        workflow = Workflow(
            id=_new_workflow_id(issue_number),
            issue_number=int(issue_number),
            branch=branch,
            worktree=worktree,
            phase=Phase.RESEARCH,
            status=WorkflowStatus.RUNNING,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO workflows
                    (id, issue_number, branch, worktree, phase, status,
                     retry_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (workflow.id, workflow.issue_number, workflow.branch,
                 workflow.worktree, workflow.phase, workflow.status,
                 workflow.retry_count, workflow.created_at, workflow.updated_at),
            )
        logger.debug("Created workflow %s for issue #%d", workflow.id, issue_number)
        return workflow

    def set_phase(self, workflow_id: str, phase: str) -> bool:
        """Move *workflow_id* to *phase*.  Returns False for an unknown id."""
        _check("phase", phase, Phase.ALL)
        return self._update(workflow_id, "phase", phase)

    def set_status(self, workflow_id: str, status: str) -> bool:
        """Set the status of *workflow_id*.  Returns False for an unknown id."""
        _check("status", status, WorkflowStatus.ALL)
        return self._update(workflow_id, "status", status)

    def _update(self, workflow_id: str, column: str, value: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute(
                f"UPDATE workflows SET {column} = ?, updated_at = ? WHERE id = ?",
                (value, utc_now(), workflow_id),
            )
        return cur.rowcount > 0

    def increment_retry(self, workflow_id: str) -> int:
        """Atomically bump the retry counter and return the new value (0 if unknown)."""
        with self._db.transaction() as conn:
            row = conn.execute(
                """
                UPDATE workflows
                SET retry_count = retry_count + 1, updated_at = ?
                WHERE id = ?
                RETURNING retry_count
                """,
                (utc_now(), workflow_id),
            ).fetchone()
        return row["retry_count"] if row else 0

    def delete(self, workflow_id: str) -> bool:
        """Delete a workflow; its actions and commits go with it."""
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def log_action(
        self,
        workflow_id: str,
        action: str,
        result: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append an action row.  Raises on invalid result or storage failure."""
        _check("result", result, ActionResult.ALL)
        payload = json.dumps(metadata, default=str) if metadata else None
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO workflow_actions (workflow_id, action, result, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (workflow_id, action, result, payload, utc_now()),
            )

    def log_action_safe(
        self,
        workflow_id: str,
        action: str,
        result: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Best-effort :meth:`log_action`: failures are logged, never raised.

        Returns True if the action was written.
        """
        try:
            self.log_action(workflow_id, action, result, metadata)
            return True
        except Exception as exc:
            logger.warning(
                "Failed to log action %s for %s: %s", action, workflow_id, exc
            )
            return False

    def log_commit(self, workflow_id: str, sha: str, message: str) -> None:
        """Append a commit row.  The same sha may be logged more than once."""
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO workflow_commits (workflow_id, sha, message, created_at) "
                "VALUES (?, ?, ?, ?)",
                (workflow_id, sha, message, utc_now()),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, workflow_id: str) -> Optional[Workflow]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
        return Workflow.from_row(row) if row else None

    def load(self, workflow_id: str) -> Optional[Checkpoint]:
        """
        Return the workflow with its actions and commits, or None.

        Parameters
        ----------
        workflow_id:
            Id returned by :meth:`create`.
        """
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE id = ?", (workflow_id,)
            ).fetchone()
            if row is None:
                return None
            action_rows = conn.execute(
                "SELECT * FROM workflow_actions WHERE workflow_id = ? ORDER BY id",
                (workflow_id,),
            ).fetchall()
            commit_rows = conn.execute(
                "SELECT * FROM workflow_commits WHERE workflow_id = ? ORDER BY id",
                (workflow_id,),
            ).fetchall()

        return Checkpoint(
            workflow=Workflow.from_row(row),
            actions=[
                Action(
                    workflow_id=r["workflow_id"],
                    action=r["action"],
                    result=r["result"],
                    metadata=_decode_metadata(r["metadata"]),
                    created_at=r["created_at"],
                )
                for r in action_rows
            ],
            commits=[
                Commit(
                    workflow_id=r["workflow_id"],
                    sha=r["sha"],
                    message=r["message"],
                    created_at=r["created_at"],
                )
                for r in commit_rows
            ],
        )

    def find_by_issue(self, issue_number: int) -> Optional[Workflow]:
        """Return the most recently updated workflow for *issue_number*, or None."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE issue_number = ? "
                "ORDER BY updated_at DESC, rowid DESC LIMIT 1",
                (int(issue_number),),
            ).fetchone()
        return Workflow.from_row(row) if row else None

    def list_active(self) -> list[Workflow]:
        """Return every workflow that is not completed, newest first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflows WHERE status != ? "
                "ORDER BY updated_at DESC, rowid DESC",
                (WorkflowStatus.COMPLETED,),
            ).fetchall()
        return [Workflow.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_stale_workflows(self, threshold_hours: float = 24) -> list[str]:
        """
        Mark running workflows untouched for *threshold_hours* as failed.

        Each affected workflow gets a ``workflow_stale_cleanup`` action.

        Returns
        -------
        list[str]
            Ids of the workflows that were marked failed.
        """
        cutoff = (
            datetime.now(timezone.utc) - timedelta(hours=threshold_hours)
        ).isoformat(timespec="milliseconds")
        now = utc_now()
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT id, updated_at FROM workflows WHERE status = ? AND updated_at < ?",
                (WorkflowStatus.RUNNING, cutoff),
            ).fetchall()
            for row in rows:
                conn.execute(
                    "UPDATE workflows SET status = ?, updated_at = ? WHERE id = ?",
                    (WorkflowStatus.FAILED, now, row["id"]),
                )
                conn.execute(
                    "INSERT INTO workflow_actions (workflow_id, action, result, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        row["id"], "workflow_stale_cleanup", ActionResult.SUCCESS,
                        json.dumps({
                            "reason": f"No update for {threshold_hours}h",
                            "last_updated": row["updated_at"],
                        }),
                        now,
                    ),
                )
        stale = [r["id"] for r in rows]
        if stale:
            logger.info("Marked %d stale workflow(s) as failed", len(stale))
        return stale

    def cleanup_completed(self, older_than_hours: float = 0) -> int:
        """Physically delete completed workflows older than *older_than_hours*."""
        cutoff = (
            datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
        ).isoformat(timespec="milliseconds")
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM workflows WHERE status = ? AND updated_at <= ?",
                (WorkflowStatus.COMPLETED, cutoff),
            )
        return cur.rowcount
