"""
Persisted planning stack.

Goals and interrupts are stacked: ``stack_order`` 0 is the current focus and
the only ``active`` item; everything below it is ``paused``.  Pushing shifts
the stack down, popping completes the top and promotes the next item.

Plans hang off a goal (one plan per goal) and own ordered steps grouped into
waves.  Step dependencies are ``DEPENDS_ON`` edges between steps.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from ..db import Database, parse_timestamp, utc_now
from ..errors import InvalidEnumError, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class PlanningKind:
    GOAL = "goal"
    INTERRUPT = "interrupt"
    PLAN = "plan"
    STEP = "step"

    STACKED = (GOAL, INTERRUPT)


class ItemStatus:
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"

    ON_STACK = (ACTIVE, PAUSED)


class StepStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    ALL = (PENDING, IN_PROGRESS, COMPLETED, BLOCKED)


class PlanningRel:
    PLAN_FOR = "PLAN_FOR"
    STEP_OF = "STEP_OF"
    DEPENDS_ON = "DEPENDS_ON"
    INTERRUPTED_BY = "INTERRUPTED_BY"


_LABELS = {PlanningKind.GOAL: "Goal", PlanningKind.INTERRUPT: "Interrupt"}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _load_data(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Malformed planning data: {exc}") from exc
    return value if isinstance(value, dict) else {}


@dataclass
class StackItem:
    """A goal or interrupt on (or popped from) the stack."""
    id: str
    kind: str
    title: str
    status: str
    stack_order: Optional[int]
    data: dict[str, Any]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row) -> "StackItem":
        return cls(
            id=row["id"],
            kind=row["kind"],
            title=row["title"],
            status=row["status"],
            stack_order=row["stack_order"],
            data=_load_data(row["data"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def label(self) -> str:
        return _LABELS.get(self.kind, self.kind.title())

    @property
    def issue_number(self) -> Optional[int]:
        return self.data.get("issue_number")

    @property
    def reason(self) -> Optional[str]:
        return self.data.get("reason")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Plan:
    id: str
    goal_id: str
    title: str
    source_of_truth: str
    status: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PlanStep:
    id: str
    plan_id: str
    title: str
    wave: int
    ordinal: int
    status: str = StepStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StackView:
    depth: int
    items: list[StackItem]
    top_item: Optional[StackItem]

    def to_dict(self) -> dict:
        return {
            "depth": self.depth,
            "items": [i.to_dict() for i in self.items],
            "top_item": self.top_item.to_dict() if self.top_item else None,
        }


@dataclass
class StaleItem:
    item: StackItem
    stale_since: str
    reason: str

    def to_dict(self) -> dict:
        return {"item": self.item.to_dict(), "stale_since": self.stale_since, "reason": self.reason}


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# PlanningStack
# ---------------------------------------------------------------------------

class PlanningStack:
    """
    Stack of goals and interrupts plus the plans and steps attached to goals.

    Parameters
    ----------
    db:
        Shared :class:`~agent_recall.db.Database`.
    knowledge:
        Optional :class:`~agent_recall.knowledge.store.KnowledgeStore`; when
        given, every popped item is summarised into a Learning.
    repo_path:
        Working tree whose commits are counted in completion summaries.
    """

    def __init__(self, db: Database, knowledge=None,
                 repo_path: Optional[str] = None) -> None:
        self._db = db
        self._knowledge = knowledge
        self._repo_path = repo_path

    # ------------------------------------------------------------------
    # Stack operations
    # ------------------------------------------------------------------

    def _top(self, conn) -> Optional[StackItem]:
        row = conn.execute(
            "SELECT * FROM planning_entities WHERE stack_order = 0 AND status = ? LIMIT 1",
            (ItemStatus.ACTIVE,),
        ).fetchone()
        return StackItem.from_row(row) if row else None

    def _push(self, kind: str, title: str, data: dict[str, Any]) -> StackItem:
        if not title or not title.strip():
            raise ValidationError(f"{_LABELS[kind]} title must not be empty")
        now = utc_now()
        item_id = _new_id(kind)
        marks = ",".join("?" * len(ItemStatus.ON_STACK))
        with self._db.transaction() as conn:
            previous = self._top(conn)
            if kind == PlanningKind.INTERRUPT and previous is not None:
                data.setdefault("interrupted_id", previous.id)
            conn.execute(
                f"""
                UPDATE planning_entities
                SET stack_order = stack_order + 1
                WHERE stack_order IS NOT NULL AND status IN ({marks})
                """,
                ItemStatus.ON_STACK,
            )
            conn.execute(
                "UPDATE planning_entities SET status = ?, updated_at = ? "
                "WHERE stack_order = 1 AND status = ?",
                (ItemStatus.PAUSED, now, ItemStatus.ACTIVE),
            )
            conn.execute(
                """
                INSERT INTO planning_entities
                    (id, kind, title, status, stack_order, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (item_id, kind, title, ItemStatus.ACTIVE,
                 json.dumps(data, default=str), now, now),
            )
            if kind == PlanningKind.INTERRUPT and data.get("interrupted_id"):
                conn.execute(
                    "INSERT OR IGNORE INTO planning_relationships (from_id, to_id, type) "
                    "SELECT id, ?, ? FROM planning_entities WHERE id = ?",
                    (item_id, PlanningRel.INTERRUPTED_BY, data["interrupted_id"]),
                )
        logger.debug("Pushed %s %s (%s)", kind, item_id, title)
        return StackItem(
            id=item_id, kind=kind, title=title, status=ItemStatus.ACTIVE,
            stack_order=0, data=data, created_at=now, updated_at=now,
        )

    def push_goal(self, title: str, issue_number: Optional[int] = None,
                  description: Optional[str] = None,
                  code_area: Optional[str] = None) -> StackItem:
        """Push a new goal; it becomes the active top of the stack."""
        data: dict[str, Any] = {}
        if issue_number is not None:
            data["issue_number"] = int(issue_number)
        if description:
            data["description"] = description
        if code_area:
            data["code_area"] = code_area
        return self._push(PlanningKind.GOAL, title, data)

    def push_interrupt(self, title: str, reason: str,
                       interrupted_id: Optional[str] = None) -> StackItem:
        """
        Push an interrupt above the current focus.

        The interrupted item defaults to the current top and is linked with
        an ``INTERRUPTED_BY`` edge.
        """
        data: dict[str, Any] = {"reason": reason}
        if interrupted_id:
            data["interrupted_id"] = interrupted_id
        return self._push(PlanningKind.INTERRUPT, title, data)

    def pop(self) -> Optional[StackItem]:
        """
        Complete the top item and promote the next one.  None if empty.

        With a knowledge store attached, the completed item is summarised
        into a Learning; the summary and learning id land in ``item.data``
        under ``summary`` and ``completed_as``.
        """
        now = utc_now()
        marks = ",".join("?" * len(ItemStatus.ON_STACK))
        with self._db.transaction() as conn:
            top = self._top(conn)
            if top is None:
                return None
            conn.execute(
                "UPDATE planning_entities SET status = ?, stack_order = NULL, updated_at = ? "
                "WHERE id = ?",
                (ItemStatus.COMPLETED, now, top.id),
            )
            conn.execute(
                "UPDATE planning_entities SET status = ?, updated_at = ? "
                "WHERE stack_order = 1 AND status = ?",
                (ItemStatus.ACTIVE, now, ItemStatus.PAUSED),
            )
            conn.execute(
                f"""
                UPDATE planning_entities
                SET stack_order = stack_order - 1
                WHERE stack_order > 0 AND status IN ({marks})
                """,
                ItemStatus.ON_STACK,
            )
        top.status = ItemStatus.COMPLETED
        top.stack_order = None
        top.updated_at = now
        logger.debug("Popped %s %s", top.kind, top.id)
        if self._knowledge is not None:
            self._summarize(top)
        return top

    def _summarize(self, item: StackItem) -> None:
        from .summarize import summarize_completion  # summarize imports this module

        steps: list[PlanStep] = []
        if item.kind == PlanningKind.GOAL:
            plan = self.get_plan_by_goal(item.id)
            if plan is not None:
                steps = self.get_steps(plan.id)
        result = summarize_completion(item, self._knowledge, steps, self._repo_path)
        item.data["summary"] = result.summary
        if result.learning_id:
            item.data["completed_as"] = result.learning_id
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE planning_entities SET data = ? WHERE id = ?",
                (json.dumps(item.data, default=str), item.id),
            )

    def peek(self) -> Optional[StackItem]:
        """Return the active top item without modifying the stack."""
        with self._db.connect() as conn:
            return self._top(conn)

    def peek_stack(self) -> StackView:
        """Return every stacked item, top first."""
        marks = ",".join("?" * len(ItemStatus.ON_STACK))
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM planning_entities "
                f"WHERE stack_order IS NOT NULL AND status IN ({marks}) "
                f"ORDER BY stack_order",
                ItemStatus.ON_STACK,
            ).fetchall()
        items = [StackItem.from_row(r) for r in rows]
        top = items[0] if items and items[0].status == ItemStatus.ACTIVE else None
        return StackView(depth=len(items), items=items, top_item=top)

    def detect_stale_items(
        self,
        threshold_days: float = 7,
        issue_closed: Optional[Callable[[int], Optional[bool]]] = None,
    ) -> list[StaleItem]:
        """
        Return stacked items that probably no longer need attention.

        A goal whose issue *issue_closed* reports as closed is stale; so is a
        paused item untouched for more than *threshold_days*.  The stack is
        not modified.
        """
        cutoff = (
            datetime.now(timezone.utc) - timedelta(days=threshold_days)
        ).isoformat(timespec="milliseconds")
        stale: list[StaleItem] = []
        for item in self.peek_stack().items:
            if (
                issue_closed is not None
                and item.kind == PlanningKind.GOAL
                and item.issue_number is not None
                and issue_closed(item.issue_number)
            ):
                stale.append(StaleItem(
                    item=item, stale_since=utc_now(),
                    reason=f"Issue #{item.issue_number} is closed. Pop it to summarize.",
                ))
                continue
            if item.status == ItemStatus.PAUSED and item.updated_at < cutoff:
                age = datetime.now(timezone.utc) - parse_timestamp(item.updated_at)
                stale.append(StaleItem(
                    item=item, stale_since=item.updated_at,
                    reason=f"No activity for {age.days} days while paused.",
                ))
        return stale

    def get_item(self, item_id: str) -> Optional[StackItem]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM planning_entities WHERE id = ? AND kind IN (?, ?)",
                (item_id, *PlanningKind.STACKED),
            ).fetchone()
        return StackItem.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Plans and steps
    # ------------------------------------------------------------------

    @staticmethod
    def _plan_from_row(row) -> Plan:
        data = _load_data(row["data"])
        return Plan(
            id=row["id"],
            goal_id=data.get("goal_id", ""),
            title=row["title"],
            source_of_truth=data.get("source_of_truth", "manual"),
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _plan_for_goal(self, conn, goal_id: str) -> Optional[Plan]:
        row = conn.execute(
            """
            SELECT p.* FROM planning_relationships r
            JOIN planning_entities p ON p.id = r.from_id
            WHERE r.to_id = ? AND r.type = ? AND p.kind = ?
            LIMIT 1
            """,
            (goal_id, PlanningRel.PLAN_FOR, PlanningKind.PLAN),
        ).fetchone()
        return self._plan_from_row(row) if row else None

    def push_plan(self, goal_id: str, title: str,
                  source_of_truth: str = "manual") -> Plan:
        """
        Attach a plan to *goal_id*.

        A goal has at most one plan; pushing again returns the existing one.

        Raises
        ------
        ValidationError
            If *goal_id* is not a known goal.
        """
        now = utc_now()
        with self._db.transaction() as conn:
            goal = conn.execute(
                "SELECT id FROM planning_entities WHERE id = ? AND kind = ?",
                (goal_id, PlanningKind.GOAL),
            ).fetchone()
            if goal is None:
                raise ValidationError(f"Unknown goal: {goal_id}")
            existing = self._plan_for_goal(conn, goal_id)
            if existing is not None:
                return existing
            plan = Plan(
                id=_new_id(PlanningKind.PLAN), goal_id=goal_id, title=title,
                source_of_truth=source_of_truth, status=ItemStatus.ACTIVE,
                created_at=now, updated_at=now,
            )
            conn.execute(
                """
                INSERT INTO planning_entities
                    (id, kind, title, status, stack_order, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, ?, ?, ?)
                """,
                (plan.id, PlanningKind.PLAN, title, plan.status,
                 json.dumps({"goal_id": goal_id, "source_of_truth": source_of_truth}),
                 now, now),
            )
            conn.execute(
                "INSERT INTO planning_relationships (from_id, to_id, type) VALUES (?, ?, ?)",
                (plan.id, goal_id, PlanningRel.PLAN_FOR),
            )
        return plan

    def get_plan_by_goal(self, goal_id: str) -> Optional[Plan]:
        with self._db.connect() as conn:
            return self._plan_for_goal(conn, goal_id)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM planning_entities WHERE id = ? AND kind = ?",
                (plan_id, PlanningKind.PLAN),
            ).fetchone()
        return self._plan_from_row(row) if row else None

    def push_step(
        self,
        plan_id: str,
        title: str,
        wave: int = 1,
        depends_on: Iterable[str] = (),
        ordinal: Optional[int] = None,
    ) -> PlanStep:
        """
        Add a step to *plan_id*.

        Parameters
        ----------
        wave:
            Parallelization group; lower waves are scheduled first.
        depends_on:
            Ids of steps in the same plan that must complete first.
        ordinal:
            Position within the plan; defaults to after the last step.

        Raises
        ------
        ValidationError
            For an unknown plan or a dependency outside the plan.
        """
        deps = list(dict.fromkeys(depends_on))
        now = utc_now()
        with self._db.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM planning_entities WHERE id = ? AND kind = ?",
                (plan_id, PlanningKind.PLAN),
            ).fetchone() is None:
                raise ValidationError(f"Unknown plan: {plan_id}")
            siblings = {
                r["from_id"] for r in conn.execute(
                    "SELECT from_id FROM planning_relationships WHERE to_id = ? AND type = ?",
                    (plan_id, PlanningRel.STEP_OF),
                ).fetchall()
            }
            missing = [d for d in deps if d not in siblings]
            if missing:
                raise ValidationError(
                    f"Step dependencies not in plan {plan_id}: {', '.join(missing)}"
                )
            if ordinal is None:
                ordinal = len(siblings) + 1
            step = PlanStep(
                id=_new_id(PlanningKind.STEP), plan_id=plan_id, title=title,
                wave=int(wave), ordinal=int(ordinal), depends_on=deps,
                created_at=now, updated_at=now,
            )
            conn.execute(
                """
                INSERT INTO planning_entities
                    (id, kind, title, status, stack_order, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, ?, ?, ?)
                """,
                (step.id, PlanningKind.STEP, title, step.status,
                 json.dumps({"plan_id": plan_id, "wave": step.wave, "ordinal": step.ordinal}),
                 now, now),
            )
            conn.execute(
                "INSERT INTO planning_relationships (from_id, to_id, type) VALUES (?, ?, ?)",
                (step.id, plan_id, PlanningRel.STEP_OF),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO planning_relationships (from_id, to_id, type) "
                "VALUES (?, ?, ?)",
                [(step.id, dep, PlanningRel.DEPENDS_ON) for dep in deps],
            )
        return step

    def get_steps(self, plan_id: str) -> list[PlanStep]:
        """Return the steps of *plan_id* ordered by wave, then ordinal."""
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT s.* FROM planning_relationships r
                JOIN planning_entities s ON s.id = r.from_id
                WHERE r.to_id = ? AND r.type = ? AND s.kind = ?
                """,
                (plan_id, PlanningRel.STEP_OF, PlanningKind.STEP),
            ).fetchall()
            ids = [r["id"] for r in rows]
            deps: dict[str, list[str]] = {i: [] for i in ids}
            if ids:
                for dep in conn.execute(
                    f"SELECT from_id, to_id FROM planning_relationships "
                    f"WHERE type = ? AND from_id IN ({','.join('?' * len(ids))}) "
                    f"ORDER BY rowid",
                    (PlanningRel.DEPENDS_ON, *ids),
                ).fetchall():
                    deps[dep["from_id"]].append(dep["to_id"])

        steps = []
        for row in rows:
            data = _load_data(row["data"])
            steps.append(PlanStep(
                id=row["id"],
                plan_id=plan_id,
                title=row["title"],
                wave=int(data.get("wave", 1)),
                ordinal=int(data.get("ordinal", 0)),
                status=row["status"],
                depends_on=deps[row["id"]],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            ))
        steps.sort(key=lambda s: (s.wave, s.ordinal, s.created_at))
        return steps

    def set_step_status(self, step_id: str, status: str) -> bool:
        """Set a step's status.  Returns False for an unknown step."""
        if status not in StepStatus.ALL:
            raise InvalidEnumError("step status", status, StepStatus.ALL)
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE planning_entities SET status = ?, updated_at = ? "
                "WHERE id = ? AND kind = ?",
                (status, utc_now(), step_id, PlanningKind.STEP),
            )
        return cur.rowcount > 0
