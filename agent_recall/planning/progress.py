"""
Plan progress: status counts, completion percentage and the next actionable
steps of a plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .stack import Plan, PlanStep, StepStatus

logger = logging.getLogger(__name__)

MAX_NEXT_STEPS = 3


@dataclass
class NextStep:
    step: PlanStep
    status: str
    wave: int

    def to_dict(self) -> dict:
        return {"step": self.step.to_dict(), "status": self.status, "wave": self.wave}


@dataclass
class PlanProgress:
    total: int = 0
    done: int = 0
    in_progress: int = 0
    not_started: int = 0
    blocked: int = 0
    percentage: int = 0
    current_wave: Optional[int] = None
    next_steps: list[NextStep] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "done": self.done,
            "in_progress": self.in_progress,
            "not_started": self.not_started,
            "blocked": self.blocked,
            "percentage": self.percentage,
            "current_wave": self.current_wave,
            "next_steps": [n.to_dict() for n in self.next_steps],
        }


def compute_plan_progress(plan: Plan, steps: list[PlanStep]) -> PlanProgress:
    """
    Summarize how far *plan* has come.

    A step that is not completed and has any dependency that is not completed
    counts as blocked.  Next steps are the unblocked, unfinished steps in the
    lowest wave that has any, at most ``MAX_NEXT_STEPS`` of them.
    Dependencies on steps outside *steps* are treated as unmet.

    Parameters
    ----------
    plan:
        The plan being summarized.
    steps:
        Every step of *plan*.

    Returns
    -------
    PlanProgress
        ``percentage`` is ``round(done / total * 100)``, 0 for an empty plan.
    """
    if not steps:
        logger.debug("Plan %s has no steps", plan.id)
        return PlanProgress()

    status_by_id = {s.id: s.status for s in steps}
    progress = PlanProgress(total=len(steps))
    eligible: list[PlanStep] = []

    for step in steps:
        if step.status == StepStatus.COMPLETED:
            progress.done += 1
            continue
        unmet = [d for d in step.depends_on if status_by_id.get(d) != StepStatus.COMPLETED]
        if step.status == StepStatus.IN_PROGRESS:
            progress.in_progress += 1
        elif unmet or step.status == StepStatus.BLOCKED:
            progress.blocked += 1
        else:
            progress.not_started += 1
        if not unmet and step.status != StepStatus.BLOCKED:
            eligible.append(step)

    remaining = [s.wave for s in steps if s.status != StepStatus.COMPLETED]
    progress.current_wave = min(remaining) if remaining else None
    progress.percentage = round(progress.done / progress.total * 100)

    if eligible:
        wave = min(s.wave for s in eligible)
        progress.next_steps = [
            NextStep(step=s, status=s.status, wave=s.wave)
            for s in eligible if s.wave == wave
        ][:MAX_NEXT_STEPS]
    return progress
