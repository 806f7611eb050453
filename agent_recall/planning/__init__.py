"""
Planning stack: goals, interrupts, plans and their steps.
"""

from .progress import NextStep, PlanProgress, compute_plan_progress
from .stack import (
    ItemStatus,
    Plan,
    PlanningKind,
    PlanningStack,
    PlanStep,
    StackItem,
    StackView,
    StaleItem,
    StepStatus,
)
from .summarize import CompletionSummary, generate_summary, summarize_completion

__all__ = [
    "CompletionSummary",
    "ItemStatus",
    "NextStep",
    "Plan",
    "PlanProgress",
    "PlanStep",
    "PlanningKind",
    "PlanningStack",
    "StackItem",
    "StackView",
    "StaleItem",
    "StepStatus",
    "compute_plan_progress",
    "generate_summary",
    "summarize_completion",
]
