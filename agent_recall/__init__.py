"""
agent_recall — persistent memory for coding agents.

Public API for library usage::

    from agent_recall import Config, Database, WorkflowStore

    db = Database(Config.load().DB_PATH)
    workflow = WorkflowStore(db).create(42, "feat/issue-42-login")
"""

from .checkpoint import WorkflowStore
from .config import Config
from .db import Database
from .graph import GraphIndexer, GraphQuery, GraphStore
from .knowledge import KnowledgeStore, SemanticIndex
from .planning import PlanningStack, compute_plan_progress
from .session import SessionContext, SessionContextBuilder, session_end, session_start

__all__ = [
    "Config",
    "Database",
    "GraphIndexer",
    "GraphQuery",
    "GraphStore",
    "KnowledgeStore",
    "PlanningStack",
    "SemanticIndex",
    "SessionContext",
    "SessionContextBuilder",
    "WorkflowStore",
    "compute_plan_progress",
    "session_end",
    "session_start",
]
