"""
Session lifecycle: per-session tool usage state, the start-of-session context
block and the start/end hooks.
"""

from .context_builder import SessionContextBlock, SessionContextBuilder
from .hooks import (
    SessionEndResult,
    SessionStartResult,
    extract_learnings,
    infer_code_area,
    parse_conventional_commit,
    session_end,
    session_start,
)
from .state import SessionContext, SessionState

__all__ = [
    "SessionContext",
    "SessionContextBlock",
    "SessionContextBuilder",
    "SessionEndResult",
    "SessionStartResult",
    "SessionState",
    "extract_learnings",
    "infer_code_area",
    "parse_conventional_commit",
    "session_end",
    "session_start",
]
