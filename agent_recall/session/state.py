"""
Per-session tool usage state.

A :class:`SessionContext` is created once per process from the session id in
``AGENT_RECALL_SESSION_ID`` and passed to whatever needs it.  Its state lives
in ``{SESSION_STATE_DIR}/{session_id}.json`` so that separate tool invocations
within one agent session see the same counters.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from typing import Optional

from ..config import Config
from ..db import utc_now

logger = logging.getLogger(__name__)

SESSION_ID_ENV = "AGENT_RECALL_SESSION_ID"
DEFAULT_SESSION_ID = "default"


@dataclass
class GraphQueryRecord:
    tool: str
    query: str
    result_count: int
    timestamp: str


@dataclass
class DocsSearchRecord:
    query: str
    result_count: int
    timestamp: str


@dataclass
class SessionState:
    session_id: str
    started_at: str
    graph_queries: list[GraphQueryRecord] = field(default_factory=list)
    docs_searches: list[DocsSearchRecord] = field(default_factory=list)
    grep_block_count: int = 0
    grep_allow_count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        return cls(
            session_id=data["session_id"],
            started_at=data["started_at"],
            graph_queries=[GraphQueryRecord(**q) for q in data.get("graph_queries", [])],
            docs_searches=[DocsSearchRecord(**d) for d in data.get("docs_searches", [])],
            grep_block_count=int(data.get("grep_block_count", 0)),
            grep_allow_count=int(data.get("grep_allow_count", 0)),
        )


class SessionContext:
    """
    Handle on one session's state file.

    Parameters
    ----------
    session_id:
        Identifier scoping the state file.
    state_dir:
        Directory holding state files.
    """

    def __init__(self, session_id: str, state_dir: str) -> None:
        self.session_id = session_id
        self.state_dir = state_dir

    @classmethod
    def from_env(cls, config: Optional[Config] = None) -> "SessionContext":
        cfg = config or Config.load()
        session_id = os.getenv(SESSION_ID_ENV) or DEFAULT_SESSION_ID
        return cls(session_id, cfg.SESSION_STATE_DIR)

    @property
    def path(self) -> str:
        return os.path.join(self.state_dir, f"{self.session_id}.json")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> Optional[SessionState]:
        """Return the stored state, or None if absent or unreadable."""
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                return SessionState.from_dict(json.load(fh))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.debug("Ignoring unreadable session state %s: %s", self.path, exc)
            return None

    def save(self, state: SessionState) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.state_dir, prefix=f".{self.session_id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(asdict(state), fh, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def init(self) -> SessionState:
        """Start fresh state for this session, replacing any previous state."""
        state = SessionState(session_id=self.session_id, started_at=utc_now())
        self.save(state)
        return state

    def clear(self) -> bool:
        """Delete the state file.  Returns True if one existed."""
        try:
            os.unlink(self.path)
            return True
        except FileNotFoundError:
            return False

    def _state(self) -> SessionState:
        return self.load() or self.init()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def record_graph_query(self, tool: str, query: str, result_count: int = 0) -> None:
        state = self._state()
        state.graph_queries.append(GraphQueryRecord(tool, query, result_count, utc_now()))
        self.save(state)

    def record_docs_search(self, query: str, result_count: int = 0) -> None:
        state = self._state()
        state.docs_searches.append(DocsSearchRecord(query, result_count, utc_now()))
        self.save(state)

    def record_grep(self, allowed: bool) -> None:
        state = self._state()
        if allowed:
            state.grep_allow_count += 1
        else:
            state.grep_block_count += 1
        self.save(state)

    def has_graph_been_queried(self) -> bool:
        state = self.load()
        return state is not None and bool(state.graph_queries)

    def has_docs_been_searched(self) -> bool:
        state = self.load()
        return state is not None and bool(state.docs_searches)

    def usage_summary(self) -> str:
        """Human-readable tool usage for this session."""
        state = self.load()
        if state is None:
            return "No session state found. Consider running graph queries first."
        if not state.graph_queries and not state.docs_searches:
            return (
                "No graph or docs queries made yet. Try:\n"
                "  agent-recall graph callers <function>   find callers\n"
                "  agent-recall graph what-depends-on <name>  find dependents\n"
                "  agent-recall graph find <name>           find entities by name"
            )
        return (
            "Session tool usage:\n"
            f"  Graph queries: {len(state.graph_queries)}\n"
            f"  Docs searches: {len(state.docs_searches)}\n"
            f"  Grep blocked: {state.grep_block_count}\n"
            f"  Grep allowed: {state.grep_allow_count}"
        )
