"""
Exception types shared across agent_recall.

"Not found" is never an exception: read operations return ``None`` or an
empty list instead.
"""

from __future__ import annotations


class AgentRecallError(Exception):
    """Base class for all agent_recall errors."""


class InvalidEnumError(AgentRecallError, ValueError):
    """An illegal phase, status, result, entity kind or relationship type."""

    def __init__(self, field: str, value, allowed) -> None:
        self.field = field
        self.value = value
        self.allowed = tuple(allowed)
        super().__init__(
            f"Invalid {field}: {value!r}. Must be one of: {', '.join(self.allowed)}"
        )


class ValidationError(AgentRecallError, ValueError):
    """Malformed input record or stored JSON."""


class StorageError(AgentRecallError):
    """A write transaction failed and was rolled back."""


class SectionTimeoutError(AgentRecallError, TimeoutError):
    """A session context section missed its deadline."""

    def __init__(self, section: str, timeout_ms: int) -> None:
        self.section = section
        self.timeout_ms = timeout_ms
        super().__init__(f"{section} timed out after {timeout_ms}ms")


class EmbedderUnavailable(AgentRecallError):
    """No embedding backend is configured or it failed to initialise."""
