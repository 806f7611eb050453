"""
Entity and relationship types for the knowledge graph.

Each entity kind is its own dataclass carrying a ``KIND`` discriminator;
:func:`decode_entity` is the single dispatch point from stored rows back to
typed records.  Relationship writes are checked against
:data:`ALLOWED_ENDPOINTS`.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Optional, Union

from ..errors import InvalidEnumError, ValidationError

# ---------------------------------------------------------------------------
# Kind / relationship constants
# ---------------------------------------------------------------------------

class EntityKind:
    LEARNING = "Learning"
    CODE_AREA = "CodeArea"
    FILE = "File"
    PATTERN = "Pattern"
    MISTAKE = "Mistake"

    ALL = (LEARNING, CODE_AREA, FILE, PATTERN, MISTAKE)


class RelationshipType:
    ABOUT = "ABOUT"
    IN_FILE = "IN_FILE"
    LED_TO = "LED_TO"
    APPLIES_TO = "APPLIES_TO"
    SUPERSEDES = "SUPERSEDES"

    ALL = (ABOUT, IN_FILE, LED_TO, APPLIES_TO, SUPERSEDES)


ALLOWED_ENDPOINTS: dict[str, frozenset[tuple[str, str]]] = {
    RelationshipType.ABOUT: frozenset({
        (EntityKind.LEARNING, EntityKind.CODE_AREA),
    }),
    RelationshipType.IN_FILE: frozenset({
        (EntityKind.LEARNING, EntityKind.FILE),
        (EntityKind.MISTAKE, EntityKind.FILE),
    }),
    RelationshipType.LED_TO: frozenset({
        (EntityKind.PATTERN, EntityKind.LEARNING),
        (EntityKind.MISTAKE, EntityKind.LEARNING),
    }),
    RelationshipType.APPLIES_TO: frozenset({
        (EntityKind.PATTERN, EntityKind.CODE_AREA),
    }),
    RelationshipType.SUPERSEDES: frozenset({
        (EntityKind.LEARNING, EntityKind.LEARNING),
    }),
}


def validate_relationship(rel_type: str, from_kind: str, to_kind: str) -> None:
    """Raise InvalidEnumError unless *rel_type* may join *from_kind* → *to_kind*."""
    allowed = ALLOWED_ENDPOINTS.get(rel_type)
    if allowed is None:
        raise InvalidEnumError("relationship type", rel_type, RelationshipType.ALL)
    if (from_kind, to_kind) not in allowed:
        raise InvalidEnumError(
            f"{rel_type} endpoints",
            f"{from_kind}->{to_kind}",
            sorted(f"{a}->{b}" for a, b in allowed),
        )


# ---------------------------------------------------------------------------
# Id helpers
# ---------------------------------------------------------------------------

def code_area_id(name: str) -> str:
    return "codearea-" + name.strip().lower().replace(" ", "-")


def file_id(path: str) -> str:
    encoded = base64.urlsafe_b64encode(path.encode("utf-8")).decode("ascii")
    return "file-" + encoded.rstrip("=")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


def content_hash(text: str) -> str:
    """sha256 of whitespace-normalised, lowercased *text*."""
    normalised = " ".join(text.split()).lower()
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Learning:
    content: str
    id: str = ""
    code_area: Optional[str] = None
    file_path: Optional[str] = None
    source_issue: Optional[int] = None
    confidence: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    KIND: ClassVar[str] = EntityKind.LEARNING

    def __post_init__(self) -> None:
        if not self.content or not self.content.strip():
            raise ValidationError("Learning content must not be empty")
        if not self.id:
            self.id = new_id("learning")

    @property
    def text(self) -> str:
        return self.content


@dataclass
class CodeArea:
    name: str
    id: str = ""
    description: Optional[str] = None

    KIND: ClassVar[str] = EntityKind.CODE_AREA

    def __post_init__(self) -> None:
        if not self.id:
            self.id = code_area_id(self.name)

    @property
    def text(self) -> str:
        return self.name


@dataclass
class File:
    path: str
    id: str = ""

    KIND: ClassVar[str] = EntityKind.FILE

    def __post_init__(self) -> None:
        if not self.id:
            self.id = file_id(self.path)

    @property
    def text(self) -> str:
        return self.path


@dataclass
class Pattern:
    name: str
    description: str
    id: str = ""
    code_area: Optional[str] = None

    KIND: ClassVar[str] = EntityKind.PATTERN

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Pattern name must not be empty")
        if not self.id:
            self.id = new_id("pattern")

    @property
    def text(self) -> str:
        return f"{self.name}: {self.description}"


@dataclass
class Mistake:
    description: str
    how_fixed: str
    id: str = ""
    file_path: Optional[str] = None

    KIND: ClassVar[str] = EntityKind.MISTAKE

    def __post_init__(self) -> None:
        if not self.description:
            raise ValidationError("Mistake description must not be empty")
        if not self.id:
            self.id = new_id("mistake")

    @property
    def text(self) -> str:
        return f"{self.description} -> {self.how_fixed}"


Entity = Union[Learning, CodeArea, File, Pattern, Mistake]

_BY_KIND: dict[str, type] = {
    cls.KIND: cls for cls in (Learning, CodeArea, File, Pattern, Mistake)
}


def encode_entity(entity: Entity) -> dict[str, Any]:
    """Return the JSON-serialisable payload stored in ``entities.data``."""
    return asdict(entity)


def decode_entity(kind: str, data: dict[str, Any]) -> Entity:
    """Rebuild a typed entity from its stored *kind* and *data*."""
    cls = _BY_KIND.get(kind)
    if cls is None:
        raise InvalidEnumError("entity kind", kind, EntityKind.ALL)
    try:
        return cls(**data)
    except TypeError as exc:
        raise ValidationError(f"Malformed {kind} record: {exc}") from exc


# ---------------------------------------------------------------------------
# Query types
# ---------------------------------------------------------------------------

@dataclass
class QueryFilter:
    code_area: Optional[str] = None
    file_path: Optional[str] = None
    issue_number: Optional[int] = None
    keywords: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.code_area is None
            and self.file_path is None
            and self.issue_number is None
            and not self.keywords
        )


@dataclass
class QueryResult:
    learning: Learning
    score: int = 0
    related_patterns: list[Pattern] = field(default_factory=list)
    related_mistakes: list[Mistake] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "learning": asdict(self.learning),
            "score": self.score,
            "related_patterns": [asdict(p) for p in self.related_patterns],
            "related_mistakes": [asdict(m) for m in self.related_mistakes],
        }
