"""
Knowledge graph: learnings, patterns and mistakes plus semantic search.
"""

from .embedder import EmbedderHandle, OllamaEmbedder, OpenAIEmbedder
from .models import (
    CodeArea,
    EntityKind,
    File,
    Learning,
    Mistake,
    Pattern,
    QueryFilter,
    QueryResult,
    RelationshipType,
)
from .semantic import SemanticIndex, SimilarLearning
from .store import KnowledgeStore

__all__ = [
    "CodeArea",
    "EmbedderHandle",
    "EntityKind",
    "File",
    "KnowledgeStore",
    "Learning",
    "Mistake",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "Pattern",
    "QueryFilter",
    "QueryResult",
    "RelationshipType",
    "SemanticIndex",
    "SimilarLearning",
]
