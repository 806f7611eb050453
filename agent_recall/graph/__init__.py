"""
Code graph: tree-sitter parser, incremental indexer, storage and queries.
"""

from .indexer import GraphIndexer, ReindexReport
from .parser import (
    EntityKind,
    GraphEntity,
    GraphRelationship,
    PackageInfo,
    ParseResult,
    RelType,
    discover_packages,
    find_source_files,
    parse_package,
)
from .query import GraphQuery
from .store import FileMetadata, GraphStore

__all__ = [
    "EntityKind",
    "FileMetadata",
    "GraphEntity",
    "GraphIndexer",
    "GraphQuery",
    "GraphRelationship",
    "GraphStore",
    "PackageInfo",
    "ParseResult",
    "RelType",
    "ReindexReport",
    "discover_packages",
    "find_source_files",
    "parse_package",
]
