"""
Query surface over the stored code graph.

Name lookups are substring matches unless stated otherwise.  Blast radius
builds a NetworkX digraph over the dependency edges and walks it backwards
from the target.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import networkx as nx

from ..db import Database
from .parser import EntityKind, RelType

logger = logging.getLogger(__name__)

DEPENDENCY_TYPES = (RelType.IMPORTS, RelType.EXTENDS, RelType.IMPLEMENTS, RelType.CALLS)
# "defines" lets impact flow from an entity to its file and on to importers
_BLAST_TYPES = DEPENDENCY_TYPES + (RelType.DEFINES,)


@dataclass
class EntityResult:
    id: str
    name: str
    kind: str
    file_path: str
    line_number: int
    package: str
    exported: bool = False

    @classmethod
    def from_row(cls, row) -> "EntityResult":
        return cls(
            id=row["id"],
            name=row["name"],
            kind=row["kind"],
            file_path=row["file_path"],
            line_number=row["line_number"],
            package=row["package"],
            exported=bool(row["exported"]),
        )

    def location(self) -> str:
        return f"{self.file_path}:{self.line_number}"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DependencyResult:
    entity: EntityResult
    relationship: str
    target: str

    def to_dict(self) -> dict:
        return {**self.entity.to_dict(), "relationship": self.relationship, "target": self.target}


@dataclass
class BlastRadiusEntry:
    entity: EntityResult
    depth: int

    def to_dict(self) -> dict:
        return {**self.entity.to_dict(), "depth": self.depth}


def _like(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


_ENTITY_COLUMNS = "e.id, e.name, e.kind, e.file_path, e.line_number, e.package, e.exported"


class GraphQuery:
    """
    Read-only queries over the code graph tables.

    Parameters
    ----------
    db:
        Shared :class:`~agent_recall.db.Database`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def find_entities(self, name: str, kind: Optional[str] = None,
                      limit: int = 50) -> list[EntityResult]:
        """
        Find entities whose name contains *name*.

        Exact matches come first, then prefix matches, then other substring
        matches; ties are ordered by file and line.
        """
        sql = f"""
            SELECT {_ENTITY_COLUMNS} FROM graph_entities e
            WHERE e.name LIKE ? ESCAPE '\\' AND e.kind {'=' if kind else '!='} ?
        """
        params: list = [_like(name), kind or EntityKind.FILE]
        sql += """
            ORDER BY CASE
                WHEN e.name = ? THEN 0
                WHEN e.name LIKE ? ESCAPE '\\' THEN 1
                ELSE 2 END,
              e.file_path, e.line_number
            LIMIT ?
        """
        params.extend([name, _like(name)[1:], limit])
        with self._db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [EntityResult.from_row(r) for r in rows]

    def what_calls(self, name: str) -> list[EntityResult]:
        """Return entities with a ``calls`` edge into anything named like *name*."""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT {_ENTITY_COLUMNS}
                FROM graph_relationships gr
                JOIN graph_entities e      ON gr.from_entity = e.id
                JOIN graph_entities target ON gr.to_entity = target.id
                WHERE target.name LIKE ? ESCAPE '\\' AND gr.type = ?
                ORDER BY e.file_path, e.line_number
                """,
                (_like(name), RelType.CALLS),
            ).fetchall()
        return [EntityResult.from_row(r) for r in rows]

    def get_callers(self, function_name: str) -> list[EntityResult]:
        """Like :meth:`what_calls` but the callee name must match exactly
        (``Class.method`` also matches ``method``)."""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT {_ENTITY_COLUMNS}
                FROM graph_relationships gr
                JOIN graph_entities e      ON gr.from_entity = e.id
                JOIN graph_entities target ON gr.to_entity = target.id
                WHERE gr.type = ?
                  AND (target.name = ? OR target.name LIKE ? ESCAPE '\\')
                ORDER BY e.file_path, e.line_number
                """,
                (RelType.CALLS, function_name, _like("." + function_name)[:-1]),
            ).fetchall()
        return [EntityResult.from_row(r) for r in rows]

    def what_depends_on(self, name: str) -> list[DependencyResult]:
        """Return entities that import, extend, implement or call *name*."""
        marks = ",".join("?" * len(DEPENDENCY_TYPES))
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT {_ENTITY_COLUMNS}, gr.type AS rel_type,
                       COALESCE(target.name, gr.to_entity) AS target_name
                FROM graph_relationships gr
                JOIN graph_entities e           ON gr.from_entity = e.id
                LEFT JOIN graph_entities target ON gr.to_entity = target.id
                WHERE gr.type IN ({marks})
                  AND (target.name LIKE ? ESCAPE '\\'
                       OR (target.id IS NULL AND gr.to_entity LIKE ? ESCAPE '\\'))
                ORDER BY gr.type, e.file_path, e.line_number
                """,
                (*DEPENDENCY_TYPES, _like(name), _like(name)),
            ).fetchall()
        return [
            DependencyResult(
                entity=EntityResult.from_row(r),
                relationship=r["rel_type"],
                target=r["target_name"],
            )
            for r in rows
        ]

    def _seeds(self, conn, target: str) -> list[str]:
        row = conn.execute("SELECT id FROM graph_entities WHERE id = ?", (target,)).fetchone()
        if row:
            return [row["id"]]
        rows = conn.execute(
            "SELECT id FROM graph_entities WHERE file_path = ?", (target,)
        ).fetchall()
        if rows:
            return [r["id"] for r in rows]
        rows = conn.execute(
            "SELECT id FROM graph_entities WHERE name = ? AND kind != ?",
            (target, EntityKind.FILE),
        ).fetchall()
        return [r["id"] for r in rows]

    def blast_radius(self, target: str, max_depth: int = 5) -> list[BlastRadiusEntry]:
        """
        Return everything that transitively depends on *target*.

        Parameters
        ----------
        target:
            An entity id, a file path (relative to its package) or an entity name.
        max_depth:
            Maximum number of dependency hops to follow.

        Returns
        -------
        list[BlastRadiusEntry]
            Dependents with their shortest hop distance, nearest first.
        """
        marks = ",".join("?" * len(_BLAST_TYPES))
        with self._db.connect() as conn:
            seeds = self._seeds(conn, target)
            if not seeds:
                return []
            edges = conn.execute(
                f"SELECT from_entity, to_entity FROM graph_relationships WHERE type IN ({marks})",
                _BLAST_TYPES,
            ).fetchall()

            graph = nx.DiGraph()
            graph.add_edges_from((r["to_entity"], r["from_entity"]) for r in edges)
            graph.add_nodes_from(seeds)
            depths: dict[str, int] = {}
            for seed in seeds:
                reached = nx.single_source_shortest_path_length(graph, seed, cutoff=max_depth)
                for node, depth in reached.items():
                    if depth > 0 and (node not in depths or depth < depths[node]):
                        depths[node] = depth
            for seed in seeds:
                depths.pop(seed, None)
            if not depths:
                return []

            entities: dict[str, EntityResult] = {}
            ids = list(depths)
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                for row in conn.execute(
                    f"SELECT {_ENTITY_COLUMNS} FROM graph_entities e "
                    f"WHERE e.id IN ({','.join('?' * len(chunk))})",
                    chunk,
                ).fetchall():
                    entities[row["id"]] = EntityResult.from_row(row)

        results = [
            BlastRadiusEntry(entity=entities[node], depth=depth)
            for node, depth in depths.items()
            if node in entities
        ]
        results.sort(key=lambda r: (r.depth, r.entity.file_path, r.entity.line_number, r.entity.id))
        return results

    def get_exports(self, package: Optional[str] = None) -> list[EntityResult]:
        """Return exported entities, optionally limited to one package."""
        sql = f"SELECT {_ENTITY_COLUMNS} FROM graph_entities e WHERE e.exported = 1"
        params: tuple = ()
        if package:
            sql += " AND e.package = ?"
            params = (package,)
        sql += " ORDER BY e.package, e.file_path, e.line_number"
        with self._db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [EntityResult.from_row(r) for r in rows]

    def get_summary(self) -> dict:
        """Return totals, counts by kind/relationship type, and per-package counts."""
        with self._db.connect() as conn:
            by_kind = {
                r["kind"]: r["n"] for r in conn.execute(
                    "SELECT kind, COUNT(*) AS n FROM graph_entities GROUP BY kind ORDER BY kind"
                ).fetchall()
            }
            by_rel = {
                r["type"]: r["n"] for r in conn.execute(
                    "SELECT type, COUNT(*) AS n FROM graph_relationships GROUP BY type ORDER BY type"
                ).fetchall()
            }
            entity_counts = {
                r["package"]: r["n"] for r in conn.execute(
                    "SELECT package, COUNT(*) AS n FROM graph_entities GROUP BY package"
                ).fetchall()
            }
            rel_counts = {
                r["package"]: r["n"] for r in conn.execute(
                    "SELECT package, COUNT(*) AS n FROM graph_relationships GROUP BY package"
                ).fetchall()
            }
            file_counts = {
                r["package"]: r["n"] for r in conn.execute(
                    "SELECT package, COUNT(*) AS n FROM graph_file_metadata GROUP BY package"
                ).fetchall()
            }

        names = sorted(set(entity_counts) | set(rel_counts) | set(file_counts))
        return {
            "total_entities": sum(entity_counts.values()),
            "total_relationships": sum(rel_counts.values()),
            "by_kind": by_kind,
            "by_relationship": by_rel,
            "packages": [
                {
                    "name": name,
                    "entities": entity_counts.get(name, 0),
                    "relationships": rel_counts.get(name, 0),
                    "files": file_counts.get(name, 0),
                }
                for name in names
            ],
        }
