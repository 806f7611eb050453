"""
SQLite persistence for the code graph.

Each :meth:`GraphStore.store_graph` call is a single transaction: the rows
owned by the files being replaced or deleted are removed, the new rows are
inserted, and the per-file metadata is updated.  If anything fails the
transaction is rolled back and the previous graph stays intact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..db import Database, utc_now
from .parser import GraphRelationship, ParseResult

logger = logging.getLogger(__name__)

# SQLite's default host-parameter limit is 999 on older builds.
_CHUNK = 500


@dataclass
class FileMetadata:
    """Per-file bookkeeping used to decide whether a file needs re-parsing."""
    file_path: str
    mtime_ms: float
    entity_count: int = 0
    content_hash: Optional[str] = None


@dataclass
class StoreResult:
    entities: int = 0
    relationships: int = 0
    unresolved: int = 0


def _chunks(items: list, size: int = _CHUNK):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class GraphStore:
    """
    Code graph tables in the shared database.

    Parameters
    ----------
    db:
        Shared :class:`~agent_recall.db.Database`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ids_for_files(self, conn, package: str, files: list[str]) -> set[str]:
        ids: set[str] = set()
        for chunk in _chunks(files):
            rows = conn.execute(
                f"SELECT id FROM graph_entities WHERE package = ? "
                f"AND file_path IN ({','.join('?' * len(chunk))})",
                [package, *chunk],
            ).fetchall()
            ids.update(r["id"] for r in rows)
        return ids

    def _delete_files(self, conn, package: str, files: list[str]) -> None:
        for chunk in _chunks(files):
            marks = ",".join("?" * len(chunk))
            conn.execute(
                f"DELETE FROM graph_relationships WHERE package = ? AND file_path IN ({marks})",
                [package, *chunk],
            )
            conn.execute(
                f"DELETE FROM graph_entities WHERE package = ? AND file_path IN ({marks})",
                [package, *chunk],
            )

    def _resolve(self, conn, package: str, rel: GraphRelationship,
                 cache: dict[tuple, Optional[str]]) -> Optional[str]:
        """Resolve an unresolved target by name: same package first, exact name first."""
        key = (rel.target_name, rel.target_kinds)
        if key in cache:
            return cache[key]
        name = rel.target_name or ""
        kinds = rel.target_kinds or ("function", "class")
        rows = conn.execute(
            f"""
            SELECT id, name, package FROM graph_entities
            WHERE kind IN ({','.join('?' * len(kinds))})
              AND (name = ? OR name LIKE ? ESCAPE '\\')
            """,
            [*kinds, name, f"%.{_escape_like(name)}"],
        ).fetchall()
        best = min(
            rows,
            key=lambda r: (r["package"] != package, r["name"] != name, r["id"]),
            default=None,
        )
        cache[key] = best["id"] if best else None
        return cache[key]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store_graph(
        self,
        package: str,
        result: ParseResult,
        replace_files: Optional[Iterable[str]] = None,
        deleted_files: Iterable[str] = (),
        metadata: Optional[Iterable[FileMetadata]] = None,
    ) -> StoreResult:
        """
        Atomically replace part or all of a package's graph.

        Parameters
        ----------
        package:
            Package whose rows are being replaced.
        result:
            Newly parsed entities and relationships.
        replace_files:
            Files whose previous rows are replaced.  ``None`` replaces the
            whole package.
        deleted_files:
            Files that no longer exist; their rows and metadata are removed.
        metadata:
            File metadata rows to upsert.

        Raises
        ------
        StorageError
            On any engine failure; nothing is written in that case.
        """
        deleted = sorted(set(deleted_files))
        stored = StoreResult()

        with self._db.transaction() as conn:
            if replace_files is None:
                old_ids = {
                    r["id"] for r in conn.execute(
                        "SELECT id FROM graph_entities WHERE package = ?", (package,)
                    ).fetchall()
                }
                conn.execute("DELETE FROM graph_relationships WHERE package = ?", (package,))
                conn.execute("DELETE FROM graph_entities WHERE package = ?", (package,))
                conn.execute("DELETE FROM graph_file_metadata WHERE package = ?", (package,))
            else:
                scope = sorted(set(replace_files) | set(deleted))
                old_ids = self._ids_for_files(conn, package, scope)
                self._delete_files(conn, package, scope)

            for entity in result.entities:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO graph_entities
                        (id, kind, name, file_path, line_number, exported, package)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (entity.id, entity.kind, entity.name, entity.file_path,
                     entity.line_number, int(bool(entity.exported)), package),
                )
                stored.entities += 1

            cache: dict[tuple, Optional[str]] = {}
            for rel in result.relationships:
                to_id = rel.to_id or self._resolve(conn, package, rel, cache)
                if to_id is None:
                    stored.unresolved += 1
                    continue
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO graph_relationships
                        (from_entity, to_entity, type, package, file_path)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (rel.from_id, to_id, rel.type, package, rel.file_path),
                )
                stored.relationships += cur.rowcount

            # edges from untouched files into entities that no longer exist
            gone = sorted(old_ids - {e.id for e in result.entities})
            for chunk in _chunks(gone):
                conn.execute(
                    f"DELETE FROM graph_relationships "
                    f"WHERE to_entity IN ({','.join('?' * len(chunk))})",
                    chunk,
                )

            for chunk in _chunks(deleted):
                conn.execute(
                    f"DELETE FROM graph_file_metadata WHERE package = ? "
                    f"AND file_path IN ({','.join('?' * len(chunk))})",
                    [package, *chunk],
                )
            now = utc_now()
            for meta in metadata or ():
                conn.execute(
                    """
                    INSERT INTO graph_file_metadata
                        (package, file_path, mtime_ms, content_hash, entity_count, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(package, file_path) DO UPDATE SET
                        mtime_ms     = excluded.mtime_ms,
                        content_hash = excluded.content_hash,
                        entity_count = excluded.entity_count,
                        updated_at   = excluded.updated_at
                    """,
                    (package, meta.file_path, meta.mtime_ms, meta.content_hash,
                     meta.entity_count, now),
                )

        logger.debug(
            "Stored %s: %d entities, %d relationships (%d unresolved dropped)",
            package, stored.entities, stored.relationships, stored.unresolved,
        )
        return stored

    def clear_package(self, package: str) -> None:
        """Remove every row belonging to *package*, including its metadata."""
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM graph_relationships WHERE package = ? OR to_entity IN "
                "(SELECT id FROM graph_entities WHERE package = ?)",
                (package, package),
            )
            conn.execute("DELETE FROM graph_entities WHERE package = ?", (package,))
            conn.execute("DELETE FROM graph_file_metadata WHERE package = ?", (package,))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_file_metadata(self, package: str) -> dict[str, FileMetadata]:
        """Return ``{relative path: FileMetadata}`` for *package*."""
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT file_path, mtime_ms, entity_count, content_hash "
                "FROM graph_file_metadata WHERE package = ?",
                (package,),
            ).fetchall()
        return {
            r["file_path"]: FileMetadata(
                file_path=r["file_path"],
                mtime_ms=r["mtime_ms"],
                entity_count=r["entity_count"],
                content_hash=r["content_hash"],
            )
            for r in rows
        }

    def counts(self, package: Optional[str] = None) -> dict[str, int]:
        """Return entity and relationship counts, optionally for one package."""
        where, params = ("WHERE package = ?", (package,)) if package else ("", ())
        with self._db.connect() as conn:
            entities = conn.execute(
                f"SELECT COUNT(*) FROM graph_entities {where}", params
            ).fetchone()[0]
            relationships = conn.execute(
                f"SELECT COUNT(*) FROM graph_relationships {where}", params
            ).fetchone()[0]
        return {"entities": entities, "relationships": relationships}

    def last_indexed_at(self) -> Optional[str]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT MAX(updated_at) FROM graph_file_metadata"
            ).fetchone()
        return row[0] if row else None
