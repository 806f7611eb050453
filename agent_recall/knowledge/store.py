"""
Knowledge graph store — learnings, patterns and mistakes, linked to the
code areas and files they are about.

Storing or querying by code area / file path creates the supporting
CodeArea and File nodes if they do not exist yet.  Entities that carry free
text (learnings, patterns, mistakes) are de-duplicated by content hash, so
re-deriving the same fact reuses the existing entity.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable, Optional, Sequence

import numpy as np

from ..db import Database, utc_now
from ..errors import ValidationError
from .embedder import EmbedderHandle
from .models import (
    CodeArea,
    Entity,
    EntityKind,
    File,
    Learning,
    Mistake,
    Pattern,
    QueryFilter,
    QueryResult,
    RelationshipType,
    code_area_id,
    content_hash,
    decode_entity,
    encode_entity,
    file_id,
    validate_relationship,
)

logger = logging.getLogger(__name__)

# Ranking weights for query(); a learning matching several dimensions sums them.
_SCORE_ISSUE = 8
_SCORE_FILE = 4
_SCORE_AREA = 2
_SCORE_KEYWORD = 1

_DEDUPED_KINDS = (EntityKind.LEARNING, EntityKind.PATTERN, EntityKind.MISTAKE)


def _vec_to_bytes(vec: Sequence[float]) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class KnowledgeStore:
    """
    Typed entity/relationship graph persisted in the shared database.

    Parameters
    ----------
    db:
        Shared :class:`~agent_recall.db.Database`.
    embedder:
        Optional :class:`EmbedderHandle`; when available, learnings are
        embedded on store so :class:`SemanticIndex` can search them.
    """

    def __init__(self, db: Database, embedder: Optional[EmbedderHandle] = None) -> None:
        self._db = db
        self._embedder = embedder

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _upsert(self, conn, entity: Entity, embedding: Optional[bytes] = None) -> str:
        """Insert or update *entity*, returning the id it is stored under."""
        digest = content_hash(entity.text)
        if entity.KIND in _DEDUPED_KINDS:
            existing = conn.execute(
                "SELECT id FROM entities WHERE kind = ? AND content_hash = ? AND id != ?",
                (entity.KIND, digest, entity.id),
            ).fetchone()
            if existing is not None:
                entity.id = existing["id"]

        now = utc_now()
        conn.execute(
            """
            INSERT INTO entities (id, kind, data, embedding, content_hash, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data         = excluded.data,
                embedding    = COALESCE(excluded.embedding, entities.embedding),
                content_hash = excluded.content_hash,
                updated_at   = excluded.updated_at
            """,
            (entity.id, entity.KIND, json.dumps(encode_entity(entity)),
             embedding, digest, now, now),
        )
        return entity.id

    def _ensure(self, conn, entity: Entity) -> str:
        """Create a supporting node if absent; never overwrite an existing one."""
        conn.execute(
            "INSERT OR IGNORE INTO entities (id, kind, data, content_hash, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (entity.id, entity.KIND, json.dumps(encode_entity(entity)),
             content_hash(entity.text), utc_now(), utc_now()),
        )
        return entity.id

    def _kind_of(self, conn, entity_id: str) -> Optional[str]:
        row = conn.execute("SELECT kind FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return row["kind"] if row else None

    def _link(self, conn, from_id: str, to_id: str, rel_type: str,
              data: Optional[dict] = None) -> None:
        from_kind = self._kind_of(conn, from_id)
        to_kind = self._kind_of(conn, to_id)
        if from_kind is None or to_kind is None:
            raise ValidationError(
                f"Cannot create {rel_type}: unknown entity {from_id if from_kind is None else to_id}"
            )
        validate_relationship(rel_type, from_kind, to_kind)
        conn.execute(
            "INSERT OR IGNORE INTO relationships (from_id, to_id, type, data, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (from_id, to_id, rel_type, json.dumps(data) if data else None, utc_now()),
        )

    def _require_learning(self, conn, learning_id: str) -> None:
        if self._kind_of(conn, learning_id) != EntityKind.LEARNING:
            raise ValidationError(f"Learning not found: {learning_id}")

    def _embeddings_for(self, texts: list[str]) -> list[Optional[bytes]]:
        if self._embedder is None or not texts:
            return [None] * len(texts)
        vectors = self._embedder.try_embed(texts)
        if vectors is None:
            return [None] * len(texts)
        return [_vec_to_bytes(v) for v in vectors]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, learnings: Iterable[Learning]) -> list[str]:
        """
        Store *learnings* with their CodeArea / File links in one transaction.

        Parameters
        ----------
        learnings:
            Learnings to store.  CodeArea and File nodes named by
            ``code_area`` / ``file_path`` are created if absent.

        Returns
        -------
        list[str]
            The ids the learnings were stored under (an existing id when the
            same content was already known).
        """
        learnings = list(learnings)
        embeddings = self._embeddings_for([l.content for l in learnings])
        ids: list[str] = []
        with self._db.transaction() as conn:
            for learning, embedding in zip(learnings, embeddings):
                learning_id = self._upsert(conn, learning, embedding)
                ids.append(learning_id)
                if learning.code_area:
                    area_id = self._ensure(conn, CodeArea(learning.code_area))
                    self._link(conn, learning_id, area_id, RelationshipType.ABOUT)
                if learning.file_path:
                    fid = self._ensure(conn, File(learning.file_path))
                    self._link(conn, learning_id, fid, RelationshipType.IN_FILE)
        logger.debug("Stored %d learning(s)", len(ids))
        return ids

    def store_pattern(self, pattern: Pattern,
                      learning_ids: Optional[Sequence[str]] = None) -> str:
        """Store *pattern*, linking it to its code area and the learnings it led to."""
        with self._db.transaction() as conn:
            for learning_id in learning_ids or ():
                self._require_learning(conn, learning_id)
            pattern_id = self._upsert(conn, pattern)
            if pattern.code_area:
                area_id = self._ensure(conn, CodeArea(pattern.code_area))
                self._link(conn, pattern_id, area_id, RelationshipType.APPLIES_TO)
            for learning_id in learning_ids or ():
                self._link(conn, pattern_id, learning_id, RelationshipType.LED_TO)
        return pattern_id

    def store_mistake(self, mistake: Mistake, learning_id: Optional[str] = None) -> str:
        """Store *mistake*, linking it to its file and the learning that fixed it."""
        with self._db.transaction() as conn:
            if learning_id:
                self._require_learning(conn, learning_id)
            mistake_id = self._upsert(conn, mistake)
            if mistake.file_path:
                fid = self._ensure(conn, File(mistake.file_path))
                self._link(conn, mistake_id, fid, RelationshipType.IN_FILE)
            if learning_id:
                self._link(conn, mistake_id, learning_id, RelationshipType.LED_TO)
        return mistake_id

    def supersede(self, new_learning_id: str, old_learning_id: str) -> None:
        """Mark *old_learning_id* as replaced; superseded learnings drop out of query()."""
        with self._db.transaction() as conn:
            self._require_learning(conn, new_learning_id)
            self._require_learning(conn, old_learning_id)
            self._link(conn, new_learning_id, old_learning_id, RelationshipType.SUPERSEDES)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, query_filter: QueryFilter, limit: Optional[int] = None) -> list[QueryResult]:
        """
        Return learnings matching ANY dimension of *query_filter*, ranked.

        Issue matches rank above exact-file matches, which rank above
        code-area matches, which rank above keyword matches.  Ties are broken
        newest first.  An empty filter returns the newest learnings.
        """
        f = query_filter
        area_id = code_area_id(f.code_area) if f.code_area else None
        fid = file_id(f.file_path) if f.file_path else None
        keywords = [k.lower() for k in f.keywords if k and k.strip()]

        with self._db.transaction() as conn:
            # auto-vivify the nodes being asked about
            if f.code_area:
                self._ensure(conn, CodeArea(f.code_area))
            if f.file_path:
                self._ensure(conn, File(f.file_path))

            about = self._sources(conn, RelationshipType.ABOUT, area_id)
            in_file = self._sources(conn, RelationshipType.IN_FILE, fid)

            clauses: list[str] = []
            params: list = []
            if about:
                clauses.append(f"e.id IN ({','.join('?' * len(about))})")
                params.extend(about)
            if in_file:
                clauses.append(f"e.id IN ({','.join('?' * len(in_file))})")
                params.extend(in_file)
            if f.issue_number is not None:
                clauses.append("json_extract(e.data, '$.source_issue') = ?")
                params.append(int(f.issue_number))
            for kw in keywords:
                clauses.append("LOWER(json_extract(e.data, '$.content')) LIKE ? ESCAPE '\\'")
                params.append(f"%{_escape_like(kw)}%")

            if not clauses and not f.is_empty():
                return []
            where = f"AND ({' OR '.join(clauses)})" if clauses else ""
            rows = conn.execute(
                f"""
                SELECT e.id, e.kind, e.data, e.created_at FROM entities e
                WHERE e.kind = ? {where}
                  AND e.id NOT IN (
                      SELECT to_id FROM relationships WHERE type = ?
                  )
                """,
                [EntityKind.LEARNING, *params, RelationshipType.SUPERSEDES],
            ).fetchall()

            results: list[tuple[str, QueryResult]] = []
            for row in rows:
                learning = decode_entity(row["kind"], json.loads(row["data"]))
                score = 0
                if f.issue_number is not None and learning.source_issue == int(f.issue_number):
                    score += _SCORE_ISSUE
                if row["id"] in in_file:
                    score += _SCORE_FILE
                if row["id"] in about:
                    score += _SCORE_AREA
                content = learning.content.lower()
                score += _SCORE_KEYWORD * sum(1 for kw in keywords if kw in content)
                results.append((row["created_at"], QueryResult(learning=learning, score=score)))

            results.sort(key=lambda item: item[0], reverse=True)
            results.sort(key=lambda item: item[1].score, reverse=True)
            ranked = [r for _, r in results]
            if limit is not None:
                ranked = ranked[:limit]
            self._attach_related(conn, ranked)
        return ranked

    def _sources(self, conn, rel_type: str, target_id: Optional[str]) -> set[str]:
        if target_id is None:
            return set()
        rows = conn.execute(
            "SELECT from_id FROM relationships WHERE type = ? AND to_id = ?",
            (rel_type, target_id),
        ).fetchall()
        return {r["from_id"] for r in rows}

    def _attach_related(self, conn, results: list[QueryResult]) -> None:
        if not results:
            return
        by_id = {r.learning.id: r for r in results}
        rows = conn.execute(
            f"""
            SELECT r.to_id, e.kind, e.data FROM relationships r
            JOIN entities e ON e.id = r.from_id
            WHERE r.type = ? AND r.to_id IN ({','.join('?' * len(by_id))})
            ORDER BY r.id
            """,
            [RelationshipType.LED_TO, *by_id],
        ).fetchall()
        for row in rows:
            entity = decode_entity(row["kind"], json.loads(row["data"]))
            target = by_id[row["to_id"]]
            if isinstance(entity, Pattern):
                target.related_patterns.append(entity)
            elif isinstance(entity, Mistake):
                target.related_mistakes.append(entity)

    def _linked(self, kind: str, rel_type: str, target_id: str) -> list[Entity]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT e.kind, e.data FROM relationships r
                JOIN entities e ON e.id = r.from_id
                WHERE r.type = ? AND r.to_id = ? AND e.kind = ?
                ORDER BY e.updated_at DESC
                """,
                (rel_type, target_id, kind),
            ).fetchall()
        return [decode_entity(r["kind"], json.loads(r["data"])) for r in rows]

    def get_mistakes_for_file(self, path: str) -> list[Mistake]:
        """Return mistakes recorded against *path*, newest first."""
        return self._linked(EntityKind.MISTAKE, RelationshipType.IN_FILE, file_id(path))

    def get_patterns_for_area(self, area: str) -> list[Pattern]:
        """Return patterns that apply to code area *area*, newest first."""
        return self._linked(EntityKind.PATTERN, RelationshipType.APPLIES_TO, code_area_id(area))

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT kind, data FROM entities WHERE id = ?", (entity_id,)
            ).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row["data"])
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Malformed entity {entity_id}: {exc}") from exc
        return decode_entity(row["kind"], data)

    def count_by_kind(self) -> dict[str, int]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT kind, COUNT(*) AS n FROM entities GROUP BY kind"
            ).fetchall()
        return {r["kind"]: r["n"] for r in rows}

    def relationships(self, rel_type: Optional[str] = None) -> list[tuple[str, str, str]]:
        """Return stored ``(from_id, to_id, type)`` tuples, optionally filtered."""
        sql = "SELECT from_id, to_id, type FROM relationships"
        params: tuple = ()
        if rel_type:
            sql += " WHERE type = ?"
            params = (rel_type,)
        with self._db.connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [(r["from_id"], r["to_id"], r["type"]) for r in rows]
