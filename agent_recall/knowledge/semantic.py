"""
Semantic index over stored learnings.

Learning embeddings live in ``entities.embedding`` as float32 bytes; a
search embeds the query text and ranks learnings by cosine similarity.
Without an embedding backend every search raises
:class:`~agent_recall.errors.EmbedderUnavailable`; callers fall back to
keyword queries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..db import Database
from ..errors import EmbedderUnavailable
from .embedder import EmbedderHandle
from .models import EntityKind, Learning, RelationshipType, decode_entity

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_THRESHOLD = 0.3


@dataclass
class SimilarLearning:
    learning: Learning
    score: float


def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query) / (row_norms * query_norm)


class SemanticIndex:
    """
    Cosine-similarity search over learning embeddings.

    Parameters
    ----------
    db:
        Shared database.
    embedder:
        Handle to the (optional) embedding backend.
    """

    def __init__(self, db: Database, embedder: Optional[EmbedderHandle]) -> None:
        self._db = db
        self._embedder = embedder

    def search_similar(
        self,
        text: str,
        limit: int = DEFAULT_LIMIT,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> list[SimilarLearning]:
        """
        Return learnings whose similarity to *text* is at least *threshold*.

        Parameters
        ----------
        text:
            Free-text query.
        limit:
            Maximum number of results.
        threshold:
            Minimum cosine similarity in ``[-1, 1]``.

        Returns
        -------
        list[SimilarLearning]
            Ordered by score, highest first.

        Raises
        ------
        EmbedderUnavailable
            If no embedding backend is configured or it fails.
        """
        if self._embedder is None:
            raise EmbedderUnavailable("no embedding provider configured")
        if not text or not text.strip():
            return []
        query_vec = np.asarray(self._embedder.embed([text])[0], dtype=np.float32)

        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT kind, data, embedding FROM entities "
                "WHERE kind = ? AND embedding IS NOT NULL "
                "AND id NOT IN (SELECT to_id FROM relationships WHERE type = ?)",
                (EntityKind.LEARNING, RelationshipType.SUPERSEDES),
            ).fetchall()

        candidates = [
            r for r in rows
            if len(r["embedding"]) == query_vec.shape[0] * 4
        ]
        if not candidates:
            return []

        matrix = np.vstack([
            np.frombuffer(r["embedding"], dtype=np.float32) for r in candidates
        ])
        scores = _cosine_similarity_batch(query_vec, matrix)
        order = np.argsort(-scores, kind="stable")

        results: list[SimilarLearning] = []
        for idx in order:
            score = float(scores[idx])
            if score < threshold:
                break
            row = candidates[idx]
            results.append(SimilarLearning(
                learning=decode_entity(row["kind"], json.loads(row["data"])),
                score=score,
            ))
            if len(results) >= limit:
                break
        return results

    def backfill(self, batch_size: int = 50) -> int:
        """Embed every learning that has no embedding yet.  Returns the count."""
        if self._embedder is None:
            raise EmbedderUnavailable("no embedding provider configured")
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT id, data FROM entities WHERE kind = ? AND embedding IS NULL",
                (EntityKind.LEARNING,),
            ).fetchall()

        done = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            texts = [json.loads(r["data"])["content"] for r in batch]
            vectors = self._embedder.embed(texts)
            with self._db.transaction() as conn:
                for row, vec in zip(batch, vectors):
                    conn.execute(
                        "UPDATE entities SET embedding = ? WHERE id = ?",
                        (np.asarray(vec, dtype=np.float32).tobytes(), row["id"]),
                    )
            done += len(batch)
        logger.info("Embedded %d learning(s)", done)
        return done
