"""
Embedding backends for semantic search over learnings.

Backends are optional.  Callers hold an :class:`EmbedderHandle`, which builds
the backend lazily on first use (once, under a lock) and reports
:class:`~agent_recall.errors.EmbedderUnavailable` when none can be built.
The first failure is logged as a warning; later ones only at debug level.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Optional, Protocol

import requests

from ..errors import EmbedderUnavailable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
BATCH_SIZE = 100
MAX_RETRIES = 3


class Embedder(Protocol):
    def embed(self, texts: list[str]) -> list[list[float]]:
        ...


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

def _get_openai_client():
    """Return an openai.OpenAI client, raising ImportError if not installed."""
    try:
        import openai  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "openai package is required for embedding. "
            "Install it with: pip install 'agent-recall[semantic]'"
        ) from exc
    api_key = os.environ.get("OPENAI_API_KEY", "")
    if not api_key:
        raise EnvironmentError(
            "OPENAI_API_KEY environment variable is not set."
        )
    return openai.OpenAI(api_key=api_key)


class OpenAIEmbedder:
    """Embeddings via the OpenAI Embeddings API."""

    def __init__(self, model: str = DEFAULT_OPENAI_MODEL, client=None) -> None:
        self.model = model
        self._client = client if client is not None else _get_openai_client()

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed one batch, retrying up to MAX_RETRIES times with exponential
        back-off.

        Raises
        ------
        RuntimeError
            If all retries are exhausted.
        """
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.embeddings.create(model=self.model, input=texts)
                return [item.embedding for item in response.data]
            except Exception as exc:
                if attempt == MAX_RETRIES:
                    raise RuntimeError(
                        f"Embedding failed after {MAX_RETRIES} attempts: {exc}"
                    ) from exc
                wait = 2 ** (attempt - 1)
                logger.debug("Embedding attempt %d failed (%s); retrying in %ds",
                             attempt, exc, wait)
                time.sleep(wait)
        return []

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), BATCH_SIZE):
            vectors.extend(self._embed_batch(texts[start:start + BATCH_SIZE]))
        return vectors


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

class OllamaEmbedder:
    """Embeddings via a local Ollama server's ``/api/embed`` endpoint."""

    def __init__(self, base_url: str, model: str = DEFAULT_OLLAMA_MODEL) -> None:
        # Derive the API root for endpoints like /api/embed
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self.model = model

    def embed(self, texts: list[str]) -> list[list[float]]:
        url = f"{self._api_root}/api/embed"
        response = requests.post(
            url, json={"model": self.model, "input": texts}, timeout=(10, 120)
        )
        response.raise_for_status()
        embeddings = response.json().get("embeddings") or []
        if len(embeddings) != len(texts):
            raise RuntimeError(
                f"Ollama returned {len(embeddings)} embeddings for {len(texts)} inputs"
            )
        return embeddings


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------

class EmbedderHandle:
    """
    Lazily-initialised, optional embedding backend.

    Parameters
    ----------
    factory:
        Zero-argument callable building the backend, or None when no backend
        is configured.  Called at most once.
    """

    def __init__(self, factory: Optional[Callable[[], Embedder]] = None) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._embedder: Optional[Embedder] = None
        self._attempted = False
        self._error: Optional[str] = None
        self._warned = False

    @classmethod
    def from_config(cls, config) -> "EmbedderHandle":
        provider = config.EMBEDDING_PROVIDER
        if provider == "openai":
            return cls(lambda: OpenAIEmbedder(config.EMBEDDING_MODEL))
        if provider == "ollama":
            model = config.EMBEDDING_MODEL
            if model == DEFAULT_OPENAI_MODEL:
                model = DEFAULT_OLLAMA_MODEL
            return cls(lambda: OllamaEmbedder(config.OLLAMA_BASE_URL, model))
        return cls(None)

    def _warn_once(self, message: str) -> None:
        if self._warned:
            logger.debug("Embedder unavailable: %s", message)
            return
        self._warned = True
        logger.warning("Semantic search disabled: %s", message)

    def get(self) -> Embedder:
        """Return the backend, building it on first call."""
        if self._embedder is not None:
            return self._embedder
        with self._lock:
            if not self._attempted:
                self._attempted = True
                if self._factory is None:
                    self._error = "no embedding provider configured"
                else:
                    try:
                        self._embedder = self._factory()
                    except Exception as exc:
                        self._error = str(exc)
        if self._embedder is None:
            self._warn_once(self._error or "unknown error")
            raise EmbedderUnavailable(self._error or "embedder unavailable")
        return self._embedder

    def available(self) -> bool:
        try:
            self.get()
            return True
        except EmbedderUnavailable:
            return False

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*; backend failures surface as EmbedderUnavailable."""
        embedder = self.get()
        try:
            return embedder.embed(texts)
        except Exception as exc:
            self._warn_once(str(exc))
            raise EmbedderUnavailable(str(exc)) from exc

    def try_embed(self, texts: list[str]) -> Optional[list[list[float]]]:
        """Best-effort :meth:`embed`: returns None instead of raising."""
        try:
            return self.embed(texts)
        except EmbedderUnavailable:
            return None
