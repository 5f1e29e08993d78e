"""Embedding client and text builders for contextmax.

Uses litellm to route embedding requests to any OpenAI-compatible endpoint
(self-hosted TEI, Ollama, OpenAI, ...) via a single code path.  The model
itself is a black box: ``text -> vector``.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import litellm
import numpy as np
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from contextmax.settings import EmbeddingSettings


class EmbeddingError(Exception):
    """Raised when an embedding operation fails."""


class EmbedClient:
    """Async embedding client backed by litellm.

    When ``base_url`` is set (e.g. self-hosted TEI), the model is prefixed
    with ``openai/`` so litellm treats it as an OpenAI-compatible API.
    """

    def __init__(self, settings: EmbeddingSettings) -> None:
        self._settings = settings
        self._batch_size = max(1, settings.batch_size)
        self._timeout = settings.timeout_s

        if settings.base_url:
            model = settings.model
            if not model.startswith("openai/"):
                model = f"openai/{model}"
            self._model = model
            self._api_base: str | None = settings.base_url
            self._api_key: str | None = "unused"  # TEI ignores the key, the OpenAI SDK requires one
        else:
            self._model = settings.model
            self._api_base = None
            self._api_key = None

    @property
    def model(self) -> str:
        return self._model

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts, chunking by ``batch_size``.

        Returns vectors in the same order as *texts*.  Raises
        ``EmbeddingError`` on failure.
        """
        if not texts:
            return []

        all_vectors: list[list[float]] = []
        for i in range(0, len(texts), self._batch_size):
            chunk = texts[i : i + self._batch_size]
            kwargs: dict[str, Any] = {"model": self._model, "input": chunk, "timeout": self._timeout}
            if self._api_base:
                kwargs["api_base"] = self._api_base
            if self._api_key:
                kwargs["api_key"] = self._api_key
            try:
                response = await litellm.aembedding(**kwargs)
                vectors = [_as_vector(item) for item in response.data]
            except Exception as exc:
                msg = f"Embedding failed for batch [{i}:{i + len(chunk)}]: {exc}"
                logger.error(msg)
                raise EmbeddingError(msg) from exc
            if len(vectors) != len(chunk):
                msg = f"Embedding endpoint returned {len(vectors)} vectors for {len(chunk)} inputs"
                raise EmbeddingError(msg)
            all_vectors.extend(vectors)

        return all_vectors

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text.  Convenience wrapper around :meth:`embed_batch`."""
        result = await self.embed_batch([text])
        return result[0]

    async def health_check(self) -> bool:
        """True if the embedding service answers a small request."""
        try:
            await self.embed_one("health check")
        except EmbeddingError:
            return False
        else:
            return True


def _as_vector(item: Any) -> list[float]:
    # litellm returns objects with .embedding, some providers plain dicts
    embedding = item["embedding"] if isinstance(item, dict) else item.embedding
    return [float(x) for x in embedding]


# ---------------------------------------------------------------------------
# Embed text builders
# ---------------------------------------------------------------------------


def build_embed_text(path: str, content: str, *, head_chars: int = 1000, max_chars: int = 3000) -> str:
    """Text embedded for a file: its path followed by the head of its content.

    >>> build_embed_text("src/a.py", "x = 1")
    'src/a.py x = 1'
    """
    text = f"{path} {content[:head_chars]}"
    return text[:max_chars]


_WORD_SPLIT = re.compile(r"[^A-Za-z0-9]+")
_CAMEL_SPLIT = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def filename_words(path: str) -> list[str]:
    """Split a file stem into lowercase words (``userAuth_service`` → user auth service)."""
    stem = PurePosixPath(path).stem
    words: list[str] = []
    for chunk in _WORD_SPLIT.split(stem):
        words.extend(w.lower() for w in _CAMEL_SPLIT.split(chunk) if w)
    return words


def build_filename_text(path: str) -> str:
    """Text embedded for a file's name, e.g. ``file named user auth service``."""
    words = filename_words(path)
    return f"file named {' '.join(words) if words else PurePosixPath(path).name}"


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, zero or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)
