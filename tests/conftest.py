"""Shared test fixtures for contextmax."""

from __future__ import annotations

import re

import pytest

from contextmax.cache import MemoryEmbedCache
from contextmax.embeddings import EmbeddingError
from contextmax.index import EmbeddingIndex
from contextmax.repository import ContextSetRepository
from contextmax.settings import ContextMaxSettings, EmbeddingSettings


@pytest.fixture
def settings(tmp_path):
    """Create test settings pointing to a temporary directory."""
    return ContextMaxSettings(project_root=tmp_path)


@pytest.fixture
def repo():
    return ContextSetRepository()


# ---------------------------------------------------------------------------
# Fake embedding model
# ---------------------------------------------------------------------------


class FakeEmbedClient:
    """Bag-of-words embedder over a fixed vocabulary.

    A text's vector counts how often each vocabulary word occurs in it, so
    texts sharing words are similar and texts sharing none score 0.  Texts
    containing a word from *fail_on* raise ``EmbeddingError``.
    """

    def __init__(self, vocabulary: list[str], fail_on: tuple[str, ...] = ()) -> None:
        self.vocabulary = vocabulary
        self.fail_on = fail_on
        self.calls: list[str] = []

    @property
    def model(self) -> str:
        return "fake-bow"

    def _vector(self, text: str) -> list[float]:
        words = re.findall(r"[a-z]+", text.lower())
        return [float(words.count(term)) for term in self.vocabulary]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_one(t) for t in texts]

    async def embed_one(self, text: str) -> list[float]:
        self.calls.append(text)
        if any(bad in text for bad in self.fail_on):
            msg = f"refusing to embed {text[:20]!r}"
            raise EmbeddingError(msg)
        return self._vector(text)


@pytest.fixture
def embed_settings():
    return EmbeddingSettings(workers=2)


@pytest.fixture
def make_index(embed_settings):
    def _make(vocabulary: list[str], fail_on: tuple[str, ...] = ()) -> EmbeddingIndex:
        return EmbeddingIndex(FakeEmbedClient(vocabulary, fail_on), MemoryEmbedCache(), embed_settings)

    return _make
