"""Tests for the embedding index: caching, dedupe, batches and snapshots."""

from __future__ import annotations

import asyncio

import pytest

from contextmax.cache import EmbedCache, MemoryEmbedCache
from contextmax.embeddings import EmbeddingError
from contextmax.index import (
    BatchProgress,
    CancelToken,
    EmbeddingIndex,
    FileInput,
    project_fingerprint,
)
from contextmax.settings import EmbeddingSettings

VOCAB = ["login", "user", "invoice", "total", "file", "named"]

FILES = [
    FileInput("src/login.py", "def login(user): return user"),
    FileInput("src/invoice.py", "def total(invoice): return invoice.total"),
    FileInput("src/user.py", "class User: pass"),
    FileInput("README.md", "a project"),
]


class GatedClient:
    """Embedder that blocks until ``gate`` is set, so calls overlap."""

    def __init__(self, *, fail: bool = False) -> None:
        self.gate = asyncio.Event()
        self.calls = 0
        self.fail = fail

    @property
    def model(self) -> str:
        return "gated"

    async def embed_one(self, text: str) -> list[float]:
        self.calls += 1
        await self.gate.wait()
        if self.fail:
            msg = "model unavailable"
            raise EmbeddingError(msg)
        return [float(len(text))]


# ---------------------------------------------------------------------------
# get_or_compute
# ---------------------------------------------------------------------------


class TestGetOrCompute:
    async def test_miss_then_hit(self, make_index):
        index = make_index(VOCAB)
        key = EmbedCache.hash_text("login user")
        first = await index.get_or_compute(key, "login user")
        second = await index.get_or_compute(key, "login user")
        assert first == second == [1.0, 1.0, 0.0, 0.0, 0.0, 0.0]
        assert index.client.calls == ["login user"]
        assert await index.cache.get(key) == first

    async def test_concurrent_requests_share_one_computation(self, embed_settings):
        client = GatedClient()
        index = EmbeddingIndex(client, MemoryEmbedCache(), embed_settings)
        tasks = [asyncio.create_task(index.get_or_compute("fp", "same text")) for _ in range(3)]
        await asyncio.sleep(0)
        client.gate.set()
        results = await asyncio.gather(*tasks)
        assert results == [[9.0]] * 3
        assert client.calls == 1

    async def test_failure_reaches_every_waiter(self, embed_settings):
        client = GatedClient(fail=True)
        index = EmbeddingIndex(client, MemoryEmbedCache(), embed_settings)
        tasks = [asyncio.create_task(index.get_or_compute("fp", "text")) for _ in range(3)]
        await asyncio.sleep(0)
        client.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, EmbeddingError) for r in results)
        assert client.calls == 1
        assert await index.cache.get("fp") is None

    async def test_retry_after_failure(self, make_index):
        index = make_index(VOCAB, fail_on=("boom",))
        with pytest.raises(EmbeddingError):
            await index.get_or_compute("fp", "boom")
        assert index._inflight == {}


class TestEmbedQuery:
    async def test_lru_eviction(self, make_index):
        index = make_index(VOCAB)
        index._settings = EmbeddingSettings(query_cache_size=2)
        for query in ("login", "user", "login", "total", "user"):
            await index.embed_query(query)
        assert index.client.calls == ["login", "user", "total", "user"]

    async def test_query_is_stripped(self, make_index):
        index = make_index(VOCAB)
        assert await index.embed_query("  login ") == await index.embed_query("login")
        assert index.client.calls == ["login"]


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestEmbedFiles:
    async def test_all_files_embedded(self, make_index):
        index = make_index(VOCAB)
        result = await index.embed_files(FILES)
        assert set(result.vectors) == {f.path for f in FILES}
        login = result.vectors["src/login.py"]
        assert login.content[VOCAB.index("login")] == 2.0
        assert login.filename is not None
        assert not result.cancelled
        assert result.total == 4

    async def test_progress_runs_from_zero_to_hundred(self, make_index):
        index = make_index(VOCAB)
        seen: list[BatchProgress] = []
        await index.embed_files(FILES, progress=seen.append)
        percents = [p.percent for p in seen]
        assert percents[0] == 0
        assert percents[-1] == 100
        assert percents == sorted(percents)
        assert len(seen) == len(FILES) + 1

    async def test_failures_are_collected(self, make_index):
        index = make_index(VOCAB, fail_on=("invoice.total",))
        result = await index.embed_files(FILES)
        assert list(result.failed) == ["src/invoice.py"]
        assert "src/invoice.py" not in result.vectors
        assert len(result.vectors) == 3

    async def test_second_run_is_served_from_cache(self, make_index):
        index = make_index(VOCAB)
        first = await index.embed_files(FILES)
        calls = len(index.client.calls)
        second = await index.embed_files(FILES)
        assert len(index.client.calls) == calls
        assert second.computed == 0
        assert second.cache_hits == 8
        assert first.computed == 8
        assert second.vectors == first.vectors

    async def test_identical_content_computed_once(self, make_index):
        index = make_index(VOCAB)
        await index.embed_files([FileInput("a.py", "x")], with_filename=False)
        await index.embed_files([FileInput("a.py", "x")], with_filename=False)
        assert len(index.client.calls) == 1

    async def test_cancelled_before_start(self, make_index):
        index = make_index(VOCAB)
        token = CancelToken()
        token.cancel()
        result = await index.embed_files(FILES, cancel=token)
        assert result.cancelled
        assert result.vectors == {}
        assert index.client.calls == []

    async def test_cancel_mid_batch_keeps_cache_writes(self, make_index):
        index = make_index(VOCAB)
        token = CancelToken()

        def _progress(p: BatchProgress) -> None:
            if p.done == 1:
                token.cancel()

        result = await index.embed_files(FILES, progress=_progress, cancel=token)
        assert result.cancelled
        assert result.vectors == {}
        assert len(index.cache) >= 1

    def test_empty_batch_percent(self):
        assert BatchProgress(done=0, total=0).percent == 100


# ---------------------------------------------------------------------------
# Project snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_project_fingerprint_ignores_order(self):
        assert project_fingerprint(FILES) == project_fingerprint(list(reversed(FILES)))

    def test_project_fingerprint_tracks_content(self):
        changed = [*FILES[:-1], FileInput("README.md", "a different project")]
        assert project_fingerprint(FILES) != project_fingerprint(changed)

    async def test_store_and_load(self, make_index):
        index = make_index(VOCAB)
        result = await index.embed_files(FILES)
        await index.store_snapshot(FILES, result.vectors)
        assert await index.load_snapshot(FILES) == result.vectors

    async def test_changed_project_has_no_snapshot(self, make_index):
        index = make_index(VOCAB)
        result = await index.embed_files(FILES)
        await index.store_snapshot(FILES, result.vectors)
        assert await index.load_snapshot(FILES[:2]) is None
