"""Embedding index: cached, de-duplicated, bounded-concurrency embedding.

:class:`EmbeddingIndex` sits between the embedding model and the
content-addressed cache:

- :meth:`EmbeddingIndex.get_or_compute` returns the cached vector for a
  fingerprint or computes, stores and returns it.  Concurrent callers asking
  for the same fingerprint share one in-flight future.
- :meth:`EmbeddingIndex.embed_files` embeds many files with a fixed worker
  count, reports progress as a percentage, and stops picking up new files
  once cancelled.  Cache writes of files that finished anyway are kept, but a
  cancelled batch reports no vectors.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from contextmax.cache import CACHE_ERRORS, EmbedCache
from contextmax.embeddings import EmbeddingError, build_embed_text, build_filename_text

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from contextmax.embeddings import EmbedClient
    from contextmax.settings import EmbeddingSettings


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileInput:
    """A file to embed: project-relative path and its text."""

    path: str
    content: str


@dataclass(frozen=True)
class FileVectors:
    """Embeddings of one file: its content and (optionally) its name."""

    path: str
    fingerprint: str
    content: list[float]
    filename: list[float] | None = None


@dataclass(frozen=True)
class BatchProgress:
    done: int
    total: int
    path: str = ""

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return min(100, (self.done * 100) // self.total)


@dataclass
class BatchResult:
    """Outcome of :meth:`EmbeddingIndex.embed_files`.

    ``vectors`` is empty when the batch was cancelled.
    """

    vectors: dict[str, FileVectors] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    total: int = 0
    cache_hits: int = 0
    computed: int = 0


class CancelToken:
    """Cooperative cancellation flag checked between files."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def content_fingerprint(content: str) -> str:
    """SHA-256 hex of raw file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def project_fingerprint(files: Iterable[FileInput], project_name: str = "") -> str:
    """Fingerprint of a whole project: sorted ``path:contentHash`` pairs."""
    pairs = sorted(f"{f.path}:{content_fingerprint(f.content)}" for f in files)
    descriptor = f"project:{project_name}|files:{len(pairs)}|{'|'.join(pairs)}"
    return EmbedCache.hash_text(descriptor)


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


class EmbeddingIndex:
    """Cached access to embeddings for files and queries."""

    def __init__(self, client: EmbedClient, cache: EmbedCache, settings: EmbeddingSettings) -> None:
        self.client = client
        self.cache = cache
        self._settings = settings
        self._inflight: dict[str, asyncio.Future[list[float]]] = {}
        self._query_cache: OrderedDict[str, list[float]] = OrderedDict()
        self._hits = 0
        self._computed = 0

    async def embed(self, text: str) -> list[float]:
        """Embed *text* directly, bypassing the cache."""
        return await self.client.embed_one(text)

    async def get_or_compute(self, fingerprint: str, text: str) -> list[float]:
        """Return the vector for *fingerprint*, computing it from *text* on a miss.

        The cache entry is written before the vector is published to any
        concurrent waiter.  Raises ``EmbeddingError`` when the model fails.  A
        failing cache backend counts as a miss on read and is skipped on write.
        """
        try:
            cached = await self.cache.get(fingerprint)
        except CACHE_ERRORS as exc:
            logger.warning("Embedding cache read failed, recomputing: {}", exc)
            cached = None
        if cached is not None:
            self._hits += 1
            return cached

        pending = self._inflight.get(fingerprint)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[list[float]] = asyncio.get_running_loop().create_future()
        # Mark the exception as retrieved when nobody else was waiting
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[fingerprint] = future
        try:
            vector = await self.client.embed_one(text)
            try:
                await self.cache.put(fingerprint, vector)
            except CACHE_ERRORS as exc:
                logger.warning("Embedding cache write failed, not cached: {}", exc)
        except BaseException as exc:
            if not future.done():
                future.set_exception(exc if isinstance(exc, Exception) else EmbeddingError("cancelled"))
            raise
        else:
            self._computed += 1
            future.set_result(vector)
            return vector
        finally:
            self._inflight.pop(fingerprint, None)

    async def embed_query(self, query: str) -> list[float]:
        """Embed a search query, memoized in a small LRU."""
        key = query.strip()
        if key in self._query_cache:
            self._query_cache.move_to_end(key)
            return self._query_cache[key]
        vector = await self.client.embed_one(key)
        self._query_cache[key] = vector
        while len(self._query_cache) > max(0, self._settings.query_cache_size):
            self._query_cache.popitem(last=False)
        return vector

    async def embed_file(self, file: FileInput, *, with_filename: bool = True) -> FileVectors:
        """Content (and filename) vectors of one file."""
        text = build_embed_text(
            file.path, file.content, head_chars=self._settings.head_chars, max_chars=self._settings.max_chars
        )
        fingerprint = EmbedCache.hash_text(text)
        content_vec = await self.get_or_compute(fingerprint, text)

        name_vec: list[float] | None = None
        if with_filename:
            name_text = build_filename_text(file.path)
            try:
                name_vec = await self.get_or_compute(EmbedCache.hash_text(name_text), name_text)
            except EmbeddingError as exc:
                logger.debug("Filename embedding failed for {}: {}", file.path, exc)
        return FileVectors(path=file.path, fingerprint=fingerprint, content=content_vec, filename=name_vec)

    async def embed_files(
        self,
        files: list[FileInput],
        *,
        progress: Callable[[BatchProgress], None] | None = None,
        cancel: CancelToken | None = None,
        with_filename: bool = True,
    ) -> BatchResult:
        """Embed *files* with at most ``workers`` in flight.

        *progress* is called with 0% first and once after every finished file.
        Per-file failures are collected in ``BatchResult.failed``.
        """
        total = len(files)
        result = BatchResult(total=total)
        semaphore = asyncio.Semaphore(self._settings.workers)
        done = 0
        hits_before, computed_before = self._hits, self._computed

        def _report(path: str) -> None:
            if progress is not None:
                progress(BatchProgress(done=done, total=total, path=path))

        _report("")

        async def _one(file: FileInput) -> None:
            nonlocal done
            async with semaphore:
                if cancel is not None and cancel.cancelled:
                    return
                try:
                    vectors = await self.embed_file(file, with_filename=with_filename)
                except (EmbeddingError, OSError) as exc:
                    logger.warning("Embedding failed for {}: {}", file.path, exc)
                    result.failed[file.path] = str(exc)
                else:
                    result.vectors[file.path] = vectors
                done += 1
                _report(file.path)

        await asyncio.gather(*(_one(f) for f in files))

        result.cache_hits = self._hits - hits_before
        result.computed = self._computed - computed_before
        if cancel is not None and cancel.cancelled:
            logger.info("Embedding batch cancelled after {}/{} files", done, total)
            result.cancelled = True
            result.vectors = {}
            return result

        logger.info(
            "Embedded {} files ({} cache hits, {} computed, {} failed)",
            len(result.vectors),
            result.cache_hits,
            result.computed,
            len(result.failed),
        )
        return result

    # -- project snapshots ----------------------------------------------------

    async def load_snapshot(self, files: list[FileInput]) -> dict[str, FileVectors] | None:
        """Restore every file's vectors from the project snapshot, if one matches."""
        key = project_fingerprint(files)
        try:
            snapshot = await self.cache.get_snapshot(key)
        except CACHE_ERRORS as exc:
            logger.warning("Project snapshot read failed: {}", exc)
            return None
        if snapshot is None:
            return None
        restored: dict[str, FileVectors] = {}
        for path, entry in snapshot.items():
            restored[path] = FileVectors(
                path=path,
                fingerprint=str(entry.get("fingerprint", "")),
                content=list(entry["content"]),
                filename=list(entry["filename"]) if entry.get("filename") else None,
            )
        logger.debug("Restored project snapshot {} ({} files)", key[:12], len(restored))
        return restored

    async def store_snapshot(self, files: list[FileInput], vectors: dict[str, FileVectors]) -> str:
        key = project_fingerprint(files)
        snapshot = {
            path: {"fingerprint": v.fingerprint, "content": v.content, "filename": v.filename}
            for path, v in sorted(vectors.items())
        }
        try:
            await self.cache.put_snapshot(key, snapshot)
        except CACHE_ERRORS as exc:
            logger.warning("Project snapshot write failed: {}", exc)
        return key
