"""Search session: a newer query supersedes an in-flight one.

Each call to :meth:`SearchSession.search` takes a new generation number and
cancels the task of the previous query.  A search that finishes after a
newer one started returns ``None`` and its results are never published, so
observers only ever see results of the latest query.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from contextmax.events import SearchCompleted

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from contextmax.events import StateStore
    from contextmax.index import FileInput
    from contextmax.ranking import HybridRanker, RankedFile

    FileSource = list[FileInput] | Callable[[], Awaitable[list[FileInput]]]


class SearchSession:
    """Runs ranker queries so that only the latest query's results land."""

    def __init__(self, ranker: HybridRanker, store: StateStore | None = None) -> None:
        self.ranker = ranker
        self.store = store
        self._generation = 0
        self._task: asyncio.Task[list[RankedFile]] | None = None
        self.results: list[RankedFile] = []
        self.query = ""

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def search(
        self,
        query: str,
        files: FileSource,
        *,
        limit: int | None = None,
        ranker: HybridRanker | None = None,
    ) -> list[RankedFile] | None:
        """Rank *files* for *query*; ``None`` when superseded by a newer search.

        *files* is either the file list or an async loader for it.  The loader
        runs inside the superseded task, so the generation is claimed before
        any file is read.  *ranker* overrides the session's ranker for this call.
        """
        self._generation += 1
        generation = self._generation
        previous = self._task
        if previous is not None and not previous.done():
            logger.debug("Superseding in-flight search (generation {})", generation - 1)
            previous.cancel()

        task = asyncio.ensure_future(self._rank(ranker or self.ranker, query, files, limit))
        self._task = task
        try:
            results = await task
        except asyncio.CancelledError:
            if self.is_current(generation):
                raise
            return None
        finally:
            if self._task is task:
                self._task = None

        if not self.is_current(generation):
            logger.debug("Discarding stale results for {!r}", query)
            return None

        self.results = results
        self.query = query
        if self.store is not None:
            self.store.publish(SearchCompleted(query=query, generation=generation, result_count=len(results)))
        return results

    def cancel(self) -> None:
        """Invalidate the in-flight search, if any."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @staticmethod
    async def _rank(ranker: HybridRanker, query: str, files: FileSource, limit: int | None) -> list[RankedFile]:
        if callable(files):
            files = await files()
        return await ranker.rank(query, files, limit=limit)
