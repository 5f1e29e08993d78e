"""Workspace: one project session wiring the repository to its collaborators.

The workspace owns the :class:`ContextSetRepository`, loads and saves the
working copy through a persistence provider, publishes a
:class:`~contextmax.events.GraphChanged` after every successful mutation, and
lazily builds the embedding index and ranker used for search.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from contextmax import export
from contextmax.cache import create_cache
from contextmax.embeddings import EmbedClient
from contextmax.events import EmbedProgress, GraphChange, GraphChanged, StateStore
from contextmax.index import BatchResult, EmbeddingIndex
from contextmax.providers import JsonFilePersistence, LocalFileProvider
from contextmax.ranking import HybridRanker
from contextmax.repository import ContextSetRepository
from contextmax.scope import ProjectScope
from contextmax.search import SearchSession

if TYPE_CHECKING:
    from collections.abc import Iterable

    from contextmax.index import BatchProgress, CancelToken, FileInput
    from contextmax.providers import FileContentProvider, PersistenceProvider
    from contextmax.ranking import RankedFile
    from contextmax.schema import ContextSet, EntryPoint, FunctionRef, SystemBehavior, WorkflowStep
    from contextmax.settings import ContextMaxSettings


class Workspace:
    """Facade over repository, persistence, file access and search for one project."""

    def __init__(
        self,
        settings: ContextMaxSettings,
        *,
        repository: ContextSetRepository | None = None,
        persistence: PersistenceProvider | None = None,
        files: FileContentProvider | None = None,
        store: StateStore | None = None,
        index: EmbeddingIndex | None = None,
        autosave: bool = False,
    ) -> None:
        self.settings = settings
        self.repository = repository or ContextSetRepository()
        self.persistence = persistence or JsonFilePersistence(settings.working_copy_path)
        self.files = files or LocalFileProvider(settings.project_root)
        self.store = store or StateStore()
        self.autosave = autosave
        self.scope = ProjectScope(settings)
        self._index = index
        # Shared by semantic and structural searches
        self.session = SearchSession(HybridRanker(settings.search), self.store)

    @classmethod
    def open(cls, settings: ContextMaxSettings, **kwargs: Any) -> Workspace:
        """Load the working copy (if any) and return a workspace over it."""
        ws = cls(settings, **kwargs)
        ws.reload()
        return ws

    def reload(self) -> None:
        document = self.persistence.load_working_copy()
        self.repository = export.load_document(document) if document is not None else ContextSetRepository()
        self._publish(GraphChange.LOADED, self.repository.names())

    def save(self) -> None:
        self.persistence.save_working_copy(export.to_document(self.repository, self.settings.export.schema_version))
        logger.debug("Working copy saved ({} sets)", len(self.repository))

    def _publish(self, change: GraphChange, names: Iterable[str] = ()) -> None:
        self.store.publish(GraphChanged(change=change, set_names=tuple(names)))

    def _changed(self, change: GraphChange, *names: str) -> None:
        if self.autosave:
            self.save()
        self._publish(change, names)

    # ------------------------------------------------------------------
    # Graph mutations
    # ------------------------------------------------------------------

    def create(self, name: str, description: str = "") -> ContextSet:
        cs = self.repository.create(name, description)
        self._changed(GraphChange.CREATED, cs.name)
        return cs

    def delete(self, name: str) -> None:
        dependents = self.repository.dependents(name)
        self.repository.delete(name)
        self._changed(GraphChange.DELETED, name, *dependents)

    def rename(self, old: str, new: str) -> ContextSet:
        cs = self.repository.rename(old, new)
        self._changed(GraphChange.RENAMED, old, cs.name)
        return cs

    def update(
        self,
        name: str,
        *,
        description: str | None = None,
        workflows: Iterable[WorkflowStep] | None = None,
        entry_points: Iterable[EntryPoint] | None = None,
        system_behavior: SystemBehavior | None = None,
    ) -> ContextSet:
        changes: dict[str, Any] = {}
        if description is not None:
            changes["description"] = description
        if workflows is not None:
            changes["workflows"] = workflows
        if entry_points is not None:
            changes["entry_points"] = entry_points
        if system_behavior is not None:
            changes["system_behavior"] = system_behavior
        cs = self.repository.update(name, **changes)
        self._changed(GraphChange.UPDATED, cs.name)
        return cs

    def add_use(self, parent: str, child: str) -> bool:
        added = self.repository.add_use(parent, child)
        if added:
            self._changed(GraphChange.USES, parent, child)
        return added

    def remove_use(self, parent: str, child: str) -> bool:
        removed = self.repository.remove_use(parent, child)
        if removed:
            self._changed(GraphChange.USES, parent, child)
        return removed

    def add_file(
        self, set_name: str, path: str, *, function_refs: Iterable[FunctionRef] = (), comment: str = ""
    ) -> bool:
        added = self.repository.add_file_to_set(set_name, path, function_refs=function_refs, comment=comment)
        if added:
            self._changed(GraphChange.FILES, set_name)
        return added

    def remove_file(self, set_name: str, path_or_id: str) -> bool:
        file_id = self.file_id(path_or_id)
        removed = file_id is not None and self.repository.remove_file_from_set(set_name, file_id)
        if removed:
            self._changed(GraphChange.FILES, set_name)
        return removed

    def set_function_refs(self, set_name: str, path_or_id: str, refs: Iterable[FunctionRef]) -> None:
        file_id = self.file_id(path_or_id)
        self.repository.set_function_refs(set_name, file_id or path_or_id, refs)
        self._changed(GraphChange.FILES, set_name)

    def prune_manifest(self) -> list[str]:
        removed = self.repository.prune_manifest()
        if removed:
            self._changed(GraphChange.PRUNED)
        return removed

    def file_id(self, path_or_id: str) -> str | None:
        """Manifest id for a path or an id, None when unknown."""
        if path_or_id in self.repository.manifest:
            return path_or_id
        return self.repository.manifest.find_by_path(path_or_id)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_json(self) -> str:
        return export.to_json(self.repository, self.settings.export.schema_version)

    def closure(self, name: str) -> list[export.ResolvedFile]:
        return export.resolve_closure(self.repository, name)

    async def render_markdown(self, name: str) -> str:
        return await export.render_markdown(self.repository, name, self.files)

    async def estimate_token_count(self, name: str) -> int:
        return await export.estimate_token_count(self.repository, name, self.files, self.settings.search.tokenizer)

    # ------------------------------------------------------------------
    # Embeddings and search
    # ------------------------------------------------------------------

    @property
    def index(self) -> EmbeddingIndex:
        if self._index is None:
            client = EmbedClient(self.settings.embeddings)
            cache = create_cache(self.settings.cache, self.settings.cache_directory, client.model)
            self._index = EmbeddingIndex(client, cache, self.settings.embeddings)
        return self._index

    async def embed_project(
        self,
        files: list[FileInput] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> BatchResult:
        """Embed every project file, restoring a matching project snapshot when possible."""
        if files is None:
            files = await self.scope.load_files()
        restored = await self.index.load_snapshot(files)
        if restored is not None and set(restored) == {f.path for f in files}:
            logger.info("Project snapshot is current ({} files)", len(restored))
            self.store.publish(EmbedProgress(done=len(files), total=len(files), percent=100))
            return BatchResult(vectors=restored, total=len(files), cache_hits=len(files))

        def _progress(p: BatchProgress) -> None:
            self.store.publish(EmbedProgress(done=p.done, total=p.total, percent=p.percent, path=p.path))

        result = await self.index.embed_files(files, progress=_progress, cancel=cancel)
        if not result.cancelled and not result.failed:
            await self.index.store_snapshot(files, result.vectors)
        return result

    def ranker(self, *, semantic: bool = True) -> HybridRanker:
        return HybridRanker(self.settings.search, self.index if semantic else None)

    async def search(
        self,
        query: str,
        files: list[FileInput] | None = None,
        *,
        limit: int | None = None,
        semantic: bool = True,
    ) -> list[RankedFile] | None:
        """Rank project files for *query*.  None when a newer search superseded this one."""
        source = self.scope.load_files if files is None else files
        return await self.session.search(query, source, limit=limit, ranker=self.ranker(semantic=semantic))

    async def close(self) -> None:
        if self._index is not None:
            await self._index.cache.close()
