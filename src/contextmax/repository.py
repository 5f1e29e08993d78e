"""Context set repository: the named-set graph and its mutations.

The repository owns the :class:`~contextmax.manifest.FileManifest` and a
``name -> ContextSet`` mapping whose ``uses`` lists form a directed acyclic
graph.  Every public mutation validates first and only then swaps in new
frozen values, so a raised error always leaves the repository untouched.

Names are accepted with or without the ``context:`` prefix; the repository
stores and reports them unprefixed.
"""

from __future__ import annotations

from dataclasses import replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

from contextmax.errors import (
    CircularDependencyError,
    DuplicateNameError,
    FileNotInManifestError,
    InvalidNameError,
    NotFoundError,
    SelfReferenceError,
    SetNotFoundError,
    ValidationError,
)
from contextmax.manifest import FileManifest
from contextmax.schema import (
    ContextSet,
    EntryPoint,
    FileContextRef,
    FunctionRef,
    PartialFile,
    SystemBehavior,
    WorkflowStep,
    make_file_reference,
    strip_prefix,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


class MoveDirection(StrEnum):
    UP = "up"
    DOWN = "down"


class _Unset:
    """Marker for keyword arguments the caller did not pass."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def validate_name(name: str) -> str:
    """Return the unprefixed form of *name* or raise :class:`InvalidNameError`."""
    bare = strip_prefix(name.strip()) if isinstance(name, str) else ""
    if not bare:
        raise InvalidNameError(name, "name must not be empty")
    if not bare[0].isalpha():
        raise InvalidNameError(name, "name must start with a letter")
    if any(ch.isspace() for ch in bare):
        raise InvalidNameError(name, "name must not contain whitespace")
    return bare


class ContextSetRepository:
    """Owns the context-set graph and the files manifest."""

    def __init__(self, manifest: FileManifest | None = None) -> None:
        self.manifest = manifest if manifest is not None else FileManifest()
        self._sets: dict[str, ContextSet] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._sets)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and strip_prefix(name) in self._sets

    def __iter__(self) -> Iterator[ContextSet]:
        return iter(list(self._sets.values()))

    def names(self) -> list[str]:
        """Set names in creation order."""
        return list(self._sets)

    def get(self, name: str) -> ContextSet:
        try:
            return self._sets[strip_prefix(name)]
        except KeyError:
            raise SetNotFoundError(strip_prefix(name)) from None

    def dependents(self, name: str) -> list[str]:
        """Names of the sets whose ``uses`` contains *name*."""
        bare = strip_prefix(name)
        return [s.name for s in self._sets.values() if bare in s.uses]

    def file_contexts_index(self) -> dict[str, list[FileContextRef]]:
        """Map each referenced file id to the sets that include it.

        Ids appear in manifest order; sets appear in creation order.
        """
        index: dict[str, list[FileContextRef]] = {}
        for cs in self._sets.values():
            for ref in cs.files:
                refs = ref.function_refs if isinstance(ref, PartialFile) else ()
                index.setdefault(ref.file_id, []).append(FileContextRef(set_name=cs.name, function_refs=refs))
        order = {fid: i for i, fid in enumerate(self.manifest.ids())}
        return dict(sorted(index.items(), key=lambda kv: order.get(kv[0], len(order))))

    def referenced_file_ids(self) -> set[str]:
        ids: set[str] = set()
        for cs in self._sets.values():
            ids |= cs.referenced_file_ids()
        return ids

    # ------------------------------------------------------------------
    # Set lifecycle
    # ------------------------------------------------------------------

    def create(self, name: str, description: str = "") -> ContextSet:
        """Create an empty set.  Raises ``InvalidNameError`` / ``DuplicateNameError``."""
        bare = validate_name(name)
        if bare in self._sets:
            raise DuplicateNameError(bare)
        cs = ContextSet(name=bare, description=description)
        self._sets[bare] = cs
        logger.info("Created context set {}", bare)
        return cs

    def delete(self, name: str) -> None:
        """Delete a set and strip it from every other set's ``uses``."""
        bare = self.get(name).name
        updated = {
            other.name: replace(other, uses=tuple(u for u in other.uses if u != bare))
            for other in self._sets.values()
            if other.name != bare and bare in other.uses
        }
        del self._sets[bare]
        self._sets.update(updated)
        logger.info("Deleted context set {} ({} dependents updated)", bare, len(updated))

    def rename(self, old: str, new: str) -> ContextSet:
        """Rename a set, rewriting every ``uses`` entry that pointed at it."""
        current = self.get(old)
        target = validate_name(new)
        if target == current.name:
            return current
        if target in self._sets:
            raise DuplicateNameError(target)

        renamed = replace(current, name=target)
        rebuilt: dict[str, ContextSet] = {}
        for cs in self._sets.values():
            if cs.name == current.name:
                rebuilt[target] = renamed
            elif current.name in cs.uses:
                rebuilt[cs.name] = replace(cs, uses=tuple(target if u == current.name else u for u in cs.uses))
            else:
                rebuilt[cs.name] = cs
        self._sets = rebuilt
        logger.info("Renamed context set {} -> {}", current.name, target)
        return renamed

    def update(
        self,
        name: str,
        *,
        description: str = UNSET,
        workflows: Iterable[WorkflowStep] = UNSET,
        entry_points: Iterable[EntryPoint] = UNSET,
        system_behavior: SystemBehavior | None = UNSET,
    ) -> ContextSet:
        """Replace any of the set's metadata fields in one step."""
        cs = self.get(name)
        changes: dict[str, Any] = {}
        if description is not UNSET:
            changes["description"] = description or ""
        if workflows is not UNSET:
            steps = tuple(workflows)
            for step in steps:
                self._require_file(step.file_id)
            changes["workflows"] = steps
        if entry_points is not UNSET:
            eps = tuple(entry_points)
            for ep in eps:
                self._require_file(ep.file_id)
            changes["entry_points"] = eps
        if system_behavior is not UNSET:
            changes["system_behavior"] = system_behavior
        return self._commit(replace(cs, **changes))

    # ------------------------------------------------------------------
    # Uses edges
    # ------------------------------------------------------------------

    def add_use(self, parent: str, child: str) -> bool:
        """Add a ``parent uses child`` edge.

        Returns False when the edge already exists.  Raises
        ``SelfReferenceError`` / ``CircularDependencyError`` before any change
        when the edge would close a cycle, ``SetNotFoundError`` when either
        set is missing.
        """
        p = self.get(parent)
        c = self.get(child)
        if p.name == c.name:
            raise SelfReferenceError(p.name)
        if c.name in p.uses:
            return False
        cycle = self._path_between(c.name, p.name)
        if cycle is not None:
            raise CircularDependencyError(p.name, c.name, [p.name, *cycle])
        self._commit(replace(p, uses=(*p.uses, c.name)))
        logger.debug("{} uses {}", p.name, c.name)
        return True

    def remove_use(self, parent: str, child: str) -> bool:
        p = self.get(parent)
        bare = strip_prefix(child)
        if bare not in p.uses:
            return False
        self._commit(replace(p, uses=tuple(u for u in p.uses if u != bare)))
        return True

    def _path_between(self, start: str, target: str) -> list[str] | None:
        """Depth-first search along ``uses`` from *start*; the path to *target* or None."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        visited: set[str] = set()
        while stack:
            node, path = stack.pop()
            if node == target:
                return path
            if node in visited:
                continue
            visited.add(node)
            cs = self._sets.get(node)
            if cs is None:
                continue
            for nxt in reversed(cs.uses):
                if nxt not in visited:
                    stack.append((nxt, [*path, nxt]))
        return None

    def find_cycle(self, sets: dict[str, ContextSet] | None = None) -> list[str] | None:
        """Return one cycle in the ``uses`` graph, or None when it is acyclic."""
        graph = self._sets if sets is None else sets
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(graph, white)
        trail: list[str] = []

        def visit(node: str) -> list[str] | None:
            color[node] = grey
            trail.append(node)
            for nxt in graph[node].uses:
                if nxt not in color:
                    continue
                if color[nxt] == grey:
                    return [*trail[trail.index(nxt) :], nxt]
                if color[nxt] == white:
                    found = visit(nxt)
                    if found:
                        return found
            trail.pop()
            color[node] = black
            return None

        for name in graph:
            if color[name] == white:
                found = visit(name)
                if found:
                    return found
        return None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def add_file_to_set(
        self,
        set_name: str,
        path: str,
        *,
        function_refs: Iterable[FunctionRef] = (),
        comment: str = "",
    ) -> bool:
        """Register *path* in the manifest and add it to the set.

        Returns False (and changes nothing in the set) when the file is
        already present.
        """
        cs = self.get(set_name)
        file_id = self.manifest.resolve_path(path, comment)
        if cs.find_file(file_id) is not None:
            return False
        ref = make_file_reference(file_id, tuple(function_refs))
        self._commit(replace(cs, files=(*cs.files, ref)))
        logger.debug("Added {} ({}) to {}", path, file_id, cs.name)
        return True

    def add_file_id_to_set(self, set_name: str, file_id: str) -> bool:
        """Add an already registered file id to the set."""
        cs = self.get(set_name)
        self._require_file(file_id)
        if cs.find_file(file_id) is not None:
            return False
        self._commit(replace(cs, files=(*cs.files, make_file_reference(file_id))))
        return True

    def remove_file_from_set(self, set_name: str, file_id: str) -> bool:
        """Remove a file reference.  The manifest entry is kept."""
        cs = self.get(set_name)
        if cs.find_file(file_id) is None:
            return False
        self._commit(replace(cs, files=tuple(r for r in cs.files if r.file_id != file_id)))
        return True

    def set_function_refs(
        self, set_name: str, file_id: str, refs: Iterable[FunctionRef], comment: str | None = None
    ) -> None:
        """Narrow (or widen) a file reference.

        An empty *refs* turns the reference back into a whole-file inclusion;
        a non-empty one turns it into a partial inclusion with the same id.
        """
        cs = self.get(set_name)
        self._require_file(file_id)
        current = cs.find_file(file_id)
        if current is None:
            msg = f"File {file_id!r} is not part of context set {cs.name!r}"
            raise NotFoundError(msg)
        if comment is None and isinstance(current, PartialFile):
            comment = current.comment
        new_ref = make_file_reference(file_id, tuple(refs), comment)
        files = tuple(new_ref if r.file_id == file_id else r for r in cs.files)
        self._commit(replace(cs, files=files))

    def prune_manifest(self) -> list[str]:
        """Drop manifest entries that no set references any more."""
        return self.manifest.prune(self.referenced_file_ids())

    # ------------------------------------------------------------------
    # Workflow steps
    # ------------------------------------------------------------------

    def add_workflow_step(
        self, set_name: str, description: str, file_id: str | None = None, index: int | None = None
    ) -> ContextSet:
        cs = self.get(set_name)
        self._require_file(file_id)
        steps = list(cs.workflows)
        step = WorkflowStep(description=description, file_id=file_id)
        if index is None:
            steps.append(step)
        else:
            steps.insert(index, step)
        return self._commit(replace(cs, workflows=tuple(steps)))

    def remove_workflow_step(self, set_name: str, index: int) -> ContextSet:
        cs = self.get(set_name)
        steps = list(cs.workflows)
        self._check_index(steps, index, "workflow step")
        del steps[index]
        return self._commit(replace(cs, workflows=tuple(steps)))

    def move_workflow_step(self, set_name: str, index: int, direction: MoveDirection | str) -> bool:
        """Swap a step with its neighbour.  Returns False at either end of the list."""
        cs = self.get(set_name)
        steps = list(cs.workflows)
        self._check_index(steps, index, "workflow step")
        target = index - 1 if MoveDirection(direction) is MoveDirection.UP else index + 1
        if not 0 <= target < len(steps):
            return False
        steps[index], steps[target] = steps[target], steps[index]
        self._commit(replace(cs, workflows=tuple(steps)))
        return True

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def add_entry_point(self, set_name: str, entry_point: EntryPoint) -> bool:
        cs = self.get(set_name)
        self._require_file(entry_point.file_id)
        if entry_point in cs.entry_points:
            return False
        self._commit(replace(cs, entry_points=(*cs.entry_points, entry_point)))
        return True

    def remove_entry_point(self, set_name: str, index: int) -> ContextSet:
        cs = self.get(set_name)
        eps = list(cs.entry_points)
        self._check_index(eps, index, "entry point")
        del eps[index]
        return self._commit(replace(cs, entry_points=tuple(eps)))

    # ------------------------------------------------------------------
    # Bulk install (used by the loader)
    # ------------------------------------------------------------------

    def install(self, sets: Iterable[ContextSet]) -> None:
        """Validate a complete batch of sets and install them together.

        Checks names, duplicates, file references, dangling ``uses`` and
        acyclicity before anything is installed.
        """
        staged: dict[str, ContextSet] = dict(self._sets)
        for cs in sets:
            bare = validate_name(cs.name)
            if bare in staged:
                raise DuplicateNameError(bare)
            staged[bare] = replace(cs, name=bare)
        for cs in staged.values():
            for fid in cs.referenced_file_ids():
                self._require_file(fid)
            for child in cs.uses:
                if child == cs.name:
                    raise SelfReferenceError(cs.name)
                if child not in staged:
                    raise SetNotFoundError(child)

        cycle = self.find_cycle(staged)
        if cycle is not None:
            raise CircularDependencyError(cycle[0], cycle[1], cycle)
        self._sets = staged

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, cs: ContextSet) -> ContextSet:
        self._sets[cs.name] = cs
        return cs

    def _require_file(self, file_id: str | None) -> None:
        if file_id is not None and file_id not in self.manifest:
            raise FileNotInManifestError(file_id)

    @staticmethod
    def _check_index(items: list[Any], index: int, what: str) -> None:
        if not 0 <= index < len(items):
            msg = f"No {what} at index {index} (have {len(items)})"
            raise ValidationError(msg)
