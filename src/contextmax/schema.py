"""Data model for context sets.

All model types are frozen dataclasses; the repository mutates state by
building a new value and swapping it in, so a half-applied change is never
visible.  Each type knows its own camelCase JSON shape (``to_dict`` /
``from_dict``) as it appears inside ``context-sets.json``.

A file reference is a tagged variant: :class:`WholeFile` (serialized as the
bare file id) or :class:`PartialFile` (serialized as an object with
``functionRefs``).  :func:`make_file_reference` is the only place that decides
between them, so an object form with no function refs cannot exist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from contextmax.errors import SchemaError, ValidationError

SCHEMA_VERSION = "1.0"

# ---------------------------------------------------------------------------
# Name prefixing
# ---------------------------------------------------------------------------

CONTEXT_PREFIX = "context:"


def strip_prefix(name: str) -> str:
    """Remove every leading ``context:`` prefix from *name*."""
    while name.startswith(CONTEXT_PREFIX):
        name = name[len(CONTEXT_PREFIX) :]
    return name


def prefix_name(name: str) -> str:
    """Return the canonical external name: exactly one ``context:`` prefix.

    >>> prefix_name("auth")
    'context:auth'
    >>> prefix_name("context:auth")
    'context:auth'
    """
    return f"{CONTEXT_PREFIX}{strip_prefix(name)}"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class EntryProtocol(StrEnum):
    HTTP = "http"
    UI = "ui"
    CLI = "cli"
    FUNCTION = "function"
    QUEUE = "queue"
    FILE = "file"
    HOOK = "hook"
    WEBSOCKET = "websocket"
    SSE = "sse"


class ProcessingMode(StrEnum):
    SYNCHRONOUS = "synchronous"
    ASYNCHRONOUS = "asynchronous"
    STREAMING = "streaming"
    BATCH = "batch"


def _coerce_enum(enum_cls: type[StrEnum], value: Any, what: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        msg = f"Invalid {what} {value!r} (expected one of: {allowed})"
        raise ValidationError(msg) from exc


# ---------------------------------------------------------------------------
# Files manifest
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileManifestEntry:
    """A registered file: stable id → project-relative path."""

    id: str
    path: str
    comment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "comment": self.comment}


# ---------------------------------------------------------------------------
# File references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionRef:
    """A declaration inside a file that narrows a reference to part of it."""

    name: str
    comment: str | None = None
    line_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.comment:
            out["comment"] = self.comment
        if self.line_index is not None:
            out["lineIndex"] = self.line_index
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> FunctionRef:
        if isinstance(raw, str):
            return cls(name=raw)
        if not isinstance(raw, dict) or not raw.get("name"):
            msg = f"Function ref must be an object with a name, got {raw!r}"
            raise SchemaError(msg)
        line = raw.get("lineIndex", raw.get("startLine"))
        return cls(name=str(raw["name"]), comment=raw.get("comment") or None, line_index=line)


@dataclass(frozen=True)
class WholeFile:
    """The entire file is part of the set."""

    file_id: str

    def to_json(self) -> str:
        return self.file_id


@dataclass(frozen=True)
class PartialFile:
    """Only the listed declarations of the file are part of the set."""

    file_id: str
    function_refs: tuple[FunctionRef, ...]
    comment: str | None = None

    def __post_init__(self) -> None:
        if not self.function_refs:
            msg = "PartialFile requires at least one function ref; use WholeFile instead"
            raise ValueError(msg)

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "fileRef": self.file_id,
            "functionRefs": [ref.to_dict() for ref in self.function_refs],
        }
        if self.comment:
            out["comment"] = self.comment
        return out


FileReference = WholeFile | PartialFile


def make_file_reference(
    file_id: str,
    function_refs: list[FunctionRef] | tuple[FunctionRef, ...] = (),
    comment: str | None = None,
) -> FileReference:
    """Build the normalized reference for *file_id*.

    An empty ``function_refs`` always yields :class:`WholeFile`.  Refs are
    deduplicated by name, first occurrence wins.
    """
    seen: set[str] = set()
    unique: list[FunctionRef] = []
    for ref in function_refs:
        if ref.name not in seen:
            seen.add(ref.name)
            unique.append(ref)
    if not unique:
        return WholeFile(file_id)
    return PartialFile(file_id, tuple(unique), comment)


def file_reference_from_json(raw: Any) -> FileReference:
    """Parse either the bare-id or the object form of a file reference."""
    if isinstance(raw, str):
        return WholeFile(raw)
    if isinstance(raw, dict) and isinstance(raw.get("fileRef"), str):
        refs = [FunctionRef.from_dict(r) for r in raw.get("functionRefs") or []]
        return make_file_reference(raw["fileRef"], refs, raw.get("comment") or None)
    msg = f"File reference must be a string id or an object with fileRef, got {raw!r}"
    raise SchemaError(msg)


# ---------------------------------------------------------------------------
# Workflow steps, entry points, behavior
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowStep:
    """One step of a user-ordered data-flow description."""

    description: str
    file_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"description": self.description}
        if self.file_id:
            out["fileRef"] = self.file_id
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> WorkflowStep:
        if not isinstance(raw, dict):
            msg = f"Workflow step must be an object, got {raw!r}"
            raise SchemaError(msg)
        return cls(description=str(raw.get("description", "")), file_id=raw.get("fileRef") or None)


@dataclass(frozen=True)
class EntryPoint:
    """A declared external access path into a context set's functionality."""

    file_id: str
    function: str
    protocol: EntryProtocol
    method: str = ""
    identifier: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", _coerce_enum(EntryProtocol, self.protocol, "entry point protocol"))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "fileRef": self.file_id,
            "function": self.function,
            "protocol": self.protocol.value,
            "method": self.method,
        }
        if self.identifier:
            out["identifier"] = self.identifier
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> EntryPoint:
        if not isinstance(raw, dict) or "fileRef" not in raw:
            msg = f"Entry point must be an object with fileRef, got {raw!r}"
            raise SchemaError(msg)
        try:
            return cls(
                file_id=raw["fileRef"],
                function=str(raw.get("function", "")),
                protocol=raw.get("protocol", EntryProtocol.FUNCTION),
                method=str(raw.get("method", "")),
                identifier=raw.get("identifier") or None,
            )
        except ValidationError as exc:
            raise SchemaError(str(exc)) from exc


@dataclass(frozen=True)
class SystemBehavior:
    processing_mode: ProcessingMode | None = None

    def __post_init__(self) -> None:
        if self.processing_mode is not None:
            mode = _coerce_enum(ProcessingMode, self.processing_mode, "processing mode")
            object.__setattr__(self, "processing_mode", mode)

    def to_dict(self) -> dict[str, Any]:
        if self.processing_mode is None:
            return {}
        return {"processing": {"mode": self.processing_mode.value}}

    @classmethod
    def from_dict(cls, raw: Any) -> SystemBehavior | None:
        if not isinstance(raw, dict):
            return None
        mode = (raw.get("processing") or {}).get("mode")
        if not mode:
            return None
        try:
            return cls(processing_mode=mode)
        except ValidationError as exc:
            raise SchemaError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Context set
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContextSet:
    """A named bundle of file references, workflow, entry points, and child sets.

    ``uses`` holds *unprefixed* child set names; prefixing is applied only at
    the serialization boundary.
    """

    name: str
    description: str = ""
    files: tuple[FileReference, ...] = ()
    workflows: tuple[WorkflowStep, ...] = ()
    uses: tuple[str, ...] = ()
    entry_points: tuple[EntryPoint, ...] = ()
    system_behavior: SystemBehavior | None = None

    def file_ids(self) -> list[str]:
        return [ref.file_id for ref in self.files]

    def find_file(self, file_id: str) -> FileReference | None:
        for ref in self.files:
            if ref.file_id == file_id:
                return ref
        return None

    def referenced_file_ids(self) -> set[str]:
        """Every file id this set points at, including workflow and entry point refs."""
        ids = set(self.file_ids())
        ids.update(step.file_id for step in self.workflows if step.file_id)
        ids.update(ep.file_id for ep in self.entry_points)
        return ids

    def to_dict(self, uses: list[str] | None = None) -> dict[str, Any]:
        """Serialize to the ``context-sets.json`` shape.

        *uses* overrides the emitted ``uses`` list (the exporter passes the
        prefixed names).
        """
        out: dict[str, Any] = {
            "description": self.description,
            "files": [ref.to_json() for ref in self.files],
            "workflows": [step.to_dict() for step in self.workflows],
            "uses": list(self.uses) if uses is None else uses,
        }
        if self.entry_points:
            out["entryPoints"] = [ep.to_dict() for ep in self.entry_points]
        if self.system_behavior is not None and self.system_behavior.to_dict():
            out["systemBehavior"] = self.system_behavior.to_dict()
        return out

    @classmethod
    def from_dict(cls, name: str, raw: Any) -> ContextSet:
        """Parse one set body.  ``uses`` entries are stripped of their prefix."""
        if not isinstance(raw, dict):
            msg = f"Context set {name!r} must be an object, got {type(raw).__name__}"
            raise SchemaError(msg)
        # Older documents call the workflow list "workflow"
        steps = raw.get("workflows", raw.get("workflow")) or []
        return cls(
            name=name,
            description=str(raw.get("description") or ""),
            files=tuple(file_reference_from_json(f) for f in raw.get("files") or []),
            workflows=tuple(WorkflowStep.from_dict(s) for s in steps),
            uses=tuple(strip_prefix(str(u)) for u in raw.get("uses") or []),
            entry_points=tuple(EntryPoint.from_dict(e) for e in raw.get("entryPoints") or []),
            system_behavior=SystemBehavior.from_dict(raw.get("systemBehavior")),
        )


@dataclass(frozen=True)
class FileContextRef:
    """One entry of the file-contexts index: a set that references a file."""

    set_name: str
    function_refs: tuple[FunctionRef, ...] = field(default_factory=tuple)

    def to_dict(self, set_key: str) -> dict[str, Any]:
        out: dict[str, Any] = {"setName": set_key}
        if self.function_refs:
            out["functionRefs"] = [ref.to_dict() for ref in self.function_refs]
        return out
