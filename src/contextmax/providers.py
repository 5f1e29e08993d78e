"""Collaborator interfaces: file content, working-copy persistence, export sinks.

The core never touches the filesystem directly; the workspace wires in one
implementation of each protocol.
"""

from __future__ import annotations

import asyncio
import errno
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from contextmax.errors import NotFoundError, PermissionDeniedError, SchemaError

# ---------------------------------------------------------------------------
# File content
# ---------------------------------------------------------------------------


@runtime_checkable
class FileContentProvider(Protocol):
    async def read_file(self, path: str) -> str:
        """Text of *path*.  Raises ``NotFoundError`` / ``PermissionDeniedError``."""
        ...


class LocalFileProvider:
    """Reads project-relative paths below *root* as UTF-8 text."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        candidate = (self.root / path.lstrip("/")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            msg = f"Path {path!r} is outside the project root"
            raise PermissionDeniedError(msg)
        return candidate

    def _read(self, path: str) -> str:
        target = self.resolve(path)
        try:
            return target.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            msg = f"File not found: {path}"
            raise NotFoundError(msg) from None
        except IsADirectoryError:
            msg = f"Not a file: {path}"
            raise NotFoundError(msg) from None
        except PermissionError:
            msg = f"Permission denied: {path}"
            raise PermissionDeniedError(msg) from None
        except OSError as exc:
            if exc.errno in (errno.EACCES, errno.EPERM):
                raise PermissionDeniedError(str(exc)) from exc
            raise NotFoundError(str(exc)) from exc

    async def read_file(self, path: str) -> str:
        return await asyncio.to_thread(self._read, path)


class MemoryFileProvider:
    """In-memory ``path -> text`` mapping."""

    def __init__(self, files: dict[str, str] | None = None, denied: set[str] | None = None) -> None:
        self.files = dict(files or {})
        self.denied = set(denied or ())

    async def read_file(self, path: str) -> str:
        if path in self.denied:
            msg = f"Permission denied: {path}"
            raise PermissionDeniedError(msg)
        try:
            return self.files[path]
        except KeyError:
            msg = f"File not found: {path}"
            raise NotFoundError(msg) from None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@runtime_checkable
class PersistenceProvider(Protocol):
    def load_working_copy(self) -> dict[str, Any] | None:
        """The stored ``context-sets.json`` document, or None when there is none."""
        ...

    def save_working_copy(self, document: dict[str, Any]) -> None: ...


def dump_document(document: dict[str, Any]) -> str:
    """Canonical text form: 2-space indent, key order preserved, trailing newline."""
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


class JsonFilePersistence:
    """Working copy stored as a JSON file, replaced atomically on save."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load_working_copy(self) -> dict[str, Any] | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"{self.path.name} is not valid JSON: {exc}"
            raise SchemaError(msg) from exc
        if not isinstance(data, dict):
            msg = f"{self.path.name} must contain a JSON object"
            raise SchemaError(msg)
        return data

    def save_working_copy(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(dump_document(document))
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved working copy to {}", self.path)


class MemoryPersistence:
    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self.document = document
        self.saves = 0

    def load_working_copy(self) -> dict[str, Any] | None:
        return json.loads(json.dumps(self.document)) if self.document is not None else None

    def save_working_copy(self, document: dict[str, Any]) -> None:
        self.document = json.loads(json.dumps(document))
        self.saves += 1


# ---------------------------------------------------------------------------
# Export sinks
# ---------------------------------------------------------------------------


@runtime_checkable
class ExportSink(Protocol):
    def write(self, text: str) -> None: ...


class FileSink:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def write(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text, encoding="utf-8")
        logger.info("Wrote {} characters to {}", len(text), self.path)


class StdoutSink:
    def write(self, text: str) -> None:
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")
        sys.stdout.flush()


class MemorySink:
    def __init__(self) -> None:
        self.outputs: list[str] = []

    def write(self, text: str) -> None:
        self.outputs.append(text)

    @property
    def last(self) -> str:
        return self.outputs[-1] if self.outputs else ""
