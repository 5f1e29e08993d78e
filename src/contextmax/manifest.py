"""File manifest: a deduplicated registry of file id → path.

Ids are derived from the path (``file_`` + the first eight hex digits of its
SHA-256) so :meth:`FileManifest.resolve_path` is a pure function of the path.
On the rare prefix collision the digest slice is widened until it is unique.

The manifest is append-only during a session.  Nothing removes an entry as a
side effect; :meth:`FileManifest.prune` is the explicit way to drop entries
that no context set references any more.
"""

from __future__ import annotations

import hashlib
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from loguru import logger

from contextmax.errors import FileNotInManifestError, SchemaError, ValidationError
from contextmax.schema import FileManifestEntry

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

FILE_ID_PREFIX = "file_"
_ID_DIGITS = 8


def normalize_path(path: str) -> str:
    """Normalize a project-relative path to POSIX form without a leading ``./``."""
    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    cleaned = cleaned.lstrip("/")
    if not cleaned:
        return ""
    return str(PurePosixPath(cleaned))


def file_id_for_path(path: str, digits: int = _ID_DIGITS) -> str:
    """Return the candidate id for *path* using *digits* hex characters."""
    digest = hashlib.sha256(normalize_path(path).encode("utf-8")).hexdigest()
    return f"{FILE_ID_PREFIX}{digest[:digits]}"


class FileManifest:
    """Registry of :class:`FileManifestEntry` keyed by id, unique by path.

    Iteration order is registration order, which keeps serialized output
    stable across save/load cycles.
    """

    def __init__(self, entries: Iterable[FileManifestEntry] = ()) -> None:
        self._by_id: dict[str, FileManifestEntry] = {}
        self._by_path: dict[str, str] = {}
        for entry in entries:
            self._insert(entry)

    # -- queries ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, file_id: object) -> bool:
        return file_id in self._by_id

    def __iter__(self) -> Iterator[FileManifestEntry]:
        return iter(list(self._by_id.values()))

    def get(self, file_id: str) -> FileManifestEntry:
        try:
            return self._by_id[file_id]
        except KeyError:
            raise FileNotInManifestError(file_id) from None

    def path_of(self, file_id: str) -> str:
        return self.get(file_id).path

    def find_by_path(self, path: str) -> str | None:
        """Return the id registered for *path* without registering it."""
        return self._by_path.get(normalize_path(path))

    def ids(self) -> list[str]:
        return list(self._by_id)

    # -- mutations ----------------------------------------------------------

    def resolve_path(self, path: str, comment: str = "") -> str:
        """Return the id for *path*, registering it on first sight.

        Calling this twice with the same path always returns the same id.
        *comment* only applies when the entry is created.
        """
        normalized = normalize_path(path)
        if not normalized:
            msg = f"Cannot register an empty path ({path!r})"
            raise ValidationError(msg)
        existing = self._by_path.get(normalized)
        if existing is not None:
            return existing

        digits = _ID_DIGITS
        file_id = file_id_for_path(normalized, digits)
        while file_id in self._by_id:
            digits += 2
            file_id = file_id_for_path(normalized, digits)
        self._insert(FileManifestEntry(id=file_id, path=normalized, comment=comment))
        logger.debug("Registered {} -> {}", normalized, file_id)
        return file_id

    def update_comment(self, file_id: str, comment: str) -> None:
        entry = self.get(file_id)
        self._by_id[file_id] = FileManifestEntry(id=entry.id, path=entry.path, comment=comment)

    def prune(self, referenced_ids: Iterable[str]) -> list[str]:
        """Drop every entry whose id is not in *referenced_ids*.

        Returns the removed ids in registration order.
        """
        keep = set(referenced_ids)
        removed = [fid for fid in self._by_id if fid not in keep]
        for fid in removed:
            entry = self._by_id.pop(fid)
            self._by_path.pop(entry.path, None)
        if removed:
            logger.info("Pruned {} unreferenced manifest entries", len(removed))
        return removed

    def _insert(self, entry: FileManifestEntry) -> None:
        path = normalize_path(entry.path)
        if path in self._by_path and self._by_path[path] != entry.id:
            msg = f"Path {path!r} is registered under two ids ({self._by_path[path]}, {entry.id})"
            raise SchemaError(msg)
        if entry.id in self._by_id and self._by_id[entry.id].path != path:
            msg = f"File id {entry.id!r} maps to two paths"
            raise SchemaError(msg)
        self._by_id[entry.id] = FileManifestEntry(id=entry.id, path=path, comment=entry.comment)
        self._by_path[path] = entry.id

    # -- serialization --------------------------------------------------------

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """``filesIndex`` shape: ``{id: {path, comment}}``."""
        return {fid: entry.to_dict() for fid, entry in self._by_id.items()}

    @classmethod
    def from_dict(cls, raw: Any) -> FileManifest:
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            msg = f"filesIndex must be an object, got {type(raw).__name__}"
            raise SchemaError(msg)
        entries: list[FileManifestEntry] = []
        for fid, body in raw.items():
            if not isinstance(body, dict) or not isinstance(body.get("path"), str):
                msg = f"filesIndex entry {fid!r} must be an object with a path"
                raise SchemaError(msg)
            entries.append(FileManifestEntry(id=str(fid), path=body["path"], comment=str(body.get("comment") or "")))
        return cls(entries)

    def copy(self) -> FileManifest:
        return FileManifest(self._by_id.values())
