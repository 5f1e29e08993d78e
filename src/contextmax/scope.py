"""Project file discovery with gitignore-style filtering."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pathspec
from loguru import logger

from contextmax.index import FileInput
from contextmax.parsing import is_language_supported

if TYPE_CHECKING:
    from contextmax.settings import ContextMaxSettings

_DEFAULT_EXCLUDES: list[str] = [
    ".git/",
    "node_modules/",
    "__pycache__/",
    ".venv/",
    "venv/",
    "vendor/",
    "build/",
    "dist/",
    "target/",
    "coverage/",
    ".nuxt/",
    ".next/",
    ".output/",
    ".tox/",
    ".mypy_cache/",
    ".ruff_cache/",
    ".pytest_cache/",
    "site-packages/",
    ".eggs/",
    ".contextmax/",
    "*.pyc",
    "*.min.js",
    "*.map",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "Cargo.lock",
]


def _read_ignore_file(path: Path) -> list[str]:
    """Read a .gitignore-style file, stripping comments and blank lines."""
    lines: list[str] = []
    for raw in path.read_text(encoding="utf-8-sig", errors="replace").splitlines():
        stripped = raw.strip()
        if stripped and not stripped.startswith("#"):
            lines.append(stripped)
    return lines


class ProjectScope:
    """Which files of the project can be added to context sets and searched.

    Exclusion order:
      1. Default excludes (VCS, dependency and build directories, lockfiles)
      2. Root ``.gitignore`` and ``.contextmaxignore`` patterns
      3. ``settings.scope.exclude_patterns``
      4. Nested ``.gitignore`` files (discovered during :meth:`scan`)
      5. Binary/asset extensions and files above ``max_file_bytes``
    """

    def __init__(self, settings: ContextMaxSettings, project_root: str | Path | None = None) -> None:
        self._root = Path(project_root or settings.project_root).resolve()
        self._max_bytes = settings.scope.max_file_bytes
        # The working copy lives in the project root but is never project source
        excludes = [*settings.scope.exclude_patterns, f"/{settings.export.filename}"]
        self._global_spec = self._build_global_spec(excludes)
        self._nested_specs: dict[str, pathspec.PathSpec] = {}

    @property
    def root(self) -> Path:
        return self._root

    def scan(self) -> list[str]:
        """Walk the project tree and return sorted relative POSIX paths."""
        self._nested_specs.clear()
        result: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self._root):
            rel_dir = Path(dirpath).relative_to(self._root).as_posix()
            if rel_dir == ".":
                rel_dir = ""

            if rel_dir:
                nested_gi = Path(dirpath) / ".gitignore"
                if nested_gi.is_file():
                    patterns = _read_ignore_file(nested_gi)
                    if patterns:
                        self._nested_specs[rel_dir] = pathspec.PathSpec.from_lines("gitignore", patterns)
                        logger.debug("Loaded {} patterns from {}", len(patterns), nested_gi)

            dirnames[:] = [
                d
                for d in dirnames
                if not self._is_dir_excluded(f"{rel_dir}/{d}" if rel_dir else d) and not Path(dirpath, d).is_symlink()
            ]

            for fname in filenames:
                fpath = Path(dirpath, fname)
                rel_path = f"{rel_dir}/{fname}" if rel_dir else fname
                if fpath.is_symlink() and not fpath.exists():
                    logger.debug("Skipping broken symlink: {}", rel_path)
                    continue
                if not self.is_included(rel_path) or not is_language_supported(rel_path):
                    continue
                try:
                    if fpath.stat().st_size > self._max_bytes:
                        logger.debug("Skipping {}: larger than {} bytes", rel_path, self._max_bytes)
                        continue
                except OSError:
                    continue
                result.append(rel_path)

        result.sort()
        logger.info("Scanned {} files under {}", len(result), self._root)
        return result

    def is_included(self, rel_path: str) -> bool:
        """Check *rel_path* against the ignore rules (not size or file type)."""
        if self._global_spec.match_file(rel_path):
            logger.trace("EXCLUDE {}: matched global pattern", rel_path)
            return False

        parts = rel_path.split("/")
        for depth in range(1, len(parts)):
            spec = self._nested_specs.get("/".join(parts[:depth]))
            if spec is not None and spec.match_file("/".join(parts[depth:])):
                logger.trace("EXCLUDE {}: matched nested .gitignore", rel_path)
                return False
        return True

    def _build_global_spec(self, extra: list[str]) -> pathspec.PathSpec:
        patterns: list[str] = list(_DEFAULT_EXCLUDES)
        for name in (".gitignore", ".contextmaxignore"):
            ignore_file = self._root / name
            if ignore_file.is_file():
                loaded = _read_ignore_file(ignore_file)
                patterns.extend(loaded)
                logger.debug("Loaded {} patterns from {}", len(loaded), ignore_file)
        patterns.extend(extra)
        return pathspec.PathSpec.from_lines("gitignore", patterns)

    def _is_dir_excluded(self, rel_dir: str) -> bool:
        if self._global_spec.match_file(f"{rel_dir}/"):
            return True
        parts = rel_dir.split("/")
        for depth in range(1, len(parts)):
            spec = self._nested_specs.get("/".join(parts[:depth]))
            if spec is not None and spec.match_file("/".join(parts[depth:]) + "/"):
                return True
        return False

    # -- content loading ------------------------------------------------------

    def _load(self, paths: list[str]) -> list[FileInput]:
        files: list[FileInput] = []
        for rel_path in paths:
            try:
                content = (self._root / rel_path).read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.debug("Skipping {}: not UTF-8 text", rel_path)
                continue
            except OSError as exc:
                logger.warning("Cannot read {}: {}", rel_path, exc)
                continue
            files.append(FileInput(path=rel_path, content=content))
        return files

    async def load_files(self, paths: list[str] | None = None) -> list[FileInput]:
        """Contents of *paths* (default: a fresh :meth:`scan`); unreadable files are skipped."""
        if paths is None:
            paths = await asyncio.to_thread(self.scan)
        return await asyncio.to_thread(self._load, paths)
