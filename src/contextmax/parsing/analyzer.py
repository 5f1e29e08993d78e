"""Pattern-based structural analysis of source files.

This is deliberately *not* a parser: each language family contributes a table
of line-anchored regular expressions (see ``parsing.languages.*``), and the
analyzer walks the file once, matching declarations, imports and exports and
estimating where each declaration ends.  It can both over- and under-match;
callers treat the result as a hint.

:func:`analyze` never raises.  Unsupported extensions give an empty
:class:`StructureInfo`; an internal failure gives whatever was collected up to
that point.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath

from loguru import logger

# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Declaration:
    """A function or class declaration.  Lines are 1-based and inclusive."""

    name: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class ImportRef:
    module: str
    line: int


@dataclass(frozen=True)
class ExportRef:
    name: str
    line: int


@dataclass(frozen=True)
class StructureInfo:
    """Everything the analyzer found in one file, each list ordered by line."""

    functions: tuple[Declaration, ...] = ()
    classes: tuple[Declaration, ...] = ()
    imports: tuple[ImportRef, ...] = ()
    exports: tuple[ExportRef, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.functions or self.classes or self.imports or self.exports)

    def find(self, name: str, near_line: int | None = None) -> Declaration | None:
        """Find a function or class by name, preferring the one closest to *near_line*."""
        matches = [d for d in (*self.functions, *self.classes) if d.name == name]
        if not matches:
            return None
        if near_line is None:
            return min(matches, key=lambda d: d.start_line)
        return min(matches, key=lambda d: (abs(d.start_line - near_line), d.start_line))

    def to_dict(self) -> dict[str, list[dict[str, object]]]:
        return {
            "functions": [{"name": d.name, "startLine": d.start_line, "endLine": d.end_line} for d in self.functions],
            "classes": [{"name": d.name, "startLine": d.start_line, "endLine": d.end_line} for d in self.classes],
            "imports": [{"module": i.module, "line": i.line} for i in self.imports],
            "exports": [{"name": e.name, "line": e.line} for e in self.exports],
        }


EMPTY_STRUCTURE = StructureInfo()

# ---------------------------------------------------------------------------
# Language family registry
# ---------------------------------------------------------------------------


class BlockStyle(StrEnum):
    """How a language family delimits the body of a declaration."""

    BRACE = "brace"
    INDENT = "indent"
    END_KEYWORD = "end_keyword"


@dataclass(frozen=True)
class LanguageFamily:
    """Pattern table for one family of languages.

    Every pattern is matched against a single line; group 1 (or the first
    non-empty group) captures the name.  ``body_patterns`` are function
    patterns that only count when the line (or the next non-blank line)
    opens a block, which filters out plain calls.
    """

    name: str
    extensions: frozenset[str]
    block_style: BlockStyle
    function_patterns: tuple[re.Pattern[str], ...] = ()
    body_patterns: tuple[re.Pattern[str], ...] = ()
    class_patterns: tuple[re.Pattern[str], ...] = ()
    import_patterns: tuple[re.Pattern[str], ...] = ()
    export_patterns: tuple[re.Pattern[str], ...] = ()
    export_list_patterns: tuple[re.Pattern[str], ...] = ()
    excluded_names: frozenset[str] = field(default_factory=frozenset)


_FAMILIES: dict[str, LanguageFamily] = {}
_EXTENSION_MAP: dict[str, str] = {}


def register_family(family: LanguageFamily) -> None:
    """Register a language family (later registrations win per extension)."""
    _FAMILIES[family.name] = family
    for ext in family.extensions:
        _EXTENSION_MAP[ext] = family.name


def get_family_for_file(path: str) -> LanguageFamily | None:
    """Look up a language family by file extension.

    Triggers plugin discovery on first call.
    """
    from contextmax.parsing.languages import discover_plugins  # noqa: PLC0415

    discover_plugins()

    suffix = PurePosixPath(path).suffix.lower()
    name = _EXTENSION_MAP.get(suffix)
    if name is None:
        return None
    return _FAMILIES.get(name)


# ---------------------------------------------------------------------------
# Supported-file filter
# ---------------------------------------------------------------------------

BINARY_EXTENSIONS = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp", ".bmp",
        ".woff", ".woff2", ".ttf", ".eot", ".otf",
        ".pdf", ".zip", ".tar", ".gz", ".tgz", ".bz2", ".7z", ".rar",
        ".exe", ".dll", ".so", ".dylib", ".bin", ".o", ".a", ".class", ".jar", ".pyc",
        ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flac", ".ogg", ".webm",
        ".lock",
    }
)  # fmt: skip

SKIP_DIRECTORIES = frozenset(
    {"node_modules", ".git", "dist", "build", ".nuxt", ".output", ".next", "coverage", "public", "__pycache__"}
)


def is_language_supported(path: str) -> bool:
    """True if *path* is worth reading as text (not binary, not in a build/vendor dir)."""
    pure = PurePosixPath(path.replace("\\", "/").lower())
    if pure.suffix in BINARY_EXTENSIONS:
        return False
    return not any(part in SKIP_DIRECTORIES for part in pure.parts[:-1])


# ---------------------------------------------------------------------------
# Block end detection
# ---------------------------------------------------------------------------


def _brace_block_end(lines: list[str], start: int) -> int:
    """Index of the line that closes the first brace block opened at or after *start*."""
    depth = 0
    opened = False
    for i in range(start, len(lines)):
        for ch in lines[i]:
            if ch == "{":
                depth += 1
                opened = True
            elif ch == "}":
                depth -= 1
        if opened and depth <= 0:
            return i
        # Statement ended before any block opened (e.g. a one-line arrow function)
        if not opened and lines[i].rstrip().endswith(";"):
            return i
    return start if not opened else len(lines) - 1


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip())


def _indent_block_end(lines: list[str], start: int) -> int:
    """Last line of an indentation block whose header is at *start*."""
    base = _indent_of(lines[start])
    last = start
    depth = lines[start].count("(") + lines[start].count("[") - lines[start].count(")") - lines[start].count("]")
    for i in range(start + 1, len(lines)):
        line = lines[i]
        if not line.strip():
            continue
        if depth <= 0 and _indent_of(line) <= base:
            break
        depth += line.count("(") + line.count("[") - line.count(")") - line.count("]")
        last = i
    return last


def _end_keyword_block_end(lines: list[str], start: int) -> int:
    """First ``end`` at the header's indentation, or the indentation block end."""
    base = _indent_of(lines[start])
    for i in range(start + 1, len(lines)):
        stripped = lines[i].strip()
        if stripped.startswith("end") and _indent_of(lines[i]) == base:
            if stripped == "end" or not stripped[3:4].isalnum():
                return i
        if stripped and _indent_of(lines[i]) < base:
            return max(start, i - 1)
    return _indent_block_end(lines, start)


def _block_end(style: BlockStyle, lines: list[str], start: int) -> int:
    if style is BlockStyle.BRACE:
        return _brace_block_end(lines, start)
    if style is BlockStyle.INDENT:
        return _indent_block_end(lines, start)
    return _end_keyword_block_end(lines, start)


def _opens_block(lines: list[str], index: int) -> bool:
    """True if line *index* contains ``{`` or the next non-blank line starts with one."""
    if "{" in lines[index]:
        return True
    for i in range(index + 1, min(index + 3, len(lines))):
        stripped = lines[i].strip()
        if stripped:
            return stripped.startswith("{")
    return False


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def _first_group(match: re.Match[str]) -> str | None:
    for group in match.groups():
        if group:
            return group
    return None


def _match_name(patterns: tuple[re.Pattern[str], ...], line: str) -> str | None:
    for pattern in patterns:
        m = pattern.search(line)
        if m:
            name = _first_group(m)
            if name:
                return name
    return None


def _split_export_list(raw: str) -> list[str]:
    names: list[str] = []
    for part in raw.split(","):
        words = part.strip().split()
        if words:
            names.append(words[-1].strip("'\""))
    return names


def _collect(family: LanguageFamily, lines: list[str], info: dict[str, list]) -> None:
    """Single pass over *lines*, appending into *info* so partial results survive a failure."""
    functions: list[Declaration] = info["functions"]
    classes: list[Declaration] = info["classes"]

    for idx, line in enumerate(lines):
        if not line.strip():
            continue
        lineno = idx + 1

        for pattern in family.import_patterns:
            m = pattern.search(line)
            if m:
                module = _first_group(m)
                if module:
                    info["imports"].append(ImportRef(module.strip(), lineno))
                break

        exported = _match_name(family.export_patterns, line)
        if exported:
            info["exports"].append(ExportRef(exported.strip(), lineno))
        else:
            listed = _match_name(family.export_list_patterns, line)
            if listed:
                info["exports"].extend(ExportRef(n, lineno) for n in _split_export_list(listed))

        class_name = _match_name(family.class_patterns, line)
        if class_name and not any(c.name == class_name and c.start_line == lineno for c in classes):
            classes.append(Declaration(class_name, lineno, _block_end(family.block_style, lines, idx) + 1))
            continue

        func_name = _match_name(family.function_patterns, line)
        if func_name is None:
            func_name = _match_name(family.body_patterns, line)
            if func_name is not None and not _opens_block(lines, idx):
                func_name = None
        if func_name is None or func_name in family.excluded_names:
            continue
        # A declaration split over a couple of lines may match more than once
        if any(f.name == func_name and abs(f.start_line - lineno) <= 2 for f in functions):
            continue
        functions.append(Declaration(func_name, lineno, _block_end(family.block_style, lines, idx) + 1))


def analyze(text: str, file_path: str) -> StructureInfo:
    """Extract declarations, imports and exports from *text*.

    Results are ordered by ascending start line.  Never raises.
    """
    if not text or not is_language_supported(file_path):
        return EMPTY_STRUCTURE
    try:
        family = get_family_for_file(file_path)
    except Exception as exc:
        logger.debug("Language lookup failed for {}: {}", file_path, exc)
        return EMPTY_STRUCTURE
    if family is None:
        return EMPTY_STRUCTURE

    info: dict[str, list] = {"functions": [], "classes": [], "imports": [], "exports": []}
    try:
        _collect(family, text.splitlines(), info)
    except Exception as exc:
        logger.debug("Structural analysis of {} degraded: {}", file_path, exc)

    return StructureInfo(
        functions=tuple(sorted(info["functions"], key=lambda d: d.start_line)),
        classes=tuple(sorted(info["classes"], key=lambda d: d.start_line)),
        imports=tuple(sorted(info["imports"], key=lambda i: i.line)),
        exports=tuple(sorted(info["exports"], key=lambda e: e.line)),
    )
