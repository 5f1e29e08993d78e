"""Closure resolution and the exported forms of a context-set graph.

- :func:`resolve_closure` unions the files of a set and every set it uses
  transitively.  When one set includes a whole file and another only some of
  its functions, the whole file wins.
- :func:`to_document` / :func:`to_json` produce the canonical
  ``context-sets.json`` document; :func:`load_document` reads it back.
- :func:`render_markdown` renders a set and its dependencies for pasting into
  an AI assistant; :func:`estimate_token_count` sizes the closure.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import tiktoken
import yaml
from loguru import logger

from contextmax.errors import ContextMaxError, NotFoundError, SchemaError, ValidationError
from contextmax.manifest import FileManifest
from contextmax.parsing import analyze
from contextmax.providers import dump_document
from contextmax.repository import ContextSetRepository
from contextmax.schema import SCHEMA_VERSION, ContextSet, FunctionRef, PartialFile, prefix_name, strip_prefix

if TYPE_CHECKING:
    from contextmax.providers import FileContentProvider

# ---------------------------------------------------------------------------
# Closure
# ---------------------------------------------------------------------------


def dependency_order(repo: ContextSetRepository, name: str) -> list[str]:
    """Every set *name* uses transitively, dependencies before dependents.

    Depth-first over ``uses`` in declaration order; each set appears once and
    the root itself is not included.
    """
    root = repo.get(name)
    resolved: list[str] = []
    visiting: set[str] = {root.name}

    def _visit(cs: ContextSet) -> None:
        for child in cs.uses:
            if child in resolved or child in visiting:
                continue
            visiting.add(child)
            _visit(repo.get(child))
            resolved.append(child)

    _visit(root)
    return resolved


@dataclass(frozen=True)
class ResolvedFile:
    """One file of an exported closure.

    ``function_refs`` is empty when the whole file is included.  ``sets``
    lists every set of the closure that references the file.
    """

    file_id: str
    path: str
    function_refs: tuple[FunctionRef, ...] = ()
    sets: tuple[str, ...] = ()

    @property
    def whole_file(self) -> bool:
        return not self.function_refs

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"fileRef": self.file_id, "path": self.path, "sets": list(self.sets)}
        if self.function_refs:
            out["functionRefs"] = [ref.to_dict() for ref in self.function_refs]
        return out


def resolve_closure(repo: ContextSetRepository, name: str) -> list[ResolvedFile]:
    """Files needed by *name* and everything it uses, deduplicated by file id.

    Order: the root set's files first, then each dependency's files in
    :func:`dependency_order`.  Whole-file inclusion anywhere in the closure
    wins over function-level references; otherwise the function refs of all
    sets are unioned by name.
    """
    root = repo.get(name)
    order = [root.name, *dependency_order(repo, root.name)]
    # file_id -> (refs or None for whole file, sets)
    merged: dict[str, tuple[list[FunctionRef] | None, list[str]]] = {}
    for set_name in order:
        for ref in repo.get(set_name).files:
            refs, sets = merged.setdefault(ref.file_id, ([], []))
            if set_name not in sets:
                sets.append(set_name)
            if not isinstance(ref, PartialFile) or refs is None:
                merged[ref.file_id] = (None, sets)
                continue
            known = {r.name for r in refs}
            refs.extend(r for r in ref.function_refs if r.name not in known)

    return [
        ResolvedFile(
            file_id=file_id,
            path=repo.manifest.path_of(file_id),
            function_refs=tuple(refs or ()),
            sets=tuple(sets),
        )
        for file_id, (refs, sets) in merged.items()
    ]


# ---------------------------------------------------------------------------
# JSON document
# ---------------------------------------------------------------------------


def to_document(repo: ContextSetRepository, schema_version: str = SCHEMA_VERSION) -> dict[str, Any]:
    """The ``context-sets.json`` document.  Set keys and ``uses`` are prefixed."""
    return {
        "schemaVersion": schema_version,
        "filesIndex": repo.manifest.to_dict(),
        "sets": {prefix_name(cs.name): cs.to_dict(uses=[prefix_name(u) for u in cs.uses]) for cs in repo},
        "fileContextsIndex": {
            fid: [ref.to_dict(prefix_name(ref.set_name)) for ref in refs]
            for fid, refs in repo.file_contexts_index().items()
        },
    }


def to_json(repo: ContextSetRepository, schema_version: str = SCHEMA_VERSION) -> str:
    """Serialized document; identical graphs always produce identical text."""
    return dump_document(to_document(repo, schema_version))


def load_document(data: Any) -> ContextSetRepository:
    """Build a repository from a ``context-sets.json`` document.

    Also accepts the older ``filesManifest`` / ``contextSets`` key names.
    Invalid documents raise ``SchemaError``; a cyclic ``uses`` graph raises
    ``CircularDependencyError``.  Unreferenced ``filesIndex`` entries are kept.
    """
    if not isinstance(data, dict):
        msg = f"Context sets document must be an object, got {type(data).__name__}"
        raise SchemaError(msg)
    version = data.get("schemaVersion", SCHEMA_VERSION)
    if str(version).split(".")[0] != SCHEMA_VERSION.split(".")[0]:
        msg = f"Unsupported schemaVersion {version!r} (expected {SCHEMA_VERSION})"
        raise SchemaError(msg)

    manifest = FileManifest.from_dict(data.get("filesIndex", data.get("filesManifest")))
    raw_sets = data.get("sets", data.get("contextSets")) or {}
    if not isinstance(raw_sets, dict):
        msg = "sets must be an object keyed by set name"
        raise SchemaError(msg)

    sets = [ContextSet.from_dict(strip_prefix(str(key)), body) for key, body in raw_sets.items()]
    repo = ContextSetRepository(manifest)
    try:
        repo.install(sets)
    except (ValidationError, NotFoundError) as exc:
        msg = f"Invalid context sets document: {exc}"
        raise SchemaError(msg) from exc
    logger.info("Loaded {} context sets and {} files", len(repo), len(manifest))
    return repo


# ---------------------------------------------------------------------------
# File content helpers
# ---------------------------------------------------------------------------

_LANGUAGE_HINTS: dict[str, str] = {
    "ts": "typescript",
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "vue": "vue",
    "jsx": "jsx",
    "tsx": "tsx",
    "py": "python",
    "rb": "ruby",
    "php": "php",
    "java": "java",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "hpp": "cpp",
    "cs": "csharp",
    "go": "go",
    "rs": "rust",
    "kt": "kotlin",
    "swift": "swift",
    "lua": "lua",
    "ex": "elixir",
    "exs": "elixir",
    "sh": "bash",
    "bash": "bash",
    "zsh": "zsh",
    "fish": "fish",
    "ps1": "powershell",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "sass": "sass",
    "less": "less",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "json": "json",
    "md": "markdown",
    "markdown": "markdown",
    "env": "bash",
}
_NAME_HINTS: dict[str, str] = {"dockerfile": "dockerfile", "makefile": "makefile"}


def language_hint(path: str) -> str:
    """Fence language for *path*, ``text`` when unknown."""
    pure = PurePosixPath(path)
    by_name = _NAME_HINTS.get(pure.name.lower())
    if by_name:
        return by_name
    return _LANGUAGE_HINTS.get(pure.suffix.lower().lstrip("."), "text")


@dataclass(frozen=True)
class Excerpt:
    """A slice of a file; ``name`` is empty for the whole file."""

    name: str
    start_line: int
    end_line: int
    text: str


def extract_excerpts(path: str, content: str, refs: tuple[FunctionRef, ...]) -> list[Excerpt] | None:
    """Line ranges of the referenced declarations, or None to fall back to the whole file.

    Falls back when any reference cannot be located.
    """
    if not refs:
        return None
    structure = analyze(content, path)
    lines = content.splitlines()
    excerpts: list[Excerpt] = []
    for ref in refs:
        near = ref.line_index + 1 if ref.line_index is not None else None
        decl = structure.find(ref.name, near_line=near)
        if decl is None:
            logger.debug("Declaration {} not found in {}; exporting whole file", ref.name, path)
            return None
        text = "\n".join(lines[decl.start_line - 1 : decl.end_line])
        excerpts.append(Excerpt(name=ref.name, start_line=decl.start_line, end_line=decl.end_line, text=text))
    excerpts.sort(key=lambda e: e.start_line)
    return excerpts


async def _read_all(provider: FileContentProvider, paths: list[str]) -> dict[str, str | ContextMaxError]:
    async def _one(path: str) -> str | ContextMaxError:
        try:
            return await provider.read_file(path)
        except ContextMaxError as exc:
            logger.warning("Cannot read {}: {}", path, exc)
            return exc

    results = await asyncio.gather(*(_one(p) for p in paths))
    return dict(zip(paths, results, strict=True))


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------

_PREAMBLE_SINGLE = (
    "You can analyze the provided project context to help with development tasks. "
    "The context is structured with YAML frontmatter for metadata and markdown for file contents."
)
_PREAMBLE_HIERARCHY = (
    "You can analyze the provided project context to help with development tasks. "
    "This export includes the main context and its dependent child contexts in a hierarchical structure."
)
_USAGE = """## How to Use This Context:

1. **Check workflows first** - If workflows exist in the frontmatter, follow the data flow step by step
2. **Entry points** - Requests enter the system through the listed entry points
3. **Related contexts** - If this context has a "uses" array, consider how changes affect those contexts
4. **Context boundaries** - {boundaries}
5. **Focused analysis** - Child context sections can be removed if not needed for the task"""


def _frontmatter(repo: ContextSetRepository, cs: ContextSet, children: list[str]) -> str:
    paths = repo.manifest
    data: dict[str, Any] = {"contextSetName": cs.name}
    if cs.description.strip():
        data["description"] = cs.description
    if cs.workflows:
        data["workflows"] = [
            {"description": s.description, **({"fileRef": paths.path_of(s.file_id)} if s.file_id else {})}
            for s in cs.workflows
        ]
    if cs.uses:
        data["uses"] = list(cs.uses)
    if children:
        included: list[dict[str, str]] = []
        for child in children:
            meta = {"name": child}
            description = repo.get(child).description
            if description.strip():
                meta["description"] = description
            included.append(meta)
        data["includedContexts"] = included
    if cs.entry_points:
        data["entryPoints"] = [{**ep.to_dict(), "fileRef": paths.path_of(ep.file_id)} for ep in cs.entry_points]
    if cs.system_behavior is not None and cs.system_behavior.to_dict():
        data["systemBehavior"] = cs.system_behavior.to_dict()
    body = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False, indent=2)
    return f"---\n{body}---"


def _file_section(resolved: ResolvedFile, content: str | ContextMaxError) -> list[str]:
    if isinstance(content, ContextMaxError):
        return [f"## FILE: {resolved.path}", "```text", f"// File not accessible: {content}", "```", ""]
    hint = language_hint(resolved.path)
    excerpts = extract_excerpts(resolved.path, content, resolved.function_refs)
    if excerpts is None:
        return [f"## FILE: {resolved.path}", f"```{hint}", content.rstrip("\n"), "```", ""]
    parts = [f"## FILE: {resolved.path}"]
    for ex in excerpts:
        parts += [f"### {ex.name} (lines {ex.start_line}-{ex.end_line})", f"```{hint}", ex.text, "```"]
    parts.append("")
    return parts


async def render_markdown(repo: ContextSetRepository, name: str, provider: FileContentProvider) -> str:
    """Markdown export of *name* and its transitive dependencies.

    Each file is rendered once, in the first section that includes it, with
    the merged closure reference.  Unreadable files get a placeholder block.
    """
    root = repo.get(name)
    children = dependency_order(repo, root.name)
    closure = resolve_closure(repo, root.name)
    contents = await _read_all(provider, [f.path for f in closure])
    by_id = {f.file_id: f for f in closure}

    preamble = _PREAMBLE_HIERARCHY if children else _PREAMBLE_SINGLE
    boundaries = (
        "Main context appears first, followed by child contexts; each section lists its own files."
        if children
        else "Use the files provided rather than assumptions about the broader codebase."
    )
    sections = [_frontmatter(repo, root, children), "", preamble, "", _USAGE.format(boundaries=boundaries), ""]

    emitted: set[str] = set()
    for index, set_name in enumerate([root.name, *children]):
        cs = repo.get(set_name)
        sections.append(f"# {'MAIN' if index == 0 else 'CHILD'} CONTEXT: {cs.name}")
        if cs.description:
            sections.append(f"**Description:** {cs.description}")
        if cs.workflows:
            sections.append(f"**Workflows:** {len(cs.workflows)} defined")
        if index > 0 and cs.uses:
            sections.append(f"**Uses:** {', '.join(cs.uses)}")
        sections.append("")
        for ref in cs.files:
            resolved = by_id[ref.file_id]
            if ref.file_id in emitted:
                sections += [f"## FILE: {resolved.path}", "_Included above._", ""]
                continue
            emitted.add(ref.file_id)
            sections += _file_section(resolved, contents[resolved.path])

    return "\n".join(sections).rstrip("\n") + "\n"


# ---------------------------------------------------------------------------
# Token counting
# ---------------------------------------------------------------------------

_TOKENIZER_ALIASES: dict[str, str] = {
    "claude": "cl100k_base",
}


@lru_cache(maxsize=4)
def _get_encoding(name: str) -> tiktoken.Encoding:
    """Get a cached tiktoken encoding by name."""
    resolved = _TOKENIZER_ALIASES.get(name, name)
    return tiktoken.get_encoding(resolved)


def count_tokens(text: str, encoding_name: str = "cl100k_base") -> int:
    """Count tokens in *text* using a tiktoken encoding."""
    if not text:
        return 0
    # Special-token text in project files counts as ordinary text
    return len(_get_encoding(encoding_name).encode(text, disallowed_special=()))


async def estimate_token_count(
    repo: ContextSetRepository,
    name: str,
    provider: FileContentProvider,
    encoding_name: str = "cl100k_base",
) -> int:
    """Tokens in the closure's file contents.  Unreadable files count zero.

    Partially included files count only their referenced declarations.
    """
    closure = resolve_closure(repo, name)
    contents = await _read_all(provider, [f.path for f in closure])
    total = 0
    for resolved in closure:
        content = contents[resolved.path]
        if isinstance(content, ContextMaxError):
            continue
        excerpts = extract_excerpts(resolved.path, content, resolved.function_refs)
        text = content if excerpts is None else "\n".join(e.text for e in excerpts)
        total += count_tokens(text, encoding_name)
    return total
