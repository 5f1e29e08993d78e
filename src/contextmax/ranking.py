"""Hybrid ranking: structural keyword matching fused with embedding similarity.

Two independent signals are computed per file:

``astScore``
    Keyword hits against the structural analysis (class, function, export
    and import names), the file path, and raw content, normalized by the
    best raw score in the result set (floor 1).
``llmScore``
    Cosine similarity between the query embedding and the file's content
    embedding, blended 0.7/0.3 with the similarity to the file's name, and
    clamped to [0, 1].

``finalScore = astScore * ast_weight + llmScore * llm_weight``, multiplied by
``synergy_multiplier`` when both signals reach ``synergy_min_score``, and
capped at ``max_final_score``.  Results sort by final score descending, then
path ascending.

Classification into entry-point / core-logic / helper / config / unrelated is
a best-effort heuristic from naming conventions, route-shaped declarations and
rank position.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from loguru import logger

from contextmax.embeddings import EmbeddingError, cosine_similarity
from contextmax.parsing import StructureInfo, analyze
from contextmax.schema import EntryProtocol

if TYPE_CHECKING:
    from contextmax.index import EmbeddingIndex, FileInput, FileVectors
    from contextmax.settings import SearchSettings


class Classification(StrEnum):
    ENTRY_POINT = "entry-point"
    CORE_LOGIC = "core-logic"
    HELPER = "helper"
    CONFIG = "config"
    UNRELATED = "unrelated"


# ---------------------------------------------------------------------------
# Query tokens
# ---------------------------------------------------------------------------

_TOKEN_SPLIT = re.compile(r"[\s_-]+")


def tokenize_query(query: str, min_length: int = 3) -> list[str]:
    """Lowercase tokens split on whitespace, ``_`` and ``-``; short tokens dropped.

    >>> tokenize_query("User login_flow a")
    ['user', 'login', 'flow']
    """
    tokens: list[str] = []
    for token in _TOKEN_SPLIT.split(query.lower()):
        if len(token) >= min_length and token not in tokens:
            tokens.append(token)
    return tokens


# ---------------------------------------------------------------------------
# Structural score
# ---------------------------------------------------------------------------

MATCH_WEIGHTS: dict[str, float] = {
    "class": 1.0,
    "function": 0.8,
    "path": 0.6,
    "export": 0.5,
    "import": 0.4,
    "content": 0.1,
}
CONTENT_SCORE_CAP = 0.5
MULTI_MATCH_BOOST = 0.25

# First matching path segment wins
_PATH_TYPE_MULTIPLIERS: tuple[tuple[str, float], ...] = (
    ("/model", 1.2),
    ("/controller", 1.1),
    ("/service", 1.1),
    ("/component", 1.1),
    ("/job", 1.0),
    ("/migrat", 0.7),
    ("/config", 0.6),
    ("/spec", 0.8),
    ("/test", 0.8),
)


def path_type_multiplier(path: str) -> float:
    lowered = "/" + path.lower().lstrip("/")
    for segment, multiplier in _PATH_TYPE_MULTIPLIERS:
        if segment in lowered:
            return multiplier
    return 1.0


@dataclass(frozen=True)
class StructuralMatch:
    """Raw (un-normalized) structural score of one file and what matched."""

    path: str
    score: float
    matches: tuple[str, ...] = ()


def structural_match(tokens: list[str], path: str, content: str, structure: StructureInfo) -> StructuralMatch | None:
    """Score one file against the query tokens.  None when nothing matched."""
    if not tokens:
        return None
    lowered_path = path.lower()
    lowered_content = content.lower()
    score = 0.0
    matched: list[str] = []

    name_sets = {
        "class": [c.name.lower() for c in structure.classes],
        "function": [f.name.lower() for f in structure.functions],
        "export": [e.name.lower() for e in structure.exports],
        "import": [i.module.lower() for i in structure.imports],
    }

    for token in tokens:
        if token in lowered_path:
            score += MATCH_WEIGHTS["path"]
            matched.append(f"path:{token}")
        for kind, names in name_sets.items():
            if any(token in name for name in names):
                score += MATCH_WEIGHTS[kind]
                matched.append(f"{kind}:{token}")
        occurrences = lowered_content.count(token)
        if occurrences:
            score += min(occurrences * MATCH_WEIGHTS["content"], CONTENT_SCORE_CAP)
            matched.append(f"content:{token}")

    if not matched:
        return None
    if len(matched) > 1:
        score *= 1 + (len(matched) - 1) * MULTI_MATCH_BOOST
    score *= path_type_multiplier(path)
    return StructuralMatch(path=path, score=score, matches=tuple(matched))


# ---------------------------------------------------------------------------
# Semantic score
# ---------------------------------------------------------------------------

CONTENT_SIMILARITY_WEIGHT = 0.7
FILENAME_SIMILARITY_WEIGHT = 0.3


def semantic_score(query_vector: list[float], vectors: FileVectors) -> float:
    """Query/file similarity in [0, 1], blending content and filename similarity."""
    similarity = max(0.0, cosine_similarity(query_vector, vectors.content))
    if vectors.filename is not None:
        name_similarity = max(0.0, cosine_similarity(query_vector, vectors.filename))
        similarity = similarity * CONTENT_SIMILARITY_WEIGHT + name_similarity * FILENAME_SIMILARITY_WEIGHT
    return min(1.0, similarity)


# ---------------------------------------------------------------------------
# Entry-point cues and classification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntryCue:
    """A route/handler/command-shaped construct found in a file."""

    protocol: EntryProtocol
    method: str
    line: int


_HTTP_METHODS = "get|post|put|delete|patch|head|options|route|api_route|all"
_ENTRY_CUE_PATTERNS: tuple[tuple[re.Pattern[str], EntryProtocol, str], ...] = (
    # @app.get("/x"), @router.post(...), @bp.route(...)
    (re.compile(rf"^\s*@\w+(?:\.\w+)*\.({_HTTP_METHODS})\s*\("), EntryProtocol.HTTP, ""),
    # app.get('/x', ...), router.post("/x", ...)
    (re.compile(rf"\b(?:app|router|server|api|route[sr]?)\.({_HTTP_METHODS})\s*\(\s*['\"`]/"), EntryProtocol.HTTP, ""),
    # Spring / Nest style annotations
    (re.compile(r"^\s*@(Get|Post|Put|Delete|Patch|Request)Mapping\b"), EntryProtocol.HTTP, ""),
    (re.compile(r"^\s*@(Get|Post|Put|Delete|Patch)\s*\("), EntryProtocol.HTTP, ""),
    (re.compile(r"\bdefineEventHandler\s*\("), EntryProtocol.HTTP, "ANY"),
    (re.compile(r"\bnew\s+WebSocket(?:Server)?\s*\(|@websocket\b|\.websocket\s*\("), EntryProtocol.WEBSOCKET, ""),
    (re.compile(r"\bEventSource\s*\(|text/event-stream"), EntryProtocol.SSE, ""),
    # Task queues
    (re.compile(r"^\s*@(?:\w+\.)?(?:task|shared_task|actor)\b"), EntryProtocol.QUEUE, ""),
    (re.compile(r"\b(?:consumer|subscriber)\.(?:subscribe|consume)\s*\("), EntryProtocol.QUEUE, ""),
    # Command-line entry points
    (re.compile(r"^\s*@(?:\w+\.)?(?:command|group)\s*\("), EntryProtocol.CLI, ""),
    (re.compile(r"^if\s+__name__\s*==\s*['\"]__main__['\"]"), EntryProtocol.CLI, ""),
    (re.compile(r"\bprocess\.argv\b|\bargparse\.ArgumentParser\s*\(|\bcommander\b"), EntryProtocol.CLI, ""),
    # Framework hooks / signal receivers
    (re.compile(r"^\s*@(?:\w+\.)?(?:receiver|on_event|event_handler)\s*\("), EntryProtocol.HOOK, ""),
    (re.compile(r"\baddEventListener\s*\("), EntryProtocol.UI, ""),
)

_ENTRY_STEMS = frozenset(
    {"main", "__main__", "index", "app", "server", "cli", "routes", "router", "urls", "handler", "handlers", "manage"}
)
_CONFIG_STEMS = frozenset({"config", "settings", "configuration", "conf", "env", "constants"})
_CONFIG_SUFFIXES = frozenset({".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".env", ".properties"})
_HELPER_PARTS = frozenset({"utils", "util", "helpers", "helper", "lib", "common", "shared", "support", "tools"})
_CORE_PARTS = frozenset({"services", "service", "models", "model", "core", "domain", "controllers", "store"})


def find_entry_cues(content: str) -> list[EntryCue]:
    """Route-, handler- and command-shaped constructs in *content*, in line order."""
    cues: list[EntryCue] = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        for pattern, protocol, default_method in _ENTRY_CUE_PATTERNS:
            m = pattern.search(line)
            if m:
                method = default_method
                if protocol is EntryProtocol.HTTP and not method and m.groups():
                    method = m.group(1).upper()
                    if method in {"ROUTE", "API_ROUTE", "ALL", "REQUEST"}:
                        method = "ANY"
                cues.append(EntryCue(protocol=protocol, method=method, line=lineno))
                break
    return cues


def _is_config(pure: PurePosixPath) -> bool:
    stem = pure.stem.lower().lstrip(".")
    if pure.suffix.lower() in _CONFIG_SUFFIXES or pure.name.lower().startswith(".env"):
        return True
    if any(part in _CONFIG_STEMS for part in stem.replace("-", ".").replace("_", ".").split(".")):
        return True
    return any(part.lower() in {"config", "configs", "settings"} for part in pure.parts[:-1])


def classify(
    path: str,
    content: str,
    final_score: float,
    position: int,
    total: int,
    *,
    unrelated_below: float = 0.05,
) -> Classification:
    """Best-effort label for a ranked file.

    Order of checks: score floor, config naming, entry-point naming or
    route-shaped code, helper directories, core-logic directories, and
    finally rank position (upper third is core logic, the rest helpers).
    """
    if final_score < unrelated_below:
        return Classification.UNRELATED
    pure = PurePosixPath(path)
    if _is_config(pure):
        return Classification.CONFIG
    if pure.stem.lower() in _ENTRY_STEMS or find_entry_cues(content):
        return Classification.ENTRY_POINT
    dirs = {part.lower() for part in pure.parts[:-1]}
    if dirs & _HELPER_PARTS or pure.stem.lower() in _HELPER_PARTS:
        return Classification.HELPER
    if dirs & _CORE_PARTS:
        return Classification.CORE_LOGIC
    return Classification.CORE_LOGIC if position < max(3, total // 3) else Classification.HELPER


# ---------------------------------------------------------------------------
# Combination
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RankedFile:
    """One ranked search result."""

    file: str
    ast_score: float
    llm_score: float
    final_score: float
    classification: Classification
    has_synergy: bool
    matches: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "astScore": round(self.ast_score, 6),
            "llmScore": round(self.llm_score, 6),
            "finalScore": round(self.final_score, 6),
            "classification": self.classification.value,
            "hasSynergy": self.has_synergy,
            "matches": list(self.matches),
        }


def combine_scores(
    structural: dict[str, StructuralMatch],
    semantic: dict[str, float],
    contents: dict[str, str],
    settings: SearchSettings,
) -> list[RankedFile]:
    """Fuse the two signals into a sorted, classified result list."""
    max_raw = max([1.0, *(m.score for m in structural.values())])
    scored: list[tuple[str, float, float, float, bool]] = []
    for path in set(structural) | {p for p, s in semantic.items() if s > 0}:
        ast_score = structural[path].score / max_raw if path in structural else 0.0
        llm_score = semantic.get(path, 0.0)
        has_synergy = ast_score >= settings.synergy_min_score and llm_score >= settings.synergy_min_score
        final = ast_score * settings.ast_weight + llm_score * settings.llm_weight
        if has_synergy:
            final *= settings.synergy_multiplier
        scored.append((path, ast_score, llm_score, min(final, settings.max_final_score), has_synergy))

    scored.sort(key=lambda row: (-row[3], row[0]))
    total = len(scored)
    return [
        RankedFile(
            file=path,
            ast_score=ast_score,
            llm_score=llm_score,
            final_score=final,
            classification=classify(
                path, contents.get(path, ""), final, position, total, unrelated_below=settings.unrelated_below
            ),
            has_synergy=synergy,
            matches=structural[path].matches if path in structural else (),
        )
        for position, (path, ast_score, llm_score, final, synergy) in enumerate(scored)
    ]


# ---------------------------------------------------------------------------
# Ranker
# ---------------------------------------------------------------------------


class HybridRanker:
    """Ranks files for a query using structure and (optionally) embeddings.

    Without an index, or when the query embedding fails, every ``llmScore``
    is 0 and ranking is purely structural.  A file whose embedding fails
    gets ``llmScore`` 0; the rest of the ranking proceeds.
    """

    def __init__(self, settings: SearchSettings, index: EmbeddingIndex | None = None) -> None:
        self.settings = settings
        self.index = index
        self._structures: dict[str, tuple[int, StructureInfo]] = {}

    def structure_of(self, path: str, content: str) -> StructureInfo:
        """Analyze *content*, memoized per path while the content is unchanged."""
        key = hash(content)
        cached = self._structures.get(path)
        if cached is not None and cached[0] == key:
            return cached[1]
        structure = analyze(content, path)
        self._structures[path] = (key, structure)
        return structure

    def rank_structural(self, query: str, files: list[FileInput]) -> dict[str, StructuralMatch]:
        tokens = tokenize_query(query, self.settings.min_token_length)
        found: dict[str, StructuralMatch] = {}
        for f in files:
            match = structural_match(tokens, f.path, f.content, self.structure_of(f.path, f.content))
            if match is not None:
                found[f.path] = match
        return found

    async def rank_semantic(self, query: str, files: list[FileInput]) -> dict[str, float]:
        if self.index is None or not files:
            return {}
        try:
            query_vector = await self.index.embed_query(query)
        except EmbeddingError as exc:
            logger.warning("Query embedding failed, ranking structurally only: {}", exc)
            return {}
        batch = await self.index.embed_files(files)
        for path in batch.failed:
            logger.warning("No embedding for {}; llmScore degraded to 0", path)
        return {path: semantic_score(query_vector, vectors) for path, vectors in batch.vectors.items()}

    async def rank(self, query: str, files: list[FileInput], *, limit: int | None = None) -> list[RankedFile]:
        """Rank *files* for *query*.  Deterministic for identical input."""
        if not query.strip():
            return []
        structural = self.rank_structural(query, files)
        semantic = await self.rank_semantic(query, files)
        contents = {f.path: f.content for f in files}
        ranked = combine_scores(structural, semantic, contents, self.settings)
        effective_limit = self.settings.limit if limit is None else limit
        logger.debug(
            "Ranked {} files for {!r}: {} structural, {} semantic", len(ranked), query, len(structural), len(semantic)
        )
        return ranked[:effective_limit] if effective_limit > 0 else ranked
