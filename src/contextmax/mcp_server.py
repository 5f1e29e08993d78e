"""MCP server for contextmax.

Exposes the project's context sets to AI coding agents via read-only MCP
tools.  The working copy is re-read on every call so edits made through the
CLI are visible without a restart.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from contextmax.errors import ContextMaxError, NotFoundError
from contextmax.schema import prefix_name
from contextmax.workspace import Workspace

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from contextmax.settings import ContextMaxSettings

_DEFAULT_LIMIT = 20
_MAX_LIMIT = 100


@dataclass
class AppContext:
    workspace: Workspace


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_app_ctx(ctx: Context) -> AppContext:
    """Extract AppContext from the MCP request context."""
    return ctx.request_context.lifespan_context


def _fresh_workspace(ctx: Context) -> Workspace:
    ws = _get_app_ctx(ctx).workspace
    ws.reload()
    return ws


def _result(records: list[dict[str, Any]], *, limit: int | None = None, query_ms: float = 0.0) -> dict[str, Any]:
    """Consistent result envelope."""
    return {
        "results": records,
        "count": len(records),
        "truncated": limit is not None and len(records) >= limit,
        "query_ms": round(query_ms, 1),
    }


def _error(message: str, *, code: str) -> dict[str, Any]:
    """Error envelope."""
    return {"error": message, "code": code}


def _error_for(exc: ContextMaxError) -> dict[str, Any]:
    code = "not_found" if isinstance(exc, NotFoundError) else type(exc).__name__
    return _error(str(exc), code=code)


def _clamp_limit(limit: int | None) -> int:
    """Clamp limit to [1, 100], default 20."""
    if limit is None:
        return _DEFAULT_LIMIT
    return max(1, min(limit, _MAX_LIMIT))


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_mcp_server(settings: ContextMaxSettings) -> FastMCP:
    """Create and configure the contextmax MCP server."""

    @asynccontextmanager
    async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
        workspace = Workspace.open(settings)
        logger.info("MCP serving {} context sets from {}", len(workspace.repository), settings.project_root)
        try:
            yield AppContext(workspace=workspace)
        finally:
            await workspace.close()
            logger.info("MCP server shut down")

    mcp = FastMCP(
        name="contextmax",
        instructions=(
            "contextmax: curated context sets of this codebase. "
            "Start with list_context_sets. Use get_context_set for the full Markdown context, "
            "resolve_closure for the file list, estimate_tokens before pulling large sets, "
            "and search_files to find files relevant to a task."
        ),
        lifespan=app_lifespan,
    )

    _register_set_tools(mcp)
    _register_search_tools(mcp)
    return mcp


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------


def _register_set_tools(mcp: FastMCP) -> None:
    @mcp.tool(description="List every context set with its description, file count and the sets it uses.")
    async def list_context_sets(ctx: Context = None) -> dict[str, Any]:  # type: ignore[assignment]
        t0 = time.monotonic()
        try:
            ws = _fresh_workspace(ctx)
        except ContextMaxError as exc:
            return _error_for(exc)
        records = [
            {"name": cs.name, "description": cs.description, "files": len(cs.files), "uses": list(cs.uses)}
            for cs in ws.repository
        ]
        return _result(records, query_ms=(time.monotonic() - t0) * 1000)

    @mcp.tool(
        description=(
            "Get a context set rendered as Markdown: YAML frontmatter with workflows and entry points, "
            "followed by the contents of its files and of every set it uses."
        ),
    )
    async def get_context_set(name: str, ctx: Context = None) -> dict[str, Any]:  # type: ignore[assignment]
        try:
            ws = _fresh_workspace(ctx)
            markdown = await ws.render_markdown(name)
        except ContextMaxError as exc:
            return _error_for(exc)
        return {"name": prefix_name(name), "markdown": markdown}

    @mcp.tool(
        description=(
            "Resolve the files a context set needs, including those of the sets it uses transitively. "
            "Function-level references are listed; a file without them is included whole."
        ),
    )
    async def resolve_closure(name: str, ctx: Context = None) -> dict[str, Any]:  # type: ignore[assignment]
        t0 = time.monotonic()
        try:
            ws = _fresh_workspace(ctx)
            closure = ws.closure(name)
        except ContextMaxError as exc:
            return _error_for(exc)
        return _result([f.to_dict() for f in closure], query_ms=(time.monotonic() - t0) * 1000)

    @mcp.tool(description="Estimate the token count of a context set and everything it uses.")
    async def estimate_tokens(name: str, ctx: Context = None) -> dict[str, Any]:  # type: ignore[assignment]
        try:
            ws = _fresh_workspace(ctx)
            count = await ws.estimate_token_count(name)
        except ContextMaxError as exc:
            return _error_for(exc)
        return {"name": prefix_name(name), "tokens": count, "tokenizer": ws.settings.search.tokenizer}


def _register_search_tools(mcp: FastMCP) -> None:
    @mcp.tool(
        description=(
            "Rank project files for a natural-language query, combining keyword/structure matches "
            "with embedding similarity. Each result has astScore, llmScore, finalScore, "
            "a best-effort classification and hasSynergy when both signals agree."
        ),
    )
    async def search_files(
        query: str,
        limit: int = 20,
        semantic: bool = True,
        ctx: Context = None,  # type: ignore[assignment]
    ) -> dict[str, Any]:
        clamped = _clamp_limit(limit)
        t0 = time.monotonic()
        ws = _get_app_ctx(ctx).workspace
        results = await ws.search(query, limit=clamped, semantic=semantic)
        if results is None:
            return _error("Superseded by a newer search", code="superseded")
        return _result([r.to_dict() for r in results], limit=clamped, query_ms=(time.monotonic() - t0) * 1000)
