"""CLI entrypoint for contextmax."""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
from loguru import logger

from contextmax.errors import ContextMaxError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from contextmax.settings import ContextMaxSettings
    from contextmax.workspace import Workspace

app = typer.Typer(
    name="contextmax",
    help="contextmax: curate reusable context sets of your code for AI tools.",
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Output mode
# ---------------------------------------------------------------------------


@dataclass
class OutputMode:
    quiet: bool = False
    json: bool = False
    verbose: int = 0
    no_color: bool = False
    project: Path | None = None


_output = OutputMode()


def _configure_logging() -> None:
    logger.remove()
    if _output.quiet:
        level = "ERROR"
    elif _output.verbose >= 2:
        level = "TRACE"
    elif _output.verbose == 1:
        level = "DEBUG"
    else:
        level = "INFO"
    logger.add(sys.stderr, level=level, colorize=not _output.no_color, format="<level>{message}</level>")


@app.callback()
def main(
    quiet: bool = typer.Option(False, "--quiet", "-q", envvar="CONTEXTMAX_QUIET", help="Only log errors."),
    json_: bool = typer.Option(False, "--json", help="Machine-readable JSON output."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="More log output (repeatable)."),
    no_color: bool = typer.Option(False, "--no-color", envvar="NO_COLOR", help="Disable colored log output."),
    project: Path | None = typer.Option(None, "--project", "-C", help="Project root (default: git root or cwd)."),
) -> None:
    """Global options."""
    _output.quiet = quiet
    _output.json = json_
    _output.verbose = verbose
    _output.no_color = no_color
    _output.project = project
    _configure_logging()


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@contextmanager
def _errors() -> Iterator[None]:
    """Report library errors as a logged message and exit code 1."""
    try:
        yield
    except ContextMaxError as exc:
        logger.error("{}", exc)
        raise typer.Exit(code=1) from exc


def _settings() -> ContextMaxSettings:
    from contextmax.settings import ContextMaxSettings

    if _output.project is not None:
        return ContextMaxSettings(project_root=_output.project.resolve())
    return ContextMaxSettings()


def _workspace() -> Workspace:
    from contextmax.workspace import Workspace

    return Workspace.open(_settings())


@contextmanager
def _editing() -> Iterator[Workspace]:
    """Open the working copy, yield it for mutation, save it on success."""
    with _errors():
        ws = _workspace()
        yield ws
        ws.save()


# ---------------------------------------------------------------------------
# Working copy
# ---------------------------------------------------------------------------


@app.command()
def init() -> None:
    """Create an empty context-sets.json in the project root."""
    with _errors():
        settings = _settings()
        path = settings.working_copy_path
        if path.exists():
            logger.info("{} already exists", path)
            return
        from contextmax.workspace import Workspace

        Workspace(settings).save()
        logger.info("Created {}", path)


@app.command()
def create(
    name: str = typer.Argument(..., help="Name of the new context set."),
    description: str = typer.Option("", "--description", "-d", help="What the set covers."),
) -> None:
    """Create an empty context set."""
    with _editing() as ws:
        cs = ws.create(name, description)
    logger.info("Created context set {}", cs.name)


@app.command()
def delete(name: str = typer.Argument(..., help="Context set to delete.")) -> None:
    """Delete a context set and remove it from every other set's uses."""
    with _editing() as ws:
        ws.delete(name)
    logger.info("Deleted context set {}", name)


@app.command()
def rename(
    old: str = typer.Argument(..., help="Current name."),
    new: str = typer.Argument(..., help="New name."),
) -> None:
    """Rename a context set."""
    with _editing() as ws:
        cs = ws.rename(old, new)
    logger.info("Renamed {} to {}", old, cs.name)


@app.command("list")
def list_sets() -> None:
    """List context sets."""
    with _errors():
        ws = _workspace()
    rows = [
        {"name": cs.name, "description": cs.description, "files": len(cs.files), "uses": list(cs.uses)}
        for cs in ws.repository
    ]
    if _output.json:
        _echo_json(rows)
        return
    if not rows:
        logger.info("No context sets yet; create one with `contextmax create <name>`")
        return
    for row in rows:
        uses = f" uses {', '.join(row['uses'])}" if row["uses"] else ""
        typer.echo(f"{row['name']} ({row['files']} files){uses}")


@app.command()
def show(name: str = typer.Argument(..., help="Context set to show.")) -> None:
    """Show a context set and its resolved files."""
    from contextmax.schema import prefix_name

    with _errors():
        ws = _workspace()
        cs = ws.repository.get(name)
        closure = ws.closure(name)
    if _output.json:
        _echo_json({"name": prefix_name(cs.name), **cs.to_dict(), "closure": [f.to_dict() for f in closure]})
        return
    typer.echo(f"{cs.name}: {cs.description}" if cs.description else cs.name)
    if cs.uses:
        typer.echo(f"  uses: {', '.join(cs.uses)}")
    for step_no, step in enumerate(cs.workflows, 1):
        typer.echo(f"  step {step_no}: {step.description}")
    for resolved in closure:
        refs = f" [{', '.join(r.name for r in resolved.function_refs)}]" if resolved.function_refs else ""
        origin = "" if resolved.sets == (cs.name,) else f" (via {', '.join(resolved.sets)})"
        typer.echo(f"  {resolved.path}{refs}{origin}")


# ---------------------------------------------------------------------------
# Files and uses
# ---------------------------------------------------------------------------


@app.command("add-file")
def add_file(
    set_name: str = typer.Argument(..., help="Context set."),
    paths: list[str] = typer.Argument(..., help="Project-relative file paths."),
    function: list[str] = typer.Option([], "--function", "-f", help="Include only this function (repeatable)."),
    comment: str = typer.Option("", "--comment", help="Comment stored in the file manifest."),
) -> None:
    """Add files to a context set."""
    from contextmax.schema import FunctionRef

    refs = [FunctionRef(name=f) for f in function]
    with _editing() as ws:
        for path in paths:
            if ws.add_file(set_name, path, function_refs=refs, comment=comment):
                logger.info("Added {} to {}", path, set_name)
            else:
                logger.info("{} is already in {}", path, set_name)


@app.command("remove-file")
def remove_file(
    set_name: str = typer.Argument(..., help="Context set."),
    path: str = typer.Argument(..., help="File path or id."),
) -> None:
    """Remove a file from a context set (the manifest keeps it)."""
    with _editing() as ws:
        removed = ws.remove_file(set_name, path)
    logger.info("Removed {} from {}" if removed else "{} is not in {}", path, set_name)


@app.command("set-functions")
def set_functions(
    set_name: str = typer.Argument(..., help="Context set."),
    path: str = typer.Argument(..., help="File path or id already in the set."),
    names: list[str] = typer.Argument(None, help="Function names; none means the whole file."),
) -> None:
    """Narrow a file to some of its functions, or widen it back to the whole file."""
    from contextmax.schema import FunctionRef

    with _editing() as ws:
        ws.set_function_refs(set_name, path, [FunctionRef(name=n) for n in names or []])
    logger.info("{} in {} now includes {}", path, set_name, ", ".join(names) if names else "the whole file")


@app.command()
def use(
    parent: str = typer.Argument(..., help="Set that depends on another."),
    child: str = typer.Argument(..., help="Set it uses."),
) -> None:
    """Make PARENT use CHILD (rejected if it would create a cycle)."""
    with _editing() as ws:
        added = ws.add_use(parent, child)
    logger.info("{} uses {}" if added else "{} already uses {}", parent, child)


@app.command()
def unuse(
    parent: str = typer.Argument(..., help="Set that depends on another."),
    child: str = typer.Argument(..., help="Set to stop using."),
) -> None:
    """Remove a uses edge."""
    with _editing() as ws:
        removed = ws.remove_use(parent, child)
    logger.info("{} no longer uses {}" if removed else "{} did not use {}", parent, child)


@app.command()
def prune() -> None:
    """Drop manifest entries no context set references."""
    with _editing() as ws:
        removed = ws.prune_manifest()
    if _output.json:
        _echo_json({"removed": removed})
    else:
        logger.info("Pruned {} manifest entries", len(removed))


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@app.command("export")
def export_cmd(
    name: str | None = typer.Argument(None, help="Context set (required for markdown)."),
    format_: str = typer.Option("json", "--format", "-f", help="Output format: json or markdown."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
) -> None:
    """Export the context sets as JSON, or one set as Markdown."""
    from contextmax.providers import FileSink, StdoutSink

    if format_ not in ("json", "markdown", "md"):
        logger.error("Unknown format '{}': use json or markdown", format_)
        raise typer.Exit(code=1)
    with _errors():
        ws = _workspace()
        if format_ == "json":
            text = ws.to_json()
        elif name is None:
            logger.error("Markdown export needs a context set name")
            raise typer.Exit(code=1)
        else:
            text = asyncio.run(ws.render_markdown(name))
    sink = FileSink(output) if output is not None else StdoutSink()
    sink.write(text)


@app.command()
def tokens(name: str = typer.Argument(..., help="Context set.")) -> None:
    """Estimate the token count of a context set and its dependencies."""
    with _errors():
        ws = _workspace()
        count = asyncio.run(ws.estimate_token_count(name))
    if _output.json:
        _echo_json({"name": name, "tokens": count})
    else:
        typer.echo(f"{name}: ~{count} tokens")


# ---------------------------------------------------------------------------
# Scan, embed, search
# ---------------------------------------------------------------------------


@app.command()
def scan() -> None:
    """List the project files contextmax considers."""
    from contextmax.scope import ProjectScope

    paths = ProjectScope(_settings()).scan()
    if _output.json:
        _echo_json(paths)
        return
    for path in paths:
        typer.echo(path)


@app.command()
def embed() -> None:
    """Embed every project file into the cache."""
    asyncio.run(_run_embed())


async def _run_embed() -> None:
    from contextmax.events import EmbedProgress

    with _errors():
        ws = _workspace()
    last = -1

    def _show(event: EmbedProgress) -> None:
        nonlocal last
        if event.percent // 10 != last // 10 or event.percent == 100:
            logger.info("Embedding {}% ({}/{})", event.percent, event.done, event.total)
            last = event.percent

    ws.store.subscribe(_show, EmbedProgress)
    try:
        result = await ws.embed_project()
    except KeyboardInterrupt:
        logger.info("Interrupted")
        raise typer.Exit(code=130) from None
    finally:
        await ws.close()

    summary = {
        "files": result.total,
        "embedded": len(result.vectors),
        "cache_hits": result.cache_hits,
        "computed": result.computed,
        "failed": sorted(result.failed),
    }
    if _output.json:
        _echo_json(summary)
    else:
        logger.info(
            "Embedded {}/{} files ({} from cache, {} failed)",
            summary["embedded"],
            summary["files"],
            summary["cache_hits"],
            len(result.failed),
        )
    if result.failed and not result.vectors:
        raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help="What you are looking for."),
    limit: int = typer.Option(20, "--limit", "-n", help="Max results to return."),
    structural_only: bool = typer.Option(False, "--structural", help="Skip embeddings; keyword/structure only."),
) -> None:
    """Rank project files for a query."""
    asyncio.run(_run_search(query, limit, semantic=not structural_only))


async def _run_search(query: str, limit: int, *, semantic: bool) -> None:
    with _errors():
        ws = _workspace()
    try:
        results = await ws.search(query, limit=limit, semantic=semantic) or []
    finally:
        await ws.close()

    if _output.json:
        _echo_json([r.to_dict() for r in results])
        return
    if not results:
        logger.info("No results found for '{}'", query)
        return
    for i, r in enumerate(results, 1):
        synergy = " *" if r.has_synergy else ""
        typer.echo(
            f"{i}. {r.file} [{r.classification}] final={r.final_score:.3f} "
            f"ast={r.ast_score:.3f} llm={r.llm_score:.3f}{synergy}"
        )


# ---------------------------------------------------------------------------
# MCP
# ---------------------------------------------------------------------------


@app.command()
def mcp(
    transport: str = typer.Option("stdio", "--transport", "-t", help="Transport: stdio, streamable-http"),
) -> None:
    """Start the MCP server for AI agent connections."""
    from contextmax.mcp_server import create_mcp_server

    server = create_mcp_server(_settings())
    logger.info("Starting MCP server (transport={})", transport)
    server.run(transport=transport)  # type: ignore[arg-type]  # typer gives str, FastMCP expects Literal
