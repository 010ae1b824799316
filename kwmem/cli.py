"""
CLI interface for keyword memory.

Usage:
    kwmem add "Use WAL mode for concurrent readers" -k sqlite -k wal
    kwmem search "sqlite concurrency"
    kwmem import ~/notes --category notes
    kwmem sync push
"""

import json
import os
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .commands import dispatch
from .errors import KwmemError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .service import MemoryService


# Configure quiet mode by default (suppress verbose library output)
# Set KWMEM_VERBOSE=1 to enable debug mode via environment
if os.environ.get("KWMEM_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"kwmem {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


app = typer.Typer(
    name="kwmem",
    help="Keyword memory with co-occurrence graph search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Keyword memory with co-occurrence graph search."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="KWMEM_STORE_PATH",
        help="Path to the store directory (default: ~/.kwmem/)"
    )
]

CategoryOption = Annotated[
    Optional[str],
    typer.Option(
        "--category", "-c",
        help="Category label"
    )
]


def _get_service(store: Optional[Path]) -> MemoryService:
    """Open the store, handling errors gracefully."""
    try:
        svc = MemoryService(store, ops_log=True)
        svc.init()
    except (KwmemError, ValueError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    return svc


def _run(store: Optional[Path], verb: str, params: dict[str, Any]) -> None:
    """Run one verb against the store and print its response."""
    svc = _get_service(store)
    try:
        response = dispatch(svc, verb, params)
    finally:
        svc.close()
    typer.echo(response.text, err=response.is_error)
    if response.is_error:
        raise typer.Exit(1)


def _parse_metadata(metadata: Optional[str]) -> Optional[dict]:
    if metadata is None:
        return None
    try:
        value = json.loads(metadata)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: --metadata is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(value, dict):
        typer.echo("Error: --metadata must be a JSON object", err=True)
        raise typer.Exit(1)
    return value


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@app.command()
def add(
    content: Annotated[str, typer.Argument(help="Text to remember")],
    keyword: Annotated[list[str], typer.Option(
        "--keyword", "-k",
        help="Keyword for indexing (repeatable)"
    )],
    category: CategoryOption = None,
    source: Annotated[Optional[str], typer.Option(
        "--source",
        help="Where this memory came from"
    )] = None,
    metadata: Annotated[Optional[str], typer.Option(
        "--metadata", "-m",
        help='Extra metadata as a JSON object, e.g. \'{"project": "x"}\''
    )] = None,
    store: StoreOption = None,
):
    """Create a new memory entry."""
    params: dict[str, Any] = {"content": content, "keywords": keyword}
    if category is not None:
        params["category"] = category
    if source is not None:
        params["source"] = source
    meta = _parse_metadata(metadata)
    if meta is not None:
        params["metadata"] = meta
    _run(store, "memory.create", params)


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Memory entry ID")],
    store: StoreOption = None,
):
    """Show a memory entry."""
    _run(store, "memory.read", {"id": id})


@app.command()
def update(
    id: Annotated[str, typer.Argument(help="Memory entry ID")],
    content: Annotated[Optional[str], typer.Option(
        "--content",
        help="New content"
    )] = None,
    keyword: Annotated[Optional[list[str]], typer.Option(
        "--keyword", "-k",
        help="Replacement keyword (repeatable; replaces all keywords)"
    )] = None,
    category: CategoryOption = None,
    source: Annotated[Optional[str], typer.Option(
        "--source",
        help="New source"
    )] = None,
    metadata: Annotated[Optional[str], typer.Option(
        "--metadata", "-m",
        help="Replacement metadata as a JSON object"
    )] = None,
    store: StoreOption = None,
):
    """Change fields of a memory entry."""
    params: dict[str, Any] = {"id": id}
    if content is not None:
        params["content"] = content
    if keyword:
        params["keywords"] = keyword
    if category is not None:
        params["category"] = category
    if source is not None:
        params["source"] = source
    meta = _parse_metadata(metadata)
    if meta is not None:
        params["metadata"] = meta
    _run(store, "memory.update", params)


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Memory entry ID")],
    store: StoreOption = None,
):
    """Delete a memory entry."""
    _run(store, "memory.delete", {"id": id})


@app.command("list")
def list_entries(
    category: CategoryOption = None,
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )] = 100,
    offset: Annotated[int, typer.Option(
        "--offset",
        help="Number of entries to skip"
    )] = 0,
    store: StoreOption = None,
):
    """List memory entries, newest first."""
    _run(store, "memory.list", {"category": category, "limit": limit, "offset": offset})


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )] = None,
    min_score: Annotated[Optional[float], typer.Option(
        "--min-score",
        help="Drop results scoring below this"
    )] = None,
    category: CategoryOption = None,
    no_expansion: Annotated[bool, typer.Option(
        "--no-expansion",
        help="Match query keywords exactly, without graph expansion"
    )] = False,
    fulltext: Annotated[bool, typer.Option(
        "--fulltext", "-f",
        help="Full-text match over content instead of graph search"
    )] = False,
    store: StoreOption = None,
):
    """Search memories through the keyword graph."""
    params: dict[str, Any] = {"query": query, "category": category, "fulltext": fulltext}
    if limit is not None:
        params["max_results"] = limit
    if min_score is not None:
        params["min_score"] = min_score
    if no_expansion:
        params["use_expansion"] = False
    _run(store, "memory.search", params)


@app.command("import")
def import_files(
    path: Annotated[Path, typer.Argument(help="Directory to import")],
    ext: Annotated[Optional[list[str]], typer.Option(
        "--ext", "-e",
        help="Allowed file extension (repeatable, e.g. -e .md -e .txt)"
    )] = None,
    category: CategoryOption = None,
    recursive: Annotated[bool, typer.Option(
        "--recursive/--no-recursive",
        help="Scan subdirectories"
    )] = True,
    store: StoreOption = None,
):
    """Import text files from a directory."""
    params: dict[str, Any] = {"path": str(path), "recursive": recursive}
    if ext:
        params["extensions"] = ext
    if category is not None:
        params["category"] = category
    _run(store, "memory.import", params)


@app.command()
def keywords(
    keyword: Annotated[Optional[str], typer.Argument(
        help="Show keywords related to this one (default: top keywords and stats)"
    )] = None,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Maximum keywords to return"
    )] = None,
    store: StoreOption = None,
):
    """Inspect the keyword graph."""
    _run(store, "memory.keywords", {"keyword": keyword, "limit": limit})


@app.command()
def sync(
    action: Annotated[str, typer.Argument(help="push, pull or status")],
    store: StoreOption = None,
):
    """Push, pull or check the remote copy of the store."""
    _run(store, "memory.sync", {"action": action})


@app.command()
def rebuild(
    store: StoreOption = None,
):
    """Rebuild the keyword graph from stored entries."""
    _run(store, "memory.rebuild", {})


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="kwmem CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
