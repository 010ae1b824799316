"""
Command table for kwmem.

Every operation is exposed as a named verb ("memory.search", ...) with a
pydantic parameter model and a handler. dispatch() validates the raw
parameters, runs the handler against a MemoryService and returns a
CommandResponse carrying human-readable text, so transports (the CLI, or
anything else) render every outcome the same way.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import KwmemError
from .service import MemoryService

logger = logging.getLogger(__name__)

NOT_FOUND = "Memory not found"


@dataclass(frozen=True)
class CommandResponse:
    text: str
    is_error: bool = False


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _format_time(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateParams(_Params):
    content: str = Field(description="Memory content")
    keywords: list[str] = Field(description="Keywords for indexing")
    category: Optional[str] = Field(default=None, description="Category name")
    source: Optional[str] = Field(default=None, description="Where the memory came from")
    metadata: Optional[dict[str, Any]] = Field(default=None, description="Additional metadata")


class IdParams(_Params):
    id: str = Field(description="Memory entry ID")


class UpdateParams(_Params):
    id: str = Field(description="Memory entry ID")
    content: Optional[str] = Field(default=None, description="New content")
    keywords: Optional[list[str]] = Field(default=None, description="New keywords")
    category: Optional[str] = Field(default=None, description="New category")
    source: Optional[str] = Field(default=None, description="New source")
    metadata: Optional[dict[str, Any]] = Field(default=None, description="New metadata")


class ListParams(_Params):
    category: Optional[str] = Field(default=None, description="Filter by category")
    limit: int = Field(default=100, ge=1, description="Maximum results")
    offset: int = Field(default=0, ge=0, description="Offset for pagination")


class SearchParams(_Params):
    query: str = Field(description="Search query")
    max_results: Optional[int] = Field(default=None, ge=1, description="Maximum results")
    min_score: Optional[float] = Field(default=None, ge=0, description="Minimum score threshold")
    category: Optional[str] = Field(default=None, description="Filter by category")
    use_expansion: Optional[bool] = Field(default=None, description="Expand the query through the keyword graph")
    fulltext: bool = Field(default=False, description="Plain full-text match instead of graph search")


class ImportParams(_Params):
    path: str = Field(description="Directory path to import")
    extensions: Optional[list[str]] = Field(default=None, description="Allowed file extensions")
    category: Optional[str] = Field(default=None, description="Category for imported files")
    recursive: Optional[bool] = Field(default=None, description="Recursive scan")
    max_file_size: Optional[int] = Field(default=None, ge=1, description="Largest file to import, in bytes")


class KeywordsParams(_Params):
    keyword: Optional[str] = Field(default=None, description="Get related keywords for this keyword")
    limit: Optional[int] = Field(default=None, ge=1, description="Limit results")


class SyncParams(_Params):
    action: Literal["push", "pull", "status"] = Field(description="Sync action")


class RebuildParams(_Params):
    pass


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _create(service: MemoryService, p: CreateParams) -> CommandResponse:
    entry = service.create(
        p.content,
        p.keywords,
        category=p.category,
        source=p.source,
        metadata=p.metadata,
    )
    return CommandResponse(_json(entry.to_dict()))


def _read(service: MemoryService, p: IdParams) -> CommandResponse:
    entry = service.read(p.id)
    if entry is None:
        return CommandResponse(NOT_FOUND, is_error=True)
    return CommandResponse(_json(entry.to_dict()))


def _update(service: MemoryService, p: UpdateParams) -> CommandResponse:
    # Only fields the caller supplied; an explicit null clears an optional field
    fields = p.model_dump(exclude_unset=True, exclude={"id"})
    entry = service.update(p.id, **fields)
    if entry is None:
        return CommandResponse(NOT_FOUND, is_error=True)
    return CommandResponse(_json(entry.to_dict()))


def _delete(service: MemoryService, p: IdParams) -> CommandResponse:
    if service.delete(p.id):
        return CommandResponse("Deleted successfully")
    return CommandResponse(NOT_FOUND, is_error=True)


def _list(service: MemoryService, p: ListParams) -> CommandResponse:
    entries = service.list(category=p.category, limit=p.limit, offset=p.offset)
    return CommandResponse(_json([e.to_dict() for e in entries]))


def _search(service: MemoryService, p: SearchParams) -> CommandResponse:
    if p.fulltext:
        limit = p.max_results or service.config.search.max_results
        entries = service.search_fulltext(p.query, limit=limit)
        return CommandResponse(_json([e.to_dict() for e in entries]))
    results = service.search(
        p.query,
        max_results=p.max_results,
        min_score=p.min_score,
        category=p.category,
        use_expansion=p.use_expansion,
    )
    return CommandResponse(_json([r.to_dict() for r in results]))


def _import(service: MemoryService, p: ImportParams) -> CommandResponse:
    result = service.import_directory(
        p.path,
        extensions=p.extensions,
        category=p.category,
        recursive=p.recursive,
        max_file_size=p.max_file_size,
    )
    text = f"Imported {result.imported} files"
    if result.errors:
        text += "\nErrors:\n" + "\n".join(result.errors)
    return CommandResponse(text, is_error=bool(result.errors) and result.imported == 0)


def _keywords(service: MemoryService, p: KeywordsParams) -> CommandResponse:
    if p.keyword:
        related = service.get_related_keywords(p.keyword, limit=p.limit or 10)
        return CommandResponse(_json(related))
    top = service.get_top_keywords(limit=p.limit or 20)
    stats = service.get_graph_stats()
    return CommandResponse(_json({"stats": stats.to_dict(), "topKeywords": top}))


def _sync(service: MemoryService, p: SyncParams) -> CommandResponse:
    if p.action == "status":
        if not service.sync_configured:
            return CommandResponse("Sync not configured")
        last = service.get_last_sync_time()
        return CommandResponse(f"Last sync: {_format_time(last)}" if last else "Never synced")

    result = service.sync_push() if p.action == "push" else service.sync_pull()
    if result.success:
        return CommandResponse(f"{p.action} completed")
    return CommandResponse(f"Failed: {result.error}", is_error=True)


def _rebuild(service: MemoryService, p: RebuildParams) -> CommandResponse:
    stats = service.rebuild_graph()
    return CommandResponse(_json(stats.to_dict()))


@dataclass(frozen=True)
class Command:
    name: str
    description: str
    params: type[BaseModel]
    handler: Callable[[MemoryService, Any], CommandResponse]


COMMANDS: dict[str, Command] = {
    c.name: c for c in (
        Command("memory.create", "Create a new memory entry", CreateParams, _create),
        Command("memory.read", "Read a memory entry by ID", IdParams, _read),
        Command("memory.update", "Update a memory entry", UpdateParams, _update),
        Command("memory.delete", "Delete a memory entry", IdParams, _delete),
        Command("memory.list", "List memory entries", ListParams, _list),
        Command("memory.search", "Search memories using keyword graph", SearchParams, _search),
        Command("memory.import", "Import files from a directory", ImportParams, _import),
        Command("memory.keywords", "Get keyword graph information", KeywordsParams, _keywords),
        Command("memory.sync", "Sync the store with its remote", SyncParams, _sync),
        Command("memory.rebuild", "Rebuild the keyword graph from stored entries", RebuildParams, _rebuild),
    )
}


def _format_validation_error(e: pydantic.ValidationError) -> str:
    lines = ["Invalid parameters:"]
    for err in e.errors():
        field = ".".join(str(part) for part in err["loc"]) or "(root)"
        lines.append(f"- {field}: {err['msg']}")
    return "\n".join(lines)


def dispatch(service: MemoryService, verb: str, params: Optional[dict[str, Any]] = None) -> CommandResponse:
    """
    Validate params for verb and run it.

    Never raises for bad input or infrastructure failures: both come back
    as an error response.
    """
    command = COMMANDS.get(verb)
    if command is None:
        return CommandResponse(f"Unknown command: {verb}", is_error=True)

    try:
        parsed = command.params.model_validate(params or {})
    except pydantic.ValidationError as e:
        return CommandResponse(_format_validation_error(e), is_error=True)

    try:
        return command.handler(service, parsed)
    except (KwmemError, ValueError, OSError) as e:
        logger.warning("%s failed: %s", verb, e)
        return CommandResponse(f"Error: {e}", is_error=True)
