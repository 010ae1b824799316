"""
Data types for keyword memory.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .errors import ValidationError


# Entries with more keywords than this are rejected: every pair of keywords
# becomes a graph edge, so the cost of indexing an entry is quadratic.
MAX_KEYWORDS = 64
MAX_KEYWORD_LENGTH = 256

# Fields that update() may change. id and created_at are immutable.
UPDATABLE_FIELDS = frozenset({"content", "keywords", "category", "source", "metadata"})


def now_ms() -> int:
    """Current time as epoch milliseconds.

    All entry timestamps in kwmem are integer epoch milliseconds.
    This is the single source of truth for timestamp creation.
    """
    return int(time.time() * 1000)


def validate_keywords(keywords: Any) -> list[str]:
    """Validate a keyword sequence and return it as a list.

    Keywords are stored verbatim (order and case preserved).
    """
    if isinstance(keywords, str) or not isinstance(keywords, (list, tuple)):
        raise ValidationError("keywords", "must be a list of strings")
    if len(keywords) > MAX_KEYWORDS:
        raise ValidationError("keywords", f"at most {MAX_KEYWORDS} keywords allowed (got {len(keywords)})")
    for kw in keywords:
        if not isinstance(kw, str) or not kw:
            raise ValidationError("keywords", f"keywords must be non-empty strings: {kw!r}")
        if len(kw) > MAX_KEYWORD_LENGTH:
            raise ValidationError("keywords", f"keyword longer than {MAX_KEYWORD_LENGTH} characters")
    return list(keywords)


def validate_update_fields(fields: dict[str, Any]) -> None:
    """Reject field names that update() cannot change."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            ", ".join(sorted(unknown)),
            f"cannot update (allowed: {', '.join(sorted(UPDATABLE_FIELDS))})",
        )
    if "content" in fields and not isinstance(fields["content"], str):
        raise ValidationError("content", "must be a string")
    if "keywords" in fields:
        validate_keywords(fields["keywords"])
    if fields.get("metadata") is not None and not isinstance(fields["metadata"], dict):
        raise ValidationError("metadata", "must be a mapping")


@dataclass(frozen=True)
class EntryDraft:
    """
    An entry that has not been stored yet.

    Produced by callers and by the file importer; storage assigns the id
    and timestamps.
    """
    content: str
    keywords: list[str]
    category: Optional[str] = None
    source: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if not isinstance(self.content, str):
            raise ValidationError("content", "must be a string")
        validate_keywords(self.keywords)
        if self.metadata is not None and not isinstance(self.metadata, dict):
            raise ValidationError("metadata", "must be a mapping")


@dataclass(frozen=True)
class MemoryEntry:
    """
    A stored memory entry.

    This is a read-only snapshot. To modify an entry, use update()
    which returns a new MemoryEntry.

    Attributes:
        id: Opaque unique identifier, assigned on create
        content: Free text of the note
        keywords: Ordered keyword list (a set for graph purposes)
        category: Optional label used for filtering
        source: Optional origin (e.g. an imported file path)
        metadata: Optional key/value bag
        created_at: Epoch milliseconds when created
        updated_at: Epoch milliseconds when last changed (>= created_at)
    """
    id: str
    content: str
    keywords: list[str]
    category: Optional[str] = None
    source: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def distinct_keywords(self) -> list[str]:
        """Keywords with duplicates removed, first occurrence order."""
        return list(dict.fromkeys(self.keywords))

    def merged(self, fields: dict[str, Any], updated_at: int) -> "MemoryEntry":
        """Return a copy with *fields* applied and a new updated_at."""
        return replace(self, **fields, updated_at=updated_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "keywords": list(self.keywords),
            "category": self.category,
            "source": self.source,
            "metadata": self.metadata,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def __str__(self) -> str:
        return f"{self.id}: {self.content[:60]}..."


@dataclass
class KeywordNode:
    """A keyword in the co-occurrence graph.

    connections maps neighbor keyword -> number of entries containing both.
    """
    keyword: str
    weight: float = 1.0
    connections: dict[str, int] = field(default_factory=dict)

    def copy(self) -> "KeywordNode":
        return KeywordNode(self.keyword, self.weight, dict(self.connections))


@dataclass(frozen=True)
class SearchResult:
    """A ranked search hit."""
    entry: MemoryEntry
    score: float
    matched_keywords: list[str] = field(default_factory=list)

    def to_dict(self, preview_chars: int = 200) -> dict[str, Any]:
        content = self.entry.content
        if len(content) > preview_chars:
            content = content[:preview_chars] + "..."
        return {
            "id": self.entry.id,
            "score": round(self.score, 3),
            "matchedKeywords": list(self.matched_keywords),
            "content": content,
            "category": self.entry.category,
        }


@dataclass(frozen=True)
class GraphStats:
    nodes: int
    edges: int
    avg_connections: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": self.nodes,
            "edges": self.edges,
            "avgConnections": self.avg_connections,
        }
