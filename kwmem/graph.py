"""
Keyword co-occurrence graph.

Keywords that appear together in an entry are connected by an edge whose
weight counts the entries containing both. Node weights are an IDF variant,
``ln(total_docs / document_frequency) + 1``, computed on full rebuild.

Queries are expanded breadth-first from seed keywords so that entries can
match a query that shares no keyword with them.

Nodes and edges are only ever added. Removing an entry drops it from the
inverted index but leaves the graph structure alone; build_from_entries()
is the way to bring weights and edges back in line with the stored entries.
"""

import logging
import math
from typing import Iterable, Optional

from .types import GraphStats, KeywordNode, MemoryEntry, SearchResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 2
DEFAULT_MAX_EXPANSION = 10

# Edge counts are scaled down before being combined with node weight
EDGE_SCALE = 10.0


class KeywordGraph:
    """
    In-memory weighted undirected keyword graph plus an inverted index.

    Not thread-safe; the owning MemoryService serializes access.
    """

    def __init__(self, nodes: Optional[dict[str, KeywordNode]] = None):
        """
        Args:
            nodes: Exported node map to start from (see export()). The map
                is copied; the inverted index starts empty until
                index_entries() fills it.
        """
        self._nodes: dict[str, KeywordNode] = {}
        self._index: dict[str, set[str]] = {}
        if nodes:
            for keyword, node in nodes.items():
                self._nodes[keyword] = node.copy()

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, keyword: str) -> bool:
        return keyword in self._nodes

    def get_node(self, keyword: str) -> Optional[KeywordNode]:
        node = self._nodes.get(keyword)
        return node.copy() if node else None

    def entry_ids(self, keyword: str) -> frozenset[str]:
        """Entry ids currently indexed under *keyword*."""
        return frozenset(self._index.get(keyword, ()))

    # -------------------------------------------------------------------------
    # Construction and maintenance
    # -------------------------------------------------------------------------

    def build_from_entries(self, entries: Iterable[MemoryEntry]) -> None:
        """Rebuild the graph and inverted index from scratch.

        Same input always yields the same graph.
        """
        self._nodes.clear()
        self._index.clear()

        doc_freq: dict[str, int] = {}
        total_docs = 0

        for entry in entries:
            total_docs += 1
            keywords = entry.distinct_keywords
            for kw in keywords:
                self._index.setdefault(kw, set()).add(entry.id)
                doc_freq[kw] = doc_freq.get(kw, 0) + 1
                self._ensure_node(kw)
            self._add_pairs(keywords)

        for keyword, node in self._nodes.items():
            df = doc_freq.get(keyword) or 1
            node.weight = math.log(total_docs / df) + 1 if total_docs else 1.0

        logger.debug("Built keyword graph: %d entries, %d nodes", total_docs, len(self._nodes))

    def add_edge(self, kw1: str, kw2: str) -> None:
        """Increment the co-occurrence count between two keywords (both directions)."""
        if kw1 == kw2:
            return
        node1 = self._ensure_node(kw1)
        node2 = self._ensure_node(kw2)
        node1.connections[kw2] = node1.connections.get(kw2, 0) + 1
        node2.connections[kw1] = node2.connections.get(kw1, 0) + 1

    def add_entry(self, entry: MemoryEntry) -> None:
        """Index a new or updated entry. Existing node weights are not recomputed."""
        keywords = entry.distinct_keywords
        for kw in keywords:
            self._index.setdefault(kw, set()).add(entry.id)
            self._ensure_node(kw)
        self._add_pairs(keywords)

    def index_entries(self, entries: Iterable[MemoryEntry]) -> None:
        """Rebuild only the inverted index, leaving nodes and edges as they are."""
        self._index.clear()
        for entry in entries:
            for kw in entry.distinct_keywords:
                self._index.setdefault(kw, set()).add(entry.id)

    def remove_entry(self, entry: MemoryEntry) -> None:
        """Drop the entry from the inverted index. Nodes and edges stay."""
        for kw in entry.distinct_keywords:
            ids = self._index.get(kw)
            if ids is not None:
                ids.discard(entry.id)

    def _ensure_node(self, keyword: str) -> KeywordNode:
        node = self._nodes.get(keyword)
        if node is None:
            node = KeywordNode(keyword=keyword, weight=1.0)
            self._nodes[keyword] = node
        return node

    def _add_pairs(self, keywords: list[str]) -> None:
        for i in range(len(keywords)):
            for j in range(i + 1, len(keywords)):
                self.add_edge(keywords[i], keywords[j])

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _ranked_neighbors(self, node: KeywordNode) -> list[tuple[str, int]]:
        # Heaviest edges first; ties broken alphabetically for determinism
        return sorted(node.connections.items(), key=lambda kv: (-kv[1], kv[0]))

    def expand_query(
        self,
        seed_keywords: Iterable[str],
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_expansion: int = DEFAULT_MAX_EXPANSION,
    ) -> dict[str, float]:
        """
        Expand seed keywords breadth-first through the graph.

        Seeds that exist in the graph score 1.0. A neighbor reached at
        depth d (0-indexed) scores ``(edge / 10) * neighbor.weight / (d + 2)``.
        Only the ``max_expansion`` heaviest edges of each frontier node are
        followed, and each keyword is scored once (first visit wins).

        Returns:
            keyword -> score for every visited keyword
        """
        scores: dict[str, float] = {}
        visited: set[str] = set()

        frontier: list[str] = []
        for kw in seed_keywords:
            if kw in self._nodes and kw not in visited:
                visited.add(kw)
                scores[kw] = 1.0
                frontier.append(kw)

        depth = 0
        while depth < max_depth and frontier:
            next_frontier: list[str] = []
            decay = 1 / (depth + 2)

            for kw in frontier:
                node = self._nodes[kw]
                for neighbor, edge_weight in self._ranked_neighbors(node)[:max_expansion]:
                    if neighbor in visited:
                        continue
                    visited.add(neighbor)
                    neighbor_node = self._nodes.get(neighbor)
                    if neighbor_node is None:
                        continue
                    scores[neighbor] = (edge_weight / EDGE_SCALE) * neighbor_node.weight * decay
                    next_frontier.append(neighbor)

            frontier = next_frontier
            depth += 1

        return scores

    def search(
        self,
        query: Iterable[str],
        entries: Iterable[MemoryEntry],
        *,
        max_results: int = 20,
        min_score: float = 0.1,
        use_expansion: bool = True,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_expansion: int = DEFAULT_MAX_EXPANSION,
    ) -> list[SearchResult]:
        """
        Rank candidate entries against query tokens.

        An entry's score is the sum of the query scores of its keywords,
        divided by the square root of its keyword count. Entries with no
        matching keyword, or scoring below min_score, are dropped.

        Returns:
            Results sorted by score (descending, stable), at most max_results
        """
        query = list(query)
        if use_expansion:
            query_scores = self.expand_query(query, max_depth=max_depth, max_expansion=max_expansion)
        else:
            query_scores = {q: 1.0 for q in query}

        if not query_scores:
            return []

        results: list[SearchResult] = []
        for entry in entries:
            score = 0.0
            matched: list[str] = []
            for kw in entry.distinct_keywords:
                kw_score = query_scores.get(kw)
                if kw_score is not None:
                    score += kw_score
                    matched.append(kw)

            if not matched or score < 0:
                continue
            score = score / math.sqrt(len(entry.keywords))
            if score >= min_score:
                results.append(SearchResult(entry=entry, score=score, matched_keywords=matched))

        # sorted() is stable, so equal scores keep candidate order
        results = sorted(results, key=lambda r: r.score, reverse=True)
        return results[:max_results]

    def get_related_keywords(self, keyword: str, limit: int = 10) -> list[dict]:
        """Neighbors of *keyword* ranked by edge weight times neighbor weight."""
        node = self._nodes.get(keyword)
        if node is None:
            return []

        related = []
        for neighbor, edge_weight in node.connections.items():
            neighbor_node = self._nodes.get(neighbor)
            weight = neighbor_node.weight if neighbor_node else 1.0
            related.append({"keyword": neighbor, "score": edge_weight * weight})
        related.sort(key=lambda r: (-r["score"], r["keyword"]))
        return related[:limit]

    def get_top_keywords(self, limit: int = 20) -> list[dict]:
        """Keywords ranked by weight times number of distinct neighbors."""
        top = [
            {
                "keyword": node.keyword,
                "weight": node.weight,
                "connections": len(node.connections),
            }
            for node in self._nodes.values()
        ]
        top.sort(key=lambda t: (-(t["weight"] * t["connections"]), t["keyword"]))
        return top[:limit]

    # -------------------------------------------------------------------------
    # Persistence and stats
    # -------------------------------------------------------------------------

    def export(self) -> dict[str, KeywordNode]:
        """Deep copy of the node map, suitable for KeywordGraph(nodes=...)."""
        return {kw: node.copy() for kw, node in self._nodes.items()}

    def get_stats(self) -> GraphStats:
        total = sum(len(node.connections) for node in self._nodes.values())
        count = len(self._nodes)
        return GraphStats(
            nodes=count,
            edges=total // 2,
            avg_connections=total / count if count else 0.0,
        )
