"""Tests for kwmem.graph: keyword co-occurrence graph, expansion and ranking."""

import itertools
import math

import pytest

from kwmem.graph import KeywordGraph

from tests.conftest import make_entry


@pytest.fixture
def corpus():
    return [
        make_entry("e1", ["python", "sqlite"]),
        make_entry("e2", ["python"]),
        make_entry("e3", ["rust"]),
        make_entry("e4", ["sqlite", "wal"]),
    ]


def _connections(graph: KeywordGraph) -> dict[str, dict[str, int]]:
    return {kw: node.connections for kw, node in graph.export().items()}


class TestBuildFromEntries:
    def test_idf_weight(self):
        entries = [make_entry(f"e{i}", ["common", "rare"] if i < 2 else ["common"]) for i in range(10)]
        graph = KeywordGraph()
        graph.build_from_entries(entries)

        assert graph.get_node("rare").weight == pytest.approx(math.log(10 / 2) + 1)
        assert graph.get_node("rare").weight == pytest.approx(2.609, abs=1e-3)
        assert graph.get_node("common").weight == pytest.approx(1.0)

    def test_edge_counts_equal_cooccurrence(self):
        graph = KeywordGraph()
        graph.build_from_entries([
            make_entry("e1", ["a", "b", "c"]),
            make_entry("e2", ["a", "b"]),
            make_entry("e3", ["b", "c"]),
        ])

        assert graph.get_node("a").connections == {"b": 2, "c": 1}
        assert graph.get_node("b").connections == {"a": 2, "c": 2}
        assert graph.get_node("c").connections == {"a": 1, "b": 2}

    def test_order_independent(self):
        entries = [
            make_entry("e1", ["a", "b", "c"]),
            make_entry("e2", ["c", "a"]),
            make_entry("e3", ["d", "b"]),
        ]
        expected = None
        for perm in itertools.permutations(entries):
            built = KeywordGraph()
            built.build_from_entries(perm)
            incremental = KeywordGraph()
            for entry in perm:
                incremental.add_entry(entry)

            assert _connections(built) == _connections(incremental)
            if expected is None:
                expected = _connections(built)
            assert _connections(built) == expected

    def test_idempotent(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)
        first = graph.export()
        graph.build_from_entries(corpus)
        assert graph.export() == first

    def test_single_keyword_entry_creates_node(self):
        graph = KeywordGraph()
        graph.build_from_entries([make_entry("e1", ["lonely"])])
        assert "lonely" in graph
        assert graph.get_node("lonely").connections == {}
        assert graph.entry_ids("lonely") == {"e1"}

    def test_duplicate_keywords_count_once(self):
        graph = KeywordGraph()
        graph.build_from_entries([make_entry("e1", ["a", "b", "a"])])
        assert graph.get_node("a").connections == {"b": 1}

    def test_empty_input(self):
        graph = KeywordGraph()
        graph.build_from_entries([])
        stats = graph.get_stats()
        assert (stats.nodes, stats.edges, stats.avg_connections) == (0, 0, 0.0)


class TestIncrementalMaintenance:
    def test_add_edge_is_symmetric(self):
        graph = KeywordGraph()
        graph.add_edge("a", "b")
        graph.add_edge("b", "a")
        assert graph.get_node("a").connections["b"] == 2
        assert graph.get_node("b").connections["a"] == 2

    def test_add_edge_creates_nodes_with_unit_weight(self):
        graph = KeywordGraph()
        graph.add_edge("x", "y")
        assert graph.get_node("x").weight == 1.0
        assert graph.get_node("y").weight == 1.0

    def test_self_edge_ignored(self):
        graph = KeywordGraph()
        graph.add_edge("a", "a")
        assert "a" not in graph

    def test_add_entry_keeps_existing_weights(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)
        before = graph.get_node("sqlite").weight

        graph.add_entry(make_entry("e5", ["sqlite", "python"]))

        assert graph.get_node("sqlite").weight == before
        assert graph.get_node("sqlite").connections["python"] == 2

    def test_remove_entry_only_touches_index(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)
        before = graph.export()

        graph.remove_entry(corpus[0])

        assert graph.export() == before
        assert "e1" not in graph.entry_ids("python")
        assert graph.entry_ids("python") == {"e2"}

    def test_index_entries_restores_index_over_snapshot(self, corpus):
        built = KeywordGraph()
        built.build_from_entries(corpus)
        restored = KeywordGraph(nodes=built.export())
        assert restored.entry_ids("python") == frozenset()

        restored.index_entries(corpus)

        assert restored.entry_ids("python") == {"e1", "e2"}
        assert restored.entry_ids("wal") == {"e4"}
        assert restored.export() == built.export()

    def test_remove_unknown_entry_is_harmless(self):
        graph = KeywordGraph()
        graph.remove_entry(make_entry("nope", ["ghost"]))
        assert len(graph) == 0


class TestExpandQuery:
    def _chain(self) -> KeywordGraph:
        graph = KeywordGraph()
        for i in range(3):
            graph.add_entry(make_entry(f"ab{i}", ["a", "b"]))
        graph.add_entry(make_entry("bc", ["b", "c"]))
        return graph

    def test_scores(self):
        scores = self._chain().expand_query(["a"])
        assert scores["a"] == 1.0
        assert scores["b"] == pytest.approx(0.3 * 1.0 / 2)
        assert scores["c"] == pytest.approx(0.1 * 1.0 / 3)

    def test_max_depth(self):
        scores = self._chain().expand_query(["a"], max_depth=1)
        assert set(scores) == {"a", "b"}
        assert self._chain().expand_query(["a"], max_depth=0) == {"a": 1.0}

    def test_seeds_score_one(self):
        scores = self._chain().expand_query(["a", "b", "c"])
        assert scores == {"a": 1.0, "b": 1.0, "c": 1.0}

    def test_unknown_seed(self):
        assert self._chain().expand_query(["missing"]) == {}

    def test_max_expansion_prefers_heavy_edges_then_alphabetical(self):
        graph = KeywordGraph()
        graph.add_entry(make_entry("1", ["hub", "c"]))
        graph.add_entry(make_entry("2", ["hub", "c"]))
        graph.add_entry(make_entry("3", ["hub", "b"]))
        graph.add_entry(make_entry("4", ["hub", "b"]))
        graph.add_entry(make_entry("5", ["hub", "a"]))

        scores = graph.expand_query(["hub"], max_depth=1, max_expansion=2)

        assert set(scores) == {"hub", "b", "c"}


class TestSearch:
    def test_exact_match_without_expansion(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)

        results = graph.search(["python"], corpus, use_expansion=False)

        assert [r.entry.id for r in results] == ["e2", "e1"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(1 / math.sqrt(2))
        assert results[1].matched_keywords == ["python"]

    def test_expansion_reaches_non_lexical_match(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)

        results = graph.search(["python"], corpus)

        ids = [r.entry.id for r in results]
        # e4 shares no keyword with the query, only a path python-sqlite-wal
        assert "e4" in ids
        assert "e3" not in ids

    def test_expansion_never_drops_exact_matches(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)

        exact = {r.entry.id: r.score for r in graph.search(["python", "wal"], corpus, use_expansion=False)}
        expanded = {r.entry.id: r.score for r in graph.search(["python", "wal"], corpus)}

        assert set(exact) <= set(expanded)
        for entry_id, score in exact.items():
            assert expanded[entry_id] >= score - 1e-9

    def test_min_score_and_max_results(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)

        assert [r.entry.id for r in graph.search(["python"], corpus, use_expansion=False, min_score=0.9)] == ["e2"]
        assert len(graph.search(["python"], corpus, use_expansion=False, max_results=1)) == 1

    def test_ties_keep_candidate_order(self):
        entries = [make_entry("x", ["k"]), make_entry("y", ["k"]), make_entry("z", ["k"])]
        graph = KeywordGraph()
        graph.build_from_entries(entries)

        results = graph.search(["k"], list(reversed(entries)), use_expansion=False)

        assert [r.entry.id for r in results] == ["z", "y", "x"]

    def test_unknown_query(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)
        assert graph.search(["nothing"], corpus) == []
        assert graph.search([], corpus) == []


class TestKeywordQueries:
    def test_related_keywords(self):
        graph = KeywordGraph()
        graph.add_entry(make_entry("1", ["db", "sqlite"]))
        graph.add_entry(make_entry("2", ["db", "sqlite"]))
        graph.add_entry(make_entry("3", ["db", "postgres"]))

        related = graph.get_related_keywords("db")

        assert related == [
            {"keyword": "sqlite", "score": 2.0},
            {"keyword": "postgres", "score": 1.0},
        ]
        assert graph.get_related_keywords("db", limit=1)[0]["keyword"] == "sqlite"
        assert graph.get_related_keywords("unknown") == []

    def test_top_keywords(self):
        graph = KeywordGraph()
        graph.add_entry(make_entry("1", ["hub", "a"]))
        graph.add_entry(make_entry("2", ["hub", "b"]))
        graph.add_entry(make_entry("3", ["hub", "c"]))

        top = graph.get_top_keywords(limit=2)

        assert top[0] == {"keyword": "hub", "weight": 1.0, "connections": 3}
        assert top[1]["keyword"] == "a"


class TestExportAndStats:
    def test_round_trip_preserves_stats(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)

        restored = KeywordGraph(nodes=graph.export())

        assert restored.get_stats() == graph.get_stats()
        assert restored.export() == graph.export()

    def test_export_is_a_copy(self, corpus):
        graph = KeywordGraph()
        graph.build_from_entries(corpus)

        exported = graph.export()
        exported["python"].connections["sqlite"] = 99

        assert graph.get_node("python").connections["sqlite"] == 1

    def test_stats(self):
        graph = KeywordGraph()
        graph.add_entry(make_entry("1", ["a", "b", "c"]))
        graph.add_entry(make_entry("2", ["d"]))

        stats = graph.get_stats()

        assert stats.nodes == 4
        assert stats.edges == 3
        assert stats.avg_connections == pytest.approx(6 / 4)
        assert stats.to_dict() == {"nodes": 4, "edges": 3, "avgConnections": 1.5}
