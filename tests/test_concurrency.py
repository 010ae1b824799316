"""
Concurrency tests for MemoryService.

Several threads share one service, the way a long-running host would.
The service lock must keep the keyword graph in step with storage and
must keep writers away from the store while a pull swaps it out.
"""

import random
import threading

from kwmem.graph import KeywordGraph
from kwmem.service import ServiceState

from tests.conftest import make_entry

KEYWORD_POOL = ["alpha", "beta", "gamma", "delta", "epsilon", "zeta"]


def _connections(graph: KeywordGraph) -> dict[str, dict[str, int]]:
    return {kw: node.connections for kw, node in graph.export().items()}


def _run_threads(target, count: int) -> list[Exception]:
    errors: list[Exception] = []

    def wrapper(worker_id):
        try:
            target(worker_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=wrapper, args=(i,), daemon=True) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


class TestConcurrentCrud:
    """Parallel create/update/delete on one service."""

    def test_graph_matches_everything_indexed(self, service):
        """Edge counts equal a serial replay of every keyword set indexed."""
        indexed: list[list[str]] = []

        def worker(worker_id):
            rng = random.Random(worker_id)
            mine = []
            for i in range(15):
                keywords = rng.sample(KEYWORD_POOL, 3)
                entry = service.create(f"worker {worker_id} note {i}", keywords)
                indexed.append(keywords)
                mine.append(entry.id)
            for entry_id in mine[::3]:
                keywords = rng.sample(KEYWORD_POOL, 2)
                service.update(entry_id, keywords=keywords)
                indexed.append(keywords)
            for entry_id in mine[1::3]:
                assert service.delete(entry_id)

        errors = _run_threads(worker, 6)

        assert errors == []
        replay = KeywordGraph()
        for n, keywords in enumerate(indexed):
            replay.add_entry(make_entry(f"r{n}", keywords))
        assert _connections(service.graph) == _connections(replay)

    def test_index_matches_surviving_entries(self, service):
        def worker(worker_id):
            rng = random.Random(100 + worker_id)
            for i in range(20):
                entry = service.create(f"note {worker_id}-{i}", rng.sample(KEYWORD_POOL, 2))
                if i % 4 == 0:
                    service.delete(entry.id)
                elif i % 4 == 1:
                    service.update(entry.id, keywords=rng.sample(KEYWORD_POOL, 3))

        errors = _run_threads(worker, 6)

        assert errors == []
        survivors = service.list(limit=None)
        assert len(survivors) == 6 * 15
        for kw in KEYWORD_POOL:
            expected = {e.id for e in survivors if kw in e.keywords}
            assert service.graph.entry_ids(kw) == expected

    def test_rebuild_after_concurrent_writes_matches_fresh_build(self, service):
        def worker(worker_id):
            rng = random.Random(200 + worker_id)
            for i in range(10):
                entry = service.create(f"note {worker_id}-{i}", rng.sample(KEYWORD_POOL, 3))
                if i % 2:
                    service.delete(entry.id)

        assert _run_threads(worker, 4) == []

        service.rebuild_graph()

        fresh = KeywordGraph()
        fresh.build_from_entries(service.list(limit=None))
        assert service.graph.export() == fresh.export()


class TestPullDuringWrites:
    """A pull swaps the database file while writers are active."""

    def test_writers_never_see_a_closed_store(self, synced_service):
        synced_service.create("seed", ["alpha", "beta"])
        assert synced_service.sync_push().success

        stop = threading.Event()

        def writer(worker_id):
            i = 0
            while not stop.is_set():
                entry = synced_service.create(f"w{worker_id}-{i}", ["gamma", "delta"])
                synced_service.read(entry.id)
                synced_service.search("gamma")
                i += 1

        pull_results = []

        def puller():
            try:
                for _ in range(5):
                    pull_results.append(synced_service.sync_pull())
            finally:
                stop.set()

        pull_thread = threading.Thread(target=puller, daemon=True)
        pull_thread.start()
        errors = _run_threads(writer, 4)
        pull_thread.join(timeout=60)

        assert errors == []
        assert all(r.success for r in pull_results), [r.error for r in pull_results]
        assert synced_service.state == ServiceState.READY
        assert synced_service.count() >= 1
