"""
Unit tests for the brute-force vector store, cosine helpers and the
debounced background flush.
"""
import json
import os
import random
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock

import pytest

from hybrid_kb.kb.vector_store import (
    BruteForceVectorStore,
    DebouncedFlush,
    VectorRecord,
    cosine_similarity,
    create_vector_store,
    matches_filter,
)


# ---------------------------------------------------------------------------
# Test: cosine helpers
# ---------------------------------------------------------------------------

class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_magnitude_is_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_length_mismatch_is_zero(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_always_within_bounds(self):
        rng = random.Random(7)
        for _ in range(200):
            a = [rng.uniform(-5, 5) for _ in range(16)]
            b = [rng.uniform(-5, 5) for _ in range(16)]
            assert -1.0 <= cosine_similarity(a, b) <= 1.0


class TestMatchesFilter:
    def test_empty_filter_matches(self):
        assert matches_filter({"a": 1}, None)
        assert matches_filter(None, {})

    def test_all_keys_must_match(self):
        assert matches_filter({"doc_id": "d1", "path": "a.md"}, {"doc_id": "d1"})
        assert not matches_filter({"doc_id": "d1"}, {"doc_id": "d2"})
        assert not matches_filter(None, {"doc_id": "d1"})


# ---------------------------------------------------------------------------
# Test: BruteForceVectorStore
# ---------------------------------------------------------------------------

class TestBruteForceVectorStore(unittest.TestCase):
    """Tests for the exact cosine store."""

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.store = BruteForceVectorStore(self._tmpdir, flush_delay=60)

    def tearDown(self):
        self.store.close()

    def test_upsert_and_query(self):
        self.store.upsert([
            VectorRecord("p1", [1.0, 0.0, 0.0], {"doc_id": "d1"}),
            VectorRecord("p2", [0.0, 1.0, 0.0], {"doc_id": "d2"}),
            VectorRecord("p3", [0.7, 0.7, 0.0], {"doc_id": "d1"}),
        ])
        results = self.store.query([1.0, 0.0, 0.0], top_k=2)
        self.assertEqual([vid for vid, _ in results], ["p1", "p3"])
        self.assertAlmostEqual(results[0][1], 1.0, places=5)
        self.assertGreater(results[0][1], results[1][1])

    def test_query_top_k_bound(self):
        self.store.upsert([VectorRecord(f"p{i}", [1.0, float(i)]) for i in range(10)])
        self.assertEqual(len(self.store.query([1.0, 0.0], top_k=3)), 3)
        self.assertEqual(len(self.store.query([1.0, 0.0], top_k=50)), 10)
        self.assertEqual(self.store.query([1.0, 0.0], top_k=0), [])

    def test_upsert_replaces_existing(self):
        self.store.upsert([VectorRecord("p1", [1.0, 0.0], {"v": "old"})])
        self.store.upsert([VectorRecord("p1", [0.0, 1.0], {"v": "new"})])
        self.assertEqual(len(self.store), 1)
        self.assertEqual(self.store.get_metadata("p1"), {"v": "new"})
        results = self.store.query([0.0, 1.0], top_k=1)
        self.assertEqual(results[0][0], "p1")
        self.assertAlmostEqual(results[0][1], 1.0, places=5)

    def test_wrong_dimension_is_skipped(self):
        self.store.upsert([VectorRecord("p1", [1.0, 0.0])])
        self.store.upsert([VectorRecord("p2", [1.0, 0.0, 0.0])])
        self.assertFalse(self.store.has("p2"))
        self.assertEqual(self.store.query([1.0, 0.0, 0.0], top_k=5), [])

    def test_delete(self):
        self.store.upsert([
            VectorRecord("p1", [1.0, 0.0]),
            VectorRecord("p2", [0.0, 1.0]),
        ])
        self.store.delete(["p1", "unknown"])
        self.assertFalse(self.store.has("p1"))
        self.assertEqual(self.store.ids(), ["p2"])
        self.assertEqual([vid for vid, _ in self.store.query([1.0, 0.0], top_k=5)], ["p2"])

    def test_query_with_filter(self):
        self.store.upsert([
            VectorRecord("p1", [1.0, 0.0], {"doc_id": "d1"}),
            VectorRecord("p2", [0.9, 0.1], {"doc_id": "d2"}),
        ])
        results = self.store.query([1.0, 0.0], top_k=5, filter={"doc_id": "d2"})
        self.assertEqual([vid for vid, _ in results], ["p2"])

    def test_query_empty_store(self):
        self.assertEqual(self.store.query([1.0, 0.0, 0.0], top_k=5), [])

    def test_persistence_round_trip(self):
        self.store.upsert([VectorRecord("p1", [0.5, 0.5], {"doc_id": "d1"})])
        self.store.flush()
        self.assertTrue(os.path.exists(self.store.path))

        reopened = BruteForceVectorStore(self._tmpdir, flush_delay=60)
        self.assertTrue(reopened.has("p1"))
        self.assertEqual(reopened.get_metadata("p1"), {"doc_id": "d1"})
        self.assertEqual(reopened.get_vector("p1"), [0.5, 0.5])

    def test_corrupt_file_starts_empty(self):
        with open(os.path.join(self._tmpdir, "vectors.json"), "w") as fh:
            fh.write("{not json")
        reopened = BruteForceVectorStore(self._tmpdir, flush_delay=60)
        self.assertEqual(len(reopened), 0)

    def test_flush_without_changes_writes_nothing(self):
        self.store.flush()
        self.assertFalse(os.path.exists(self.store.path))


class TestDebouncedPersistence(unittest.TestCase):
    def test_burst_results_in_one_background_write(self):
        tmpdir = tempfile.mkdtemp()
        store = BruteForceVectorStore(tmpdir, flush_delay=0.2)
        original_save = store.save
        calls = []

        def counting_save():
            calls.append(1)
            original_save()

        store._flusher._callback = counting_save
        for i in range(20):
            store.upsert([VectorRecord(f"p{i}", [1.0, float(i)])])

        deadline = time.time() + 5
        while not os.path.exists(store.path) and time.time() < deadline:
            time.sleep(0.02)
        time.sleep(0.1)

        self.assertEqual(len(calls), 1)
        with open(store.path, encoding="utf-8") as fh:
            self.assertEqual(len(json.load(fh)), 20)
        store.close()


class TestDebouncedFlush:
    def test_schedule_restarts_timer(self):
        done = threading.Event()
        callback = MagicMock(side_effect=lambda: done.set())
        flusher = DebouncedFlush(callback, delay=0.05)
        flusher.schedule()
        flusher.schedule()
        assert flusher.pending
        assert done.wait(2)
        time.sleep(0.1)
        assert callback.call_count == 1
        assert not flusher.pending

    def test_flush_now_cancels_pending(self):
        callback = MagicMock()
        flusher = DebouncedFlush(callback, delay=60)
        flusher.schedule()
        flusher.flush_now()
        assert callback.call_count == 1
        assert not flusher.pending

    def test_callback_error_is_logged_not_raised(self):
        done = threading.Event()

        def failing():
            done.set()
            raise OSError("disk full")

        flusher = DebouncedFlush(failing, delay=0.01)
        flusher.schedule()
        assert done.wait(2)


# ---------------------------------------------------------------------------
# Test: factory
# ---------------------------------------------------------------------------

class TestCreateVectorStore:
    def _config(self, tmp_path, backend):
        cfg = MagicMock()
        cfg.db_path = str(tmp_path / "knowledge_base.sqlite3")
        cfg.VECTOR_BACKEND = backend
        cfg.VECTOR_DIMENSIONS = 4
        cfg.VECTOR_FLUSH_DELAY = 1.0
        cfg.HNSW_MAX_ELEMENTS = 100
        cfg.HNSW_M = 8
        cfg.HNSW_EF_CONSTRUCTION = 50
        cfg.HNSW_EF_SEARCH = 20
        return cfg

    def test_bruteforce_backend(self, tmp_path):
        store = create_vector_store(self._config(tmp_path, "bruteforce"))
        assert isinstance(store, BruteForceVectorStore)
        assert store.path == str(tmp_path / "vectors.json")

    def test_hnsw_backend(self, tmp_path):
        from hybrid_kb.kb.hnsw_store import HNSWVectorStore

        store = create_vector_store(self._config(tmp_path, "hnsw"))
        assert isinstance(store, HNSWVectorStore)
        assert len(store) == 0
