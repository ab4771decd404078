"""
Vector stores for the Knowledge Base.

Every store maps a block id to one fixed-dimension vector plus optional
metadata and answers cosine-similarity top-K queries.  Two interchangeable
implementations exist:

* :class:`BruteForceVectorStore` (this module): exact scan, one JSON file.
* :class:`~hybrid_kb.kb.hnsw_store.HNSWVectorStore`: approximate graph
  index built on hnswlib.

Both apply mutations in memory immediately and persist them through a
debounced background flush.

Storage: ``<data_dir>/vectors.json``
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VECTORS_FILENAME = "vectors.json"
DEFAULT_FLUSH_DELAY = 1.0  # seconds of idle time before a flush


# ---------------------------------------------------------------------------
# Data classes & helpers
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A vector addressed by block id."""

    id: str
    vector: Sequence[float]
    metadata: Optional[dict[str, Any]] = None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of *a* and *b*.

    Returns 0.0 when either vector has zero magnitude or the lengths
    differ, instead of dividing by zero.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding can push identical vectors just past 1.0
    return max(-1.0, min(1.0, sim))


def _cosine_similarity_batch(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity between *query* (1-D) and each row of *matrix*."""
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(matrix.shape[0])
    row_norms = np.linalg.norm(matrix, axis=1)
    zero_rows = row_norms == 0
    row_norms[zero_rows] = 1.0
    scores = (matrix @ query) / (row_norms * query_norm)
    scores[zero_rows] = 0.0
    return np.clip(scores, -1.0, 1.0)


def matches_filter(metadata: Optional[dict], filter_: Optional[dict]) -> bool:
    """True if every key in *filter_* equals the same key in *metadata*."""
    if not filter_:
        return True
    metadata = metadata or {}
    return all(metadata.get(k) == v for k, v in filter_.items())


class DebouncedFlush:
    """
    Run *callback* on a background timer once writes go quiet.

    Each :meth:`schedule` call restarts the idle window, so a burst of
    mutations results in a single write.  Callers never block on disk.
    """

    def __init__(self, callback: Callable[[], None], delay: float = DEFAULT_FLUSH_DELAY,
                 name: str = "kb-vector-flush") -> None:
        self._callback = callback
        self._delay = delay
        self._name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._delay, self._run)
            self._timer.daemon = True
            self._timer.name = self._name
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush_now(self) -> None:
        """Cancel any pending timer and run the callback synchronously."""
        self.cancel()
        self._callback()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _run(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self._callback()
        except Exception as exc:
            logger.error("Background vector flush failed: %s", exc)


def _atomic_write_text(path: str, text: str) -> None:
    """Write *text* to a temp file next to *path*, then rename over it."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(text)
    os.replace(tmp_path, path)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class VectorStore(ABC):
    """
    Store/query/delete fixed-dimension vectors by string id.

    Scores returned by :meth:`query` are cosine similarities: higher means
    more similar, identical directions score 1.0.
    """

    @abstractmethod
    def upsert(self, records: Sequence[VectorRecord]) -> None:
        """Insert or overwrite vectors by id."""

    @abstractmethod
    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[dict] = None,
    ) -> list[tuple[str, float]]:
        """Return up to *top_k* ``(id, score)`` pairs, best first."""

    @abstractmethod
    def delete(self, ids: Sequence[str]) -> None:
        """Remove vectors by id; unknown ids are ignored."""

    @abstractmethod
    def has(self, id: str) -> bool:
        ...

    @abstractmethod
    def get_metadata(self, id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def ids(self) -> list[str]:
        """Every live id in the store."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    def flush(self) -> None:
        """Persist pending mutations synchronously."""

    def close(self) -> None:
        self.flush()


# ---------------------------------------------------------------------------
# BruteForceVectorStore
# ---------------------------------------------------------------------------

class BruteForceVectorStore(VectorStore):
    """Exact cosine-similarity store persisted as a single JSON file.

    O(n·d) per query, fine up to a few tens of thousands of vectors.

    Parameters
    ----------
    storage_dir:
        Directory holding ``vectors.json``.  Created on first flush.
    dimensions:
        Expected vector length.  When None it is taken from the first
        stored vector.
    flush_delay:
        Idle seconds before pending mutations are written to disk.
    """

    def __init__(
        self,
        storage_dir: str,
        dimensions: Optional[int] = None,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ) -> None:
        self._path = os.path.join(storage_dir, VECTORS_FILENAME)
        self._dimensions = dimensions
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._data: dict[str, tuple[np.ndarray, Optional[dict]]] = {}
        self._dirty = False
        # (ids, matrix) snapshot reused by queries until the next mutation
        self._matrix_cache: Optional[tuple[list[str], np.ndarray]] = None
        self._flusher = DebouncedFlush(self.save, flush_delay, name="kb-bruteforce-flush")
        self._load()

    @property
    def path(self) -> str:
        return self._path

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if not os.path.exists(self._path):
            logger.debug("No existing vector file at %s", self._path)
            return
        try:
            with open(self._path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load vector store from %s: %s", self._path, exc)
            return

        for vid, entry in raw.items():
            try:
                vec = np.asarray(entry["vector"], dtype=np.float32)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed vector entry %s in %s", vid, self._path)
                continue
            if self._dimensions is None:
                self._dimensions = int(vec.shape[0])
            if vec.shape != (self._dimensions,):
                logger.warning("Skipping vector %s with dimension %d (expected %d)",
                               vid, vec.shape[0], self._dimensions)
                continue
            self._data[vid] = (vec, entry.get("metadata"))
        logger.info("Loaded %d vectors from %s", len(self._data), self._path)

    def save(self) -> None:
        """Write the whole map to disk if there are unsaved mutations."""
        with self._save_lock:
            with self._lock:
                if not self._dirty:
                    return
                payload = {
                    vid: {"vector": vec.tolist(), "metadata": meta}
                    for vid, (vec, meta) in self._data.items()
                }
                self._dirty = False
            try:
                _atomic_write_text(self._path, json.dumps(payload))
                logger.debug("Saved %d vectors to %s", len(payload), self._path)
            except (OSError, TypeError, ValueError) as exc:
                with self._lock:
                    self._dirty = True
                logger.error("Failed to save vector store to %s: %s", self._path, exc)

    def flush(self) -> None:
        self._flusher.flush_now()

    def close(self) -> None:
        self.flush()

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._matrix_cache = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        if not records:
            return
        stored = 0
        with self._lock:
            for rec in records:
                vec = np.asarray(rec.vector, dtype=np.float32)
                if vec.ndim != 1 or vec.size == 0:
                    logger.warning("Skipping vector %s: not a 1-D vector", rec.id)
                    continue
                if self._dimensions is None:
                    self._dimensions = int(vec.shape[0])
                if vec.shape[0] != self._dimensions:
                    logger.warning("Skipping vector %s with dimension %d (expected %d)",
                                   rec.id, vec.shape[0], self._dimensions)
                    continue
                self._data[rec.id] = (vec, rec.metadata)
                stored += 1
            if stored:
                self._mark_dirty()
        if stored:
            self._flusher.schedule()
        logger.debug("[BruteForceVectorStore] Upserted %d vectors", stored)

    def delete(self, ids: Sequence[str]) -> None:
        removed = 0
        with self._lock:
            for vid in ids:
                if self._data.pop(vid, None) is not None:
                    removed += 1
            if removed:
                self._mark_dirty()
        if removed:
            self._flusher.schedule()
        logger.debug("[BruteForceVectorStore] Deleted %d vectors", removed)

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[dict] = None,
    ) -> list[tuple[str, float]]:
        if top_k <= 0:
            return []
        query_arr = np.asarray(vector, dtype=np.float32)

        with self._lock:
            if not self._data:
                return []
            if self._dimensions is not None and query_arr.shape != (self._dimensions,):
                logger.warning("Query vector dimension %s does not match store dimension %d",
                               query_arr.shape, self._dimensions)
                return []
            if filter:
                ids = [vid for vid, (_, meta) in self._data.items()
                       if matches_filter(meta, filter)]
                if not ids:
                    return []
                matrix = np.stack([self._data[vid][0] for vid in ids])
            else:
                if self._matrix_cache is None:
                    cache_ids = list(self._data.keys())
                    self._matrix_cache = (
                        cache_ids,
                        np.stack([self._data[vid][0] for vid in cache_ids]),
                    )
                ids, matrix = self._matrix_cache

        scores = _cosine_similarity_batch(query_arr, matrix)
        if len(scores) <= top_k:
            top_indices = np.argsort(-scores, kind="stable")
        else:
            top_indices = np.argpartition(-scores, top_k)[:top_k]
            top_indices = top_indices[np.argsort(-scores[top_indices], kind="stable")]
        return [(ids[i], float(scores[i])) for i in top_indices]

    def has(self, id: str) -> bool:
        with self._lock:
            return id in self._data

    def get_vector(self, id: str) -> Optional[list[float]]:
        with self._lock:
            entry = self._data.get(id)
        return entry[0].tolist() if entry is not None else None

    def get_metadata(self, id: str) -> Optional[dict]:
        with self._lock:
            entry = self._data.get(id)
        return entry[1] if entry is not None else None

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------

def create_vector_store(config: "Config") -> VectorStore:
    """Create the vector store selected by ``config.VECTOR_BACKEND``.

    The store files live alongside the relational database.

    Parameters
    ----------
    config:
        Loaded :class:`~hybrid_kb.config.Config`.

    Returns
    -------
    VectorStore
    """
    storage_dir = os.path.dirname(os.path.abspath(config.db_path))
    if config.VECTOR_BACKEND == "hnsw":
        from .hnsw_store import HNSWVectorStore

        store = HNSWVectorStore(
            dimensions=config.VECTOR_DIMENSIONS,
            storage_dir=storage_dir,
            max_elements=config.HNSW_MAX_ELEMENTS,
            m=config.HNSW_M,
            ef_construction=config.HNSW_EF_CONSTRUCTION,
            ef_search=config.HNSW_EF_SEARCH,
            flush_delay=config.VECTOR_FLUSH_DELAY,
        )
        store.load()
        return store
    return BruteForceVectorStore(
        storage_dir,
        dimensions=config.VECTOR_DIMENSIONS,
        flush_delay=config.VECTOR_FLUSH_DELAY,
    )
