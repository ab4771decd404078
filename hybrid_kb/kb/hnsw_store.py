"""
HNSW vector store: approximate nearest-neighbour search via hnswlib.

hnswlib addresses points by small integer labels, so the store keeps a
bidirectional ``id <-> label`` map.  The graph cannot truly remove points:
deletes are soft (``mark_deleted``) and every query result is filtered
through the live ``label -> id`` map, so a removed id is never surfaced
even when the point is still physically present in the graph.

Storage (both files are required to load):
  ``<data_dir>/hnsw.index``           graph structure
  ``<data_dir>/hnsw_metadata.json``   id/label maps, metadata, next label
"""

from __future__ import annotations

import json
import logging
import os
import pickle
import threading
from typing import Any, Callable, Optional, Sequence

import hnswlib
import numpy as np

from .vector_store import (
    DEFAULT_FLUSH_DELAY,
    DebouncedFlush,
    VectorRecord,
    VectorStore,
    _atomic_write_text,
    matches_filter,
)

logger = logging.getLogger(__name__)

INDEX_FILENAME = "hnsw.index"
METADATA_FILENAME = "hnsw_metadata.json"

DEFAULT_MAX_ELEMENTS = 100_000
DEFAULT_M = 16
DEFAULT_EF_CONSTRUCTION = 200
DEFAULT_EF_SEARCH = 100
RANDOM_SEED = 100


class HNSWVectorStore(VectorStore):
    """
    Approximate cosine-similarity store, O(log n) query and insert.

    Parameters
    ----------
    dimensions:
        Vector length; fixed for the lifetime of the index.
    storage_dir:
        Directory holding the index file pair.
    max_elements:
        Initial capacity.  The index is resized (doubling) when full.
    m:
        Graph connectivity.  Higher improves recall, costs memory.
    ef_construction:
        Candidate list size while inserting.  Higher builds a better graph
        more slowly.
    ef_search:
        Candidate list size while querying.  Higher improves recall, costs
        latency.
    flush_delay:
        Idle seconds before pending mutations are written to disk.
    """

    def __init__(
        self,
        dimensions: int,
        storage_dir: str,
        max_elements: int = DEFAULT_MAX_ELEMENTS,
        m: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_search: int = DEFAULT_EF_SEARCH,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ) -> None:
        self._dimensions = dimensions
        self._max_elements = max(1, max_elements)
        self._m = m
        self._ef_construction = ef_construction
        self._ef_search = ef_search
        self._index_path = os.path.join(storage_dir, INDEX_FILENAME)
        self._metadata_path = os.path.join(storage_dir, METADATA_FILENAME)

        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._id_to_label: dict[str, int] = {}
        self._label_to_id: dict[int, str] = {}
        self._metadata: dict[str, dict] = {}
        # Labels removed from the maps whose mark_deleted call failed
        self._unmarked_labels: set[int] = set()
        self._next_label = 0
        self._dirty = False
        self._index = self._new_index()
        self._flusher = DebouncedFlush(self.save, flush_delay, name="kb-hnsw-flush")

        logger.debug(
            "HNSWVectorStore: initialised with %d dimensions, max %d elements",
            dimensions, self._max_elements,
        )

    def _new_index(self) -> "hnswlib.Index":
        index = hnswlib.Index(space="cosine", dim=self._dimensions)
        index.init_index(
            max_elements=self._max_elements,
            ef_construction=self._ef_construction,
            M=self._m,
            random_seed=RANDOM_SEED,
        )
        index.set_ef(self._ef_search)
        return index

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> bool:
        """
        Load the graph and its id/label maps from disk.

        Both files must exist and agree with each other; otherwise the
        store stays empty and False is returned.
        """
        if not os.path.exists(self._index_path) or not os.path.exists(self._metadata_path):
            logger.debug("HNSWVectorStore: no existing index at %s", self._index_path)
            return False
        try:
            with open(self._metadata_path, encoding="utf-8") as fh:
                meta = json.load(fh)
            dims = int(meta.get("dimensions", self._dimensions))
            if dims != self._dimensions:
                logger.warning(
                    "HNSWVectorStore: stored index has %d dimensions, expected %d; ignoring it",
                    dims, self._dimensions,
                )
                return False
            id_to_label = {str(k): int(v) for k, v in meta["id_to_label"].items()}
            next_label = int(meta.get("next_label", 0))
            max_elements = max(int(meta.get("max_elements", 0)), self._max_elements)

            index = hnswlib.Index(space="cosine", dim=self._dimensions)
            index.load_index(self._index_path, max_elements=max_elements)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, RuntimeError) as exc:
            logger.warning("HNSWVectorStore: failed to load index: %s", exc)
            return False

        if index.get_current_count() != next_label or any(
            label >= next_label for label in id_to_label.values()
        ):
            logger.warning(
                "HNSWVectorStore: index (%d points) and label map (next label %d) disagree; ignoring both",
                index.get_current_count(), next_label,
            )
            return False

        index.set_ef(self._ef_search)
        with self._lock:
            self._index = index
            self._max_elements = index.get_max_elements()
            self._id_to_label = id_to_label
            self._label_to_id = {label: vid for vid, label in id_to_label.items()}
            self._metadata = {str(k): v for k, v in (meta.get("metadata") or {}).items()}
            self._next_label = next_label
            self._unmarked_labels = {int(l) for l in meta.get("unmarked_labels") or []}
            self._dirty = False
        logger.info("HNSWVectorStore: loaded %d vectors from %s", len(id_to_label), self._index_path)
        return True

    def save(self) -> None:
        """
        Write the graph and the label maps if there are unsaved mutations.

        The index is copied under the lock and written from the copy, so
        upserts and queries are only held up for the in-memory copy.
        """
        with self._save_lock:
            with self._lock:
                if not self._dirty:
                    return
                meta = {
                    "dimensions": self._dimensions,
                    "max_elements": self._max_elements,
                    "next_label": self._next_label,
                    "id_to_label": dict(self._id_to_label),
                    "metadata": dict(self._metadata),
                    "unmarked_labels": sorted(self._unmarked_labels),
                }
                try:
                    snapshot = pickle.loads(pickle.dumps(self._index))
                except (pickle.PicklingError, RuntimeError, TypeError) as exc:
                    logger.error("HNSWVectorStore: failed to snapshot index: %s", exc)
                    return
                self._dirty = False
            try:
                os.makedirs(os.path.dirname(os.path.abspath(self._index_path)), exist_ok=True)
                tmp_index = f"{self._index_path}.tmp"
                snapshot.save_index(tmp_index)
                os.replace(tmp_index, self._index_path)
                _atomic_write_text(self._metadata_path, json.dumps(meta))
                logger.debug("HNSWVectorStore: saved %d vectors to %s",
                             len(meta["id_to_label"]), self._index_path)
            except (OSError, RuntimeError, TypeError, ValueError) as exc:
                with self._lock:
                    self._dirty = True
                logger.error("HNSWVectorStore: failed to save index: %s", exc)

    def flush(self) -> None:
        self._flusher.flush_now()

    def close(self) -> None:
        self.flush()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _ensure_capacity(self, extra: int) -> None:
        needed = self._index.get_current_count() + extra
        if needed <= self._max_elements:
            return
        new_max = max(self._max_elements * 2, needed)
        self._index.resize_index(new_max)
        self._max_elements = new_max
        logger.info("HNSWVectorStore: resized to max %d elements", new_max)

    def upsert(self, records: Sequence[VectorRecord]) -> None:
        if not records:
            return
        with self._lock:
            valid: list[tuple[VectorRecord, np.ndarray]] = []
            for rec in records:
                vec = np.asarray(rec.vector, dtype=np.float32)
                if vec.shape != (self._dimensions,):
                    logger.warning("HNSWVectorStore: skipping %s with shape %s (expected %d)",
                                   rec.id, vec.shape, self._dimensions)
                    continue
                valid.append((rec, vec))
            if not valid:
                return

            new_ids = {rec.id for rec, _ in valid if rec.id not in self._id_to_label}
            self._ensure_capacity(len(new_ids))

            labels: list[int] = []
            for rec, _ in valid:
                label = self._id_to_label.get(rec.id)
                if label is None:
                    label = self._next_label
                    self._next_label += 1
                    self._id_to_label[rec.id] = label
                    self._label_to_id[label] = rec.id
                labels.append(label)
                if rec.metadata is not None:
                    self._metadata[rec.id] = rec.metadata

            # Existing labels are re-added in place (best-effort overwrite)
            self._index.add_items(
                np.stack([vec for _, vec in valid]),
                np.asarray(labels, dtype=np.int64),
            )
            self._dirty = True
        self._flusher.schedule()
        logger.debug("HNSWVectorStore: upserted %d vectors", len(valid))

    def delete(self, ids: Sequence[str]) -> None:
        removed = 0
        with self._lock:
            for vid in ids:
                label = self._id_to_label.pop(vid, None)
                if label is None:
                    continue
                self._label_to_id.pop(label, None)
                self._metadata.pop(vid, None)
                removed += 1
                try:
                    self._index.mark_deleted(label)
                except (AttributeError, RuntimeError) as exc:
                    # The point stays in the graph; the label map hides it.
                    self._unmarked_labels.add(label)
                    logger.debug("HNSWVectorStore: mark_deleted unavailable for %s: %s", vid, exc)
            if removed:
                self._dirty = True
        if removed:
            self._flusher.schedule()
        logger.debug("HNSWVectorStore: deleted %d vectors", removed)

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[dict] = None,
    ) -> list[tuple[str, float]]:
        if top_k <= 0:
            return []
        query_arr = np.asarray(vector, dtype=np.float32)
        if query_arr.shape != (self._dimensions,):
            logger.warning("HNSWVectorStore: query shape %s does not match %d dimensions",
                           query_arr.shape, self._dimensions)
            return []

        with self._lock:
            if filter:
                allowed = {
                    label for vid, label in self._id_to_label.items()
                    if matches_filter(self._metadata.get(vid), filter)
                }
                if not allowed:
                    return []
                k = min(top_k, len(allowed))
                accept = allowed.__contains__
            else:
                if not self._label_to_id:
                    return []
                k = min(top_k, len(self._label_to_id))
                # Only points that mark_deleted failed on need a callback
                hidden = self._unmarked_labels
                accept = (lambda label: label not in hidden) if hidden else None

            labels, distances = self._search(query_arr, k, accept)

            results: list[tuple[str, float]] = []
            for label, distance in zip(labels, distances):
                vid = self._label_to_id.get(int(label))
                if vid is None or (accept is not None and not accept(int(label))):
                    continue
                # hnswlib cosine distance is 1 - cos, in [0, 2]
                results.append((vid, float(1.0 - distance)))
        return results[:top_k]

    def _search(self, query_arr: np.ndarray, k: int, accept: Optional[Callable[[int], bool]]):
        """
        knn_query with an optional label predicate.

        When the graph cannot supply k reachable neighbours (hnswlib raises
        RuntimeError), ef is widened first, then k is lowered one at a time.
        """
        graph_size = self._index.get_current_count()
        ef = max(self._ef_search, k)
        try:
            while k > 0:
                self._index.set_ef(ef)
                try:
                    labels, distances = self._index.knn_query(
                        query_arr, k=k, num_threads=1, filter=accept,
                    )
                    return labels[0], distances[0]
                except RuntimeError:
                    if ef < graph_size:
                        ef = min(ef * 2, graph_size)
                    else:
                        k -= 1
            return [], []
        finally:
            self._index.set_ef(self._ef_search)

    def has(self, id: str) -> bool:
        with self._lock:
            return id in self._id_to_label

    def get_metadata(self, id: str) -> Optional[dict]:
        with self._lock:
            return self._metadata.get(id)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._id_to_label.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._id_to_label)

    def get_stats(self) -> dict[str, Any]:
        """
        Return index statistics.

        Returns
        -------
        dict
            Keys: current_elements, graph_elements, max_elements,
            dimensions, m, ef_construction, ef_search.
        """
        with self._lock:
            return {
                "current_elements": len(self._id_to_label),
                "graph_elements": self._index.get_current_count(),
                "max_elements": self._max_elements,
                "dimensions": self._dimensions,
                "m": self._m,
                "ef_construction": self._ef_construction,
                "ef_search": self._ef_search,
            }
