"""
Hybrid search over the Knowledge Base.

Combines an FTS5 lexical query (relaxed progressively when it finds
little) with a vector query, merges both hit lists by block id and
records a trace of every decision.  Lexical hits come first, so a block
found by both stages is tagged ``"fts"``.

Each stage fails open: an error is logged and counted as zero hits, and
the searcher always returns a (possibly empty) :class:`QueryResult`.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import time
import uuid
from typing import TYPE_CHECKING, Optional, Union

from .models import BlockRecord, Context, QueryArgs, QueryResult, TraceRecord

if TYPE_CHECKING:
    from .database import KBDatabase
    from .embedder import Embedder
    from .vector_store import VectorStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TOP_K = 20
MIN_LEXICAL_HITS = 3     # below this the lexical query is relaxed
MIN_TERM_LENGTH = 3      # OR-relaxation keeps terms longer than 2 chars

SOURCE_FTS = "fts"
SOURCE_VECTOR = "vector"

# Anything that is not a word character or whitespace can be FTS5 syntax
_FTS_SPECIAL = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Query rewriting
# ---------------------------------------------------------------------------

def sanitize_fts_query(query: str) -> str:
    """Replace FTS5 syntax characters with spaces and collapse whitespace."""
    return _WHITESPACE.sub(" ", _FTS_SPECIAL.sub(" ", query)).strip()


def strip_punctuation(query: str) -> str:
    """Drop punctuation entirely (``"what's up?"`` -> ``"whats up"``)."""
    return _WHITESPACE.sub(" ", _FTS_SPECIAL.sub("", query)).strip()


def or_query(query: str) -> Optional[str]:
    """
    Build a disjunctive query from the terms of *query* longer than two
    characters, or None when fewer than two such terms exist.
    """
    words = [
        w.lower() for w in _FTS_SPECIAL.sub(" ", query).split()
        if len(w) >= MIN_TERM_LENGTH
    ]
    if len(words) < 2:
        return None
    return " OR ".join(dict.fromkeys(words))


# ---------------------------------------------------------------------------
# HybridSearcher
# ---------------------------------------------------------------------------

class HybridSearcher:
    """
    Lexical + vector retrieval with result fusion and tracing.

    Parameters
    ----------
    db:
        The shared :class:`~hybrid_kb.kb.database.KBDatabase`.
    vector_store:
        Any :class:`~hybrid_kb.kb.vector_store.VectorStore`.
    embedder:
        The embedding collaborator (``embed_query``).
    default_top_k:
        Result count when the query does not set one.
    """

    def __init__(
        self,
        db: "KBDatabase",
        vector_store: "VectorStore",
        embedder: "Embedder",
        default_top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self._db = db
        self._vector_store = vector_store
        self._embedder = embedder
        self._default_top_k = default_top_k

    def query_hybrid(self, args: Union[QueryArgs, dict]) -> QueryResult:
        """
        Run the hybrid query described by *args*.

        Parameters
        ----------
        args:
            A :class:`QueryArgs` or the equivalent dict
            (``{"query": ..., "scope": {"namespace": ...}, "topK": ...}``).

        Returns
        -------
        QueryResult
            Up to ``top_k`` contexts, lexical hits first, each tagged with
            ``metadata["source"]``; plus the id of the stored trace.
        """
        trace_id = str(uuid.uuid4())
        start = time.time()
        t0 = time.perf_counter()

        try:
            if isinstance(args, dict):
                args = QueryArgs.from_dict(args)
            top_k = args.top_k if args.top_k and args.top_k > 0 else self._default_top_k
            namespace = args.scope.namespace if args.scope else None
            if args.scope and args.scope.project_id:
                logger.debug("Query scope projectId=%s is not used for filtering",
                             args.scope.project_id)

            fts_hits = self._lexical_stage(args.query, namespace, top_k * 2)
            vector_hits = self._vector_stage(args.query, namespace, top_k * 2)
            contexts = self._merge(fts_hits, vector_hits, top_k)
            if args.citations:
                self._attach_citations(contexts)
        except Exception as exc:
            logger.error("KB query failed for %r: %s", getattr(args, "query", args), exc)
            return QueryResult(contexts=[], trace_id=trace_id)

        lat_ms = int((time.perf_counter() - t0) * 1000)
        self._save_trace(TraceRecord(
            id=trace_id,
            ts=int(start * 1000),
            query=args.query,
            fts_hits=tuple(h["block_id"] for h in fts_hits),
            vector_hits=tuple(h["block_id"] for h in vector_hits),
            final=tuple(c.block_id for c in contexts),
            lat_ms=lat_ms,
        ))
        logger.info(
            "Hybrid query returned %d contexts (%d fts, %d vector) in %dms",
            len(contexts), len(fts_hits), len(vector_hits), lat_ms,
        )
        return QueryResult(contexts=contexts, trace_id=trace_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_fts(self, match_query: str, namespace: Optional[str], limit: int) -> list[dict]:
        if not match_query:
            return []
        try:
            return self._db.search_fts(match_query, namespace=namespace, limit=limit)
        except sqlite3.Error as exc:
            logger.warning("FTS query failed for %r: %s", match_query, exc)
            return []

    def _lexical_stage(self, query: str, namespace: Optional[str], limit: int) -> list[dict]:
        """Exact (sanitised) query, then punctuation-free, then OR-of-terms."""
        try:
            sanitized = sanitize_fts_query(query)
            hits = self._run_fts(sanitized, namespace, limit)
            seen = {h["block_id"] for h in hits}

            def _extend(more: list[dict]) -> None:
                for h in more:
                    if h["block_id"] not in seen:
                        seen.add(h["block_id"])
                        hits.append(h)

            if len(hits) < MIN_LEXICAL_HITS:
                cleaned = strip_punctuation(query)
                if cleaned and cleaned != sanitized:
                    _extend(self._run_fts(cleaned, namespace, limit))

            if len(hits) < MIN_LEXICAL_HITS:
                disjunction = or_query(query)
                if disjunction:
                    _extend(self._run_fts(disjunction, namespace, limit))
            return hits
        except Exception as exc:
            logger.warning("Lexical stage failed for %r: %s", query, exc)
            return []

    def _vector_stage(self, query: str, namespace: Optional[str], limit: int) -> list[dict]:
        """Nearest blocks by embedding; hits without a stored block are dropped."""
        if not query.strip():
            return []
        try:
            query_vector = self._embedder.embed_query(query)
            raw_hits = self._vector_store.query(query_vector, limit)
            if not raw_hits:
                return []
            rows = self._db.get_blocks([vid for vid, _ in raw_hits])
        except Exception as exc:
            logger.warning("Vector search failed for %r: %s", query, exc)
            return []

        hits: list[dict] = []
        for vid, score in raw_hits:
            row = rows.get(vid)
            if row is None:
                # Vector outlived its block (deleted or not yet committed)
                logger.debug("Vector hit %s has no block row; skipping", vid)
                continue
            if namespace and row.get("namespace") != namespace:
                continue
            hits.append({**row, "score": score})
        return hits

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    @staticmethod
    def _merge(fts_hits: list[dict], vector_hits: list[dict], top_k: int) -> list[Context]:
        tagged = [(h, SOURCE_FTS, -float(h["rank"])) for h in fts_hits]
        tagged += [(h, SOURCE_VECTOR, float(h["score"])) for h in vector_hits]

        seen: set[str] = set()
        contexts: list[Context] = []
        for hit, source, score in tagged:
            if hit["block_id"] in seen:
                continue
            seen.add(hit["block_id"])
            contexts.append(Context(
                doc_id=hit["doc_id"],
                block_id=hit["block_id"],
                text=hit["text"],
                score=score,
                metadata={"title": hit.get("title"), "path": hit.get("path"), "source": source},
            ))
        return contexts[:top_k]

    def _attach_citations(self, contexts: list[Context]) -> None:
        """Add ``metadata["citation"]`` as ``path > heading > ...``."""
        rows = self._db.get_blocks([c.block_id for c in contexts])
        for ctx in contexts:
            row = rows.get(ctx.block_id)
            if row is None:
                continue
            headings = BlockRecord(
                id=ctx.block_id, doc_id=ctx.doc_id, kind=row.get("kind", ""),
                heading_path=row.get("heading_path") or "[]", start_offset=0,
                end_offset=0, text=ctx.text, block_hash="",
            ).headings
            ctx.metadata["citation"] = " > ".join([row.get("path") or "", *headings])

    def _save_trace(self, trace: TraceRecord) -> None:
        try:
            self._db.save_trace(trace)
        except Exception as exc:
            logger.warning("Failed to save trace %s: %s", trace.id, exc)
