"""
Knowledge Base service handle.

Owns one database, one vector store and one embedder and exposes the
indexing and query operations over them.  There is no process-wide
instance: callers construct a handle (directly or via
:meth:`KnowledgeBaseService.from_config`) and pass it where needed.

Usage::

    with KnowledgeBaseService.from_config(Config.load()) as kb:
        kb.index_parsed_document(parsed, "notes/alpha.md")
        result = kb.query_hybrid({"query": "alpha", "topK": 5})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional, Union

from .database import KBDatabase
from .embedder import Embedder, create_embedder
from .indexer import REBUILD_BATCH_SIZE, Indexer, IndexResult
from .models import (
    DEFAULT_NAMESPACE,
    FileStat,
    LinkRecord,
    ParsedDocument,
    QueryArgs,
    QueryResult,
    TraceRecord,
)
from .searcher import DEFAULT_TOP_K, HybridSearcher
from .vector_store import VectorStore, create_vector_store

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)


class KnowledgeBaseService:
    """
    Facade over the indexer and the hybrid searcher.

    Parameters
    ----------
    db:
        Relational store (documents, blocks, links, tags, FTS, traces).
    vector_store:
        Vector index keyed by block id.
    embedder:
        Embedding collaborator shared by indexing and querying.
    default_namespace:
        Namespace for documents whose frontmatter names none.
    default_top_k:
        Result count for queries that do not set ``topK``.
    """

    def __init__(
        self,
        db: KBDatabase,
        vector_store: VectorStore,
        embedder: Embedder,
        default_namespace: str = DEFAULT_NAMESPACE,
        default_top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self.db = db
        self.vector_store = vector_store
        self.embedder = embedder
        self.indexer = Indexer(db, vector_store, embedder, default_namespace)
        self.searcher = HybridSearcher(db, vector_store, embedder, default_top_k)
        self._closed = False

    @classmethod
    def from_config(cls, config: "Config") -> "KnowledgeBaseService":
        """Open the stores and embedder described by *config*."""
        db = KBDatabase(config.db_path)
        try:
            vector_store = create_vector_store(config)
            embedder = create_embedder(config)
        except Exception:
            db.close()
            raise
        logger.info(
            "Knowledge base ready: db=%s backend=%s provider=%s",
            config.db_path, config.VECTOR_BACKEND, config.EMBEDDING_PROVIDER,
        )
        return cls(
            db,
            vector_store,
            embedder,
            default_namespace=config.DEFAULT_NAMESPACE,
            default_top_k=config.DEFAULT_TOP_K,
        )

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index_parsed_document(
        self, parsed: ParsedDocument, path: str, stat: Optional[FileStat] = None,
    ) -> IndexResult:
        return self.indexer.index_parsed_document(parsed, path, stat)

    def index_many(
        self, items: Iterable[tuple[ParsedDocument, str, Optional[FileStat]]],
    ) -> dict:
        return self.indexer.index_many(items)

    def delete_document(self, path: str, delete_vectors: bool = True) -> list[str]:
        return self.indexer.delete_document(path, delete_vectors=delete_vectors)

    def rebuild_vectors(
        self,
        batch_size: int = REBUILD_BATCH_SIZE,
        force: bool = False,
        show_progress: bool = False,
    ) -> dict:
        return self.indexer.rebuild_vectors(
            batch_size=batch_size, force=force, show_progress=show_progress,
        )

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def query_hybrid(self, args: Union[QueryArgs, dict]) -> QueryResult:
        return self.searcher.query_hybrid(args)

    def get_backlinks(self, doc_id: str) -> list[LinkRecord]:
        """Links in other documents (or this one) that resolve to *doc_id*."""
        return self.db.get_backlinks(doc_id)

    def get_trace(self, trace_id: str) -> Optional[TraceRecord]:
        return self.db.get_trace(trace_id)

    def get_stats(self) -> dict:
        """Relational row counts plus the number of stored vectors."""
        stats = self.db.stats()
        stats["vectors"] = len(self.vector_store)
        return stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Flush pending vector writes and close the database. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            self.vector_store.close()
        finally:
            self.db.close()
        logger.info("Knowledge base closed")

    def __enter__(self) -> "KnowledgeBaseService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
