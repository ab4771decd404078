"""
Unit tests for hybrid_kb.kb.searcher

Query rewriting, lexical relaxation, fusion/dedup with provenance, scope
filtering and the fail-open behaviour.  The embedder is mocked
throughout; most tests index real documents into SQLite.
"""

from __future__ import annotations

import hashlib
import sqlite3

import pytest
from unittest.mock import MagicMock

from hybrid_kb.kb.database import KBDatabase
from hybrid_kb.kb.indexer import Indexer
from hybrid_kb.kb.models import (
    BlockKind,
    ParsedBlock,
    ParsedDocument,
    QueryArgs,
    QueryScope,
    QueryResult,
)
from hybrid_kb.kb.searcher import (
    HybridSearcher,
    or_query,
    sanitize_fts_query,
    strip_punctuation,
)
from hybrid_kb.kb.vector_store import BruteForceVectorStore, VectorRecord


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fake_vector(text, dim=8):
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [b / 255.0 + 0.01 for b in digest[:dim]]


def _make_embedder():
    embedder = MagicMock()
    embedder.embed_documents.side_effect = lambda texts: [_fake_vector(t) for t in texts]
    embedder.embed_query.side_effect = _fake_vector
    return embedder


def _parsed(title, texts, frontmatter=None):
    return ParsedDocument(
        title=title,
        frontmatter=dict(frontmatter or {}),
        blocks=[ParsedBlock(kind=BlockKind.PARAGRAPH, text=t, heading_path=[title]) for t in texts],
    )


def _hit(block_id, rank=-1.0):
    return {
        "block_id": block_id, "doc_id": "d1", "text": f"text of {block_id}",
        "rank": rank, "title": "Alpha", "path": "a.md",
    }


@pytest.fixture
def env(tmp_path):
    db = KBDatabase(str(tmp_path / "knowledge_base.sqlite3"))
    store = BruteForceVectorStore(str(tmp_path), flush_delay=60)
    embedder = _make_embedder()
    indexer = Indexer(db, store, embedder)
    searcher = HybridSearcher(db, store, embedder)
    yield db, store, embedder, indexer, searcher
    store.close()
    db.close()


# ---------------------------------------------------------------------------
# Tests: query rewriting
# ---------------------------------------------------------------------------

class TestQueryRewriting:
    def test_sanitize_removes_fts_syntax(self):
        assert sanitize_fts_query('foo "bar" (baz*) -qux') == "foo bar baz qux"
        assert sanitize_fts_query("  spaced   out  ") == "spaced out"
        assert sanitize_fts_query('"*()') == ""

    def test_strip_punctuation_joins_words(self):
        assert strip_punctuation("what's up?") == "whats up"

    def test_or_query(self):
        assert or_query("The big red dog") == "the OR big OR red OR dog"
        assert or_query("is it an ox") is None
        assert or_query("single") is None
        assert or_query("dog dog cat") == "dog OR cat"


# ---------------------------------------------------------------------------
# Tests: lexical relaxation (mocked database)
# ---------------------------------------------------------------------------

class TestRelaxation:
    def _searcher(self, fts_results):
        db = MagicMock()
        db.search_fts.side_effect = fts_results
        store = MagicMock()
        store.query.return_value = []
        return db, HybridSearcher(db, store, _make_embedder())

    def test_relaxation_stages_add_new_hits_without_duplicates(self):
        db, searcher = self._searcher([
            [_hit("b1")],
            [_hit("b1"), _hit("b2")],
            [_hit("b2"), _hit("b3")],
        ])
        result = searcher.query_hybrid(QueryArgs(query="what's the walrus?"))

        queries = [c.args[0] for c in db.search_fts.call_args_list]
        assert queries == ["what s the walrus", "whats the walrus", "what OR the OR walrus"]
        assert [c.block_id for c in result.contexts] == ["b1", "b2", "b3"]
        assert all(c.source == "fts" for c in result.contexts)
        trace = db.save_trace.call_args.args[0]
        assert trace.fts_hits == ("b1", "b2", "b3")

    def test_no_relaxation_when_enough_hits(self):
        db, searcher = self._searcher([[_hit("b1"), _hit("b2"), _hit("b3")]])
        searcher.query_hybrid(QueryArgs(query="walrus facts"))
        assert db.search_fts.call_count == 1

    def test_identical_stripped_query_is_not_rerun(self):
        db, searcher = self._searcher([[], []])
        searcher.query_hybrid(QueryArgs(query="walrus penguin"))
        queries = [c.args[0] for c in db.search_fts.call_args_list]
        assert queries == ["walrus penguin", "walrus OR penguin"]

    def test_fts_error_counts_as_zero_hits(self):
        db, searcher = self._searcher([sqlite3.OperationalError("fts5: syntax error"), [_hit("b9")]])
        result = searcher.query_hybrid(QueryArgs(query="walrus AND penguin"))
        assert [c.block_id for c in result.contexts] == ["b9"]

    def test_limit_is_twice_top_k(self):
        db, searcher = self._searcher([[_hit("b1"), _hit("b2"), _hit("b3")]])
        searcher.query_hybrid(QueryArgs(query="walrus", top_k=4))
        assert db.search_fts.call_args.kwargs["limit"] == 8


# ---------------------------------------------------------------------------
# Tests: hybrid fusion (real SQLite)
# ---------------------------------------------------------------------------

class TestHybridQuery:
    def test_block_found_by_both_stages_is_tagged_fts(self, env):
        _, _, _, indexer, searcher = env
        doc = indexer.index_parsed_document(
            _parsed("Alpha", ["walrus habitat", "penguin diet", "seal colony"]), "a.md",
        )
        result = searcher.query_hybrid(QueryArgs(query="walrus habitat", top_k=10))

        ids = [c.block_id for c in result.contexts]
        assert len(ids) == len(set(ids))
        assert ids[0] == doc.block_ids[0]
        assert result.contexts[0].source == "fts"
        assert result.contexts[0].score > 0
        # Vector stage surfaced the rest, after the lexical hit
        assert set(ids) == set(doc.block_ids)
        assert all(c.source == "vector" for c in result.contexts[1:])

    def test_lexical_hits_precede_vector_hits(self, env):
        _, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus one", "walrus two", "other"]), "a.md")
        result = searcher.query_hybrid(QueryArgs(query="walrus", top_k=10))
        sources = [c.source for c in result.contexts]
        assert sources[:2] == ["fts", "fts"]
        assert "fts" not in sources[2:]

    def test_or_escalation_on_real_index(self, env):
        _, _, embedder, indexer, searcher = env
        doc = indexer.index_parsed_document(_parsed("Alpha", ["walrus here", "penguin there"]), "a.md")
        embedder.embed_query.side_effect = RuntimeError("embedding service down")

        result = searcher.query_hybrid(QueryArgs(query="walrus penguin"))
        assert {c.block_id for c in result.contexts} == set(doc.block_ids[:2])
        assert all(c.source == "fts" for c in result.contexts)

    def test_top_k_truncates(self, env):
        _, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", [f"walrus {i}" for i in range(6)]), "a.md")
        result = searcher.query_hybrid(QueryArgs(query="walrus", top_k=2))
        assert len(result.contexts) == 2

    def test_default_top_k(self, env):
        db, store, embedder, indexer, _ = env
        indexer.index_parsed_document(_parsed("Alpha", [f"walrus {i}" for i in range(6)]), "a.md")
        searcher = HybridSearcher(db, store, embedder, default_top_k=3)
        assert len(searcher.query_hybrid(QueryArgs(query="walrus")).contexts) == 3
        assert len(searcher.query_hybrid(QueryArgs(query="walrus", top_k=0)).contexts) == 3

    def test_dict_arguments(self, env):
        _, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus one", "walrus two"]), "a.md")
        result = searcher.query_hybrid({"query": "walrus", "topK": 1, "scope": {"namespace": "notes"}})
        assert isinstance(result, QueryResult)
        assert len(result.contexts) == 1

    def test_metadata_fields(self, env):
        _, _, _, indexer, searcher = env
        doc = indexer.index_parsed_document(_parsed("Alpha", ["walrus"]), "notes/a.md")
        ctx = searcher.query_hybrid(QueryArgs(query="walrus", top_k=1)).contexts[0]
        assert ctx.doc_id == doc.doc_id
        assert ctx.text == "walrus"
        assert ctx.metadata == {"title": "Alpha", "path": "notes/a.md", "source": "fts"}

    def test_citations(self, env):
        _, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus"]), "notes/a.md")
        ctx = searcher.query_hybrid(QueryArgs(query="walrus", top_k=1, citations=True)).contexts[0]
        assert ctx.metadata["citation"] == "notes/a.md > Alpha"


# ---------------------------------------------------------------------------
# Tests: scope & consistency
# ---------------------------------------------------------------------------

class TestScopeAndConsistency:
    def test_namespace_scope_applies_to_both_stages(self, env):
        _, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Home", ["walrus at home"]), "home.md")
        work = indexer.index_parsed_document(
            _parsed("Work", ["walrus at work", "meeting notes"], frontmatter={"namespace": "work"}),
            "work.md",
        )
        result = searcher.query_hybrid(
            QueryArgs(query="walrus", scope=QueryScope(namespace="work"), top_k=20),
        )
        assert result.contexts
        assert {c.doc_id for c in result.contexts} == {work.doc_id}
        assert any(c.source == "vector" for c in result.contexts)

    def test_vector_hit_without_block_is_dropped(self, env):
        _, store, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus"]), "a.md")
        store.upsert([VectorRecord("ghost", _fake_vector("zebra stripes"))])
        result = searcher.query_hybrid(QueryArgs(query="zebra stripes", top_k=10))
        assert "ghost" not in {c.block_id for c in result.contexts}
        assert result.trace_id

    def test_deleted_document_disappears(self, env):
        _, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus"]), "a.md")
        indexer.delete_document("a.md")
        assert searcher.query_hybrid(QueryArgs(query="walrus")).contexts == []


# ---------------------------------------------------------------------------
# Tests: tracing & failure handling
# ---------------------------------------------------------------------------

class TestTracingAndFailures:
    def test_trace_is_persisted(self, env):
        db, _, _, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus habitat", "penguin"]), "a.md")
        result = searcher.query_hybrid(QueryArgs(query="walrus", top_k=5))

        trace = db.get_trace(result.trace_id)
        assert trace is not None
        assert trace.query == "walrus"
        assert trace.final == tuple(c.block_id for c in result.contexts)
        assert len(trace.fts_hits) == 1
        assert trace.lat_ms >= 0

    def test_blank_query_skips_vector_stage(self, env):
        _, _, embedder, indexer, searcher = env
        indexer.index_parsed_document(_parsed("Alpha", ["walrus"]), "a.md")
        result = searcher.query_hybrid(QueryArgs(query="   "))
        assert result.contexts == []
        embedder.embed_query.assert_not_called()

    def test_every_stage_failing_returns_empty_result(self):
        db = MagicMock()
        db.search_fts.side_effect = RuntimeError("database is locked")
        embedder = MagicMock()
        embedder.embed_query.side_effect = RuntimeError("provider down")
        searcher = HybridSearcher(db, MagicMock(), embedder)

        result = searcher.query_hybrid(QueryArgs(query="walrus"))
        assert result.contexts == []
        assert result.trace_id
        db.save_trace.assert_called_once()

    def test_trace_write_failure_does_not_raise(self):
        db = MagicMock()
        db.search_fts.return_value = [_hit("b1")]
        db.save_trace.side_effect = sqlite3.OperationalError("disk I/O error")
        store = MagicMock()
        store.query.return_value = []
        searcher = HybridSearcher(db, store, _make_embedder())
        result = searcher.query_hybrid(QueryArgs(query="walrus"))
        assert [c.block_id for c in result.contexts] == ["b1"]

    def test_malformed_arguments_never_raise(self):
        searcher = HybridSearcher(MagicMock(), MagicMock(), MagicMock())
        result = searcher.query_hybrid(None)
        assert result.contexts == []
        assert result.trace_id
