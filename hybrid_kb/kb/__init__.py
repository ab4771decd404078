"""
Knowledge Base: document indexing and hybrid (lexical + vector) retrieval.

Relational layer: SQLite documents/blocks/links/tags with an FTS5 index.
Semantic layer: pluggable vector store (brute-force or HNSW) keyed by block id.
"""
