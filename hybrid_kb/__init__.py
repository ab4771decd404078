"""
hybrid_kb: incremental document indexing with hybrid (lexical + vector)
retrieval over SQLite FTS5 and a pluggable vector store.

Public API for library usage::

    from hybrid_kb import Config, KnowledgeBaseService

    with KnowledgeBaseService.from_config(Config.load()) as kb:
        kb.index_parsed_document(parsed, "notes/alpha.md")
        result = kb.query_hybrid({"query": "alpha", "topK": 5})
"""

from .config import Config
from .logs import setup_logger
from .kb.models import (
    BlockKind,
    FileStat,
    ParsedBlock,
    ParsedDocument,
    ParsedLink,
    QueryArgs,
    QueryResult,
    QueryScope,
    RefKind,
)
from .kb.service import KnowledgeBaseService

__all__ = [
    "Config",
    "setup_logger",
    "KnowledgeBaseService",
    "BlockKind",
    "RefKind",
    "FileStat",
    "ParsedBlock",
    "ParsedDocument",
    "ParsedLink",
    "QueryArgs",
    "QueryResult",
    "QueryScope",
]
