"""
Data model for the Knowledge Base.

Relational records mirror the SQLite schema in :mod:`.database`; the
``Parsed*`` classes describe the input produced by the document parser.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


DEFAULT_NAMESPACE = "notes"


class BlockKind(str, Enum):
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    CODE = "code"
    LIST_ITEM = "list_item"
    BLOCKQUOTE = "blockquote"
    METADATA = "metadata"


class RefKind(str, Enum):
    WIKILINK = "wikilink"
    TRANSCLUSION = "transclusion"
    URL = "url"


def compute_hash(text: str) -> str:
    """Return the hex SHA-256 of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Parser output (ingestion input)
# ---------------------------------------------------------------------------

@dataclass
class ParsedBlock:
    """A block as emitted by the parser, before ids are reconciled."""

    kind: BlockKind | str
    text: str
    start_offset: int = 0
    end_offset: int = 0
    heading_path: list[str] = field(default_factory=list)
    id: Optional[str] = None


@dataclass
class ParsedLink:
    """A reference found in block number *block_index* of the document."""

    text: str
    target: str
    type: RefKind | str = RefKind.WIKILINK
    block_index: int = 0


@dataclass
class ParsedDocument:
    title: str
    frontmatter: dict[str, Any] = field(default_factory=dict)
    blocks: list[ParsedBlock] = field(default_factory=list)
    links: list[ParsedLink] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


@dataclass
class FileStat:
    """Source-file timestamps in milliseconds since the epoch."""

    mtime_ms: float
    birthtime_ms: float


# ---------------------------------------------------------------------------
# Relational records
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    id: str
    path: str
    title: str
    aliases: list[str]
    tags: list[str]
    created_at: int
    updated_at: int
    content_hash: str
    namespace: str = DEFAULT_NAMESPACE


@dataclass
class BlockRecord:
    id: str
    doc_id: str
    kind: str
    heading_path: str   # JSON-encoded list of ancestor headings
    start_offset: int
    end_offset: int
    text: str
    block_hash: str

    @property
    def headings(self) -> list[str]:
        try:
            value = json.loads(self.heading_path)
        except (json.JSONDecodeError, TypeError):
            return []
        return value if isinstance(value, list) else []


@dataclass
class LinkRecord:
    src_block_id: str
    dst_ref: str
    resolved_doc_id: Optional[str]
    ref_kind: str


@dataclass(frozen=True)
class TraceRecord:
    """Audit record of one hybrid query. Written once, never updated."""

    id: str
    ts: int
    query: str
    fts_hits: tuple[str, ...]
    vector_hits: tuple[str, ...]
    final: tuple[str, ...]
    lat_ms: int
    rerank: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Query API
# ---------------------------------------------------------------------------

@dataclass
class QueryScope:
    namespace: Optional[str] = None
    project_id: Optional[str] = None


@dataclass
class QueryArgs:
    query: str
    scope: QueryScope = field(default_factory=QueryScope)
    top_k: Optional[int] = None
    citations: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "QueryArgs":
        """Build from the camelCase/snake_case dict accepted by the query API."""
        scope_data = data.get("scope") or {}
        scope = QueryScope(
            namespace=scope_data.get("namespace"),
            project_id=scope_data.get("projectId", scope_data.get("project_id")),
        )
        return cls(
            query=str(data.get("query", "")),
            scope=scope,
            top_k=data.get("topK", data.get("top_k")),
            citations=bool(data.get("citations", False)),
        )


@dataclass
class Context:
    """One retrieved block, tagged with the stage that produced it."""

    doc_id: str
    block_id: str
    text: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.metadata.get("source", "")


@dataclass
class QueryResult:
    contexts: list[Context] = field(default_factory=list)
    trace_id: Optional[str] = None
