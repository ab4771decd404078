"""
SQLite-backed relational store for the Knowledge Base.

Holds documents, blocks, links and tags, plus an FTS5 index over block
text.  The FTS index is never written directly: triggers on ``blocks``
keep it in sync, so any transaction that touches ``blocks`` also keeps
the lexical index consistent.

Storage: ``<data_dir>/knowledge_base.sqlite3``
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from .models import BlockRecord, DocumentRecord, LinkRecord, RefKind, TraceRecord

logger = logging.getLogger(__name__)

_PRAGMAS = """
PRAGMA journal_mode = WAL;
PRAGMA synchronous = NORMAL;
PRAGMA foreign_keys = ON;
"""

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id            TEXT    PRIMARY KEY,
    path          TEXT    NOT NULL UNIQUE,
    title         TEXT    NOT NULL,
    aliases_json  TEXT    NOT NULL DEFAULT '[]',
    tags_json     TEXT    NOT NULL DEFAULT '[]',
    created_at    INTEGER NOT NULL,
    updated_at    INTEGER NOT NULL,
    content_hash  TEXT    NOT NULL,
    namespace     TEXT    NOT NULL DEFAULT 'notes'
);

CREATE INDEX IF NOT EXISTS idx_documents_path      ON documents(path);
CREATE INDEX IF NOT EXISTS idx_documents_namespace ON documents(namespace);

CREATE TABLE IF NOT EXISTS blocks (
    id            TEXT    PRIMARY KEY,
    doc_id        TEXT    NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    kind          TEXT    NOT NULL,
    heading_path  TEXT    NOT NULL,
    start_offset  INTEGER NOT NULL,
    end_offset    INTEGER NOT NULL,
    text          TEXT    NOT NULL,
    block_hash    TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_blocks_doc_id ON blocks(doc_id);

CREATE TABLE IF NOT EXISTS links (
    src_block_id     TEXT NOT NULL REFERENCES blocks(id) ON DELETE CASCADE,
    dst_ref          TEXT NOT NULL,
    resolved_doc_id  TEXT,
    ref_kind         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_links_src      ON links(src_block_id);
CREATE INDEX IF NOT EXISTS idx_links_resolved ON links(resolved_doc_id);

CREATE TABLE IF NOT EXISTS tags (
    doc_id  TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    tag     TEXT NOT NULL,
    PRIMARY KEY (doc_id, tag)
);

CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags(tag);

-- External-content FTS table over blocks.text, joined on blocks.rowid
CREATE VIRTUAL TABLE IF NOT EXISTS fts_blocks USING fts5(
    text,
    content='blocks',
    tokenize='porter'
);

CREATE TRIGGER IF NOT EXISTS blocks_ai AFTER INSERT ON blocks BEGIN
    INSERT INTO fts_blocks(rowid, text) VALUES (new.rowid, new.text);
END;

CREATE TRIGGER IF NOT EXISTS blocks_ad AFTER DELETE ON blocks BEGIN
    INSERT INTO fts_blocks(fts_blocks, rowid, text) VALUES ('delete', old.rowid, old.text);
END;

CREATE TRIGGER IF NOT EXISTS blocks_au AFTER UPDATE ON blocks BEGIN
    INSERT INTO fts_blocks(fts_blocks, rowid, text) VALUES ('delete', old.rowid, old.text);
    INSERT INTO fts_blocks(rowid, text) VALUES (new.rowid, new.text);
END;

CREATE TABLE IF NOT EXISTS traces (
    id                TEXT    PRIMARY KEY,
    ts                INTEGER NOT NULL,
    query             TEXT    NOT NULL,
    fts_hits_json     TEXT,
    vector_hits_json  TEXT,
    rerank_json       TEXT,
    final_json        TEXT,
    lat_ms            INTEGER
);

CREATE TABLE IF NOT EXISTS eval_runs (
    id            TEXT    PRIMARY KEY,
    ts            INTEGER NOT NULL,
    suite         TEXT    NOT NULL,
    metrics_json  TEXT
);
"""


def _loads_list(raw: Optional[str]) -> list:
    try:
        value = json.loads(raw or "[]")
    except (json.JSONDecodeError, TypeError):
        return []
    return value if isinstance(value, list) else []


class KBDatabase:
    """
    Relational store + FTS5 lexical index.

    One instance owns one SQLite connection, shared across threads under a
    re-entrant lock.  Construct it once at startup and pass it to the
    components that need it.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created if absent;
        ``":memory:"`` is accepted for tests.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._tx_depth = 0
        logger.info("Opening KB database at %s", db_path)
        self._init_db()

    # ------------------------------------------------------------------
    # Connection / transaction helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Lazy connection in autocommit mode; transactions are explicit."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                self._db_path,
                timeout=10,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_PRAGMAS)
        return self._conn

    def _init_db(self) -> None:
        """Create tables, indexes and FTS triggers if missing."""
        with self._lock:
            try:
                self._get_conn().executescript(_SCHEMA)
            except sqlite3.Error as exc:
                logger.error("Failed to initialise KB database %s: %s", self._db_path, exc)
                raise
        logger.debug("KB database schema ready: %s", self._db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed statements in one write transaction.

        Commits on success, rolls back and re-raises on any exception.
        Nested use joins the outer transaction.
        """
        with self._lock:
            conn = self._get_conn()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield conn
                finally:
                    self._tx_depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                self._tx_depth = 0

    def _query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._get_conn().execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error:
                    pass
                self._conn = None
                logger.info("KB database closed")

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def upsert_document(self, doc: DocumentRecord) -> None:
        """
        Insert or update *doc* by id.

        ``created_at`` is kept from the first insert.  Raises
        :class:`sqlite3.IntegrityError` if another document already owns
        ``doc.path``.
        """
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, path, title, aliases_json, tags_json,
                                       created_at, updated_at, content_hash, namespace)
                VALUES (:id, :path, :title, :aliases, :tags,
                        :created, :updated, :hash, :ns)
                ON CONFLICT(id) DO UPDATE SET
                    path         = excluded.path,
                    title        = excluded.title,
                    aliases_json = excluded.aliases_json,
                    tags_json    = excluded.tags_json,
                    updated_at   = excluded.updated_at,
                    content_hash = excluded.content_hash,
                    namespace    = excluded.namespace
                """,
                {
                    "id": doc.id,
                    "path": doc.path,
                    "title": doc.title,
                    "aliases": json.dumps(sorted(set(doc.aliases))),
                    "tags": json.dumps(sorted(set(doc.tags))),
                    "created": int(doc.created_at),
                    "updated": int(doc.updated_at),
                    "hash": doc.content_hash,
                    "ns": doc.namespace,
                },
            )

    def get_document(self, doc_id: str) -> Optional[DocumentRecord]:
        rows = self._query("SELECT * FROM documents WHERE id = ?", (doc_id,))
        if not rows:
            return None
        row = rows[0]
        return DocumentRecord(
            id=row["id"],
            path=row["path"],
            title=row["title"],
            aliases=_loads_list(row["aliases_json"]),
            tags=_loads_list(row["tags_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            content_hash=row["content_hash"],
            namespace=row["namespace"],
        )

    def get_document_id_by_path(self, path: str) -> Optional[str]:
        rows = self._query("SELECT id FROM documents WHERE path = ?", (path,))
        return rows[0]["id"] if rows else None

    def find_document_ids_by_ref(self, ref: str) -> list[str]:
        """
        Resolve a wiki-style reference to document ids.

        Matches, case-insensitively, the document title, any alias, the
        full path, or the file name without its extension.
        """
        ref = ref.strip()
        if not ref:
            return []
        rows = self._query(
            """
            SELECT d.id FROM documents d
            WHERE lower(d.title) = lower(:ref)
               OR lower(d.path) = lower(:ref)
               OR lower(d.path) LIKE '%/' || lower(:ref) || '.%'
               OR lower(d.path) LIKE lower(:ref) || '.%'
               OR EXISTS (
                    SELECT 1 FROM json_each(d.aliases_json)
                    WHERE lower(json_each.value) = lower(:ref)
               )
            ORDER BY d.path
            """,
            {"ref": ref},
        )
        return [r["id"] for r in rows]

    def delete_document(self, path: str) -> list[str]:
        """
        Delete the document at *path* with its blocks, links and tags.

        Returns the ids of the deleted blocks so the caller can remove the
        matching vectors.  Safe to call for an unknown path.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM documents WHERE path = ?", (path,)
            ).fetchone()
            if row is None:
                return []
            doc_id = row["id"]
            block_ids = [
                r["id"] for r in conn.execute(
                    "SELECT id FROM blocks WHERE doc_id = ?", (doc_id,)
                ).fetchall()
            ]
            # Explicit block delete fires the FTS trigger for every row
            conn.execute("DELETE FROM blocks WHERE doc_id = ?", (doc_id,))
            conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
            # Links pointing at the removed document become dangling again
            conn.execute(
                "UPDATE links SET resolved_doc_id = NULL WHERE resolved_doc_id = ?",
                (doc_id,),
            )
        logger.debug("Deleted document %s (%s) with %d blocks", doc_id, path, len(block_ids))
        return block_ids

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def get_block_hashes(self, doc_id: str) -> dict[str, list[str]]:
        """
        Return ``{block_hash: [block_id, ...]}`` for the current blocks of
        *doc_id*, ids in document order.  Repeated texts share a hash.
        """
        rows = self._query(
            "SELECT id, block_hash FROM blocks WHERE doc_id = ? ORDER BY rowid",
            (doc_id,),
        )
        hashes: dict[str, list[str]] = {}
        for r in rows:
            hashes.setdefault(r["block_hash"], []).append(r["id"])
        return hashes

    def get_block_ids(self, doc_id: str) -> list[str]:
        rows = self._query(
            "SELECT id FROM blocks WHERE doc_id = ? ORDER BY rowid", (doc_id,)
        )
        return [r["id"] for r in rows]

    def get_block_doc_id(self, block_id: str) -> Optional[str]:
        """Return the id of the document owning *block_id*, or None."""
        rows = self._query("SELECT doc_id FROM blocks WHERE id = ?", (block_id,))
        return rows[0]["doc_id"] if rows else None

    def replace_blocks(self, doc_id: str, blocks: list[BlockRecord]) -> None:
        """
        Replace every block of *doc_id* with *blocks* in one transaction.

        Links of the old blocks are removed by cascade; the FTS index is
        updated by the block triggers.
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM blocks WHERE doc_id = ?", (doc_id,))
            conn.executemany(
                """
                INSERT INTO blocks (id, doc_id, kind, heading_path,
                                    start_offset, end_offset, text, block_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (b.id, doc_id, b.kind, b.heading_path,
                     b.start_offset, b.end_offset, b.text, b.block_hash)
                    for b in blocks
                ],
            )

    def get_blocks(self, block_ids: list[str]) -> dict[str, dict]:
        """
        Fetch blocks by id joined with their document.

        Returns a mapping ``block_id -> row dict`` with keys ``block_id``,
        ``doc_id``, ``text``, ``kind``, ``heading_path``, ``title``, ``path``,
        ``namespace``.
        Unknown ids are absent from the result.
        """
        if not block_ids:
            return {}
        placeholders = ",".join("?" for _ in block_ids)
        rows = self._query(
            f"""
            SELECT b.id AS block_id, b.doc_id AS doc_id, b.text AS text,
                   b.kind AS kind, b.heading_path AS heading_path,
                   d.title AS title, d.path AS path, d.namespace AS namespace
            FROM blocks b
            JOIN documents d ON d.id = b.doc_id
            WHERE b.id IN ({placeholders})
            """,
            list(block_ids),
        )
        return {r["block_id"]: dict(r) for r in rows}

    def iter_blocks(self, batch_size: int = 500) -> Iterator[list[tuple[str, str, str, str]]]:
        """
        Yield batches of ``(block_id, doc_id, path, text)`` for every block.

        Used to regenerate the vector store from relational state.
        """
        last_rowid = 0
        while True:
            rows = self._query(
                """
                SELECT b.rowid AS rid, b.id, b.doc_id, d.path, b.text
                FROM blocks b JOIN documents d ON d.id = b.doc_id
                WHERE b.rowid > ? ORDER BY b.rowid LIMIT ?
                """,
                (last_rowid, batch_size),
            )
            if not rows:
                return
            last_rowid = rows[-1]["rid"]
            yield [(r["id"], r["doc_id"], r["path"], r["text"]) for r in rows]

    def count_blocks(self) -> int:
        return self._query("SELECT COUNT(*) FROM blocks")[0][0]

    # ------------------------------------------------------------------
    # Links & tags
    # ------------------------------------------------------------------

    def insert_links(self, links: list[LinkRecord]) -> None:
        if not links:
            return
        with self.transaction() as conn:
            conn.executemany(
                "INSERT INTO links (src_block_id, dst_ref, resolved_doc_id, ref_kind) "
                "VALUES (?, ?, ?, ?)",
                [(l.src_block_id, l.dst_ref, l.resolved_doc_id, l.ref_kind) for l in links],
            )

    def resolve_dangling_links(self, doc_id: str, names: list[str]) -> int:
        """
        Point unresolved non-URL links whose target is one of *names* at *doc_id*.

        A target matches a name exactly or with a ``#heading`` / ``|label``
        suffix.  Returns the number of links updated.
        """
        updated = 0
        with self.transaction() as conn:
            for name in {n.strip().lower() for n in names if n and n.strip()}:
                cur = conn.execute(
                    """
                    UPDATE links SET resolved_doc_id = :doc_id
                    WHERE resolved_doc_id IS NULL
                      AND ref_kind != :url
                      AND (lower(dst_ref) = :name
                           OR lower(substr(dst_ref, 1, length(:name) + 1))
                              IN (:name || '#', :name || '|'))
                    """,
                    {"doc_id": doc_id, "url": RefKind.URL.value, "name": name},
                )
                updated += cur.rowcount
        return updated

    def get_links(self, doc_id: str) -> list[LinkRecord]:
        """Outgoing links of every block of *doc_id*."""
        rows = self._query(
            """
            SELECT l.src_block_id, l.dst_ref, l.resolved_doc_id, l.ref_kind
            FROM links l JOIN blocks b ON b.id = l.src_block_id
            WHERE b.doc_id = ?
            """,
            (doc_id,),
        )
        return [LinkRecord(**dict(r)) for r in rows]

    def get_backlinks(self, doc_id: str) -> list[LinkRecord]:
        """Links from any block that resolve to *doc_id*."""
        rows = self._query(
            "SELECT src_block_id, dst_ref, resolved_doc_id, ref_kind "
            "FROM links WHERE resolved_doc_id = ?",
            (doc_id,),
        )
        return [LinkRecord(**dict(r)) for r in rows]

    def replace_tags(self, doc_id: str, tags: list[str]) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM tags WHERE doc_id = ?", (doc_id,))
            conn.executemany(
                "INSERT OR IGNORE INTO tags (doc_id, tag) VALUES (?, ?)",
                [(doc_id, t) for t in tags],
            )

    def get_tags(self, doc_id: str) -> list[str]:
        rows = self._query("SELECT tag FROM tags WHERE doc_id = ? ORDER BY tag", (doc_id,))
        return [r["tag"] for r in rows]

    def find_documents_by_tag(self, tag: str) -> list[str]:
        rows = self._query("SELECT doc_id FROM tags WHERE tag = ? ORDER BY doc_id", (tag,))
        return [r["doc_id"] for r in rows]

    # ------------------------------------------------------------------
    # Lexical search
    # ------------------------------------------------------------------

    def search_fts(
        self,
        match_query: str,
        namespace: Optional[str] = None,
        limit: int = 40,
    ) -> list[dict]:
        """
        Run an FTS5 ``MATCH`` query, best rank first.

        *match_query* must already be sanitised; FTS syntax errors are
        raised as :class:`sqlite3.OperationalError` for the caller to
        handle.

        Returns
        -------
        list[dict]
            Keys: ``block_id``, ``doc_id``, ``text``, ``rank``, ``title``,
            ``path``.  Lower ``rank`` is better (FTS5 bm25 convention).
        """
        sql = """
            SELECT b.id AS block_id, b.doc_id AS doc_id, b.text AS text,
                   fts_blocks.rank AS rank, d.title AS title, d.path AS path
            FROM fts_blocks
            JOIN blocks b ON b.rowid = fts_blocks.rowid
            JOIN documents d ON d.id = b.doc_id
            WHERE fts_blocks MATCH ?
        """
        params: list = [match_query]
        if namespace:
            sql += " AND d.namespace = ?"
            params.append(namespace)
        sql += " ORDER BY fts_blocks.rank ASC LIMIT ?"
        params.append(int(limit))
        return [dict(r) for r in self._query(sql, params)]

    # ------------------------------------------------------------------
    # Traces & evaluation runs
    # ------------------------------------------------------------------

    def save_trace(self, trace: TraceRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO traces (id, ts, query, fts_hits_json, vector_hits_json,
                                    rerank_json, final_json, lat_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trace.id,
                    trace.ts,
                    trace.query,
                    json.dumps(list(trace.fts_hits)),
                    json.dumps(list(trace.vector_hits)),
                    json.dumps(list(trace.rerank)),
                    json.dumps(list(trace.final)),
                    trace.lat_ms,
                ),
            )

    def get_trace(self, trace_id: str) -> Optional[TraceRecord]:
        rows = self._query("SELECT * FROM traces WHERE id = ?", (trace_id,))
        if not rows:
            return None
        r = rows[0]
        return TraceRecord(
            id=r["id"],
            ts=r["ts"],
            query=r["query"],
            fts_hits=tuple(_loads_list(r["fts_hits_json"])),
            vector_hits=tuple(_loads_list(r["vector_hits_json"])),
            final=tuple(_loads_list(r["final_json"])),
            lat_ms=r["lat_ms"] or 0,
            rerank=tuple(_loads_list(r["rerank_json"])),
        )

    def save_eval_run(self, suite: str, metrics: dict) -> str:
        """Record the metrics of one retrieval-evaluation run; returns its id."""
        run_id = str(uuid.uuid4())
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO eval_runs (id, ts, suite, metrics_json) VALUES (?, ?, ?, ?)",
                (run_id, int(time.time() * 1000), suite, json.dumps(metrics, default=str)),
            )
        return run_id

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        """
        Return aggregate row counts.

        Returns
        -------
        dict
            Keys: documents, blocks, links, tags, traces.
        """
        counts = {}
        for table in ("documents", "blocks", "links", "tags", "traces"):
            counts[table] = self._query(f"SELECT COUNT(*) FROM {table}")[0][0]
        return counts
