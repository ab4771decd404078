"""
Indexer: incremental indexing of parsed documents into the Knowledge Base.

Per document:
  1. Resolve the stable document id (frontmatter id > id on record > new)
  2. Hash every block and reuse the id of any unchanged block from the
     previous version, so its vector is reused instead of re-embedded
  3. Add a synthetic metadata block (path + title) under the same rule
  4. Embed only the new/changed block texts in one batch and upsert them
  5. Replace document/blocks/links/tags in a single transaction

Embedding happens before the relational commit: a crash in between leaves
orphan vectors (harmless, overwritten or reused next time) but never rows
that point at vectors which were not written.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from tqdm import tqdm

from .models import (
    DEFAULT_NAMESPACE,
    BlockKind,
    BlockRecord,
    DocumentRecord,
    FileStat,
    LinkRecord,
    ParsedDocument,
    ParsedLink,
    RefKind,
    compute_hash,
)
from .vector_store import VectorRecord

if TYPE_CHECKING:
    from .database import KBDatabase
    from .embedder import Embedder
    from .vector_store import VectorStore

logger = logging.getLogger(__name__)

REBUILD_BATCH_SIZE = 100


@dataclass
class IndexResult:
    """Outcome of indexing one document."""

    doc_id: str
    path: str
    block_ids: list[str] = field(default_factory=list)
    embedded: int = 0
    reused: int = 0
    embedding_failed: bool = False


def _enum_value(value) -> str:
    return value.value if isinstance(value, (BlockKind, RefKind)) else str(value)


def _as_str_list(value) -> list[str]:
    """Frontmatter lists may arrive as a scalar, a list, or nothing."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


def metadata_block_text(path: str, title: str) -> str:
    """Text of the synthetic block that keeps a document findable by name."""
    return f"File: {path} Title: {title}"


def normalize_ref(target: str) -> str:
    """Strip ``|label`` and ``#heading`` parts from a wiki reference."""
    name = target.split("|", 1)[0]
    name = name.split("#", 1)[0]
    return name.strip()


class Indexer:
    """
    Reconciles parsed documents against the stored blocks and keeps the
    vector store aligned with them.

    Parameters
    ----------
    db:
        The shared :class:`~hybrid_kb.kb.database.KBDatabase`.
    vector_store:
        Any :class:`~hybrid_kb.kb.vector_store.VectorStore`.
    embedder:
        The embedding collaborator (``embed_documents``).
    default_namespace:
        Namespace for documents whose frontmatter names none.
    """

    def __init__(
        self,
        db: "KBDatabase",
        vector_store: "VectorStore",
        embedder: "Embedder",
        default_namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self._db = db
        self._vector_store = vector_store
        self._embedder = embedder
        self._default_namespace = default_namespace

    # ------------------------------------------------------------------
    # Index one document
    # ------------------------------------------------------------------

    def index_parsed_document(
        self,
        parsed: ParsedDocument,
        path: str,
        stat: Optional[FileStat] = None,
    ) -> IndexResult:
        """
        Index (or re-index) *parsed*, stored under *path*.

        Raises
        ------
        sqlite3.IntegrityError
            If the relational write violates a constraint (e.g. an explicit
            id that already belongs to a document at another path collides
            with this path).  Nothing is committed in that case.
        """
        if stat is None:
            now_ms = time.time() * 1000
            stat = FileStat(mtime_ms=now_ms, birthtime_ms=now_ms)

        frontmatter = parsed.frontmatter or {}
        explicit_id = frontmatter.get("id")
        existing_id = self._db.get_document_id_by_path(path)
        doc_id = str(explicit_id) if explicit_id else (existing_id or str(uuid.uuid4()))
        # An explicit id reassigned on a known path replaces the old document
        replaced_doc_id = existing_id if existing_id and existing_id != doc_id else None

        namespace = str(frontmatter.get("namespace") or self._default_namespace)
        aliases = _as_str_list(frontmatter.get("aliases"))
        tags = sorted(set(_as_str_list(parsed.tags)))

        previous = self._db.get_block_hashes(doc_id)
        available = {h: list(ids) for h, ids in previous.items()}
        previous_ids = {bid for ids in previous.values() for bid in ids}
        used_ids: set[str] = set()
        to_embed: list[tuple[str, str]] = []
        blocks: list[BlockRecord] = []
        reused = 0

        def _reconcile(text: str, suggested_id: Optional[str]) -> str:
            nonlocal reused
            block_hash = compute_hash(text)
            candidates = available.get(block_hash)
            block_id = candidates.pop(0) if candidates else None
            if block_id is not None:
                reused += 1
                if not self._vector_store.has(block_id):
                    # Reused block whose vector never made it into the store
                    to_embed.append((block_id, text))
            else:
                if self._suggested_id_is_free(suggested_id, used_ids, previous_ids):
                    block_id = suggested_id
                else:
                    block_id = str(uuid.uuid4())
                to_embed.append((block_id, text))
            used_ids.add(block_id)
            return block_id

        for block in parsed.blocks:
            block_id = _reconcile(block.text, block.id)
            blocks.append(BlockRecord(
                id=block_id,
                doc_id=doc_id,
                kind=_enum_value(block.kind),
                heading_path=json.dumps(list(block.heading_path or [])),
                start_offset=int(block.start_offset),
                end_offset=int(block.end_offset),
                text=block.text,
                block_hash=compute_hash(block.text),
            ))

        meta_text = metadata_block_text(path, parsed.title)
        blocks.append(BlockRecord(
            id=_reconcile(meta_text, None),
            doc_id=doc_id,
            kind=BlockKind.METADATA.value,
            heading_path="[]",
            start_offset=0,
            end_offset=0,
            text=meta_text,
            block_hash=compute_hash(meta_text),
        ))

        content_hash = compute_hash(json.dumps([b.text for b in parsed.blocks]))

        # Vectors first, relational rows second
        embedded, embedding_failed = self._embed_and_upsert(to_embed, doc_id, path)

        link_records = self._build_links(parsed.links, blocks, doc_id, path)

        replaced_block_ids: list[str] = []
        with self._db.transaction():
            if replaced_doc_id is not None:
                replaced_block_ids = self._db.delete_document(path)
            self._db.upsert_document(DocumentRecord(
                id=doc_id,
                path=path,
                title=parsed.title,
                aliases=aliases,
                tags=tags,
                created_at=int(stat.birthtime_ms),
                updated_at=int(stat.mtime_ms),
                content_hash=content_hash,
                namespace=namespace,
            ))
            self._db.replace_blocks(doc_id, blocks)
            self._db.insert_links(link_records)
            self._db.replace_tags(doc_id, tags)
            self._db.resolve_dangling_links(
                doc_id, [parsed.title, *aliases, os.path.splitext(os.path.basename(path))[0]],
            )

        # Vectors of blocks that did not survive this version
        new_ids = {b.id for b in blocks}
        stale = [bid for bid in previous_ids | set(replaced_block_ids)
                 if bid not in new_ids]
        if stale:
            self._delete_vectors(stale, path)

        result = IndexResult(
            doc_id=doc_id,
            path=path,
            block_ids=[b.id for b in blocks],
            embedded=embedded,
            reused=reused,
            embedding_failed=embedding_failed,
        )
        logger.info(
            "Indexed %s (%s): %d blocks, %d embedded, %d reused",
            path, doc_id, len(blocks), embedded, reused,
        )
        return result

    def index_many(
        self,
        items: Iterable[tuple[ParsedDocument, str, Optional[FileStat]]],
    ) -> dict:
        """
        Index documents one after another.

        A failing document is logged and counted; the rest still run.

        Returns
        -------
        dict
            Keys: indexed, failed, embedded, reused.
        """
        summary = {"indexed": 0, "failed": 0, "embedded": 0, "reused": 0}
        for parsed, path, stat in items:
            try:
                result = self.index_parsed_document(parsed, path, stat)
            except Exception as exc:
                logger.error("Failed to index %s: %s", path, exc)
                summary["failed"] += 1
                continue
            summary["indexed"] += 1
            summary["embedded"] += result.embedded
            summary["reused"] += result.reused
        return summary

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_document(self, path: str, delete_vectors: bool = True) -> list[str]:
        """
        Remove the document at *path* and everything hanging off it.

        Blocks, links, tags and FTS entries go with the relational cascade.
        The vector store is a separate system: its entries are removed here
        unless *delete_vectors* is False.

        Returns the deleted block ids.
        """
        block_ids = self._db.delete_document(path)
        if not block_ids:
            logger.debug("Delete requested for unknown document: %s", path)
            return []
        if delete_vectors:
            self._delete_vectors(block_ids, path)
        logger.info("Removed document from index: %s (%d blocks)", path, len(block_ids))
        return block_ids

    # ------------------------------------------------------------------
    # Vector rebuild
    # ------------------------------------------------------------------

    def rebuild_vectors(
        self,
        batch_size: int = REBUILD_BATCH_SIZE,
        force: bool = False,
        show_progress: bool = False,
    ) -> dict:
        """
        Regenerate the vector store from the block texts in the database.

        Only blocks without a vector are embedded unless *force* is set.
        Vectors whose block no longer exists are removed.

        Returns
        -------
        dict
            Keys: total_blocks, embedded, skipped, errors, pruned.
        """
        total = self._db.count_blocks()
        embedded = skipped = errors = 0
        live_ids: set[str] = set()

        progress = tqdm(
            total=total, desc="Embedding blocks", unit="block", disable=not show_progress,
        )
        try:
            for batch in self._db.iter_blocks(batch_size):
                live_ids.update(bid for bid, _, _, _ in batch)
                pending = [
                    row for row in batch if force or not self._vector_store.has(row[0])
                ]
                skipped += len(batch) - len(pending)
                if pending:
                    try:
                        vectors = self._embedder.embed_documents([text for _, _, _, text in pending])
                        self._vector_store.upsert([
                            VectorRecord(id=bid, vector=vec, metadata={"doc_id": doc_id, "path": path})
                            for (bid, doc_id, path, _), vec in zip(pending, vectors)
                        ])
                        embedded += len(pending)
                    except Exception as exc:
                        logger.warning("Skipping rebuild batch of %d blocks: %s", len(pending), exc)
                        errors += len(pending)
                progress.update(len(batch))
                progress.set_postfix({"embedded": embedded})
        finally:
            progress.close()

        orphans = [vid for vid in self._vector_store.ids() if vid not in live_ids]
        if orphans:
            self._delete_vectors(orphans, "<rebuild>")
        self._vector_store.flush()

        summary = {
            "total_blocks": total,
            "embedded": embedded,
            "skipped": skipped,
            "errors": errors,
            "pruned": len(orphans),
        }
        logger.info(
            "Vector rebuild complete: %d blocks, %d embedded, %d skipped, %d errors, %d pruned",
            total, embedded, skipped, errors, len(orphans),
        )
        return summary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _suggested_id_is_free(
        self, suggested_id: Optional[str], used_ids: set[str], previous_ids: set[str],
    ) -> bool:
        """A parser-supplied id is kept only if no block anywhere owns it."""
        if not suggested_id or suggested_id in used_ids or suggested_id in previous_ids:
            return False
        owner = self._db.get_block_doc_id(suggested_id)
        if owner is not None:
            logger.debug("Block id %s already belongs to document %s; minting a new one",
                         suggested_id, owner)
            return False
        return True

    def _embed_and_upsert(
        self, to_embed: list[tuple[str, str]], doc_id: str, path: str,
    ) -> tuple[int, bool]:
        """Embed queued texts in one call; returns (count written, failed)."""
        if not to_embed:
            return 0, False
        try:
            vectors = self._embedder.embed_documents([text for _, text in to_embed])
        except Exception as exc:
            logger.error(
                "Failed to generate embeddings for %s (%d blocks): %s; "
                "blocks stay lexical-only until re-indexed",
                path, len(to_embed), exc,
            )
            return 0, True

        records = [
            VectorRecord(id=bid, vector=vec, metadata={"doc_id": doc_id, "path": path})
            for (bid, _), vec in zip(to_embed, vectors)
        ]
        try:
            self._vector_store.upsert(records)
        except Exception as exc:
            logger.error("Vector upsert failed for %s (%d vectors): %s", path, len(records), exc)
            return 0, True
        return len(records), False

    def _delete_vectors(self, ids: list[str], path: str) -> None:
        try:
            self._vector_store.delete(ids)
        except Exception as exc:
            logger.warning("Failed to delete %d vectors for %s: %s", len(ids), path, exc)

    def _build_links(
        self,
        links: list[ParsedLink],
        blocks: list[BlockRecord],
        doc_id: str,
        path: str,
    ) -> list[LinkRecord]:
        records: list[LinkRecord] = []
        content_blocks = len(blocks) - 1  # last block is the metadata block
        for link in links:
            if not 0 <= link.block_index < content_blocks:
                logger.warning(
                    "Dropping link to %r in %s: block index %d out of range",
                    link.target, path, link.block_index,
                )
                continue
            ref_kind = _enum_value(link.type)
            records.append(LinkRecord(
                src_block_id=blocks[link.block_index].id,
                dst_ref=link.target,
                resolved_doc_id=self._resolve_link(link.target, ref_kind, doc_id),
                ref_kind=ref_kind,
            ))
        return records

    def _resolve_link(self, target: str, ref_kind: str, doc_id: str) -> Optional[str]:
        if ref_kind == RefKind.URL.value:
            return None
        name = normalize_ref(target)
        if not name:
            # "#Heading" refers to the current document
            return doc_id if target.strip().startswith("#") else None
        matches = self._db.find_document_ids_by_ref(name)
        return matches[0] if matches else None
