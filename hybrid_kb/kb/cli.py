"""
`hybridkb` command line.

Inspect and maintain an existing knowledge base.  Parsing documents is
the host application's job, so there is no ``index`` command here.

Commands
--------
hybridkb status                          -- row and vector counts
hybridkb search "<query>"                -- hybrid search
hybridkb search "<query>" --top-k 5 --namespace notes --citations
hybridkb trace <trace_id>                -- show a stored query trace
hybridkb backlinks <doc_id>              -- links that resolve to a document
hybridkb delete <path>                   -- remove a document
hybridkb rebuild                         -- embed blocks that have no vector
hybridkb rebuild --force                 -- re-embed every block

Every command accepts ``--config PATH`` to point at a .hybridkb.yaml.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Optional

from ..config import Config
from ..logs import setup_logger
from .models import QueryArgs, QueryScope
from .service import KnowledgeBaseService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open_service(args: argparse.Namespace) -> KnowledgeBaseService:
    try:
        cfg = Config.load(args.config)
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    if args.verbose:
        setup_logger(cfg.LOG_DIR)
    return KnowledgeBaseService.from_config(cfg)


def _preview(text: str, limit: int = 3) -> str:
    lines = text.splitlines() or [""]
    preview = "\n         ".join(lines[:limit])
    if len(lines) > limit:
        preview += f"\n         ... ({len(lines) - limit} more lines)"
    return preview


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_status(args: argparse.Namespace) -> None:
    """Print relational and vector counts."""
    with _open_service(args) as kb:
        stats = kb.get_stats()
    print("\nKnowledge Base Status")
    print("=" * 40)
    for k, v in stats.items():
        print(f"  {k:<20} {v}")
    print()


def _cmd_search(args: argparse.Namespace) -> None:
    """Hybrid search over the knowledge base."""
    query_args = QueryArgs(
        query=args.query,
        scope=QueryScope(namespace=args.namespace),
        top_k=args.top_k,
        citations=args.citations,
    )
    with _open_service(args) as kb:
        t0 = time.perf_counter()
        result = kb.query_hybrid(query_args)
        elapsed_ms = (time.perf_counter() - t0) * 1000

    if not result.contexts:
        print(f"No results found for: {args.query!r}")
        print(f"  Trace: {result.trace_id}")
        return

    print(f"\nSearch results for: {args.query!r}  [{len(result.contexts)} result(s)]")
    print("-" * 70)
    for i, ctx in enumerate(result.contexts, 1):
        title = ctx.metadata.get("title") or ""
        path = ctx.metadata.get("path") or ""
        print(f"\n  [{i}] {title}  ({ctx.source})")
        print(f"       File   : {path}")
        print(f"       Block  : {ctx.block_id}")
        print(f"       Score  : {ctx.score:.4f}")
        if "citation" in ctx.metadata:
            print(f"       Cite   : {ctx.metadata['citation']}")
        print(f"       Text   :\n         {_preview(ctx.text)}")

    print(f"\n  Search time: {elapsed_ms:.1f}ms")
    print(f"  Trace: {result.trace_id}")


def _cmd_trace(args: argparse.Namespace) -> None:
    """Print one stored query trace."""
    with _open_service(args) as kb:
        trace = kb.get_trace(args.trace_id)
    if trace is None:
        print(f"Trace not found: {args.trace_id}", file=sys.stderr)
        sys.exit(1)
    print(f"\nTrace {trace.id}")
    print("=" * 40)
    print(f"  {'query':<14} {trace.query!r}")
    print(f"  {'latency':<14} {trace.lat_ms}ms")
    print(f"  {'fts hits':<14} {len(trace.fts_hits)}")
    print(f"  {'vector hits':<14} {len(trace.vector_hits)}")
    print(f"  {'final':<14} {len(trace.final)}")
    for block_id in trace.final:
        print(f"    - {block_id}")
    print()


def _cmd_backlinks(args: argparse.Namespace) -> None:
    """List links that resolve to a document."""
    with _open_service(args) as kb:
        links = kb.get_backlinks(args.doc_id)
    if not links:
        print(f"  (no backlinks for: {args.doc_id})")
        return
    print(f"\nBacklinks to {args.doc_id}  [{len(links)} link(s)]")
    print("-" * 60)
    for link in links:
        print(f"  {link.ref_kind:<12}  {link.dst_ref:<30}  from block {link.src_block_id}")


def _cmd_delete(args: argparse.Namespace) -> None:
    """Remove a document and its vectors."""
    with _open_service(args) as kb:
        block_ids = kb.delete_document(args.path, delete_vectors=not args.keep_vectors)
    if not block_ids:
        print(f"No document indexed at: {args.path}")
        return
    print(f"Deleted {args.path} ({len(block_ids)} blocks)")


def _cmd_rebuild(args: argparse.Namespace) -> None:
    """Regenerate the vector store from stored block texts."""
    with _open_service(args) as kb:
        t0 = time.perf_counter()
        summary = kb.rebuild_vectors(
            batch_size=args.batch_size, force=args.force, show_progress=True,
        )
        elapsed = time.perf_counter() - t0

    print(
        f"\nRebuild complete:\n"
        f"  Total blocks  : {summary['total_blocks']}\n"
        f"  Embedded      : {summary['embedded']}\n"
        f"  Skipped       : {summary['skipped']}\n"
        f"  Errors        : {summary['errors']}\n"
        f"  Pruned        : {summary['pruned']}\n"
        f"  Time          : {elapsed:.1f}s"
    )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `hybridkb` argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None,
                        help="Path to a .hybridkb.yaml config file")
    common.add_argument("-v", "--verbose", action="store_true",
                        help="Write a debug log under the configured log_dir")

    parser = argparse.ArgumentParser(
        prog="hybridkb",
        description="Hybrid knowledge base: lexical + vector retrieval over notes",
    )
    subparsers = parser.add_subparsers(dest="kb_cmd", metavar="COMMAND")
    subparsers.required = True

    # --- status ---
    status_p = subparsers.add_parser("status", parents=[common],
                                     help="Show row and vector counts")
    status_p.set_defaults(func=_cmd_status)

    # --- search ---
    search_p = subparsers.add_parser("search", parents=[common],
                                     help="Hybrid search over indexed blocks")
    search_p.add_argument("query", help="Search query")
    search_p.add_argument(
        "--top-k", dest="top_k", type=int, default=None,
        help="Number of results (default: config default_top_k)",
    )
    search_p.add_argument("--namespace", default=None,
                          help="Restrict results to one namespace")
    search_p.add_argument("--citations", action="store_true",
                          help="Show path > heading citations")
    search_p.set_defaults(func=_cmd_search)

    # --- trace ---
    trace_p = subparsers.add_parser("trace", parents=[common],
                                    help="Show a stored query trace")
    trace_p.add_argument("trace_id", help="Trace id printed by `search`")
    trace_p.set_defaults(func=_cmd_trace)

    # --- backlinks ---
    backlinks_p = subparsers.add_parser("backlinks", parents=[common],
                                        help="List links resolving to a document")
    backlinks_p.add_argument("doc_id", help="Target document id")
    backlinks_p.set_defaults(func=_cmd_backlinks)

    # --- delete ---
    delete_p = subparsers.add_parser("delete", parents=[common],
                                     help="Remove a document from the index")
    delete_p.add_argument("path", help="Document path as indexed")
    delete_p.add_argument("--keep-vectors", dest="keep_vectors", action="store_true",
                          help="Leave the document's vectors in the vector store")
    delete_p.set_defaults(func=_cmd_delete)

    # --- rebuild ---
    rebuild_p = subparsers.add_parser("rebuild", parents=[common],
                                      help="Rebuild the vector store from block texts")
    rebuild_p.add_argument("--force", action="store_true",
                           help="Re-embed blocks that already have a vector")
    rebuild_p.add_argument("--batch-size", dest="batch_size", type=int, default=100,
                           help="Blocks per embedding request (default: 100)")
    rebuild_p.set_defaults(func=_cmd_rebuild)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the `hybridkb` command.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv.
    """
    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.WARNING,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    parser = _build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
