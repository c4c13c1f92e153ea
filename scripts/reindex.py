#!/usr/bin/env python
"""Index a shop content export for the RAG pipeline.

Usage:
    python scripts/reindex.py --content export.json                # All kinds
    python scripts/reindex.py --content export.json --kind product # One kind
    python scripts/reindex.py --content export.json --verbose      # Show detailed progress
"""
import argparse
import asyncio
import signal
import sys
from pathlib import Path
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from shopassist import config
from shopassist.container import build_assistant
from shopassist.content import SUPPORTED_KINDS, JsonContentStore
from shopassist.errors import QuotaExceededError
from shopassist.log import configure_logging
from shopassist.models import IndexReport
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, label: str):
        """Update progress."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {label[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, report: IndexReport):
        """Finish progress reporting."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()
        failed_items = len({(e.content_type, e.content_id) for e in report.errors})

        print(f"{'=' * 60}")
        print("  Indexing Complete!" if not report.cancelled else "  Indexing Cancelled")
        print(f"{'=' * 60}\n")
        print(f"  📦 Items scanned:        {report.total_items}")
        print(f"  📁 Items processed:      {report.total_processed}")
        print(f"  ❌ Items failed:         {failed_items}")
        print(f"  📝 Chunks created:       {report.chunks_created}")
        print(f"  ♻️  Chunks unchanged:     {report.chunks_skipped}")
        print(f"  🗑️  Chunks retired:       {report.chunks_deactivated}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if report.chunks_created > 0 and elapsed_seconds > 0:
            rate = report.chunks_created / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if report.errors:
            print(f"⚠️  Warning: {failed_items} item(s) failed to index.")
            for error in report.errors[:10]:
                where = f"{error.content_type}:{error.content_id}"
                if error.chunk_index is not None:
                    where += f"#{error.chunk_index}"
                print(f"   {where} {error.error_type}: {error.message}")
            print("   Rerun to retry; unchanged chunks are not embedded again.\n")


def merge_reports(total: IndexReport, part: IndexReport) -> None:
    total.total_items += part.total_items
    total.total_processed += part.total_processed
    total.chunks_created += part.chunks_created
    total.chunks_skipped += part.chunks_skipped
    total.chunks_deactivated += part.chunks_deactivated
    total.errors.extend(part.errors)
    total.cancelled = total.cancelled or part.cancelled


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Index a shop content export for the RAG pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py --content export.json
  python scripts/reindex.py --content export.json --kind product --kind page
  python scripts/reindex.py --content export.json --chunk-size 600 --chunk-overlap 0.2
        """,
    )

    parser.add_argument(
        "--content",
        type=Path,
        required=True,
        help="JSON content export (list of records or object keyed by kind)",
    )

    parser.add_argument(
        "--kind",
        action="append",
        choices=SUPPORTED_KINDS,
        help="Content kind to index (repeatable, default: all)",
    )

    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Chunk size in characters (default: per content type)",
    )

    parser.add_argument(
        "--chunk-overlap",
        type=float,
        default=None,
        help="Overlap, fraction below 1 or characters (default: per content type)",
    )

    parser.add_argument(
        "--batch-size",
        type=int,
        default=50,
        help="Items scanned and indexed per batch (default: 50)",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()

    if (args.chunk_size is None) != (args.chunk_overlap is None):
        parser.error("--chunk-size and --chunk-overlap must be given together")

    configure_logging(level="DEBUG" if args.verbose else "WARNING", fmt="console")
    progress = ProgressReporter(verbose=args.verbose)
    cancel_event = asyncio.Event()
    # Ctrl-C stops submitting items; batches already running finish cleanly
    asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel_event.set)

    try:
        print("\n📋 Configuration:")
        print(f"   Content export:   {args.content}")
        print(f"   Database:         {config.DB_PATH}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {args.chunk_size or 'per content type'}")
        print(f"   Chunk overlap:    {args.chunk_overlap if args.chunk_overlap is not None else 'per content type'}")

        if not args.content.exists():
            raise FileNotFoundError(f"Content export not found: {args.content}")

        assistant = await build_assistant(content_store=JsonContentStore(args.content))
        index_config = (
            {"chunk_size": args.chunk_size, "chunk_overlap": args.chunk_overlap}
            if args.chunk_size is not None
            else None
        )

        kinds = args.kind or list(SUPPORTED_KINDS)
        batches = []
        for kind in kinds:
            async for batch in assistant.scanner.iter_batches(kind, args.batch_size):
                batches.append((kind, batch))

        progress.start("Indexing Content")
        total_batches = len(batches)
        report = IndexReport()

        for current, (kind, batch) in enumerate(batches, 1):
            if cancel_event.is_set():
                report.cancelled = True
                break
            part = await assistant.indexer.index_content(
                batch, index_config=index_config, cancel_event=cancel_event
            )
            merge_reports(report, part)
            progress.update(current, total_batches, f"{kind} ({len(batch)} items)")

        progress.finish(report)

        if report.cancelled:
            print("\n⚠️  Indexing cancelled by user. Rerun to resume.\n")
            sys.exit(1)

        if report.has_errors:
            sys.exit(1)

    except QuotaExceededError as e:
        print(f"\n❌ License limit reached: {e}\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\n❌ Error: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
