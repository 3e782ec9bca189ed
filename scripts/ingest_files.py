#!/usr/bin/env python
"""Ingest local files into the document index.

Usage:
    python scripts/ingest_files.py docs/*.pdf notes.md      # Ingest files
    python scripts/ingest_files.py --wipe docs/             # Clear the index first
    python scripts/ingest_files.py --verbose docs/          # Show detailed progress
"""
import argparse
import asyncio
import sys
import uuid
from pathlib import Path
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from app import config
from app.errors import RAGError
from app.logs import configure_logging
from app.rag.extract import PDF_MIME_TYPE, TEXT_MIME_TYPES, extract_text, guess_mime_type
from app.services import build_services
import structlog

logger = structlog.get_logger()

WIPE_CANCEL_SECONDS = 3


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print(f"  Ingestion Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Files ingested:  {stats['files_processed']}")
        print(f"  ❌ Files failed:    {stats['files_failed']}")
        print(f"  📝 Chunks indexed:  {stats['chunks_created']}")
        print(f"  ⏱️  Time elapsed:    {elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")

        if stats["files_failed"] > 0:
            print(f"⚠️  Warning: {stats['files_failed']} file(s) failed to ingest.")
            print(f"   Check logs for details.\n")


def is_supported(path: Path) -> bool:
    mime_type = guess_mime_type(path.name)
    return mime_type == PDF_MIME_TYPE or mime_type in TEXT_MIME_TYPES


def collect_files(paths):
    """Expand directories into the files extract_text can read.

    Files named explicitly are kept whatever their type.
    """
    files = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*") if p.is_file() and is_supported(p)))
        elif path.is_file():
            files.append(path)
        else:
            raise FileNotFoundError(f"No such file or directory: {path}")
    return files


async def ingest_file(pipeline, path: Path) -> int:
    mime_type = guess_mime_type(path.name)
    text = extract_text(path.read_bytes(), mime_type)
    result = await pipeline.ingest(text, path.name, str(uuid.uuid4()))
    logger.info(
        "file_ingested",
        path=str(path),
        document_id=result.document_id,
        chunk_count=result.chunk_count,
    )
    return result.chunk_count


async def main():
    parser = argparse.ArgumentParser(
        description="Ingest local files into the document index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest_files.py docs/*.pdf notes.md
  python scripts/ingest_files.py --wipe docs/
  python scripts/ingest_files.py --verbose docs/
        """,
    )

    parser.add_argument("paths", nargs="+", type=Path, help="Files or directories to ingest")

    parser.add_argument(
        "--wipe",
        action="store_true",
        help="Delete every record in the index before ingesting",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output",
    )

    args = parser.parse_args()
    configure_logging()

    progress = ProgressReporter(verbose=args.verbose)
    services = None

    try:
        files = collect_files(args.paths)

        print("\n📋 Configuration:")
        print(f"   Vector backend:   {config.VECTOR_BACKEND}")
        print(f"   Index name:       {config.PINECONE_INDEX_NAME}")
        print(f"   Embedding model:  {config.EMBEDDING_MODEL}")
        print(f"   Chunk size:       {config.CHUNK_SIZE} chars")
        print(f"   Chunk overlap:    {config.CHUNK_OVERLAP} chars")
        print(f"   Files found:      {len(files)}")

        services = build_services()

        if args.wipe:
            print("\n⚠️  Wipe mode: Will delete every record in the index!")
            print(f"   Press Ctrl+C within {WIPE_CANCEL_SECONDS} seconds to cancel...")
            await asyncio.sleep(WIPE_CANCEL_SECONDS)
            await services.gateway.delete_all()

        progress.start("Ingesting Files")

        stats = {"files_processed": 0, "files_failed": 0, "chunks_created": 0}

        for i, path in enumerate(files, 1):
            progress.update(i, len(files), path)
            try:
                stats["chunks_created"] += await ingest_file(services.pipeline, path)
                stats["files_processed"] += 1
            except RAGError as e:
                stats["files_failed"] += 1
                logger.error("file_ingestion_failed", path=str(path), error=str(e))

        progress.finish(stats)

        if stats["files_failed"] > 0:
            sys.exit(1)

    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n\n⚠️  Ingestion cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\n❌ Error: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    finally:
        if services is not None:
            await services.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\n⚠️  Ingestion cancelled by user.\n")
        sys.exit(1)
