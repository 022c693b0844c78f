"""Command-line entry point for ingesting and searching wellness research.

Usage:
    wellness-rag ingest data/documents.json [--force]
    wellness-rag search "Does meditation reduce anxiety?" --limit 5
    wellness-rag search "Is tai chi safe?" --published-after 2015-01-01
    wellness-rag reembed [--document-id pubmed-001]
    wellness-rag reset
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import json
import logging
import sys
from pathlib import Path

from pydantic import BaseModel, ValidationError
from rich.logging import RichHandler

from src.agents.research_agent import GenerationError
from src.config import settings
from src.database import async_session, create_tables, engine
from src.models.research import DateRange, SearchFilters, SearchRequest
from src.services.chunking import ChunkingConfigError
from src.services.ingest_service import (
    ingest_documents,
    parse_documents,
    reembed_chunks,
    reset_corpus,
)
from src.services.rag_service import ensure_collection
from src.services.search_service import search

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s - %(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(rich_tracebacks=True, markup=False)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    # Our app loggers: show DEBUG when debug=True, keep third-party libs at INFO
    if settings.debug:
        for name in ("src.agents", "src.services"):
            logging.getLogger(name).setLevel(logging.DEBUG)


def _print_json(model: BaseModel) -> None:
    print(model.model_dump_json(indent=2))


async def _ingest(args: argparse.Namespace) -> int:
    records = json.loads(args.file.read_text(encoding="utf-8"))
    if isinstance(records, dict):
        records = [records]
    documents, rejected = parse_documents(records)
    logger.info("Loaded %d documents (%d rejected)", len(documents), len(rejected))

    await create_tables()
    await ensure_collection()
    async with async_session() as session:
        result = await ingest_documents(
            session, documents, force_reingest=args.force
        )
    result.errors[:0] = rejected
    result.success = result.success and not rejected
    _print_json(result)
    return 0 if result.success else 1


async def _search(args: argparse.Namespace) -> int:
    date_range = None
    if args.published_after or args.published_before:
        date_range = DateRange(
            start=args.published_after or datetime.date.min,
            end=args.published_before or datetime.date.max,
        )
    filters = None
    if (
        args.study_type
        or date_range
        or args.min_sample_size
        or args.exclude_conflicts
    ):
        filters = SearchFilters(
            study_types=args.study_type,
            date_range=date_range,
            min_sample_size=args.min_sample_size,
            exclude_conflicts=args.exclude_conflicts,
        )
    request = SearchRequest(query=args.query, limit=args.limit, filters=filters)
    async with async_session() as session:
        result = await search(session, request)
    _print_json(result)
    return 0


async def _reembed(args: argparse.Namespace) -> int:
    result = await reembed_chunks(document_id=args.document_id)
    _print_json(result)
    return 0 if result.failed == 0 else 1


async def _reset(args: argparse.Namespace) -> int:
    await create_tables()
    async with async_session() as session:
        removed = await reset_corpus(session)
    print(f"Removed {removed} documents and all chunks.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wellness-rag", description="Evidence-graded search over wellness research"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser("ingest", help="Ingest documents from a JSON file")
    ingest.add_argument("file", type=Path, help="JSON file with one document or a list")
    ingest.add_argument(
        "--force", action="store_true", help="Re-ingest documents already stored"
    )
    ingest.set_defaults(handler=_ingest)

    search_cmd = commands.add_parser("search", help="Ask a research question")
    search_cmd.add_argument("query", type=str)
    search_cmd.add_argument("--limit", type=int, default=settings.search_default_limit)
    search_cmd.add_argument(
        "--study-type", action="append", help="Restrict to a study type (repeatable)"
    )
    search_cmd.add_argument(
        "--published-after",
        type=datetime.date.fromisoformat,
        default=None,
        help="Earliest publication date (YYYY-MM-DD, inclusive)",
    )
    search_cmd.add_argument(
        "--published-before",
        type=datetime.date.fromisoformat,
        default=None,
        help="Latest publication date (YYYY-MM-DD, inclusive)",
    )
    search_cmd.add_argument("--min-sample-size", type=int, default=None)
    search_cmd.add_argument("--exclude-conflicts", action="store_true")
    search_cmd.set_defaults(handler=_search)

    reembed = commands.add_parser("reembed", help="Regenerate chunk embeddings")
    reembed.add_argument("--document-id", type=str, default=None)
    reembed.set_defaults(handler=_reembed)

    reset = commands.add_parser("reset", help="Delete all documents and chunks")
    reset.set_defaults(handler=_reset)

    return parser


async def run(args: argparse.Namespace) -> int:
    try:
        return await args.handler(args)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    args = build_parser().parse_args(argv)

    if args.command == "ingest" and not args.file.exists():
        logger.error("File not found: %s", args.file)
        sys.exit(1)

    try:
        exit_code = asyncio.run(run(args))
    except GenerationError as e:
        logger.error("Answer generation failed [%s]: %s", e.code, e.message)
        exit_code = 1
    except (ValidationError, ChunkingConfigError) as e:
        logger.error("Invalid input: %s", e)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
