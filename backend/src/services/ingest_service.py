"""Ingestion pipeline: validate, store, chunk, embed and index research documents."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.models.research import Document, IngestResult, ReembedResult
from src.services.chunking import ChunkingOptions, chunk_document
from src.services.document_service import (
    delete_all_documents,
    document_exists,
    upsert_document,
)
from src.services.rag_service import (
    delete_document_chunks,
    embed_batch,
    reset_collection,
    scroll_chunks,
    update_chunk_vectors,
    upsert_chunks,
)

logger = logging.getLogger(__name__)


def default_chunking_options() -> ChunkingOptions:
    return ChunkingOptions(
        max_chunk_size=settings.chunk_max_size,
        overlap_size=settings.chunk_overlap,
    )


def parse_documents(records: Iterable[dict]) -> tuple[list[Document], list[str]]:
    """Validate raw records into Documents.

    Returns the valid documents and one error string per rejected record.
    """
    documents: list[Document] = []
    errors: list[str] = []
    for position, record in enumerate(records):
        try:
            documents.append(Document.model_validate(record))
        except ValidationError as e:
            record_id = record.get("id") or f"#{position}"
            logger.warning("Rejected document %s: %s", record_id, e)
            errors.append(f"{record_id}: invalid document ({e.error_count()} errors)")
    return documents, errors


async def ingest_document(
    session: AsyncSession,
    document: Document,
    options: ChunkingOptions | None = None,
) -> int:
    """Store a document and index its chunks. Returns the number of chunks."""
    chunks = chunk_document(document, options or default_chunking_options())
    vectors = await embed_batch([c.content for c in chunks])

    # Re-chunking may produce fewer chunks than before; clear the old set first.
    await delete_document_chunks(document.id)
    await upsert_chunks(chunks, vectors, document)
    # The row is committed only once its chunks are indexed.
    await upsert_document(session, document)

    logger.info("Document %s ingested: %d chunks", document.id, len(chunks))
    return len(chunks)


async def ingest_documents(
    session: AsyncSession,
    documents: Sequence[Document],
    *,
    force_reingest: bool = False,
    options: ChunkingOptions | None = None,
) -> IngestResult:
    """Ingest several documents, skipping stored ones unless forced.

    A failure on one document is logged and recorded; the rest still run.
    """
    start = time.perf_counter()
    processed = skipped = chunks_created = 0
    errors: list[str] = []

    for document in documents:
        if not force_reingest and await document_exists(session, document.id):
            logger.info("Skipping %s (already ingested)", document.id)
            skipped += 1
            continue
        try:
            chunks_created += await ingest_document(session, document, options)
        except Exception as e:
            logger.exception("Failed to ingest document %s", document.id)
            await session.rollback()
            errors.append(f"{document.id}: {e}")
            continue
        processed += 1

    duration_ms = int((time.perf_counter() - start) * 1000)
    logger.info(
        "Ingestion completed: processed=%d skipped=%d chunks=%d errors=%d "
        "duration=%dms",
        processed,
        skipped,
        chunks_created,
        len(errors),
        duration_ms,
    )
    return IngestResult(
        success=not errors,
        documents_processed=processed,
        documents_skipped=skipped,
        chunks_created=chunks_created,
        embeddings_generated=chunks_created,
        errors=errors,
        duration_ms=duration_ms,
    )


async def reembed_chunks(
    document_id: str | None = None, batch_size: int | None = None
) -> ReembedResult:
    """Regenerate embeddings for stored chunks in batches.

    A failed batch is logged and counted; later batches still run.
    """
    batch_size = batch_size or settings.reembed_batch_size
    chunks = await scroll_chunks(document_id)
    if not chunks:
        logger.info("No chunks found that need re-embedding")
        return ReembedResult(total_chunks=0, processed=0, failed=0)

    logger.info("Found %d chunks to re-embed", len(chunks))
    total_batches = -(-len(chunks) // batch_size)
    processed = failed = 0

    for batch_number, offset in enumerate(range(0, len(chunks), batch_size), start=1):
        batch = chunks[offset : offset + batch_size]
        try:
            vectors = await embed_batch([c.content for c in batch])
            await update_chunk_vectors(batch, vectors)
        except Exception:
            logger.exception(
                "Re-embedding batch %d/%d failed", batch_number, total_batches
            )
            failed += len(batch)
        else:
            processed += len(batch)
            logger.info("Processed batch %d/%d", batch_number, total_batches)

        # Provider rate limits.
        if batch_number < total_batches and settings.reembed_batch_delay_seconds:
            await asyncio.sleep(settings.reembed_batch_delay_seconds)

    if failed:
        logger.warning("Some chunks failed to re-embed: %d", failed)
    return ReembedResult(total_chunks=len(chunks), processed=processed, failed=failed)


async def reset_corpus(session: AsyncSession) -> int:
    """Delete every document and chunk. Returns the number of documents removed."""
    removed = await delete_all_documents(session)
    await reset_collection()
    logger.info("Corpus reset: %d documents removed", removed)
    return removed
