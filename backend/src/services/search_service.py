"""Search pipeline: retrieve passages, answer the query, grade the evidence."""

from __future__ import annotations

import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from src.agents.research_agent import assess_evidence, generate_answer
from src.config import settings
from src.models.research import (
    Citation,
    Document,
    ModelEvidenceAssessment,
    QueryResult,
    RetrievalResult,
    SearchMetadata,
    SearchRequest,
)
from src.services.document_service import get_documents_by_ids
from src.services.grading import grade_evidence
from src.services.rag_service import embed_text, search_chunks

logger = logging.getLogger(__name__)

NO_RESULTS_ANSWER = (
    "No relevant research was found for this query. "
    "Try rephrasing the question or relaxing the search filters."
)
CITATION_PREVIEW_CHARS = 100


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def build_context(
    results: list[RetrievalResult], documents: dict[str, Document]
) -> str:
    """Join each passage with its document title, labelled by citation position."""
    return "\n\n".join(
        f"[{r.source_id}] {documents[r.chunk.document_id].title}\n{r.chunk.content}"
        for r in results
    )


def build_citations(results: list[RetrievalResult]) -> list[Citation]:
    """One citation per retrieved chunk, numbered from 1 in retrieval order."""
    return [
        Citation(
            id=f"citation-{index}",
            document_id=r.chunk.document_id,
            chunk_id=r.chunk.id,
            text=r.chunk.content[:CITATION_PREVIEW_CHARS] + "...",
            position=index + 1,
        )
        for index, r in enumerate(results)
    ]


def _drop_orphans(
    results: list[RetrievalResult], documents: dict[str, Document]
) -> list[RetrievalResult]:
    """Keep chunks whose parent document still exists, renumbering positions."""
    kept = [r for r in results if r.chunk.document_id in documents]
    if len(kept) != len(results):
        logger.warning(
            "Dropped %d retrieved chunks with no stored document",
            len(results) - len(kept),
        )
    return [
        r.model_copy(update={"source_id": index + 1}) for index, r in enumerate(kept)
    ]


async def search(session: AsyncSession, request: SearchRequest) -> QueryResult:
    """Run the full retrieval-augmented search for a request."""
    logger.info(
        "=== Search request: query=%r limit=%d filters=%s ===",
        request.query,
        request.limit,
        request.filters,
    )
    start = time.perf_counter()

    try:
        step = time.perf_counter()
        query_vector = await embed_text(request.query)
        embedding_ms = _elapsed_ms(step)

        step = time.perf_counter()
        results = await search_chunks(
            query_vector,
            filters=request.filters,
            limit=request.limit,
            score_threshold=settings.search_match_threshold,
        )
        documents = await get_documents_by_ids(
            session, (r.chunk.document_id for r in results)
        )
        documents_by_id = {doc.id: doc for doc in documents}
        results = _drop_orphans(results, documents_by_id)
        retrieval_ms = _elapsed_ms(step)

        step = time.perf_counter()
        model_assessment: ModelEvidenceAssessment | None = None
        if results:
            context = build_context(results, documents_by_id)
            answer = await generate_answer(request.query, context)
            if settings.model_grading_enabled:
                model_assessment = await assess_evidence(documents, answer)
        else:
            answer = NO_RESULTS_ANSWER
        generation_ms = _elapsed_ms(step)
    except Exception:
        logger.exception("Search failed for query %r", request.query)
        raise

    evidence_grade = grade_evidence(documents)
    duration_ms = _elapsed_ms(start)

    logger.info(
        "Search completed: query=%r results=%d documents=%d strength=%s "
        "score=%d duration=%dms",
        request.query,
        len(results),
        len(documents),
        evidence_grade.strength,
        evidence_grade.score,
        duration_ms,
    )
    if (
        model_assessment is not None
        and model_assessment.strength != evidence_grade.strength
    ):
        logger.info(
            "Model assessment disagrees with formula grade: model=%s formula=%s",
            model_assessment.strength,
            evidence_grade.strength,
        )

    return QueryResult(
        answer=answer,
        citations=build_citations(results),
        evidence_strength=evidence_grade.strength,
        evidence_grade=evidence_grade,
        model_assessment=model_assessment,
        documents=documents,
        chunks=results,
        search_metadata=SearchMetadata(
            query=request.query,
            total_results=len(results),
            search_time_ms=duration_ms,
            embedding_time_ms=embedding_ms,
            retrieval_time_ms=retrieval_ms,
            generation_time_ms=generation_ms,
        ),
    )
