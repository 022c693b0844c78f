"""Tests for the search pipeline, with answer generation mocked at the agent."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from src.agents.research_agent import GenerationError
from src.models.research import ModelEvidenceAssessment, SearchFilters, SearchRequest
from src.services.chunking import chunk_document
from src.services.grading import grade_evidence
from src.services.ingest_service import ingest_documents
from src.services.rag_service import upsert_chunks
from src.services.search_service import (
    NO_RESULTS_ANSWER,
    build_citations,
    build_context,
    search,
)

ANSWER = "Mindfulness reduces anxiety [1] and improves sleep [2]."


@pytest.fixture
async def corpus(session, in_memory_qdrant, mock_genai, make_document):
    docs = [
        make_document(id="mbsr", title="MBSR for Anxiety"),
        make_document(
            id="sleep-rct",
            title="Mindfulness and Sleep",
            study_type="Randomized Controlled Trial",
            sample_size=120,
            abstract="Mindfulness meditation improved sleep quality. " * 5,
        ),
    ]
    await ingest_documents(session, docs)
    return docs


@pytest.fixture
def mock_answer():
    with patch(
        "src.services.search_service.generate_answer",
        new_callable=AsyncMock,
        return_value=ANSWER,
    ) as mock:
        yield mock


@pytest.fixture
def mock_assessment():
    assessment = ModelEvidenceAssessment(
        strength="Weak", score=45, reasoning="Only two studies."
    )
    with patch(
        "src.services.search_service.assess_evidence",
        new_callable=AsyncMock,
        return_value=assessment,
    ) as mock:
        yield mock


class TestSearch:
    async def test_full_pipeline(
        self, session, corpus, mock_answer, mock_assessment
    ) -> None:
        result = await search(session, SearchRequest(query="mindfulness anxiety"))

        assert result.answer == ANSWER
        assert {d.id for d in result.documents} == {"mbsr", "sleep-rct"}
        assert [r.source_id for r in result.chunks] == [1, 2]
        assert [c.position for c in result.citations] == [1, 2]
        assert result.citations[0].chunk_id == result.chunks[0].chunk.id
        assert result.evidence_grade == grade_evidence(result.documents)
        assert result.evidence_strength == result.evidence_grade.strength
        assert result.model_assessment is None
        mock_assessment.assert_not_called()

        metadata = result.search_metadata
        assert metadata.query == "mindfulness anxiety"
        assert metadata.total_results == 2
        assert metadata.search_time_ms >= metadata.generation_time_ms

    async def test_context_passed_to_generation(
        self, session, corpus, mock_answer
    ) -> None:
        result = await search(session, SearchRequest(query="sleep"))

        query_text, context = mock_answer.await_args.args
        assert query_text == "sleep"
        first = result.chunks[0].chunk
        title = next(d.title for d in result.documents if d.id == first.document_id)
        assert context.startswith(f"[1] {title}\n{first.content}")
        assert "\n\n[2] " in context

    async def test_no_results_skips_generation(
        self, session, in_memory_qdrant, mock_genai, mock_answer
    ) -> None:
        result = await search(session, SearchRequest(query="anything"))

        assert result.answer == NO_RESULTS_ANSWER
        assert result.citations == []
        assert result.documents == []
        assert result.evidence_strength == "Insufficient"
        assert result.evidence_grade.reasoning == "No evidence available"
        mock_answer.assert_not_called()

    async def test_limit(self, session, corpus, mock_answer) -> None:
        result = await search(session, SearchRequest(query="sleep", limit=1))
        assert len(result.chunks) == 1
        assert len(result.citations) == 1

    async def test_filters(self, session, corpus, mock_answer) -> None:
        request = SearchRequest(
            query="sleep",
            filters=SearchFilters(study_types=["Randomized Controlled Trial"]),
        )
        result = await search(session, request)

        assert [d.id for d in result.documents] == ["sleep-rct"]
        assert result.evidence_grade.factors.rct_present is True

    async def test_orphan_chunks_dropped(
        self, session, corpus, mock_answer, make_document
    ) -> None:
        ghost = make_document(id="ghost", title="Deleted Study")
        chunks = chunk_document(ghost)
        await upsert_chunks(chunks, [[0.1] * 768 for _ in chunks], ghost)

        result = await search(session, SearchRequest(query="sleep"))

        assert "ghost" not in {r.chunk.document_id for r in result.chunks}
        assert [r.source_id for r in result.chunks] == [1, 2]
        _, context = mock_answer.await_args.args
        assert "Deleted Study" not in context

    async def test_model_assessment_is_secondary(
        self, session, corpus, mock_answer, mock_assessment, monkeypatch
    ) -> None:
        monkeypatch.setattr("src.config.settings.model_grading_enabled", True)

        result = await search(session, SearchRequest(query="mindfulness"))

        assert result.model_assessment is not None
        assert result.model_assessment.strength == "Weak"
        assert result.model_assessment.source == "model"
        assert result.evidence_strength == result.evidence_grade.strength
        documents, answer = mock_assessment.await_args.args
        assert answer == ANSWER
        assert len(documents) == 2

    async def test_generation_error_propagates(
        self, session, corpus, mock_answer
    ) -> None:
        mock_answer.side_effect = GenerationError("AGENT_ERROR", "overloaded")

        with pytest.raises(GenerationError) as exc_info:
            await search(session, SearchRequest(query="sleep"))

        assert exc_info.value.code == "AGENT_ERROR"

    async def test_embedding_error_propagates(
        self, session, corpus, mock_genai, mock_answer
    ) -> None:
        mock_genai.aio.models.embed_content.side_effect = RuntimeError("timeout")

        with pytest.raises(RuntimeError, match="timeout"):
            await search(session, SearchRequest(query="sleep"))


class TestCitations:
    async def test_preview_is_truncated(
        self, session, corpus, mock_answer
    ) -> None:
        result = await search(session, SearchRequest(query="sleep"))
        citations = build_citations(result.chunks)

        for citation, retrieved in zip(citations, result.chunks):
            assert citation.text == retrieved.chunk.content[:100] + "..."
            assert citation.document_id == retrieved.chunk.document_id
        assert [c.id for c in citations] == ["citation-0", "citation-1"]

    def test_empty(self) -> None:
        assert build_citations([]) == []
        assert build_context([], {}) == ""
