"""Test fixtures and configuration."""

from __future__ import annotations

import datetime
from collections.abc import AsyncIterator, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.models.orm import Base
from src.models.research import Document
from src.services import rag_service

EMBEDDING_DIM = 768

test_engine = create_async_engine("sqlite+aiosqlite://", echo=False)
test_session_factory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


@pytest.fixture(autouse=True)
async def setup_database() -> AsyncIterator[None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def session() -> AsyncIterator[AsyncSession]:
    async with test_session_factory() as session:
        yield session


# --- Documents ---


@pytest.fixture
def make_document() -> Callable[..., Document]:
    """Factory for valid documents; keyword arguments override fields."""

    def _make(**overrides) -> Document:
        fields = {
            "id": "pubmed-001",
            "title": "Mindfulness-Based Stress Reduction for Anxiety: A Meta-Analysis",
            "abstract": (
                "This meta-analysis examined mindfulness-based stress reduction "
                "across 47 randomized controlled trials. Results showed significant "
                "reductions in anxiety and depression."
            ),
            "authors": ["Smith, J.A.", "Johnson, B.C."],
            "journal": "Journal of Clinical Psychology",
            "publication_date": datetime.date(2023, 1, 15),
            "doi": "10.1002/jclp.23456",
            "pmid": "12345678",
            "study_type": "Meta-Analysis",
            "sample_size": 3515,
            "conflicts_of_interest": [],
            "keywords": ["mindfulness", "anxiety"],
        }
        fields.update(overrides)
        return Document(**fields)

    return _make


# --- Qdrant / embeddings ---


def fake_embedding(dim: int = EMBEDDING_DIM) -> list[float]:
    """Deterministic fake embedding vector."""
    return [0.1] * dim


def mock_embed_response(num_texts: int = 1, dim: int = EMBEDDING_DIM) -> MagicMock:
    """Create a mock response matching google.genai embed_content response."""
    mock_resp = MagicMock()
    embeddings = []
    for _ in range(num_texts):
        emb = MagicMock()
        emb.values = fake_embedding(dim)
        embeddings.append(emb)
    mock_resp.embeddings = embeddings
    return mock_resp


@pytest.fixture
async def in_memory_qdrant(monkeypatch: pytest.MonkeyPatch) -> AsyncQdrantClient:
    """Use in-memory Qdrant for tests, with the chunk collection created."""
    client = AsyncQdrantClient(":memory:")
    monkeypatch.setattr(rag_service, "_qdrant_client", client)
    monkeypatch.setattr(rag_service, "get_qdrant_client", lambda: client)
    await rag_service.ensure_collection()
    return client


@pytest.fixture
def mock_genai(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Mock the GenAI client so no real API calls are made.

    embed_content returns one fake vector per input text.
    """
    mock_client = MagicMock()
    mock_client.aio.models.embed_content = AsyncMock(
        side_effect=lambda **kwargs: mock_embed_response(len(kwargs["contents"]))
    )
    monkeypatch.setattr(rag_service, "_genai_client", mock_client)
    monkeypatch.setattr(rag_service, "get_genai_client", lambda: mock_client)
    # Force SDK path (not API key httpx path) so mocks are used
    monkeypatch.setattr("src.config.settings.google_api_key", "")
    return mock_client
