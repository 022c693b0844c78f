"""RAG service: embedding, Qdrant chunk storage, and vector search."""

from __future__ import annotations

import logging
import uuid

import httpx
from google import genai
from google.genai import types
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    PointVectors,
    Range,
    VectorParams,
)

from src.config import settings
from src.models.research import (
    Chunk,
    ChunkMetadata,
    Document,
    RetrievalResult,
    SearchFilters,
)

logger = logging.getLogger(__name__)

# --- Clients (lazy init) ---

_qdrant_client: AsyncQdrantClient | None = None
_genai_client: genai.Client | None = None


def _qdrant_kwargs() -> dict:
    """Build kwargs for Qdrant client, including api_key if set."""
    kwargs: dict = {"url": settings.qdrant_url}
    if settings.qdrant_api_key:
        kwargs["api_key"] = settings.qdrant_api_key
    return kwargs


def get_qdrant_client() -> AsyncQdrantClient:
    """Get or create the async Qdrant client."""
    global _qdrant_client
    if _qdrant_client is None:
        _qdrant_client = AsyncQdrantClient(**_qdrant_kwargs())
    return _qdrant_client


def get_genai_client() -> genai.Client:
    """Get or create the Google GenAI client (Vertex AI via ADC).

    Embedding calls go through the async interface (client.aio.models).
    """
    global _genai_client
    if _genai_client is None:
        _genai_client = genai.Client(
            vertexai=True,
            project=settings.gcp_project_id,
            location=settings.gcp_location,
        )
    return _genai_client


# --- Embedding ---

_VERTEX_PREDICT_URL = (
    "https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
    "/locations/{location}/publishers/google/models/{model}:predict"
)


async def _vertex_embed_via_api_key(
    texts: list[str], task_type: str
) -> list[list[float]]:
    """Call Vertex AI embedding endpoint directly using GCP API key."""
    url = _VERTEX_PREDICT_URL.format(
        location=settings.gcp_location,
        project=settings.gcp_project_id,
        model=settings.embedding_model,
    )
    body = {
        "instances": [{"content": t, "task_type": task_type} for t in texts],
        "parameters": {"outputDimensionality": settings.embedding_dimensions},
    }
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            url, params={"key": settings.google_api_key}, json=body, timeout=30
        )
    resp.raise_for_status()
    return [p["embeddings"]["values"] for p in resp.json()["predictions"]]


async def _embed(texts: list[str], task_type: str) -> list[list[float]]:
    if settings.google_api_key:
        return await _vertex_embed_via_api_key(texts, task_type)
    client = get_genai_client()
    response = await client.aio.models.embed_content(
        model=settings.embedding_model,
        contents=texts,
        config=types.EmbedContentConfig(
            output_dimensionality=settings.embedding_dimensions,
            task_type=task_type,
        ),
    )
    return [list(e.values) for e in response.embeddings]


async def embed_text(text: str) -> list[float]:
    """Embed a single query string for search."""
    logger.debug(
        "Embedding query (%d chars): %r",
        len(text),
        text[:100] + ("..." if len(text) > 100 else ""),
    )
    vector = (await _embed([text], "RETRIEVAL_QUERY"))[0]
    logger.debug("Embedded query -> %d-dim vector", len(vector))
    return vector


async def embed_batch(texts: list[str]) -> list[list[float]]:
    """Embed a batch of chunk texts. Output is index-aligned with the input."""
    if not texts:
        return []
    logger.info(
        "Embedding batch of %d texts (model=%s, dims=%d)",
        len(texts),
        settings.embedding_model,
        settings.embedding_dimensions,
    )
    vectors = await _embed(texts, "RETRIEVAL_DOCUMENT")
    if len(vectors) != len(texts):
        raise ValueError(
            f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts"
        )
    logger.info("Embedded %d texts -> %d vectors", len(texts), len(vectors))
    return vectors


# --- Qdrant Collection Management ---

_PAYLOAD_INDEXES = [
    ("document_id", PayloadSchemaType.KEYWORD),
    ("study_type", PayloadSchemaType.KEYWORD),
    ("publication_ordinal", PayloadSchemaType.INTEGER),
    ("sample_size", PayloadSchemaType.INTEGER),
    ("has_conflicts", PayloadSchemaType.BOOL),
]


async def ensure_collection() -> None:
    """Create the Qdrant collection if it doesn't exist."""
    client = get_qdrant_client()
    collections = [c.name for c in (await client.get_collections()).collections]
    if settings.qdrant_collection in collections:
        logger.info("Qdrant collection '%s' already exists", settings.qdrant_collection)
        return

    await client.create_collection(
        collection_name=settings.qdrant_collection,
        vectors_config=VectorParams(
            size=settings.embedding_dimensions,
            distance=Distance.COSINE,
        ),
    )
    # Create payload indexes for filtering
    for field, schema_type in _PAYLOAD_INDEXES:
        await client.create_payload_index(
            collection_name=settings.qdrant_collection,
            field_name=field,
            field_schema=schema_type,
        )
    logger.info("Created Qdrant collection '%s'", settings.qdrant_collection)


async def reset_collection() -> None:
    """Drop every stored chunk by recreating the collection."""
    client = get_qdrant_client()
    if await client.collection_exists(settings.qdrant_collection):
        await client.delete_collection(settings.qdrant_collection)
        logger.info("Deleted Qdrant collection '%s'", settings.qdrant_collection)
    await ensure_collection()


# --- Upsert ---


def chunk_point_id(chunk_id: str) -> str:
    """Stable Qdrant point id for a chunk id."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, chunk_id))


def _chunk_payload(chunk: Chunk, document: Document) -> dict:
    return {
        "chunk_id": chunk.id,
        "document_id": chunk.document_id,
        "content": chunk.content,
        "chunk_index": chunk.chunk_index,
        "metadata": chunk.metadata.model_dump(),
        "created_at": chunk.created_at.isoformat(),
        # Parent document fields, denormalised for filtering.
        "document_title": document.title,
        "study_type": document.study_type,
        "publication_date": document.publication_date.isoformat(),
        "publication_ordinal": document.publication_date.toordinal(),
        "sample_size": document.sample_size,
        "has_conflicts": bool(document.conflicts_of_interest),
    }


def _chunk_from_payload(payload: dict) -> Chunk:
    return Chunk(
        id=payload["chunk_id"],
        document_id=payload["document_id"],
        content=payload["content"],
        chunk_index=payload["chunk_index"],
        metadata=ChunkMetadata.model_validate(payload["metadata"]),
        created_at=payload["created_at"],
    )


async def upsert_chunks(
    chunks: list[Chunk], vectors: list[list[float]], document: Document
) -> None:
    """Upsert a document's chunks with their embedding vectors into Qdrant."""
    if not chunks:
        return
    client = get_qdrant_client()
    points = [
        PointStruct(
            id=chunk_point_id(chunk.id),
            vector=vector,
            payload=_chunk_payload(chunk, document),
        )
        for chunk, vector in zip(chunks, vectors, strict=True)
    ]
    await client.upsert(collection_name=settings.qdrant_collection, points=points)
    logger.info(
        "Upserted %d chunks for document %s into '%s'",
        len(points),
        document.id,
        settings.qdrant_collection,
    )


async def update_chunk_vectors(
    chunks: list[Chunk], vectors: list[list[float]]
) -> None:
    """Replace the vectors of existing chunks, keeping their payloads."""
    client = get_qdrant_client()
    await client.update_vectors(
        collection_name=settings.qdrant_collection,
        points=[
            PointVectors(id=chunk_point_id(chunk.id), vector=vector)
            for chunk, vector in zip(chunks, vectors, strict=True)
        ],
    )


async def delete_document_chunks(document_id: str) -> None:
    """Remove every chunk belonging to a document."""
    client = get_qdrant_client()
    await client.delete(
        collection_name=settings.qdrant_collection,
        points_selector=FilterSelector(filter=_document_filter(document_id)),
    )
    logger.debug("Deleted chunks for document %s", document_id)


async def scroll_chunks(
    document_id: str | None = None, page_size: int = 256
) -> list[Chunk]:
    """Read back stored chunks, optionally for a single document."""
    client = get_qdrant_client()
    scroll_filter = _document_filter(document_id) if document_id else None
    chunks: list[Chunk] = []
    offset = None
    while True:
        points, offset = await client.scroll(
            collection_name=settings.qdrant_collection,
            scroll_filter=scroll_filter,
            limit=page_size,
            offset=offset,
            with_payload=True,
            with_vectors=False,
        )
        chunks.extend(_chunk_from_payload(p.payload) for p in points)
        if offset is None:
            break
    return sorted(chunks, key=lambda c: (c.document_id, c.chunk_index))


# --- Search ---


def _document_filter(document_id: str) -> Filter:
    return Filter(
        must=[FieldCondition(key="document_id", match=MatchValue(value=document_id))]
    )


def build_filter(filters: SearchFilters | None) -> Filter | None:
    """Translate search filters into a Qdrant payload filter."""
    if filters is None:
        return None

    must_conditions = []
    if filters.study_types:
        must_conditions.append(
            FieldCondition(
                key="study_type", match=MatchAny(any=list(filters.study_types))
            )
        )
    if filters.date_range:
        must_conditions.append(
            FieldCondition(
                key="publication_ordinal",
                range=Range(
                    gte=filters.date_range.start.toordinal(),
                    lte=filters.date_range.end.toordinal(),
                ),
            )
        )
    if filters.min_sample_size:
        must_conditions.append(
            FieldCondition(key="sample_size", range=Range(gte=filters.min_sample_size))
        )
    if filters.exclude_conflicts:
        must_conditions.append(
            FieldCondition(key="has_conflicts", match=MatchValue(value=False))
        )
    return Filter(must=must_conditions) if must_conditions else None


async def search_chunks(
    query_vector: list[float],
    filters: SearchFilters | None = None,
    limit: int = 10,
    score_threshold: float | None = None,
) -> list[RetrievalResult]:
    """Vector search over stored chunks, best match first, at most `limit` results."""
    if score_threshold is None:
        score_threshold = settings.search_match_threshold
    query_filter = build_filter(filters)

    logger.debug(
        "Searching Qdrant collection=%r filter=%s",
        settings.qdrant_collection,
        query_filter,
    )

    client = get_qdrant_client()
    results = await client.query_points(
        collection_name=settings.qdrant_collection,
        query=query_vector,
        query_filter=query_filter,
        score_threshold=score_threshold,
        limit=limit,
        with_payload=True,
    )

    logger.info(
        "Qdrant returned %d points (threshold=%.2f)",
        len(results.points),
        score_threshold,
    )

    retrieval_results = [
        RetrievalResult(
            chunk=_chunk_from_payload(point.payload),
            score=point.score,
            source_id=idx + 1,
        )
        for idx, point in enumerate(results.points)
    ]

    for r in retrieval_results:
        logger.debug(
            "  Result [%d] score=%.3f doc=%r chunk=%r",
            r.source_id,
            r.score,
            r.chunk.document_id,
            r.chunk.id,
        )

    return retrieval_results
