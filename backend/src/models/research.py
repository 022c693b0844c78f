"""Pydantic models for research documents, chunks, evidence grades and search."""

from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt

StudyType = Literal[
    "Meta-Analysis",
    "Systematic Review",
    "Randomized Controlled Trial",
    "Cohort Study",
    "Case-Control Study",
    "Cross-Sectional Study",
    "Case Study",
    "Review",
    "Other",
]

EvidenceStrength = Literal["Insufficient", "Weak", "Moderate", "Strong"]

# Weakest to strongest.
EVIDENCE_STRENGTH_ORDER: tuple[EvidenceStrength, ...] = (
    "Insufficient",
    "Weak",
    "Moderate",
    "Strong",
)

ChunkSection = Literal["abstract", "methods", "results", "discussion", "conclusion"]


# --- Documents and chunks ---


class Document(BaseModel):
    """A bibliographic record for a piece of wellness research."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(min_length=1)
    title: str
    abstract: str
    authors: list[str]
    journal: str
    publication_date: datetime.date
    doi: str | None = None
    pmid: str | None = None
    url: str | None = None
    study_type: StudyType
    sample_size: PositiveInt | None = None
    conflicts_of_interest: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None


class ChunkMetadata(BaseModel):
    section: ChunkSection
    page_number: int | None = None
    word_count: int


class Chunk(BaseModel):
    """A contiguous slice of a document's text, the unit of embedding and retrieval."""

    id: str
    document_id: str
    content: str
    chunk_index: int
    metadata: ChunkMetadata
    created_at: datetime.datetime


# --- Evidence grading ---


class EvidenceFactors(BaseModel):
    study_types: list[StudyType]
    sample_sizes: list[int]
    recency: float  # mean age in years
    conflicts_of_interest: bool
    meta_analysis_present: bool
    rct_present: bool


class EvidenceGrade(BaseModel):
    """Deterministic grade computed from a set of documents. Never persisted."""

    strength: EvidenceStrength
    score: int = Field(ge=0, le=100)
    factors: EvidenceFactors
    reasoning: str


class ModelEvidenceAssessment(BaseModel):
    """Secondary, model-estimated grade.

    Shown alongside the formula grade, never instead of it.
    """

    strength: EvidenceStrength
    score: int = Field(ge=0, le=100)
    reasoning: str
    source: Literal["model"] = "model"


# --- Search ---


class DateRange(BaseModel):
    start: datetime.date
    end: datetime.date


class SearchFilters(BaseModel):
    study_types: list[StudyType] | None = None
    date_range: DateRange | None = None
    min_sample_size: PositiveInt | None = None
    exclude_conflicts: bool = False


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=500)
    limit: int = Field(default=10, ge=1, le=50)
    filters: SearchFilters | None = None


class RetrievalResult(BaseModel):
    """A chunk returned by vector search, with its similarity and citation position."""

    chunk: Chunk
    score: float
    source_id: int


class Citation(BaseModel):
    id: str
    document_id: str
    chunk_id: str
    text: str
    position: int


class SearchMetadata(BaseModel):
    query: str
    total_results: int
    search_time_ms: int
    embedding_time_ms: int
    retrieval_time_ms: int
    generation_time_ms: int


class QueryResult(BaseModel):
    answer: str
    citations: list[Citation]
    evidence_strength: EvidenceStrength
    evidence_grade: EvidenceGrade
    model_assessment: ModelEvidenceAssessment | None = None
    documents: list[Document]
    chunks: list[RetrievalResult]
    search_metadata: SearchMetadata


# --- Ingestion ---


class IngestResult(BaseModel):
    success: bool
    documents_processed: int
    documents_skipped: int = 0
    chunks_created: int
    embeddings_generated: int
    errors: list[str]
    duration_ms: int


class ReembedResult(BaseModel):
    total_chunks: int
    processed: int
    failed: int
