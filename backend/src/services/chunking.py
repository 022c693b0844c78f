"""Sentence-aware text chunker for research abstracts."""

from __future__ import annotations

import datetime
import logging
import re
from collections import Counter

from pydantic import BaseModel

from src.models.research import Chunk, ChunkMetadata, ChunkSection, Document

logger = logging.getLogger(__name__)

SENTENCE_TERMINATORS = ".!?"


class ChunkingConfigError(ValueError):
    """Raised when chunking parameters would make the chunker loop or never advance."""


class ChunkingOptions(BaseModel):
    max_chunk_size: int = 1000
    overlap_size: int = 200
    preserve_sentences: bool = True


def _validate_window(max_chunk_size: int, overlap_size: int) -> None:
    if max_chunk_size <= 0:
        raise ChunkingConfigError(
            f"max_chunk_size must be positive, got {max_chunk_size}"
        )
    if overlap_size < 0:
        raise ChunkingConfigError(
            f"overlap_size must not be negative, got {overlap_size}"
        )
    if overlap_size >= max_chunk_size:
        raise ChunkingConfigError(
            f"overlap_size ({overlap_size}) must be less than "
            f"max_chunk_size ({max_chunk_size})"
        )


def _last_sentence_end(text: str, start: int, end: int) -> int:
    """Index of the last sentence terminator in text[start:end], or -1."""
    return max(text.rfind(t, start, end) for t in SENTENCE_TERMINATORS)


def chunk_spans(
    text: str,
    max_chunk_size: int = 1000,
    overlap_size: int = 200,
    preserve_sentences: bool = True,
) -> list[tuple[int, int]]:
    """Return the (start, end) windows chunk_text cuts, before trimming."""
    _validate_window(max_chunk_size, overlap_size)

    if len(text) <= max_chunk_size:
        return [(0, len(text))]

    spans: list[tuple[int, int]] = []
    start = 0
    half_window = max_chunk_size * 0.5

    while start < len(text):
        end = start + max_chunk_size

        if preserve_sentences and end < len(text):
            boundary = _last_sentence_end(text, start, end)
            # Snapping must still leave the cursor moving forward, so with
            # overlap >= max/2 some back-half sentence ends are passed over.
            if boundary > start + half_window and boundary + 1 - overlap_size > start:
                end = boundary + 1

        spans.append((start, min(end, len(text))))
        start = end - overlap_size

    return spans


def chunk_text(
    text: str,
    max_chunk_size: int = 1000,
    overlap_size: int = 200,
    preserve_sentences: bool = True,
) -> list[str]:
    """Split text into overlapping chunks of at most max_chunk_size characters.

    Text that already fits is returned as a single, untouched chunk. Longer
    text is cut into windows; with preserve_sentences the window end snaps
    back to the last '.', '!' or '?' when that terminator sits in the back
    half of the window. Each window is trimmed and empty windows are dropped.
    Consecutive windows share overlap_size characters.
    """
    spans = chunk_spans(text, max_chunk_size, overlap_size, preserve_sentences)
    if len(text) <= max_chunk_size:
        return [text]

    chunks = (text[start:end].strip() for start, end in spans)
    return [chunk for chunk in chunks if chunk]


def _word_count(content: str) -> int:
    return len(content.split())


def _build_chunks(
    document: Document,
    contents: list[str],
    section: ChunkSection,
    first_index: int = 0,
) -> list[Chunk]:
    created_at = datetime.datetime.now(datetime.UTC)
    chunks: list[Chunk] = []
    index = first_index
    for content in contents:
        if not content.strip():
            continue
        chunks.append(
            Chunk(
                id=f"{document.id}-{section}-{index}",
                document_id=document.id,
                content=content,
                chunk_index=index,
                metadata=ChunkMetadata(
                    section=section, word_count=_word_count(content)
                ),
                created_at=created_at,
            )
        )
        index += 1
    return chunks


def chunk_document(
    document: Document, options: ChunkingOptions | None = None
) -> list[Chunk]:
    """Chunk a document's abstract into Chunk records."""
    options = options or ChunkingOptions()
    contents = chunk_text(
        document.abstract,
        options.max_chunk_size,
        options.overlap_size,
        options.preserve_sentences,
    )
    chunks = _build_chunks(document, contents, "abstract")
    logger.debug(
        "Chunked document %s -> %d chunks (max=%d, overlap=%d)",
        document.id,
        len(chunks),
        options.max_chunk_size,
        options.overlap_size,
    )
    return chunks


def chunk_by_sections(document: Document) -> list[Chunk]:
    """Section-aware chunking with a tighter window for abstracts.

    Only the abstract is available for bibliographic records, so the other
    sections never produce chunks yet. Chunk indices run across sections.
    """
    chunks = _build_chunks(
        document,
        chunk_text(document.abstract, max_chunk_size=800, overlap_size=100),
        "abstract",
    )
    # Full-text sections go here, continuing from len(chunks).
    return chunks


def clean_text(text: str) -> str:
    """Collapse whitespace runs (including newlines) to single spaces and trim."""
    return " ".join(text.split())


def extract_key_phrases(text: str, max_phrases: int = 10) -> list[str]:
    """Return the most frequent words longer than three characters.

    A bag-of-words heuristic: no stemming and no stopword list. Ties keep the
    order in which the words first appear.
    """
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    counts = Counter(word for word in words if len(word) > 3)
    return [word for word, _ in counts.most_common(max(max_phrases, 0))]
