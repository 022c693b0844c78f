"""Research document data access service."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.orm import ResearchDocument
from src.models.research import Document


async def upsert_document(session: AsyncSession, document: Document) -> None:
    """Insert or replace a document by id."""
    values = document.model_dump(exclude={"created_at", "updated_at"})
    await session.merge(ResearchDocument(**values))
    await session.commit()


async def get_documents_by_ids(
    session: AsyncSession, document_ids: Iterable[str]
) -> list[Document]:
    """Fetch documents for a set of ids, in the order the ids were given.

    Ids with no stored document are skipped.
    """
    ids = list(dict.fromkeys(document_ids))
    if not ids:
        return []
    result = await session.execute(
        select(ResearchDocument)
        .where(ResearchDocument.id.in_(ids))
        .execution_options(populate_existing=True)
    )
    rows: Sequence[ResearchDocument] = result.scalars().all()
    by_id = {row.id: Document.model_validate(row) for row in rows}
    return [by_id[doc_id] for doc_id in ids if doc_id in by_id]


async def document_exists(session: AsyncSession, document_id: str) -> bool:
    result = await session.execute(
        select(ResearchDocument.id).where(ResearchDocument.id == document_id)
    )
    return result.scalar_one_or_none() is not None


async def count_documents(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(ResearchDocument))
    return result.scalar_one()


async def delete_all_documents(session: AsyncSession) -> int:
    """Bulk delete every document. Returns the number of rows removed."""
    result = await session.execute(delete(ResearchDocument))
    await session.commit()
    return result.rowcount
