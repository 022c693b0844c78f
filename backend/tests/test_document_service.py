"""Tests for research document persistence."""

from __future__ import annotations

from src.services.document_service import (
    count_documents,
    delete_all_documents,
    document_exists,
    get_documents_by_ids,
    upsert_document,
)


class TestUpsertDocument:
    async def test_insert_and_fetch(self, session, make_document) -> None:
        doc = make_document()
        await upsert_document(session, doc)

        (stored,) = await get_documents_by_ids(session, [doc.id])
        assert stored.title == doc.title
        assert stored.authors == doc.authors
        assert stored.publication_date == doc.publication_date
        assert stored.sample_size == 3515
        assert stored.created_at is not None

    async def test_upsert_replaces_by_id(self, session, make_document) -> None:
        await upsert_document(session, make_document(title="First title"))
        await upsert_document(
            session,
            make_document(title="Revised title", conflicts_of_interest=["Grant"]),
        )

        assert await count_documents(session) == 1
        (stored,) = await get_documents_by_ids(session, ["pubmed-001"])
        assert stored.title == "Revised title"
        assert stored.conflicts_of_interest == ["Grant"]

    async def test_optional_fields_round_trip_as_none(
        self, session, make_document
    ) -> None:
        doc = make_document(doi=None, pmid=None, sample_size=None)
        await upsert_document(session, doc)
        (stored,) = await get_documents_by_ids(session, [doc.id])
        assert stored.doi is None
        assert stored.sample_size is None


class TestGetDocumentsByIds:
    async def test_keeps_requested_order_and_skips_missing(
        self, session, make_document
    ) -> None:
        for doc_id in ("a", "b", "c"):
            await upsert_document(session, make_document(id=doc_id))

        docs = await get_documents_by_ids(session, ["c", "missing", "a", "c"])
        assert [d.id for d in docs] == ["c", "a"]

    async def test_empty_ids(self, session) -> None:
        assert await get_documents_by_ids(session, []) == []


class TestExistsCountDelete:
    async def test_document_exists(self, session, make_document) -> None:
        assert await document_exists(session, "pubmed-001") is False
        await upsert_document(session, make_document())
        assert await document_exists(session, "pubmed-001") is True

    async def test_delete_all(self, session, make_document) -> None:
        await upsert_document(session, make_document(id="a"))
        await upsert_document(session, make_document(id="b"))

        assert await delete_all_documents(session) == 2
        assert await count_documents(session) == 0
