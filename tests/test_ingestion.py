"""Tests for the document store and PDF extraction."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Sequence

import pytest

from conftest import PDF_BYTES, FailingExtractor, StubExtractor, make_pdf
from studyrag.errors import (
    DocumentNotFoundError,
    ExtractionFailedError,
    ExtractionInProgressError,
    UnsupportedFormatError,
)
from studyrag.ingestion import DocumentStore, LangChainPdfExtractor, build_page_text, looks_like_pdf
from studyrag.models import DocumentStatus


def test_build_page_text_records_page_offsets():
    text, offsets = build_page_text(["First  page\n text", "Second page"])
    assert text == "First page text\n\nSecond page"
    assert offsets == (0, len("First page text\n\n"))


def test_signature_sniffing_ignores_extension():
    assert looks_like_pdf(b"%PDF-1.7\n...")
    assert looks_like_pdf(b"\x00" * 100 + b"%PDF-1.4")
    assert not looks_like_pdf(b"PK\x03\x04 word document")


@pytest.mark.asyncio
async def test_ingest_extracts_pages_and_persists(tmp_path: Path):
    store = DocumentStore(tmp_path, extractor=StubExtractor(["Page one text.", "Page two text."]))

    document = await store.ingest(PDF_BYTES, "notes.pdf")

    assert document.status is DocumentStatus.EXTRACTED
    assert document.page_count == 2
    assert document.raw_text.startswith("Page one text.")
    assert document.page_for_offset(document.page_offsets[1]) == 2

    reopened = DocumentStore(tmp_path, extractor=StubExtractor([]))
    assert reopened.get(document.id) == document
    assert [doc.id for doc in reopened.list()] == [document.id]


@pytest.mark.asyncio
async def test_non_pdf_upload_is_rejected_even_with_pdf_extension(tmp_path: Path):
    store = DocumentStore(tmp_path, extractor=StubExtractor(["never used"]))

    with pytest.raises(UnsupportedFormatError):
        await store.ingest(b"PK\x03\x04 this is a zip", "sneaky.pdf")

    assert store.list() == []


@pytest.mark.asyncio
async def test_extraction_failure_marks_document_failed(tmp_path: Path):
    store = DocumentStore(tmp_path, extractor=FailingExtractor())

    with pytest.raises(ExtractionFailedError) as excinfo:
        await store.ingest(PDF_BYTES, "broken.pdf")

    document = store.get(excinfo.value.document_id)
    assert document.status is DocumentStatus.FAILED
    assert "corrupt" in (document.error or "")
    assert document.raw_text == ""


@pytest.mark.asyncio
async def test_pdf_without_text_is_an_extraction_failure(tmp_path: Path):
    store = DocumentStore(tmp_path, extractor=StubExtractor(["", "   "]))

    with pytest.raises(ExtractionFailedError):
        await store.ingest(PDF_BYTES, "scanned.pdf")

    assert store.list()[0].status is DocumentStatus.FAILED


@pytest.mark.asyncio
async def test_extracted_document_is_not_extracted_again(tmp_path: Path):
    extractor = StubExtractor(["Only page."])
    store = DocumentStore(tmp_path, extractor=extractor)
    document = await store.ingest(PDF_BYTES, "once.pdf")

    again = await store.extract(document.id)

    assert again == document
    assert extractor.calls == 1


class BlockingExtractor:
    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self.started = asyncio.Event()
        self.release = threading.Event()

    def extract_pages(self, data: bytes) -> Sequence[str]:
        self._loop.call_soon_threadsafe(self.started.set)
        self.release.wait(timeout=5)
        return ["Slow page."]


@pytest.mark.asyncio
async def test_second_concurrent_extraction_is_refused(tmp_path: Path):
    extractor = BlockingExtractor(asyncio.get_running_loop())
    store = DocumentStore(tmp_path, extractor=extractor)
    document = store.create(PDF_BYTES, "slow.pdf")

    first = asyncio.create_task(store.extract(document.id))
    await extractor.started.wait()
    assert store.is_extracting(document.id)
    assert store.get(document.id).status is DocumentStatus.EXTRACTING

    with pytest.raises(ExtractionInProgressError):
        await store.extract(document.id)

    extractor.release.set()
    extracted = await first
    assert extracted.status is DocumentStatus.EXTRACTED
    assert not store.is_extracting(document.id)


@pytest.mark.asyncio
async def test_cancelled_extraction_returns_document_to_uploaded(tmp_path: Path):
    extractor = BlockingExtractor(asyncio.get_running_loop())
    store = DocumentStore(tmp_path, extractor=extractor)
    document = store.create(PDF_BYTES, "cancel.pdf")

    task = asyncio.create_task(store.extract(document.id))
    await extractor.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    extractor.release.set()

    assert store.get(document.id).status is DocumentStatus.UPLOADED
    assert not store.is_extracting(document.id)


def test_delete_removes_record_and_upload(tmp_path: Path):
    store = DocumentStore(tmp_path, extractor=StubExtractor(["x"]))
    document = store.create(PDF_BYTES, "gone.pdf")

    store.delete(document.id)

    with pytest.raises(DocumentNotFoundError):
        store.get(document.id)
    assert not (tmp_path / "uploads" / f"{document.id}.pdf").exists()
    with pytest.raises(DocumentNotFoundError):
        store.delete(document.id)


def test_langchain_extractor_reads_real_pdf_pages():
    pdf = make_pdf(["Mitosis has four phases.", "Meiosis halves the chromosome count."])

    pages = LangChainPdfExtractor().extract_pages(pdf)

    assert len(pages) == 2
    assert "Mitosis" in pages[0]
    assert "Meiosis" in pages[1]


@pytest.mark.asyncio
async def test_store_with_default_extractor_ingests_real_pdf(tmp_path: Path):
    store = DocumentStore(tmp_path)

    document = await store.ingest(make_pdf(["Alpha page.", "Beta page.", "Gamma page."]), "real.pdf")

    assert document.page_count == 3
    assert "Beta" in document.raw_text[document.page_offsets[1] : document.page_offsets[2]]
