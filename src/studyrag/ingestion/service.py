"""Document store: PDF upload validation, extraction and persistence."""

from __future__ import annotations

import asyncio
import dataclasses
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Protocol, Sequence
from uuid import uuid4

from langchain_community.document_loaders import PyPDFLoader
from langchain_core.documents import Document as LCDocument

from studyrag.errors import (
    DocumentNotFoundError,
    ExtractionFailedError,
    ExtractionInProgressError,
    UnsupportedFormatError,
)
from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import Document, DocumentStatus
from studyrag.storage import JsonFileStore, atomic_write_bytes
from studyrag.text import normalize_text

PDF_SIGNATURE = b"%PDF-"
# Readers accept the header anywhere in the first 1024 bytes
SIGNATURE_WINDOW = 1024
PAGE_SEPARATOR = "\n\n"


def looks_like_pdf(data: bytes) -> bool:
    return PDF_SIGNATURE in data[:SIGNATURE_WINDOW]


class PdfTextExtractor(Protocol):
    """Protocol for PDF text extraction implementations."""

    def extract_pages(self, data: bytes) -> Sequence[str]:
        """Return the raw text of every page, in page order."""


class LangChainPdfExtractor:
    """Extract page texts via LangChain's ``PyPDFLoader``."""

    def extract_pages(self, data: bytes) -> Sequence[str]:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "upload.pdf"
            path.write_bytes(data)
            documents: List[LCDocument] = PyPDFLoader(str(path)).load()
        ordered = sorted(
            enumerate(documents),
            key=lambda item: (int(item[1].metadata.get("page", item[0])), item[0]),
        )
        return [document.page_content or "" for _, document in ordered]


def build_page_text(pages: Sequence[str]) -> tuple[str, tuple[int, ...]]:
    """Join normalized pages and return the text with each page's start offset."""

    offsets: List[int] = []
    parts: List[str] = []
    cursor = 0
    for index, page in enumerate(pages):
        if index:
            parts.append(PAGE_SEPARATOR)
            cursor += len(PAGE_SEPARATOR)
        offsets.append(cursor)
        normalized = normalize_text(page)
        parts.append(normalized)
        cursor += len(normalized)
    return "".join(parts), tuple(offsets)


class DocumentStore:
    """Persists uploaded documents and their extracted text, keyed by id.

    Layout under ``data_dir``::

        documents/<id>.json   Document record (text + page offsets once extracted)
        uploads/<id>.pdf      original upload bytes
    """

    _logger = get_logger("ingestion")

    def __init__(self, data_dir: Path, extractor: PdfTextExtractor | None = None) -> None:
        self._data_dir = Path(data_dir)
        self._records: JsonFileStore[Document] = JsonFileStore(self._data_dir / "documents", Document)
        self._uploads_dir = self._data_dir / "uploads"
        self._extractor = extractor or LangChainPdfExtractor()
        self._extracting: set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    async def ingest(self, data: bytes, filename: str) -> Document:
        """Validate, persist and extract an upload in one call."""

        document = self.create(data, filename)
        return await self.extract(document.id)

    def create(self, data: bytes, filename: str) -> Document:
        if not looks_like_pdf(data):
            self._logger.info("ingestion.rejected", filename=filename, byte_size=len(data))
            raise UnsupportedFormatError(f"{filename or '<unnamed>'} is not a PDF document")
        document = Document(id=uuid4().hex, filename=filename, byte_size=len(data))
        atomic_write_bytes(self._upload_path(document.id), data)
        self._records.write(document.id, document)
        self._logger.info("ingestion.uploaded", document_id=document.id, filename=filename, byte_size=len(data))
        return document

    async def extract(self, document_id: str) -> Document:
        """Extract text for an uploaded document.

        Extracted documents are immutable and returned unchanged. Failures mark
        the document ``failed`` and are raised as ``ExtractionFailedError``;
        they are not retried. Cancelling the awaiting task restores the
        previous state.
        """

        document = self.get(document_id)
        if document.is_extracted:
            return document
        if document_id in self._extracting:
            raise ExtractionInProgressError(f"Extraction already running for {document_id}")

        self._extracting.add(document_id)
        start = time.perf_counter()
        try:
            self._records.write(document_id, dataclasses.replace(document, status=DocumentStatus.EXTRACTING, error=None))
            data = self._upload_path(document_id).read_bytes()
            try:
                pages = await asyncio.to_thread(self._extractor.extract_pages, data)
                raw_text, offsets = build_page_text(pages)
                if not raw_text.strip():
                    raise ExtractionFailedError("No text could be extracted; the PDF may be image-based")
            except asyncio.CancelledError:
                self._records.write(document_id, document)
                self._logger.info("ingestion.cancelled", document_id=document_id)
                raise
            except Exception as exc:
                failed = dataclasses.replace(
                    document,
                    status=DocumentStatus.FAILED,
                    error=str(exc),
                    raw_text="",
                    page_offsets=(),
                    page_count=0,
                )
                self._records.write(document_id, failed)
                duration = time.perf_counter() - start
                PipelineMetrics.observe_extraction(duration, failed=True)
                self._logger.error("ingestion.failed", document_id=document_id, detail=str(exc))
                if isinstance(exc, ExtractionFailedError):
                    exc.document_id = document_id
                    raise
                raise ExtractionFailedError(f"Failed to extract {document.filename}: {exc}", document_id=document_id) from exc

            extracted = dataclasses.replace(
                document,
                status=DocumentStatus.EXTRACTED,
                error=None,
                raw_text=raw_text,
                page_offsets=offsets,
                page_count=len(offsets),
            )
            self._records.write(document_id, extracted)
        finally:
            self._extracting.discard(document_id)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_extraction(duration)
        self._logger.info(
            "ingestion.complete",
            document_id=document_id,
            page_count=extracted.page_count,
            characters=len(extracted.raw_text),
            duration_seconds=duration,
        )
        return extracted

    def is_extracting(self, document_id: str) -> bool:
        return document_id in self._extracting

    def lock_for(self, document_id: str) -> asyncio.Lock:
        """Lock held while anything derived from the document is written or deleted."""

        return self._locks.setdefault(document_id, asyncio.Lock())

    def get(self, document_id: str) -> Document:
        document = self._records.read(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Unknown document: {document_id}")
        return document

    def list(self) -> List[Document]:
        documents: Dict[str, Document] = {}
        for key in self._records.keys():
            record = self._records.read(key)
            if record is not None:
                documents[key] = record
        return sorted(documents.values(), key=lambda doc: (doc.created_at, doc.id))

    def delete(self, document_id: str) -> None:
        if not self._records.delete(document_id):
            raise DocumentNotFoundError(f"Unknown document: {document_id}")
        self._upload_path(document_id).unlink(missing_ok=True)
        self._locks.pop(document_id, None)
        self._logger.info("ingestion.deleted", document_id=document_id)

    def _upload_path(self, document_id: str) -> Path:
        return self._uploads_dir / f"{document_id}.pdf"
