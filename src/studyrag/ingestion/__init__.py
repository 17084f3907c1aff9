"""Document ingestion: upload validation, PDF extraction and storage."""

from .service import (
    DocumentStore,
    LangChainPdfExtractor,
    PdfTextExtractor,
    build_page_text,
    looks_like_pdf,
)

__all__ = [
    "DocumentStore",
    "LangChainPdfExtractor",
    "PdfTextExtractor",
    "build_page_text",
    "looks_like_pdf",
]
