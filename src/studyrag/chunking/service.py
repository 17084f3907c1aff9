"""Page-aware chunking on top of LangChain's recursive character splitter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from langchain_text_splitters import RecursiveCharacterTextSplitter

from studyrag.errors import DocumentNotReadyError
from studyrag.models import Chunk, Document


@dataclass(frozen=True)
class ChunkingConfig:
    """Window size and overlap, both in characters."""

    chunk_size: int = 1000
    chunk_overlap: int = 150

    def __post_init__(self) -> None:
        if self.chunk_size < 2:
            raise ValueError("chunk_size must be at least 2")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size // 2:
            raise ValueError("chunk_overlap must be >= 0 and smaller than half of chunk_size")


class Chunker:
    """Split a document's ``raw_text`` into ordered, overlapping chunks.

    Splitting prefers paragraph, then line, then word boundaries. Whitespace is
    kept so each chunk is an exact slice of ``raw_text`` located by its start
    index; consecutive chunks overlap or touch, and the last one ends at the end
    of the text.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self._config = config or ChunkingConfig()
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self._config.chunk_size,
            chunk_overlap=self._config.chunk_overlap,
            add_start_index=True,
            strip_whitespace=False,
        )

    @property
    def config(self) -> ChunkingConfig:
        return self._config

    def chunk(self, document: Document) -> List[Chunk]:
        if not document.is_extracted:
            raise DocumentNotReadyError(f"Document {document.id} is {document.status.value}, not extracted")
        text = document.raw_text
        chunks: List[Chunk] = []
        for index, (start, end) in enumerate(self.spans(text)):
            page_start, page_end = self._page_span(document, start, end)
            chunks.append(
                Chunk(
                    id=f"{document.id}-{index}",
                    document_id=document.id,
                    text=text[start:end],
                    page_start=page_start,
                    page_end=page_end,
                    sequence_index=index,
                    char_start=start,
                    char_end=end,
                )
            )
        return chunks

    def spans(self, text: str) -> List[tuple[int, int]]:
        """Return the ``[start, end)`` character ranges of every chunk."""

        spans: List[tuple[int, int]] = []
        for piece in self._splitter.create_documents([text]):
            start = int(piece.metadata["start_index"])
            end = start + len(piece.page_content)
            if spans:
                # Never leave a gap between neighbours
                start = min(start, spans[-1][1])
            else:
                start = 0
            spans.append((start, end))
        if not spans:
            return [(0, len(text))] if text else []
        if spans[-1][1] < len(text):
            spans[-1] = (spans[-1][0], len(text))
        return spans

    @staticmethod
    def _page_span(document: Document, start: int, end: int) -> tuple[int, int]:
        # Separators between pages belong to the earlier page; map the
        # non-whitespace content instead
        content = document.raw_text[start:end]
        stripped = content.strip()
        if not stripped:
            page = document.page_for_offset(start)
            return page, page
        first = start + (len(content) - len(content.lstrip()))
        last = start + len(content.rstrip()) - 1
        page_start = 1 if start == 0 else document.page_for_offset(first)
        page_end = document.page_count if end >= len(document.raw_text) else document.page_for_offset(last)
        return page_start, max(page_start, page_end)
