"""Grouping a document's chunks into topic segments for notes and quizzes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from studyrag.models import Chunk, TopicSegment
from studyrag.text import cosine_similarity


@dataclass(frozen=True)
class SegmentationConfig:
    """Configuration for topic segmentation."""

    similarity_threshold: float = 0.2
    max_chunks: int = 6

    def __post_init__(self) -> None:
        if self.max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")
        if not -1.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must lie in [-1, 1]")


class TopicSegmenter:
    """Split ordered chunks into runs of adjacent, similar chunks.

    A new segment starts when the cosine similarity between a chunk and its
    predecessor falls below ``similarity_threshold`` or when the current
    segment already holds ``max_chunks`` chunks. Chunks without embeddings
    never break a segment on similarity.
    """

    def __init__(self, config: SegmentationConfig | None = None) -> None:
        self._config = config or SegmentationConfig()

    def segment(self, document_id: str, chunks: Sequence[Chunk]) -> List[TopicSegment]:
        ordered = sorted(chunks, key=lambda chunk: chunk.sequence_index)
        groups: List[List[Chunk]] = []
        for chunk in ordered:
            if groups and not self._starts_segment(groups[-1], chunk):
                groups[-1].append(chunk)
            else:
                groups.append([chunk])
        return [self._to_segment(document_id, index, group) for index, group in enumerate(groups)]

    def _starts_segment(self, current: List[Chunk], chunk: Chunk) -> bool:
        if len(current) >= self._config.max_chunks:
            return True
        previous = current[-1]
        if previous.embedding is None or chunk.embedding is None:
            return False
        return cosine_similarity(previous.embedding, chunk.embedding) < self._config.similarity_threshold

    @staticmethod
    def _to_segment(document_id: str, index: int, group: List[Chunk]) -> TopicSegment:
        return TopicSegment(
            document_id=document_id,
            index=index,
            chunk_ids=tuple(chunk.id for chunk in group),
            sequence_start=group[0].sequence_index,
            sequence_end=group[-1].sequence_index,
            page_start=min(chunk.page_start for chunk in group),
            page_end=max(chunk.page_end for chunk in group),
        )
