"""Shared domain models used across the StudyRAG pipeline."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    FAILED = "failed"


@dataclass(frozen=True)
class Document:
    """An uploaded PDF and, once extracted, its text with page boundaries.

    ``page_offsets[i]`` is the character offset in ``raw_text`` where page
    ``i + 1`` starts.
    """

    id: str
    filename: str
    byte_size: int
    page_count: int = 0
    raw_text: str = ""
    page_offsets: Tuple[int, ...] = ()
    status: DocumentStatus = DocumentStatus.UPLOADED
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_extracted(self) -> bool:
        return self.status is DocumentStatus.EXTRACTED

    def page_for_offset(self, offset: int) -> int:
        """Return the 1-based page holding the character at ``offset``."""

        if not self.page_offsets:
            return 1
        index = bisect_right(self.page_offsets, offset) - 1
        return max(1, min(index + 1, self.page_count or len(self.page_offsets)))


@dataclass(frozen=True)
class Citation:
    """Raw page-range reference; callers decide how to render it."""

    document_id: str
    page_start: int
    page_end: int


@dataclass(frozen=True)
class Chunk:
    """Contiguous slice of a document's text used as a retrieval unit."""

    id: str
    document_id: str
    text: str
    page_start: int
    page_end: int
    sequence_index: int
    char_start: int
    char_end: int
    embedding: Tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        if self.page_start > self.page_end:
            raise ValueError(f"Chunk {self.id} has page_start > page_end")

    @property
    def citation(self) -> Citation:
        return Citation(document_id=self.document_id, page_start=self.page_start, page_end=self.page_end)


@dataclass(frozen=True)
class RetrievalResult:
    """Chunk returned by the retriever, ordered by descending score."""

    chunk_id: str
    score: float
    citation: Citation
    document_id: str
    sequence_index: int
    text: str


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    id: str
    document_id: str
    sequence: int
    role: TurnRole
    content: str
    citations: Tuple[Citation, ...] = ()
    source_chunk_ids: Tuple[str, ...] = ()
    no_relevant_context: bool = False
    created_at: datetime = field(default_factory=utcnow)


class ArtifactKind(str, Enum):
    NOTE = "note"
    QUIZ = "quiz"


class QuestionType(str, Enum):
    MCQ = "mcq"
    SHORT = "short"


@dataclass(frozen=True)
class GlossaryTerm:
    term: str
    definition: str


@dataclass(frozen=True)
class NotePayload:
    topic: str
    summary: str
    key_points: Tuple[str, ...] = ()
    worked_example: str | None = None
    glossary: Tuple[GlossaryTerm, ...] = ()


@dataclass(frozen=True)
class QuizPayload:
    question_type: QuestionType
    question: str
    explanation: str
    difficulty: str = "medium"
    options: Tuple[str, ...] = ()
    correct_option: int | None = None
    sample_answer: str | None = None


ArtifactPayload = Union[NotePayload, QuizPayload]


@dataclass(frozen=True)
class GeneratedArtifact:
    """Derived note or quiz item; regeneration creates a new artifact."""

    id: str
    document_id: str
    kind: ArtifactKind
    payload: ArtifactPayload
    citations: Tuple[Citation, ...]
    source_chunk_ids: Tuple[str, ...]
    segment_index: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TopicSegment:
    """Run of adjacent chunks treated as one topic for notes and quizzes."""

    document_id: str
    index: int
    chunk_ids: Tuple[str, ...]
    sequence_start: int
    sequence_end: int
    page_start: int
    page_end: int

    @property
    def citation(self) -> Citation:
        return Citation(document_id=self.document_id, page_start=self.page_start, page_end=self.page_end)
