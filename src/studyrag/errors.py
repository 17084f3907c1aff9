"""Error taxonomy shared by every StudyRAG component."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from studyrag.models import ConversationTurn


class StudyRAGError(RuntimeError):
    """Base class for all errors raised by the core."""


class UnsupportedFormatError(StudyRAGError):
    """Raised when an upload does not carry a PDF signature."""


class ExtractionFailedError(StudyRAGError):
    """Raised when text extraction fails for a document."""

    def __init__(self, message: str, *, document_id: str | None = None) -> None:
        super().__init__(message)
        self.document_id = document_id


class ExtractionInProgressError(StudyRAGError):
    """Raised when a second extraction is requested for the same document."""


class DocumentNotFoundError(StudyRAGError, LookupError):
    """Raised when a document id is unknown."""


class DocumentNotReadyError(StudyRAGError):
    """Raised when an operation needs an extracted (or indexed) document."""


class EmbeddingDimensionMismatchError(StudyRAGError):
    """Raised when a vector does not match the dimension pinned by the index."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Embedding dimension mismatch: expected={expected}, actual={actual}")
        self.expected = expected
        self.actual = actual


class ModelVersionMismatchError(StudyRAGError):
    """Raised when two components disagree on the embedding model version."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Embedding model version mismatch: expected={expected!r}, actual={actual!r}")
        self.expected = expected
        self.actual = actual


class NoRelevantContextError(StudyRAGError):
    """Raised when retrieval finds nothing above the grounding threshold.

    ``turn`` is the assistant turn recorded for the question; its citations are
    empty and ``no_relevant_context`` is set.
    """

    def __init__(self, message: str, *, turn: "ConversationTurn | None" = None) -> None:
        super().__init__(message)
        self.turn = turn


class OperationTimeoutError(StudyRAGError):
    """Raised when an upstream call or a whole generation request runs out of time."""


class UpstreamModelError(StudyRAGError):
    """Raised when an embedding or generation backend fails or returns unusable output."""


class InvalidTurnError(StudyRAGError, ValueError):
    """Raised when a conversation turn violates the citation contract."""


class SegmentNotFoundError(StudyRAGError, LookupError):
    """Raised when a topic segment index does not exist for a document."""


__all__ = [
    "DocumentNotFoundError",
    "DocumentNotReadyError",
    "EmbeddingDimensionMismatchError",
    "ExtractionFailedError",
    "ExtractionInProgressError",
    "InvalidTurnError",
    "ModelVersionMismatchError",
    "NoRelevantContextError",
    "OperationTimeoutError",
    "SegmentNotFoundError",
    "StudyRAGError",
    "UnsupportedFormatError",
    "UpstreamModelError",
]
