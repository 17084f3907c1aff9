"""Pydantic models for the StudyRAG API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from studyrag.config import get_settings
from studyrag.models import (
    Citation,
    ConversationTurn,
    Document,
    GeneratedArtifact,
    NotePayload,
    QuizPayload,
    RetrievalResult,
    TopicSegment,
)


class CitationModel(BaseModel):
    document_id: str
    page_start: int = Field(..., ge=1)
    page_end: int = Field(..., ge=1)

    @classmethod
    def from_citation(cls, citation: Citation) -> "CitationModel":
        return cls(document_id=citation.document_id, page_start=citation.page_start, page_end=citation.page_end)


class DocumentSummary(BaseModel):
    document_id: str = Field(..., description="Stable identifier for the uploaded document")
    filename: str
    byte_size: int = Field(..., ge=0)
    page_count: int = Field(..., ge=0)
    status: Literal["uploaded", "extracting", "extracted", "failed"]
    indexed: bool = Field(..., description="Whether the document's chunks are searchable")
    error: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_document(cls, document: Document, *, indexed: bool) -> "DocumentSummary":
        return cls(
            document_id=document.id,
            filename=document.filename,
            byte_size=document.byte_size,
            page_count=document.page_count,
            status=document.status.value,
            indexed=indexed,
            error=document.error,
            created_at=document.created_at,
        )


class DocumentListResponse(BaseModel):
    documents: List[DocumentSummary]


class RetrieveRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Text to search the document for")
    top_k: Optional[int] = Field(
        default=None,
        ge=1,
        le=get_settings().retrieval_max_top_k,
        description="Override the number of retrieved chunks",
    )
    page_start: Optional[int] = Field(default=None, ge=1)
    page_end: Optional[int] = Field(default=None, ge=1)
    min_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    extra_document_ids: List[str] = Field(
        default_factory=list,
        description="Other documents to search alongside this one",
    )


class RetrievedChunkModel(BaseModel):
    chunk_id: str
    document_id: str
    sequence_index: int
    score: float
    citation: CitationModel
    text: str

    @classmethod
    def from_result(cls, result: RetrievalResult) -> "RetrievedChunkModel":
        return cls(
            chunk_id=result.chunk_id,
            document_id=result.document_id,
            sequence_index=result.sequence_index,
            score=result.score,
            citation=CitationModel.from_citation(result.citation),
            text=result.text,
        )


class RetrieveResponse(BaseModel):
    results: List[RetrievedChunkModel]


class ChatRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question about the document")
    top_k: Optional[int] = Field(
        default=None,
        ge=1,
        le=get_settings().retrieval_max_top_k,
        description="Override the number of retrieved chunks",
    )


class TurnModel(BaseModel):
    turn_id: str
    sequence: int
    role: Literal["user", "assistant"]
    content: str
    citations: List[CitationModel]
    source_chunk_ids: List[str]
    no_relevant_context: bool
    created_at: datetime

    @classmethod
    def from_turn(cls, turn: ConversationTurn) -> "TurnModel":
        return cls(
            turn_id=turn.id,
            sequence=turn.sequence,
            role=turn.role.value,
            content=turn.content,
            citations=[CitationModel.from_citation(citation) for citation in turn.citations],
            source_chunk_ids=list(turn.source_chunk_ids),
            no_relevant_context=turn.no_relevant_context,
            created_at=turn.created_at,
        )


class ChatResponse(BaseModel):
    document_id: str
    answer: str
    citations: List[CitationModel]
    no_relevant_context: bool
    turn: TurnModel
    latency_ms: float


class ConversationResponse(BaseModel):
    document_id: str
    turns: List[TurnModel]


class SegmentModel(BaseModel):
    index: int
    chunk_ids: List[str]
    sequence_start: int
    sequence_end: int
    citation: CitationModel

    @classmethod
    def from_segment(cls, segment: TopicSegment) -> "SegmentModel":
        return cls(
            index=segment.index,
            chunk_ids=list(segment.chunk_ids),
            sequence_start=segment.sequence_start,
            sequence_end=segment.sequence_end,
            citation=CitationModel.from_citation(segment.citation),
        )


class SegmentListResponse(BaseModel):
    document_id: str
    segments: List[SegmentModel]


class NotesRequest(BaseModel):
    segment_indices: Optional[List[int]] = Field(
        default=None,
        description="Segments to write notes for; all segments when omitted",
    )


class QuizRequest(BaseModel):
    segment_index: int = Field(..., ge=0)
    count: Optional[int] = Field(default=None, ge=1, le=get_settings().quiz_max_questions)


class GlossaryTermModel(BaseModel):
    term: str
    definition: str


class NoteModel(BaseModel):
    topic: str
    summary: str
    key_points: List[str]
    worked_example: Optional[str] = None
    glossary: List[GlossaryTermModel]


class QuizItemModel(BaseModel):
    question_type: Literal["mcq", "short"]
    difficulty: str
    question: str
    options: List[str]
    correct_option: Optional[int] = None
    explanation: str
    sample_answer: Optional[str] = None


class ArtifactModel(BaseModel):
    artifact_id: str
    document_id: str
    kind: Literal["note", "quiz"]
    segment_index: Optional[int] = None
    citations: List[CitationModel]
    source_chunk_ids: List[str]
    note: Optional[NoteModel] = None
    quiz: Optional[QuizItemModel] = None
    created_at: datetime

    @classmethod
    def from_artifact(cls, artifact: GeneratedArtifact) -> "ArtifactModel":
        note = None
        quiz = None
        payload = artifact.payload
        if isinstance(payload, NotePayload):
            note = NoteModel(
                topic=payload.topic,
                summary=payload.summary,
                key_points=list(payload.key_points),
                worked_example=payload.worked_example,
                glossary=[GlossaryTermModel(term=item.term, definition=item.definition) for item in payload.glossary],
            )
        elif isinstance(payload, QuizPayload):
            quiz = QuizItemModel(
                question_type=payload.question_type.value,
                difficulty=payload.difficulty,
                question=payload.question,
                options=list(payload.options),
                correct_option=payload.correct_option,
                explanation=payload.explanation,
                sample_answer=payload.sample_answer,
            )
        return cls(
            artifact_id=artifact.id,
            document_id=artifact.document_id,
            kind=artifact.kind.value,
            segment_index=artifact.segment_index,
            citations=[CitationModel.from_citation(citation) for citation in artifact.citations],
            source_chunk_ids=list(artifact.source_chunk_ids),
            note=note,
            quiz=quiz,
            created_at=artifact.created_at,
        )


class ArtifactListResponse(BaseModel):
    document_id: str
    artifacts: List[ArtifactModel]
