"""Grounded generation of chat answers, study notes and quizzes."""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Sequence, TypeVar, Union
from uuid import uuid4

from studyrag.conversation import ConversationManager
from studyrag.embeddings import EmbeddingIndex
from studyrag.errors import (
    DocumentNotReadyError,
    NoRelevantContextError,
    OperationTimeoutError,
    SegmentNotFoundError,
    UpstreamModelError,
)
from studyrag.ingestion import DocumentStore
from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import (
    ArtifactKind,
    Chunk,
    Citation,
    ConversationTurn,
    Document,
    GeneratedArtifact,
    RetrievalResult,
    TopicSegment,
)
from studyrag.retrieval import RetrievalFilters, Retriever
from studyrag.services.artifacts import ArtifactRepository
from studyrag.services.generation import GenerationBackend, TemplateGenerator
from studyrag.services.prompts import INSUFFICIENT_CONTEXT, PromptBuilder
from studyrag.services.schemas import NoteDraft, QuizDraft, parse_json_object
from studyrag.services.segmentation import TopicSegmenter
from studyrag.upstream import RetryPolicy, call_upstream

T = TypeVar("T")

_MARKER_RE = re.compile(r"\[(\d+)\]")

NO_CONTEXT_REPLY = "I could not find anything in this document that answers that question."


class GenerationMode(str, Enum):
    ANSWER = "answer"
    NOTES = "notes"
    QUIZ = "quiz"


@dataclass(frozen=True)
class AnswerRequest:
    question: str
    top_k: int | None = None


@dataclass(frozen=True)
class NotesRequest:
    segment_indices: Sequence[int] | None = None


@dataclass(frozen=True)
class QuizRequest:
    segment_index: int
    count: int | None = None


GenerationRequest = Union[AnswerRequest, NotesRequest, QuizRequest]


@dataclass(frozen=True)
class OrchestratorConfig:
    """Configuration for grounded generation."""

    min_score: float = 0.15
    max_new_tokens: int = 512
    temperature: float = 0.3
    timeout_seconds: float | None = 180.0
    quiz_default_questions: int = 3
    quiz_max_questions: int = 10


class GenerationOrchestrator:
    """Turns retrieved chunks into cited answers, notes and quiz items.

    Every request runs under one deadline. Results are staged in memory and
    committed (conversation turns or artifacts) as the last step, so a
    timed-out or cancelled request leaves nothing behind.
    """

    def __init__(
        self,
        *,
        documents: DocumentStore,
        index: EmbeddingIndex,
        retriever: Retriever,
        conversations: ConversationManager,
        artifacts: ArtifactRepository,
        generator: GenerationBackend | None = None,
        segmenter: TopicSegmenter | None = None,
        prompt_builder: PromptBuilder | None = None,
        config: OrchestratorConfig | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._documents = documents
        self._index = index
        self._retriever = retriever
        self._conversations = conversations
        self._artifacts = artifacts
        self._generator = generator or TemplateGenerator()
        self._segmenter = segmenter or TopicSegmenter()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._config = config or OrchestratorConfig()
        self._policy = policy or RetryPolicy()
        self._logger = get_logger("generation")

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    async def generate(
        self,
        mode: GenerationMode | str,
        document_id: str,
        request: GenerationRequest,
        *,
        timeout: float | None = None,
    ) -> ConversationTurn | List[GeneratedArtifact]:
        mode = GenerationMode(mode)
        if mode is GenerationMode.ANSWER and isinstance(request, AnswerRequest):
            return await self.answer(document_id, request.question, top_k=request.top_k, timeout=timeout)
        if mode is GenerationMode.NOTES and isinstance(request, NotesRequest):
            return await self.notes(document_id, request.segment_indices, timeout=timeout)
        if mode is GenerationMode.QUIZ and isinstance(request, QuizRequest):
            return await self.quiz(document_id, request.segment_index, count=request.count, timeout=timeout)
        raise TypeError(f"{type(request).__name__} is not a valid request for mode {mode.value!r}")

    async def retrieve(
        self,
        document_id: str,
        query_text: str,
        k: int | None = None,
        filters: RetrievalFilters | None = None,
    ) -> Sequence[RetrievalResult]:
        self._require_ready(document_id)
        return await self._retriever.retrieve(document_id, query_text, k=k, filters=filters)

    async def answer(
        self,
        document_id: str,
        question: str,
        *,
        top_k: int | None = None,
        timeout: float | None = None,
    ) -> ConversationTurn:
        """Answer ``question`` from the document and record both turns.

        Raises ``NoRelevantContextError`` (carrying the recorded assistant
        turn) when nothing in the document clears ``min_score``.
        """

        question = question.strip()
        if not question:
            raise ValueError("Question must not be empty")
        return await self._timed(GenerationMode.ANSWER, self._answer(document_id, question, top_k), timeout)

    async def notes(
        self,
        document_id: str,
        segment_indices: Sequence[int] | None = None,
        *,
        timeout: float | None = None,
    ) -> List[GeneratedArtifact]:
        return await self._timed(GenerationMode.NOTES, self._notes(document_id, segment_indices), timeout)

    async def quiz(
        self,
        document_id: str,
        segment_index: int,
        *,
        count: int | None = None,
        timeout: float | None = None,
    ) -> List[GeneratedArtifact]:
        count = self._config.quiz_default_questions if count is None else count
        if count < 1:
            raise ValueError("Quiz count must be at least 1")
        count = min(count, self._config.quiz_max_questions)
        return await self._timed(GenerationMode.QUIZ, self._quiz(document_id, segment_index, count), timeout)

    def segments(self, document_id: str) -> List[TopicSegment]:
        self._require_ready(document_id)
        return self._segmenter.segment(document_id, self._index.document_chunks(document_id))

    async def _answer(self, document_id: str, question: str, top_k: int | None) -> ConversationTurn:
        self._require_ready(document_id)
        results = list(
            await self._retriever.retrieve(
                document_id,
                question,
                k=top_k,
                filters=RetrievalFilters(min_score=self._config.min_score),
            )
        )
        if not results:
            return await self._no_context(document_id, question)

        prompt = self._prompt_builder.answer(
            question,
            [(result.text, result.citation.page_start, result.citation.page_end) for result in results],
        )
        reply = await self._complete("generation.answer", prompt, _parse_answer)
        if reply == INSUFFICIENT_CONTEXT:
            return await self._no_context(document_id, question)

        grounding = _cited_results(reply, results)
        async with self._committing(document_id):
            _, assistant_turn = await self._conversations.append_exchange(
                document_id,
                question,
                reply,
                _merge_citations(result.citation for result in grounding),
                source_chunk_ids=[result.chunk_id for result in grounding],
            )
        return assistant_turn

    async def _no_context(self, document_id: str, question: str) -> ConversationTurn:
        async with self._committing(document_id):
            _, assistant_turn = await self._conversations.append_exchange(
                document_id,
                question,
                NO_CONTEXT_REPLY,
                no_relevant_context=True,
            )
        PipelineMetrics.no_context_answers.inc()
        self._logger.info("generation.no_relevant_context", document_id=document_id, sequence=assistant_turn.sequence)
        raise NoRelevantContextError(
            f"No passage of {document_id} is relevant enough to answer the question",
            turn=assistant_turn,
        )

    async def _notes(self, document_id: str, segment_indices: Sequence[int] | None) -> List[GeneratedArtifact]:
        self._require_ready(document_id)
        chunks = self._chunks_by_id(document_id)
        segments = self._segmenter.segment(document_id, list(chunks.values()))
        if segment_indices is not None:
            segments = [_select_segment(segments, index) for index in dict.fromkeys(segment_indices)]

        staged: List[GeneratedArtifact] = []
        for segment in segments:
            prompt = self._prompt_builder.notes(_segment_passages(segment, chunks))
            draft = await self._complete(
                "generation.notes",
                prompt,
                lambda text: parse_json_object(text, NoteDraft),
            )
            staged.append(_artifact(segment, ArtifactKind.NOTE, draft.to_payload()))
        async with self._committing(document_id):
            return await self._artifacts.add_many(document_id, staged)

    async def _quiz(self, document_id: str, segment_index: int, count: int) -> List[GeneratedArtifact]:
        self._require_ready(document_id)
        chunks = self._chunks_by_id(document_id)
        segment = _select_segment(self._segmenter.segment(document_id, list(chunks.values())), segment_index)
        prompt = self._prompt_builder.quiz(_segment_passages(segment, chunks), count)

        def parse(text: str) -> QuizDraft:
            draft = parse_json_object(text, QuizDraft)
            if len(draft.questions) < count:
                raise UpstreamModelError(f"Model returned {len(draft.questions)} of {count} questions")
            return draft

        draft = await self._complete("generation.quiz", prompt, parse)
        staged = [
            _artifact(segment, ArtifactKind.QUIZ, question.to_payload())
            for question in draft.questions[:count]
        ]
        async with self._committing(document_id):
            return await self._artifacts.add_many(document_id, staged)

    async def _complete(self, operation: str, prompt: str, parse: Callable[[str], T]) -> T:
        # Parsing runs inside the upstream call so malformed output is retried
        def run() -> T:
            return parse(
                self._generator.complete(
                    prompt,
                    max_tokens=self._config.max_new_tokens,
                    temperature=self._config.temperature,
                )
            )

        return await call_upstream(operation, run, policy=self._policy)

    async def _timed(self, mode: GenerationMode, work: Awaitable[T], timeout: float | None) -> T:
        deadline = timeout if timeout is not None else self._config.timeout_seconds
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(work, deadline)
        except asyncio.TimeoutError as exc:
            self._logger.warning("generation.timeout", mode=mode.value, timeout_seconds=deadline)
            raise OperationTimeoutError(f"{mode.value} generation timed out after {deadline}s") from exc
        finally:
            duration = time.perf_counter() - start
            PipelineMetrics.observe_generation(mode.value, duration)
            self._logger.info("generation.finished", mode=mode.value, duration_seconds=duration)

    @contextlib.asynccontextmanager
    async def _committing(self, document_id: str) -> AsyncIterator[None]:
        # Serialized with deletion; a document deleted mid-generation gets nothing written
        async with self._documents.lock_for(document_id):
            self._documents.get(document_id)
            yield

    def _require_ready(self, document_id: str) -> Document:
        document = self._documents.get(document_id)
        if not document.is_extracted:
            raise DocumentNotReadyError(f"Document {document_id} is {document.status.value}, not extracted")
        if not self._index.is_indexed(document_id):
            raise DocumentNotReadyError(f"Document {document_id} has not been indexed")
        return document

    def _chunks_by_id(self, document_id: str) -> Dict[str, Chunk]:
        return {chunk.id: chunk for chunk in self._index.document_chunks(document_id)}


def _parse_answer(text: str) -> str:
    reply = text.strip()
    if not reply:
        raise UpstreamModelError("Model returned an empty answer")
    if reply.startswith(INSUFFICIENT_CONTEXT):
        return INSUFFICIENT_CONTEXT
    return reply


def _cited_results(reply: str, results: Sequence[RetrievalResult]) -> List[RetrievalResult]:
    """Return the results an answer cites by ``[n]``; all of them if it cites none."""

    cited: List[RetrievalResult] = []
    for number in dict.fromkeys(int(match) for match in _MARKER_RE.findall(reply)):
        if 1 <= number <= len(results):
            cited.append(results[number - 1])
    return cited or list(results)


def _merge_citations(citations) -> tuple[Citation, ...]:
    """Deduplicate citations and fold overlapping page ranges of one document."""

    merged: List[Citation] = []
    for citation in sorted(set(citations), key=lambda item: (item.document_id, item.page_start, item.page_end)):
        last = merged[-1] if merged else None
        if last is not None and last.document_id == citation.document_id and citation.page_start <= last.page_end:
            merged[-1] = Citation(last.document_id, last.page_start, max(last.page_end, citation.page_end))
        else:
            merged.append(citation)
    return tuple(merged)


def _select_segment(segments: Sequence[TopicSegment], index: int) -> TopicSegment:
    if not 0 <= index < len(segments):
        raise SegmentNotFoundError(f"Segment {index} does not exist; the document has {len(segments)}")
    return segments[index]


def _segment_passages(segment: TopicSegment, chunks: Dict[str, Chunk]) -> List[tuple[str, int, int]]:
    return [
        (chunks[chunk_id].text, chunks[chunk_id].page_start, chunks[chunk_id].page_end)
        for chunk_id in segment.chunk_ids
    ]


def _artifact(segment: TopicSegment, kind: ArtifactKind, payload) -> GeneratedArtifact:
    return GeneratedArtifact(
        id=uuid4().hex,
        document_id=segment.document_id,
        kind=kind,
        payload=payload,
        citations=(segment.citation,),
        source_chunk_ids=segment.chunk_ids,
        segment_index=segment.index,
    )
