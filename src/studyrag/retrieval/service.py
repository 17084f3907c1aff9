"""Retrieval orchestration built on top of the embedding index."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from studyrag.embeddings import EmbeddingClient, EmbeddingIndex, IndexHit
from studyrag.errors import ModelVersionMismatchError
from studyrag.metrics.observability import PipelineMetrics, get_logger
from studyrag.models import Citation, RetrievalResult
from studyrag.text import token_overlap_score, tokenize


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for retrieval."""

    top_k: int = 5
    max_top_k: int | None = 20
    rerank_lexical: bool = False
    lexical_blend_weight: float = 0.35


@dataclass(frozen=True)
class RetrievalFilters:
    """Optional narrowing (or, for ``extra_document_ids``, widening) of a search."""

    extra_document_ids: Sequence[str] = ()
    page_start: int | None = None
    page_end: int | None = None
    min_score: float | None = None


class Retriever(Protocol):
    """Retrieve relevant chunks of a document for a query string."""

    async def retrieve(
        self,
        document_id: str,
        query_text: str,
        k: int | None = None,
        filters: RetrievalFilters | None = None,
    ) -> Sequence[RetrievalResult]:
        """Return at most ``k`` results, best first."""


class IndexRetriever:
    """Retriever backed by an ``EmbeddingIndex``.

    The query is embedded with the same model version the index was built
    with; anything else is a configuration error, not a degraded search.
    """

    def __init__(
        self,
        index: EmbeddingIndex,
        embedder: EmbeddingClient,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._index = index
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._logger = get_logger("retrieval")

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    async def retrieve(
        self,
        document_id: str,
        query_text: str,
        k: int | None = None,
        filters: RetrievalFilters | None = None,
    ) -> Sequence[RetrievalResult]:
        if self._embedder.model_version != self._index.model_version:
            raise ModelVersionMismatchError(self._index.model_version, self._embedder.model_version)
        filters = filters or RetrievalFilters()
        limit = self._config.top_k if k is None else k
        if self._config.max_top_k:
            limit = min(limit, self._config.max_top_k)
        if limit <= 0:
            return []

        start = time.perf_counter()
        vector = await self._embedder.embed_query(query_text)
        scope = [document_id, *filters.extra_document_ids]
        hits = list(
            self._index.query(
                vector,
                limit,
                document_ids=scope,
                page_start=filters.page_start,
                page_end=filters.page_end,
            )
        )
        results = [self._to_result(hit) for hit in hits]
        if self._config.rerank_lexical and results:
            results = self._rerank_lexical(query_text, results)
        if filters.min_score is not None:
            results = [result for result in results if result.score >= filters.min_score]

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results), (result.score for result in results))
        self._logger.info(
            "retrieval.complete",
            document_id=document_id,
            chunk_count=len(results),
            duration_seconds=duration,
            top_k=limit,
        )
        return results

    def _rerank_lexical(self, query_text: str, results: List[RetrievalResult]) -> List[RetrievalResult]:
        weight = self._clamp_weight(self._config.lexical_blend_weight)
        tokens = set(tokenize(query_text))
        scored: list[RetrievalResult] = []
        for result in results:
            lexical = token_overlap_score(tokens, result.text)
            blended = round((1.0 - weight) * result.score + weight * lexical, 6)
            scored.append(
                RetrievalResult(
                    chunk_id=result.chunk_id,
                    score=blended,
                    citation=result.citation,
                    document_id=result.document_id,
                    sequence_index=result.sequence_index,
                    text=result.text,
                )
            )
        scored.sort(key=lambda item: (-item.score, item.sequence_index, item.document_id))
        return scored

    @staticmethod
    def _to_result(hit: IndexHit) -> RetrievalResult:
        return RetrievalResult(
            chunk_id=hit.chunk_id,
            score=hit.score,
            citation=Citation(document_id=hit.document_id, page_start=hit.page_start, page_end=hit.page_end),
            document_id=hit.document_id,
            sequence_index=hit.sequence_index,
            text=hit.text,
        )

    @staticmethod
    def _clamp_weight(weight: float) -> float:
        if weight < 0.0:
            return 0.0
        if weight > 1.0:
            return 1.0
        return weight
