"""Observability helpers for StudyRAG."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "studyrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    extraction_latency = Histogram(
        "studyrag_extraction_duration_seconds",
        "Time spent extracting text from uploaded PDFs.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    extraction_failures = Counter(
        "studyrag_extraction_failures_total",
        "Extractions that ended in the failed state.",
    )
    chunk_count = Histogram(
        "studyrag_document_chunk_count",
        "Chunks produced per document.",
        buckets=(1, 5, 10, 20, 40, 80, 160, 320),
    )
    embedding_latency = Histogram(
        "studyrag_embedding_duration_seconds",
        "Time spent embedding and publishing a document's chunks.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    )
    retrieval_latency = Histogram(
        "studyrag_retrieval_duration_seconds",
        "Time spent retrieving context chunks.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "studyrag_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "studyrag_grounding_score",
        "Similarity score of retrieved chunks.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "studyrag_generation_duration_seconds",
        "Time spent serving a generation request.",
        ["mode"],
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 60.0),
    )
    no_context_answers = Counter(
        "studyrag_no_relevant_context_total",
        "Questions answered with an insufficient-context signal.",
    )
    upstream_retries = Counter(
        "studyrag_upstream_retries_total",
        "Retried upstream model calls.",
        ["operation"],
    )
    indexed_chunk_count = Gauge(
        "studyrag_indexed_chunk_count",
        "Number of published chunks per document.",
        ["document_id"],
    )

    @classmethod
    def observe_extraction(cls, duration_seconds: float, *, failed: bool = False) -> None:
        cls.extraction_latency.observe(duration_seconds)
        if failed:
            cls.extraction_failures.inc()

    @classmethod
    def observe_indexing(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.embedding_latency.observe(duration_seconds)
        cls.chunk_count.observe(chunk_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, mode: str, duration_seconds: float) -> None:
        cls.generation_latency.labels(mode=mode).observe(duration_seconds)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
