"""FastAPI application exposing StudyRAG services."""

from __future__ import annotations

import time
from typing import Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from studyrag.api.schemas import (
    ArtifactListResponse,
    ArtifactModel,
    ChatRequest,
    ChatResponse,
    CitationModel,
    ConversationResponse,
    DocumentListResponse,
    DocumentSummary,
    NotesRequest,
    QuizRequest,
    RetrievedChunkModel,
    RetrieveRequest,
    RetrieveResponse,
    SegmentListResponse,
    SegmentModel,
    TurnModel,
)
from studyrag.config import Settings, get_settings
from studyrag.dependencies import AppDependencies, build_dependencies
from studyrag.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    EmbeddingDimensionMismatchError,
    ExtractionFailedError,
    ExtractionInProgressError,
    InvalidTurnError,
    ModelVersionMismatchError,
    NoRelevantContextError,
    OperationTimeoutError,
    SegmentNotFoundError,
    StudyRAGError,
    UnsupportedFormatError,
    UpstreamModelError,
)
from studyrag.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from studyrag.models import ArtifactKind, ConversationTurn
from studyrag.retrieval import RetrievalFilters
from studyrag.services import DocumentPipeline, GenerationOrchestrator

# First match wins, so subclasses must precede their bases
_ERROR_STATUS: tuple[tuple[type[StudyRAGError], int], ...] = (
    (UnsupportedFormatError, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND),
    (SegmentNotFoundError, status.HTTP_404_NOT_FOUND),
    (DocumentNotReadyError, status.HTTP_409_CONFLICT),
    (ExtractionInProgressError, status.HTTP_409_CONFLICT),
    (ExtractionFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidTurnError, status.HTTP_400_BAD_REQUEST),
    (OperationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (UpstreamModelError, status.HTTP_502_BAD_GATEWAY),
    (ModelVersionMismatchError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (EmbeddingDimensionMismatchError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for_error(exc: StudyRAGError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    from studyrag import __version__

    app = FastAPI(title="StudyRAG API", version=__version__)
    app.state.dependencies = deps

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Security dependencies
    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    class RateLimiter:
        def __init__(self, requests: int, window_seconds: int) -> None:
            self.requests = requests
            self.window = window_seconds
            self._buckets: dict[str, list[float]] = {}

        def __call__(self, request: Request) -> None:
            client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "-")
            key = f"{client_ip}:{request.url.path}"
            now = time.time()
            bucket = self._buckets.setdefault(key, [])
            # Drop old entries
            cutoff = now - self.window
            while bucket and bucket[0] < cutoff:
                bucket.pop(0)
            if len(bucket) >= self.requests:
                raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
            bucket.append(now)

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    @app.exception_handler(StudyRAGError)
    async def handle_studyrag_error(request: Request, exc: StudyRAGError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        status_code = status_for_error(exc)
        log = logger.error if status_code >= 500 else logger.info
        log("request.error", correlation_id=correlation_id, error_type=type(exc).__name__, detail=str(exc))
        content: dict[str, object] = {"detail": str(exc), "correlation_id": correlation_id}
        if isinstance(exc, ExtractionFailedError) and exc.document_id:
            content["document_id"] = exc.document_id
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_pipeline(dep: AppDependencies = Depends(get_dependencies)) -> DocumentPipeline:
        return dep.pipeline

    def get_orchestrator(dep: AppDependencies = Depends(get_dependencies)) -> GenerationOrchestrator:
        return dep.orchestrator

    def summarize(pipeline: DocumentPipeline, document_id: str) -> DocumentSummary:
        return DocumentSummary.from_document(pipeline.get(document_id), indexed=pipeline.is_indexed(document_id))

    @app.post("/documents", response_model=DocumentSummary, status_code=status.HTTP_201_CREATED)
    async def upload_document(
        file: UploadFile = File(...),
        pipeline: DocumentPipeline = Depends(get_pipeline),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> DocumentSummary:
        filename = file.filename or f"upload-{uuid4().hex}.pdf"
        # Read in 1MB chunks so oversized uploads are refused early
        parts: list[bytes] = []
        bytes_read = 0
        while True:
            part = await file.read(1024 * 1024)
            if not part:
                break
            bytes_read += len(part)
            if bytes_read > settings.max_upload_bytes:
                await file.close()
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"File too large (>{settings.max_upload_size_mb}MB): {filename}",
                )
            parts.append(part)
        await file.close()
        if bytes_read == 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"File is empty: {filename}")
        document = await pipeline.ingest(b"".join(parts), filename)
        return summarize(pipeline, document.id)

    @app.get("/documents", response_model=DocumentListResponse)
    async def list_documents(pipeline: DocumentPipeline = Depends(get_pipeline)) -> DocumentListResponse:
        return DocumentListResponse(
            documents=[
                DocumentSummary.from_document(document, indexed=pipeline.is_indexed(document.id))
                for document in pipeline.list()
            ]
        )

    @app.get("/documents/{document_id}", response_model=DocumentSummary)
    async def get_document(document_id: str, pipeline: DocumentPipeline = Depends(get_pipeline)) -> DocumentSummary:
        return summarize(pipeline, document_id)

    @app.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_document(
        document_id: str,
        pipeline: DocumentPipeline = Depends(get_pipeline),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        await pipeline.delete(document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/documents/{document_id}/retrieve", response_model=RetrieveResponse)
    async def retrieve_chunks(
        document_id: str,
        payload: RetrieveRequest,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> RetrieveResponse:
        results = await orchestrator.retrieve(
            document_id,
            payload.query,
            k=payload.top_k,
            filters=RetrievalFilters(
                extra_document_ids=tuple(payload.extra_document_ids),
                page_start=payload.page_start,
                page_end=payload.page_end,
                min_score=payload.min_score,
            ),
        )
        return RetrieveResponse(results=[RetrievedChunkModel.from_result(result) for result in results])

    @app.post("/documents/{document_id}/chat", response_model=ChatResponse)
    async def chat(
        document_id: str,
        payload: ChatRequest,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ChatResponse:
        if not payload.question.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Question must not be blank")
        start = time.perf_counter()
        try:
            turn: Optional[ConversationTurn] = await orchestrator.answer(document_id, payload.question, top_k=payload.top_k)
        except NoRelevantContextError as exc:
            if exc.turn is None:
                raise
            turn = exc.turn
        return ChatResponse(
            document_id=document_id,
            answer=turn.content,
            citations=[CitationModel.from_citation(citation) for citation in turn.citations],
            no_relevant_context=turn.no_relevant_context,
            turn=TurnModel.from_turn(turn),
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    @app.get("/documents/{document_id}/conversation", response_model=ConversationResponse)
    async def conversation(
        document_id: str,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> ConversationResponse:
        dep.pipeline.get(document_id)
        turns = dep.conversations.history(document_id)
        return ConversationResponse(document_id=document_id, turns=[TurnModel.from_turn(turn) for turn in turns])

    @app.get("/documents/{document_id}/segments", response_model=SegmentListResponse)
    async def segments(
        document_id: str,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    ) -> SegmentListResponse:
        return SegmentListResponse(
            document_id=document_id,
            segments=[SegmentModel.from_segment(segment) for segment in orchestrator.segments(document_id)],
        )

    @app.post(
        "/documents/{document_id}/notes",
        response_model=ArtifactListResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def generate_notes(
        document_id: str,
        payload: NotesRequest,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ArtifactListResponse:
        artifacts = await orchestrator.notes(document_id, payload.segment_indices)
        return ArtifactListResponse(
            document_id=document_id,
            artifacts=[ArtifactModel.from_artifact(artifact) for artifact in artifacts],
        )

    @app.post(
        "/documents/{document_id}/quiz",
        response_model=ArtifactListResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def generate_quiz(
        document_id: str,
        payload: QuizRequest,
        orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ArtifactListResponse:
        artifacts = await orchestrator.quiz(document_id, payload.segment_index, count=payload.count)
        return ArtifactListResponse(
            document_id=document_id,
            artifacts=[ArtifactModel.from_artifact(artifact) for artifact in artifacts],
        )

    @app.get("/documents/{document_id}/artifacts", response_model=ArtifactListResponse)
    async def list_artifacts(
        document_id: str,
        kind: Optional[Literal["note", "quiz"]] = None,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> ArtifactListResponse:
        dep.pipeline.get(document_id)
        artifacts = dep.artifacts.list(document_id, ArtifactKind(kind) if kind else None)
        return ArtifactListResponse(
            document_id=document_id,
            artifacts=[ArtifactModel.from_artifact(artifact) for artifact in artifacts],
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        try:
            _ = dep.index.count()
            return {"status": "ready"}
        except Exception as exc:  # pragma: no cover - defensive
            return {"status": "error", "detail": str(exc)}

    return app


app = create_app()
