"""Construction of the service graph from ``Settings``."""

from __future__ import annotations

from dataclasses import dataclass

import chromadb
from chromadb.api import ClientAPI

from studyrag.chunking import Chunker, ChunkingConfig
from studyrag.config import Settings
from studyrag.conversation import ConversationManager
from studyrag.embeddings import ChromaEmbeddingIndex, EmbeddingClient, EmbeddingConfig, HuggingFaceEmbeddingBackend
from studyrag.ingestion import DocumentStore, PdfTextExtractor
from studyrag.retrieval import IndexRetriever, RetrievalConfig
from studyrag.services import (
    ArtifactRepository,
    DocumentPipeline,
    GenerationBackend,
    GenerationConfig,
    GenerationOrchestrator,
    OrchestratorConfig,
    PromptBuilder,
    SegmentationConfig,
    TemplateGenerator,
    TopicSegmenter,
    TransformersGenerator,
)
from studyrag.upstream import RetryPolicy


@dataclass(frozen=True)
class AppDependencies:
    store: DocumentStore
    index: ChromaEmbeddingIndex
    conversations: ConversationManager
    artifacts: ArtifactRepository
    pipeline: DocumentPipeline
    orchestrator: GenerationOrchestrator


def build_dependencies(
    settings: Settings,
    *,
    extractor: PdfTextExtractor | None = None,
    generator: GenerationBackend | None = None,
    chroma_client: ClientAPI | None = None,
) -> AppDependencies:
    policy = RetryPolicy(
        max_attempts=settings.upstream_max_attempts,
        backoff_seconds=settings.upstream_backoff_seconds,
        max_backoff_seconds=settings.upstream_max_backoff_seconds,
        call_timeout_seconds=settings.upstream_call_timeout_seconds,
    )
    embedding_backend = HuggingFaceEmbeddingBackend(
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
            normalize=True,
        ),
    )
    embedder = EmbeddingClient(embedding_backend, policy=policy, batch_size=settings.embedding_batch_size)

    if chroma_client is None and settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    index = ChromaEmbeddingIndex(
        model_version=embedder.model_version,
        dim=embedder.dim,
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
        manifest_path=settings.data_dir / "index-manifest.json",
    )

    store = DocumentStore(settings.data_dir, extractor=extractor)
    conversations = ConversationManager(settings.data_dir)
    artifacts = ArtifactRepository(settings.data_dir)
    pipeline = DocumentPipeline(
        store=store,
        chunker=Chunker(ChunkingConfig(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)),
        embedder=embedder,
        index=index,
        conversations=conversations,
        artifacts=artifacts,
    )
    retriever = IndexRetriever(
        index,
        embedder,
        RetrievalConfig(
            top_k=settings.max_chunks,
            max_top_k=settings.retrieval_max_top_k,
            rerank_lexical=settings.retrieval_rerank_lexical,
            lexical_blend_weight=settings.retrieval_lexical_blend_weight,
        ),
    )
    if generator is None:
        generator = TransformersGenerator(
            GenerationConfig(
                model=settings.generator_model,
                max_new_tokens=settings.generator_max_new_tokens,
                temperature=settings.generator_temperature,
                use_model=settings.use_model_generator,
            ),
            fallback=TemplateGenerator(),
        )
    orchestrator = GenerationOrchestrator(
        documents=store,
        index=index,
        retriever=retriever,
        conversations=conversations,
        artifacts=artifacts,
        generator=generator,
        segmenter=TopicSegmenter(
            SegmentationConfig(
                similarity_threshold=settings.segment_similarity_threshold,
                max_chunks=settings.segment_max_chunks,
            )
        ),
        prompt_builder=PromptBuilder(),
        config=OrchestratorConfig(
            min_score=settings.retrieval_min_score,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            timeout_seconds=settings.generation_timeout_seconds,
            quiz_default_questions=settings.quiz_default_questions,
            quiz_max_questions=settings.quiz_max_questions,
        ),
        policy=policy,
    )
    return AppDependencies(
        store=store,
        index=index,
        conversations=conversations,
        artifacts=artifacts,
        pipeline=pipeline,
        orchestrator=orchestrator,
    )
