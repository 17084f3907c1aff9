"""Document lifecycle: upload, extraction, chunking, indexing and deletion."""

from __future__ import annotations

import contextlib
import dataclasses
from typing import List

from studyrag.chunking import Chunker
from studyrag.conversation import ConversationManager
from studyrag.embeddings import EmbeddingClient, EmbeddingIndex
from studyrag.errors import DocumentNotFoundError, ExtractionInProgressError, ModelVersionMismatchError
from studyrag.ingestion import DocumentStore
from studyrag.metrics.observability import PipelineMetrics, TimedSection, get_logger
from studyrag.models import Document
from studyrag.services.artifacts import ArtifactRepository


class DocumentPipeline:
    """Drives a document from upload bytes to a published, searchable index.

    Deleting a document cascades to its chunks, embeddings, conversation and
    generated artifacts. The document record goes last, so an interrupted
    delete can simply be repeated.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        chunker: Chunker,
        embedder: EmbeddingClient,
        index: EmbeddingIndex,
        conversations: ConversationManager,
        artifacts: ArtifactRepository,
    ) -> None:
        self._store = store
        self._chunker = chunker
        self._embedder = embedder
        self._index = index
        self._conversations = conversations
        self._artifacts = artifacts
        self._logger = get_logger("pipeline")

    async def ingest(self, data: bytes, filename: str) -> Document:
        """Store, extract and index an upload; returns the extracted document.

        If indexing fails the upload is removed again, so a document is either
        searchable or gone. Extraction failures keep the ``failed`` record.
        """

        document = await self._store.ingest(data, filename)
        try:
            await self.index_document(document.id)
        except BaseException:
            await self._discard(document.id)
            raise
        return document

    async def index_document(self, document_id: str) -> int:
        if self._embedder.model_version != self._index.model_version:
            raise ModelVersionMismatchError(self._index.model_version, self._embedder.model_version)
        async with self._store.lock_for(document_id):
            document = self._store.get(document_id)
            chunks = self._chunker.chunk(document)
            with TimedSection(lambda duration: PipelineMetrics.observe_indexing(duration, len(chunks))):
                vectors = await self._embedder.embed_documents([chunk.text for chunk in chunks])
                embedded = [
                    dataclasses.replace(chunk, embedding=vector) for chunk, vector in zip(chunks, vectors, strict=True)
                ]
                count = await self._index.index(document_id, embedded)
        PipelineMetrics.indexed_chunk_count.labels(document_id=document_id).set(count)
        self._logger.info(
            "indexing.complete",
            document_id=document_id,
            chunk_count=count,
            page_count=document.page_count,
            model_version=self._index.model_version,
        )
        return count

    async def delete(self, document_id: str) -> None:
        self._store.get(document_id)
        if self._store.is_extracting(document_id):
            raise ExtractionInProgressError(f"Cannot delete {document_id} while it is being extracted")
        async with self._store.lock_for(document_id):
            # A concurrent delete may have won the lock first
            self._store.get(document_id)
            await self._index.delete_document(document_id)
            await self._conversations.delete(document_id)
            await self._artifacts.delete(document_id)
            self._store.delete(document_id)
        with contextlib.suppress(KeyError):
            PipelineMetrics.indexed_chunk_count.remove(document_id)
        self._logger.info("document.deleted", document_id=document_id)

    def get(self, document_id: str) -> Document:
        return self._store.get(document_id)

    def list(self) -> List[Document]:
        return self._store.list()

    def is_indexed(self, document_id: str) -> bool:
        return self._index.is_indexed(document_id)

    async def _discard(self, document_id: str) -> None:
        async with self._store.lock_for(document_id):
            await self._index.delete_document(document_id)
            with contextlib.suppress(DocumentNotFoundError):
                self._store.delete(document_id)
        self._logger.warning("ingestion.rolled_back", document_id=document_id)
