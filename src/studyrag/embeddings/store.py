"""Vector index over chunk embeddings, backed by Chroma."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Protocol, Sequence
from uuid import uuid4

import chromadb
from chromadb.api import ClientAPI

from studyrag.errors import EmbeddingDimensionMismatchError, ModelVersionMismatchError
from studyrag.metrics.observability import get_logger
from studyrag.models import Chunk
from studyrag.storage import atomic_write_json

# Cosine similarity is the only metric: Chroma stores cosine distance and
# every score reported by the index is ``1 - distance``.
DISTANCE_SPACE = "cosine"


@dataclass(frozen=True)
class IndexHit:
    """One nearest-neighbour match returned by ``query``."""

    chunk_id: str
    score: float
    document_id: str
    sequence_index: int
    page_start: int
    page_end: int
    text: str


class EmbeddingIndex(Protocol):
    """Protocol for vector storage and similarity search."""

    @property
    def model_version(self) -> str:
        """Embedding model version pinned by this index."""

    @property
    def dim(self) -> int:
        """Vector dimension pinned by this index."""

    async def index(self, document_id: str, chunks: Sequence[Chunk]) -> int:
        """Publish every embedded chunk of a document as one batch."""

    def query(
        self,
        vector: Sequence[float],
        k: int,
        *,
        document_ids: Sequence[str] | None = None,
        page_start: int | None = None,
        page_end: int | None = None,
    ) -> Sequence[IndexHit]:
        """Return at most ``k`` published chunks ordered by descending score."""

    async def delete_document(self, document_id: str) -> bool:
        """Remove every chunk and embedding of a document."""

    def document_chunks(self, document_id: str) -> Sequence[Chunk]:
        """Return the published chunks of a document in sequence order."""

    def is_indexed(self, document_id: str) -> bool:
        """Return whether a document has a published batch."""


class ChromaEmbeddingIndex:
    """Chroma-backed embedding index with batch-atomic publication.

    Chunks are written under a fresh ``batch_id`` and stay invisible to
    queries until the manifest maps their document to that batch. The
    manifest (document -> batch, plus the model pin) is kept in memory and,
    when ``manifest_path`` is given, in a JSON file next to the collection.
    """

    _logger = get_logger("index")

    def __init__(
        self,
        *,
        model_version: str,
        dim: int,
        collection_name: str = "studyrag",
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
        manifest_path: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._model_version = model_version
        self._dim = dim
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": DISTANCE_SPACE, "embedding_model": model_version, "embedding_dim": dim},
        )
        self._check_pin(self._collection.metadata or {})
        self._manifest_path = Path(manifest_path) if manifest_path is not None else None
        self._published: Dict[str, str] = self._load_manifest()
        self._lock = asyncio.Lock()

    @property
    def model_version(self) -> str:
        return self._model_version

    @property
    def dim(self) -> int:
        return self._dim

    async def index(self, document_id: str, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            raise ValueError(f"No chunks to index for {document_id}")
        for chunk in chunks:
            if chunk.document_id != document_id:
                raise ValueError(f"Chunk {chunk.id} belongs to {chunk.document_id}, not {document_id}")
            if chunk.embedding is None:
                raise ValueError(f"Chunk {chunk.id} has no embedding")
            if len(chunk.embedding) != self._dim:
                raise EmbeddingDimensionMismatchError(self._dim, len(chunk.embedding))

        batch_id = uuid4().hex
        await asyncio.to_thread(
            self._collection.upsert,
            ids=[f"{batch_id}:{chunk.id}" for chunk in chunks],
            documents=[chunk.text for chunk in chunks],
            embeddings=[list(chunk.embedding or ()) for chunk in chunks],
            metadatas=[self._serialize_chunk(chunk, batch_id) for chunk in chunks],
        )
        async with self._lock:
            previous = self._published.get(document_id)
            published = {**self._published, document_id: batch_id}
            try:
                self._save_manifest(published)
            except BaseException:
                await asyncio.to_thread(self._collection.delete, where={"batch_id": batch_id})
                raise
            self._published = published
        if previous is not None:
            await asyncio.to_thread(self._collection.delete, where={"batch_id": previous})
        self._logger.info("index.published", document_id=document_id, batch_id=batch_id, chunk_count=len(chunks))
        return len(chunks)

    def query(
        self,
        vector: Sequence[float],
        k: int,
        *,
        document_ids: Sequence[str] | None = None,
        page_start: int | None = None,
        page_end: int | None = None,
    ) -> Sequence[IndexHit]:
        if len(vector) != self._dim:
            raise EmbeddingDimensionMismatchError(self._dim, len(vector))
        if k <= 0:
            return []
        where = self._scope_filter(document_ids, page_start=page_start, page_end=page_end)
        if where is None:
            return []
        candidates = self._collection.get(where=where, include=[])
        available = len(candidates.get("ids") or [])
        if not available:
            return []
        # Over-fetch so equal scores at the cut-off are ordered by sequence
        n_results = min(available, max(k * 2, k + 8))
        results = self._collection.query(
            query_embeddings=[[float(value) for value in vector]],
            n_results=n_results,
            where=where,
            include=["documents", "metadatas", "distances"],
        )
        hits = self._deserialize_results(results)
        hits.sort(key=lambda hit: (-hit.score, hit.sequence_index, hit.document_id))
        return hits[:k]

    async def delete_document(self, document_id: str) -> bool:
        async with self._lock:
            existed = document_id in self._published
            published = {doc: batch for doc, batch in self._published.items() if doc != document_id}
            self._save_manifest(published)
            self._published = published
        # Also sweeps batches that were written but never published
        await asyncio.to_thread(self._collection.delete, where={"document_id": document_id})
        self._logger.info("index.deleted", document_id=document_id, existed=existed)
        return existed

    def document_chunks(self, document_id: str) -> Sequence[Chunk]:
        batch_id = self._published.get(document_id)
        if batch_id is None:
            return []
        batch = self._collection.get(
            where={"batch_id": batch_id},
            include=["documents", "metadatas", "embeddings"],
        )
        ids = batch.get("ids") or []
        documents = batch.get("documents")
        metadatas = batch.get("metadatas")
        embeddings = batch.get("embeddings")
        chunks: List[Chunk] = []
        for position in range(len(ids)):
            metadata = metadatas[position] if metadatas is not None else {}
            embedding = embeddings[position] if embeddings is not None else None
            chunks.append(
                Chunk(
                    id=str(metadata.get("chunk_id", ids[position])),
                    document_id=str(metadata.get("document_id", document_id)),
                    text=documents[position] if documents is not None else "",
                    page_start=int(metadata.get("page_start", 1)),
                    page_end=int(metadata.get("page_end", 1)),
                    sequence_index=int(metadata.get("sequence_index", 0)),
                    char_start=int(metadata.get("char_start", 0)),
                    char_end=int(metadata.get("char_end", 0)),
                    embedding=tuple(float(value) for value in embedding) if embedding is not None else None,
                )
            )
        chunks.sort(key=lambda chunk: chunk.sequence_index)
        return chunks

    def is_indexed(self, document_id: str) -> bool:
        return document_id in self._published

    def published_documents(self) -> List[str]:
        return sorted(self._published)

    def count(self) -> int:
        return sum(self.count_by_document().values())

    def count_by_document(self) -> Mapping[str, int]:
        counts: dict[str, int] = {}
        if not self._published:
            return counts
        # paginate through metadatas only
        limit = 1000
        offset = 0
        where = {"batch_id": {"$in": sorted(self._published.values())}}
        while True:
            batch = self._collection.get(where=where, include=["metadatas"], limit=limit, offset=offset)
            metadatas = batch.get("metadatas") or []
            for md in metadatas:
                if not isinstance(md, Mapping):
                    continue
                document_id = str(md.get("document_id", ""))
                counts[document_id] = counts.get(document_id, 0) + 1
            if len(metadatas) < limit:
                break
            offset += limit
        return counts

    def _scope_filter(
        self,
        document_ids: Sequence[str] | None,
        *,
        page_start: int | None,
        page_end: int | None,
    ) -> Dict[str, Any] | None:
        if document_ids is None:
            batches = sorted(self._published.values())
        else:
            batches = [self._published[doc] for doc in dict.fromkeys(document_ids) if doc in self._published]
        if not batches:
            return None
        clauses: List[Dict[str, Any]] = [{"batch_id": {"$in": batches}}]
        # Keep chunks whose page span intersects the requested window
        if page_start is not None:
            clauses.append({"page_end": {"$gte": page_start}})
        if page_end is not None:
            clauses.append({"page_start": {"$lte": page_end}})
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    def _check_pin(self, pin: Mapping[str, Any]) -> None:
        model = pin.get("embedding_model")
        if model is not None and model != self._model_version:
            raise ModelVersionMismatchError(str(model), self._model_version)
        dim = pin.get("embedding_dim")
        if dim is not None and int(dim) != self._dim:
            raise EmbeddingDimensionMismatchError(int(dim), self._dim)

    def _load_manifest(self) -> Dict[str, str]:
        if self._manifest_path is None or not self._manifest_path.exists():
            return {}
        payload = json.loads(self._manifest_path.read_text(encoding="utf-8"))
        self._check_pin(payload)
        documents = payload.get("documents") or {}
        return {str(doc): str(batch) for doc, batch in documents.items()}

    def _save_manifest(self, published: Mapping[str, str]) -> None:
        if self._manifest_path is None:
            return
        atomic_write_json(
            self._manifest_path,
            {
                "embedding_model": self._model_version,
                "embedding_dim": self._dim,
                "distance": DISTANCE_SPACE,
                "documents": dict(sorted(published.items())),
            },
        )

    @staticmethod
    def _serialize_chunk(chunk: Chunk, batch_id: str) -> MutableMapping[str, Any]:
        return {
            "chunk_id": chunk.id,
            "document_id": chunk.document_id,
            "batch_id": batch_id,
            "sequence_index": chunk.sequence_index,
            "page_start": chunk.page_start,
            "page_end": chunk.page_end,
            "char_start": chunk.char_start,
            "char_end": chunk.char_end,
        }

    def _deserialize_results(self, results: Mapping[str, object]) -> List[IndexHit]:
        ids = self._first(results.get("ids"))
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        hits: List[IndexHit] = []
        for idx, document, metadata, distance in zip(ids, documents, metadatas, distances, strict=False):
            hits.append(
                IndexHit(
                    chunk_id=str(metadata.get("chunk_id", idx)),
                    score=round(1.0 - float(distance), 6),
                    document_id=str(metadata.get("document_id", "")),
                    sequence_index=int(metadata.get("sequence_index", 0)),
                    page_start=int(metadata.get("page_start", 1)),
                    page_end=int(metadata.get("page_end", 1)),
                    text=document or "",
                )
            )
        return hits

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []
