"""Embedding backends and the retrying client used by indexing and retrieval."""

from __future__ import annotations

import hashlib
import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from studyrag.errors import EmbeddingDimensionMismatchError, UpstreamModelError
from studyrag.text import tokenize
from studyrag.upstream import RetryPolicy, call_upstream

LOGGER = logging.getLogger(__name__)

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None


class EmbeddingBackend(Protocol):
    """Protocol describing a versioned embedding model."""

    @property
    def model_version(self) -> str:
        """Identifier pinned by every index built with this backend."""

    @property
    def dim(self) -> int:
        """Dimension of every produced vector."""

    def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        """Return one vector per text."""

    def embed_query(self, text: str) -> Vector:
        """Return the vector for a query string."""


def _normalize(vector: Sequence[float]) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Deterministic feature-hashing embeddings used offline and in tests.

    Content words are hashed into signed buckets with sublinear term
    frequency, so texts sharing vocabulary score high under cosine similarity.
    Text without any content word falls back to a digest of the whole string.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    @property
    def model_version(self) -> str:
        return f"hashing-bow-v1/{self._config.dim}"

    @property
    def dim(self) -> int:
        return self._config.dim

    def _digest_vector(self, text: str) -> Vector:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        return tuple(byte / 255.0 for byte in raw)

    def _hash_to_vector(self, text: str) -> Vector:
        counts = Counter(tokenize(text))
        if not counts:
            vector: Sequence[float] = self._digest_vector(text)
        else:
            buckets = [0.0] * self._config.dim
            for token, count in sorted(counts.items()):
                digest = hashlib.sha256(token.encode("utf-8")).digest()
                bucket = int.from_bytes(digest[:4], "big") % self._config.dim
                sign = 1.0 if digest[4] & 1 else -1.0
                buckets[bucket] += sign * (1.0 + math.log(count))
            vector = buckets
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)

    def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        return [self._hash_to_vector(text) for text in texts]

    def embed_query(self, text: str) -> Vector:
        return self._hash_to_vector(text)


class HuggingFaceEmbeddingBackend:
    """Sentence-embedding backend via LangChain, falling back to hashing.

    When the model cannot be loaded, ``model_version`` reports the hashing
    fallback so an index pinned to the real model refuses the vectors.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._delegate = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = None
        if not self._config.use_model:
            LOGGER.info("HuggingFaceEmbeddingBackend running in hash-only mode.")
            return
        try:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            self._client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
                cache_folder=self._config.cache_folder,
            )
            LOGGER.info("Loaded embedding model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - defensive import/runtime guard
            LOGGER.warning("Falling back to hash embeddings: %s", exc)
            self._client = None

    @property
    def model_version(self) -> str:
        if self._client is None:
            return self._delegate.model_version
        return f"{self._config.model}/{self._config.dim}"

    @property
    def dim(self) -> int:
        return self._config.dim

    def embed_documents(self, texts: Sequence[str]) -> Sequence[Vector]:
        if not texts:
            return []
        if self._client is None:
            return self._delegate.embed_documents(texts)
        vectors = self._client.embed_documents(list(texts))
        return [self._maybe_normalize(vector) for vector in vectors]

    def embed_query(self, text: str) -> Vector:
        if self._client is None:
            return self._delegate.embed_query(text)
        return self._maybe_normalize(self._client.embed_query(text))

    def _maybe_normalize(self, vector: Sequence[float]) -> Vector:
        if not self._config.normalize:
            return tuple(float(value) for value in vector)
        return _normalize([float(value) for value in vector])


class EmbeddingClient:
    """Calls an embedding backend under the upstream retry/timeout policy.

    Vectors are checked for count and dimension before they leave the client.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        policy: RetryPolicy | None = None,
        batch_size: int = 32,
    ) -> None:
        self._backend = backend
        self._policy = policy or RetryPolicy()
        self._batch_size = max(1, batch_size)

    @property
    def model_version(self) -> str:
        return self._backend.model_version

    @property
    def dim(self) -> int:
        return self._backend.dim

    async def embed_documents(self, texts: Sequence[str]) -> List[Vector]:
        vectors: List[Vector] = []
        for start in range(0, len(texts), self._batch_size):
            batch = list(texts[start : start + self._batch_size])
            produced = await call_upstream(
                "embedding.documents",
                self._backend.embed_documents,
                batch,
                policy=self._policy,
            )
            if len(produced) != len(batch):
                LOGGER.error("Embedding backend returned %d vectors for %d texts", len(produced), len(batch))
                raise UpstreamModelError("Mismatch between number of texts and embedding vectors")
            vectors.extend(self._checked(vector) for vector in produced)
        return vectors

    async def embed_query(self, text: str) -> Vector:
        vector = await call_upstream("embedding.query", self._backend.embed_query, text, policy=self._policy)
        return self._checked(vector)

    def _checked(self, vector: Sequence[float]) -> Vector:
        if len(vector) != self._backend.dim:
            raise EmbeddingDimensionMismatchError(self._backend.dim, len(vector))
        return tuple(float(value) for value in vector)
