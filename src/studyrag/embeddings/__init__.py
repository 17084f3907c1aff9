"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingClient,
    EmbeddingConfig,
    HashEmbeddingBackend,
    HuggingFaceEmbeddingBackend,
)
from .store import ChromaEmbeddingIndex, EmbeddingIndex, IndexHit

__all__ = [
    "ChromaEmbeddingIndex",
    "EmbeddingBackend",
    "EmbeddingClient",
    "EmbeddingConfig",
    "EmbeddingIndex",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
    "IndexHit",
]
