"""Splitting extracted text into overlapping, page-aware chunks."""

from .service import Chunker, ChunkingConfig

__all__ = ["Chunker", "ChunkingConfig"]
