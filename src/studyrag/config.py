"""Runtime configuration for the StudyRAG services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="studyrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    # Documents, uploads, conversations and artifacts live here
    data_dir: Path = Path("./data")

    chroma_persist_dir: Path | None = Path("./.chroma")
    chroma_collection: str = "studyrag-chunks"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Use a sentence-embedding model by default and align dim
    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    embedding_batch_size: int = 32
    use_model_embeddings: bool = False

    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = 512
    generator_temperature: float = 0.3
    use_model_generator: bool = False

    chunk_size: int = 1000
    chunk_overlap: int = 150

    max_chunks: int = 5
    retrieval_max_top_k: int = 20
    retrieval_min_score: float = 0.15
    retrieval_rerank_lexical: bool = False
    retrieval_lexical_blend_weight: float = 0.35

    # Topic segmentation for notes and quizzes
    segment_similarity_threshold: float = 0.2
    segment_max_chunks: int = 6
    quiz_default_questions: int = 3
    quiz_max_questions: int = 10

    # Upstream model calls (embedding + generation)
    upstream_max_attempts: int = 3
    upstream_backoff_seconds: float = 0.5
    upstream_max_backoff_seconds: float = 8.0
    upstream_call_timeout_seconds: float = 60.0
    generation_timeout_seconds: float = 180.0

    # API & upload safety
    max_upload_size_mb: int = 25

    # CORS
    cors_allow_origins: tuple[str, ...] = ()  # e.g., ("*") to allow all
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
