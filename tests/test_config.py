from __future__ import annotations

from pathlib import Path

from studyrag.config import get_settings


def test_defaults_embedding_model_and_dim():
    settings = get_settings({"environment": "dev"})
    assert settings.embedding_model == "BAAI/bge-small-en-v1.5"
    assert settings.embedding_dim == 384


def test_chunking_and_retrieval_defaults():
    settings = get_settings({"environment": "dev"})
    assert settings.chunk_size == 1000
    assert settings.chunk_overlap < settings.chunk_size // 2
    assert 1 <= settings.max_chunks <= settings.retrieval_max_top_k


def test_upload_limits_defaults():
    settings = get_settings({"environment": "dev"})
    assert settings.max_upload_size_mb >= 1
    assert settings.max_upload_bytes == settings.max_upload_size_mb * 1024 * 1024


def test_override_does_not_touch_cached_settings(tmp_path: Path):
    cached = get_settings()
    override = get_settings({"data_dir": tmp_path, "environment": "test"})
    assert override.data_dir == tmp_path
    assert override.is_test
    assert get_settings() is cached
