from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import chromadb
import pytest

from studyrag.embeddings import ChromaEmbeddingIndex, EmbeddingConfig, HashEmbeddingBackend
from studyrag.errors import EmbeddingDimensionMismatchError, ModelVersionMismatchError
from studyrag.models import Chunk

BACKEND = HashEmbeddingBackend(EmbeddingConfig(dim=64))


def _index(**kwargs) -> ChromaEmbeddingIndex:
    kwargs.setdefault("collection_name", f"test-store-{uuid4().hex}")
    kwargs.setdefault("client", chromadb.EphemeralClient())
    return ChromaEmbeddingIndex(model_version=BACKEND.model_version, dim=BACKEND.dim, **kwargs)


def _chunk(doc_id: str, text: str, order: int, page: int = 1) -> Chunk:
    return Chunk(
        id=f"{doc_id}-{order}",
        document_id=doc_id,
        text=text,
        page_start=page,
        page_end=page,
        sequence_index=order,
        char_start=order * 100,
        char_end=order * 100 + len(text),
        embedding=BACKEND.embed_query(text),
    )


@pytest.mark.asyncio
async def test_index_and_similarity_query():
    index = _index()
    await index.index("d1", [_chunk("d1", "alpha", 0), _chunk("d1", "delta epsilon", 1, page=2)])
    await index.index("d2", [_chunk("d2", "lorem ipsum", 0)])

    assert index.count() == 3
    assert index.count_by_document() == {"d1": 2, "d2": 1}

    hits = index.query(BACKEND.embed_query("alpha"), 2, document_ids=["d1"])
    assert hits
    assert len(hits) <= 2
    assert hits[0].chunk_id == "d1-0"
    assert all(hit.document_id == "d1" for hit in hits)
    assert hits == sorted(hits, key=lambda hit: (-hit.score, hit.sequence_index))


@pytest.mark.asyncio
async def test_page_window_filters_chunks():
    index = _index()
    await index.index("d1", [_chunk("d1", "alpha one", 0, page=1), _chunk("d1", "alpha two", 1, page=3)])

    hits = index.query(BACKEND.embed_query("alpha"), 5, document_ids=["d1"], page_start=2, page_end=4)

    assert [hit.chunk_id for hit in hits] == ["d1-1"]


@pytest.mark.asyncio
async def test_reindex_replaces_previous_batch():
    index = _index()
    await index.index("d1", [_chunk("d1", "old text", 0), _chunk("d1", "old text two", 1)])
    await index.index("d1", [_chunk("d1", "new text", 0)])

    chunks = index.document_chunks("d1")
    assert [chunk.text for chunk in chunks] == ["new text"]
    assert chunks[0].embedding is not None
    assert index.count() == 1


@pytest.mark.asyncio
async def test_delete_document_removes_chunks():
    index = _index()
    await index.index("d1", [_chunk("d1", "alpha", 0)])

    assert await index.delete_document("d1")
    assert not index.is_indexed("d1")
    assert index.query(BACKEND.embed_query("alpha"), 3) == []
    assert not await index.delete_document("d1")


def test_query_with_wrong_dimension_fails_fast():
    index = _index()
    with pytest.raises(EmbeddingDimensionMismatchError):
        index.query((1.0, 0.0), 3)


@pytest.mark.asyncio
async def test_chunks_with_wrong_dimension_are_refused():
    index = _index()
    bad = Chunk(
        id="d1-0",
        document_id="d1",
        text="x",
        page_start=1,
        page_end=1,
        sequence_index=0,
        char_start=0,
        char_end=1,
        embedding=(1.0, 0.0),
    )
    with pytest.raises(EmbeddingDimensionMismatchError):
        await index.index("d1", [bad])
    assert not index.is_indexed("d1")


@pytest.mark.asyncio
async def test_manifest_pins_model_version(tmp_path: Path):
    client = chromadb.EphemeralClient()
    name = f"test-store-{uuid4().hex}"
    manifest = tmp_path / "manifest.json"
    index = _index(client=client, collection_name=name, manifest_path=manifest)
    await index.index("d1", [_chunk("d1", "alpha", 0)])

    reopened = _index(client=client, collection_name=name, manifest_path=manifest)
    assert reopened.is_indexed("d1")

    with pytest.raises(ModelVersionMismatchError):
        ChromaEmbeddingIndex(
            model_version="other-model/64",
            dim=64,
            client=client,
            collection_name=f"test-store-{uuid4().hex}",
            manifest_path=manifest,
        )


@pytest.mark.asyncio
async def test_unpublished_batch_is_never_visible(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    client = chromadb.EphemeralClient()
    name = f"test-store-{uuid4().hex}"
    manifest = tmp_path / "manifest.json"
    index = _index(client=client, collection_name=name, manifest_path=manifest)
    await index.index("d1", [_chunk("d1", "alpha", 0), _chunk("d1", "alpha beta", 1)])

    def fail_to_publish(published):
        raise OSError("disk full")

    monkeypatch.setattr(index, "_save_manifest", fail_to_publish)
    with pytest.raises(OSError):
        await index.index("d1", [_chunk("d1", "gamma", 0)])

    assert [chunk.text for chunk in index.document_chunks("d1")] == ["alpha", "alpha beta"]
    hits = index.query(BACKEND.embed_query("gamma"), 5, document_ids=["d1"])
    assert {hit.text for hit in hits} <= {"alpha", "alpha beta"}
    assert index.count_by_document() == {"d1": 2}
    # the staged batch is swept, not left behind
    assert client.get_collection(name).count() == 2

    reopened = _index(client=client, collection_name=name, manifest_path=manifest)
    assert [chunk.text for chunk in reopened.document_chunks("d1")] == ["alpha", "alpha beta"]
