"""Tests for the FastAPI application."""

from __future__ import annotations

from io import BytesIO

import pytest
from fastapi.testclient import TestClient

from conftest import PDF_BYTES
from studyrag.api.app import create_app, status_for_error
from studyrag.errors import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    ExtractionFailedError,
    OperationTimeoutError,
    SegmentNotFoundError,
    StudyRAGError,
    UnsupportedFormatError,
    UpstreamModelError,
)


@pytest.fixture
def client(settings, make_deps):
    app = create_app(settings=settings, dependencies=make_deps())
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, content: bytes = PDF_BYTES, filename: str = "biology.pdf"):
    return client.post("/documents", files={"file": (filename, BytesIO(content), "application/pdf")})


def test_upload_returns_indexed_document(client: TestClient) -> None:
    response = _upload(client)

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["filename"] == "biology.pdf"
    assert body["status"] == "extracted"
    assert body["indexed"] is True
    assert body["page_count"] == 4
    assert "X-Correlation-ID" in response.headers

    listing = client.get("/documents").json()
    assert [item["document_id"] for item in listing["documents"]] == [body["document_id"]]


def test_non_pdf_upload_is_rejected(client: TestClient) -> None:
    response = _upload(client, b"just some notes", "notes.txt")

    assert response.status_code == 415
    assert "not a PDF" in response.json()["detail"]
    assert client.get("/documents").json()["documents"] == []


def test_empty_upload_is_rejected(client: TestClient) -> None:
    assert _upload(client, b"").status_code == 400


def test_chat_returns_cited_answer_and_history(client: TestClient) -> None:
    document_id = _upload(client).json()["document_id"]

    response = client.post(f"/documents/{document_id}/chat", json={"question": "What does chlorophyll absorb?"})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["no_relevant_context"] is False
    assert body["citations"]
    assert body["citations"][0]["page_start"] == 1
    assert body["turn"]["sequence"] == 2

    turns = client.get(f"/documents/{document_id}/conversation").json()["turns"]
    assert [turn["role"] for turn in turns] == ["user", "assistant"]


def test_chat_without_relevant_context_is_flagged(client: TestClient) -> None:
    document_id = _upload(client).json()["document_id"]

    response = client.post(f"/documents/{document_id}/chat", json={"question": "Who won the football championship?"})

    assert response.status_code == 200
    body = response.json()
    assert body["no_relevant_context"] is True
    assert body["citations"] == []


def test_retrieve_is_bounded_by_top_k(client: TestClient) -> None:
    document_id = _upload(client).json()["document_id"]

    response = client.post(
        f"/documents/{document_id}/retrieve",
        json={"query": "glucose energy", "top_k": 2, "min_score": -1.0},
    )

    assert response.status_code == 200, response.text
    results = response.json()["results"]
    assert 1 <= len(results) <= 2
    assert all(result["document_id"] == document_id for result in results)


def test_notes_quiz_and_artifacts(client: TestClient) -> None:
    document_id = _upload(client).json()["document_id"]
    segments = client.get(f"/documents/{document_id}/segments").json()["segments"]
    assert segments
    assert segments[0]["index"] == 0

    notes = client.post(f"/documents/{document_id}/notes", json={"segment_indices": [0]})
    assert notes.status_code == 201, notes.text
    assert notes.json()["artifacts"][0]["note"]["topic"]

    quiz = client.post(f"/documents/{document_id}/quiz", json={"segment_index": 0, "count": 2})
    assert quiz.status_code == 201, quiz.text
    items = quiz.json()["artifacts"]
    assert len(items) == 2
    assert all(item["citations"] == [segments[0]["citation"]] for item in items)

    everything = client.get(f"/documents/{document_id}/artifacts").json()["artifacts"]
    assert len(everything) == 3
    only_quiz = client.get(f"/documents/{document_id}/artifacts", params={"kind": "quiz"}).json()["artifacts"]
    assert {item["kind"] for item in only_quiz} == {"quiz"}

    missing = client.post(f"/documents/{document_id}/quiz", json={"segment_index": 99})
    assert missing.status_code == 404


def test_delete_removes_document(client: TestClient) -> None:
    document_id = _upload(client).json()["document_id"]

    assert client.delete(f"/documents/{document_id}").status_code == 204
    assert client.get(f"/documents/{document_id}").status_code == 404
    assert client.get(f"/documents/{document_id}/conversation").status_code == 404
    assert client.delete(f"/documents/{document_id}").status_code == 404


def test_failed_extraction_reports_document(settings, make_deps) -> None:
    app = create_app(settings=settings, dependencies=make_deps(pages=[""]))
    with TestClient(app) as client:
        response = _upload(client, filename="scan.pdf")
        assert response.status_code == 422
        document_id = response.json()["document_id"]

        document = client.get(f"/documents/{document_id}").json()
        assert document["status"] == "failed"
        assert document["error"]

        chat = client.post(f"/documents/{document_id}/chat", json={"question": "Anything?"})
        assert chat.status_code == 409


def test_api_key_is_enforced(settings, make_deps) -> None:
    secured = settings.model_copy(update={"api_key": "secret"})
    app = create_app(settings=secured, dependencies=make_deps())
    with TestClient(app) as client:
        assert _upload(client).status_code == 401
        response = client.post(
            "/documents",
            files={"file": ("biology.pdf", BytesIO(PDF_BYTES), "application/pdf")},
            headers={"X-API-Key": "secret"},
        )
        assert response.status_code == 201


def test_correlation_id_is_echoed(client: TestClient) -> None:
    response = client.get("/livez", headers={"X-Request-ID": "abc123"})

    assert response.headers["X-Correlation-ID"] == "abc123"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (UnsupportedFormatError("x"), 415),
        (DocumentNotFoundError("x"), 404),
        (SegmentNotFoundError("x"), 404),
        (DocumentNotReadyError("x"), 409),
        (ExtractionFailedError("x"), 422),
        (OperationTimeoutError("x"), 504),
        (UpstreamModelError("x"), 502),
        (StudyRAGError("x"), 500),
    ],
)
def test_status_for_error(error: StudyRAGError, expected: int) -> None:
    assert status_for_error(error) == expected
