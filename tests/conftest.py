from __future__ import annotations

from pathlib import Path
from typing import Callable, Sequence
from uuid import uuid4

import pytest

from studyrag.config import Settings
from studyrag.dependencies import AppDependencies, build_dependencies
from studyrag.services.generation import GenerationBackend

# Enough for signature sniffing; only stub extractors ever read these bytes
PDF_BYTES = b"%PDF-1.4\n% studyrag test upload\n"

STUDY_PAGES = [
    "Chlorophyll absorbs red and blue light inside the chloroplast. The absorbed light drives photosynthesis, "
    "which turns carbon dioxide and water into glucose and oxygen.",
    "The Calvin cycle fixes carbon dioxide into sugar using ATP and NADPH. For example, rubisco attaches carbon "
    "dioxide to ribulose bisphosphate in the stroma.",
    "Cellular respiration breaks glucose down in the mitochondria. Glycolysis, the Krebs cycle and the electron "
    "transport chain together release energy stored as ATP.",
    "Enzymes lower activation energy so reactions run faster at body temperature. Temperature and pH change the "
    "shape of the active site and therefore enzyme activity.",
]


class StubExtractor:
    """Returns fixed page texts whatever bytes it is given."""

    def __init__(self, pages: Sequence[str]) -> None:
        self.pages = list(pages)
        self.calls = 0

    def extract_pages(self, data: bytes) -> Sequence[str]:
        self.calls += 1
        return list(self.pages)


class FailingExtractor:
    def extract_pages(self, data: bytes) -> Sequence[str]:
        raise ValueError("corrupt cross-reference table")


def _escape_pdf_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def make_pdf(pages: Sequence[str]) -> bytes:
    """Build a small valid PDF with one line of Helvetica text per page."""

    objects: list[bytes] = []
    page_count = len(pages)
    kids = " ".join(f"{4 + 2 * index} 0 R" for index in range(page_count))
    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode("latin-1"))
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")
    for index, text in enumerate(pages):
        content_id = 5 + 2 * index
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Resources << /Font << /F1 3 0 R >> >> /Contents {content_id} 0 R >>"
            ).encode("latin-1")
        )
        stream = f"BT /F1 12 Tf 72 720 Td ({_escape_pdf_text(text)}) Tj ET".encode("latin-1")
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")

    output = bytearray(b"%PDF-1.4\n")
    offsets: list[int] = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(output))
        output += f"{number} 0 obj\n".encode("latin-1") + body + b"\nendobj\n"
    xref_offset = len(output)
    output += f"xref\n0 {len(objects) + 1}\n".encode("latin-1")
    output += b"0000000000 65535 f \n"
    for offset in offsets:
        output += f"{offset:010d} 00000 n \n".encode("latin-1")
    output += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_offset}\n%%EOF\n".encode("latin-1")
    return bytes(output)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        environment="test",
        data_dir=tmp_path / "data",
        chroma_persist_dir=None,
        chroma_host=None,
        chroma_collection=f"test-{uuid4().hex}",
        embedding_dim=384,
        use_model_embeddings=False,
        use_model_generator=False,
        chunk_size=300,
        chunk_overlap=40,
        retrieval_min_score=0.05,
        upstream_max_attempts=3,
        upstream_backoff_seconds=0.0,
        upstream_max_backoff_seconds=0.0,
        rate_limit_requests=1000,
    )


@pytest.fixture
def make_deps(settings: Settings) -> Callable[..., AppDependencies]:
    def factory(
        pages: Sequence[str] = STUDY_PAGES,
        *,
        generator: GenerationBackend | None = None,
        **overrides: object,
    ) -> AppDependencies:
        effective = settings.model_copy(update=overrides) if overrides else settings
        return build_dependencies(effective, extractor=StubExtractor(pages), generator=generator)

    return factory
