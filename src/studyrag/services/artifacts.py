"""Persistence for generated notes and quiz items."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from studyrag.models import ArtifactKind, GeneratedArtifact
from studyrag.storage import JsonFileStore

Artifacts = Tuple[GeneratedArtifact, ...]


class ArtifactRepository:
    """Append-only store of generated artifacts, one JSON file per document.

    Artifacts are never updated in place. ``add_many`` commits a whole
    generation run in a single atomic write.
    """

    def __init__(self, data_dir: Path) -> None:
        self._records: JsonFileStore[Artifacts] = JsonFileStore(Path(data_dir) / "artifacts", Artifacts)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def add_many(self, document_id: str, artifacts: Sequence[GeneratedArtifact]) -> List[GeneratedArtifact]:
        if not artifacts:
            return []
        for artifact in artifacts:
            if artifact.document_id != document_id:
                raise ValueError(f"Artifact {artifact.id} belongs to {artifact.document_id}, not {document_id}")
        async with self._lock_for(document_id):
            existing = self._records.read(document_id) or ()
            known = {artifact.id for artifact in existing}
            duplicates = [artifact.id for artifact in artifacts if artifact.id in known]
            if duplicates:
                raise ValueError(f"Artifacts already stored: {', '.join(duplicates)}")
            self._records.write(document_id, existing + tuple(artifacts))
        return list(artifacts)

    def list(self, document_id: str, kind: ArtifactKind | None = None) -> List[GeneratedArtifact]:
        artifacts = self._records.read(document_id) or ()
        if kind is None:
            return list(artifacts)
        return [artifact for artifact in artifacts if artifact.kind is ArtifactKind(kind)]

    def get(self, document_id: str, artifact_id: str) -> GeneratedArtifact | None:
        for artifact in self._records.read(document_id) or ():
            if artifact.id == artifact_id:
                return artifact
        return None

    async def delete(self, document_id: str) -> bool:
        async with self._lock_for(document_id):
            removed = self._records.delete(document_id)
        self._locks.pop(document_id, None)
        return removed

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        return self._locks.setdefault(document_id, asyncio.Lock())
