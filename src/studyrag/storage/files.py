"""Atomic JSON record files keyed by id."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Generic, Iterator, TypeVar

from pydantic import TypeAdapter

T = TypeVar("T")


def atomic_write_bytes(path: Path, payload: bytes) -> None:
    """Write ``payload`` to a sibling temp file, then rename it over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_bytes(path, json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"))


class JsonFileStore(Generic[T]):
    """Stores one JSON document per key under ``directory``.

    Values are (de)serialized through a pydantic ``TypeAdapter`` so frozen
    dataclasses, enums, tuples and datetimes round-trip without custom code.
    """

    def __init__(self, directory: Path, value_type: Any) -> None:
        self._directory = Path(directory)
        self._adapter: TypeAdapter[T] = TypeAdapter(value_type)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"Invalid record key: {key!r}")
        return self._directory / f"{key}.json"

    def write(self, key: str, value: T) -> None:
        atomic_write_json(self.path_for(key), self._adapter.dump_python(value, mode="json"))

    def read(self, key: str) -> T | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        return self._adapter.validate_json(path.read_bytes())

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self) -> Iterator[str]:
        if not self._directory.exists():
            return iter(())
        return iter(sorted(p.stem for p in self._directory.glob("*.json")))
