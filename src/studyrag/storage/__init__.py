"""On-disk persistence helpers."""

from .files import JsonFileStore, atomic_write_bytes, atomic_write_json

__all__ = ["JsonFileStore", "atomic_write_bytes", "atomic_write_json"]
