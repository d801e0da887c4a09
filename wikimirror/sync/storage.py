"""
Blob storage for rendered and raw article content.

Keys have the form ``{source}/{sanitized_slug}/rendered.html`` or
``{source}/{sanitized_slug}/raw.txt``. The same slug always maps to the same
keys, so an update overwrites the previous objects in place.
"""

import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from enum import Enum
from pathlib import Path
from typing import Dict, Union

from ..config import get_logger
from .error_tracker import StorageWriteFailed

logger = get_logger(__name__)

_UNSAFE_SLUG_CHARS = re.compile(r"[^a-zA-Z0-9_\-]")


class BlobKind(str, Enum):
    HTML = "html"
    RAW = "raw"


BLOB_FILENAMES = {
    BlobKind.HTML: "rendered.html",
    BlobKind.RAW: "raw.txt",
}


def sanitize_slug(slug: str) -> str:
    """Replace anything outside ``[a-zA-Z0-9_-]`` with ``_`` and lowercase."""
    return _UNSAFE_SLUG_CHARS.sub("_", slug).lower()


def blob_key(source: str, slug: str, kind: Union[BlobKind, str]) -> str:
    return f"{source}/{sanitize_slug(slug)}/{BLOB_FILENAMES[BlobKind(kind)]}"


def _to_bytes(data: Union[str, bytes]) -> bytes:
    return data.encode('utf-8') if isinstance(data, str) else data


class BlobStore(ABC):
    """Key to bytes storage used by the upsert engine."""

    def put(self, source: str, slug: str, kind: Union[BlobKind, str], data: Union[str, bytes]) -> str:
        """
        Store ``data`` under the key for (source, slug, kind).

        Returns:
            The blob key

        Raises:
            StorageWriteFailed: If the underlying write fails
        """
        key = blob_key(source, slug, kind)
        try:
            self._write(key, _to_bytes(data))
        except StorageWriteFailed:
            raise
        except (OSError, ValueError) as e:
            raise StorageWriteFailed(f"Failed to write {key}: {e}", source_id=source) from e
        logger.debug(f"Stored {len(data)} bytes at {key}")
        return key

    def put_html(self, source: str, slug: str, html: str) -> str:
        return self.put(source, slug, BlobKind.HTML, html)

    def put_raw(self, source: str, slug: str, raw: str) -> str:
        return self.put(source, slug, BlobKind.RAW, raw)

    @abstractmethod
    def _write(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored at ``key``; raises KeyError when absent."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...


class FilesystemBlobStore(BlobStore):
    """Stores each key as a file below ``root``."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes blob root: {key}")
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never see a half-written object
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise KeyError(key)
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed store that counts writes per key."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.writes: Counter = Counter()
        self._lock = threading.Lock()

    def _write(self, key: str, data: bytes) -> None:
        with self._lock:
            self.objects[key] = data
            self.writes[key] += 1

    def get(self, key: str) -> bytes:
        with self._lock:
            return self.objects[key]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self.objects

    @property
    def write_count(self) -> int:
        return sum(self.writes.values())
