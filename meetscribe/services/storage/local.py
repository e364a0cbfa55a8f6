"""Filesystem blob store, used when no object storage is configured."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .locator import BlobLocator, StoredBlob, local_url, resolve_local_path


class LocalBlobStore:

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, locator: BlobLocator) -> Path:
        if locator.scheme != 'local':
            raise ValueError(f"Local store cannot serve {locator.url}")
        return resolve_local_path(str(self.root), locator.key)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> StoredBlob:
        path = resolve_local_path(str(self.root), key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return StoredBlob(url=local_url(key), key=key, size=len(data), content_type=content_type)

    def get(self, locator: BlobLocator) -> bytes:
        path = self._path(locator)
        if not path.is_file():
            raise FileNotFoundError(locator.url)
        return path.read_bytes()

    def exists(self, locator: BlobLocator) -> bool:
        return self._path(locator).is_file()

    def delete(self, locator: BlobLocator) -> bool:
        path = self._path(locator)
        if not path.is_file():
            return False
        path.unlink()
        return True
