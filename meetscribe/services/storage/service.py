"""Blob store facade used to stage audio chunks between upload and transcription."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from .local import LocalBlobStore
from .locator import BlobLocator, StoredBlob, parse_blob_url
from .s3 import S3BlobStore

logger = logging.getLogger(__name__)


@dataclass
class StorageSettings:
    backend: str
    local_root: str
    key_prefix: str
    s3_bucket_name: Optional[str] = None
    s3_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_session_token: Optional[str] = None
    s3_use_path_style: bool = False
    s3_verify_ssl: bool = True

    @classmethod
    def from_env(cls) -> 'StorageSettings':
        from meetscribe.config import app_config

        return cls(
            backend=(app_config.FILE_STORAGE_BACKEND or 'local').strip().lower() or 'local',
            local_root=app_config.UPLOAD_FOLDER,
            key_prefix=(app_config.FILE_STORAGE_KEY_PREFIX or 'chunks').strip('/ '),
            s3_bucket_name=app_config.S3_BUCKET_NAME,
            s3_region=app_config.S3_REGION,
            s3_endpoint_url=app_config.S3_ENDPOINT_URL,
            s3_access_key_id=app_config.S3_ACCESS_KEY_ID,
            s3_secret_access_key=app_config.S3_SECRET_ACCESS_KEY,
            s3_session_token=app_config.S3_SESSION_TOKEN,
            s3_use_path_style=app_config.S3_USE_PATH_STYLE,
            s3_verify_ssl=app_config.S3_VERIFY_SSL,
        )

    def build_s3_store(self) -> Optional[S3BlobStore]:
        if not self.s3_bucket_name:
            return None
        return S3BlobStore(
            self.s3_bucket_name,
            region=self.s3_region,
            endpoint_url=self.s3_endpoint_url,
            access_key_id=self.s3_access_key_id,
            secret_access_key=self.s3_secret_access_key,
            session_token=self.s3_session_token,
            use_path_style=self.s3_use_path_style,
            verify_ssl=self.s3_verify_ssl,
        )


class StorageService:
    """
    put/get-by-URL over the local filesystem or S3.

    New blobs go to the configured backend; reads and deletes follow the
    scheme of the URL. The ``a``-prefixed variants run the blocking calls in
    a worker thread so the pipeline can await them.
    """

    def __init__(self, settings: Optional[StorageSettings] = None, s3_store: Optional[S3BlobStore] = None):
        self.settings = settings or StorageSettings.from_env()
        self.local = LocalBlobStore(self.settings.local_root)
        self.s3 = s3_store or self.settings.build_s3_store()

    def _writer(self):
        if self.settings.backend == 's3':
            if self.s3 is None:
                raise RuntimeError('FILE_STORAGE_BACKEND=s3 but S3_BUCKET_NAME is not set')
            return self.s3
        return self.local

    def _reader(self, url: str):
        locator = parse_blob_url(url)
        if locator is None:
            raise ValueError('Empty blob URL')
        if locator.is_s3:
            if self.s3 is None:
                raise RuntimeError(f"Cannot read {url}: S3 storage is not configured")
            return self.s3, locator
        return self.local, locator

    def build_chunk_key(self, filename: Optional[str], *, now: Optional[datetime] = None) -> str:
        """Unique key ``<prefix>/YYYY/MM/DD/<id>_<name>`` with a sanitized name."""
        now = now or datetime.now(timezone.utc)
        name = os.path.basename((filename or '').replace('\\', '/'))
        name = ''.join(c if c.isalnum() or c in '.-_' else '_' for c in name.strip()).strip('.') or 'chunk.bin'
        prefix = self.settings.key_prefix.strip('/') or 'chunks'
        return f"{prefix}/{now:%Y/%m/%d}/{uuid4().hex[:12]}_{name}"

    def put(self, name: str, data: bytes, content_type: Optional[str] = None) -> StoredBlob:
        stored = self._writer().put(self.build_chunk_key(name), data, content_type)
        logger.debug(f"Staged {len(data)} bytes at {stored.url}")
        return stored

    def get(self, url: str) -> bytes:
        store, locator = self._reader(url)
        return store.get(locator)

    def exists(self, url: str) -> bool:
        store, locator = self._reader(url)
        return store.exists(locator)

    def delete(self, url: Optional[str]) -> bool:
        if not url:
            return False
        store, locator = self._reader(url)
        return store.delete(locator)

    async def aput(self, name: str, data: bytes, content_type: Optional[str] = None) -> StoredBlob:
        return await asyncio.to_thread(self.put, name, data, content_type)

    async def aget(self, url: str) -> bytes:
        return await asyncio.to_thread(self.get, url)

    async def adelete(self, url: Optional[str]) -> bool:
        return await asyncio.to_thread(self.delete, url)


_storage_service: Optional[StorageService] = None
_storage_service_lock = threading.Lock()


def get_storage_service() -> StorageService:
    global _storage_service
    if _storage_service is None:
        with _storage_service_lock:
            if _storage_service is None:
                _storage_service = StorageService()
    return _storage_service


def reset_storage_service() -> None:
    global _storage_service
    with _storage_service_lock:
        _storage_service = None
