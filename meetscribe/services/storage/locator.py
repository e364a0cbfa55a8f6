"""Blob URLs for staged chunks: ``local://<key>`` and ``s3://<bucket>/<key>``."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOCAL_SCHEME = 'local://'
S3_SCHEME = 's3://'


@dataclass(frozen=True)
class BlobLocator:
    """Parsed blob URL."""

    scheme: str  # local | s3
    key: str
    bucket: Optional[str] = None

    @property
    def is_s3(self) -> bool:
        return self.scheme == 's3'

    @property
    def url(self) -> str:
        if self.is_s3:
            return f"{S3_SCHEME}{self.bucket}/{self.key}"
        return f"{LOCAL_SCHEME}{self.key}"


@dataclass
class StoredBlob:
    """A blob written by ``put``; hand ``url`` back to get/delete."""

    url: str
    key: str
    size: int
    content_type: Optional[str] = None
    etag: Optional[str] = None


def clean_key(key: str) -> str:
    parts = (key or '').replace('\\', '/').strip().split('/')
    return '/'.join(part for part in parts if part)


def local_url(key: str) -> str:
    return BlobLocator('local', clean_key(key)).url


def s3_url(bucket: str, key: str) -> str:
    return BlobLocator('s3', clean_key(key), bucket=bucket).url


def parse_blob_url(value: Optional[str]) -> Optional[BlobLocator]:
    """Parse a blob URL; empty input gives None, anything unrecognised raises ValueError."""
    raw = (value or '').strip()
    if not raw:
        return None

    if raw.startswith(LOCAL_SCHEME):
        key = clean_key(raw[len(LOCAL_SCHEME):])
        if not key:
            raise ValueError(f"Blob URL has no key: {raw}")
        return BlobLocator('local', key)

    if raw.startswith(S3_SCHEME):
        bucket, _, key = raw[len(S3_SCHEME):].partition('/')
        bucket, key = bucket.strip(), clean_key(key)
        if not bucket or not key:
            raise ValueError(f"S3 blob URL needs a bucket and a key: {raw}")
        return BlobLocator('s3', key, bucket=bucket)

    raise ValueError(f"Unsupported blob URL: {raw}")


def resolve_local_path(root: str, key: str) -> Path:
    """Path for ``key`` under ``root``; keys escaping the root are rejected."""
    base = Path(root).resolve()
    candidate = base.joinpath(*clean_key(key).split('/')).resolve()
    if candidate != base and base not in candidate.parents:
        raise ValueError(f"Blob key resolves outside the storage root: {key}")
    return candidate
