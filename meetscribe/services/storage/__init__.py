"""Blob storage for staged audio chunks, backed by the local filesystem or S3."""

from .locator import BlobLocator, StoredBlob, local_url, parse_blob_url, s3_url
from .service import StorageService, StorageSettings, get_storage_service, reset_storage_service

__all__ = [
    'BlobLocator',
    'StoredBlob',
    'StorageService',
    'StorageSettings',
    'get_storage_service',
    'local_url',
    'parse_blob_url',
    'reset_storage_service',
    's3_url',
]
