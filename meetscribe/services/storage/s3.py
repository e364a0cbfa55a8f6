"""S3-compatible blob store (AWS S3 / MinIO)."""

from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .locator import BlobLocator, StoredBlob, s3_url

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


def is_not_found(exc: ClientError) -> bool:
    response = exc.response or {}
    status = (response.get('ResponseMetadata') or {}).get('HTTPStatusCode')
    code = str((response.get('Error') or {}).get('Code') or '')
    return status == 404 or code in NOT_FOUND_CODES


class S3BlobStore:
    """Stages chunks in one bucket; the boto3 client is created on first use."""

    def __init__(self, bucket: str, client=None, **client_options):
        self.bucket = bucket
        self.client_options = client_options
        self._client = client

    @property
    def client(self):
        if self._client is None:
            options = self.client_options
            kwargs = {'verify': options.get('verify_ssl', True)}
            for option, kwarg in (('region', 'region_name'),
                                  ('endpoint_url', 'endpoint_url'),
                                  ('access_key_id', 'aws_access_key_id'),
                                  ('secret_access_key', 'aws_secret_access_key'),
                                  ('session_token', 'aws_session_token')):
                if options.get(option):
                    kwargs[kwarg] = options[option]
            addressing = 'path' if options.get('use_path_style') else 'auto'
            kwargs['config'] = Config(signature_version='s3v4', s3={'addressing_style': addressing})
            logger.info(f"Creating S3 client for bucket {self.bucket}")
            self._client = boto3.client('s3', **kwargs)
        return self._client

    def _target(self, locator: BlobLocator):
        if not locator.is_s3:
            raise ValueError(f"S3 store cannot serve {locator.url}")
        return {'Bucket': locator.bucket or self.bucket, 'Key': locator.key}

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> StoredBlob:
        extra = {'ContentType': content_type} if content_type else {}
        response = self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        etag = (response.get('ETag') or '').strip('"') or None
        return StoredBlob(url=s3_url(self.bucket, key), key=key, size=len(data),
                          content_type=content_type, etag=etag)

    def get(self, locator: BlobLocator) -> bytes:
        try:
            response = self.client.get_object(**self._target(locator))
        except ClientError as e:
            if is_not_found(e):
                raise FileNotFoundError(locator.url) from e
            raise
        return response['Body'].read()

    def exists(self, locator: BlobLocator) -> bool:
        try:
            self.client.head_object(**self._target(locator))
        except ClientError as e:
            if is_not_found(e):
                return False
            raise
        return True

    def delete(self, locator: BlobLocator) -> bool:
        # S3 deletes are idempotent, so a missing key is not reported
        self.client.delete_object(**self._target(locator))
        return True
