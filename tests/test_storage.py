#!/usr/bin/env python3
"""
Tests for chunk staging storage (local filesystem and S3 backends).
"""

import asyncio
import io
import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

from botocore.exceptions import ClientError

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from meetscribe.services.storage import (
    StorageService,
    StorageSettings,
    local_url,
    parse_blob_url,
    s3_url,
)
from meetscribe.services.storage.locator import resolve_local_path
from meetscribe.services.storage.s3 import S3BlobStore


class TestLocators(unittest.TestCase):

    def test_local_locator_round_trip(self):
        locator = parse_blob_url(local_url('/chunks//2026/a.wav'))
        self.assertEqual(locator.scheme, 'local')
        self.assertEqual(locator.key, 'chunks/2026/a.wav')

    def test_s3_locator(self):
        locator = parse_blob_url(s3_url('bucket', 'chunks/a.wav'))
        self.assertTrue(locator.is_s3)
        self.assertEqual(locator.bucket, 'bucket')
        self.assertEqual(locator.key, 'chunks/a.wav')

    def test_unsupported_and_empty(self):
        self.assertIsNone(parse_blob_url(''))
        with self.assertRaises(ValueError):
            parse_blob_url('https://example.com/a.wav')
        with self.assertRaises(ValueError):
            parse_blob_url('s3://bucket-only')

    def test_path_traversal_rejected(self):
        with self.assertRaises(ValueError):
            resolve_local_path('/tmp/root', '../etc/passwd')


class TestLocalStorageService(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.service = StorageService(StorageSettings(backend='local', local_root=self.tmpdir, key_prefix='chunks'))

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_put_get_delete(self):
        stored = self.service.put('part 001.wav', b'RIFF-data', 'audio/wav')

        self.assertTrue(stored.url.startswith('local://chunks/'))
        self.assertTrue(stored.key.endswith('_part_001.wav'))
        self.assertEqual(stored.size, 9)
        self.assertTrue(self.service.exists(stored.url))
        self.assertEqual(self.service.get(stored.url), b'RIFF-data')

        self.assertTrue(self.service.delete(stored.url))
        self.assertFalse(self.service.exists(stored.url))
        self.assertFalse(self.service.delete(stored.url))

    def test_async_variants(self):
        async def scenario():
            stored = await self.service.aput('a.wav', b'abc', 'audio/wav')
            data = await self.service.aget(stored.url)
            deleted = await self.service.adelete(stored.url)
            return data, deleted

        self.assertEqual(asyncio.run(scenario()), (b'abc', True))

    def test_chunk_keys_are_unique_and_sanitized(self):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        first = self.service.build_chunk_key('../../evil name.wav', now=now)
        second = self.service.build_chunk_key('../../evil name.wav', now=now)

        self.assertNotEqual(first, second)
        self.assertTrue(first.startswith('chunks/2026/03/01/'))
        self.assertNotIn('..', first)
        self.assertTrue(first.endswith('_evil_name.wav'))

    def test_missing_object(self):
        with self.assertRaises(FileNotFoundError):
            self.service.get('local://chunks/missing.wav')

    def test_s3_locator_without_backend(self):
        with self.assertRaises(RuntimeError):
            self.service.get('s3://bucket/key.wav')


class TestS3Storage(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.client = MagicMock()
        self.client.put_object.return_value = {'ETag': '"abc123"'}
        self.client.get_object.return_value = {'Body': io.BytesIO(b'chunk bytes')}
        store = S3BlobStore('recordings', client=self.client)
        settings = StorageSettings(backend='s3', local_root=self.tmpdir, key_prefix='chunks',
                                   s3_bucket_name='recordings')
        self.service = StorageService(settings, s3_store=store)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_put_uses_bucket_and_content_type(self):
        stored = self.service.put('part001.wav', b'chunk bytes', 'audio/wav')

        self.assertTrue(stored.url.startswith('s3://recordings/chunks/'))
        self.assertEqual(stored.etag, 'abc123')
        kwargs = self.client.put_object.call_args.kwargs
        self.assertEqual(kwargs['Bucket'], 'recordings')
        self.assertEqual(kwargs['ContentType'], 'audio/wav')
        self.assertEqual(kwargs['Body'], b'chunk bytes')

    def test_get_and_delete(self):
        self.assertEqual(self.service.get('s3://recordings/chunks/a.wav'), b'chunk bytes')
        self.client.get_object.assert_called_with(Bucket='recordings', Key='chunks/a.wav')

        self.service.delete('s3://recordings/chunks/a.wav')
        self.client.delete_object.assert_called_with(Bucket='recordings', Key='chunks/a.wav')

    def test_exists_maps_not_found(self):
        self.client.head_object.side_effect = ClientError(
            {'Error': {'Code': '404'}, 'ResponseMetadata': {'HTTPStatusCode': 404}}, 'HeadObject'
        )
        self.assertFalse(self.service.exists('s3://recordings/chunks/gone.wav'))

    def test_get_missing_key_raises_file_not_found(self):
        self.client.get_object.side_effect = ClientError({'Error': {'Code': 'NoSuchKey'}}, 'GetObject')
        with self.assertRaises(FileNotFoundError):
            self.service.get('s3://recordings/chunks/gone.wav')


if __name__ == '__main__':
    unittest.main()
