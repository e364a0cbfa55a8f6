"""
Application configuration.

Values are read once from the environment at import time. Use
``PipelineSettings.from_env()`` to snapshot the chunking/scheduling knobs
for a single pipeline run (tests can also build one directly).
"""

import os
from dataclasses import dataclass
from typing import Optional


def _clean_url(value: Optional[str]) -> Optional[str]:
    if value:
        return value.split('#')[0].strip()
    return value


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


# Transcription provider
TRANSCRIPTION_CONNECTOR = os.environ.get('TRANSCRIPTION_CONNECTOR', '').lower().strip()
TRANSCRIPTION_API_KEY = os.environ.get('TRANSCRIPTION_API_KEY', '')
TRANSCRIPTION_BASE_URL = _clean_url(os.environ.get('TRANSCRIPTION_BASE_URL', ''))
TRANSCRIPTION_MODEL = os.environ.get('TRANSCRIPTION_MODEL', '')
TRANSCRIPTION_LANGUAGE = os.environ.get('TRANSCRIPTION_LANGUAGE') or None
TRANSCRIPTION_TIMEOUT = float(os.environ.get('TRANSCRIPTION_TIMEOUT') or 0) or None

# Chunking
ENABLE_CHUNKING = _env_bool('ENABLE_CHUNKING', 'true')
ENABLE_ADAPTIVE_DOWNSAMPLE = _env_bool('ENABLE_ADAPTIVE_DOWNSAMPLE', 'true')

# Scheduling and retries
CHUNK_CONCURRENCY = int(os.environ.get('CHUNK_CONCURRENCY', '2'))
CHUNK_UPLOAD_CONCURRENCY = int(os.environ.get('CHUNK_UPLOAD_CONCURRENCY', '1'))
CHUNK_BATCH_DELAY_SECONDS = float(os.environ.get('CHUNK_BATCH_DELAY_SECONDS', '0.5'))
CHUNK_MAX_RETRIES = int(os.environ.get('CHUNK_MAX_RETRIES', '3'))
CHUNK_RETRY_BASE_DELAY = float(os.environ.get('CHUNK_RETRY_BASE_DELAY', '1.0'))
CHUNK_RETRY_MAX_DELAY = float(os.environ.get('CHUNK_RETRY_MAX_DELAY', '30.0'))
CHUNK_ATTEMPT_TIMEOUT_SECONDS = float(os.environ.get('CHUNK_ATTEMPT_TIMEOUT_SECONDS', '300'))
CHUNK_MAX_FAILURE_FRACTION = float(os.environ.get('CHUNK_MAX_FAILURE_FRACTION', '0.3'))
CHUNK_SCHEDULE_MODE = os.environ.get('CHUNK_SCHEDULE_MODE', 'staged').lower()
CHUNK_FAILURE_POLICY = os.environ.get('CHUNK_FAILURE_POLICY', 'best_effort').lower()

# Blob storage used to stage chunks between upload and transcription
STAGE_CHUNKS_IN_STORAGE = _env_bool('STAGE_CHUNKS_IN_STORAGE', 'false')
FILE_STORAGE_BACKEND = os.environ.get('FILE_STORAGE_BACKEND', 'local')
UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER', '/data/uploads')
FILE_STORAGE_KEY_PREFIX = os.environ.get('FILE_STORAGE_KEY_PREFIX', 'chunks')
S3_BUCKET_NAME = os.environ.get('S3_BUCKET_NAME')
S3_REGION = os.environ.get('S3_REGION')
S3_ENDPOINT_URL = _clean_url(os.environ.get('S3_ENDPOINT_URL'))
S3_ACCESS_KEY_ID = os.environ.get('S3_ACCESS_KEY_ID')
S3_SECRET_ACCESS_KEY = os.environ.get('S3_SECRET_ACCESS_KEY')
S3_SESSION_TOKEN = os.environ.get('S3_SESSION_TOKEN')
S3_USE_PATH_STYLE = _env_bool('S3_USE_PATH_STYLE', 'false')
S3_VERIFY_SSL = _env_bool('S3_VERIFY_SSL', 'true')

# Web surface
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
MAX_CONTENT_LENGTH_MB = int(os.environ.get('MAX_CONTENT_LENGTH_MB', '500'))


@dataclass
class PipelineSettings:
    """Scheduling and retry knobs for one pipeline run."""
    concurrency_limit: int = 2
    upload_concurrency_limit: int = 1
    batch_delay_seconds: float = 0.5
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    attempt_timeout_seconds: Optional[float] = 300.0
    max_failure_fraction: float = 0.3
    schedule_mode: str = 'staged'
    failure_policy: str = 'best_effort'
    adaptive_downsample: bool = True
    stage_in_storage: bool = False

    @classmethod
    def from_env(cls) -> 'PipelineSettings':
        return cls(
            concurrency_limit=CHUNK_CONCURRENCY,
            upload_concurrency_limit=CHUNK_UPLOAD_CONCURRENCY,
            batch_delay_seconds=CHUNK_BATCH_DELAY_SECONDS,
            max_retries=CHUNK_MAX_RETRIES,
            retry_base_delay=CHUNK_RETRY_BASE_DELAY,
            retry_max_delay=CHUNK_RETRY_MAX_DELAY,
            attempt_timeout_seconds=CHUNK_ATTEMPT_TIMEOUT_SECONDS or None,
            max_failure_fraction=CHUNK_MAX_FAILURE_FRACTION,
            schedule_mode=CHUNK_SCHEDULE_MODE,
            failure_policy=CHUNK_FAILURE_POLICY,
            adaptive_downsample=ENABLE_ADAPTIVE_DOWNSAMPLE,
            stage_in_storage=STAGE_CHUNKS_IN_STORAGE,
        )
