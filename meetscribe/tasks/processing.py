"""
End-to-end transcription of one audio file: split, schedule, assemble.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from meetscribe.audio_chunking import (
    AudioBlob,
    AudioChunk,
    AudioChunkingService,
    get_effective_chunking_config,
)
from meetscribe.config import app_config
from meetscribe.config.app_config import PipelineSettings
from meetscribe.services.chunk_scheduler import CancellationToken, ChunkScheduler
from meetscribe.services.progress import ProgressReporter, ProgressSnapshot
from meetscribe.services.retry import RetryPolicy
from meetscribe.services.storage import StorageService, get_storage_service
from meetscribe.services.transcript_assembly import annotate_partial, join
from meetscribe.services.transcription import (
    AggregateTranscriptionError,
    BaseTranscriptionConnector,
    PipelineCancelledError,
    TranscriptionRequest,
    get_connector,
)
from meetscribe.utils import wav

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Transcript plus per-chunk diagnostics for one run."""
    transcript: str
    segments: List[Dict[str, Any]] = field(default_factory=list)
    failed_segments: int = 0
    total_segments: int = 0

    @property
    def is_partial(self) -> bool:
        return self.failed_segments > 0

    @property
    def was_chunked(self) -> bool:
        return self.total_segments > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transcription': self.transcript,
            'segments': self.segments,
            'failed_segments': self.failed_segments,
            'total_segments': self.total_segments,
        }


def plan_chunks(blob: AudioBlob, connector: BaseTranscriptionConnector,
                settings: PipelineSettings) -> List[AudioChunk]:
    """Split ``blob`` according to the connector's limits and the chunking settings."""
    chunking_config = get_effective_chunking_config(connector.specifications)
    chunking_service = AudioChunkingService.from_config(chunking_config)

    if not chunking_config.enabled:
        logger.info(f"Chunking disabled (source: {chunking_config.source}), sending file as a single segment")
        return [chunking_service.as_single_chunk(blob)]

    if not chunking_service.needs_chunking(blob):
        return [chunking_service.as_single_chunk(blob)]

    if settings.adaptive_downsample and wav.is_wav(blob.data, blob.mime_type):
        target_duration = (chunking_config.max_duration_seconds
                           or connector.specifications.recommended_chunk_seconds)
        logger.info(f"Adaptive WAV split: target {target_duration}s, "
                    f"ceiling {chunking_service.max_chunk_size_bytes / (1024 * 1024):.1f}MB")
        return chunking_service.split_adaptive(blob, target_duration, chunking_service.max_chunk_size_bytes)

    return chunking_service.split(blob)


async def transcribe_audio(blob: AudioBlob,
                           connector: Optional[BaseTranscriptionConnector] = None,
                           storage: Optional[StorageService] = None,
                           settings: Optional[PipelineSettings] = None,
                           model: Optional[str] = None,
                           language: Optional[str] = None,
                           prompt: Optional[str] = None,
                           cancel_token: Optional[CancellationToken] = None,
                           on_progress: Optional[Callable[[ProgressSnapshot], None]] = None,
                           reporter: Optional[ProgressReporter] = None,
                           sleep=asyncio.sleep) -> PipelineResult:
    """
    Transcribe one recording, splitting it when it exceeds provider limits.

    Args:
        blob: The audio to transcribe
        connector: Transcription connector (defaults to the registry's active one)
        storage: Blob store used when chunks are staged before transcription
        settings: Scheduling/retry knobs (defaults to PipelineSettings.from_env())
        model: Optional model override passed to every request
        language: Language hint (defaults to TRANSCRIPTION_LANGUAGE)
        prompt: Optional context prompt
        cancel_token: Cancels the run between/inside batches
        on_progress: Listener receiving a ProgressSnapshot on every transition
        reporter: Pre-built ProgressReporter (a fresh one is created otherwise)
        sleep: Awaitable sleep used for throttle and backoff delays

    Returns:
        PipelineResult. A partial transcript starts with a notice naming the
        number of missing segments.

    Raises:
        AggregateTranscriptionError: Too many segments failed
        PipelineCancelledError: The run was cancelled
    """
    settings = settings or PipelineSettings.from_env()
    connector = connector or get_connector()
    language = language or app_config.TRANSCRIPTION_LANGUAGE
    reporter = reporter or ProgressReporter()
    cancel_token = cancel_token or CancellationToken()
    if on_progress is not None:
        reporter.subscribe(on_progress)

    logger.info(f"Starting transcription of {blob.filename} ({blob.size / (1024 * 1024):.1f}MB, {blob.mime_type}) "
                f"with {connector.PROVIDER_NAME}")

    reporter.set_stage('chunking')
    try:
        chunks = await asyncio.to_thread(plan_chunks, blob, connector, settings)
    except Exception:
        reporter.set_stage('error')
        raise
    logger.info(f"Processing {len(chunks)} segment(s)")

    if settings.stage_in_storage:
        storage = storage or get_storage_service()

    async def upload_chunk(chunk: AudioChunk) -> str:
        stored = await storage.aput(chunk.filename, chunk.data, chunk.mime_type)
        return stored.url

    async def transcribe_chunk(chunk: AudioChunk, blob_url: Optional[str]) -> str:
        data = await storage.aget(blob_url) if blob_url else chunk.data
        request = TranscriptionRequest(
            audio=data,
            filename=chunk.filename,
            mime_type=chunk.mime_type,
            language=language,
            model=model,
            prompt=prompt,
        )
        response = await connector.transcribe(request)
        return response.text

    scheduler = ChunkScheduler.from_settings(
        settings,
        retry_policy=RetryPolicy.from_settings(settings, sleep=sleep),
        reporter=reporter,
        cancel_token=cancel_token,
        sleep=sleep,
    )

    try:
        result = await scheduler.run(
            chunks,
            transcribe_chunk,
            upload_chunk if settings.stage_in_storage else None,
        )
    except (AggregateTranscriptionError, PipelineCancelledError) as e:
        logger.error(f"Transcription of {blob.filename} stopped: {e}")
        reporter.set_stage('error')
        raise
    finally:
        if settings.stage_in_storage:
            await _cleanup_staged_chunks(storage, reporter)

    reporter.set_stage('combining')
    transcript = annotate_partial(join(result.results), result.failed_count, result.total)
    segments = [task.to_dict() for task in result.tasks]
    AudioChunkingService().log_processing_statistics(
        [dict(segment, index=segment['id']) for segment in segments]
    )
    reporter.set_stage('completed')

    if result.has_failures:
        logger.warning(f"Returning partial transcript: {result.failed_count} of {result.total} segments failed "
                       f"(chunks {[i + 1 for i in result.failed_ordinals]})")
    logger.info(f"Transcription complete: {len(transcript)} characters from {result.total} segment(s)")

    return PipelineResult(
        transcript=transcript,
        segments=segments,
        failed_segments=result.failed_count,
        total_segments=result.total,
    )


async def _cleanup_staged_chunks(storage: StorageService, reporter: ProgressReporter) -> None:
    """Delete staged chunk objects; the pipeline does not keep intermediates."""
    for task in reporter.tasks:
        if not task.blob_url:
            continue
        try:
            await storage.adelete(task.blob_url)
        except Exception as e:
            logger.warning(f"Could not delete staged chunk {task.blob_url}: {e}")


async def transcribe_segment(blob_url: str,
                             connector: Optional[BaseTranscriptionConnector] = None,
                             storage: Optional[StorageService] = None,
                             settings: Optional[PipelineSettings] = None,
                             model: Optional[str] = None,
                             language: Optional[str] = None,
                             segment_id: Optional[str] = None,
                             mime_type: Optional[str] = None) -> str:
    """Fetch one staged chunk and transcribe it under the retry policy."""
    settings = settings or PipelineSettings.from_env()
    connector = connector or get_connector()
    language = language or app_config.TRANSCRIPTION_LANGUAGE
    storage = storage or get_storage_service()
    policy = RetryPolicy.from_settings(settings)
    label = f"segment {segment_id}" if segment_id is not None else blob_url

    data = await policy.call(lambda: storage.aget(blob_url), description=f"Download of {label}")
    if mime_type is None:
        mime_type = 'audio/wav' if wav.is_wav(data) else 'application/octet-stream'
    filename = blob_url.rsplit('/', 1)[-1] or 'segment'

    async def attempt() -> str:
        response = await connector.transcribe(TranscriptionRequest(
            audio=data,
            filename=filename,
            mime_type=mime_type,
            language=language,
            model=model,
        ))
        return response.text

    text = await policy.call(attempt, description=f"Transcription of {label}")
    logger.info(f"Transcribed {label}: {len(text)} characters")
    return text
