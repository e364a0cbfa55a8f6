"""
Audio Chunking Service for Large File Processing

This module splits audio blobs that exceed a transcription provider's size or
duration limits into ordered chunks. WAV input is sliced on frame boundaries
and every slice gets its own rewritten header; other containers fall back to
contiguous byte ranges. An adaptive variant re-encodes oversized WAV chunks at
a lower sample rate before splitting them further.
"""

import os
import math
import logging
import re
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, TYPE_CHECKING

from meetscribe.services.transcription.exceptions import ChunkingError, MalformedContainerError
from meetscribe.utils import wav
from meetscribe.utils.audio_conversion import downsample_step, MIN_SPEECH_SAMPLE_RATE

if TYPE_CHECKING:
    from meetscribe.services.transcription.base import ConnectorSpecifications

# Configure logging
logger = logging.getLogger(__name__)

MB = 1024 * 1024
DEFAULT_CHUNK_SIZE_MB = 20.0

# Approximate encoded size per minute of speech, used when the exact duration is unknown
BYTES_PER_MINUTE = {
    'audio/mpeg': 1 * MB,
    'audio/mp3': 1 * MB,
    'audio/mp4': 1 * MB,
    'audio/m4a': 1 * MB,
    'audio/x-m4a': 1 * MB,
    'audio/aac': 1 * MB,
    'audio/webm': MB // 2,
    'audio/ogg': MB // 2,
    'audio/opus': MB // 2,
    'audio/flac': 5 * MB,
}
DEFAULT_BYTES_PER_MINUTE = 1 * MB


@dataclass(frozen=True)
class AudioBlob:
    """An audio file held in memory."""
    data: bytes
    mime_type: str = 'application/octet-stream'
    filename: str = 'audio'
    duration_seconds: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class AudioChunk:
    """One ordered piece of a split blob."""
    index: int
    data: bytes
    mime_type: str
    filename: str
    duration_seconds: Optional[float] = None
    is_wav: bool = False

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def size_mb(self) -> float:
        return len(self.data) / MB


@dataclass
class EffectiveChunkingConfig:
    """Effective chunking configuration after resolving connector specs and ENV settings."""
    enabled: bool
    max_bytes: Optional[int]
    max_duration_seconds: Optional[float]
    source: str  # 'disabled', 'connector_internal', 'connector_limit', 'user_and_connector', 'env', 'app_default'


def parse_chunk_limit(value: str) -> Dict[str, float]:
    """
    Parse a CHUNK_LIMIT value.

    Supports size-based ("20MB") and duration-based ("1200s", "20m") formats.
    Returns a dict with 'size_mb' and/or 'duration_seconds'; empty when invalid.
    """
    limit = value.strip().upper()
    if not limit:
        return {}
    try:
        number = float(re.sub(r'[^0-9.]', '', limit))
    except ValueError:
        logger.warning(f"Invalid CHUNK_LIMIT format: {value}")
        return {}
    if limit.endswith('MB'):
        return {'size_mb': number}
    if limit.endswith('S'):
        return {'duration_seconds': number}
    if limit.endswith('M'):
        return {'duration_seconds': number * 60}
    logger.warning(f"Invalid CHUNK_LIMIT format: {value}")
    return {}


def _min_limit(*values):
    present = [v for v in values if v is not None]
    return min(present) if present else None


def get_effective_chunking_config(
    connector_specs: Optional['ConnectorSpecifications'] = None
) -> EffectiveChunkingConfig:
    """
    Determine effective chunking budgets based on connector specs and ENV settings.

    Logic:
    1. Gather connector constraints (max_duration_seconds, max_file_size_bytes)
    2. Gather user settings (CHUNK_LIMIT, CHUNK_SIZE_MB, ENABLE_CHUNKING)
    3. If connector has hard limits:
       - Chunking is REQUIRED (can't disable)
       - Each budget is MIN(connector_limit, user_limit)
    4. If connector has no hard limits:
       - If handles_chunking_internally=True → no app chunking
       - If ENABLE_CHUNKING=false → no chunking
       - Otherwise use user settings or the 20MB app default

    Args:
        connector_specs: Optional ConnectorSpecifications from the active connector

    Returns:
        EffectiveChunkingConfig with resolved max_bytes / max_duration_seconds
    """
    enable_chunking_env = os.environ.get('ENABLE_CHUNKING', '').lower()

    # --- Step 1: Determine connector's hard limits ---
    connector_duration_limit = None
    connector_size_limit = None

    if connector_specs:
        if connector_specs.max_duration_seconds:
            # Use recommended if it fits, otherwise 85% of max for safety
            recommended = connector_specs.recommended_chunk_seconds
            if recommended and recommended <= connector_specs.max_duration_seconds:
                connector_duration_limit = float(recommended)
            else:
                connector_duration_limit = connector_specs.max_duration_seconds * 0.85

        if connector_specs.max_file_size_bytes:
            # Use 80% of max for safety margin
            connector_size_limit = int(connector_specs.max_file_size_bytes * 0.8)

    has_hard_limits = connector_duration_limit is not None or connector_size_limit is not None

    # --- Step 2: Parse user settings ---
    chunk_limit = os.environ.get('CHUNK_LIMIT', '').strip()
    chunk_size_mb_env = os.environ.get('CHUNK_SIZE_MB', '').strip()

    user_limits = parse_chunk_limit(chunk_limit) if chunk_limit else {}
    if not user_limits and chunk_size_mb_env:
        try:
            user_limits = {'size_mb': float(chunk_size_mb_env)}
        except ValueError:
            logger.warning(f"Invalid CHUNK_SIZE_MB format: {chunk_size_mb_env}")

    user_size_limit = int(user_limits['size_mb'] * MB) if 'size_mb' in user_limits else None
    user_duration_limit = user_limits.get('duration_seconds')

    # --- Step 3: If connector has hard limits, chunking is REQUIRED ---
    if has_hard_limits:
        max_bytes = _min_limit(connector_size_limit, user_size_limit)
        max_duration = _min_limit(connector_duration_limit, user_duration_limit)
        source = 'user_and_connector' if user_limits else 'connector_limit'
        if max_bytes is None:
            max_bytes = int(DEFAULT_CHUNK_SIZE_MB * MB)
        logger.info(f"Chunking: max_bytes={max_bytes / MB:.1f}MB, max_duration={max_duration}s (source={source})")
        return EffectiveChunkingConfig(True, max_bytes, max_duration, source)

    # --- Step 4: No hard limits - chunking is optional ---

    # Connector handles chunking internally
    if connector_specs and connector_specs.handles_chunking_internally:
        logger.info("Chunking: Connector handles chunking internally, no app-level chunking needed")
        return EffectiveChunkingConfig(False, None, None, 'connector_internal')

    # User explicitly disabled chunking
    if enable_chunking_env == 'false':
        logger.info("Chunking: Disabled via ENABLE_CHUNKING=false")
        return EffectiveChunkingConfig(False, None, None, 'disabled')

    # User set explicit limits - use them
    if user_limits:
        max_bytes = user_size_limit if user_size_limit is not None else int(DEFAULT_CHUNK_SIZE_MB * MB)
        logger.info(f"Chunking: Using user limits max_bytes={max_bytes / MB:.1f}MB, max_duration={user_duration_limit}s")
        return EffectiveChunkingConfig(True, max_bytes, user_duration_limit, 'env')

    logger.info(f"Chunking: Using app defaults ({DEFAULT_CHUNK_SIZE_MB:.0f}MB size-based)")
    return EffectiveChunkingConfig(True, int(DEFAULT_CHUNK_SIZE_MB * MB), None, 'app_default')


def estimate_duration(blob: AudioBlob) -> Optional[float]:
    """
    Best-effort duration of a blob in seconds.

    Uses the explicit duration when the caller knows it, the header byte rate
    for WAV, and otherwise a bytes-per-minute heuristic keyed by MIME type.
    The heuristic only affects chunk sizing efficiency, never correctness.
    """
    if blob.duration_seconds:
        return blob.duration_seconds
    if wav.is_wav(blob.data, blob.mime_type):
        duration = _wav_duration(blob.data)
        if duration is not None:
            return duration
    mime = (blob.mime_type or '').split(';')[0].strip().lower()
    bytes_per_minute = BYTES_PER_MINUTE.get(mime, DEFAULT_BYTES_PER_MINUTE)
    return blob.size / bytes_per_minute * 60


def _wav_duration(data: bytes) -> Optional[float]:
    try:
        return wav.parse_wav_info(wav.canonicalize(data)).duration_seconds
    except MalformedContainerError:
        return None


def effective_chunk_budget(size: int, max_bytes: int, duration: Optional[float] = None,
                           max_duration_seconds: Optional[float] = None) -> int:
    """Byte budget per chunk after reconciling the size ceiling with a duration-derived one."""
    if duration and max_duration_seconds and duration > max_duration_seconds:
        return max(1, int(min(max_bytes, size * max_duration_seconds / duration)))
    return max_bytes


class AudioChunkingService:
    """Service for splitting large audio blobs to fit transcription provider limits."""

    def __init__(self, max_chunk_size_mb: float = DEFAULT_CHUNK_SIZE_MB,
                 max_chunk_duration_seconds: Optional[float] = None,
                 min_sample_rate: int = MIN_SPEECH_SAMPLE_RATE,
                 max_downsample_attempts: int = 3,
                 min_chunk_duration_seconds: float = 1.0):
        """
        Initialize the chunking service.

        Args:
            max_chunk_size_mb: Maximum size for each chunk in MB
            max_chunk_duration_seconds: Maximum duration for each chunk in seconds (optional)
            min_sample_rate: Floor for adaptive downsampling
            max_downsample_attempts: Re-encode attempts per oversized chunk before re-splitting
            min_chunk_duration_seconds: Shortest target duration recursive re-splitting may reach
        """
        self.max_chunk_size_bytes = int(max_chunk_size_mb * MB)
        self.max_chunk_duration_seconds = max_chunk_duration_seconds
        self.min_sample_rate = min_sample_rate
        self.max_downsample_attempts = max_downsample_attempts
        self.min_chunk_duration_seconds = min_chunk_duration_seconds

    @classmethod
    def from_config(cls, config: EffectiveChunkingConfig, **kwargs) -> 'AudioChunkingService':
        service = cls(max_chunk_duration_seconds=config.max_duration_seconds, **kwargs)
        if config.max_bytes:
            service.max_chunk_size_bytes = config.max_bytes
        return service

    def _known_duration(self, blob: AudioBlob) -> Optional[float]:
        if blob.duration_seconds:
            return blob.duration_seconds
        if wav.is_wav(blob.data, blob.mime_type):
            return _wav_duration(blob.data)
        return None

    def as_single_chunk(self, blob: AudioBlob) -> AudioChunk:
        """Wrap an unsplit blob as chunk 0, bytes untouched."""
        return AudioChunk(
            index=0,
            data=blob.data,
            mime_type=blob.mime_type,
            filename=blob.filename,
            duration_seconds=self._known_duration(blob),
            is_wav=wav.is_wav(blob.data, blob.mime_type),
        )

    def needs_chunking(self, blob: AudioBlob, max_bytes: Optional[int] = None,
                       max_duration_seconds: Optional[float] = None) -> bool:
        """True when the blob exceeds the byte ceiling or a known duration exceeds the duration ceiling."""
        if max_bytes is None:
            max_bytes = self.max_chunk_size_bytes
        max_duration_seconds = max_duration_seconds or self.max_chunk_duration_seconds
        if blob.size > max_bytes:
            return True
        duration = self._known_duration(blob)
        return bool(duration and max_duration_seconds and duration > max_duration_seconds)

    def split(self, blob: AudioBlob, max_bytes: Optional[int] = None,
              max_duration_seconds: Optional[float] = None) -> List[AudioChunk]:
        """
        Split a blob into ordered chunks that respect the byte and duration budgets.

        Blobs within budget come back as a single chunk holding the original bytes.
        """
        if max_bytes is None:
            max_bytes = self.max_chunk_size_bytes
        max_duration_seconds = max_duration_seconds or self.max_chunk_duration_seconds
        if max_bytes <= 0:
            raise ChunkingError(f"max_bytes must be positive, got {max_bytes}")

        if not self.needs_chunking(blob, max_bytes, max_duration_seconds):
            logger.info(f"No chunking needed: {blob.size / MB:.1f}MB within {max_bytes / MB:.1f}MB limit")
            return [self.as_single_chunk(blob)]

        if wav.is_wav(blob.data, blob.mime_type):
            try:
                canonical = wav.canonicalize(blob.data)
            except MalformedContainerError as e:
                logger.warning(f"Could not read WAV structure of {blob.filename} ({e}), falling back to binary split")
            else:
                return self._split_wav(blob, canonical, max_bytes, max_duration_seconds)

        return self._split_binary(blob, max_bytes, max_duration_seconds)

    def _split_wav(self, blob: AudioBlob, canonical: bytes, max_bytes: int,
                   max_duration_seconds: Optional[float]) -> List[AudioChunk]:
        header = wav.extract_header(canonical)
        payload = wav.extract_payload(canonical)
        info = wav.parse_wav_info(canonical)
        block_align = info.block_align

        if max_bytes < wav.WAV_HEADER_SIZE + block_align:
            raise ChunkingError(
                f"max_bytes={max_bytes} cannot hold a WAV header plus one {block_align}-byte frame"
            )

        duration = blob.duration_seconds or info.duration_seconds
        budget = effective_chunk_budget(len(canonical), max_bytes, duration, max_duration_seconds)
        num_chunks = max(1, math.ceil(len(canonical) / budget))

        # Grow the count until every header-plus-slice fits under the hard ceiling
        while True:
            slice_len = self._frame_aligned_slice(len(payload), num_chunks, block_align)
            if slice_len + wav.WAV_HEADER_SIZE <= max_bytes:
                break
            num_chunks += 1

        logger.info(f"WAV chunking plan: {len(canonical) / MB:.1f}MB into {num_chunks} chunks "
                    f"of ~{slice_len / MB:.1f}MB (budget {budget / MB:.1f}MB)")

        stem, _ = os.path.splitext(blob.filename)
        chunks = []
        for start in range(0, len(payload), slice_len):
            piece = payload[start:start + slice_len]
            index = len(chunks)
            chunks.append(AudioChunk(
                index=index,
                data=wav.rewrite_header(header, len(piece)) + piece,
                mime_type='audio/wav',
                filename=f"{stem}_part{index + 1:03d}.wav",
                duration_seconds=len(piece) / info.byte_rate if info.byte_rate else None,
                is_wav=True,
            ))
        return chunks

    @staticmethod
    def _frame_aligned_slice(payload_len: int, num_chunks: int, block_align: int) -> int:
        slice_len = math.ceil(payload_len / num_chunks)
        remainder = slice_len % block_align
        if remainder:
            slice_len += block_align - remainder
        return max(slice_len, block_align)

    def _split_binary(self, blob: AudioBlob, max_bytes: int,
                      max_duration_seconds: Optional[float]) -> List[AudioChunk]:
        duration = self._known_duration(blob)
        budget = effective_chunk_budget(blob.size, max_bytes, duration, max_duration_seconds)
        num_chunks = math.ceil(blob.size / budget)
        logger.info(f"Binary chunking plan: {blob.size / MB:.1f}MB into {num_chunks} chunks "
                    f"of {budget / MB:.1f}MB ({blob.mime_type})")
        logger.warning("Binary slices of compressed audio may not be independently decodable")

        stem, ext = os.path.splitext(blob.filename)
        chunks = []
        for index, start in enumerate(range(0, blob.size, budget)):
            piece = blob.data[start:start + budget]
            chunks.append(AudioChunk(
                index=index,
                data=piece,
                mime_type=blob.mime_type,
                filename=f"{stem}_part{index + 1:03d}{ext}",
                duration_seconds=duration * len(piece) / blob.size if duration else None,
                is_wav=False,
            ))
        return chunks

    def split_adaptive(self, blob: AudioBlob, target_duration_seconds: float,
                       ceiling_bytes: int) -> List[AudioChunk]:
        """
        Split a WAV blob by duration, shrinking any chunk still above ``ceiling_bytes``.

        Each oversized chunk gets up to ``max_downsample_attempts`` re-encodes
        (halving the sample rate down to ``min_sample_rate`` and collapsing to
        mono). A chunk that is still too large is split again at half the
        target duration and its sub-chunks take its place. Ordinals are
        renumbered so they stay contiguous.

        Non-WAV blobs fall back to :meth:`split` with ``ceiling_bytes``.
        """
        if not wav.is_wav(blob.data, blob.mime_type):
            return self.split(blob, ceiling_bytes)

        try:
            canonical = wav.canonicalize(blob.data)
        except MalformedContainerError as e:
            logger.warning(f"Adaptive split unavailable for {blob.filename} ({e}), using size split")
            return self.split(blob, ceiling_bytes)

        estimated = estimate_duration(blob)
        if estimated and estimated > 3 * target_duration_seconds:
            # Long recordings: aim for at least three chunks of manageable length
            target_duration_seconds = min(target_duration_seconds, max(300.0, estimated / 3))

        pieces = self._adaptive_pieces(blob.filename, canonical, target_duration_seconds, ceiling_bytes)
        stem, _ = os.path.splitext(blob.filename)
        chunks = [
            AudioChunk(
                index=index,
                data=data,
                mime_type='audio/wav',
                filename=f"{stem}_part{index + 1:03d}.wav",
                duration_seconds=wav.parse_wav_info(data).duration_seconds,
                is_wav=True,
            )
            for index, data in enumerate(pieces)
        ]
        logger.info(f"Adaptive split produced {len(chunks)} chunks (ceiling {ceiling_bytes / MB:.1f}MB)")
        return chunks

    def _adaptive_pieces(self, filename: str, canonical: bytes, target_duration_seconds: float,
                         ceiling_bytes: int) -> List[bytes]:
        if target_duration_seconds < self.min_chunk_duration_seconds:
            raise ChunkingError(
                f"Cannot fit {filename} under {ceiling_bytes / MB:.1f}MB: "
                f"chunk duration would drop below {self.min_chunk_duration_seconds}s"
            )

        header = wav.extract_header(canonical)
        payload = wav.extract_payload(canonical)
        info = wav.parse_wav_info(canonical)
        frames_per_chunk = max(1, int(target_duration_seconds * info.sample_rate))
        slice_len = frames_per_chunk * info.block_align

        pieces = []
        for start in range(0, max(len(payload), 1), slice_len):
            piece = payload[start:start + slice_len]
            chunk = wav.rewrite_header(header, len(piece)) + piece
            if len(chunk) <= ceiling_bytes:
                pieces.append(chunk)
                continue

            reduced = self._downsample_to_fit(chunk, ceiling_bytes)
            if reduced is not None:
                pieces.append(reduced)
                continue

            logger.info(f"Chunk of {len(chunk) / MB:.1f}MB still over ceiling, "
                        f"re-splitting at {target_duration_seconds / 2:.1f}s")
            pieces.extend(self._adaptive_pieces(filename, chunk, target_duration_seconds / 2, ceiling_bytes))
        return pieces

    def _downsample_to_fit(self, chunk: bytes, ceiling_bytes: int) -> Optional[bytes]:
        current = chunk
        for attempt in range(1, self.max_downsample_attempts + 1):
            try:
                result = downsample_step(current, self.min_sample_rate)
            except MalformedContainerError as e:
                logger.info(f"Downsampling not possible: {e}")
                return None
            if not result.was_converted:
                return None
            current = result.data
            logger.info(f"Downsample attempt {attempt}: {result.sample_rate}Hz/{result.channels}ch, "
                        f"{result.size_mb:.1f}MB")
            if len(current) <= ceiling_bytes:
                return current
        return None

    def log_processing_statistics(self, chunk_results: List[Dict[str, Any]]) -> None:
        """
        Log detailed statistics about chunk processing performance.

        Args:
            chunk_results: List of chunk processing results with timing info
        """
        if not chunk_results:
            return

        logger.info("=== CHUNK PROCESSING STATISTICS ===")

        processing_times = []
        for result in chunk_results:
            processing_time = result.get('processing_time', 0)
            chunk_size = result.get('size_mb', 0)
            chunk_duration = result.get('duration') or 0
            processing_times.append(processing_time)

            rate = chunk_duration / processing_time if processing_time > 0 else 0
            logger.info(f"Chunk {result.get('index', 0) + 1}: {result.get('status')}, "
                        f"{processing_time:.1f}s processing, {chunk_size:.1f}MB, "
                        f"{chunk_duration:.1f}s audio (rate: {rate:.2f}x), retries: {result.get('retries', 0)}")

        avg_time = sum(processing_times) / len(processing_times)
        max_time = max(processing_times)
        total_audio_time = sum(r.get('duration') or 0 for r in chunk_results)
        total_processing_time = sum(processing_times)
        overall_rate = total_audio_time / total_processing_time if total_processing_time > 0 else 0

        logger.info(f"Summary: {len(chunk_results)} chunks, {total_audio_time:.1f}s audio in {total_processing_time:.1f}s")
        logger.info(f"Overall rate: {overall_rate:.2f}x realtime")

        if avg_time > 0 and max_time > avg_time * 2:
            slow_chunks = [r.get('index', i) + 1 for i, r in enumerate(chunk_results)
                           if r.get('processing_time', 0) > avg_time * 1.5]
            logger.warning(f"Performance outliers detected: chunks {slow_chunks} took significantly longer")

        logger.info("=== END STATISTICS ===")
