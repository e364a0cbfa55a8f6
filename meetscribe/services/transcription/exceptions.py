"""
Custom exceptions for transcription services.
"""

from typing import List, Optional


class TranscriptionError(Exception):
    """Base exception for transcription errors."""
    pass


class ConfigurationError(TranscriptionError):
    """Configuration-related errors (missing or invalid config)."""
    pass


class ProviderError(TranscriptionError):
    """Provider/API errors."""

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class AudioFormatError(TranscriptionError):
    """Unsupported audio format errors."""
    pass


class MalformedContainerError(AudioFormatError):
    """Audio container too short or structurally invalid to be split."""
    pass


class ChunkingError(TranscriptionError):
    """Errors during file chunking."""
    pass


class AttemptTimeoutError(TranscriptionError):
    """A single attempt did not finish within its time budget."""

    def __init__(self, message: str, timeout_seconds: float = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class ChunkProcessingError(TranscriptionError):
    """Exception raised when chunk processing fails."""
    pass


class AggregateTranscriptionError(ChunkProcessingError):
    """Too many chunks failed for the transcript to be delivered."""

    def __init__(self, message: str, failed_ordinals: Optional[List[int]] = None, total: int = 0):
        super().__init__(message)
        self.failed_ordinals = list(failed_ordinals or [])
        self.total = total

    @property
    def failed_count(self) -> int:
        return len(self.failed_ordinals)


class PipelineCancelledError(TranscriptionError):
    """The pipeline run was cancelled before it finished."""
    pass
