"""
Speech-to-text connectors and the pipeline's exception hierarchy.

    from meetscribe.services.transcription import TranscriptionRequest, get_connector

    response = await get_connector().transcribe(
        TranscriptionRequest(audio=data, filename='standup_part001.wav', mime_type='audio/wav'))
"""

from .base import (
    DEFAULT_SPECIFICATIONS,
    BaseTranscriptionConnector,
    ConnectorSpecifications,
    TranscriptionRequest,
    TranscriptionResponse,
)
from .connectors import OpenAITranscribeConnector, OpenAIWhisperConnector
from .exceptions import (
    AggregateTranscriptionError,
    AttemptTimeoutError,
    AudioFormatError,
    ChunkingError,
    ChunkProcessingError,
    ConfigurationError,
    MalformedContainerError,
    PipelineCancelledError,
    ProviderError,
    TranscriptionError,
)
from .registry import ConnectorRegistry, get_connector, get_registry, reset_registry

__all__ = [
    'DEFAULT_SPECIFICATIONS',
    'BaseTranscriptionConnector',
    'ConnectorSpecifications',
    'TranscriptionRequest',
    'TranscriptionResponse',
    'OpenAITranscribeConnector',
    'OpenAIWhisperConnector',
    'AggregateTranscriptionError',
    'AttemptTimeoutError',
    'AudioFormatError',
    'ChunkingError',
    'ChunkProcessingError',
    'ConfigurationError',
    'MalformedContainerError',
    'PipelineCancelledError',
    'ProviderError',
    'TranscriptionError',
    'ConnectorRegistry',
    'get_connector',
    'get_registry',
    'reset_registry',
]
