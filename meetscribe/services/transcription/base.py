"""
Connector contract for speech-to-text providers.

A connector transcribes exactly one audio segment per call. Splitting,
retries and reassembly happen in the pipeline, which sizes segments from
the connector's ``SPECIFICATIONS``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .exceptions import ProviderError


@dataclass(frozen=True)
class ConnectorSpecifications:
    """Hard limits of one provider request."""
    max_file_size_bytes: Optional[int] = None  # None = unlimited
    max_duration_seconds: Optional[int] = None  # None = unlimited
    handles_chunking_internally: bool = False
    recommended_chunk_seconds: int = 600


DEFAULT_SPECIFICATIONS = ConnectorSpecifications()


@dataclass
class TranscriptionRequest:
    audio: bytes
    filename: str
    mime_type: Optional[str] = None
    language: Optional[str] = None
    model: Optional[str] = None  # overrides the connector's model
    prompt: Optional[str] = None


@dataclass
class TranscriptionResponse:
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None
    provider: str = ""
    model: str = ""


class BaseTranscriptionConnector(ABC):

    PROVIDER_NAME: str = "unknown"
    SPECIFICATIONS: ConnectorSpecifications = DEFAULT_SPECIFICATIONS

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._validate_config()

    @abstractmethod
    def _validate_config(self) -> None:
        """Raise ConfigurationError when ``self.config`` is unusable."""

    @abstractmethod
    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        """
        Transcribe one segment.

        Raises:
            ProviderError: The provider rejected or failed the call; carries
                the HTTP status when there was one
        """

    @property
    def specifications(self) -> ConnectorSpecifications:
        return self.SPECIFICATIONS

    def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None

    def _provider_error(self, error: Exception) -> ProviderError:
        return ProviderError(
            f"Transcription failed ({self.PROVIDER_NAME}): {error}",
            provider=self.PROVIDER_NAME,
            status_code=getattr(error, 'status_code', None),
        )
