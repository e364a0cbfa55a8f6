"""
OpenAI GPT-4o transcription connector (``gpt-4o-transcribe`` family).
"""

from typing import Any, Dict

from ..base import ConnectorSpecifications, TranscriptionRequest
from ..exceptions import ConfigurationError
from .openai_whisper import OpenAIWhisperConnector

SUPPORTED_MODELS = (
    'gpt-4o-transcribe',
    'gpt-4o-mini-transcribe',
    'gpt-4o-mini-transcribe-2025-12-15',
)


class OpenAITranscribeConnector(OpenAIWhisperConnector):

    PROVIDER_NAME = "openai_transcribe"
    DEFAULT_MODEL = "gpt-4o-transcribe"
    # Requests longer than 1400s of audio are rejected
    SPECIFICATIONS = ConnectorSpecifications(max_file_size_bytes=25 * 1024 * 1024, max_duration_seconds=1400)

    def _validate_config(self) -> None:
        super()._validate_config()
        model = self.config.get('model') or self.DEFAULT_MODEL
        if model not in SUPPORTED_MODELS:
            raise ConfigurationError(f"Unknown model: {model}. Valid models: {', '.join(SUPPORTED_MODELS)}")

    def _request_params(self, request: TranscriptionRequest, model: str) -> Dict[str, Any]:
        params = super()._request_params(request, model)
        params["chunking_strategy"] = "auto"
        return params
