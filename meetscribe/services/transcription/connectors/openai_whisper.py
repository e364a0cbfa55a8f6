"""
OpenAI Whisper connector (``whisper-1``).

Also works with OpenAI-compatible servers through ``base_url``.

The AsyncOpenAI client pools its httpx connections on the event loop that
first used them, and every API request runs its own ``asyncio.run`` loop, so
the connector keeps one client per running loop and drops it in ``aclose``.
"""

import asyncio
import logging
import weakref
from typing import Any, Dict

import httpx
from openai import AsyncOpenAI

from ..base import (
    BaseTranscriptionConnector,
    ConnectorSpecifications,
    TranscriptionRequest,
    TranscriptionResponse,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(600.0, connect=10.0)
CLIENT_HEADERS = {"User-Agent": "meetscribe"}


class OpenAIWhisperConnector(BaseTranscriptionConnector):

    PROVIDER_NAME = "openai_whisper"
    DEFAULT_MODEL = "whisper-1"
    SPECIFICATIONS = ConnectorSpecifications(max_file_size_bytes=25 * 1024 * 1024)

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: ``api_key`` (required unless ``client`` is given),
                ``base_url``, ``model``, ``timeout`` in seconds, and
                ``client``, a prebuilt AsyncOpenAI-compatible client used
                as-is on every loop
        """
        super().__init__(config)
        self.model = config.get('model') or self.DEFAULT_MODEL
        self._injected_client = config.get('client')
        self._loop_clients: 'weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, AsyncOpenAI]' = \
            weakref.WeakKeyDictionary()

    def _validate_config(self) -> None:
        if not (self.config.get('api_key') or self.config.get('client')):
            raise ConfigurationError(f"api_key is required for the {self.PROVIDER_NAME} connector")

    def _build_client(self) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.config['api_key'],
            base_url=self.config.get('base_url') or None,
            http_client=httpx.AsyncClient(headers=CLIENT_HEADERS),
            # RetryPolicy owns retries and backoff
            max_retries=0,
            timeout=self.config.get('timeout') or DEFAULT_TIMEOUT,
        )

    @property
    def client(self):
        """Client bound to the running event loop."""
        if self._injected_client is not None:
            return self._injected_client
        loop = asyncio.get_running_loop()
        client = self._loop_clients.get(loop)
        if client is None:
            client = self._build_client()
            self._loop_clients[loop] = client
            logger.debug(f"Created {self.PROVIDER_NAME} client for event loop {id(loop):#x}")
        return client

    def _request_params(self, request: TranscriptionRequest, model: str) -> Dict[str, Any]:
        params = {
            "model": model,
            "file": (request.filename, request.audio, request.mime_type or 'application/octet-stream'),
        }
        if request.language:
            params["language"] = request.language
        if request.prompt:
            params["prompt"] = request.prompt
        return params

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        model = request.model or self.model
        logger.info(f"Sending {request.filename} ({len(request.audio) / (1024 * 1024):.1f}MB) "
                    f"to {self.PROVIDER_NAME}, model {model}")
        try:
            result = await self.client.audio.transcriptions.create(**self._request_params(request, model))
        except Exception as e:
            logger.warning(f"{self.PROVIDER_NAME} rejected {request.filename}: {e}")
            raise self._provider_error(e) from e

        return TranscriptionResponse(
            text=getattr(result, 'text', None) or (result if isinstance(result, str) else ''),
            language=getattr(result, 'language', None),
            duration=getattr(result, 'duration', None),
            provider=self.PROVIDER_NAME,
            model=model,
        )

    def health_check(self) -> bool:
        return bool(self.config.get('api_key') or self.config.get('client'))

    async def aclose(self) -> None:
        """Close the client owned by the running loop; injected clients stay open."""
        client = self._loop_clients.pop(asyncio.get_running_loop(), None)
        if client is not None:
            await client.close()
