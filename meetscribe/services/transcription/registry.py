"""
Connector lookup and the process-wide active connector.

The active connector is built from ``app_config`` on first use:
``TRANSCRIPTION_CONNECTOR`` names it explicitly; otherwise a ``gpt-4o``
model selects ``openai_transcribe`` and anything else ``openai_whisper``.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Type

from meetscribe.config import app_config

from .base import BaseTranscriptionConnector
from .connectors import OpenAITranscribeConnector, OpenAIWhisperConnector
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

BUILTIN_CONNECTORS: Dict[str, Type[BaseTranscriptionConnector]] = {
    'openai_whisper': OpenAIWhisperConnector,
    'openai_transcribe': OpenAITranscribeConnector,
}


def detect_connector_name() -> str:
    explicit = (app_config.TRANSCRIPTION_CONNECTOR or '').lower().strip()
    if explicit:
        return explicit
    model = (app_config.TRANSCRIPTION_MODEL or '').lower()
    return 'openai_transcribe' if 'gpt-4o' in model else 'openai_whisper'


def connector_config_from_env(connector_class: Type[BaseTranscriptionConnector]) -> Dict[str, Any]:
    return {
        'api_key': app_config.TRANSCRIPTION_API_KEY,
        'base_url': app_config.TRANSCRIPTION_BASE_URL or None,
        'model': app_config.TRANSCRIPTION_MODEL or getattr(connector_class, 'DEFAULT_MODEL', None),
        'timeout': app_config.TRANSCRIPTION_TIMEOUT,
    }


class ConnectorRegistry:

    def __init__(self):
        self._classes: Dict[str, Type[BaseTranscriptionConnector]] = dict(BUILTIN_CONNECTORS)
        self._active: Optional[BaseTranscriptionConnector] = None
        self._active_name = ""

    def register(self, name: str, connector_class: Type[BaseTranscriptionConnector]) -> None:
        self._classes[name] = connector_class
        logger.debug(f"Registered transcription connector: {name}")

    def names(self) -> List[str]:
        return sorted(self._classes)

    def connector_class(self, name: str) -> Type[BaseTranscriptionConnector]:
        try:
            return self._classes[name]
        except KeyError:
            raise ConfigurationError(f"Unknown connector: {name}. Available: {self.names()}") from None

    def initialize_from_env(self) -> BaseTranscriptionConnector:
        name = detect_connector_name()
        connector_class = self.connector_class(name)
        config = connector_config_from_env(connector_class)
        try:
            connector = connector_class(config)
        except ConfigurationError:
            logger.error(f"Connector '{name}' is misconfigured")
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize connector '{name}': {e}") from e

        self.set_active_connector(connector, name)
        logger.info(f"Transcription connector: {name} (model {config['model']})")
        return connector

    def set_active_connector(self, connector: BaseTranscriptionConnector, name: str = "") -> None:
        self._active = connector
        self._active_name = name or connector.PROVIDER_NAME

    def get_active_connector(self) -> BaseTranscriptionConnector:
        if self._active is None:
            self.initialize_from_env()
        return self._active

    def get_active_connector_name(self) -> str:
        self.get_active_connector()
        return self._active_name


_registry: Optional[ConnectorRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> ConnectorRegistry:
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = ConnectorRegistry()
    return _registry


def reset_registry() -> None:
    """Forget the active connector; the next lookup rebuilds it from app_config."""
    global _registry
    with _registry_lock:
        _registry = None


def get_connector() -> BaseTranscriptionConnector:
    return get_registry().get_active_connector()
