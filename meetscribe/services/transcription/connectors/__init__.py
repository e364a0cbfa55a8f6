from .openai_whisper import OpenAIWhisperConnector
from .openai_transcribe import OpenAITranscribeConnector

__all__ = ['OpenAIWhisperConnector', 'OpenAITranscribeConnector']
