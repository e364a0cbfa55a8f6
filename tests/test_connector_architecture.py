#!/usr/bin/env python3
"""
Test script for the transcription connector architecture.

This script tests:
1. Request/Response data types and specifications
2. Connector auto-detection from app_config (reloaded from the environment)
3. Connector-aware chunk budgets
4. OpenAI connectors against an injected fake client
5. Registry operations and edge cases

Run with: python tests/test_connector_architecture.py
"""

import asyncio
import importlib
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Test results tracking
PASSED = 0
FAILED = 0
ERRORS = []


def run_test(name, func):
    """Run a test function and track results."""
    global PASSED, FAILED, ERRORS
    try:
        func()
        print(f"  ✓ {name}")
        PASSED += 1
    except AssertionError as e:
        print(f"  ✗ {name}: {e}")
        FAILED += 1
        ERRORS.append((name, str(e)))
    except Exception as e:
        print(f"  ✗ {name}: EXCEPTION - {e}")
        FAILED += 1
        ERRORS.append((name, f"Exception: {e}"))


def assert_section_passed(errors_before):
    """Fail the surrounding pytest test if any run_test in the section failed."""
    new_errors = ERRORS[errors_before:]
    assert not new_errors, f"Failed: {new_errors}"


def clear_env():
    """Clear all transcription-related environment variables."""
    keys_to_clear = [
        'TRANSCRIPTION_CONNECTOR', 'TRANSCRIPTION_API_KEY', 'TRANSCRIPTION_BASE_URL',
        'TRANSCRIPTION_MODEL', 'TRANSCRIPTION_TIMEOUT', 'ENABLE_CHUNKING', 'CHUNK_LIMIT',
        'CHUNK_SIZE_MB',
    ]
    for key in keys_to_clear:
        os.environ.pop(key, None)
    reload_config()


def reload_config():
    """Re-read app_config from the current environment."""
    from meetscribe.config import app_config
    importlib.reload(app_config)


def reset_registry():
    from meetscribe.services.transcription import reset_registry as reset
    reset()


def fake_client(result=None, error=None):
    """AsyncOpenAI look-alike whose audio.transcriptions.create is an AsyncMock."""
    create = AsyncMock(return_value=result, side_effect=error)
    return SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)), close=AsyncMock())


def openai_status_error(cls, status_code, message):
    request = httpx.Request('POST', 'https://api.openai.com/v1/audio/transcriptions')
    return cls(message, response=httpx.Response(status_code, request=request), body=None)


# =============================================================================
# TEST SECTION 1: Base Classes and Data Types
# =============================================================================

def test_base_classes():
    """Test base classes and data types."""
    print("\n=== Testing Base Classes ===")
    errors_before = len(ERRORS)

    from meetscribe.services.transcription.base import (
        BaseTranscriptionConnector, ConnectorSpecifications, TranscriptionRequest, TranscriptionResponse,
    )

    def t1():
        try:
            BaseTranscriptionConnector({})
            assert False, "Abstract connector should not be instantiable"
        except TypeError:
            pass
    run_test("BaseTranscriptionConnector is abstract", t1)

    def t2():
        specs = ConnectorSpecifications()
        assert specs.max_file_size_bytes is None
        assert specs.max_duration_seconds is None
        assert specs.handles_chunking_internally is False
        assert specs.recommended_chunk_seconds == 600
    run_test("ConnectorSpecifications has correct defaults", t2)

    def t3():
        request = TranscriptionRequest(audio=b"fake audio data", filename="part001.wav", mime_type="audio/wav")
        assert request.filename == "part001.wav"
        assert request.model is None and request.prompt is None
    run_test("TranscriptionRequest creation", t3)

    def t4():
        response = TranscriptionResponse(text="Hello World", provider="test")
        assert response.text == "Hello World"
        assert response.language is None
    run_test("TranscriptionResponse creation", t4)

    assert_section_passed(errors_before)


# =============================================================================
# TEST SECTION 2: Connector Auto-Detection
# =============================================================================

def test_auto_detection():
    """Test connector auto-detection from environment variables."""
    print("\n=== Testing Connector Auto-Detection ===")
    errors_before = len(ERRORS)

    from meetscribe.services.transcription import OpenAIWhisperConnector
    from meetscribe.services.transcription.registry import connector_config_from_env, get_registry

    def t1():
        clear_env()
        reset_registry()
        os.environ['TRANSCRIPTION_CONNECTOR'] = 'openai_whisper'
        os.environ['TRANSCRIPTION_API_KEY'] = 'test-key'
        os.environ['TRANSCRIPTION_MODEL'] = 'gpt-4o-transcribe'
        reload_config()
        registry = get_registry()
        registry.initialize_from_env()
        assert registry.get_active_connector_name() == 'openai_whisper'
    run_test("Explicit TRANSCRIPTION_CONNECTOR takes priority", t1)

    def t2():
        clear_env()
        reset_registry()
        os.environ['TRANSCRIPTION_API_KEY'] = 'test-key'
        os.environ['TRANSCRIPTION_MODEL'] = 'gpt-4o-mini-transcribe'
        reload_config()
        registry = get_registry()
        connector = registry.initialize_from_env()
        assert registry.get_active_connector_name() == 'openai_transcribe'
        assert connector.model == 'gpt-4o-mini-transcribe'
    run_test("gpt-4o model auto-detects openai_transcribe", t2)

    def t3():
        clear_env()
        reset_registry()
        os.environ['TRANSCRIPTION_API_KEY'] = 'test-key'
        reload_config()
        registry = get_registry()
        connector = registry.initialize_from_env()
        assert registry.get_active_connector_name() == 'openai_whisper'
        assert connector.model == 'whisper-1'
    run_test("Default is openai_whisper with whisper-1", t3)

    def t4():
        clear_env()
        reset_registry()
        os.environ['TRANSCRIPTION_API_KEY'] = 'test-key'
        os.environ['TRANSCRIPTION_BASE_URL'] = 'https://proxy.local/v1  # internal proxy'
        reload_config()
        config = connector_config_from_env(OpenAIWhisperConnector)
        assert config['base_url'] == 'https://proxy.local/v1'
    run_test("TRANSCRIPTION_BASE_URL with trailing comment is handled", t4)

    def t5():
        clear_env()
        reset_registry()
        os.environ['TRANSCRIPTION_API_KEY'] = 'test-key'
        os.environ['TRANSCRIPTION_TIMEOUT'] = '120'
        reload_config()
        config = connector_config_from_env(OpenAIWhisperConnector)
        assert config['timeout'] == 120.0
    run_test("TRANSCRIPTION_TIMEOUT is parsed", t5)

    clear_env()
    reset_registry()
    assert_section_passed(errors_before)


# =============================================================================
# TEST SECTION 3: Connector Specifications and Chunk Budgets
# =============================================================================

def test_connector_specifications():
    """Test connector specifications drive the chunk budgets."""
    print("\n=== Testing Connector Specifications ===")
    errors_before = len(ERRORS)

    from meetscribe.audio_chunking import MB, get_effective_chunking_config
    from meetscribe.services.transcription import OpenAITranscribeConnector, OpenAIWhisperConnector

    def t1():
        specs = OpenAIWhisperConnector.SPECIFICATIONS
        assert specs.max_file_size_bytes == 25 * MB
        assert specs.max_duration_seconds is None
    run_test("OpenAI Whisper has 25MB limit", t1)

    def t2():
        specs = OpenAITranscribeConnector.SPECIFICATIONS
        assert specs.max_file_size_bytes == 25 * MB
        assert specs.max_duration_seconds == 1400
    run_test("OpenAI Transcribe has 25MB and 1400s limits", t2)

    def t3():
        clear_env()
        config = get_effective_chunking_config(OpenAITranscribeConnector.SPECIFICATIONS)
        assert config.enabled
        assert config.max_bytes == int(25 * MB * 0.8)
        assert config.max_duration_seconds == 600
    run_test("Transcribe connector budgets: 20MB / 600s", t3)

    def t4():
        clear_env()
        os.environ['CHUNK_LIMIT'] = '5m'
        config = get_effective_chunking_config(OpenAITranscribeConnector.SPECIFICATIONS)
        assert config.max_duration_seconds == 300
        assert config.source == 'user_and_connector'
        clear_env()
    run_test("User duration limit below connector limit wins", t4)

    assert_section_passed(errors_before)


# =============================================================================
# TEST SECTION 4: OpenAI Connectors With Injected Client
# =============================================================================

def test_openai_connectors():
    """Test request building and error wrapping without network access."""
    print("\n=== Testing OpenAI Connectors ===")
    errors_before = len(ERRORS)

    from meetscribe.services.retry import is_retryable
    from meetscribe.services.transcription import (
        ConfigurationError, OpenAITranscribeConnector, OpenAIWhisperConnector, ProviderError,
        TranscriptionRequest,
    )

    request = TranscriptionRequest(audio=b'RIFF....', filename='meeting_part001.wav', mime_type='audio/wav',
                                   language='en', prompt='Budget review')

    def t1():
        client = fake_client(result=SimpleNamespace(text='hello there'))
        connector = OpenAIWhisperConnector({'client': client})
        response = asyncio.run(connector.transcribe(request))
        assert response.text == 'hello there'
        assert response.provider == 'openai_whisper'
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs['model'] == 'whisper-1'
        assert kwargs['file'] == ('meeting_part001.wav', b'RIFF....', 'audio/wav')
        assert kwargs['language'] == 'en'
        assert kwargs['prompt'] == 'Budget review'
    run_test("Whisper connector builds multipart request", t1)

    def t2():
        client = fake_client(result=SimpleNamespace(text='hi'))
        connector = OpenAITranscribeConnector({'client': client, 'model': 'gpt-4o-transcribe'})
        asyncio.run(connector.transcribe(request))
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs['chunking_strategy'] == 'auto'
        assert kwargs['model'] == 'gpt-4o-transcribe'
    run_test("Transcribe connector adds chunking_strategy", t2)

    def t3():
        try:
            OpenAITranscribeConnector({'client': MagicMock(), 'model': 'whisper-1'})
            assert False, "Should have raised ConfigurationError"
        except ConfigurationError as e:
            assert 'Unknown model' in str(e)
    run_test("Transcribe connector rejects unknown model", t3)

    def t4():
        try:
            OpenAIWhisperConnector({})
            assert False, "Should have raised ConfigurationError"
        except ConfigurationError as e:
            assert 'api_key' in str(e)
    run_test("Whisper connector requires api_key", t4)

    def t5():
        error = openai_status_error(openai.RateLimitError, 429, 'Rate limit reached')
        connector = OpenAIWhisperConnector({'client': fake_client(error=error)})
        try:
            asyncio.run(connector.transcribe(request))
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert e.status_code == 429
            assert e.provider == 'openai_whisper'
            assert e.__cause__ is error
            assert is_retryable(e)
    run_test("Rate limit wrapped as retryable ProviderError", t5)

    def t6():
        error = openai_status_error(openai.AuthenticationError, 401, 'Incorrect API key provided')
        connector = OpenAIWhisperConnector({'client': fake_client(error=error)})
        try:
            asyncio.run(connector.transcribe(request))
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert e.status_code == 401
            assert not is_retryable(e)
    run_test("Authentication failure is fatal", t6)

    def t7():
        request_obj = httpx.Request('POST', 'https://api.openai.com/v1/audio/transcriptions')
        error = openai.APIConnectionError(request=request_obj)
        connector = OpenAIWhisperConnector({'client': fake_client(error=error)})
        try:
            asyncio.run(connector.transcribe(request))
            assert False, "Should have raised ProviderError"
        except ProviderError as e:
            assert e.status_code is None
            assert is_retryable(e)
    run_test("Connection failure is retryable", t7)

    assert_section_passed(errors_before)


# =============================================================================
# TEST SECTION 5: Registry Operations and Edge Cases
# =============================================================================

def test_registry_operations():
    """Test registry operations."""
    print("\n=== Testing Registry Operations ===")
    errors_before = len(ERRORS)

    from meetscribe.services.transcription import ConfigurationError, OpenAIWhisperConnector
    from meetscribe.services.transcription.registry import get_registry

    def t1():
        reset_registry()
        names = get_registry().names()
        assert 'openai_whisper' in names
        assert 'openai_transcribe' in names
    run_test("Built-in connectors are registered", t1)

    def t2():
        reset_registry()
        try:
            get_registry().connector_class('nonexistent')
            assert False, "Should have raised ConfigurationError"
        except ConfigurationError as e:
            assert 'Unknown connector' in str(e)
    run_test("Unknown connector raises ConfigurationError", t2)

    def t3():
        reset_registry()
        registry = get_registry()
        connector = OpenAIWhisperConnector({'client': fake_client()})
        registry.set_active_connector(connector, 'custom')
        assert registry.get_active_connector() is connector
        assert registry.get_active_connector_name() == 'custom'
    run_test("set_active_connector installs a prebuilt connector", t3)

    def t4():
        clear_env()
        reset_registry()
        os.environ['TRANSCRIPTION_CONNECTOR'] = 'openai_transcribe'
        os.environ['TRANSCRIPTION_API_KEY'] = 'test-key'
        os.environ['TRANSCRIPTION_MODEL'] = 'not-a-model'
        reload_config()
        try:
            get_registry().initialize_from_env()
            assert False, "Should have raised ConfigurationError"
        except ConfigurationError:
            pass
    run_test("Invalid model for explicit connector fails initialization", t4)

    clear_env()
    reset_registry()
    assert_section_passed(errors_before)


# =============================================================================
# Main
# =============================================================================

def main():
    """Run all tests."""
    global PASSED, FAILED, ERRORS

    print("=" * 60)
    print("Transcription Connector Architecture Tests")
    print("=" * 60)

    for section in (test_base_classes, test_auto_detection, test_connector_specifications,
                    test_openai_connectors, test_registry_operations):
        try:
            section()
        except AssertionError:
            pass

    print("\n" + "=" * 60)
    print(f"RESULTS: {PASSED} passed, {FAILED} failed")
    print("=" * 60)

    if ERRORS:
        print("\nFailed tests:")
        for name, error in ERRORS:
            print(f"  - {name}: {error}")

    clear_env()
    return 0 if FAILED == 0 else 1


if __name__ == '__main__':
    sys.exit(main())
