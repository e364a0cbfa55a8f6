"""
Transcription endpoints.

Whole-file transcription runs the chunking pipeline in-process; the segment
endpoints let a client stage chunks in blob storage and transcribe them one
at a time.
"""

import asyncio
import logging
import mimetypes

from flask import Blueprint, jsonify, request
from werkzeug.utils import secure_filename

from meetscribe.audio_chunking import AudioBlob
from meetscribe.config.version import get_version
from meetscribe.services.storage import get_storage_service
from meetscribe.services.transcription import (
    AggregateTranscriptionError,
    ConfigurationError,
    PipelineCancelledError,
    ProviderError,
    TranscriptionError,
    get_registry,
)
from meetscribe.tasks.processing import transcribe_audio, transcribe_segment
from meetscribe.utils.error_formatting import format_error_for_user

logger = logging.getLogger(__name__)

# Create blueprint
transcribe_bp = Blueprint('transcribe', __name__)

# Add common audio MIME type mappings that might be missing
mimetypes.add_type('audio/mp4', '.m4a')
mimetypes.add_type('audio/aac', '.aac')
mimetypes.add_type('audio/webm', '.webm')
mimetypes.add_type('audio/flac', '.flac')
mimetypes.add_type('audio/ogg', '.ogg')


def _guess_mime_type(file_storage, filename):
    mime_type = file_storage.mimetype
    if not mime_type or mime_type == 'application/octet-stream':
        mime_type = mimetypes.guess_type(filename)[0] or 'application/octet-stream'
    return mime_type


def _run_with_connector(pipeline):
    """
    Run ``pipeline(connector)`` on a fresh event loop.

    The connector's per-loop HTTP client is closed before the loop goes away.
    """
    connector = get_registry().get_active_connector()

    async def runner():
        try:
            return await pipeline(connector)
        finally:
            await connector.aclose()

    return asyncio.run(runner())


def _error_response(e):
    """Map a pipeline exception onto a JSON error body and status code."""
    if isinstance(e, AggregateTranscriptionError):
        return jsonify({
            'error': str(e),
            'details': format_error_for_user(e),
            'failed_segments': [i + 1 for i in e.failed_ordinals],
            'total_segments': e.total,
        }), 502
    if isinstance(e, PipelineCancelledError):
        return jsonify({'error': str(e), 'details': format_error_for_user(e)}), 409
    if isinstance(e, ProviderError) and e.status_code:
        return jsonify({'error': str(e), 'details': format_error_for_user(e)}), e.status_code
    if isinstance(e, ConfigurationError):
        return jsonify({'error': str(e), 'details': format_error_for_user(e)}), 500
    if isinstance(e, TranscriptionError):
        return jsonify({'error': str(e), 'details': format_error_for_user(e)}), 400
    return jsonify({'error': 'Transcription failed', 'details': format_error_for_user(e)}), 500


@transcribe_bp.route('/api/transcribe', methods=['POST'])
def transcribe_file():
    """Transcribe an uploaded audio file, chunking it when needed."""
    if 'file' not in request.files:
        return jsonify({'error': 'No file provided'}), 400
    file = request.files['file']
    if not file.filename:
        return jsonify({'error': 'No file selected'}), 400

    filename = secure_filename(file.filename) or 'audio'
    data = file.read()
    if not data:
        return jsonify({'error': 'Uploaded file is empty'}), 400

    blob = AudioBlob(data=data, mime_type=_guess_mime_type(file, filename), filename=filename)
    model = request.form.get('model') or None
    language = request.form.get('language') or None

    try:
        result = _run_with_connector(
            lambda connector: transcribe_audio(blob, connector=connector, model=model, language=language))
    except Exception as e:
        logger.error(f"Transcription of {filename} failed: {e}")
        return _error_response(e)

    return jsonify(result.to_dict())


@transcribe_bp.route('/api/transcribe-segment', methods=['POST'])
def transcribe_single_segment():
    """Transcribe one staged chunk identified by its blob URL."""
    payload = request.get_json(silent=True) or {}
    blob_url = payload.get('blobUrl')
    segment_id = payload.get('segmentId')
    if not blob_url:
        return jsonify({'error': 'blobUrl is required'}), 400

    try:
        text = _run_with_connector(lambda connector: transcribe_segment(
            blob_url,
            connector=connector,
            model=payload.get('model') or None,
            language=payload.get('language') or None,
            segment_id=segment_id,
        ))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except FileNotFoundError:
        return jsonify({'error': 'Segment not found'}), 404
    except Exception as e:
        logger.error(f"Transcription of segment {segment_id} failed: {e}")
        return _error_response(e)

    return jsonify({'segmentId': segment_id, 'transcription': text})


@transcribe_bp.route('/api/upload-blob', methods=['POST'])
def upload_blob():
    """Stage one chunk in blob storage and return its URL."""
    if 'file' not in request.files:
        return jsonify({'error': 'No file provided'}), 400
    file = request.files['file']
    filename = secure_filename(file.filename or '') or 'chunk.bin'

    try:
        stored = get_storage_service().put(filename, file.read(), _guess_mime_type(file, filename))
    except Exception as e:
        logger.error(f"Failed to stage {filename}: {e}")
        return jsonify({'error': 'Failed to store segment', 'details': format_error_for_user(e)}), 500

    return jsonify({'url': stored.url, 'size': stored.size})


@transcribe_bp.route('/api/health', methods=['GET'])
def health():
    registry = get_registry()
    try:
        connector_name = registry.get_active_connector_name()
        healthy = registry.get_active_connector().health_check()
    except ConfigurationError as e:
        return jsonify({'status': 'misconfigured', 'version': get_version(), 'error': str(e)}), 503
    return jsonify({
        'status': 'ok' if healthy else 'degraded',
        'version': get_version(),
        'connector': connector_name,
    })
