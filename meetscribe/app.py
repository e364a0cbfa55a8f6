# meetscribe - chunked meeting transcription service
import logging
import sys

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.exceptions import RequestEntityTooLarge

# Load environment variables from .env file before the config module reads them
load_dotenv()

from meetscribe.config import app_config  # noqa: E402
from meetscribe.config.version import get_version  # noqa: E402

logger = logging.getLogger(__name__)


def configure_logging(log_level=None):
    """Send every log record to stdout with one shared format."""
    log_level = (log_level or app_config.LOG_LEVEL).upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)

    # Get the root logger and clear any existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    root_logger.addHandler(handler)

    # Silence per-request debug logs from the HTTP stack
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)


def create_app(config=None):
    """Build the Flask application."""
    from meetscribe.api.transcribe import transcribe_bp

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = app_config.MAX_CONTENT_LENGTH_MB * 1024 * 1024
    if config:
        app.config.update(config)

    app.register_blueprint(transcribe_bp)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_large_file(e):
        max_mb = app.config['MAX_CONTENT_LENGTH'] / (1024 * 1024)
        return jsonify({
            'error': f'File too large. Maximum size is {max_mb:.0f} MB.',
            'max_size_mb': max_mb,
        }), 413

    logger.info(f"meetscribe {get_version()} ready (chunking={'on' if app_config.ENABLE_CHUNKING else 'off'}, "
                f"storage={app_config.FILE_STORAGE_BACKEND})")
    return app


if __name__ == '__main__':
    configure_logging()
    create_app().run(host='0.0.0.0', port=8899)
