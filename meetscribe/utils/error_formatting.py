"""
Turns provider failures into messages a user can act on.

The category table is shared with the retry policy: a category's
``retryable`` flag decides whether a message-only error is transient.
"""

import json
import re
from dataclasses import dataclass
from typing import Dict, Optional, Pattern, Tuple, Union


@dataclass(frozen=True)
class ErrorCategory:
    type: str
    title: str
    message: str
    guidance: str
    retryable: bool
    patterns: Tuple[Pattern, ...]

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _category(type_, title, message, guidance, retryable, *patterns) -> ErrorCategory:
    return ErrorCategory(type_, title, message, guidance, retryable,
                         tuple(re.compile(p, re.IGNORECASE) for p in patterns))


# First match wins; fatal categories come before transient ones so that
# "413 ... rate limit" style messages are not retried.
ERROR_CATEGORIES = (
    _category(
        'size_limit', 'Segment Too Large',
        'A segment was larger than the transcription service accepts.',
        'Lower CHUNK_SIZE_MB or CHUNK_LIMIT so segments are split smaller.',
        False,
        r'maximum content size', r'too large', r'\b413\b', r'payload too large',
    ),
    _category(
        'auth', 'Authentication Error',
        'The transcription service rejected the API credentials.',
        'Check TRANSCRIPTION_API_KEY.',
        False,
        r'\b40[13]\b', r'unauthori[sz]ed', r'forbidden', r'(invalid|incorrect) api key',
        r'authentication failed',
    ),
    _category(
        'billing', 'Billing Issue',
        'The transcription account cannot be charged for this request.',
        'Check the account balance and plan with the provider.',
        False,
        r'insufficient[ _](funds|quota)', r'payment required', r'billing',
    ),
    _category(
        'format', 'Unreadable Audio',
        'The service could not decode a segment of the recording.',
        'Upload WAV audio, which can be split on sample boundaries.',
        False,
        r'(invalid|unsupported) (file )?format', r'could not decode', r'malformed', r'corrupt',
    ),
    _category(
        'model', 'Model Not Available',
        'The requested transcription model does not exist for this account.',
        'Check TRANSCRIPTION_MODEL.',
        False,
        r'model .*(not found|does not exist)', r'invalid model',
    ),
    _category(
        'rate_limit', 'Rate Limit Exceeded',
        'The transcription service is throttling requests.',
        'Lower CHUNK_CONCURRENCY or raise CHUNK_BATCH_DELAY_SECONDS.',
        True,
        r'rate.?limit', r'too many requests', r'\b429\b',
    ),
    _category(
        'timeout', 'Timed Out',
        'A segment took too long to transcribe.',
        'Use shorter segments (CHUNK_LIMIT) or raise CHUNK_ATTEMPT_TIMEOUT_SECONDS.',
        True,
        r'timed?\s*out', r'deadline exceeded',
    ),
    _category(
        'connection', 'Connection Error',
        'The transcription service could not be reached.',
        'Check the network path to TRANSCRIPTION_BASE_URL.',
        True,
        r'connection (refused|reset|error|aborted)', r'could not connect',
        r'network is unreachable', r'name resolution',
    ),
    _category(
        'service_error', 'Service Unavailable',
        'The transcription service failed on its side.',
        'Usually temporary; try again in a few minutes.',
        True,
        r'\b50[0234]\b', r'bad gateway', r'internal server error', r'service unavailable', r'overloaded',
    ),
)

_STATUS_RE = re.compile(r'(?:error\s*code|status)[:\s]*(\d{3})', re.IGNORECASE)
_MESSAGE_RE = re.compile(r"['\"]message['\"]\s*:\s*['\"]([^'\"]+)['\"]")
_NOISE_PREFIXES = ('Transcription failed:', 'Processing failed:', 'Error:', 'Exception:')


def classify_error_message(error_text: str) -> Optional[ErrorCategory]:
    if not error_text:
        return None
    return next((c for c in ERROR_CATEGORIES if c.matches(error_text)), None)


def extract_error_details(error_text: str) -> Dict[str, Optional[str]]:
    """Pull a status code and provider message out of an SDK error string."""
    details = {'raw': error_text, 'code': None, 'message': None}

    status = _STATUS_RE.search(error_text)
    if status:
        details['code'] = status.group(1)

    body_start = error_text.find('{')
    if body_start != -1:
        try:
            body = json.loads(error_text[body_start:].replace("'", '"'))
        except json.JSONDecodeError:
            body = None
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict):
            details['message'] = error.get('message')
        elif isinstance(error, str):
            details['message'] = error

    if not details['message']:
        message = _MESSAGE_RE.search(error_text)
        if message:
            details['message'] = message.group(1)

    return details


def format_error_for_user(error: Union[str, BaseException, None]) -> Dict:
    """
    Describe an error for the API response.

    Exceptions carrying a ``status_code`` have it appended to the text before
    matching, so status-only provider errors still land in a category.

    Returns:
        Dict with title, message, guidance, type, retryable, technical
        (the raw text) and is_known.
    """
    if isinstance(error, BaseException):
        text = str(error)
        status_code = getattr(error, 'status_code', None)
        if status_code and str(status_code) not in text:
            text = f"{text} (status {status_code})"
    else:
        text = error or ''

    category = classify_error_message(text)
    if category is not None:
        return {
            'title': category.title,
            'message': category.message,
            'guidance': category.guidance,
            'type': category.type,
            'retryable': category.retryable,
            'technical': text,
            'is_known': True,
        }

    details = extract_error_details(text) if text else {'code': None, 'message': None}
    message = details['message'] or text or 'An unexpected error occurred.'
    for prefix in _NOISE_PREFIXES:
        if message.startswith(prefix):
            message = message[len(prefix):].strip()
    if len(message) > 200:
        message = message[:200] + '...'

    code = details['code'] or ''
    title = {'4': 'Request Error', '5': 'Server Error'}.get(code[:1], 'Unknown Error' if not text else 'Processing Error')

    return {
        'title': title,
        'message': message,
        'guidance': 'Try again; if it keeps failing, check the server logs for the technical details.',
        'type': 'unknown',
        'retryable': False,
        'technical': text,
        'is_known': False,
    }
