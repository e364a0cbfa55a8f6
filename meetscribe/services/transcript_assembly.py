"""
Combine per-chunk transcriptions into one transcript.
"""

from typing import Iterable, Optional

SENTENCE_ENDINGS = ('.', '!', '?')


def join(results: Iterable[Optional[str]]) -> str:
    """
    Join per-chunk texts in ordinal order.

    Missing (None) and blank entries are dropped, the rest are trimmed. When
    the previous kept entry ends a sentence, the next one starts with a
    capital letter. Entries are separated by a blank line.
    """
    parts = []
    for text in results:
        if text is None:
            continue
        cleaned = text.strip()
        if not cleaned:
            continue
        if parts and parts[-1].endswith(SENTENCE_ENDINGS):
            cleaned = cleaned[0].upper() + cleaned[1:]
        parts.append(cleaned)
    return '\n\n'.join(parts)


def partial_notice(failed: int, total: int) -> str:
    return (f"[Note: {failed} of {total} segments failed to transcribe. "
            f"The transcript below is incomplete.]")


def annotate_partial(transcript: str, failed: int, total: int) -> str:
    """Prefix a notice when some segments are missing; unchanged when none failed."""
    if failed <= 0:
        return transcript
    notice = partial_notice(failed, total)
    if not transcript:
        return notice
    return f"{notice}\n\n{transcript}"
