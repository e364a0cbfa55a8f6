"""
Minimal PCM WAV container handling.

Only the canonical 44-byte header layout is written:

    0   'RIFF'
    4   RIFF chunk size (uint32 LE) = file size - 8
    8   'WAVE'
    12  'fmt ' sub-chunk (16 bytes of PCM format data)
    36  'data'
    40  data sub-chunk size (uint32 LE)
    44  PCM samples

Files with extra sub-chunks (LIST, fact, ...) can be brought into that
layout with :func:`canonicalize` before they are sliced.
"""

import struct
from dataclasses import dataclass
from typing import Optional

import numpy as np

from meetscribe.services.transcription.exceptions import MalformedContainerError

WAV_HEADER_SIZE = 44
WAV_MIME_TYPES = frozenset({'audio/wav', 'audio/x-wav', 'audio/wave', 'audio/vnd.wave'})
PCM_FORMAT = 1


@dataclass(frozen=True)
class WavInfo:
    """Format fields read from a canonical WAV header."""
    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.byte_rate:
            return None
        return self.data_size / self.byte_rate


def is_wav(data: bytes, mime_type: Optional[str] = None) -> bool:
    """True when the bytes carry a RIFF/WAVE signature or the MIME type says WAV."""
    if len(data) >= 12 and data[0:4] == b'RIFF' and data[8:12] == b'WAVE':
        return True
    return bool(mime_type) and mime_type.split(';')[0].strip().lower() in WAV_MIME_TYPES


def _require_header(data: bytes) -> None:
    if len(data) < WAV_HEADER_SIZE:
        raise MalformedContainerError(
            f"WAV container is {len(data)} bytes, shorter than the {WAV_HEADER_SIZE}-byte header"
        )


def extract_header(data: bytes) -> bytes:
    """Return the first 44 bytes of a canonical WAV file."""
    _require_header(data)
    return bytes(data[:WAV_HEADER_SIZE])


def extract_payload(data: bytes) -> bytes:
    """Return the PCM bytes following the 44-byte header."""
    _require_header(data)
    return bytes(data[WAV_HEADER_SIZE:])


def rewrite_header(header: bytes, payload_length: int) -> bytes:
    """
    Return a copy of ``header`` whose size fields describe ``payload_length`` bytes of PCM.

    Format, channel count, sample rate and bit depth are copied unchanged.
    """
    _require_header(header)
    if payload_length < 0:
        raise ValueError(f"payload_length must be non-negative, got {payload_length}")
    new_header = bytearray(header[:WAV_HEADER_SIZE])
    struct.pack_into('<I', new_header, 4, payload_length + WAV_HEADER_SIZE - 8)
    struct.pack_into('<I', new_header, 40, payload_length)
    return bytes(new_header)


def read_data_size(data: bytes) -> int:
    _require_header(data)
    return struct.unpack_from('<I', data, 40)[0]


def read_riff_size(data: bytes) -> int:
    _require_header(data)
    return struct.unpack_from('<I', data, 4)[0]


def parse_wav_info(data: bytes) -> WavInfo:
    """
    Read the format fields of a canonical WAV header.

    The data size is taken from the bytes actually present after the header,
    so truncated recordings (size field larger than the payload) and streamed
    recordings (size field left at 0 or 0xFFFFFFFF) still report a usable length.
    """
    _require_header(data)
    if data[0:4] != b'RIFF' or data[8:12] != b'WAVE':
        raise MalformedContainerError("Missing RIFF/WAVE signature")
    if data[12:16] != b'fmt ' or data[36:40] != b'data':
        raise MalformedContainerError("WAV header is not in canonical 44-byte layout")
    audio_format, channels, sample_rate, byte_rate, block_align, bits = struct.unpack_from('<HHIIHH', data, 20)
    return WavInfo(
        audio_format=audio_format,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align or 1,
        bits_per_sample=bits,
        data_size=len(data) - WAV_HEADER_SIZE,
    )


def is_canonical(data: bytes) -> bool:
    return (
        len(data) >= WAV_HEADER_SIZE
        and data[0:4] == b'RIFF'
        and data[8:12] == b'WAVE'
        and data[12:16] == b'fmt '
        and data[36:40] == b'data'
    )


def canonicalize(data: bytes) -> bytes:
    """
    Rewrite a RIFF/WAVE file into the canonical 44-byte header layout.

    Walks the sub-chunks, keeps the first 16 bytes of ``fmt `` and the
    ``data`` payload, and drops everything else (LIST, fact, cue, ...).
    Already-canonical input is returned unchanged.
    """
    if is_canonical(data):
        return data
    if len(data) < 12 or data[0:4] != b'RIFF' or data[8:12] != b'WAVE':
        raise MalformedContainerError("Missing RIFF/WAVE signature")

    fmt_body = None
    payload = None
    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset:offset + 4]
        chunk_size = struct.unpack_from('<I', data, offset + 4)[0]
        body_start = offset + 8
        if chunk_id == b'fmt ':
            fmt_body = data[body_start:body_start + 16]
        elif chunk_id == b'data':
            # Streamed recordings may carry a bogus size; trust the bytes present.
            payload = data[body_start:body_start + chunk_size] if chunk_size else data[body_start:]
            break
        # Sub-chunks are word aligned.
        offset = body_start + chunk_size + (chunk_size & 1)

    if fmt_body is None or len(fmt_body) < 16:
        raise MalformedContainerError("WAV file has no usable 'fmt ' sub-chunk")
    if payload is None:
        raise MalformedContainerError("WAV file has no 'data' sub-chunk")

    audio_format, channels, sample_rate, byte_rate, block_align, bits = struct.unpack('<HHIIHH', fmt_body)
    header = build_header(
        channels=channels,
        sample_rate=sample_rate,
        bits_per_sample=bits,
        payload_length=len(payload),
        audio_format=audio_format,
    )
    return header + bytes(payload)


def build_header(channels: int, sample_rate: int, bits_per_sample: int, payload_length: int,
                 audio_format: int = PCM_FORMAT) -> bytes:
    """Build a canonical 44-byte header from scratch."""
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    return struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF',
        payload_length + WAV_HEADER_SIZE - 8,
        b'WAVE',
        b'fmt ',
        16,
        audio_format,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b'data',
        payload_length,
    )


def decode_pcm16(data: bytes) -> tuple:
    """
    Decode a canonical 16-bit PCM WAV into float samples.

    Returns:
        Tuple of (samples, sample_rate) where samples has shape
        (frames, channels) and values in [-1.0, 1.0].
    """
    info = parse_wav_info(data)
    if info.audio_format != PCM_FORMAT or info.bits_per_sample != 16:
        raise MalformedContainerError(
            f"Only 16-bit PCM can be decoded (format={info.audio_format}, bits={info.bits_per_sample})"
        )
    payload = data[WAV_HEADER_SIZE:]
    usable = len(payload) - (len(payload) % info.block_align)
    samples = np.frombuffer(payload[:usable], dtype='<i2').astype(np.float32) / 32768.0
    return samples.reshape(-1, info.channels), info.sample_rate


def encode_pcm16(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples shaped (frames, channels) as a canonical 16-bit PCM WAV."""
    if samples.ndim == 1:
        samples = samples.reshape(-1, 1)
    clipped = np.clip(samples, -1.0, 1.0)
    # Asymmetric scaling keeps -1.0 and 1.0 inside the int16 range.
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    pcm = scaled.astype('<i2').tobytes()
    header = build_header(
        channels=samples.shape[1],
        sample_rate=sample_rate,
        bits_per_sample=16,
        payload_length=len(pcm),
    )
    return header + pcm
