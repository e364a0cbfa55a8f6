"""
In-memory PCM re-encoding used to shrink oversized WAV chunks.

The reduction ladder mirrors what a browser AudioContext would do: halve the
sample rate (never below a speech-intelligible floor) while collapsing stereo
to mono, then collapse any remaining channels, re-encoding to 16-bit PCM WAV
after every step so the caller can re-check the size.
"""

import logging
from dataclasses import dataclass

import numpy as np

from meetscribe.utils.wav import decode_pcm16, encode_pcm16

logger = logging.getLogger(__name__)

# 16kHz is sufficient for speech recognition
MIN_SPEECH_SAMPLE_RATE = 16000


@dataclass
class ConversionResult:
    """Result of one downsampling step."""
    data: bytes
    sample_rate: int
    channels: int
    was_converted: bool

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def size_mb(self) -> float:
        return len(self.data) / (1024 * 1024)


def mix_to_mono(samples: np.ndarray) -> np.ndarray:
    """Average all channels into one, returning shape (frames, 1)."""
    if samples.shape[1] == 1:
        return samples
    return samples.mean(axis=1, keepdims=True)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Nearest-lower-sample rate conversion.

    Each output frame ``j`` takes input frame ``floor(j * source_rate / target_rate)``,
    which is cheap and good enough for speech at the rates involved.
    """
    if target_rate == source_rate or samples.shape[0] == 0:
        return samples
    ratio = source_rate / target_rate
    duration = samples.shape[0] / source_rate
    out_frames = int(np.ceil(duration * target_rate))
    indices = np.minimum(np.floor(np.arange(out_frames) * ratio).astype(np.int64), samples.shape[0] - 1)
    return samples[indices]


def downsample_step(data: bytes, min_sample_rate: int = MIN_SPEECH_SAMPLE_RATE) -> ConversionResult:
    """
    Apply one step of the reduction ladder to a 16-bit PCM WAV.

    - Above ``min_sample_rate``: halve the rate (floored at ``min_sample_rate``)
      and mix stereo down to mono in the same pass.
    - At the floor with more than one channel: mix down to mono.
    - Otherwise nothing is left to reduce and ``was_converted`` is False.
    """
    samples, sample_rate = decode_pcm16(data)
    channels = samples.shape[1]

    if sample_rate > min_sample_rate:
        target_rate = max(min_sample_rate, sample_rate // 2)
        if channels == 2:
            samples = mix_to_mono(samples)
        samples = resample(samples, sample_rate, target_rate)
        logger.debug(f"Downsampled {sample_rate}Hz/{channels}ch -> {target_rate}Hz/{samples.shape[1]}ch")
        return ConversionResult(
            data=encode_pcm16(samples, target_rate),
            sample_rate=target_rate,
            channels=samples.shape[1],
            was_converted=True,
        )

    if channels > 1:
        samples = mix_to_mono(samples)
        logger.debug(f"Mixed {channels} channels to mono at {sample_rate}Hz")
        return ConversionResult(
            data=encode_pcm16(samples, sample_rate),
            sample_rate=sample_rate,
            channels=1,
            was_converted=True,
        )

    return ConversionResult(data=data, sample_rate=sample_rate, channels=channels, was_converted=False)
