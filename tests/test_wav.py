#!/usr/bin/env python3
"""
Tests for the PCM WAV header helpers.
"""

import struct
import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from meetscribe.services.transcription.exceptions import MalformedContainerError
from meetscribe.utils import wav


def make_wav(seconds=1.0, sample_rate=16000, channels=1, fill=b'\x01\x02'):
    frames = int(seconds * sample_rate)
    payload = (fill * (frames * channels * 2 // len(fill) + 1))[:frames * channels * 2]
    return wav.build_header(channels, sample_rate, 16, len(payload)) + payload


class TestHeaderLayout(unittest.TestCase):

    def test_build_header_fields(self):
        header = wav.build_header(channels=2, sample_rate=44100, bits_per_sample=16, payload_length=1000)
        self.assertEqual(len(header), 44)
        self.assertEqual(header[0:4], b'RIFF')
        self.assertEqual(header[8:12], b'WAVE')
        self.assertEqual(struct.unpack_from('<I', header, 4)[0], 1036)
        self.assertEqual(struct.unpack_from('<I', header, 40)[0], 1000)
        self.assertEqual(struct.unpack_from('<I', header, 28)[0], 44100 * 4)
        self.assertEqual(struct.unpack_from('<H', header, 32)[0], 4)

    def test_rewrite_header_only_touches_size_fields(self):
        data = make_wav(seconds=0.5, sample_rate=8000, channels=2)
        header = wav.extract_header(data)
        rewritten = wav.rewrite_header(header, 400)

        self.assertEqual(wav.read_riff_size(rewritten), 436)
        self.assertEqual(wav.read_data_size(rewritten), 400)
        self.assertEqual(rewritten[0:4], header[0:4])
        self.assertEqual(rewritten[8:40], header[8:40])

    def test_rewrite_header_rejects_negative_length(self):
        header = wav.build_header(1, 16000, 16, 0)
        with self.assertRaises(ValueError):
            wav.rewrite_header(header, -1)

    def test_short_input_is_malformed(self):
        for func in (wav.extract_header, wav.extract_payload, wav.read_data_size):
            with self.assertRaises(MalformedContainerError):
                func(b'RIFF' + b'\x00' * 10)

    def test_extract_header_and_payload_partition_the_file(self):
        data = make_wav(seconds=0.25)
        self.assertEqual(wav.extract_header(data) + wav.extract_payload(data), data)


class TestParseAndCanonicalize(unittest.TestCase):

    def test_parse_wav_info(self):
        data = make_wav(seconds=2.0, sample_rate=8000, channels=1)
        info = wav.parse_wav_info(data)
        self.assertEqual(info.channels, 1)
        self.assertEqual(info.sample_rate, 8000)
        self.assertEqual(info.block_align, 2)
        self.assertEqual(info.data_size, 32000)
        self.assertAlmostEqual(info.duration_seconds, 2.0)

    def test_truncated_file_reports_bytes_present(self):
        data = make_wav(seconds=1.0, sample_rate=8000)
        truncated = data[:1044]
        self.assertEqual(wav.parse_wav_info(truncated).data_size, 1000)

    def test_is_wav_by_signature_or_mime(self):
        self.assertTrue(wav.is_wav(make_wav(seconds=0.1)))
        self.assertTrue(wav.is_wav(b'not really', 'audio/x-wav'))
        self.assertFalse(wav.is_wav(b'ID3\x03' + b'\x00' * 20, 'audio/mpeg'))

    def test_canonicalize_drops_list_chunk(self):
        payload = b'\x10\x00' * 100
        fmt_body = struct.pack('<HHIIHH', 1, 1, 8000, 16000, 2, 16)
        list_body = b'INFOtest'
        body = (b'WAVE'
                + b'fmt ' + struct.pack('<I', 16) + fmt_body
                + b'LIST' + struct.pack('<I', len(list_body)) + list_body
                + b'data' + struct.pack('<I', len(payload)) + payload)
        data = b'RIFF' + struct.pack('<I', len(body)) + body

        self.assertFalse(wav.is_canonical(data))
        canonical = wav.canonicalize(data)
        self.assertTrue(wav.is_canonical(canonical))
        self.assertEqual(wav.extract_payload(canonical), payload)
        self.assertEqual(wav.parse_wav_info(canonical).sample_rate, 8000)

    def test_canonicalize_returns_canonical_input_unchanged(self):
        data = make_wav(seconds=0.1)
        self.assertIs(wav.canonicalize(data), data)

    def test_canonicalize_without_data_chunk(self):
        fmt_body = struct.pack('<HHIIHH', 1, 1, 8000, 16000, 2, 16)
        body = b'WAVE' + b'fmt ' + struct.pack('<I', 16) + fmt_body
        data = b'RIFF' + struct.pack('<I', len(body)) + body
        with self.assertRaises(MalformedContainerError):
            wav.canonicalize(data)


class TestPcmCodec(unittest.TestCase):

    def test_decode_encode_preserves_samples(self):
        samples = np.array([[0.0, 0.5], [-0.5, 0.25], [1.0, -1.0]], dtype=np.float32)
        encoded = wav.encode_pcm16(samples, 16000)
        decoded, rate = wav.decode_pcm16(encoded)

        self.assertEqual(rate, 16000)
        self.assertEqual(decoded.shape, (3, 2))
        np.testing.assert_allclose(decoded, samples, atol=1e-4)

    def test_decode_rejects_non_16_bit(self):
        data = wav.build_header(1, 8000, 8, 4) + b'\x80' * 4
        with self.assertRaises(MalformedContainerError):
            wav.decode_pcm16(data)


if __name__ == '__main__':
    unittest.main()
