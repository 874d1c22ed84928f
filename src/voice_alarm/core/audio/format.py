from __future__ import annotations

import math
import struct

import numpy as np

WAV_HEADER_SIZE = 44
DEFAULT_SAMPLE_RATE_HZ = 16000
DEFAULT_CHANNELS = 1
DEFAULT_BITS_PER_SAMPLE = 16


def wav_header(
    data_size: int,
    *,
    sample_rate_hz: int = DEFAULT_SAMPLE_RATE_HZ,
    channels: int = DEFAULT_CHANNELS,
    bits_per_sample: int = DEFAULT_BITS_PER_SAMPLE,
) -> bytes:
    """Build the canonical 44-byte RIFF/WAVE header for linear PCM."""
    if data_size < 0:
        raise ValueError("data_size must be >= 0")
    if sample_rate_hz <= 0:
        raise ValueError("sample_rate_hz must be > 0")
    if channels <= 0:
        raise ValueError("channels must be > 0")
    if bits_per_sample % 8 != 0:
        raise ValueError("bits_per_sample must be a multiple of 8")

    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate_hz * block_align
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        1,  # PCM
        channels,
        sample_rate_hz,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_size,
    )


def wrap_pcm16_wav(
    pcm16le: bytes,
    *,
    sample_rate_hz: int = DEFAULT_SAMPLE_RATE_HZ,
    channels: int = DEFAULT_CHANNELS,
) -> bytes:
    return wav_header(len(pcm16le), sample_rate_hz=sample_rate_hz, channels=channels) + pcm16le


def pcm16le_bytes_to_float32(data: bytes) -> np.ndarray:
    usable = len(data) - (len(data) % 2)
    arr = np.frombuffer(data[:usable], dtype="<i2").astype(np.float32)
    return arr / 32768.0


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float32))))


def dbfs(level: float) -> float:
    return 20.0 * math.log10(max(level, 1e-9))


def frame_level(frame: bytes) -> float:
    """RMS level (0..1) of a little-endian PCM16 frame."""
    return rms(pcm16le_bytes_to_float32(frame))
