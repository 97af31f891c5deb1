"""
PCM frame encoder: float32 sample blocks -> PCM 16-bit little-endian mono frames.

Runs inside the audio callback, so it must stay O(block size) with no I/O:
one numpy clip, one scale, one cast.

Mapping: clamp to [-1, 1]; negative samples scale by 32768, non-negative by 32767.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2
_PCM_DTYPE = np.dtype("<i2")


@dataclass(frozen=True)
class PCMFrame:
    """One block of PCM16LE mono samples. Ownership passes to the transport on send."""

    data: bytes
    sample_rate: int = SAMPLE_RATE

    @property
    def sample_count(self) -> int:
        return len(self.data) // SAMPLE_WIDTH

    @property
    def duration_sec(self) -> float:
        return self.sample_count / float(self.sample_rate)


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp and scale float samples to int16 (asymmetric: -1.0 -> -32768, 1.0 -> 32767)."""
    audio = np.clip(np.asarray(samples, dtype=np.float32).reshape(-1), -1.0, 1.0)
    scaled = np.where(audio < 0, audio * 32768.0, audio * 32767.0)
    return scaled.astype(_PCM_DTYPE)


def encode(samples: np.ndarray, sample_rate: int = SAMPLE_RATE) -> PCMFrame:
    """Encode one float32 block. Output length in bytes is always 2 * sample count."""
    return PCMFrame(data=float32_to_pcm16(samples).tobytes(), sample_rate=sample_rate)


def pcm_bytes_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """Convert PCM 16-bit mono bytes to float32 [-1.0, 1.0]."""
    samples = np.frombuffer(pcm_bytes, dtype=_PCM_DTYPE)
    return samples.astype(np.float32) / 32768.0


def to_mono(block: np.ndarray) -> np.ndarray:
    """Average multi-channel input (frames x channels) down to one channel."""
    block = np.asarray(block, dtype=np.float32)
    if block.ndim == 1:
        return block
    if block.shape[1] == 1:
        return block[:, 0]
    return block.mean(axis=1)


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Linear-interpolation resample for devices that cannot open at 16kHz."""
    samples = np.asarray(samples, dtype=np.float32)
    if src_rate == dst_rate or samples.size == 0:
        return samples
    out_len = max(1, int(round(samples.size * dst_rate / float(src_rate))))
    src_x = np.arange(samples.size, dtype=np.float64)
    dst_x = np.linspace(0, samples.size - 1, out_len)
    return np.interp(dst_x, src_x, samples).astype(np.float32)
