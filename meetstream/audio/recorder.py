"""
SessionAudioRecorder: optional recording of both channels to one WAV/MP3 file.

- When recording disabled: no-op (append/finalize do nothing).
- When enabled: per-channel in-memory buffers; written ONCE at session stop.
- Layout: stereo = microphone left / system right; mono = equal-gain (0.5 / 0.5) mix.
- The shorter channel is zero-padded so both start at session start.
- MP3: write WAV first, then convert with pydub. finalize() runs in an executor.
"""
from __future__ import annotations

import logging
import os
import time
import wave
from abc import ABC, abstractmethod
from typing import Dict, Optional

import numpy as np

from meetstream.audio.channels import ChannelKind
from meetstream.config import Settings, get_settings

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2
MIX_GAIN = 0.5


class SessionAudioRecorderBase(ABC):
    """append() accepts PCM16LE bytes for one channel; finalize() writes the file once."""

    @abstractmethod
    def append(self, channel: ChannelKind, data: bytes) -> None:
        ...

    @abstractmethod
    def finalize(self) -> Optional[str]:
        """Write file; run in executor. Returns path or None."""
        ...


class NoOpSessionAudioRecorder(SessionAudioRecorderBase):
    def append(self, channel: ChannelKind, data: bytes) -> None:
        pass

    def finalize(self) -> Optional[str]:
        return None


def _pad_to(samples: np.ndarray, length: int) -> np.ndarray:
    if samples.size >= length:
        return samples
    return np.concatenate([samples, np.zeros(length - samples.size, dtype=samples.dtype)])


def interleave_stereo(left: bytes, right: bytes) -> bytes:
    """Microphone on the left, system audio on the right."""
    l = np.frombuffer(left, dtype="<i2")
    r = np.frombuffer(right, dtype="<i2")
    n = max(l.size, r.size)
    stereo = np.empty(n * 2, dtype="<i2")
    stereo[0::2] = _pad_to(l, n)
    stereo[1::2] = _pad_to(r, n)
    return stereo.tobytes()


def mix_mono(a: bytes, b: bytes, gain: float = MIX_GAIN) -> bytes:
    """Sum both channels at equal gain, clamped to int16."""
    x = np.frombuffer(a, dtype="<i2").astype(np.float32)
    y = np.frombuffer(b, dtype="<i2").astype(np.float32)
    n = max(x.size, y.size)
    mixed = (_pad_to(x, n) * gain + _pad_to(y, n) * gain).clip(-32768, 32767)
    return mixed.astype("<i2").tobytes()


def _write_wav_sync(pcm_bytes: bytes, out_path: str, sample_rate: int, nchannels: int) -> None:
    """One open, header once, all frames, one close."""
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with wave.open(out_path, "wb") as wav:
        wav.setnchannels(nchannels)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm_bytes)


def _wav_to_mp3_sync(wav_path: str, mp3_path: str, bitrate: str) -> None:
    from pydub import AudioSegment

    segment = AudioSegment.from_wav(wav_path)
    segment.export(mp3_path, format="mp3", bitrate=bitrate)


class SessionAudioRecorder(SessionAudioRecorderBase):
    """One session = one buffer per channel. Flush only on finalize()."""

    def __init__(self, session_id: str, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._session_id = session_id
        self._buffers: Dict[ChannelKind, bytearray] = {kind: bytearray() for kind in ChannelKind}
        self._sample_rate = settings.SAMPLE_RATE
        self._record_dir = settings.SESSION_RECORD_DIR
        self._format = settings.SESSION_RECORD_FORMAT
        self._layout = settings.SESSION_RECORD_LAYOUT
        self._bitrate = settings.SESSION_RECORD_BITRATE
        self._finalized = False
        self._dropped_chunks = 0

    def append(self, channel: ChannelKind, data: bytes) -> None:
        if self._finalized:
            return
        if not data or len(data) % SAMPLE_WIDTH != 0:
            self._dropped_chunks += 1
            return
        self._buffers[channel].extend(data)

    def finalize(self) -> Optional[str]:
        if self._finalized:
            return None
        self._finalized = True
        mic = bytes(self._buffers[ChannelKind.MICROPHONE])
        system = bytes(self._buffers[ChannelKind.SYSTEM])
        if not mic and not system:
            if self._dropped_chunks:
                logger.debug("Recording: nothing to write (dropped chunks: %d)", self._dropped_chunks)
            return None

        if self._layout == "mono":
            pcm, nchannels = mix_mono(mic, system), 1
        else:
            pcm, nchannels = interleave_stereo(mic, system), 2

        base = f"{self._session_id}_{int(time.time())}"
        wav_path = os.path.join(self._record_dir, f"{base}.wav")
        _write_wav_sync(pcm, wav_path, self._sample_rate, nchannels)

        if self._format == "mp3":
            mp3_path = os.path.join(self._record_dir, f"{base}.mp3")
            _wav_to_mp3_sync(wav_path, mp3_path, self._bitrate)
            try:
                os.remove(wav_path)
            except OSError:
                pass
            logger.info("Session recording saved: %s", mp3_path)
            return mp3_path
        logger.info("Session recording saved: %s", wav_path)
        return wav_path


def create_session_audio_recorder(session_id: str, settings: Settings | None = None) -> SessionAudioRecorderBase:
    """Create recorder when ENABLE_SESSION_RECORDING is true. Disabled by default."""
    settings = settings or get_settings()
    if settings.ENABLE_SESSION_RECORDING:
        return SessionAudioRecorder(session_id, settings)
    return NoOpSessionAudioRecorder()
