"""
Audio channel acquisition: microphone and system (loopback) audio as live sample streams.

- Each channel holds its own OS input stream from acquire() until release().
- The audio callback runs on the PortAudio thread; it only converts the block to
  16kHz mono float32 and hands it to on_block. No I/O, no event-loop work here.
- System audio is a hard requirement for meeting transcription: if no loopback
  source is found, acquisition fails with ChannelUnavailable (no silent fallback).

Loopback discovery:
- Windows: WASAPI loopback on an output device (when sounddevice exposes it).
- macOS / Linux: an input device that is really a monitor of the output
  (BlackHole, Soundflower, PulseAudio/PipeWire "Monitor of ...", "Stereo Mix").
"""
from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from meetstream.audio.encoder import SAMPLE_RATE, resample_linear, to_mono
from meetstream.config import Settings, get_settings
from meetstream.errors import ChannelUnavailable

logger = logging.getLogger(__name__)

BlockCallback = Callable[[np.ndarray], None]

LOOPBACK_NAME_MARKERS = (
    "loopback",
    "monitor of",
    ".monitor",
    "stereo mix",
    "what u hear",
    "blackhole",
    "soundflower",
    "vb-audio",
    "cable output",
)


class ChannelKind(str, enum.Enum):
    MICROPHONE = "microphone"
    SYSTEM = "system"


class AudioSource(ABC):
    """A live sample stream for one channel. acquire -> start -> stop -> release."""

    kind: ChannelKind

    @abstractmethod
    def start(self, on_block: BlockCallback) -> None:
        """Begin delivering 16kHz mono float32 blocks to on_block (audio thread)."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop delivering blocks. Idempotent."""
        ...

    @abstractmethod
    def release(self) -> None:
        """Release the OS audio handle. Idempotent."""
        ...


class AudioChannelAcquirer(ABC):
    @abstractmethod
    def acquire(self, kind: ChannelKind) -> AudioSource:
        """Open the channel's source or raise ChannelUnavailable."""
        ...


def _import_sounddevice():
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise ChannelUnavailable(f"Audio backend unavailable: {exc}") from exc
    return sd


def list_input_devices() -> List[Dict[str, Any]]:
    sd = _import_sounddevice()
    return [dict(d) for d in sd.query_devices() if d.get("max_input_channels", 0) > 0]


def select_device(candidates: List[Dict[str, Any]], prefer_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Pick the first candidate whose name contains prefer_name; None if no name or no match."""
    if not prefer_name:
        return None
    needle = prefer_name.lower()
    for device in candidates:
        if needle in device.get("name", "").lower():
            return device
    return None


def find_loopback_input(candidates: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First input device whose name marks it as a loopback/monitor source."""
    for device in candidates:
        name = device.get("name", "").lower()
        if any(marker in name for marker in LOOPBACK_NAME_MARKERS):
            return device
    return None


class SoundDeviceSource(AudioSource):
    """
    sounddevice InputStream for one channel. The stream is opened (OS handle held)
    in the constructor; blocks are only forwarded after start().
    """

    def __init__(
        self,
        kind: ChannelKind,
        device: Optional[int],
        block_size: int,
        sample_rate: int = SAMPLE_RATE,
        extra_settings: Any = None,
    ) -> None:
        sd = _import_sounddevice()
        self.kind = kind
        self._on_block: Optional[BlockCallback] = None
        self._stream = None
        self._released = False
        self._native_rate = sample_rate
        try:
            self._stream = self._open(sd, device, block_size, sample_rate, extra_settings)
        except sd.PortAudioError:
            # Device cannot run at 16kHz: open at its native rate and resample per block
            info = sd.query_devices(device, "input") if device is not None else sd.query_devices(kind="input")
            self._native_rate = int(info.get("default_samplerate") or sample_rate)
            native_block = max(1, int(block_size * self._native_rate / float(sample_rate)))
            logger.info("%s: opening at native rate %s Hz (resampling to %s)", kind.value, self._native_rate, sample_rate)
            self._stream = self._open(sd, device, native_block, self._native_rate, extra_settings)
        self._target_rate = sample_rate

    def _open(self, sd, device, block_size, rate, extra_settings):
        return sd.InputStream(
            device=device,
            samplerate=rate,
            channels=1,
            dtype="float32",
            blocksize=block_size,
            callback=self._callback,
            extra_settings=extra_settings,
        )

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("%s audio status: %s", self.kind.value, status)
        on_block = self._on_block
        if on_block is None:
            return
        block = to_mono(indata).copy()
        if self._native_rate != self._target_rate:
            block = resample_linear(block, self._native_rate, self._target_rate)
        on_block(block)

    def start(self, on_block: BlockCallback) -> None:
        self._on_block = on_block
        if self._stream is not None:
            self._stream.start()

    def stop(self) -> None:
        self._on_block = None
        if self._stream is not None and self._stream.active:
            self._stream.stop()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._on_block = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None


class SoundDeviceAcquirer(AudioChannelAcquirer):
    """Acquires microphone and loopback sources through sounddevice/PortAudio."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def acquire(self, kind: ChannelKind) -> AudioSource:
        if kind == ChannelKind.MICROPHONE:
            return self._acquire_microphone()
        return self._acquire_system()

    def _acquire_microphone(self) -> AudioSource:
        s = self._settings
        try:
            device = select_device(list_input_devices(), s.MICROPHONE_DEVICE)
            index = device.get("index") if device else None
            source = SoundDeviceSource(ChannelKind.MICROPHONE, index, s.BLOCK_SIZE, s.SAMPLE_RATE)
        except ChannelUnavailable:
            raise
        except Exception as exc:
            raise ChannelUnavailable(
                f"Microphone access failed: {exc}. Please allow microphone access.",
                channel=ChannelKind.MICROPHONE.value,
            ) from exc
        logger.info("Microphone acquired (device=%s)", index if index is not None else "default")
        return source

    def _acquire_system(self) -> AudioSource:
        s = self._settings
        try:
            sd = _import_sounddevice()
            candidates = list_input_devices()
            device = select_device(candidates, s.SYSTEM_AUDIO_DEVICE) or find_loopback_input(candidates)
            if device is not None:
                source = SoundDeviceSource(ChannelKind.SYSTEM, device.get("index"), s.BLOCK_SIZE, s.SAMPLE_RATE)
                logger.info("System audio acquired via loopback input %r", device.get("name"))
                return source
            source = self._acquire_wasapi_loopback(sd)
            if source is not None:
                return source
            raise ChannelUnavailable("No loopback audio device found", channel=ChannelKind.SYSTEM.value)
        except Exception as exc:
            reason = exc.message if isinstance(exc, ChannelUnavailable) else str(exc)
            raise ChannelUnavailable(
                "System audio required for meeting transcription: "
                f"{reason}. Please grant screen-recording / audio-capture permission "
                "or install a loopback device, then restart the application.",
                channel=ChannelKind.SYSTEM.value,
            ) from exc

    def _acquire_wasapi_loopback(self, sd) -> Optional[AudioSource]:
        if not hasattr(sd, "WasapiSettings"):
            return None
        try:
            extra = sd.WasapiSettings(loopback=True)
        except TypeError:
            return None
        output_index = sd.default.device[1]
        if output_index is None or output_index < 0:
            return None
        source = SoundDeviceSource(
            ChannelKind.SYSTEM, output_index, self._settings.BLOCK_SIZE, self._settings.SAMPLE_RATE, extra
        )
        logger.info("System audio acquired via WASAPI loopback (device=%s)", output_index)
        return source
