"""Audio pipeline: channel acquisition, PCM encoding; optional session recording."""
from .channels import (
    AudioChannelAcquirer,
    AudioSource,
    ChannelKind,
    SoundDeviceAcquirer,
)
from .encoder import PCMFrame, encode, pcm_bytes_to_float32
from .recorder import SessionAudioRecorderBase, create_session_audio_recorder

__all__ = [
    "AudioChannelAcquirer",
    "AudioSource",
    "ChannelKind",
    "SoundDeviceAcquirer",
    "PCMFrame",
    "encode",
    "pcm_bytes_to_float32",
    "SessionAudioRecorderBase",
    "create_session_audio_recorder",
]
