import os
import wave

import numpy as np

from meetstream.audio.channels import ChannelKind
from meetstream.audio.recorder import (
    NoOpSessionAudioRecorder,
    SessionAudioRecorder,
    create_session_audio_recorder,
    interleave_stereo,
    mix_mono,
)


def pcm(*values):
    return np.array(values, dtype="<i2").tobytes()


def test_disabled_by_default(settings):
    assert isinstance(create_session_audio_recorder("s1", settings), NoOpSessionAudioRecorder)


def test_interleave_pads_shorter_channel():
    out = np.frombuffer(interleave_stereo(pcm(1, 2, 3), pcm(9)), dtype="<i2")
    assert out.tolist() == [1, 9, 2, 0, 3, 0]


def test_mono_mix_is_equal_gain_and_clamped():
    out = np.frombuffer(mix_mono(pcm(100, 32767), pcm(300, 32767)), dtype="<i2")
    assert out.tolist() == [200, 32767]


def test_stereo_wav_written_once(settings):
    enabled = settings.model_copy(update={"ENABLE_SESSION_RECORDING": True})
    recorder = create_session_audio_recorder("session_1", enabled)
    assert isinstance(recorder, SessionAudioRecorder)
    recorder.append(ChannelKind.MICROPHONE, pcm(1, 2, 3, 4))
    recorder.append(ChannelKind.SYSTEM, pcm(5, 6))
    recorder.append(ChannelKind.SYSTEM, b"\x01")  # odd length, dropped

    path = recorder.finalize()
    assert path is not None and path.endswith(".wav")
    assert os.path.basename(path).startswith("session_1_")
    with wave.open(path, "rb") as wav:
        assert wav.getnchannels() == 2
        assert wav.getframerate() == 16000
        assert wav.getnframes() == 4
    assert recorder.finalize() is None


def test_nothing_recorded_writes_nothing(settings):
    enabled = settings.model_copy(update={"ENABLE_SESSION_RECORDING": True, "SESSION_RECORD_LAYOUT": "mono"})
    recorder = SessionAudioRecorder("empty", enabled)
    assert recorder.finalize() is None
    assert not os.path.exists(enabled.SESSION_RECORD_DIR)
