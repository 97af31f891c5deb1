from meetstream.transcript.speakers import SpeakerResolver, speaker_from_words
from meetstream.transport.events import Word


def test_diarization_label_wins(settings):
    resolver = SpeakerResolver(settings)
    words = [Word(text="hi", speaker=None), Word(text="there", speaker="B")]
    assert resolver.resolve("microphone", words) == "Speaker B"


def test_channel_fallback(settings):
    resolver = SpeakerResolver(settings)
    assert resolver.resolve("microphone") == "You"
    assert resolver.resolve("system", [Word(text="x")]) == "Remote"
    assert resolver.resolve("other") == "Unknown Speaker"


def test_labels_come_from_settings(settings):
    custom = settings.model_copy(update={"LOCAL_SPEAKER_LABEL": "Me", "REMOTE_SPEAKER_LABEL": "Them"})
    resolver = SpeakerResolver(custom)
    assert resolver.channel_speaker("microphone") == "Me"
    assert resolver.channel_speaker("system") == "Them"


def test_speaker_from_words_none_without_labels():
    assert speaker_from_words([]) is None
    assert speaker_from_words([Word(text="a", speaker="")]) is None
