"""
Speaker resolution for reconciled turns.

Policy, applied once per turn from the words that finalized it:
1. Backend diarization: the first word carrying a speaker cluster id -> "Speaker <id>".
2. Otherwise channel identity: microphone -> local user label, system -> remote label.

The two strategies are never mixed inside one turn. No lexical guessing from
the text itself; phrase-based attribution is too unreliable to ship.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from meetstream.config import Settings, get_settings
from meetstream.transport.events import Word

logger = logging.getLogger(__name__)

SPEAKER_PREFIX = "Speaker "
UNKNOWN_SPEAKER = "Unknown Speaker"


def speaker_from_words(words: Iterable[Word]) -> Optional[str]:
    """Diarization label from the first word that has one; None when the backend sent none."""
    for word in words:
        if word.speaker:
            return f"{SPEAKER_PREFIX}{word.speaker}"
    return None


class SpeakerResolver:
    """Resolves speaker labels; channel labels come from settings."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._channel_labels = {
            "microphone": settings.LOCAL_SPEAKER_LABEL,
            "system": settings.REMOTE_SPEAKER_LABEL,
        }

    def channel_speaker(self, channel: str) -> str:
        return self._channel_labels.get(channel, UNKNOWN_SPEAKER)

    def resolve(self, channel: str, words: Iterable[Word] = ()) -> str:
        return speaker_from_words(words) or self.channel_speaker(channel)
