"""
Meeting summary generation.

- Fewer than SUMMARY_MIN_WORDS words: the basic (extractive) summary, no AI call.
- Otherwise the transcript (truncated to SUMMARY_PROMPT_MAX_CHARS) goes to the AI
  backend. SUMMARY_TIMEOUT_SECONDS is a hard deadline on the whole request,
  connect included; a backend still streaming at that point counts as a timeout
  and the partial text is discarded. A reply longer than SUMMARY_MIN_RESPONSE_CHARS is
  used verbatim under a metadata header; timeouts, errors and short replies fall back
  to the basic summary. generate() never raises.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, Optional, Protocol

from meetstream.config import Settings, get_settings
from meetstream.errors import SummaryError, SummaryTimeout
from meetstream.transcript.models import TranscriptLog, Turn

logger = logging.getLogger(__name__)

NO_TRANSCRIPT = "No transcript available"
NO_KEY_POINTS = "• No specific key points identified in the transcript."
PREVIEW_TURNS = 3
PREVIEW_CHARS = 100

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_KEY_POINT_MARKERS = re.compile(r"\b(decision|decide|action|important|need to|should|will|follow[ -]up)", re.IGNORECASE)


class SummaryBackend(Protocol):
    async def send(self, prompt: str, timeout: float | None = None) -> str:
        ...


def distinct_speakers(turns: Iterable[Turn]) -> list[str]:
    seen: list[str] = []
    for t in turns:
        if t.speaker not in seen:
            seen.append(t.speaker)
    return seen


def extract_key_points(turns: Iterable[Turn], limit: int = 5) -> list[str]:
    """Sentences over 20 chars that mention a decision, action or commitment."""
    points: list[str] = []
    for t in turns:
        for sentence in _SENTENCE_SPLIT.split(t.text):
            sentence = sentence.strip()
            if len(sentence) > 20 and _KEY_POINT_MARKERS.search(sentence):
                points.append(f"• **{t.speaker}:** {sentence}")
                if len(points) >= limit:
                    return points
    return points


def _minutes(duration_sec: float) -> int:
    return int(round(duration_sec / 60.0))


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS] + ("..." if len(text) > PREVIEW_CHARS else "")


def build_basic_summary(
    transcript: TranscriptLog,
    duration_sec: float = 0.0,
    speakers: Optional[list[str]] = None,
    max_key_points: int = 5,
) -> str:
    turns = transcript.turns
    if not turns:
        return NO_TRANSCRIPT
    speakers = speakers or distinct_speakers(turns)
    key_points = extract_key_points(turns, max_key_points)
    preview = "\n\n".join(f"**{t.speaker}:** {_preview(t.text)}" for t in turns[:PREVIEW_TURNS])
    return (
        "# Meeting Summary (Basic)\n\n"
        "**Meeting Details:**\n"
        f"- Duration: {_minutes(duration_sec)} minutes\n"
        f"- Speakers: {', '.join(speakers)} ({len(speakers)} total)\n"
        f"- Total words: {transcript.word_count()}\n"
        "- Audio source: Microphone + System Audio\n\n"
        "**Key Points:**\n"
        f"{chr(10).join(key_points) or NO_KEY_POINTS}\n\n"
        "**Transcript Preview:**\n"
        f"{preview}\n\n"
        "*This is an automated basic summary. For detailed analysis, ensure AI services are connected.*"
    )


def build_prompt(transcript: TranscriptLog, duration_sec: float, speakers: list[str], max_chars: int = 3000) -> str:
    full_text = transcript.text()
    body = full_text[:max_chars] + ("..." if len(full_text) > max_chars else "")
    return (
        "Please analyze this meeting transcript and provide a concise summary including:\n\n"
        "**Main Topics Discussed:**\n- List the primary subjects covered\n\n"
        "**Key Decisions Made:**\n- Important decisions or conclusions reached\n\n"
        "**Action Items:**\n- Tasks or follow-ups identified (if any)\n\n"
        "**Important Points:**\n- Notable insights or information shared\n\n"
        "**Meeting Details:**\n"
        f"- Duration: {_minutes(duration_sec)} minutes\n"
        f"- Speakers: {', '.join(speakers)}\n"
        f"- Word count: {transcript.word_count()}\n\n"
        f"**Transcript:**\n{body}\n\n"
        "Please provide a well-structured summary in markdown format."
    )


def summary_header(duration_sec: float, speaker_count: int, word_count: int) -> str:
    return (
        "# Meeting Summary\n\n"
        f"**Duration:** {_minutes(duration_sec)} minutes | **Speakers:** {speaker_count} | **Words:** {word_count}\n\n"
    )


class SummaryGenerator:
    def __init__(self, backend: SummaryBackend | None = None, settings: Settings | None = None) -> None:
        self._backend = backend
        self._settings = settings or get_settings()

    async def generate(
        self,
        transcript: TranscriptLog,
        duration_sec: float = 0.0,
        speakers: Optional[list[str]] = None,
    ) -> str:
        s = self._settings
        if len(transcript) == 0:
            return NO_TRANSCRIPT
        speakers = list(speakers) if speakers else distinct_speakers(transcript)
        word_count = transcript.word_count()

        def basic() -> str:
            return build_basic_summary(transcript, duration_sec, speakers, s.SUMMARY_MAX_KEY_POINTS)

        if word_count < s.SUMMARY_MIN_WORDS:
            logger.info("Transcript has %d words, using basic summary", word_count)
            return basic()
        if self._backend is None:
            return basic()

        prompt = build_prompt(transcript, duration_sec, speakers, s.SUMMARY_PROMPT_MAX_CHARS)
        try:
            reply = await self._request(prompt)
        except SummaryTimeout as e:
            logger.warning("%s, using basic summary", e.message)
            return basic()
        except SummaryError as e:
            logger.warning("AI summary failed (%s), using basic summary", e.message)
            return basic()
        except Exception:
            logger.exception("AI summary backend raised, using basic summary")
            return basic()

        reply = (reply or "").strip()
        if len(reply) <= s.SUMMARY_MIN_RESPONSE_CHARS:
            logger.warning("AI summary too short (%d chars), using basic summary", len(reply))
            return basic()
        logger.info("AI summary generated (%d chars)", len(reply))
        return summary_header(duration_sec, len(speakers), word_count) + reply

    async def _request(self, prompt: str) -> str:
        timeout = self._settings.SUMMARY_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(self._backend.send(prompt), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SummaryTimeout(f"AI summary timed out after {timeout:.0f}s") from e


def create_summary_backend(settings: Settings | None = None) -> SummaryBackend | None:
    settings = settings or get_settings()
    if settings.SUMMARY_BACKEND == "socket":
        from meetstream.services.ai_connection import get_ai_connection

        return get_ai_connection(settings)
    if settings.SUMMARY_BACKEND == "cloudflare":
        from meetstream.services.cloudflare_chat import CloudflareChatBackend

        return CloudflareChatBackend(settings)
    return None


def create_summary_generator(settings: Settings | None = None) -> SummaryGenerator:
    settings = settings or get_settings()
    return SummaryGenerator(create_summary_backend(settings), settings)
