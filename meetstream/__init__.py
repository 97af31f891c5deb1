"""Real-time two-channel meeting transcription: microphone + system audio, speaker-attributed turns, summaries."""

__version__ = "0.1.0"
