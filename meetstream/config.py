"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Audio: PCM 16-bit mono, 16kHz on the wire
    SAMPLE_RATE: int = 16000
    # Samples per audio callback (4096 @ 16kHz = 256ms per frame)
    BLOCK_SIZE: int = 4096
    # Optional device name hints (substring match); empty = default / auto-detect
    MICROPHONE_DEVICE: str = ""
    SYSTEM_AUDIO_DEVICE: str = ""

    # Streaming speech backend (AssemblyAI). v3 = Universal Streaming, v2 = legacy realtime.
    ASSEMBLYAI_API_KEY: str = ""
    STREAMING_API_VERSION: Literal["v3", "v2"] = "v3"
    # header = Authorization header; query = token query param; auto = header for v3, query for v2
    STREAMING_AUTH_MODE: Literal["auto", "header", "query"] = "auto"
    STREAMING_URL_V3: str = "wss://streaming.assemblyai.com/v3/ws"
    STREAMING_URL_V2: str = "wss://api.assemblyai.com/v2/realtime/ws"
    # Turn detection tuned for multi-speaker conversation
    END_OF_TURN_CONFIDENCE_THRESHOLD: float = 0.4
    MIN_END_OF_TURN_SILENCE_WHEN_CONFIDENT_MS: int = 560
    MAX_TURN_SILENCE_MS: int = 1280
    SPEAKER_LABELS: bool = True
    SPEAKERS_EXPECTED: int = 2
    CONNECT_TIMEOUT_SECONDS: float = 10.0
    # After sending the termination signal, wait this long for trailing finals
    CLOSE_GRACE_SECONDS: float = 3.0
    # Mid-session reconnect per channel (0 = never reconnect, channel is dropped)
    RECONNECT_MAX_ATTEMPTS: int = 3
    RECONNECT_BASE_DELAY_SECONDS: float = 1.0

    # Turn reconciliation
    TURN_TIMEOUT_SECONDS: float = 45.0
    TURN_WATCHDOG_INTERVAL_SECONDS: float = 1.0
    LOCAL_SPEAKER_LABEL: str = "You"
    REMOTE_SPEAKER_LABEL: str = "Remote"
    TIMEOUT_PLACEHOLDER_TEXT: str = "[Transcription timed out]"

    # Summary: socket = AI chat WebSocket, cloudflare = Workers AI over HTTPS, none = basic summary only
    SUMMARY_BACKEND: Literal["socket", "cloudflare", "none"] = "socket"
    SUMMARY_MIN_WORDS: int = 50  # below this the AI is never called
    SUMMARY_PROMPT_MAX_CHARS: int = 3000  # transcript chars included in the prompt
    SUMMARY_TIMEOUT_SECONDS: float = 30.0  # hard deadline for the AI summary, connect included
    SUMMARY_MIN_RESPONSE_CHARS: int = 50  # shorter AI replies are treated as failures
    SUMMARY_MAX_KEY_POINTS: int = 5

    # AI chat connection (process-wide singleton)
    AI_CHAT_URL: str = "wss://itzerhypergalaxy.online/horizon/assist/chat-ws"
    AI_RECONNECT_MAX_ATTEMPTS: int = 10
    AI_RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    AI_RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    AI_RESPONSE_IDLE_TIMEOUT_SECONDS: float = 45.0
    AI_CONNECT_WAIT_SECONDS: float = 10.0
    AI_MAX_LISTENERS: int = 20

    # Cloudflare Workers AI (when SUMMARY_BACKEND=cloudflare)
    CLOUDFLARE_ACCOUNT_ID: str = ""
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_CHAT_MODEL: str = "@cf/meta/llama-3.1-8b-instruct"
    CLOUDFLARE_CHAT_MAX_TOKENS: int = 1024

    # Session transcript storage: one .txt per session, append-only (final turns only).
    TRANSCRIPT_SAVE_ENABLED: bool = True
    TRANSCRIPT_DIR: str = "./transcripts"
    TRANSCRIPT_ADD_TIMESTAMPS: bool = True  # prefix each line with [MM:SS.ss]

    # Optional session recording (both channels, written once at stop). Disabled by default.
    ENABLE_SESSION_RECORDING: bool = False
    SESSION_RECORD_DIR: str = "./recordings"
    SESSION_RECORD_FORMAT: Literal["wav", "mp3"] = "wav"
    # stereo = microphone left / system right; mono = equal-gain mix
    SESSION_RECORD_LAYOUT: Literal["stereo", "mono"] = "stereo"
    SESSION_RECORD_BITRATE: str = "128k"  # for MP3 only

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path empty = console only
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
