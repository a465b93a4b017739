"""
Configuration management for the voice call server.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_INSTRUCTIONS = (
    "You are a chatty AI assistant that makes lovely conversation about the weather."
)


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 8000
    log_level: str = "INFO"

    # Provider credentials
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    deepgram_api_key: str = ""
    elevenlabs_api_key: str = ""
    playht_user_id: str = ""
    playht_api_key: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Models ("provider/model" identifiers for speech)
    llm_model: str = "gpt-3.5-turbo"
    stt_model: str = "openai/whisper-1"
    telephony_stt_model: str = "nova-2"
    tts_model: str = "openai/tts-1"
    tts_voice: str = "shimmer"
    telephony_tts_model: str = "deepgram/aura"
    telephony_tts_voice: str = "asteria-en"

    # Assistant
    assistant_instructions: str = DEFAULT_INSTRUCTIONS
    opening_message: str = ""
    speak_first: bool = True
    can_hang_up: bool = True

    # Turn-taking timing
    startup_delay_ms: int = 2000
    barge_in_delay_ms: int = 1000
    keepalive_interval_s: float = 5.0

    @property
    def stream_url(self) -> str:
        """Get the Media Streams WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/stream"

    @property
    def telephony_enabled(self) -> bool:
        return bool(self.public_host and self.deepgram_api_key)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        providers = {
            self.stt_model.split("/", 1)[0],
            self.tts_model.split("/", 1)[0],
        }
        if self.public_host:
            providers.add("deepgram")
            providers.add(self.telephony_tts_model.split("/", 1)[0])

        if any(p.startswith("deepgram") for p in providers) and not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if "elevenlabs" in providers and not self.elevenlabs_api_key:
            missing.append("ELEVEN_LABS_API_KEY")
        if "playht" in providers:
            if not self.playht_user_id:
                missing.append("PLAYHT_USER_ID")
            if not self.playht_api_key:
                missing.append("PLAYHT_API_KEY")

        if self.startup_delay_ms < 0:
            raise ConfigError(f"STARTUP_DELAY_MS must be >= 0, got {self.startup_delay_ms}")
        if self.barge_in_delay_ms <= 0:
            raise ConfigError(f"BARGE_IN_DELAY_MS must be > 0, got {self.barge_in_delay_ms}")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host or "NOT SET",
            port=self.port,
            log_level=self.log_level,
            llm_model=self.llm_model,
            stt_model=self.stt_model,
            tts_model=self.tts_model,
            tts_voice=self.tts_voice,
            telephony_enabled=self.telephony_enabled,
            telephony_stt_model=self.telephony_stt_model,
            telephony_tts_model=self.telephony_tts_model,
            speak_first=self.speak_first,
            can_hang_up=self.can_hang_up,
            startup_delay_ms=self.startup_delay_ms,
            barge_in_delay_ms=self.barge_in_delay_ms,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            openai_key_set=bool(self.openai_api_key),
            deepgram_key_set=bool(self.deepgram_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
            playht_key_set=bool(self.playht_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Credentials
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        elevenlabs_api_key=os.getenv("ELEVEN_LABS_API_KEY", ""),
        playht_user_id=os.getenv("PLAYHT_USER_ID", ""),
        playht_api_key=os.getenv("PLAYHT_API_KEY", ""),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Models
        llm_model=os.getenv("LLM_MODEL", "gpt-3.5-turbo"),
        stt_model=os.getenv("STT_MODEL", "openai/whisper-1"),
        telephony_stt_model=os.getenv("TELEPHONY_STT_MODEL", "nova-2"),
        tts_model=os.getenv("TTS_MODEL", "openai/tts-1"),
        tts_voice=os.getenv("TTS_VOICE", "shimmer"),
        telephony_tts_model=os.getenv("TELEPHONY_TTS_MODEL", "deepgram/aura"),
        telephony_tts_voice=os.getenv("TELEPHONY_TTS_VOICE", "asteria-en"),

        # Assistant
        assistant_instructions=os.getenv("ASSISTANT_INSTRUCTIONS", DEFAULT_INSTRUCTIONS),
        opening_message=os.getenv("OPENING_MESSAGE", ""),
        speak_first=_get_bool("SPEAK_FIRST", True),
        can_hang_up=_get_bool("CAN_HANG_UP", True),

        # Timing
        startup_delay_ms=_get_int("STARTUP_DELAY_MS", 2000),
        barge_in_delay_ms=_get_int("BARGE_IN_DELAY_MS", 1000),
        keepalive_interval_s=_get_float("KEEPALIVE_INTERVAL_S", 5.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
