"""
Configuration management for the Twilio realtime relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required credentials at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

from src.relay.errors import ConfigError

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_PROMPT_PROFILES = ("Shopaz", "Gjirafa")


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 5050
    log_level: str = "INFO"

    # OpenAI Realtime
    openai_api_key: str = ""
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_model: str = "gpt-realtime"
    openai_realtime_voice: str = "alloy"
    openai_realtime_temperature: float = 0.8

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Session behaviour
    # - session_settle_delay_ms delays session.update after the model socket opens;
    #   sending on the open callback itself is sometimes rejected by the backend.
    session_settle_delay_ms: int = 100
    peer_send_queue_size: int = 2000
    prompt_profiles: Tuple[str, ...] = DEFAULT_PROMPT_PROFILES

    @property
    def realtime_url(self) -> str:
        """Get the OpenAI Realtime WebSocket URL for this model."""
        return (
            f"{self.openai_realtime_url}"
            f"?model={self.openai_realtime_model}"
            f"&temperature={self.openai_realtime_temperature}"
        )

    @property
    def settle_delay_seconds(self) -> float:
        return max(0, self.session_settle_delay_ms) / 1000.0

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if not self.prompt_profiles:
            raise ConfigError("PROMPT_PROFILES must name at least one profile.")
        if self.peer_send_queue_size <= 0:
            raise ConfigError("PEER_SEND_QUEUE_SIZE must be positive.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host or None,
            port=self.port,
            log_level=self.log_level,
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            realtime_temperature=self.openai_realtime_temperature,
            session_settle_delay_ms=self.session_settle_delay_ms,
            prompt_profiles=list(self.prompt_profiles),
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            openai_key_set=bool(self.openai_api_key),
        )


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


def _get_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 5050),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-realtime"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_temperature=_get_float("OPENAI_REALTIME_TEMPERATURE", 0.8),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Session
        session_settle_delay_ms=_get_int("SESSION_SETTLE_DELAY_MS", 100),
        peer_send_queue_size=_get_int("PEER_SEND_QUEUE_SIZE", 2000),
        prompt_profiles=_get_list("PROMPT_PROFILES", DEFAULT_PROMPT_PROFILES),
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
