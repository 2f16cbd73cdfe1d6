"""
Configuration management for the family call coordinator.

Uses Pydantic BaseSettings for type-safe configuration loading from environment variables.
"""

import logging
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from family_calls.utils.exceptions import ConfigurationException


class IceServer(BaseModel):
    """STUN/TURN server entry handed to the peer connection."""
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


DEFAULT_ICE_SERVERS = [
    IceServer(urls="stun:stun.l.google.com:19302"),
    IceServer(urls="stun:stun1.l.google.com:19302"),
    IceServer(urls="stun:stun2.l.google.com:19302"),
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Call timers
    ring_timeout_seconds: float = Field(default=30.0, description="Unanswered ring duration before timeout")
    connect_timeout_seconds: float = Field(default=15.0, description="Max time in CONNECTING before failing")
    disconnect_grace_seconds: float = Field(
        default=8.0,
        description="How long a disconnected/failed peer connection may recover"
    )

    # Signaling channel polling (one canonical set of constants)
    poll_interval_seconds: float = Field(default=15.0, description="Incoming-call poll interval")
    poll_lookback_seconds: float = Field(
        default=60.0,
        description="Ringing records older than this are never surfaced by polling"
    )
    poll_batch_limit: int = Field(default=5, description="Max records returned per incoming poll")
    active_poll_interval_seconds: float = Field(
        default=2.0,
        description="Poll interval for the call record a session is engaged on"
    )

    # WebRTC
    ice_servers: List[IceServer] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    # Store writes
    write_retry_attempts: int = Field(default=3, description="Attempts per signaling write")
    write_retry_base_delay_seconds: float = Field(default=0.5, description="Initial retry backoff")

    # Busy detection
    busy_check_enabled: bool = Field(default=True, description="Refuse to ring a callee already in a call")
    busy_window_seconds: float = Field(default=120.0, description="Age limit for records counted as busy")

    # Backends
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy async URL for the call store")
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the push change feed")
    change_feed_channel: str = Field(default="call_records", description="Redis pub/sub channel")

    # Notification bridge
    notification_webhook_url: Optional[str] = Field(default=None, description="Webhook for call notifications")
    notification_timeout_seconds: float = Field(default=10.0, description="Webhook request timeout")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: text or json")
    environment: str = Field(default="development", description="Environment: development or production")

    @field_validator(
        "ring_timeout_seconds",
        "connect_timeout_seconds",
        "disconnect_grace_seconds",
        "poll_interval_seconds",
        "poll_lookback_seconds",
        "active_poll_interval_seconds",
        "busy_window_seconds",
        "notification_timeout_seconds",
    )
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        """Durations must be strictly positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("write_retry_attempts", "poll_batch_limit")
    @classmethod
    def validate_positive_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is either 'development' or 'production'."""
        if v not in ["development", "production"]:
            raise ValueError("environment must be either 'development' or 'production'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ["text", "json"]:
            raise ValueError("log_format must be either 'text' or 'json'")
        return v_lower

    def ice_server_dicts(self) -> List[dict]:
        """ICE servers in the shape the peer connection expects."""
        return [server.model_dump(exclude_none=True) for server in self.ice_servers]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance

    Raises:
        ConfigurationException: If the environment holds invalid values
    """
    global _settings

    if _settings is None:
        try:
            _settings = Settings()

            logger = logging.getLogger(__name__)
            logger.info("Configuration loaded successfully")
            logger.info(f"Environment: {_settings.environment}")
            logger.info(
                f"Ring timeout: {_settings.ring_timeout_seconds}s, "
                f"poll every {_settings.poll_interval_seconds}s "
                f"(lookback {_settings.poll_lookback_seconds}s)"
            )
            logger.info(f"Call store: {'sql' if _settings.database_url else 'memory'}")

        except Exception as e:
            raise ConfigurationException(f"Configuration error: {str(e)}")

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        New Settings instance
    """
    global _settings
    _settings = None
    return get_settings()
