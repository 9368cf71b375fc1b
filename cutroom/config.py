"""Cutroom configuration using pydantic-settings.

This module defines the CutroomSettings class that reads configuration
from environment variables with the CUTROOM_ prefix. Every field has a
default so the service starts with an in-memory store and rule-based stage
handlers when nothing is configured.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CutroomSettings(BaseSettings):
    """Cutroom configuration from environment variables.

    All environment variables are prefixed with CUTROOM_ (e.g.,
    CUTROOM_DATABASE_URL).

    Optional integrations (each falls back to rule-based output when unset):
    - openai_api_key: LLM research and script generation
    - elevenlabs_api_key: Text-to-speech for the VOICE stage
    - pexels_api_key: Stock footage search for the VISUAL stage
    """

    model_config = SettingsConfigDict(
        env_prefix="CUTROOM_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; in-memory store when unset
    database_url: Optional[str] = None

    db_min_pool_size: int = 2

    db_max_pool_size: int = 10

    # -------------------------------------------------------------------------
    # LLM Configuration
    # -------------------------------------------------------------------------
    openai_api_key: Optional[str] = None

    openai_base_url: Optional[str] = None

    openai_model: str = "gpt-4o-mini"

    llm_temperature: float = 0.7

    llm_timeout_seconds: float = 60.0

    # -------------------------------------------------------------------------
    # Media Service Configuration
    # -------------------------------------------------------------------------
    elevenlabs_api_key: Optional[str] = None

    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"

    pexels_api_key: Optional[str] = None

    # Timeout for each outbound HTTP call made by a stage handler
    http_timeout_seconds: float = 30.0

    # Base URL under which generated media is published
    media_base_url: str = "https://media.cutroom.local"

    # Local directory served at media_base_url
    media_dir: str = "media"

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    rate_limit_enabled: bool = True

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the database URL, when set, is a PostgreSQL URL."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("openai_api_key", "elevenlabs_api_key", "pexels_api_key")
    @classmethod
    def blank_key_is_unset(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank API keys as not configured."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("db_min_pool_size", "db_max_pool_size")
    @classmethod
    def validate_pool_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("pool sizes must be at least 1")
        return v

    @field_validator("llm_timeout_seconds", "http_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate that timeouts are positive."""
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("media_base_url")
    @classmethod
    def validate_media_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("media_base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


def get_settings() -> CutroomSettings:
    """Create and return a CutroomSettings instance.

    Raises:
        pydantic.ValidationError: If a configured value is invalid.
    """
    return CutroomSettings()
