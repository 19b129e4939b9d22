"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    gemini_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl(
            "https://generativelanguage.googleapis.com/v1beta"
        ),
        validation_alias=AliasChoices("GEMINI_BASE_URL", "gemini_base_url"),
    )
    tts_model: str = Field(
        default="gemini-2.5-flash-preview-tts",
        validation_alias=AliasChoices("GEMINI_TTS_MODEL", "tts_model"),
    )
    default_voice: str = Field(
        default="Kore",
        min_length=1,
        validation_alias=AliasChoices("TTS_DEFAULT_VOICE", "default_voice"),
    )
    request_timeout: float = Field(
        default=120.0,
        ge=1,
        validation_alias=AliasChoices("GEMINI_TIMEOUT", "request_timeout"),
    )

    # Chunking and dispatch
    chunk_size: int = Field(
        default=2500,
        ge=1,
        validation_alias=AliasChoices("TTS_CHUNK_SIZE", "chunk_size"),
    )
    chunk_timeout: float = Field(
        default=180.0,
        ge=1,
        validation_alias=AliasChoices("TTS_CHUNK_TIMEOUT", "chunk_timeout"),
    )
    max_concurrent_chunks: int = Field(
        default=8,
        ge=1,
        le=64,
        validation_alias=AliasChoices(
            "TTS_MAX_CONCURRENT_CHUNKS", "max_concurrent_chunks"
        ),
    )

    # Quota accounting
    daily_key_limit: int = Field(
        default=30,
        ge=1,
        validation_alias=AliasChoices("TTS_DAILY_KEY_LIMIT", "daily_key_limit"),
    )
    daily_character_limit: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices(
            "TTS_DAILY_CHARACTER_LIMIT", "daily_character_limit"
        ),
        description="Per-owner characters per quota day. Unlimited when unset.",
    )

    # Persistence
    database_path: Path = Field(
        default_factory=lambda: Path("data/speechpool.db"),
        validation_alias=AliasChoices("SPEECHPOOL_DATABASE_PATH", "database_path"),
    )
    job_retention_hours: int = Field(
        default=24,
        ge=0,
        validation_alias=AliasChoices(
            "TTS_JOB_RETENTION_HOURS", "job_retention_hours"
        ),
    )

    log_dir: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("LOG_DIR", "log_dir"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["PROJECT_ROOT", "Settings", "get_settings"]
