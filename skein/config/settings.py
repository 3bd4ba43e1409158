"""
Global settings from environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SkeinSettings(BaseSettings):
    """
    Global configuration loaded from environment variables.

    Environment variables should be prefixed with SKEIN_
    Example: SKEIN_LOG_LEVEL=DEBUG, SKEIN_MAX_TURNS=50
    """

    model_config = SettingsConfigDict(
        env_prefix="SKEIN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False

    # Session storage
    sessions_dir: Path = Field(default_factory=lambda: Path.home() / ".skein" / "sessions")

    # Agent loop
    max_turns: int = Field(default=30, ge=1)
    max_parallel_tools: int = Field(default=8, ge=1)
    tool_timeout: float | None = Field(default=None, gt=0)
    cancel_grace_period: float = Field(default=2.0, ge=0)
    event_buffer_size: int = Field(default=64, ge=1)
    steering_mode: Literal["all", "one_at_a_time"] = "one_at_a_time"
    follow_up_mode: Literal["all", "one_at_a_time"] = "one_at_a_time"

    # Compaction
    compaction_enabled: bool = True
    context_window: int = Field(default=128_000, ge=1)
    reserve_tokens: int = Field(default=16_384, ge=0)
    keep_recent_tokens: int = Field(default=20_000, ge=1)


# Global settings instance (singleton)
settings = SkeinSettings()


__all__ = ["SkeinSettings", "settings"]
