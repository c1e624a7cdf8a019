"""Centralized settings using pydantic-settings.

All environment variable reads are consolidated here. Import `get_settings`
from this module rather than reading os.environ directly.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    All env vars are prefixed with SPCFLOW_ (case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_prefix="SPCFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_format: Literal["console", "json"] = "console"
    log_level: str = "INFO"

    # Calculation offload
    offload_enabled: bool = True
    offload_executor: Literal["process", "thread"] = "process"
    offload_max_workers: int = Field(default=1, ge=1)
    # Subgroups smaller than this always run synchronously
    offload_min_points: int = Field(default=500, ge=0)
    offload_timeout_seconds: float = Field(default=5.0, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings singleton."""
    return Settings()
