"""Application configuration using pydantic-settings.

Store defaults live here so they can be tuned per deployment through the
environment. Every field is overridable via an environment variable with the
same name (case-insensitive). Arguments passed to ``AsyncStore`` explicitly
always take precedence over these values.

Notes:
- All durations are seconds (float).
- STORE_TTL_SECONDS unset means values never expire.
- STORE_FAILSTATE_TTL_SECONDS <= 0 makes a failstate permanent until cleared.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Top-level settings.

    Env var precedence follows pydantic-settings rules, e.g.
    `STORE_BATCH_SIZE=100`.
    """

    # Freshness
    STORE_TTL_SECONDS: Optional[float] = Field(default=None, ge=0)
    STORE_FAILSTATE_TTL_SECONDS: float = 5.0

    # Fetch queue
    STORE_BATCH_SIZE: int = Field(default=40, ge=1)
    STORE_THROTTLE_SECONDS: float = Field(default=0.2, ge=0)

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)


__all__ = ["Settings"]
