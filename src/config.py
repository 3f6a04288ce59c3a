"""
Configuration for the consolidation core.

Settings are loaded from environment variables (and an optional .env file)
using pydantic-settings. Each concern gets its own settings class with an
env prefix; `get_settings()` returns the cached aggregate.

Environment variables:
    CONSOLIDATION_MIN_RULE_SUPPORT  Minimum episodes per category before a rule
                                    is promoted (positive int, default 2)
    CONSOLIDATION_MAX_SALIENCE_DELTA  Largest salience change one pass may apply
    CONSOLIDATION_MAX_RETRIES       Attempts at the candidate generator
    CONSOLIDATION_TIMEOUT_SECONDS   Per-attempt generator timeout
"""

import logging
import math
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_MIN_RULE_SUPPORT = 2
DEFAULT_MAX_SALIENCE_DELTA = 3


def _parse_min_rule_support(value: Any) -> Optional[int]:
    """Return the threshold as a positive int, or None if `value` is not one."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            return None

    if not isinstance(value, (int, float)):
        return None

    if isinstance(value, float) and (not math.isfinite(value) or not value.is_integer()):
        return None

    support = int(value)
    return support if support > 0 else None


def resolve_min_rule_support(value: Any) -> int:
    """
    Resolve the rule-promotion threshold.

    Non-positive, non-integer or unparseable values are treated as unset and
    fall back to DEFAULT_MIN_RULE_SUPPORT.
    """
    support = _parse_min_rule_support(value)
    return DEFAULT_MIN_RULE_SUPPORT if support is None else support


class ConsolidationConfig(BaseSettings):
    """Tunables for the consolidation pass."""

    model_config = SettingsConfigDict(
        env_prefix="CONSOLIDATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    min_rule_support: int = Field(
        default=DEFAULT_MIN_RULE_SUPPORT,
        description="Minimum deterministic episode count before a rule is promoted",
    )
    max_salience_delta: int = Field(
        default=DEFAULT_MAX_SALIENCE_DELTA,
        ge=0,
        le=10,
        description="Largest salience change a single consolidation pass may apply",
    )
    max_retries: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts at the candidate generator before falling back",
    )
    timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        le=600,
        description="Timeout for a single candidate generator attempt",
    )

    @field_validator("min_rule_support", mode="before")
    @classmethod
    def reset_invalid_min_rule_support(cls, value: Any) -> int:
        support = _parse_min_rule_support(value)
        if support is None:
            logger.warning(
                f"Ignoring invalid min_rule_support={value!r}; "
                f"using default {DEFAULT_MIN_RULE_SUPPORT}"
            )
            return DEFAULT_MIN_RULE_SUPPORT
        return support


class Settings(BaseSettings):
    """Aggregate application settings."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings (call `get_settings.cache_clear()` to reload)."""
    return Settings()
