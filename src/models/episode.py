"""
Episode models.

ConsolidationEpisode is the authoritative record the consolidation core
reads. ExistingRule is a previously persisted rule handed to the candidate
generator as context. EpisodeNarrative is the encoder's untrusted output and
is coerced leniently; EncodedEpisode is the normalized result.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.memory.pattern_taxonomy import FALLBACK_PATTERN_KEY, PatternKey, normalize_pattern_key
from src.memory.salience_policy import clamp_salience_score
from src.memory.triggers import normalize_triggers


def _coerce_text_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class ConsolidationEpisode(BaseModel):
    """
    Recorded incident as read from storage.

    `pattern_key` is assigned once at encode time and never reclassified by
    consolidation. Unknown stored values normalize to the fallback key.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, max_length=200)
    title: str = Field(default="", max_length=1000)
    what_happened: Optional[str] = Field(default=None, max_length=10000)
    the_pattern: Optional[str] = Field(default=None, max_length=10000)
    the_fix: Optional[str] = Field(default=None, max_length=10000)
    why_it_matters: Optional[str] = Field(default=None, max_length=10000)
    pattern_key: PatternKey = FALLBACK_PATTERN_KEY
    salience_score: int = Field(default=0, ge=0, le=10)
    triggers: list[str] = Field(default_factory=list)
    source_pr_number: Optional[int] = None
    source_url: Optional[str] = None

    @field_validator("pattern_key", mode="before")
    @classmethod
    def normalize_stored_pattern_key(cls, value: Any) -> PatternKey:
        return normalize_pattern_key(value)

    @field_validator("triggers", mode="before")
    @classmethod
    def coerce_triggers(cls, value: Any) -> list[str]:
        return _coerce_text_list(value)

    @property
    def narrative_fields(self) -> list[Optional[str]]:
        return [self.the_pattern, self.what_happened, self.the_fix]


class ExistingRule(BaseModel):
    """Previously persisted rule, passed to the generator for context only."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    rule_key: PatternKey = FALLBACK_PATTERN_KEY
    title: str = ""
    description: str = ""
    triggers: list[str] = Field(default_factory=list)
    source_episode_ids: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("rule_key", mode="before")
    @classmethod
    def normalize_stored_rule_key(cls, value: Any) -> PatternKey:
        return normalize_pattern_key(value)

    @field_validator("triggers", "source_episode_ids", mode="before")
    @classmethod
    def coerce_text_lists(cls, value: Any) -> list[str]:
        return _coerce_text_list(value)


class EpisodeNarrative(BaseModel):
    """Narrative fields proposed by the encoder. Untrusted; coerced leniently."""

    model_config = ConfigDict(extra="ignore")

    what_happened: str = ""
    the_pattern: str = ""
    the_fix: str = ""
    why_it_matters: str = ""
    salience_score: int = 0
    triggers: list[str] = Field(default_factory=list)

    @field_validator("what_happened", "the_pattern", "the_fix", "why_it_matters", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("salience_score", mode="before")
    @classmethod
    def coerce_salience(cls, value: Any) -> int:
        return clamp_salience_score(value)

    @field_validator("triggers", mode="before")
    @classmethod
    def coerce_triggers(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            return []
        return normalize_triggers(value)


class EncodedEpisode(BaseModel):
    """Narrative plus the deterministic fields assigned at encode time."""

    title: str
    what_happened: str
    the_pattern: str
    the_fix: str
    why_it_matters: str
    pattern_key: PatternKey
    salience_score: int = Field(..., ge=0, le=10)
    triggers: list[str] = Field(default_factory=list, max_length=12)
