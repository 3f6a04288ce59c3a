"""
Consolidation models.

Two families:
    - *Candidate models: what the generator proposes. Every field has a
      lenient "before" validator so a wrong-typed field degrades to an empty
      value instead of rejecting the whole entry. Referential checks happen
      in the sanitizer, not here.
    - Output models: what the sanitizer emits. Strictly typed and bounded.
"""

import math
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.memory.pattern_taxonomy import PatternKey


def _text_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


# ============================================================================
# Untrusted candidate models
# ============================================================================


class _CandidateModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RuleCandidate(_CandidateModel):
    title: str = ""
    description: str = ""
    triggers: list[str] = Field(default_factory=list)
    source_episode_ids: list[str] = Field(default_factory=list)

    @field_validator("title", "description", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _text_or_empty(value)

    @field_validator("triggers", "source_episode_ids", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> list[str]:
        return _string_list(value)


class ContradictionCandidate(_CandidateModel):
    left_episode_id: str = ""
    right_episode_id: str = ""
    reason: str = ""

    @field_validator("left_episode_id", "right_episode_id", "reason", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _text_or_empty(value)


class SalienceUpdateCandidate(_CandidateModel):
    episode_id: str = ""
    salience_score: float = math.nan
    reason: str = ""

    @field_validator("episode_id", "reason", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return _text_or_empty(value)

    @field_validator("salience_score", mode="before")
    @classmethod
    def coerce_score(cls, value: Any) -> float:
        # Unparseable scores become NaN and clamp to 0 downstream
        if isinstance(value, bool):
            return math.nan
        try:
            return float(value)
        except (TypeError, ValueError):
            return math.nan


# ============================================================================
# Sanitized output models
# ============================================================================


class Pattern(BaseModel):
    """Deterministic grouping of episodes sharing a pattern key."""

    pattern_key: PatternKey
    name: str
    episode_ids: list[str]
    summary: str


class PromotedRule(BaseModel):
    """Rule promoted for a category that cleared the support threshold."""

    rule_key: PatternKey
    title: str
    description: str
    triggers: list[str] = Field(..., min_length=1, max_length=12)
    source_episode_ids: list[str] = Field(..., min_length=1)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class Contradiction(BaseModel):
    left_episode_id: str
    right_episode_id: str
    reason: str = Field(..., min_length=1)


class SalienceUpdate(BaseModel):
    episode_id: str
    salience_score: int = Field(..., ge=0, le=10)
    reason: str = Field(..., min_length=1)


class ConsolidationOutput(BaseModel):
    """The five validated collections produced by one consolidation pass."""

    patterns: list[Pattern] = Field(default_factory=list)
    rules_to_promote: list[PromotedRule] = Field(default_factory=list)
    contradictions: list[Contradiction] = Field(default_factory=list)
    salience_updates: list[SalienceUpdate] = Field(default_factory=list)
    prune_candidates: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.patterns
            or self.rules_to_promote
            or self.contradictions
            or self.salience_updates
            or self.prune_candidates
        )


class ConsolidationResult(ConsolidationOutput):
    """Output of the consolidation service, with provenance of the candidate."""

    used_fallback: bool = False
