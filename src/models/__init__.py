"""
Data models for the episodic consolidation core.

This package contains Pydantic models for:
    - Episodes: authoritative incident records and encoder output
    - Consolidation: untrusted generator candidates and sanitized results

Candidate models coerce leniently; output models are strictly bounded.

Example:
    >>> from src.models import ConsolidationEpisode
    >>> episode = ConsolidationEpisode(id="ep-1", pattern_key="retry-strategy")
"""

# Consolidation models
from src.models.consolidation import (
    ConsolidationOutput,
    ConsolidationResult,
    Contradiction,
    ContradictionCandidate,
    Pattern,
    PromotedRule,
    RuleCandidate,
    SalienceUpdate,
    SalienceUpdateCandidate,
)

# Episode models
from src.models.episode import (
    ConsolidationEpisode,
    EncodedEpisode,
    EpisodeNarrative,
    ExistingRule,
)

__all__ = [
    # Episode models
    "ConsolidationEpisode",
    "EncodedEpisode",
    "EpisodeNarrative",
    "ExistingRule",
    # Consolidation models
    "ConsolidationOutput",
    "ConsolidationResult",
    "Contradiction",
    "ContradictionCandidate",
    "Pattern",
    "PromotedRule",
    "RuleCandidate",
    "SalienceUpdate",
    "SalienceUpdateCandidate",
]
