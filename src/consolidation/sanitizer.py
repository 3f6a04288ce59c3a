"""
Consolidation sanitizer and rule merger.

Sits between the untrusted candidate generator and storage. Given the
authoritative episode set and whatever the generator returned, it produces a
ConsolidationOutput with these guarantees:

- No reference to an episode id outside the authoritative set
- Patterns and rule membership come from deterministic grouping by
  pattern_key; generator-proposed groupings only contribute triggers
- At most one rule per pattern key, and only for keys whose group size
  meets the minimum support threshold
- Rule titles/descriptions are always the canonical templates
- Contradictions are deduplicated as unordered pairs
- At most one salience update per episode (last valid write wins), clamped
  to [0, 10]; updates without a usable score are dropped

Nothing here raises on malformed generator output; invalid entries are
dropped and counted.
"""

import logging
import math
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

from src.config import DEFAULT_MIN_RULE_SUPPORT, resolve_min_rule_support
from src.memory.pattern_taxonomy import (
    PatternKey,
    build_rule_description_for_key,
    build_rule_title_for_key,
    map_to_pattern_key,
    pattern_label_for_key,
)
from src.memory.salience_policy import bound_consolidation_delta, clamp_salience_score
from src.memory.triggers import normalize_triggers
from src.models.consolidation import (
    ConsolidationOutput,
    Contradiction,
    ContradictionCandidate,
    Pattern,
    PromotedRule,
    RuleCandidate,
    SalienceUpdate,
    SalienceUpdateCandidate,
)
from src.models.episode import ConsolidationEpisode

logger = logging.getLogger(__name__)

CandidateT = TypeVar("CandidateT", bound=BaseModel)


class _MergedCandidate(BaseModel):
    """Per-key accumulation of generator rule candidates."""

    triggers: list[str] = Field(default_factory=list)
    # Bookkeeping only. Rule membership always comes from the deterministic group.
    source_episode_ids: list[str] = Field(default_factory=list)


# ============================================================================
# Input coercion
# ============================================================================


def _coerce_raw(raw: Any) -> dict[str, Any]:
    if isinstance(raw, BaseModel):
        return raw.model_dump()
    if isinstance(raw, Mapping):
        return dict(raw)
    if raw is not None:
        logger.warning(f"Discarding non-object consolidation candidate: {type(raw).__name__}")
    return {}


def _entries(raw: Mapping[str, Any], field_name: str) -> list[Any]:
    value = raw.get(field_name)
    if isinstance(value, (list, tuple)):
        return list(value)
    if value is not None:
        logger.debug(f"Discarding non-list '{field_name}' field: {type(value).__name__}")
    return []


def _parse_candidates(model: type[CandidateT], items: Iterable[Any], field_name: str) -> list[CandidateT]:
    """Validate untrusted entries one by one, dropping what cannot be parsed."""
    parsed: list[CandidateT] = []
    for item in items:
        if isinstance(item, model):
            parsed.append(item)
            continue
        if isinstance(item, BaseModel):
            item = item.model_dump()
        if not isinstance(item, Mapping):
            logger.debug(f"Dropping non-object {field_name} entry: {item!r:.80}")
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping invalid {field_name} entry: {e}")
    return parsed


# ============================================================================
# Deterministic grouping
# ============================================================================


def group_episodes_by_pattern(
    episodes: Sequence[ConsolidationEpisode],
) -> dict[PatternKey, list[ConsolidationEpisode]]:
    """Group episodes by their assigned pattern key, first occurrence of an id wins."""
    groups: dict[PatternKey, list[ConsolidationEpisode]] = {}
    seen: set[str] = set()
    for episode in episodes:
        if episode.id in seen:
            continue
        seen.add(episode.id)
        groups.setdefault(episode.pattern_key, []).append(episode)
    return groups


def index_episodes_by_id(
    episodes: Iterable[ConsolidationEpisode],
) -> dict[str, ConsolidationEpisode]:
    """Map ids to episodes, first occurrence of an id wins."""
    episodes_by_id: dict[str, ConsolidationEpisode] = {}
    for episode in episodes:
        episodes_by_id.setdefault(episode.id, episode)
    return episodes_by_id


def _ordered_group_keys(groups: Mapping[PatternKey, Sequence[ConsolidationEpisode]]) -> list[PatternKey]:
    """Largest group first, then ascending key string."""
    return sorted(groups, key=lambda key: (-len(groups[key]), key.value))


def build_patterns(groups: Mapping[PatternKey, Sequence[ConsolidationEpisode]]) -> list[Pattern]:
    patterns = []
    for key in _ordered_group_keys(groups):
        members = groups[key]
        label = pattern_label_for_key(key)
        patterns.append(
            Pattern(
                pattern_key=key,
                name=label,
                episode_ids=[episode.id for episode in members],
                summary=f"Recurring pattern in {len(members)} episode(s): {label}",
            )
        )
    return patterns


# ============================================================================
# Rule merging
# ============================================================================


def resolve_candidate_rule_key(
    candidate: RuleCandidate,
    source_ids: Sequence[str],
    episodes_by_id: Mapping[str, ConsolidationEpisode],
) -> PatternKey:
    """
    Pick the category with the most support among the candidate's sources.

    Ties go to the lexically smallest key. When no source resolves, classify
    the candidate's own text.
    """
    support = Counter(
        episodes_by_id[episode_id].pattern_key
        for episode_id in source_ids
        if episode_id in episodes_by_id
    )
    if support:
        return min(support, key=lambda key: (-support[key], key.value))

    return map_to_pattern_key(
        title=candidate.title,
        narrative=candidate.description,
        triggers=candidate.triggers,
    )


def merge_rule_candidates(
    candidates: Iterable[RuleCandidate],
    episodes_by_id: Mapping[str, ConsolidationEpisode],
) -> dict[PatternKey, _MergedCandidate]:
    merged: dict[PatternKey, _MergedCandidate] = {}
    for candidate in candidates:
        source_ids = list(
            dict.fromkeys(
                episode_id for episode_id in candidate.source_episode_ids if episode_id in episodes_by_id
            )
        )
        if not source_ids:
            logger.debug(f"Dropping rule candidate with no known sources: {candidate.title!r:.80}")
            continue

        key = resolve_candidate_rule_key(candidate, source_ids, episodes_by_id)
        bucket = merged.setdefault(key, _MergedCandidate())
        bucket.triggers = normalize_triggers([*bucket.triggers, *candidate.triggers])
        bucket.source_episode_ids = list(dict.fromkeys([*bucket.source_episode_ids, *source_ids]))

    return merged


def build_promoted_rules(
    groups: Mapping[PatternKey, Sequence[ConsolidationEpisode]],
    merged: Mapping[PatternKey, _MergedCandidate],
    min_support: int,
) -> list[PromotedRule]:
    rules = []
    for key in _ordered_group_keys(groups):
        members = groups[key]
        if len(members) < min_support:
            continue

        candidate = merged.get(key)
        triggers = normalize_triggers(
            [
                *(candidate.triggers if candidate else []),
                *(trigger for episode in members for trigger in episode.triggers),
            ]
        )
        rules.append(
            PromotedRule(
                rule_key=key,
                title=build_rule_title_for_key(key),
                description=build_rule_description_for_key(key),
                triggers=triggers or [key.value],
                source_episode_ids=[episode.id for episode in members],
            )
        )
    return rules


# ============================================================================
# Contradictions, salience, pruning
# ============================================================================


def filter_contradictions(
    candidates: Iterable[ContradictionCandidate],
    episode_ids: Iterable[str],
) -> list[Contradiction]:
    known = set(episode_ids)
    emitted: set[frozenset[str]] = set()
    contradictions = []
    for candidate in candidates:
        left, right = candidate.left_episode_id, candidate.right_episode_id
        if left not in known or right not in known or left == right:
            continue

        reason = candidate.reason.strip()
        if not reason:
            continue

        pair = frozenset((left, right))
        if pair in emitted:
            continue

        emitted.add(pair)
        contradictions.append(
            Contradiction(left_episode_id=left, right_episode_id=right, reason=reason)
        )
    return contradictions


def filter_salience_updates(
    candidates: Iterable[SalienceUpdateCandidate],
    episode_ids: Iterable[str],
) -> list[SalienceUpdate]:
    """Validate updates; a later update for the same episode replaces an earlier one."""
    known = set(episode_ids)
    latest: dict[str, SalienceUpdate] = {}
    for candidate in candidates:
        if candidate.episode_id not in known:
            continue

        # Missing or unparseable scores arrive as NaN
        if not math.isfinite(candidate.salience_score):
            logger.debug(f"Dropping salience update without a usable score for {candidate.episode_id}")
            continue

        reason = candidate.reason.strip()
        if not reason:
            continue

        latest[candidate.episode_id] = SalienceUpdate(
            episode_id=candidate.episode_id,
            salience_score=clamp_salience_score(candidate.salience_score),
            reason=reason,
        )
    return list(latest.values())


def filter_prune_candidates(candidates: Iterable[Any], episode_ids: Iterable[str]) -> list[str]:
    known = set(episode_ids)
    return list(
        dict.fromkeys(
            episode_id
            for episode_id in candidates
            if isinstance(episode_id, str) and episode_id in known
        )
    )


def bound_salience_updates(
    updates: Iterable[SalienceUpdate],
    episodes: Sequence[ConsolidationEpisode],
    max_delta: int,
) -> list[SalienceUpdate]:
    """Cap each update's distance from the episode's current score."""
    current_scores = {
        episode_id: episode.salience_score
        for episode_id, episode in index_episodes_by_id(episodes).items()
    }
    bounded = []
    for update in updates:
        current = current_scores.get(update.episode_id)
        if current is None:
            continue
        score = bound_consolidation_delta(current, update.salience_score, max_delta)
        if score != update.salience_score:
            logger.debug(
                f"Bounded salience update for {update.episode_id}: "
                f"{current} -> {update.salience_score} capped at {score}"
            )
        bounded.append(update.model_copy(update={"salience_score": score}))
    return bounded


def compute_rule_confidence(
    source_episode_ids: Sequence[str],
    episodes_by_id: Mapping[str, ConsolidationEpisode],
) -> float:
    """Mean salience of the rule's sources scaled to [0, 1], two decimals."""
    if not source_episode_ids:
        return 0.0
    total = sum(
        episodes_by_id[episode_id].salience_score if episode_id in episodes_by_id else 0
        for episode_id in source_episode_ids
    )
    return round(total / (len(source_episode_ids) * 10), 2)


# ============================================================================
# Entry point
# ============================================================================


def sanitize_consolidation_output(
    raw: Any,
    episodes: Sequence[ConsolidationEpisode],
    min_support: Optional[int] = DEFAULT_MIN_RULE_SUPPORT,
) -> ConsolidationOutput:
    """
    Turn an untrusted consolidation candidate into a validated output.

    Args:
        raw: Generator output (mapping or model); anything else is treated as empty
        episodes: Authoritative episodes for this pass
        min_support: Episodes required per key before a rule is promoted;
            non-positive or non-integer values reset to the default

    Returns:
        ConsolidationOutput with every reference resolved against `episodes`
    """
    if not episodes:
        return ConsolidationOutput()

    threshold = resolve_min_rule_support(min_support)
    candidate = _coerce_raw(raw)

    groups = group_episodes_by_pattern(episodes)
    episodes_by_id = index_episodes_by_id(episodes)

    rule_candidates = _parse_candidates(
        RuleCandidate, _entries(candidate, "rules_to_promote"), "rules_to_promote"
    )
    contradiction_candidates = _parse_candidates(
        ContradictionCandidate, _entries(candidate, "contradictions"), "contradictions"
    )
    salience_candidates = _parse_candidates(
        SalienceUpdateCandidate, _entries(candidate, "salience_updates"), "salience_updates"
    )
    prune_entries = _entries(candidate, "prune_candidates")

    merged = merge_rule_candidates(rule_candidates, episodes_by_id)

    output = ConsolidationOutput(
        patterns=build_patterns(groups),
        rules_to_promote=build_promoted_rules(groups, merged, threshold),
        contradictions=filter_contradictions(contradiction_candidates, episodes_by_id),
        salience_updates=filter_salience_updates(salience_candidates, episodes_by_id),
        prune_candidates=filter_prune_candidates(prune_entries, episodes_by_id),
    )

    logger.info(
        f"Sanitized consolidation: episodes={len(episodes_by_id)}, "
        f"patterns={len(output.patterns)}, "
        f"rules={len(output.rules_to_promote)}/{len(rule_candidates)} candidates, "
        f"contradictions={len(output.contradictions)}/{len(contradiction_candidates)}, "
        f"salience_updates={len(output.salience_updates)}/{len(salience_candidates)}, "
        f"prune={len(output.prune_candidates)}/{len(prune_entries)}, "
        f"min_support={threshold}"
    )

    return output
