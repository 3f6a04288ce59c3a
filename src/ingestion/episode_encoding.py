"""
Encode-time classification and salience calibration.

Runs once per newly recorded episode, before persistence. The narrative comes
from an untrusted encoder; the pattern key and starting salience assigned here
are deterministic and are never revisited by consolidation.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any, NamedTuple, Optional, Union

from pydantic import ValidationError

from src.memory.pattern_taxonomy import PatternKey, map_to_pattern_key
from src.memory.salience_policy import calibrate_initial_salience
from src.memory.triggers import normalize_triggers
from src.models.episode import EncodedEpisode, EpisodeNarrative

logger = logging.getLogger(__name__)


class EpisodeClassification(NamedTuple):
    pattern_key: PatternKey
    salience_score: int


def classify_and_calibrate(
    title: Optional[str],
    narrative: Union[str, Iterable[Optional[str]], None],
    triggers: Optional[Iterable[Any]],
    raw_salience: Any,
) -> EpisodeClassification:
    """Assign a pattern key and clamp the raw salience into that key's band."""
    pattern_key = map_to_pattern_key(title=title, narrative=narrative, triggers=triggers)
    return EpisodeClassification(
        pattern_key=pattern_key,
        salience_score=calibrate_initial_salience(raw_salience, pattern_key),
    )


def encode_narrative(title: str, narrative: Any) -> EncodedEpisode:
    """
    Normalize an encoder narrative and attach deterministic fields.

    Args:
        title: Source title (e.g. the pull request title)
        narrative: Encoder output as a mapping or EpisodeNarrative

    Returns:
        EncodedEpisode ready for persistence
    """
    if isinstance(narrative, EpisodeNarrative):
        fields = narrative
    else:
        try:
            fields = EpisodeNarrative.model_validate(dict(narrative) if isinstance(narrative, Mapping) else {})
        except ValidationError as e:
            logger.warning(f"Encoder narrative failed validation, using empty narrative: {e}")
            fields = EpisodeNarrative()

    triggers = normalize_triggers(fields.triggers)
    classification = classify_and_calibrate(
        title,
        [fields.the_pattern, fields.what_happened, fields.the_fix],
        triggers,
        fields.salience_score,
    )

    logger.debug(
        f"Encoded episode '{title[:80]}': pattern_key={classification.pattern_key.value}, "
        f"salience {fields.salience_score} -> {classification.salience_score}"
    )

    return EncodedEpisode(
        title=title,
        what_happened=fields.what_happened,
        the_pattern=fields.the_pattern,
        the_fix=fields.the_fix,
        why_it_matters=fields.why_it_matters,
        pattern_key=classification.pattern_key,
        salience_score=classification.salience_score,
        triggers=triggers,
    )
