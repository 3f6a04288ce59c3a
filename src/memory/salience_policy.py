"""
Salience calibration.

Two entry points:
    - calibrate_initial_salience: once, at encode time. Clamps the scorer's
      raw value into the category's band so credential incidents never start
      low and hygiene incidents never start high.
    - bound_consolidation_delta: during consolidation. Caps how far a single
      pass may move an already-calibrated score.
"""

import math
from typing import Any, NamedTuple

from src.memory.pattern_taxonomy import PatternKey

SALIENCE_MIN = 0
SALIENCE_MAX = 10
DEFAULT_MAX_DELTA = 3


class SalienceBand(NamedTuple):
    min: int
    max: int


INITIAL_SALIENCE_BANDS: dict[PatternKey, SalienceBand] = {
    PatternKey.SENSITIVE_LOGGING: SalienceBand(8, 10),
    PatternKey.AUTH_TOKEN_HANDLING: SalienceBand(8, 10),
    PatternKey.CONCURRENCY_SERIALIZATION: SalienceBand(7, 9),
    PatternKey.IDEMPOTENCY: SalienceBand(7, 9),
    PatternKey.RETRY_STRATEGY: SalienceBand(6, 9),
    PatternKey.STATE_TRANSITION: SalienceBand(6, 9),
    PatternKey.INPUT_VALIDATION: SalienceBand(5, 8),
    PatternKey.DEPENDENCY_RESILIENCE: SalienceBand(5, 8),
    PatternKey.ERROR_CONTRACT: SalienceBand(4, 7),
    PatternKey.REVIEW_HYGIENE: SalienceBand(1, 5),
}


def clamp_salience_score(score: Any) -> int:
    """
    Round half-up and clamp into [0, 10].

    Non-numeric and non-finite values map to 0.
    """
    if isinstance(score, bool):
        return SALIENCE_MIN
    try:
        value = float(score)
    except (TypeError, ValueError):
        return SALIENCE_MIN

    if not math.isfinite(value):
        return SALIENCE_MIN

    return max(SALIENCE_MIN, min(SALIENCE_MAX, math.floor(value + 0.5)))


def salience_band_for_key(pattern_key: PatternKey) -> SalienceBand:
    return INITIAL_SALIENCE_BANDS[pattern_key]


def calibrate_initial_salience(raw_score: Any, pattern_key: PatternKey) -> int:
    """Clamp a raw 0-10 score into the band configured for `pattern_key`."""
    score = clamp_salience_score(raw_score)
    band = INITIAL_SALIENCE_BANDS[pattern_key]
    return clamp_salience_score(max(band.min, min(band.max, score)))


def bound_consolidation_delta(
    current_score: Any,
    proposed_score: Any,
    max_delta: int = DEFAULT_MAX_DELTA,
) -> int:
    """
    Limit a proposed salience change to at most `max_delta` points.

    Both scores are clamped to [0, 10] first. The result is not re-banded;
    live scores may legitimately drift outside their initial band.
    """
    current = clamp_salience_score(current_score)
    proposed = clamp_salience_score(proposed_score)
    step = max(0, int(max_delta))
    delta = proposed - current

    if abs(delta) <= step:
        return proposed

    direction = 1 if delta > 0 else -1
    return clamp_salience_score(current + direction * step)
