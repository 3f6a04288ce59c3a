"""
Deterministic memory primitives.

- pattern_taxonomy.py: closed PatternKey set and keyword classifier
- salience_policy.py: initial band calibration and bounded consolidation deltas
- triggers.py: trigger string normalization
"""

from .pattern_taxonomy import (
    FALLBACK_PATTERN_KEY,
    PATTERN_KEYS,
    PATTERN_PRIORITY,
    PatternKey,
    SuperCategory,
    build_rule_description_for_key,
    build_rule_title_for_key,
    get_super_category_for_pattern,
    map_to_pattern_key,
    normalize_pattern_key,
    pattern_label_for_key,
)
from .salience_policy import (
    bound_consolidation_delta,
    calibrate_initial_salience,
    clamp_salience_score,
)
from .triggers import MAX_TRIGGERS, normalize_triggers

__all__ = [
    "FALLBACK_PATTERN_KEY",
    "MAX_TRIGGERS",
    "PATTERN_KEYS",
    "PATTERN_PRIORITY",
    "PatternKey",
    "SuperCategory",
    "bound_consolidation_delta",
    "build_rule_description_for_key",
    "build_rule_title_for_key",
    "calibrate_initial_salience",
    "clamp_salience_score",
    "get_super_category_for_pattern",
    "map_to_pattern_key",
    "normalize_pattern_key",
    "normalize_triggers",
    "pattern_label_for_key",
]
