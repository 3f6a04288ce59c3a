"""
Closed pattern taxonomy and the deterministic keyword classifier.

Every episode carries exactly one PatternKey. The key is assigned once, at
encode time, by `map_to_pattern_key`, and is the unit rules are promoted per.

Classification:
    1. Lowercase corpus of all provided text fields and triggers
    2. Each category owns a fixed list of word-boundary keyword rules;
       every distinct rule that matches scores 1 point
    3. Highest score wins; ties go to the category listed first in
       PATTERN_PRIORITY (hand-authored, most specific/severe first)
    4. Nothing matched: FALLBACK_PATTERN_KEY
"""

import re
from collections.abc import Iterable
from enum import Enum
from typing import Any, Optional, Union


class PatternKey(str, Enum):
    """Canonical incident categories."""

    REVIEW_HYGIENE = "review-hygiene"
    SENSITIVE_LOGGING = "sensitive-logging"
    AUTH_TOKEN_HANDLING = "auth-token-handling"
    ERROR_CONTRACT = "error-contract"
    CONCURRENCY_SERIALIZATION = "concurrency-serialization"
    IDEMPOTENCY = "idempotency"
    RETRY_STRATEGY = "retry-strategy"
    INPUT_VALIDATION = "input-validation"
    STATE_TRANSITION = "state-transition"
    DEPENDENCY_RESILIENCE = "dependency-resilience"


class SuperCategory(str, Enum):
    """Presentation grouping over pattern keys."""

    SAFETY = "safety"
    RESILIENCE = "resilience"
    SECURITY = "security"
    FLOW = "flow"


PATTERN_KEYS: tuple[PatternKey, ...] = tuple(PatternKey)

_PATTERN_KEY_VALUES = frozenset(key.value for key in PatternKey)

FALLBACK_PATTERN_KEY = PatternKey.REVIEW_HYGIENE

# Tie-break order. Not alphabetical.
PATTERN_PRIORITY: tuple[PatternKey, ...] = (
    PatternKey.SENSITIVE_LOGGING,
    PatternKey.AUTH_TOKEN_HANDLING,
    PatternKey.ERROR_CONTRACT,
    PatternKey.CONCURRENCY_SERIALIZATION,
    PatternKey.IDEMPOTENCY,
    PatternKey.RETRY_STRATEGY,
    PatternKey.INPUT_VALIDATION,
    PatternKey.STATE_TRANSITION,
    PatternKey.DEPENDENCY_RESILIENCE,
    PatternKey.REVIEW_HYGIENE,
)

PATTERN_LABELS: dict[PatternKey, str] = {
    PatternKey.REVIEW_HYGIENE: "Review hygiene",
    PatternKey.SENSITIVE_LOGGING: "Sensitive logging",
    PatternKey.AUTH_TOKEN_HANDLING: "Auth token handling",
    PatternKey.ERROR_CONTRACT: "Error contract consistency",
    PatternKey.CONCURRENCY_SERIALIZATION: "Concurrency serialization",
    PatternKey.IDEMPOTENCY: "Idempotency enforcement",
    PatternKey.RETRY_STRATEGY: "Retry strategy",
    PatternKey.INPUT_VALIDATION: "Input validation",
    PatternKey.STATE_TRANSITION: "State transition integrity",
    PatternKey.DEPENDENCY_RESILIENCE: "Dependency resilience",
}

RULE_DESCRIPTIONS: dict[PatternKey, str] = {
    PatternKey.REVIEW_HYGIENE: (
        "Convert repeated review feedback into enforceable implementation checks."
    ),
    PatternKey.SENSITIVE_LOGGING: (
        "Redact sensitive payload fields before logs leave process boundaries."
    ),
    PatternKey.AUTH_TOKEN_HANDLING: (
        "Prevent credential propagation across service boundaries."
    ),
    PatternKey.ERROR_CONTRACT: (
        "Keep handler response contracts and error envelopes structurally consistent."
    ),
    PatternKey.CONCURRENCY_SERIALIZATION: (
        "Serialize concurrent writes around shared mutable resources."
    ),
    PatternKey.IDEMPOTENCY: "Enforce idempotency keys and duplicate-write guards.",
    PatternKey.RETRY_STRATEGY: "Bound retry behavior with backoff and failure caps.",
    PatternKey.INPUT_VALIDATION: (
        "Validate external input before side effects or persistence."
    ),
    PatternKey.STATE_TRANSITION: (
        "Guard allowed state transitions with explicit invariants."
    ),
    PatternKey.DEPENDENCY_RESILIENCE: (
        "Harden upstream/downstream integration boundaries and fallbacks."
    ),
}

SUPER_CATEGORY_KEYS: tuple[SuperCategory, ...] = tuple(SuperCategory)

SUPER_CATEGORY_LABELS: dict[SuperCategory, str] = {
    SuperCategory.SAFETY: "Safety",
    SuperCategory.RESILIENCE: "Resilience",
    SuperCategory.SECURITY: "Security",
    SuperCategory.FLOW: "Flow",
}

PATTERN_SUPER_CATEGORY: dict[PatternKey, SuperCategory] = {
    PatternKey.ERROR_CONTRACT: SuperCategory.SAFETY,
    PatternKey.INPUT_VALIDATION: SuperCategory.SAFETY,
    PatternKey.RETRY_STRATEGY: SuperCategory.RESILIENCE,
    PatternKey.DEPENDENCY_RESILIENCE: SuperCategory.RESILIENCE,
    PatternKey.IDEMPOTENCY: SuperCategory.RESILIENCE,
    PatternKey.SENSITIVE_LOGGING: SuperCategory.SECURITY,
    PatternKey.AUTH_TOKEN_HANDLING: SuperCategory.SECURITY,
    PatternKey.CONCURRENCY_SERIALIZATION: SuperCategory.FLOW,
    PatternKey.STATE_TRANSITION: SuperCategory.FLOW,
    PatternKey.REVIEW_HYGIENE: SuperCategory.FLOW,
}

# Each compiled pattern is one independent rule worth 1 point.
KEYWORD_RULES: dict[PatternKey, tuple[re.Pattern[str], ...]] = {
    key: tuple(re.compile(rule) for rule in rules)
    for key, rules in {
        PatternKey.SENSITIVE_LOGGING: (
            r"\blog(s|ging)?\b",
            r"\b(redact|mask|sanitize)\b",
            r"\bpii\b",
            r"\bpci\b",
            r"\bpan\b",
            r"\bsensitive\b",
        ),
        PatternKey.AUTH_TOKEN_HANDLING: (
            r"\btoken(s)?\b",
            r"\bbearer\b",
            r"\bcredential(s)?\b",
            r"\bauth(entication|orization)?\b",
            r"\bsession\b",
            r"\bjwt\b",
        ),
        PatternKey.ERROR_CONTRACT: (
            r"\berror\b",
            r"\bresponse\b",
            r"\bschema\b",
            r"\bshape\b",
            r"\bcontract\b",
            r"\bstatus code\b",
        ),
        PatternKey.CONCURRENCY_SERIALIZATION: (
            r"\bconcurren(t|cy)\b",
            r"\brace\b",
            r"\binterleav(e|ing)\b",
            r"\bserialize\b",
            r"\block(s)?\b",
            r"\bmutex\b",
        ),
        PatternKey.IDEMPOTENCY: (
            r"\bidempotent\b",
            r"\bidempotency\b",
            r"\bduplicate(s|d)?\b",
            r"\breplay\b",
        ),
        PatternKey.RETRY_STRATEGY: (
            r"\bretr(y|ies)\b",
            r"\bbackoff\b",
            r"\btimeout(s)?\b",
            r"\bcircuit breaker\b",
        ),
        PatternKey.INPUT_VALIDATION: (
            r"\bvalidat(e|ion)\b",
            r"\bsanitiz(e|ation)\b",
            r"\bconstraint(s)?\b",
            r"\bguard rail(s)?\b",
        ),
        PatternKey.STATE_TRANSITION: (
            r"\bstate\b",
            r"\btransition\b",
            r"\bworkflow\b",
            r"\binvariant(s)?\b",
        ),
        PatternKey.DEPENDENCY_RESILIENCE: (
            r"\bupstream\b",
            r"\bdownstream\b",
            r"\bprovider\b",
            r"\bexternal service\b",
            r"\bdependency\b",
        ),
        PatternKey.REVIEW_HYGIENE: (
            r"\breview\b",
            r"\bcomment\b",
            r"\bcleanup\b",
            r"\brefactor\b",
        ),
    }.items()
}


def _collect_corpus(
    title: Optional[str],
    narrative: Union[str, Iterable[Optional[str]], None],
    triggers: Optional[Iterable[Any]],
) -> str:
    parts: list[str] = []
    if isinstance(title, str):
        parts.append(title)

    for value in (narrative, triggers):
        if isinstance(value, str):
            parts.append(value)
        elif isinstance(value, Iterable):
            parts.extend(text for text in value if isinstance(text, str))

    return " ".join(parts).lower()


def score_pattern_keys(
    title: Optional[str] = None,
    narrative: Union[str, Iterable[Optional[str]], None] = None,
    triggers: Optional[Iterable[Any]] = None,
) -> dict[PatternKey, int]:
    """Count matched keyword rules per category (zero scores omitted)."""
    corpus = _collect_corpus(title, narrative, triggers)
    scores: dict[PatternKey, int] = {}
    if not corpus.strip():
        return scores

    for key, rules in KEYWORD_RULES.items():
        matched = sum(1 for rule in rules if rule.search(corpus))
        if matched:
            scores[key] = matched

    return scores


def map_to_pattern_key(
    title: Optional[str] = None,
    narrative: Union[str, Iterable[Optional[str]], None] = None,
    triggers: Optional[Iterable[Any]] = None,
) -> PatternKey:
    """
    Classify free text into exactly one PatternKey.

    Args:
        title: Episode or rule title
        narrative: One text blob or several narrative fields (None entries skipped)
        triggers: Short trigger strings

    Returns:
        Winning PatternKey; FALLBACK_PATTERN_KEY when no keyword rule matched
    """
    scores = score_pattern_keys(title, narrative, triggers)
    if not scores:
        return FALLBACK_PATTERN_KEY

    # max() keeps the first maximum, so iterating in priority order is the tie-break
    return max(PATTERN_PRIORITY, key=lambda key: scores.get(key, 0))


def is_pattern_key(value: Any) -> bool:
    if isinstance(value, PatternKey):
        return True
    return isinstance(value, str) and value in _PATTERN_KEY_VALUES


def normalize_pattern_key(value: Any) -> PatternKey:
    """Coerce a stored value into the closed set, falling back for unknowns."""
    if isinstance(value, PatternKey):
        return value
    if isinstance(value, str):
        candidate = value.strip().lower()
        if candidate in _PATTERN_KEY_VALUES:
            return PatternKey(candidate)
    return FALLBACK_PATTERN_KEY


def pattern_label_for_key(key: PatternKey) -> str:
    return PATTERN_LABELS[key]


def build_rule_title_for_key(key: PatternKey) -> str:
    return f"Guard against {PATTERN_LABELS[key].lower()}"


def build_rule_description_for_key(key: PatternKey) -> str:
    return RULE_DESCRIPTIONS[key]


def get_super_category_for_pattern(key: PatternKey) -> SuperCategory:
    return PATTERN_SUPER_CATEGORY[key]
