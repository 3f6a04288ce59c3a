"""
Tests for the consolidation sanitizer and rule merger.

Security/Integrity Tests:
- Referential integrity against the authoritative episode set
- Tolerance of malformed generator output

Merge Tests:
- Deterministic pattern grouping and ordering
- Threshold-gated, deterministic rule membership
- Candidate key resolution and trigger merging

Validation Tests:
- Contradiction pair deduplication
- Salience last-write-wins and clamping
- Prune candidate filtering
"""

import pytest

from src.consolidation.sanitizer import (
    bound_salience_updates,
    compute_rule_confidence,
    index_episodes_by_id,
    merge_rule_candidates,
    resolve_candidate_rule_key,
    sanitize_consolidation_output,
)
from src.memory.pattern_taxonomy import PatternKey
from src.models.consolidation import (
    ConsolidationOutput,
    RuleCandidate,
    SalienceUpdate,
)
from src.models.episode import ConsolidationEpisode


# ============================================================================
# Fixtures
# ============================================================================


def make_episode(episode_id, pattern_key, triggers=(), salience_score=5, title=None):
    return ConsolidationEpisode(
        id=episode_id,
        title=title or f"Episode {episode_id}",
        what_happened="something happened",
        pattern_key=pattern_key,
        salience_score=salience_score,
        triggers=list(triggers),
    )


def empty_raw(**overrides):
    raw = {
        "patterns": [],
        "rules_to_promote": [],
        "contradictions": [],
        "salience_updates": [],
        "prune_candidates": [],
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def retry_episodes():
    """Two retry-strategy episodes."""
    return [
        make_episode("ep-1", "retry-strategy", ["retry", "payments"], salience_score=7),
        make_episode("ep-2", "retry-strategy", ["retry"], salience_score=5),
    ]


@pytest.fixture
def mixed_episodes():
    """Two auth episodes and three retry episodes."""
    return [
        make_episode("a1", "auth-token-handling", ["token"]),
        make_episode("a2", "auth-token-handling", ["bearer"]),
        make_episode("r1", "retry-strategy", ["retry"]),
        make_episode("r2", "retry-strategy", ["backoff"]),
        make_episode("r3", "retry-strategy", []),
    ]


# ============================================================================
# End-to-end sanitization
# ============================================================================


class TestSanitizeConsolidationOutput:
    def test_filters_invalid_references_and_deduplicates(self, retry_episodes):
        raw = {
            "patterns": [
                {"name": "retry-loop", "summary": "valid", "episode_ids": ["ep-1", "missing"]},
            ],
            "rules_to_promote": [
                {
                    "title": " Guard retry logic ",
                    "description": " keep retries bounded ",
                    "triggers": ["Retry", "retry", " "],
                    "source_episode_ids": ["ep-1", "missing"],
                },
            ],
            "contradictions": [
                {"left_episode_id": "ep-1", "right_episode_id": "ep-1", "reason": "invalid"},
            ],
            "salience_updates": [
                {"episode_id": "ep-1", "salience_score": 11, "reason": "important"},
            ],
            "prune_candidates": ["ep-1", "missing"],
        }

        sanitized = sanitize_consolidation_output(raw, retry_episodes)

        assert len(sanitized.patterns) == 1
        assert sanitized.patterns[0].episode_ids == ["ep-1", "ep-2"]
        assert len(sanitized.rules_to_promote) == 1
        rule = sanitized.rules_to_promote[0]
        assert rule.rule_key == PatternKey.RETRY_STRATEGY
        assert rule.source_episode_ids == ["ep-1", "ep-2"]
        assert rule.triggers == ["retry", "payments"]
        assert sanitized.salience_updates[0].salience_score == 10
        assert sanitized.contradictions == []
        assert sanitized.prune_candidates == ["ep-1"]

    def test_concrete_scenario(self):
        episodes = [
            make_episode("e1", "retry-strategy"),
            make_episode("e2", "retry-strategy"),
            make_episode("e3", "review-hygiene"),
        ]

        sanitized = sanitize_consolidation_output(empty_raw(), episodes, min_support=2)

        assert [(p.pattern_key, p.episode_ids) for p in sanitized.patterns] == [
            (PatternKey.RETRY_STRATEGY, ["e1", "e2"]),
            (PatternKey.REVIEW_HYGIENE, ["e3"]),
        ]
        assert len(sanitized.rules_to_promote) == 1
        rule = sanitized.rules_to_promote[0]
        assert rule.rule_key == "retry-strategy"
        assert rule.source_episode_ids == ["e1", "e2"]
        # No triggers anywhere: the key itself stands in
        assert rule.triggers == ["retry-strategy"]

    def test_empty_episodes_short_circuit(self):
        for raw in [None, {}, "garbage", empty_raw(prune_candidates=["x"])]:
            sanitized = sanitize_consolidation_output(raw, [])
            assert isinstance(sanitized, ConsolidationOutput)
            assert sanitized.is_empty()

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "not json",
            42,
            [],
            {"rules_to_promote": "nope", "contradictions": [1, "x", None]},
            {"salience_updates": {"ep-1": 3}, "prune_candidates": "ep-1"},
            {"rules_to_promote": [{"title": 5, "triggers": "retry", "source_episode_ids": None}]},
        ],
    )
    def test_never_raises_on_malformed_candidate(self, raw, retry_episodes):
        sanitized = sanitize_consolidation_output(raw, retry_episodes)

        # Deterministic parts survive regardless of the candidate
        assert [p.episode_ids for p in sanitized.patterns] == [["ep-1", "ep-2"]]
        assert [r.rule_key for r in sanitized.rules_to_promote] == [PatternKey.RETRY_STRATEGY]
        assert sanitized.contradictions == []
        assert sanitized.salience_updates == []
        assert sanitized.prune_candidates == []

    def test_referential_integrity(self, mixed_episodes):
        ghost = "missing-ep-99"
        raw = empty_raw(
            rules_to_promote=[
                {
                    "title": "Ghost rule",
                    "description": "cites only unknown ids",
                    "triggers": ["phantom"],
                    "source_episode_ids": [ghost],
                },
                {
                    "title": "Half ghost",
                    "description": "mixed sources",
                    "triggers": ["partial"],
                    "source_episode_ids": [ghost, "r1"],
                },
            ],
            contradictions=[
                {"left_episode_id": ghost, "right_episode_id": "r1", "reason": "conflict"},
                {"left_episode_id": "a1", "right_episode_id": ghost, "reason": "conflict"},
            ],
            salience_updates=[{"episode_id": ghost, "salience_score": 9, "reason": "important"}],
            prune_candidates=[ghost],
        )

        sanitized = sanitize_consolidation_output(raw, mixed_episodes)

        assert ghost not in sanitized.model_dump_json()
        assert "phantom" not in sanitized.model_dump_json()
        retry_rule = next(
            r for r in sanitized.rules_to_promote if r.rule_key == PatternKey.RETRY_STRATEGY
        )
        assert "partial" in retry_rule.triggers

    def test_raw_patterns_are_ignored(self, mixed_episodes):
        raw = empty_raw(
            patterns=[{"name": "everything", "episode_ids": ["a1", "r1"], "summary": "bogus"}]
        )

        sanitized = sanitize_consolidation_output(raw, mixed_episodes)

        assert [p.pattern_key for p in sanitized.patterns] == [
            PatternKey.RETRY_STRATEGY,
            PatternKey.AUTH_TOKEN_HANDLING,
        ]
        assert sanitized.patterns[0].name == "Retry strategy"
        assert sanitized.patterns[0].summary == "Recurring pattern in 3 episode(s): Retry strategy"

    def test_pattern_ties_sorted_by_key(self):
        episodes = [
            make_episode("i1", "idempotency"),
            make_episode("s1", "state-transition"),
            make_episode("e1", "error-contract"),
        ]

        sanitized = sanitize_consolidation_output(None, episodes)

        assert [p.pattern_key.value for p in sanitized.patterns] == [
            "error-contract",
            "idempotency",
            "state-transition",
        ]

    def test_duplicate_episode_ids_counted_once(self):
        episodes = [
            make_episode("e1", "idempotency"),
            make_episode("e1", "idempotency"),
        ]

        sanitized = sanitize_consolidation_output(None, episodes)

        assert sanitized.patterns[0].episode_ids == ["e1"]
        assert sanitized.rules_to_promote == []


# ============================================================================
# Rule promotion
# ============================================================================


class TestRulePromotion:
    def test_singleton_category_is_not_promoted(self):
        episodes = [make_episode("ep-3", "auth-token-handling", ["token"], salience_score=8)]
        raw = empty_raw(
            rules_to_promote=[
                {
                    "title": "Stop token forwarding",
                    "description": "Do not propagate bearer tokens",
                    "triggers": ["token", "bearer"],
                    "source_episode_ids": ["ep-3"],
                }
            ]
        )

        sanitized = sanitize_consolidation_output(raw, episodes)

        assert sanitized.rules_to_promote == []
        assert len(sanitized.patterns) == 1

    @pytest.mark.parametrize("threshold", [1, 2, 3, 5])
    def test_threshold_gating(self, threshold):
        below = [make_episode(f"b{i}", "idempotency") for i in range(threshold - 1)]
        at = [make_episode(f"a{i}", "input-validation") for i in range(threshold)]

        sanitized = sanitize_consolidation_output(None, below + at, min_support=threshold)

        pattern_keys = {p.pattern_key for p in sanitized.patterns}
        rule_keys = [r.rule_key for r in sanitized.rules_to_promote]
        assert PatternKey.INPUT_VALIDATION in pattern_keys
        assert rule_keys == [PatternKey.INPUT_VALIDATION]
        if below:
            assert PatternKey.IDEMPOTENCY in pattern_keys

    @pytest.mark.parametrize("min_support", [0, -1, "abc", None, 2.5, True])
    def test_invalid_threshold_resets_to_default(self, min_support):
        episodes = [
            make_episode("s1", "sensitive-logging"),
            make_episode("r1", "retry-strategy"),
            make_episode("r2", "retry-strategy"),
        ]

        sanitized = sanitize_consolidation_output(None, episodes, min_support=min_support)

        assert [r.rule_key for r in sanitized.rules_to_promote] == [PatternKey.RETRY_STRATEGY]

    def test_membership_is_deterministic_not_candidate_union(self):
        episodes = [make_episode(f"e{i}", "retry-strategy") for i in range(1, 5)]
        raw = empty_raw(
            rules_to_promote=[
                {
                    "title": "Cap retries",
                    "description": "first proposal",
                    "triggers": ["retry-cap"],
                    "source_episode_ids": ["e1", "e2"],
                },
                {
                    "title": "Add jitter",
                    "description": "second proposal",
                    "triggers": ["jitter"],
                    "source_episode_ids": ["e2", "e3", "ghost"],
                },
            ]
        )

        sanitized = sanitize_consolidation_output(raw, episodes)

        assert len(sanitized.rules_to_promote) == 1
        rule = sanitized.rules_to_promote[0]
        assert rule.source_episode_ids == ["e1", "e2", "e3", "e4"]
        assert set(rule.triggers) == {"retry-cap", "jitter"}

    def test_candidate_text_is_replaced_by_templates(self, retry_episodes):
        raw = empty_raw(
            rules_to_promote=[
                {
                    "title": "Totally custom title",
                    "description": "Model prose",
                    "triggers": ["retry"],
                    "source_episode_ids": ["ep-1"],
                }
            ]
        )

        rule = sanitize_consolidation_output(raw, retry_episodes).rules_to_promote[0]

        assert rule.title == "Guard against retry strategy"
        assert rule.description == "Bound retry behavior with backoff and failure caps."

    def test_candidate_resolves_to_majority_category(self, mixed_episodes):
        raw = empty_raw(
            rules_to_promote=[
                {
                    "title": "retry policy",
                    "description": "retry with backoff",
                    "triggers": ["token-leak"],
                    "source_episode_ids": ["a1", "a2", "r1"],
                }
            ]
        )

        sanitized = sanitize_consolidation_output(raw, mixed_episodes)
        rules = {r.rule_key: r for r in sanitized.rules_to_promote}

        assert "token-leak" in rules[PatternKey.AUTH_TOKEN_HANDLING].triggers
        assert "token-leak" not in rules[PatternKey.RETRY_STRATEGY].triggers

    def test_candidate_support_tie_resolves_lexically(self, mixed_episodes):
        raw = empty_raw(
            rules_to_promote=[
                {
                    "title": "split",
                    "description": "one of each",
                    "triggers": ["tie-marker"],
                    "source_episode_ids": ["r1", "a1"],
                }
            ]
        )

        sanitized = sanitize_consolidation_output(raw, mixed_episodes)
        rules = {r.rule_key: r for r in sanitized.rules_to_promote}

        assert "tie-marker" in rules[PatternKey.AUTH_TOKEN_HANDLING].triggers
        assert "tie-marker" not in rules[PatternKey.RETRY_STRATEGY].triggers

    def test_unresolvable_candidate_falls_back_to_classifier(self):
        candidate = RuleCandidate(title="Stop logging PII", description="", triggers=[])

        key = resolve_candidate_rule_key(candidate, [], {})

        assert key == PatternKey.SENSITIVE_LOGGING

    def test_merge_keeps_source_union_as_bookkeeping(self, mixed_episodes):
        episodes_by_id = {episode.id: episode for episode in mixed_episodes}
        candidates = [
            RuleCandidate(title="a", triggers=["One"], source_episode_ids=["r1", "r1"]),
            RuleCandidate(title="b", triggers=["one", "two"], source_episode_ids=["r2", "nope"]),
            RuleCandidate(title="c", triggers=["three"], source_episode_ids=["nope"]),
        ]

        merged = merge_rule_candidates(candidates, episodes_by_id)

        assert list(merged) == [PatternKey.RETRY_STRATEGY]
        assert merged[PatternKey.RETRY_STRATEGY].triggers == ["one", "two"]
        assert merged[PatternKey.RETRY_STRATEGY].source_episode_ids == ["r1", "r2"]

    def test_rule_triggers_capped(self):
        episodes = [
            make_episode("e1", "state-transition", [f"a-{i}" for i in range(10)]),
            make_episode("e2", "state-transition", [f"b-{i}" for i in range(10)]),
        ]

        rule = sanitize_consolidation_output(None, episodes).rules_to_promote[0]

        assert len(rule.triggers) == 12
        assert len(set(rule.triggers)) == 12


# ============================================================================
# Contradictions, salience, pruning
# ============================================================================


class TestContradictions:
    def test_symmetric_pairs_deduplicated(self, retry_episodes):
        raw = empty_raw(
            contradictions=[
                {"left_episode_id": "ep-1", "right_episode_id": "ep-2", "reason": "x"},
                {"left_episode_id": "ep-2", "right_episode_id": "ep-1", "reason": "y"},
            ]
        )

        contradictions = sanitize_consolidation_output(raw, retry_episodes).contradictions

        assert len(contradictions) == 1
        assert contradictions[0].reason == "x"

    def test_blank_reason_does_not_claim_pair(self, retry_episodes):
        raw = empty_raw(
            contradictions=[
                {"left_episode_id": "ep-1", "right_episode_id": "ep-2", "reason": "   "},
                {"left_episode_id": "ep-2", "right_episode_id": "ep-1", "reason": "  real reason "},
            ]
        )

        contradictions = sanitize_consolidation_output(raw, retry_episodes).contradictions

        assert len(contradictions) == 1
        assert contradictions[0].left_episode_id == "ep-2"
        assert contradictions[0].reason == "real reason"

    def test_self_pairs_dropped(self, retry_episodes):
        raw = empty_raw(
            contradictions=[{"left_episode_id": "ep-2", "right_episode_id": "ep-2", "reason": "x"}]
        )
        assert sanitize_consolidation_output(raw, retry_episodes).contradictions == []


class TestSalienceUpdates:
    def test_last_write_wins(self, retry_episodes):
        raw = empty_raw(
            salience_updates=[
                {"episode_id": "ep-1", "salience_score": 3, "reason": "first"},
                {"episode_id": "ep-2", "salience_score": 4, "reason": "other"},
                {"episode_id": "ep-1", "salience_score": 7, "reason": "second"},
            ]
        )

        updates = sanitize_consolidation_output(raw, retry_episodes).salience_updates
        by_id = {update.episode_id: update for update in updates}

        assert len(updates) == 2
        assert by_id["ep-1"].salience_score == 7
        assert by_id["ep-1"].reason == "second"

    def test_invalid_updates_dropped_or_clamped(self, retry_episodes):
        raw = empty_raw(
            salience_updates=[
                {"episode_id": "ep-1", "salience_score": 9, "reason": "   "},
                {"episode_id": "ghost", "salience_score": 9, "reason": "unknown"},
                {"episode_id": "ep-2", "salience_score": -4, "reason": " dropped in value "},
            ]
        )

        updates = sanitize_consolidation_output(raw, retry_episodes).salience_updates

        assert len(updates) == 1
        assert updates[0].episode_id == "ep-2"
        assert updates[0].salience_score == 0
        assert updates[0].reason == "dropped in value"

    @pytest.mark.parametrize("score,expected", [(6.5, 7), (14, 10), (-1, 0), ("8", 8)])
    def test_scores_clamped_to_integers(self, retry_episodes, score, expected):
        raw = empty_raw(
            salience_updates=[{"episode_id": "ep-1", "salience_score": score, "reason": "r"}]
        )

        updates = sanitize_consolidation_output(raw, retry_episodes).salience_updates

        assert updates[0].salience_score == expected

    @pytest.mark.parametrize("score", ["high", None, "", float("nan"), float("inf"), True])
    def test_unusable_scores_are_dropped(self, retry_episodes, score):
        raw = empty_raw(
            salience_updates=[{"episode_id": "ep-1", "salience_score": score, "reason": "r"}]
        )

        assert sanitize_consolidation_output(raw, retry_episodes).salience_updates == []

    def test_missing_score_does_not_replace_earlier_update(self, retry_episodes):
        raw = empty_raw(
            salience_updates=[
                {"episode_id": "ep-1", "salience_score": 8, "reason": "valid"},
                {"episode_id": "ep-1", "reason": "no score given"},
                {"episode_id": "ep-1", "salience_score": "high", "reason": "bad"},
            ]
        )

        updates = sanitize_consolidation_output(raw, retry_episodes).salience_updates

        assert [(u.episode_id, u.salience_score, u.reason) for u in updates] == [
            ("ep-1", 8, "valid")
        ]

    def test_bound_salience_updates(self, retry_episodes):
        updates = [
            SalienceUpdate(episode_id="ep-1", salience_score=0, reason="down"),
            SalienceUpdate(episode_id="ep-2", salience_score=7, reason="up"),
            SalienceUpdate(episode_id="ghost", salience_score=7, reason="gone"),
        ]

        bounded = bound_salience_updates(updates, retry_episodes, max_delta=3)

        assert [(u.episode_id, u.salience_score) for u in bounded] == [("ep-1", 4), ("ep-2", 7)]

    def test_bound_salience_updates_uses_first_occurrence_of_duplicate_id(self):
        episodes = [
            make_episode("e1", "retry-strategy", salience_score=9),
            make_episode("e1", "review-hygiene", salience_score=1),
        ]
        updates = [SalienceUpdate(episode_id="e1", salience_score=10, reason="up")]

        bounded = bound_salience_updates(updates, episodes, max_delta=3)

        assert bounded[0].salience_score == 10


class TestPruneCandidates:
    def test_deduplicated_and_filtered(self, retry_episodes):
        raw = empty_raw(prune_candidates=["ep-2", "ep-1", "ep-2", "ghost", 5, None, {"id": "ep-1"}])

        pruned = sanitize_consolidation_output(raw, retry_episodes).prune_candidates

        assert pruned == ["ep-2", "ep-1"]


class TestRuleConfidence:
    def test_mean_salience_scaled(self, retry_episodes):
        episodes_by_id = {episode.id: episode for episode in retry_episodes}
        assert compute_rule_confidence(["ep-1", "ep-2"], episodes_by_id) == 0.6

    def test_empty_sources(self):
        assert compute_rule_confidence([], {}) == 0.0

    def test_duplicate_ids_resolve_to_first_occurrence(self):
        episodes = [
            make_episode("e1", "retry-strategy", salience_score=9),
            make_episode("e2", "retry-strategy", salience_score=9),
            make_episode("e1", "review-hygiene", salience_score=1),
        ]
        episodes_by_id = index_episodes_by_id(episodes)

        rules = sanitize_consolidation_output(empty_raw(), episodes).rules_to_promote

        assert episodes_by_id["e1"].pattern_key == PatternKey.RETRY_STRATEGY
        assert rules[0].source_episode_ids == ["e1", "e2"]
        assert compute_rule_confidence(rules[0].source_episode_ids, episodes_by_id) == 0.9
