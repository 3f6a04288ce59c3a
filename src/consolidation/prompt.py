"""
Prompt construction for the consolidation candidate generator.

Episode text originates from pull-request reviews, so every free-text field
is passed through PromptInjectionDefense before it is embedded in the prompt.
The generator's answer is still untrusted and always goes through the
sanitizer.
"""

import json
import logging
import re
from collections.abc import Sequence
from typing import Any

from src.models.episode import ConsolidationEpisode, ExistingRule

logger = logging.getLogger(__name__)


class PromptInjectionDefense:
    """
    Scrub untrusted text before it is embedded in a prompt.

    Strategies:
    1. Length limits (prevent token exhaustion)
    2. Control character removal
    3. Known injection phrase redaction
    4. Whitespace normalization
    """

    MAX_FIELD_LENGTH = 4000  # Characters
    MAX_LIST_ITEMS = 12
    MAX_ITEM_LENGTH = 200

    INJECTION_PATTERNS = [
        "ignore previous instructions",
        "disregard all",
        "new instructions:",
        "you are now",
        "forget everything",
        "admin mode",
        "dev mode",
        "jailbreak",
        "</system>",
        "<|endoftext|>",
        "[INST]",
    ]

    _INJECTION_RE = re.compile(
        "|".join(re.escape(pattern) for pattern in INJECTION_PATTERNS), re.IGNORECASE
    )

    @classmethod
    def sanitize_text(cls, text: Any, field_name: str = "text") -> str:
        """
        Sanitize one text field.

        Args:
            text: Raw text (non-strings become "")
            field_name: Field name for logging

        Returns:
            Sanitized text
        """
        if not isinstance(text, str) or not text:
            return ""

        if len(text) > cls.MAX_FIELD_LENGTH:
            logger.warning(
                f"Truncating {field_name}: {len(text)} chars -> {cls.MAX_FIELD_LENGTH}"
            )
            text = text[: cls.MAX_FIELD_LENGTH] + "... (truncated)"

        # Remove null bytes and control characters (except newlines, tabs)
        text = "".join(
            char for char in text
            if char.isprintable() or char in ("\n", "\t", "\r")
        )

        text, redactions = cls._INJECTION_RE.subn("[REDACTED]", text)
        if redactions:
            logger.warning(
                f"Potential prompt injection detected in {field_name}: {redactions} redaction(s)"
            )

        return " ".join(text.split())

    @classmethod
    def sanitize_list(cls, items: Sequence[Any], field_name: str = "list") -> list[str]:
        """Sanitize a list of short strings, dropping empties."""
        if len(items) > cls.MAX_LIST_ITEMS:
            logger.warning(
                f"Truncating {field_name}: {len(items)} items -> {cls.MAX_LIST_ITEMS}"
            )
            items = items[: cls.MAX_LIST_ITEMS]

        sanitized = []
        for item in items:
            if not isinstance(item, str) or not item.strip():
                continue
            if len(item) > cls.MAX_ITEM_LENGTH:
                item = item[: cls.MAX_ITEM_LENGTH] + "..."
            cleaned = cls.sanitize_text(item, f"{field_name}_item")
            if cleaned:
                sanitized.append(cleaned)

        return sanitized


SYSTEM_PROMPT = """You are consolidating code-review incident memories for one repository.

Review the episodes and existing rules below and return valid JSON with:
- patterns: recurring themes with the episode ids that share them
- rules_to_promote: rules worth enforcing, each citing its source_episode_ids
- contradictions: pairs of episodes whose lessons conflict, with a reason
- salience_updates: revised 0-10 importance for episodes, with a reason
- prune_candidates: ids of episodes that no longer carry useful signal

IMPORTANT RULES:
- Only cite episode ids that appear in the input
- Triggers are short lowercase phrases
- Keep reasons under 200 characters

Return ONLY valid JSON, no markdown."""

CONSOLIDATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "patterns": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "episode_ids": {"type": "array", "items": {"type": "string"}},
                    "summary": {"type": "string"},
                },
                "required": ["name", "episode_ids", "summary"],
                "additionalProperties": False,
            },
        },
        "rules_to_promote": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "triggers": {"type": "array", "items": {"type": "string"}},
                    "source_episode_ids": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["title", "description", "triggers", "source_episode_ids"],
                "additionalProperties": False,
            },
        },
        "contradictions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "left_episode_id": {"type": "string"},
                    "right_episode_id": {"type": "string"},
                    "reason": {"type": "string"},
                },
                "required": ["left_episode_id", "right_episode_id", "reason"],
                "additionalProperties": False,
            },
        },
        "salience_updates": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "episode_id": {"type": "string"},
                    "salience_score": {"type": "integer", "minimum": 0, "maximum": 10},
                    "reason": {"type": "string"},
                },
                "required": ["episode_id", "salience_score", "reason"],
                "additionalProperties": False,
            },
        },
        "prune_candidates": {"type": "array", "items": {"type": "string"}},
    },
    "required": [
        "patterns",
        "rules_to_promote",
        "contradictions",
        "salience_updates",
        "prune_candidates",
    ],
    "additionalProperties": False,
}


def _episode_payload(episode: ConsolidationEpisode) -> dict[str, Any]:
    clean = PromptInjectionDefense.sanitize_text
    return {
        "id": episode.id,
        "title": clean(episode.title, "title"),
        "what_happened": clean(episode.what_happened, "what_happened"),
        "pattern_key": episode.pattern_key.value,
        "the_pattern": clean(episode.the_pattern, "the_pattern"),
        "the_fix": clean(episode.the_fix, "the_fix"),
        "why_it_matters": clean(episode.why_it_matters, "why_it_matters"),
        "salience_score": episode.salience_score,
        "triggers": PromptInjectionDefense.sanitize_list(episode.triggers, "triggers"),
        "source_pr_number": episode.source_pr_number,
    }


def _rule_payload(rule: ExistingRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "rule_key": rule.rule_key.value,
        "title": PromptInjectionDefense.sanitize_text(rule.title, "rule_title"),
        "description": PromptInjectionDefense.sanitize_text(rule.description, "rule_description"),
        "triggers": PromptInjectionDefense.sanitize_list(rule.triggers, "rule_triggers"),
        "source_episode_ids": list(rule.source_episode_ids),
        "confidence": rule.confidence,
    }


def build_consolidation_prompt(
    repo_full_name: str,
    episodes: Sequence[ConsolidationEpisode],
    existing_rules: Sequence[ExistingRule] = (),
) -> str:
    """Build the user prompt from sanitized episode and rule data."""
    return "\n".join(
        [
            "## Repository",
            PromptInjectionDefense.sanitize_text(repo_full_name, "repo_full_name") or "(unknown)",
            "",
            "## Episodes",
            json.dumps([_episode_payload(episode) for episode in episodes], indent=2),
            "",
            "## Existing Rules",
            json.dumps([_rule_payload(rule) for rule in existing_rules], indent=2),
        ]
    )
