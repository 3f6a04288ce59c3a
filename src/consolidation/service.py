"""
Consolidation service.

Wraps one consolidation pass:
    episodes + existing rules -> prompt -> candidate generator -> sanitizer
    -> bounded salience -> rule confidence -> ConsolidationResult

The candidate generator is an injected collaborator (any async callable
taking a prompt and a JSON schema). Its output is untrusted. Failures
(timeouts, exceptions, non-JSON answers) are retried with exponential
backoff and finally replaced by an empty candidate, which still runs through
the sanitizer so deterministic patterns and rules are always produced.
"""

import asyncio
import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any, Optional, Protocol

from src.config import ConsolidationConfig
from src.consolidation.prompt import (
    CONSOLIDATION_SCHEMA,
    SYSTEM_PROMPT,
    build_consolidation_prompt,
)
from src.consolidation.sanitizer import (
    bound_salience_updates,
    compute_rule_confidence,
    index_episodes_by_id,
    sanitize_consolidation_output,
)
from src.models.consolidation import ConsolidationResult
from src.models.episode import ConsolidationEpisode, ExistingRule

logger = logging.getLogger(__name__)

EMPTY_CANDIDATE: dict[str, list[Any]] = {
    "patterns": [],
    "rules_to_promote": [],
    "contradictions": [],
    "salience_updates": [],
    "prune_candidates": [],
}


class CandidateGenerator(Protocol):
    """Generative inference collaborator. Returns JSON text or a decoded object."""

    async def __call__(
        self, system_prompt: str, user_prompt: str, schema: dict[str, Any]
    ) -> Any: ...


class CandidateParseError(ValueError):
    """Generator answered, but not with a JSON object."""


def parse_candidate(content: Any) -> dict[str, Any]:
    """
    Decode a generator answer into a mapping.

    Accepts an already-decoded mapping or JSON text, optionally wrapped in a
    markdown code fence.

    Raises:
        CandidateParseError: If the content is not a JSON object
    """
    if isinstance(content, Mapping):
        return dict(content)

    if not isinstance(content, str):
        raise CandidateParseError(f"Unsupported candidate type: {type(content).__name__}")

    # Extract JSON from markdown if needed
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0]
    elif "```" in content:
        content = content.split("```")[1].split("```")[0]

    try:
        data = json.loads(content.strip())
    except json.JSONDecodeError as e:
        raise CandidateParseError(f"Candidate is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise CandidateParseError(f"Candidate JSON is a {type(data).__name__}, not an object")

    return data


class ConsolidationService:
    """
    Run consolidation passes against an untrusted candidate generator.

    Stateless per pass; the only instance state is usage counters.
    """

    def __init__(
        self,
        generator: CandidateGenerator,
        config: Optional[ConsolidationConfig] = None,
    ):
        self.generator = generator
        self.config = config or ConsolidationConfig()

        self.total_runs = 0
        self.fallback_runs = 0
        self.generator_failures = 0

        logger.info(
            f"Consolidation service initialized: "
            f"min_rule_support={self.config.min_rule_support}, "
            f"max_salience_delta={self.config.max_salience_delta}, "
            f"max_retries={self.config.max_retries}"
        )

    async def consolidate(
        self,
        repo_full_name: str,
        episodes: Sequence[ConsolidationEpisode],
        existing_rules: Sequence[ExistingRule] = (),
        max_retries: Optional[int] = None,
    ) -> ConsolidationResult:
        """
        Run one consolidation pass.

        Args:
            repo_full_name: Repository the episodes belong to (prompt context only)
            episodes: Authoritative episodes
            existing_rules: Previously promoted rules (prompt context only)
            max_retries: Override configured generator attempts

        Returns:
            ConsolidationResult; never raises for generator failures
        """
        if not episodes:
            logger.info(f"No episodes for {repo_full_name}; skipping consolidation")
            return ConsolidationResult(used_fallback=True)

        if max_retries is None:
            max_retries = self.config.max_retries

        start_time = time.perf_counter()
        self.total_runs += 1

        user_prompt = build_consolidation_prompt(repo_full_name, episodes, existing_rules)
        candidate = await self._generate_candidate(user_prompt, max_retries)

        used_fallback = candidate is None
        if used_fallback:
            self.fallback_runs += 1
            logger.warning(
                f"Candidate generation failed for {repo_full_name}; "
                f"consolidating from deterministic grouping only"
            )
            candidate = EMPTY_CANDIDATE

        output = sanitize_consolidation_output(
            candidate, episodes, min_support=self.config.min_rule_support
        )

        episodes_by_id = index_episodes_by_id(episodes)
        rules = [
            rule.model_copy(
                update={
                    "confidence": compute_rule_confidence(rule.source_episode_ids, episodes_by_id)
                }
            )
            for rule in output.rules_to_promote
        ]
        salience_updates = bound_salience_updates(
            output.salience_updates, episodes, self.config.max_salience_delta
        )

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Consolidation complete for {repo_full_name}: "
            f"patterns={len(output.patterns)}, rules={len(rules)}, "
            f"contradictions={len(output.contradictions)}, "
            f"salience_updates={len(salience_updates)}, "
            f"prune={len(output.prune_candidates)}, "
            f"used_fallback={used_fallback}, latency={latency_ms:.0f}ms"
        )

        return ConsolidationResult(
            patterns=output.patterns,
            rules_to_promote=rules,
            contradictions=output.contradictions,
            salience_updates=salience_updates,
            prune_candidates=output.prune_candidates,
            used_fallback=used_fallback,
        )

    async def _generate_candidate(
        self, user_prompt: str, max_retries: int
    ) -> Optional[dict[str, Any]]:
        """Call the generator with retry and timeout; None when every attempt fails."""
        attempts = max(1, max_retries)
        for attempt in range(attempts):
            try:
                content = await asyncio.wait_for(
                    self.generator(SYSTEM_PROMPT, user_prompt, CONSOLIDATION_SCHEMA),
                    timeout=self.config.timeout_seconds,
                )
                return parse_candidate(content)

            except CandidateParseError as e:
                self.generator_failures += 1
                logger.error(f"Candidate output validation failed: {e}")

            except asyncio.TimeoutError:
                self.generator_failures += 1
                logger.error(
                    f"Candidate generator timed out after {self.config.timeout_seconds}s"
                )

            except Exception as e:
                self.generator_failures += 1
                logger.error(f"Candidate generator call failed: {e}")

            if attempt < attempts - 1:
                await asyncio.sleep(2 ** attempt)

        return None

    def get_usage_stats(self) -> dict:
        """Get service usage statistics."""
        return {
            "total_runs": self.total_runs,
            "fallback_runs": self.fallback_runs,
            "generator_failures": self.generator_failures,
            "fallback_rate": (
                self.fallback_runs / self.total_runs if self.total_runs > 0 else 0.0
            ),
        }
