"""
Consolidation of episodes into patterns, rules, contradictions and salience.

- sanitizer.py: pure validation/merge of untrusted generator candidates
- prompt.py: prompt and schema handed to the candidate generator
- service.py: async pass orchestration with retry and fallback
"""

from .sanitizer import (
    bound_salience_updates,
    compute_rule_confidence,
    sanitize_consolidation_output,
)
from .service import CandidateGenerator, ConsolidationService

__all__ = [
    "CandidateGenerator",
    "ConsolidationService",
    "bound_salience_updates",
    "compute_rule_confidence",
    "sanitize_consolidation_output",
]
