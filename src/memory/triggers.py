"""Trigger string normalization shared by encoding and consolidation."""

from collections.abc import Iterable
from typing import Any

MAX_TRIGGERS = 12


def normalize_triggers(triggers: Iterable[Any], limit: int = MAX_TRIGGERS) -> list[str]:
    """Trim, lowercase, drop empties and non-strings, dedupe, cap at `limit`."""
    normalized = (
        trigger.strip().lower()
        for trigger in triggers
        if isinstance(trigger, str)
    )
    unique = dict.fromkeys(trigger for trigger in normalized if trigger)
    return list(unique)[:limit]
