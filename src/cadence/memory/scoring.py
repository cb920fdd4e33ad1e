"""Pure scoring functions for the memory lifecycle (decay, similarity, pruning)."""

import math
from datetime import datetime
from typing import Iterable

DAYS_PER_DECAY_PERIOD = 30.0


def age_in_days(timestamp: datetime, now: datetime) -> float:
    """Fractional days between ``timestamp`` and ``now`` (never negative)."""
    return max((now - timestamp).total_seconds() / 86400.0, 0.0)


def protection_factor(emotional_intensity: float) -> float:
    """Emotionally intense memories keep more detail: 0.3 at 0, 1.0 at 10."""
    return 0.3 + 0.7 * (emotional_intensity / 10.0)


def base_decay_rate(significance: float) -> float:
    """Monthly retention rate by significance tier."""
    if significance >= 9.0:
        return 0.99
    if significance >= 7.0:
        return 0.90
    if significance >= 4.0:
        return 0.80
    return 0.70


def decayed_detail(
    significance: float,
    emotional_intensity: float,
    age_days: float,
    min_detail: float = 0.05,
) -> float:
    """Detail level a memory should have at ``age_days``."""
    rate = base_decay_rate(significance) ** (age_days / DAYS_PER_DECAY_PERIOD)
    return max(protection_factor(emotional_intensity) * rate, min_detail)


def tag_similarity(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """Percentage of shared tags relative to the larger tag set.

    Returns 0 when either side has no tags.
    """
    a, b = set(tags_a or ()), set(tags_b or ())
    if not a or not b:
        return 0.0
    return len(a & b) / max(len(a), len(b)) * 100.0


def pruning_score(
    significance: float,
    detail_level: float,
    emotional_intensity: float,
    recall_count: int,
    age_days: float,
) -> float:
    """Retention score; the lowest-scoring memories are pruned first."""
    age_factor = 1.0 / (1.0 + age_days / DAYS_PER_DECAY_PERIOD)
    emotional_weight = 1.0 + emotional_intensity / 10.0
    recall_bonus = math.log(recall_count + 1)
    return significance * detail_level * age_factor * emotional_weight + recall_bonus
