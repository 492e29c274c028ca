# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Fact scoring: exponential time decay combined with model feedback.

Used by the fact janitor to order merge survivors and by diagnostics.
Assembly ranking does not use this score.
"""

import math
from datetime import datetime
from typing import Optional

from context_stack.schemas.records import MemoryFact

# Default half-life in days (decay reaches 0.5 after this many days)
DEFAULT_HALF_LIFE_DAYS: int = 30

HELPFUL_STEP = 0.1
HELPFUL_CAP = 1.5
HARMFUL_STEP = 0.2
HARMFUL_FLOOR = 0.3


def decay_factor(
    event_time: datetime,
    now: datetime,
    half_life_days: int = DEFAULT_HALF_LIFE_DAYS,
) -> float:
    """Exponential decay: ``2^(-days_since_event / half_life)``.

    Returns 1.0 for events in the future.
    """
    days = (now - event_time).total_seconds() / (24 * 60 * 60)
    if days < 0:
        return 1.0
    return max(0.0, min(1.0, math.pow(2, -days / half_life_days)))


def feedback_boost(helpful: int, harmful: int) -> float:
    """Multiplier from helpful/harmful marks.

    Net-helpful facts gain 0.1 per mark up to 1.5; net-harmful facts lose
    0.2 per mark down to 0.3.

    Example:
        >>> feedback_boost(10, 0)
        1.5
        >>> feedback_boost(0, 10)
        0.3
    """
    if helpful > harmful:
        return min(1.0 + (helpful - harmful) * HELPFUL_STEP, HELPFUL_CAP)
    if harmful > helpful:
        return max(1.0 - (harmful - helpful) * HARMFUL_STEP, HARMFUL_FLOOR)
    return 1.0


def score_fact(
    fact: MemoryFact,
    now: datetime,
    half_life_days: int = DEFAULT_HALF_LIFE_DAYS,
    similarity: Optional[float] = None,
) -> float:
    """Combined fact score.

    Args:
        fact: Fact to score
        now: Reference instant
        half_life_days: Decay half-life
        similarity: Optional goal similarity to weight by

    Returns:
        ``similarity * decay * boost`` (similarity defaults to 1.0)
    """
    base = 1.0 if similarity is None else similarity
    return (
        base
        * decay_factor(fact.event_time, now, half_life_days)
        * feedback_boost(fact.helpful, fact.harmful)
    )
