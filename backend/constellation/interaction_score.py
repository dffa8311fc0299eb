"""
Interaction Scoring
===================

Turns the interaction history between two users into a single signal in
[0, 1], plus a pattern summary the weight adjuster uses.

    score = 0.4 * base + 0.25 * reciprocity + 0.2 * frequency + 0.15 * recency

  base         sum of action weights, each decayed by age (half-life 30 days),
               scaled down by 100 and capped at 1
  reciprocity  min(A->B, B->A) / max(A->B, B->A)
  frequency    exp(-mean gap in days / 7)   (0.1 with fewer than 2 interactions)
  recency      exp(-days since latest / 14)

A pair with no history scores NO_HISTORY_SCORE.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

import numpy as np

from models.domain.interaction import Interaction
from utils.datetime_utils import days_between

DEFAULT_HALF_LIFE_DAYS = 30.0
BASE_SCALE = 100.0
FREQUENCY_SCALE_DAYS = 7.0
RECENCY_SCALE_DAYS = 14.0

NO_HISTORY_SCORE = 0.1
SPARSE_FREQUENCY = 0.1

SUB_WEIGHTS = {
    'base': 0.4,
    'reciprocity': 0.25,
    'frequency': 0.2,
    'recency': 0.15,
}

# Pattern thresholds
DIVERSE_ACTION_TYPES = 3
SUSTAINED_SPAN_DAYS = 7.0


@dataclass(frozen=True)
class InteractionBreakdown:
    """Interaction signal and its components"""
    score: float
    base: float = 0.0
    reciprocity: float = 0.0
    frequency: float = 0.0
    recency: float = 0.0
    count: int = 0


@dataclass(frozen=True)
class InteractionPattern:
    """Shape of a pair's history, used for weight adjustment"""
    count: int
    reciprocal: bool
    diverse: bool
    sustained: bool

    @property
    def has_history(self) -> bool:
        return self.count > 0


def decay(age_days: float, half_life_days: float = DEFAULT_HALF_LIFE_DAYS) -> float:
    """Exponential decay factor with the given half-life"""
    return 0.5 ** (age_days / half_life_days)


def base_score(
    interactions: Sequence[Interaction],
    now: datetime,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> float:
    total = sum(i.weight * decay(days_between(i.created_at, now), half_life_days)
                for i in interactions)
    return min(total / BASE_SCALE, 1.0)


def reciprocity_score(interactions: Sequence[Interaction], user_a_id: str, user_b_id: str) -> float:
    a_to_b = sum(1 for i in interactions if i.actor_id == user_a_id and i.target_id == user_b_id)
    b_to_a = sum(1 for i in interactions if i.actor_id == user_b_id and i.target_id == user_a_id)
    if max(a_to_b, b_to_a) == 0:
        return 0.0
    return min(a_to_b, b_to_a) / max(a_to_b, b_to_a)


def frequency_score(interactions: Sequence[Interaction]) -> float:
    if len(interactions) < 2:
        return SPARSE_FREQUENCY
    stamps = np.array(sorted(i.created_at.timestamp() for i in interactions))
    mean_gap_days = float(np.mean(np.diff(stamps))) / 86400.0
    return math.exp(-mean_gap_days / FREQUENCY_SCALE_DAYS)


def recency_score(interactions: Sequence[Interaction], now: datetime) -> float:
    if not interactions:
        return 0.0
    latest = max(i.created_at for i in interactions)
    return math.exp(-days_between(latest, now) / RECENCY_SCALE_DAYS)


def score_interactions(
    interactions: Sequence[Interaction],
    user_a_id: str,
    user_b_id: str,
    now: datetime,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
) -> InteractionBreakdown:
    """
    Combine the four sub-scores for a pair.

    Args:
        interactions: History between the two users (either direction)
        user_a_id, user_b_id: The pair
        now: Reference time for decay and recency
        half_life_days: Decay half-life for the base score

    Returns:
        InteractionBreakdown with score in [0, 1]
    """
    if not interactions:
        return InteractionBreakdown(score=NO_HISTORY_SCORE)

    base = base_score(interactions, now, half_life_days)
    reciprocity = reciprocity_score(interactions, user_a_id, user_b_id)
    frequency = frequency_score(interactions)
    recency = recency_score(interactions, now)

    score = (
        SUB_WEIGHTS['base'] * base
        + SUB_WEIGHTS['reciprocity'] * reciprocity
        + SUB_WEIGHTS['frequency'] * frequency
        + SUB_WEIGHTS['recency'] * recency
    )
    return InteractionBreakdown(
        score=max(0.0, min(1.0, score)),
        base=base,
        reciprocity=reciprocity,
        frequency=frequency,
        recency=recency,
        count=len(interactions),
    )


def analyze_pattern(interactions: Sequence[Interaction], user_a_id: str, user_b_id: str) -> InteractionPattern:
    """Summarize reciprocity, action variety and time span of a pair's history"""
    if not interactions:
        return InteractionPattern(count=0, reciprocal=False, diverse=False, sustained=False)

    actors = {i.actor_id for i in interactions}
    action_types = {i.action_type for i in interactions}
    stamps = [i.created_at for i in interactions]
    span_days = days_between(min(stamps), max(stamps))

    return InteractionPattern(
        count=len(interactions),
        reciprocal=user_a_id in actors and user_b_id in actors,
        diverse=len(action_types) >= DIVERSE_ACTION_TYPES,
        sustained=span_days >= SUSTAINED_SPAN_DAYS,
    )
