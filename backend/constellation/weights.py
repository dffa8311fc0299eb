"""
Dynamic Weight Adjustment
=========================

Produces the weight vector the resonance calculator combines its four
signals with. Base weights are nudged by additive deltas, each scaled by a
per-adjustment factor:

  maturity      (0.3)  mean days_active of the pair; older pairs lean on
                       interaction history, new pairs on tags
  interaction   (0.2)  reciprocal / diverse / sustained histories favor
                       interaction and preference terms
  preference    (0.2)  overlap of preference keys
  temporal      (0.1)  hour, weekday and season nudges (heuristic)

The result is normalized to sum 1 only when the raw sum is finite and
positive, then clamped to [0, 1].
"""

import logging
import math
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Callable, Dict, Optional

from models.domain.user import User
from constellation.interaction_score import InteractionPattern, analyze_pattern
from utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

MATURITY_FACTOR = 0.3
INTERACTION_FACTOR = 0.2
PREFERENCE_FACTOR = 0.2
TEMPORAL_FACTOR = 0.1

PATTERN_HISTORY_LIMIT = 100


@dataclass
class ResonanceWeights:
    """Weights for the four resonance signals"""
    tag_similarity: float = 0.6
    interaction_score: float = 0.4
    content_preference_match: float = 0.15
    random_factor: float = 0.05

    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def add(self, deltas: Dict[str, float], factor: float) -> None:
        for name, delta in deltas.items():
            setattr(self, name, getattr(self, name) + delta * factor)

    def normalized(self) -> 'ResonanceWeights':
        """Copy scaled to sum 1 (unchanged if the sum is not finite and > 0), clamped to [0, 1]"""
        total = self.total()
        scale = total if math.isfinite(total) and total > 0 else 1.0
        return ResonanceWeights(**{
            f.name: max(0.0, min(1.0, getattr(self, f.name) / scale))
            for f in fields(self)
        })

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


BASE_WEIGHTS = ResonanceWeights()


def base_weights(normalized: bool = True) -> ResonanceWeights:
    """Fallback weight vector"""
    weights = ResonanceWeights()
    return weights.normalized() if normalized else weights


@dataclass(frozen=True)
class WeightContext:
    """Time context for temporal nudges"""
    hour: int
    weekday: int  # Monday=0 .. Sunday=6
    month: int

    @classmethod
    def at(cls, moment: datetime) -> 'WeightContext':
        return cls(hour=moment.hour, weekday=moment.weekday(), month=moment.month)

    @property
    def is_weekend(self) -> bool:
        return self.weekday >= 5

    @property
    def season(self) -> str:
        if self.month in (3, 4, 5):
            return "spring"
        if self.month in (6, 7, 8):
            return "summer"
        if self.month in (9, 10, 11):
            return "autumn"
        return "winter"


# =============================================================================
# ADJUSTMENT TABLES
# =============================================================================

def maturity_deltas(mean_days_active: float) -> Dict[str, float]:
    if mean_days_active <= 7:
        return {'tag_similarity': 0.2, 'interaction_score': -0.1, 'random_factor': 0.1}
    if mean_days_active <= 30:
        return {'tag_similarity': 0.1, 'interaction_score': 0.1}
    if mean_days_active <= 90:
        return {'tag_similarity': -0.1, 'interaction_score': 0.2, 'content_preference_match': 0.1}
    return {'tag_similarity': -0.2, 'interaction_score': 0.3, 'content_preference_match': 0.2}


def pattern_deltas(pattern: InteractionPattern) -> Dict[str, float]:
    if not pattern.has_history:
        return {'tag_similarity': 0.1, 'interaction_score': -0.1, 'random_factor': 0.1}

    deltas: Dict[str, float] = {}

    def bump(name, value):
        deltas[name] = deltas.get(name, 0.0) + value

    if pattern.reciprocal:
        bump('interaction_score', 0.2)
        bump('tag_similarity', -0.1)
    if pattern.diverse:
        bump('content_preference_match', 0.1)
    if pattern.sustained:
        bump('interaction_score', 0.1)
    return deltas


def preference_deltas(user_a: User, user_b: User) -> Dict[str, float]:
    keys_a = set(user_a.content_preferences)
    keys_b = set(user_b.content_preferences)
    if not keys_a and not keys_b:
        return {'tag_similarity': 0.1, 'content_preference_match': -0.1, 'random_factor': 0.1}

    overlap = len(keys_a & keys_b) / max(len(keys_a), len(keys_b))
    if overlap > 0.5:
        return {'content_preference_match': 0.2, 'tag_similarity': 0.1}
    if overlap < 0.2:
        return {'content_preference_match': -0.1, 'random_factor': 0.1}
    return {}


def temporal_deltas(context: WeightContext) -> Dict[str, float]:
    """Hour, weekday and season nudges, summed"""
    deltas: Dict[str, float] = {}

    def bump(name, value):
        deltas[name] = deltas.get(name, 0.0) + value

    if 9 <= context.hour <= 17:
        bump('content_preference_match', 0.1)
        bump('tag_similarity', 0.05)
    elif 18 <= context.hour <= 23:
        bump('interaction_score', 0.1)
        bump('random_factor', 0.05)
    else:
        bump('random_factor', 0.1)
        bump('tag_similarity', -0.05)

    if context.is_weekend:
        bump('interaction_score', 0.1)
        bump('random_factor', 0.05)
    else:
        bump('content_preference_match', 0.05)
        bump('tag_similarity', 0.05)

    season_signal = {
        "spring": 'tag_similarity',
        "summer": 'interaction_score',
        "autumn": 'content_preference_match',
        "winter": 'random_factor',
    }[context.season]
    bump(season_signal, 0.05)

    return deltas


# =============================================================================
# ADJUSTER
# =============================================================================

class DynamicWeightAdjuster:
    """
    Context-sensitive weights for a user pair.

    The interaction repository is only used for the pattern adjustment; if it
    fails, that adjustment is skipped.
    """

    def __init__(self, interaction_repository=None, clock: Callable[[], datetime] = utc_now):
        self.interaction_repository = interaction_repository
        self.clock = clock

    async def weights(
        self,
        user_a: User,
        user_b: User,
        context: Optional[WeightContext] = None,
    ) -> ResonanceWeights:
        """
        Compute normalized weights for a pair.

        Args:
            user_a, user_b: The pair (order does not matter)
            context: Time context; defaults to the clock's current time

        Returns:
            ResonanceWeights summing to 1 (when the raw sum is usable)
        """
        context = context or WeightContext.at(self.clock())
        weights = base_weights(normalized=False)

        mean_days = (user_a.days_active + user_b.days_active) / 2.0
        weights.add(maturity_deltas(mean_days), MATURITY_FACTOR)

        pattern = await self._pattern(user_a, user_b)
        if pattern is not None:
            weights.add(pattern_deltas(pattern), INTERACTION_FACTOR)

        weights.add(preference_deltas(user_a, user_b), PREFERENCE_FACTOR)
        weights.add(temporal_deltas(context), TEMPORAL_FACTOR)

        result = weights.normalized()
        logger.debug(
            f"Weights for {user_a.user_id}/{user_b.user_id}: "
            + ", ".join(f"{k}={v:.3f}" for k, v in result.to_dict().items())
        )
        return result

    async def _pattern(self, user_a: User, user_b: User) -> Optional[InteractionPattern]:
        if self.interaction_repository is None:
            return None
        try:
            history = await self.interaction_repository.find_between(
                user_a.user_id, user_b.user_id, limit=PATTERN_HISTORY_LIMIT
            )
        except Exception as e:
            logger.warning(
                f"Interaction pattern lookup failed for {user_a.user_id}/{user_b.user_id}: {e}",
                exc_info=True
            )
            return None
        return analyze_pattern(history, user_a.user_id, user_b.user_id)
