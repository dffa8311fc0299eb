"""
Resonance Calculator
====================

Pairwise compatibility score in [0, 100].

    resonance = clamp(100 * (w_tag * tag_similarity
                             + w_int * interaction_score
                             + w_pref * content_preference_match
                             + w_rand * random_factor), 0, 100)

Signals:
  tag_similarity            similarity.tag_similarity          (default 0.1)
  interaction_score         interaction_score.score_interactions (default 0.1)
  content_preference_match  weighted overlap of preference maps (default 0.1)
  random_factor             uniform [0, 1) exploration term, fixed per pair
                            for the calculator's seed

The three data signals run concurrently and fail independently: a failing
signal is logged and replaced by its default. If all three fail, the
calculator returns a cheap deterministic fallback instead of raising, so
cluster formation keeps working when the data layer is degraded.

Caching: scores are cached under 'resonance:{lo}:{hi}' before returning,
so concurrent callers see fresh values. History is appended to the pair's
ResonanceRecord through the background history writer (loss tolerant).
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from models.domain.user import User
from models.domain.resonance_record import ResonanceRecord, ResonanceSnapshot, ordered_pair
from constellation.errors import ValidationError
from constellation.similarity import tag_similarity
from constellation.interaction_score import (
    DEFAULT_HALF_LIFE_DAYS,
    score_interactions,
)
from constellation.weights import DynamicWeightAdjuster, ResonanceWeights, WeightContext, base_weights
from services.cache import CacheAdapter, NullCache
from utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

IDENTITY_RESONANCE = 100.0
MAX_RESONANCE = 100.0

# Per-signal defaults on failure
DEFAULT_TAG_SIMILARITY = 0.1
DEFAULT_INTERACTION_SCORE = 0.1
DEFAULT_PREFERENCE_MATCH = 0.1
EMPTY_PREFERENCES_MATCH = 0.5

# Fallback: base + tag presence bonus + bounded activity bonus
FALLBACK_BASE = 30.0
FALLBACK_TAG_BONUS = 20.0
FALLBACK_MAX_ACTIVITY_BONUS = 30.0

DEFAULT_CACHE_TTL = 3600
DEFAULT_BATCH_SIZE = 10
INTERACTION_HISTORY_LIMIT = 100

PREDICTION_WINDOW = 10
PREDICTION_DECAY = 0.9


def resonance_cache_key(user_a_id: str, user_b_id: str) -> str:
    lo, hi = ordered_pair(user_a_id, user_b_id)
    return f"resonance:{lo}:{hi}"


def content_preference_match(prefs_a: Mapping[str, float], prefs_b: Mapping[str, float]) -> float:
    """
    Weighted overlap of two preference maps in [0, 1].

    Each direction is sum(w_a * w_b over shared keys) / sum(w_a); the result
    is the mean of both directions. 0.5 when both maps are empty, 0.1 when a
    side has no usable weight.
    """
    if not prefs_a and not prefs_b:
        return EMPTY_PREFERENCES_MATCH

    def directed(src: Mapping[str, float], dst: Mapping[str, float]) -> float:
        total = sum(src.values())
        if total <= 0:
            return DEFAULT_PREFERENCE_MATCH
        matched = sum(weight * dst[tag] for tag, weight in src.items() if tag in dst)
        return matched / total

    score = (directed(prefs_a, prefs_b) + directed(prefs_b, prefs_a)) / 2.0
    return max(0.0, min(1.0, score))


def fallback_resonance(user_a: User, user_b: User) -> float:
    """Deterministic degraded score used when no signal is available"""
    score = FALLBACK_BASE
    if user_a.tags and user_b.tags:
        score += FALLBACK_TAG_BONUS
    score += min(user_a.days_active + user_b.days_active, FALLBACK_MAX_ACTIVITY_BONUS)
    return min(score, MAX_RESONANCE)


@dataclass
class ResonanceResult:
    """A candidate and its resonance with the reference user"""
    user: User
    resonance: float


@dataclass
class ResonanceStats:
    """Aggregate view over a user's stored resonance records"""
    user_id: str
    count: int = 0
    average: float = 0.0
    maximum: float = 0.0
    minimum: float = 0.0
    distribution: Dict[str, int] = field(default_factory=lambda: {'high': 0, 'medium': 0, 'low': 0})


class ResonanceCalculator:
    """
    Computes, caches and records pairwise resonance.

    Every collaborator is injected: the interaction repository feeds the
    interaction signal, the resonance repository backs history queries, the
    cache adapter short-circuits repeat computations, and rng seeds the
    exploration term (seed it for reproducible runs). The term is drawn
    per canonical pair, so it does not depend on call order or on a cache.
    """

    def __init__(
        self,
        interaction_repository,
        resonance_repository=None,
        cache: Optional[CacheAdapter] = None,
        weight_adjuster: Optional[DynamicWeightAdjuster] = None,
        history_writer=None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.interaction_repository = interaction_repository
        self.resonance_repository = resonance_repository
        self.cache = NullCache() if cache is None else cache
        self.weight_adjuster = weight_adjuster or DynamicWeightAdjuster(interaction_repository, clock=clock)
        self.history_writer = history_writer
        self.rng = rng or random.Random()
        self.seed = self.rng.getrandbits(64)
        self.clock = clock
        self.cache_ttl = cache_ttl
        self.batch_size = batch_size
        self.half_life_days = half_life_days

    # =========================================================================
    # SCORING
    # =========================================================================

    async def resonance(
        self,
        user_a: User,
        user_b: User,
        force_recalculate: bool = False,
        record: bool = True,
    ) -> float:
        """
        Resonance between two users.

        Args:
            user_a, user_b: The pair (order does not matter)
            force_recalculate: Skip the cache read
            record: Write the cache and queue a history append; False reads
                    through the cache without leaving any trace

        Returns:
            Score in [0, 100], 2-decimal rounded

        Raises:
            ValidationError: If a user is missing or has no id
        """
        self._validate(user_a, user_b)

        if user_a.user_id == user_b.user_id:
            return IDENTITY_RESONANCE

        # Canonical order: both directions compute identically
        if user_b.user_id < user_a.user_id:
            user_a, user_b = user_b, user_a

        key = resonance_cache_key(user_a.user_id, user_b.user_id)
        if not force_recalculate:
            cached = await self._cache_get(key)
            if cached is not None:
                return float(cached)

        try:
            score, factors = await self._compute(user_a, user_b)
        except Exception as e:
            logger.error(
                f"Resonance computation failed for {key}, using fallback: {e}",
                exc_info=True
            )
            return fallback_resonance(user_a, user_b)

        if factors is None or not record:
            return score

        await self._cache_set(key, score)
        self._record_history(user_a, user_b, score, factors)
        return score

    async def _compute(self, user_a: User, user_b: User):
        """Returns (score, factors); factors is None when the fallback was used"""
        now = self.clock()
        results = await asyncio.gather(
            self._tag_signal(user_a, user_b),
            self._interaction_signal(user_a, user_b, now),
            self._preference_signal(user_a, user_b),
            return_exceptions=True,
        )

        names = ('tag_similarity', 'interaction_score', 'content_preference_match')
        defaults = (DEFAULT_TAG_SIMILARITY, DEFAULT_INTERACTION_SCORE, DEFAULT_PREFERENCE_MATCH)
        factors: Dict[str, float] = {}
        failures = 0
        for name, default, result in zip(names, defaults, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failures += 1
                logger.warning(
                    f"Signal {name} failed for {user_a.user_id}/{user_b.user_id}, "
                    f"using default {default}: {result}",
                    exc_info=result
                )
                factors[name] = default
            else:
                factors[name] = float(result)

        if failures == len(names):
            logger.error(
                f"All resonance signals failed for {user_a.user_id}/{user_b.user_id}, using fallback"
            )
            return fallback_resonance(user_a, user_b), None

        factors['random_factor'] = self.exploration_factor(user_a.user_id, user_b.user_id)

        weights = await self._weights(user_a, user_b, now)
        raw = sum(getattr(weights, name) * value for name, value in factors.items())
        score = round(max(0.0, min(MAX_RESONANCE, raw * 100.0)), 2)

        logger.debug(
            f"Resonance {user_a.user_id}/{user_b.user_id} = {score:.2f} "
            + " ".join(f"{k}={v:.3f}" for k, v in factors.items())
        )
        return score, factors

    def exploration_factor(self, user_a_id: str, user_b_id: str) -> float:
        """Uniform [0, 1) draw, stable for a pair under this calculator's seed"""
        return random.Random(f"{self.seed}:{resonance_cache_key(user_a_id, user_b_id)}").random()

    async def _tag_signal(self, user_a: User, user_b: User) -> float:
        return tag_similarity(user_a.tags, user_b.tags)

    async def _interaction_signal(self, user_a: User, user_b: User, now: datetime) -> float:
        history = await self.interaction_repository.find_between(
            user_a.user_id, user_b.user_id, limit=INTERACTION_HISTORY_LIMIT
        )
        breakdown = score_interactions(
            history, user_a.user_id, user_b.user_id, now, self.half_life_days
        )
        return breakdown.score

    async def _preference_signal(self, user_a: User, user_b: User) -> float:
        return content_preference_match(user_a.content_preferences, user_b.content_preferences)

    async def _weights(self, user_a: User, user_b: User, now: datetime) -> ResonanceWeights:
        try:
            return await self.weight_adjuster.weights(user_a, user_b, WeightContext.at(now))
        except Exception as e:
            logger.warning(
                f"Weight adjustment failed for {user_a.user_id}/{user_b.user_id}, "
                f"using base weights: {e}",
                exc_info=True
            )
            return base_weights()

    async def batch_resonance(
        self,
        user: User,
        candidates: Sequence[User],
        batch_size: Optional[int] = None,
    ) -> List[ResonanceResult]:
        """
        Score candidates against one user in bounded batches.

        Args:
            user: Reference user
            candidates: Users to score
            batch_size: Max concurrent computations (default from constructor)

        Returns:
            Results sorted by resonance descending (ties keep input order)
        """
        size = batch_size or self.batch_size
        results: List[ResonanceResult] = []

        for start in range(0, len(candidates), size):
            batch = candidates[start:start + size]
            scores = await asyncio.gather(*(self.resonance(user, c) for c in batch))
            results.extend(ResonanceResult(user=c, resonance=s) for c, s in zip(batch, scores))

        results.sort(key=lambda r: r.resonance, reverse=True)
        return results

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def historical_resonance(self, user_a_id: str, user_b_id: str, limit: int = PREDICTION_WINDOW) -> List[ResonanceSnapshot]:
        """Most recent history snapshots for a pair, newest first"""
        if self.resonance_repository is None:
            return []
        record = await self.resonance_repository.get_pair(user_a_id, user_b_id)
        if record is None:
            return []
        return record.recent_history(limit)

    async def predict_resonance(self, user_a: User, user_b: User) -> float:
        """
        Expected resonance from history.

        Weighted average of the last 10 snapshots, newest weighing most
        (weight 0.9^i). Without history, computes a fresh score.
        """
        self._validate(user_a, user_b)
        if user_a.user_id == user_b.user_id:
            return IDENTITY_RESONANCE

        try:
            history = await self.historical_resonance(user_a.user_id, user_b.user_id)
        except Exception as e:
            logger.warning(
                f"History lookup failed for {user_a.user_id}/{user_b.user_id}: {e}",
                exc_info=True
            )
            history = []

        if not history:
            return await self.resonance(user_a, user_b)

        weights = [PREDICTION_DECAY ** i for i in range(len(history))]
        weighted = sum(w * s.resonance for w, s in zip(weights, history))
        return round(weighted / sum(weights), 2)

    async def user_resonance_history(self, user_id: str, limit: int = 50) -> List[ResonanceRecord]:
        """Stored records involving a user, most recent first"""
        if self.resonance_repository is None:
            return []
        return await self.resonance_repository.find_by_user(user_id, limit=limit)

    async def resonance_stats(self, user_id: str, limit: int = 1000) -> ResonanceStats:
        """Count, average, extremes and high/medium/low buckets over a user's records"""
        records = await self.user_resonance_history(user_id, limit=limit)
        stats = ResonanceStats(user_id=user_id)
        if not records:
            return stats

        scores = [r.total_resonance for r in records]
        stats.count = len(scores)
        stats.average = round(sum(scores) / len(scores), 2)
        stats.maximum = max(scores)
        stats.minimum = min(scores)
        for score in scores:
            if score >= 80:
                stats.distribution['high'] += 1
            elif score >= 50:
                stats.distribution['medium'] += 1
            else:
                stats.distribution['low'] += 1
        return stats

    async def invalidate(self, user_a_id: str, user_b_id: str) -> None:
        """Drop a cached pair score (e.g. after new interactions)"""
        await self.cache.delete(resonance_cache_key(user_a_id, user_b_id))

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _validate(self, user_a: Optional[User], user_b: Optional[User]):
        if user_a is None or user_b is None:
            raise ValidationError("Both users are required for resonance")
        if not user_a.user_id or not user_b.user_id:
            raise ValidationError("Users must have an id for resonance")

    async def _cache_get(self, key: str):
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    async def _cache_set(self, key: str, score: float):
        try:
            await self.cache.set(key, score, self.cache_ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def _record_history(self, user_a: User, user_b: User, score: float, factors: Dict[str, float]):
        if self.history_writer is None:
            return
        snapshot = ResonanceSnapshot(resonance=score, factors=dict(factors), timestamp=self.clock())
        self.history_writer.submit(user_a.user_id, user_b.user_id, snapshot)
