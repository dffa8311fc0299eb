"""
Activity Classification and Balance
===================================

Scores user engagement and buckets users into high / medium / low tiers.

    score = 0.4 * days_active + 0.3 * interactions (30d)
          + 0.2 * recency + 0.1 * content creation (30d)

Each factor is a step function over raw counts (thresholds below). Tiers:
score >= 0.8 high, >= 0.5 medium, else low.

balance() picks members toward target tier ratios (default 0.3/0.4/0.3);
balance_score() measures how close a set is to those ratios and doubles as
the fitness function for optimize().
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from models.domain.user import User
from models.domain.interaction import CONTENT_CREATION_ACTIONS
from repositories.filters import InteractionFilter
from utils.datetime_utils import hours_between, utc_now

logger = logging.getLogger(__name__)

ACTIVITY_WINDOW_DAYS = 30
FACTOR_DEFAULT = 0.1

FACTOR_WEIGHTS = {
    'days_active': 0.4,
    'interaction_frequency': 0.3,
    'recency': 0.2,
    'content_creation': 0.1,
}

# (minimum raw value, score), checked top-down
DAYS_ACTIVE_STEPS = ((90, 1.0), (60, 0.9), (30, 0.8), (14, 0.6), (7, 0.4), (3, 0.2))
INTERACTION_STEPS = ((50, 1.0), (30, 0.8), (20, 0.6), (10, 0.4), (5, 0.2))
CONTENT_STEPS = ((20, 1.0), (10, 0.8), (5, 0.6), (2, 0.4))
# (maximum hours since last active, score)
RECENCY_STEPS = ((1, 1.0), (6, 0.9), (24, 0.7), (72, 0.5), (168, 0.3))

HIGH_THRESHOLD = 0.8
MEDIUM_THRESHOLD = 0.5


class ActivityLevel(str, Enum):
    """Engagement tier"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ActivityRatios:
    """Target share of each tier (must sum to 1)"""
    high: float = 0.3
    medium: float = 0.4
    low: float = 0.3

    def __post_init__(self):
        for value in (self.high, self.medium, self.low):
            if value < 0:
                raise ValueError(f"Activity ratios must be >= 0, got {self}")
        if not math.isclose(self.high + self.medium + self.low, 1.0, abs_tol=1e-6):
            raise ValueError(f"Activity ratios must sum to 1, got {self}")

    def get(self, level: ActivityLevel) -> float:
        return getattr(self, level.value)

    def largest(self) -> ActivityLevel:
        """Tier with the largest ratio (ties: high, medium, low order)"""
        return max(ActivityLevel, key=self.get)


@dataclass
class ActivityScore:
    """Engagement score of one user"""
    user_id: str
    level: ActivityLevel
    score: float
    factors: Dict[str, float] = field(default_factory=dict)


@dataclass
class ActivityStatistics:
    """Summary of a member set's engagement"""
    total: int
    distribution: Dict[str, int]
    balance_score: float
    average_score: float


def step_at_least(value: float, steps: Sequence[Tuple[float, float]], default: float = FACTOR_DEFAULT) -> float:
    for threshold, score in steps:
        if value >= threshold:
            return score
    return default


def step_at_most(value: float, steps: Sequence[Tuple[float, float]], default: float = FACTOR_DEFAULT) -> float:
    for threshold, score in steps:
        if value <= threshold:
            return score
    return default


def classify_level(score: float) -> ActivityLevel:
    """Total partition of [0, 1] into tiers"""
    if score >= HIGH_THRESHOLD:
        return ActivityLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return ActivityLevel.MEDIUM
    return ActivityLevel.LOW


def level_counts(levels: Iterable[ActivityLevel]) -> Dict[ActivityLevel, int]:
    counts = {level: 0 for level in ActivityLevel}
    for level in levels:
        counts[level] += 1
    return counts


def balance_score(levels: Sequence[ActivityLevel], target: ActivityRatios = ActivityRatios()) -> float:
    """
    1 - mean |actual share - target share| across tiers.

    1.0 is a perfect match; an empty set scores 0.
    """
    if not levels:
        return 0.0
    counts = level_counts(levels)
    total = len(levels)
    deviation = sum(abs(counts[level] / total - target.get(level)) for level in ActivityLevel)
    return max(0.0, 1.0 - deviation / len(ActivityLevel))


def tier_quotas(size: int, target: ActivityRatios) -> Dict[ActivityLevel, int]:
    """floor(size * ratio) per tier, remainder to the largest tier"""
    quotas = {level: math.floor(size * target.get(level) + 1e-9) for level in ActivityLevel}
    quotas[target.largest()] += size - sum(quotas.values())
    return quotas


class ActivityClassifier:
    """
    Scores engagement and balances member sets across tiers.

    Interaction counts come from the interaction repository; if a count
    cannot be fetched, that factor falls back to its floor score.
    """

    def __init__(self, interaction_repository, clock: Callable[[], datetime] = utc_now):
        self.interaction_repository = interaction_repository
        self.clock = clock

    # =========================================================================
    # SCORING
    # =========================================================================

    async def activity_score(self, user: User) -> ActivityScore:
        """
        Score a user's engagement.

        Returns:
            ActivityScore with level, score in [0, 1] and factor breakdown
        """
        now = self.clock()
        since = now - timedelta(days=ACTIVITY_WINDOW_DAYS)

        factors = {
            'days_active': step_at_least(user.days_active, DAYS_ACTIVE_STEPS),
            'interaction_frequency': await self._interaction_factor(user, since),
            'recency': self._recency_factor(user, now),
            'content_creation': await self._content_factor(user, since),
        }
        score = sum(FACTOR_WEIGHTS[name] * value for name, value in factors.items())
        score = round(max(0.0, min(1.0, score)), 4)

        return ActivityScore(
            user_id=user.user_id,
            level=classify_level(score),
            score=score,
            factors=factors,
        )

    async def score_all(self, users: Sequence[User]) -> Dict[str, ActivityScore]:
        """Activity scores keyed by user id"""
        return {user.user_id: await self.activity_score(user) for user in users}

    def _recency_factor(self, user: User, now: datetime) -> float:
        if user.last_active_at is None:
            return FACTOR_DEFAULT
        return step_at_most(hours_between(user.last_active_at, now), RECENCY_STEPS)

    async def _interaction_factor(self, user: User, since: datetime) -> float:
        try:
            count = await self.interaction_repository.count(
                InteractionFilter(actor_id=user.user_id, since=since)
            )
        except Exception as e:
            logger.warning(f"Interaction count failed for {user.user_id}: {e}", exc_info=True)
            return FACTOR_DEFAULT
        return step_at_least(count, INTERACTION_STEPS)

    async def _content_factor(self, user: User, since: datetime) -> float:
        try:
            count = await self.interaction_repository.count(
                InteractionFilter(
                    actor_id=user.user_id,
                    since=since,
                    action_types=CONTENT_CREATION_ACTIONS,
                )
            )
        except Exception as e:
            logger.warning(f"Content count failed for {user.user_id}: {e}", exc_info=True)
            return FACTOR_DEFAULT
        return step_at_least(count, CONTENT_STEPS)

    # =========================================================================
    # BALANCE
    # =========================================================================

    async def balance(
        self,
        members: Sequence[User],
        target_ratios: ActivityRatios = ActivityRatios(),
        size: Optional[int] = None,
        scores: Optional[Dict[str, ActivityScore]] = None,
    ) -> List[User]:
        """
        Select members toward target tier ratios.

        Each tier is sorted by score (descending, stable) and contributes
        floor(size * ratio) members, the remainder going to the largest tier.
        Shortfalls in a tier are back-filled from the other tiers' leftovers
        by score.

        Args:
            members: Users to choose from
            target_ratios: Desired tier shares
            size: How many to select (default: all members)
            scores: Precomputed activity scores keyed by user id

        Returns:
            min(size, len(members)) users
        """
        size = len(members) if size is None else size
        size = min(size, len(members))
        if size <= 0:
            return []

        scores = scores or await self.score_all(members)
        tiers: Dict[ActivityLevel, List[User]] = {level: [] for level in ActivityLevel}
        for user in members:
            tiers[scores[user.user_id].level].append(user)
        for level in ActivityLevel:
            tiers[level].sort(key=lambda u: scores[u.user_id].score, reverse=True)

        quotas = tier_quotas(size, target_ratios)
        selected: List[User] = []
        leftovers: List[User] = []
        for level in ActivityLevel:
            selected.extend(tiers[level][:quotas[level]])
            leftovers.extend(tiers[level][quotas[level]:])

        if len(selected) < size:
            leftovers.sort(key=lambda u: scores[u.user_id].score, reverse=True)
            selected.extend(leftovers[:size - len(selected)])

        counts = level_counts(scores[u.user_id].level for u in selected)
        logger.debug(
            f"Balanced {len(members)} -> {len(selected)}: "
            + ", ".join(f"{level.value}={counts[level]}" for level in ActivityLevel)
        )
        return selected

    async def optimize(
        self,
        selected: Sequence[User],
        reserve: Sequence[User],
        target_ratios: ActivityRatios = ActivityRatios(),
        max_iterations: int = 10,
        scores: Optional[Dict[str, ActivityScore]] = None,
    ) -> List[User]:
        """
        Improve a selection's balance by swapping with reserve users.

        Each iteration swaps the lowest-scored member of the most
        over-represented tier for the best reserve user of the most
        under-represented tier, keeping the swap only if balance_score
        improves. Stops early on an exact match or when no swap helps.

        Returns:
            New list of the same length as selected
        """
        current = list(selected)
        pool = list(reserve)
        if not current:
            return current

        scores = scores or await self.score_all([*current, *pool])

        def levels_of(users):
            return [scores[u.user_id].level for u in users]

        best = balance_score(levels_of(current), target_ratios)
        quotas = tier_quotas(len(current), target_ratios)

        for iteration in range(max_iterations):
            counts = level_counts(levels_of(current))
            if all(counts[level] == quotas[level] for level in ActivityLevel):
                logger.debug(f"Balance exact after {iteration} iterations")
                break

            over = max(ActivityLevel, key=lambda lv: counts[lv] - quotas[lv])
            under = min(ActivityLevel, key=lambda lv: counts[lv] - quotas[lv])

            out_candidates = [u for u in current if scores[u.user_id].level == over]
            in_candidates = [u for u in pool if scores[u.user_id].level == under]
            if not out_candidates or not in_candidates:
                break

            outgoing = min(out_candidates, key=lambda u: scores[u.user_id].score)
            incoming = max(in_candidates, key=lambda u: scores[u.user_id].score)

            trial = [incoming if u is outgoing else u for u in current]
            trial_score = balance_score(levels_of(trial), target_ratios)
            if trial_score <= best:
                break

            current = trial
            best = trial_score
            pool.remove(incoming)
            pool.append(outgoing)

        return current

    async def activity_statistics(
        self,
        members: Sequence[User],
        target_ratios: ActivityRatios = ActivityRatios(),
    ) -> ActivityStatistics:
        """Tier distribution, balance score and mean engagement of a set"""
        scores = await self.score_all(members)
        levels = [s.level for s in scores.values()]
        counts = level_counts(levels)
        average = sum(s.score for s in scores.values()) / len(scores) if scores else 0.0
        return ActivityStatistics(
            total=len(members),
            distribution={level.value: counts[level] for level in ActivityLevel},
            balance_score=balance_score(levels, target_ratios),
            average_score=round(average, 4),
        )
