"""
Cluster Formation
=================

Builds a fixed-size cluster (default 49) around two core users.

Pipeline (form_cluster):
  1. Validate     distinct, existing, unclustered core users whose mutual
                  resonance clears min_core_resonance
  2. Retrieve     active, unclustered, recently active candidates
                  (optional geo box around the core pair)
  3. Score        every candidate against both cores (bounded batches),
                  plus its activity and its direct contact with the cores
  4. Strategy     pick a resonance/diversity/activity blend from pool means
  5. Constrain    tag diversity caps, activity tier balance, diversity
                  replacement within tiers, then 3-5 members who already
                  interact with the core pair
  6. Admit        per-user compare-and-swap on current_cluster_id,
                  replacing candidates that were claimed concurrently
  7. Quality      sampled pairwise resonance, diversity, balance, stability
  8. Persist      save cluster, cache snapshot; roll back marks on failure

A cluster whose quality falls below the acceptance threshold is still
persisted, flagged for the caller to act on.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from itertools import combinations
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from models.domain.user import User
from models.domain.cluster import Cluster, ActivityDistribution
from repositories.filters import BoundingBox, ClusterFilter, InteractionFilter, UserFilter, UserPatch
from constellation.errors import (
    AdmissionConflictError,
    ClusterNotFoundError,
    ConstellationError,
    InsufficientPoolError,
    InsufficientResonanceError,
    TransientDataError,
    ValidationError,
)
from constellation.resonance import ResonanceCalculator
from constellation.activity import (
    ActivityClassifier,
    ActivityLevel,
    ActivityRatios,
    ActivityScore,
    balance_score,
    level_counts,
)
from constellation.diversity import TagDiversityEvaluator
from services.cache import CacheAdapter, NullCache
from utils.datetime_utils import utc_now
from utils.id_generator import generate_cluster_id

logger = logging.getLogger(__name__)

QUALITY_WEIGHTS = {
    'resonance': 0.4,
    'diversity': 0.3,
    'activity': 0.2,
    'stability': 0.1,
}
DEFAULT_STABILITY = 0.5

# Shortlist / surplus sizes relative to the number of open seats
SHORTLIST_FACTOR = 2.0
SURPLUS_FACTOR = 1.5

# Candidate-core contact: interactions at which the score saturates, the
# score above which a candidate counts as already connected, and the score
# used when the count is unavailable
INDIRECT_SATURATION = 10
INDIRECT_THRESHOLD = 0.3
INDIRECT_DEFAULT = 0.1


def cluster_cache_key(cluster_id: str) -> str:
    return f"cluster:{cluster_id}"


class SelectionStrategy(str, Enum):
    """How candidate resonance, diversity and activity are blended"""
    DIVERSITY_BOOST = "diversity_boost"
    RESONANCE_BOOST = "resonance_boost"
    ACTIVITY_BOOST = "activity_boost"
    BALANCED_PREMIUM = "balanced_premium"
    BALANCED = "balanced"


# (resonance, diversity, activity); resonance weight stays positive so the
# blend is monotonic in resonance
STRATEGY_WEIGHTS = {
    SelectionStrategy.DIVERSITY_BOOST: (0.3, 0.7, 0.0),
    SelectionStrategy.RESONANCE_BOOST: (0.8, 0.2, 0.0),
    SelectionStrategy.ACTIVITY_BOOST: (0.3, 0.1, 0.6),
    SelectionStrategy.BALANCED_PREMIUM: (0.4, 0.3, 0.3),
    SelectionStrategy.BALANCED: (0.6, 0.4, 0.0),
}


@dataclass
class FormationConfig:
    """Tunables for cluster formation"""
    cluster_size: int = 49
    min_core_resonance: float = 50.0
    ttl_days: int = 7
    candidate_active_days: int = 7
    max_candidates: int = 1000
    quality_sample_size: int = 20
    acceptance_threshold: float = 0.6
    cache_ttl: int = 3600
    geo_filter_enabled: bool = False
    geo_radius_km: float = 50.0
    activity_ratios: ActivityRatios = field(default_factory=ActivityRatios)
    balance_iterations: int = 10
    diversity_iterations: int = 10
    diversity_target: float = 0.9
    min_indirect: int = 3
    max_indirect: int = 5

    @property
    def open_seats(self) -> int:
        return self.cluster_size - 2

    @classmethod
    def from_settings(cls, settings) -> 'FormationConfig':
        return cls(
            cluster_size=settings.cluster_size,
            min_core_resonance=settings.min_core_resonance,
            ttl_days=settings.cluster_ttl_days,
            candidate_active_days=settings.candidate_active_days,
            max_candidates=settings.max_candidates,
            quality_sample_size=settings.quality_sample_size,
            acceptance_threshold=settings.quality_acceptance_threshold,
            cache_ttl=settings.cluster_cache_ttl,
            geo_filter_enabled=settings.geo_filter_enabled,
            geo_radius_km=settings.geo_radius_km,
            activity_ratios=ActivityRatios(
                high=settings.activity_ratio_high,
                medium=settings.activity_ratio_medium,
                low=settings.activity_ratio_low,
            ),
            balance_iterations=settings.balance_max_iterations,
            diversity_iterations=settings.diversity_max_iterations,
            diversity_target=settings.diversity_target,
            min_indirect=settings.min_indirect_members,
            max_indirect=settings.max_indirect_members,
        )


@dataclass
class CandidateAnalysis:
    """A candidate scored against both core users"""
    user: User
    resonance_a: float
    resonance_b: float
    avg_resonance: float
    stability: float
    diversity: float
    activity: float = 0.5
    indirect: float = 0.0
    score: float = 0.0

    @property
    def is_indirect(self) -> bool:
        """Already interacts with the core pair"""
        return self.indirect > INDIRECT_THRESHOLD


@dataclass
class ClusterQuality:
    """Post-hoc cluster quality, components in [0, 1]"""
    overall: float
    resonance: float
    diversity: float
    activity: float
    stability: float
    average_resonance: float  # 0-100, mean over sampled pairs

    def factors(self) -> Dict[str, float]:
        return {
            'resonance': self.resonance,
            'diversity': self.diversity,
            'activity': self.activity,
            'stability': self.stability,
        }


@dataclass
class GenerationCheck:
    """Whether two users could seed a cluster right now"""
    eligible: bool
    reasons: List[str] = field(default_factory=list)
    core_resonance: Optional[float] = None
    pool_size: Optional[int] = None


def candidate_diversity(candidate: User, core_a: User, core_b: User) -> float:
    """Share of the candidate's tags held by neither core user"""
    if not candidate.tags:
        return 0.0
    novel = candidate.tags - core_a.tags - core_b.tags
    return len(novel) / len(candidate.tags)


def pair_stability(scores: Sequence[float]) -> float:
    """1 / (1 + variance/100) over resonance scores (0-100 scale)"""
    if len(scores) < 2:
        return DEFAULT_STABILITY
    return 1.0 / (1.0 + float(np.var(scores)) / 100.0)


class ClusterFormationEngine:
    """
    Orchestrates candidate retrieval, scoring, constrained selection and
    persistence of clusters, plus their dissolution.
    """

    def __init__(
        self,
        user_repository,
        cluster_repository,
        resonance_calculator: ResonanceCalculator,
        activity_classifier: ActivityClassifier,
        diversity_evaluator: Optional[TagDiversityEvaluator] = None,
        resonance_repository=None,
        cache: Optional[CacheAdapter] = None,
        config: Optional[FormationConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        interaction_repository=None,
    ):
        self.user_repository = user_repository
        self.cluster_repository = cluster_repository
        self.resonance_calculator = resonance_calculator
        self.activity_classifier = activity_classifier
        self.diversity_evaluator = diversity_evaluator or TagDiversityEvaluator()
        self.resonance_repository = resonance_repository
        self.interaction_repository = (
            resonance_calculator.interaction_repository if interaction_repository is None
            else interaction_repository
        )
        self.cache = NullCache() if cache is None else cache
        self.config = config or FormationConfig()
        self.clock = clock

    # =========================================================================
    # FORMATION
    # =========================================================================

    async def form_cluster(self, user_a_id: str, user_b_id: str) -> Cluster:
        """
        Form a cluster around two core users.

        Args:
            user_a_id, user_b_id: Core user ids

        Returns:
            The persisted Cluster (exactly cluster_size members, cores first)

        Raises:
            ValidationError: identical, missing or already clustered users
            InsufficientResonanceError: core pair below min_core_resonance
            InsufficientPoolError: not enough candidates
            TransientDataError: pool retrieval or persistence failed
            AdmissionConflictError: members were claimed concurrently
        """
        now = self.clock()
        core_a, core_b = await self._load_core(user_a_id, user_b_id)

        core_resonance = await self.resonance_calculator.resonance(core_a, core_b)
        if core_resonance < self.config.min_core_resonance:
            logger.info(
                f"Core pair {core_a.user_id}/{core_b.user_id} resonance "
                f"{core_resonance:.2f} < {self.config.min_core_resonance:.2f}"
            )
            raise InsufficientResonanceError(core_resonance, self.config.min_core_resonance)

        pool = await self._retrieve_pool(core_a, core_b, now)
        required = self.config.open_seats
        if len(pool) < required:
            raise InsufficientPoolError(len(pool), required)

        logger.info(
            f"Forming cluster for {core_a.user_id}/{core_b.user_id} "
            f"(core resonance {core_resonance:.2f}, pool {len(pool)})"
        )

        activity_scores = await self.activity_classifier.score_all(pool)
        analyses = await self.analyze_candidates(core_a, core_b, pool, activity_scores)
        strategy = self.select_strategy(analyses)
        ranked = self.rank_candidates(analyses, strategy)
        logger.info(f"Selection strategy: {strategy.value}")

        selected = await self._select_members(core_a, core_b, ranked, activity_scores)

        cluster_id = generate_cluster_id()
        members, marked = await self._admit(cluster_id, core_a, core_b, selected, ranked)

        try:
            quality, distribution = await self._assess(members, activity_scores)
            cluster = Cluster(
                id=cluster_id,
                members=[m.user_id for m in members],
                core_users=(core_a.user_id, core_b.user_id),
                resonance_score=core_resonance,
                average_resonance=quality.average_resonance,
                activity_distribution=distribution,
                tag_diversity_score=quality.diversity,
                quality_score=quality.overall,
                quality_factors=quality.factors(),
                is_flagged=quality.overall < self.config.acceptance_threshold,
                created_at=now,
                ttl_days=self.config.ttl_days,
            )
            await self.cluster_repository.save(cluster)
        except Exception as e:
            await self._rollback(cluster_id, marked)
            if isinstance(e, ConstellationError):
                raise
            raise TransientDataError(f"Failed to persist cluster {cluster_id}: {e}", cause=e) from e

        await self._cache_snapshot(cluster)

        if cluster.is_flagged:
            logger.warning(
                f"Cluster {cluster.id} formed with low quality {cluster.quality_score:.3f} "
                f"(threshold {self.config.acceptance_threshold}), flagged"
            )
        else:
            logger.info(f"Cluster {cluster.id} formed, quality {cluster.quality_score:.3f}")
        return cluster

    async def _load_core(self, user_a_id: str, user_b_id: str) -> Tuple[User, User]:
        if not user_a_id or not user_b_id:
            raise ValidationError("Both core user ids are required")
        if user_a_id == user_b_id:
            raise ValidationError(f"Core users must be different, got {user_a_id} twice")

        try:
            core_a = await self.user_repository.get(user_a_id)
            core_b = await self.user_repository.get(user_b_id)
        except Exception as e:
            raise TransientDataError(f"Failed to load core users: {e}", cause=e) from e

        for user_id, user in ((user_a_id, core_a), (user_b_id, core_b)):
            if user is None:
                raise ValidationError(f"User {user_id} not found")
            if user.is_clustered:
                raise ValidationError(
                    f"User {user_id} already belongs to cluster {user.current_cluster_id}"
                )
        return core_a, core_b

    async def _retrieve_pool(self, core_a: User, core_b: User, now: datetime) -> List[User]:
        """Eligible candidates; any store failure aborts formation"""
        bounding_box = None
        if self.config.geo_filter_enabled and core_a.has_location and core_b.has_location:
            bounding_box = BoundingBox.around(
                (core_a.latitude + core_b.latitude) / 2.0,
                (core_a.longitude + core_b.longitude) / 2.0,
                self.config.geo_radius_km,
            )

        user_filter = UserFilter(
            is_active=True,
            unclustered=True,
            active_since=now - timedelta(days=self.config.candidate_active_days),
            exclude_ids=frozenset({core_a.user_id, core_b.user_id}),
            bounding_box=bounding_box,
            limit=self.config.max_candidates,
        )
        try:
            return await self.user_repository.find(user_filter)
        except Exception as e:
            raise TransientDataError(f"Candidate pool retrieval failed: {e}", cause=e) from e

    # =========================================================================
    # SCORING & SELECTION
    # =========================================================================

    async def analyze_candidates(
        self,
        core_a: User,
        core_b: User,
        pool: Sequence[User],
        activity_scores: Optional[Dict[str, ActivityScore]] = None,
    ) -> List[CandidateAnalysis]:
        """Score every candidate against both core users (pool order preserved)"""
        results_a = await self.resonance_calculator.batch_resonance(core_a, pool)
        results_b = await self.resonance_calculator.batch_resonance(core_b, pool)
        by_id_a = {r.user.user_id: r.resonance for r in results_a}
        by_id_b = {r.user.user_id: r.resonance for r in results_b}
        if activity_scores is None:
            activity_scores = await self.activity_classifier.score_all(pool)
        indirect = await self.indirect_scores(core_a, core_b, pool)

        analyses = []
        for candidate in pool:
            res_a = by_id_a[candidate.user_id]
            res_b = by_id_b[candidate.user_id]
            analyses.append(CandidateAnalysis(
                user=candidate,
                resonance_a=res_a,
                resonance_b=res_b,
                avg_resonance=(res_a + res_b) / 2.0,
                stability=pair_stability([res_a, res_b]),
                diversity=candidate_diversity(candidate, core_a, core_b),
                activity=activity_scores[candidate.user_id].score,
                indirect=indirect[candidate.user_id],
            ))
        return analyses

    async def indirect_scores(self, core_a: User, core_b: User, pool: Sequence[User]) -> Dict[str, float]:
        """
        Contact between each candidate and the core pair.

        min(interactions with either core in either direction / 10, 1).
        A candidate whose interactions cannot be counted scores 0.1.
        """
        batch_size = self.resonance_calculator.batch_size
        scores: Dict[str, float] = {}
        for start in range(0, len(pool), batch_size):
            batch = pool[start:start + batch_size]
            results = await asyncio.gather(
                *(self._indirect_score(candidate, core_a, core_b) for candidate in batch)
            )
            scores.update(zip((candidate.user_id for candidate in batch), results))
        return scores

    async def _indirect_score(self, candidate: User, core_a: User, core_b: User) -> float:
        total = 0
        try:
            for core in (core_a, core_b):
                total += await self.interaction_repository.count(
                    InteractionFilter(between=(candidate.user_id, core.user_id))
                )
        except Exception as e:
            logger.warning(f"Core contact count failed for {candidate.user_id}: {e}")
            return INDIRECT_DEFAULT
        return min(total / INDIRECT_SATURATION, 1.0)

    @staticmethod
    def select_strategy(analyses: Sequence[CandidateAnalysis]) -> SelectionStrategy:
        """
        Pick a blend from pool means, first match wins:

          resonance > 75 and diversity < 0.4                  diversity_boost
          resonance < 55 and diversity > 0.7                  resonance_boost
          activity < 0.3                                      activity_boost
          resonance > 65, diversity > 0.5 and activity > 0.4  balanced_premium
          otherwise                                           balanced
        """
        if not analyses:
            return SelectionStrategy.BALANCED
        mean_resonance = sum(a.avg_resonance for a in analyses) / len(analyses)
        mean_diversity = sum(a.diversity for a in analyses) / len(analyses)
        mean_activity = sum(a.activity for a in analyses) / len(analyses)

        if mean_resonance > 75 and mean_diversity < 0.4:
            return SelectionStrategy.DIVERSITY_BOOST
        if mean_resonance < 55 and mean_diversity > 0.7:
            return SelectionStrategy.RESONANCE_BOOST
        if mean_activity < 0.3:
            return SelectionStrategy.ACTIVITY_BOOST
        if mean_resonance > 65 and mean_diversity > 0.5 and mean_activity > 0.4:
            return SelectionStrategy.BALANCED_PREMIUM
        return SelectionStrategy.BALANCED

    @staticmethod
    def rank_candidates(
        analyses: Sequence[CandidateAnalysis],
        strategy: SelectionStrategy,
    ) -> List[CandidateAnalysis]:
        """Composite score descending, then stability; stable for ties"""
        resonance_weight, diversity_weight, activity_weight = STRATEGY_WEIGHTS[strategy]
        for analysis in analyses:
            analysis.score = (
                resonance_weight * (analysis.avg_resonance / 100.0)
                + diversity_weight * analysis.diversity
                + activity_weight * analysis.activity
            )
        return sorted(analyses, key=lambda a: (a.score, a.stability), reverse=True)

    async def _select_members(
        self,
        core_a: User,
        core_b: User,
        ranked: Sequence[CandidateAnalysis],
        activity_scores: Dict[str, ActivityScore],
    ) -> List[User]:
        """
        Diversity-capped surplus, tier balance down to the open seats,
        same-tier diversity replacement, then the core contact range.
        """
        seats = self.config.open_seats
        shortlist = [a.user for a in ranked[:max(seats, math.ceil(seats * SHORTLIST_FACTOR))]]
        surplus_size = min(len(shortlist), max(seats, math.ceil(seats * SURPLUS_FACTOR)))

        diverse = self.diversity_evaluator.apply_constraints(
            shortlist,
            surplus_size,
            seed_members=(core_a, core_b),
            cluster_size=self.config.cluster_size,
        )

        balanced = await self.activity_classifier.balance(
            diverse, self.config.activity_ratios, size=seats, scores=activity_scores
        )
        chosen = {u.user_id for u in balanced}
        reserve = [u for u in diverse if u.user_id not in chosen]
        optimized = await self.activity_classifier.optimize(
            balanced,
            reserve,
            self.config.activity_ratios,
            max_iterations=self.config.balance_iterations,
            scores=activity_scores,
        )
        selected = optimized[:seats]

        levels = {user_id: score.level for user_id, score in activity_scores.items()}
        chosen = {u.user_id for u in selected}
        selected = self.diversity_evaluator.optimize_diversity(
            selected,
            [u for u in shortlist if u.user_id not in chosen],
            seed_members=(core_a, core_b),
            max_iterations=self.config.diversity_iterations,
            target=self.config.diversity_target,
            compatible=lambda outgoing, incoming: levels[outgoing.user_id] == levels[incoming.user_id],
        )

        return self.ensure_indirect(
            selected, ranked, self.config.min_indirect, self.config.max_indirect, levels
        )

    @staticmethod
    def ensure_indirect(
        selected: Sequence[User],
        ranked: Sequence[CandidateAnalysis],
        minimum: int = 3,
        maximum: int = 5,
        levels: Optional[Mapping[str, ActivityLevel]] = None,
    ) -> List[User]:
        """
        Keep between minimum and maximum members already in contact with
        the core pair.

        Too few: the best-ranked unselected contacts replace the lowest-ranked
        members without contact. Too many: the lowest-ranked contacts make
        way for the best-ranked unselected candidates without contact. The
        member leaving is taken from the newcomer's activity tier when
        possible. Both directions stop when candidates run out.

        Returns:
            New list of the same length as selected
        """
        current = list(selected)
        by_id = {a.user.user_id: a for a in ranked}
        rank_of = {a.user.user_id: i for i, a in enumerate(ranked)}
        levels = levels or {}

        def in_contact(user: User) -> bool:
            analysis = by_id.get(user.user_id)
            return analysis is not None and analysis.is_indirect

        chosen = {u.user_id for u in current}
        outside = [a.user for a in ranked if a.user.user_id not in chosen]
        count = sum(1 for u in current if in_contact(u))

        if count < minimum:
            wanted = True
            incoming = [u for u in outside if in_contact(u)][:minimum - count]
        elif count > maximum:
            wanted = False
            incoming = [u for u in outside if not in_contact(u)][:count - maximum]
        else:
            return current

        swapped = 0
        for newcomer in incoming:
            positions = [i for i, m in enumerate(current) if in_contact(m) != wanted]
            if not positions:
                break
            same_tier = [
                i for i in positions
                if levels.get(current[i].user_id) == levels.get(newcomer.user_id)
            ]
            position = max(same_tier or positions, key=lambda i: rank_of.get(current[i].user_id, len(ranked)))
            current[position] = newcomer
            swapped += 1

        if swapped:
            logger.info(
                f"Swapped {swapped} members to keep core contacts within "
                f"{minimum}-{maximum}"
            )
        return current

    # =========================================================================
    # ADMISSION
    # =========================================================================

    async def _admit(
        self,
        cluster_id: str,
        core_a: User,
        core_b: User,
        selected: Sequence[User],
        ranked: Sequence[CandidateAnalysis],
    ) -> Tuple[List[User], List[str]]:
        """
        Mark every member via compare-and-swap.

        A candidate claimed by a concurrent formation is replaced with the
        next unmarked candidate in rank order. Losing a core user, or running
        out of replacements, rolls everything back.

        Returns:
            (final members cores first, ids marked)
        """
        selected_ids = {u.user_id for u in selected}
        replacements: Iterator[User] = (
            a.user for a in ranked if a.user.user_id not in selected_ids
        )
        members: List[User] = []
        marked: List[str] = []

        try:
            for core in (core_a, core_b):
                if not await self.user_repository.set_cluster_if_unset(core.user_id, cluster_id):
                    raise AdmissionConflictError(core.user_id, cluster_id)
                marked.append(core.user_id)
                members.append(core)

            for candidate in selected:
                admitted = candidate
                if not await self.user_repository.set_cluster_if_unset(candidate.user_id, cluster_id):
                    logger.info(f"Candidate {candidate.user_id} claimed concurrently, replacing")
                    admitted = await self._claim_replacement(cluster_id, replacements)
                    if admitted is None:
                        raise AdmissionConflictError(candidate.user_id, cluster_id)
                marked.append(admitted.user_id)
                members.append(admitted)
        except ConstellationError:
            await self._rollback(cluster_id, marked)
            raise
        except Exception as e:
            await self._rollback(cluster_id, marked)
            raise TransientDataError(f"Failed to admit members to {cluster_id}: {e}", cause=e) from e

        return members, marked

    async def _claim_replacement(self, cluster_id: str, replacements: Iterator[User]) -> Optional[User]:
        for replacement in replacements:
            if await self.user_repository.set_cluster_if_unset(replacement.user_id, cluster_id):
                return replacement
        return None

    async def _rollback(self, cluster_id: str, marked: Sequence[str]):
        """Undo membership marks; failures are logged, the original error wins"""
        for user_id in marked:
            try:
                await self.user_repository.clear_cluster_if_matches(user_id, cluster_id)
            except Exception as e:
                logger.error(
                    f"Rollback failed for user {user_id} in cluster {cluster_id}: {e}",
                    exc_info=True
                )
        if marked:
            logger.warning(f"Rolled back {len(marked)} membership marks for {cluster_id}")

    # =========================================================================
    # QUALITY
    # =========================================================================

    async def _assess(
        self,
        members: Sequence[User],
        activity_scores: Dict[str, ActivityScore],
    ) -> Tuple[ClusterQuality, ActivityDistribution]:
        missing = [m for m in members if m.user_id not in activity_scores]
        if missing:
            activity_scores = {**activity_scores, **await self.activity_classifier.score_all(missing)}
        levels = [activity_scores[m.user_id].level for m in members]
        counts = level_counts(levels)
        distribution = ActivityDistribution(
            high=counts[ActivityLevel.HIGH],
            medium=counts[ActivityLevel.MEDIUM],
            low=counts[ActivityLevel.LOW],
        )
        quality = await self.evaluate_quality(members, levels)
        return quality, distribution

    async def evaluate_quality(self, members: Sequence[User], levels: Sequence[ActivityLevel]) -> ClusterQuality:
        """
        Quality = 0.4 resonance + 0.3 diversity + 0.2 activity + 0.1 stability.

        Resonance and stability use the first quality_sample_size members
        (at most n*(n-1)/2 pairs), never the full member set.
        """
        sample = list(members[:self.config.quality_sample_size])
        pairs = list(combinations(sample, 2))

        pair_scores = await self._score_pairs(pairs)
        average_resonance = round(sum(pair_scores) / len(pair_scores), 2) if pair_scores else 0.0
        resonance_quality = average_resonance / 100.0

        diversity_quality = self.diversity_evaluator.diversity_score(members).overall
        activity_quality = balance_score(levels, self.config.activity_ratios)
        stability_quality = await self._stability(pairs)

        overall = (
            QUALITY_WEIGHTS['resonance'] * resonance_quality
            + QUALITY_WEIGHTS['diversity'] * diversity_quality
            + QUALITY_WEIGHTS['activity'] * activity_quality
            + QUALITY_WEIGHTS['stability'] * stability_quality
        )
        return ClusterQuality(
            overall=round(overall, 4),
            resonance=round(resonance_quality, 4),
            diversity=diversity_quality,
            activity=round(activity_quality, 4),
            stability=round(stability_quality, 4),
            average_resonance=average_resonance,
        )

    async def _score_pairs(self, pairs: Sequence[Tuple[User, User]]) -> List[float]:
        batch_size = self.resonance_calculator.batch_size
        scores: List[float] = []
        for start in range(0, len(pairs), batch_size):
            batch = pairs[start:start + batch_size]
            scores.extend(await asyncio.gather(
                *(self.resonance_calculator.resonance(a, b) for a, b in batch)
            ))
        return scores

    async def _stability(self, pairs: Sequence[Tuple[User, User]]) -> float:
        """Mean history stability over sampled pairs with >= 2 snapshots"""
        if self.resonance_repository is None or not pairs:
            return DEFAULT_STABILITY

        values = []
        batch_size = self.resonance_calculator.batch_size
        for start in range(0, len(pairs), batch_size):
            batch = pairs[start:start + batch_size]
            records = await asyncio.gather(
                *(self.resonance_repository.get_pair(a.user_id, b.user_id) for a, b in batch),
                return_exceptions=True,
            )
            for record in records:
                if isinstance(record, Exception):
                    logger.warning(f"Resonance history lookup failed: {record}")
                    continue
                if record is not None and len(record.history) >= 2:
                    values.append(pair_stability([s.resonance for s in record.history]))

        if not values:
            return DEFAULT_STABILITY
        return sum(values) / len(values)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        """Cluster by id, cache first"""
        key = cluster_cache_key(cluster_id)
        try:
            snapshot = await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            snapshot = None
        if snapshot is not None:
            return Cluster.from_snapshot(snapshot)

        cluster = await self.cluster_repository.get(cluster_id)
        if cluster is not None and cluster.is_active:
            await self._cache_snapshot(cluster)
        return cluster

    async def current_cluster(self, user_id: str) -> Optional[Cluster]:
        """
        The user's active cluster, or None.

        An expired cluster found here is dissolved on the spot.
        """
        user = await self.user_repository.get(user_id)
        if user is None or not user.current_cluster_id:
            return None

        cluster = await self.get_cluster(user.current_cluster_id)
        if cluster is None or not cluster.is_active:
            return None

        now = self.clock()
        if cluster.is_expired(now):
            logger.info(f"Cluster {cluster.id} expired, dissolving on lookup")
            await self.dissolve(cluster.id, now=now)
            return None
        return cluster

    async def check_generation_conditions(self, user_a_id: str, user_b_id: str) -> GenerationCheck:
        """
        Report whether two users could form a cluster now.

        Read-only: the core score is read through the cache but neither
        cached nor recorded, and no user or cluster is touched.
        """
        check = GenerationCheck(eligible=False)
        try:
            core_a, core_b = await self._load_core(user_a_id, user_b_id)
        except ConstellationError as e:
            check.reasons.append(str(e))
            return check

        check.core_resonance = await self.resonance_calculator.resonance(core_a, core_b, record=False)
        if check.core_resonance < self.config.min_core_resonance:
            check.reasons.append(
                f"core resonance {check.core_resonance:.2f} below {self.config.min_core_resonance:.2f}"
            )

        try:
            pool = await self._retrieve_pool(core_a, core_b, self.clock())
            check.pool_size = len(pool)
            if len(pool) < self.config.open_seats:
                check.reasons.append(
                    f"candidate pool {len(pool)} smaller than {self.config.open_seats}"
                )
        except TransientDataError as e:
            check.reasons.append(str(e))

        check.eligible = not check.reasons
        return check

    # =========================================================================
    # DISSOLUTION
    # =========================================================================

    async def dissolve(self, cluster_id: str, now: Optional[datetime] = None) -> bool:
        """
        Dissolve a cluster: clear members, deactivate, drop the cache entry.

        Returns:
            True if dissolved now, False if it was already dissolved

        Raises:
            ClusterNotFoundError: Unknown cluster id
            TransientDataError: Store failure
        """
        now = now or self.clock()
        try:
            cluster = await self.cluster_repository.get(cluster_id)
        except Exception as e:
            raise TransientDataError(f"Failed to load cluster {cluster_id}: {e}", cause=e) from e

        if cluster is None:
            raise ClusterNotFoundError(cluster_id)
        if not cluster.is_active:
            logger.debug(f"Cluster {cluster_id} already dissolved")
            return False

        try:
            cleared = await self.user_repository.update_many(
                UserFilter(current_cluster_id=cluster_id),
                UserPatch(current_cluster_id=None),
            )
            cluster.mark_dissolved(now)
            await self.cluster_repository.save(cluster)
        except Exception as e:
            # cluster is still active in the store; its members must stay marked
            await self._restore_marks(cluster_id, cluster.members)
            raise TransientDataError(f"Failed to dissolve cluster {cluster_id}: {e}", cause=e) from e

        try:
            await self.cache.delete(cluster_cache_key(cluster_id))
        except Exception as e:
            logger.warning(f"Cache invalidation failed for cluster {cluster_id}: {e}")

        logger.info(f"Dissolved cluster {cluster_id}, cleared {cleared} members")
        return True

    async def _restore_marks(self, cluster_id: str, member_ids: Sequence[str]):
        """Re-mark members after a failed dissolution; a user claimed since is left alone"""
        restored = 0
        for user_id in member_ids:
            try:
                if await self.user_repository.set_cluster_if_unset(user_id, cluster_id):
                    restored += 1
            except Exception as e:
                logger.error(
                    f"Failed to restore membership of {user_id} in {cluster_id}: {e}",
                    exc_info=True
                )
        if restored:
            logger.warning(f"Restored {restored} membership marks for {cluster_id} after failed dissolution")

    async def dissolve_expired(self, now: Optional[datetime] = None) -> int:
        """
        Dissolve every active cluster past its expiry.

        Returns:
            Number of clusters dissolved
        """
        now = now or self.clock()
        expired = await self.cluster_repository.find(
            ClusterFilter(is_active=True, expires_before=now)
        )
        dissolved = 0
        for cluster in expired:
            try:
                if await self.dissolve(cluster.id, now=now):
                    dissolved += 1
            except ConstellationError as e:
                logger.error(f"Failed to dissolve expired cluster {cluster.id}: {e}", exc_info=True)
        if expired:
            logger.info(f"Expiry sweep dissolved {dissolved}/{len(expired)} clusters")
        return dissolved

    async def _cache_snapshot(self, cluster: Cluster):
        try:
            await self.cache.set(cluster_cache_key(cluster.id), cluster.to_snapshot(), self.config.cache_ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for cluster {cluster.id}: {e}")
