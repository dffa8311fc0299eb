"""
Tag Diversity
=============

Scores how well a member set avoids concentrating on a few interests, and
enforces per-tag / per-category share caps during selection.

diversity_score() combines four components:

    overall = 0.3 * tag_count + 0.3 * category_coverage
            + 0.2 * tag_distribution + 0.2 * category_balance

  tag_count          unique tags vs a minimum target (min_unique_tags)
  category_coverage  covered share of known categories vs min coverage
  tag_distribution   evenness of per-tag counts, penalized above the
                     per-tag cap (max_same_tag_ratio of N)
  category_balance   evenness of per-category counts, penalized above the
                     per-category cap (max_category_ratio of N)

apply_constraints() admits candidates greedily by diversity contribution.
Caps are soft: if the pool runs out, the remainder is back-filled
regardless of caps, so diversity never blocks formation on its own.

optimize_diversity() then hill-climbs an existing selection: the member
contributing least is swapped for the reserve user that raises the overall
score most, until the score reaches its target or no swap helps.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from models.domain.user import User
from constellation.similarity import TAG_TO_CATEGORIES, TOTAL_CATEGORIES, tag_categories, tag_weight

logger = logging.getLogger(__name__)

COMPONENT_WEIGHTS = {
    'tag_count': 0.3,
    'category_coverage': 0.3,
    'tag_distribution': 0.2,
    'category_balance': 0.2,
}


@dataclass(frozen=True)
class DiversityConstraints:
    """Caps and targets for a cluster's tag mix"""
    max_same_tag_ratio: float = 0.4
    max_category_ratio: float = 0.6
    min_unique_tags: int = 10
    min_category_coverage: float = 0.3
    max_tags_per_user: int = 8

    def tag_cap(self, size: int) -> int:
        return max(1, math.floor(size * self.max_same_tag_ratio))

    def category_cap(self, size: int) -> int:
        return max(1, math.floor(size * self.max_category_ratio))


@dataclass
class DiversityScore:
    """Diversity of a member set, all components in [0, 1]"""
    overall: float = 0.0
    tag_count: float = 0.0
    category_coverage: float = 0.0
    tag_distribution: float = 0.0
    category_balance: float = 0.0


@dataclass
class DiversityReport:
    """Constraint check result"""
    valid: bool
    violations: List[str] = field(default_factory=list)
    score: DiversityScore = field(default_factory=DiversityScore)


@dataclass
class TagStatistics:
    """Tag and category frequencies of a member set"""
    unique_tags: int
    top_tags: List[Tuple[str, int]]
    category_counts: Dict[str, int]


def count_tags(members: Sequence[User]) -> Counter:
    counts: Counter = Counter()
    for member in members:
        counts.update(member.tags)
    return counts


def count_categories(
    members: Sequence[User],
    tag_to_categories: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> Counter:
    """Members per category (a member counts once per category)"""
    counts: Counter = Counter()
    for member in members:
        counts.update(tag_categories(member.tags, tag_to_categories))
    return counts


def evenness(counts: Sequence[int], cap: int) -> float:
    """
    max(0, 1 - variance/mean - over_concentration)

    over_concentration = sum(max(0, count - cap)) / cap
    """
    if not counts:
        return 0.0
    values = np.asarray(counts, dtype=float)
    mean = float(values.mean())
    if mean <= 0:
        return 0.0
    uniformity = 1.0 - float(values.var()) / mean
    over = float(np.clip(values - cap, 0, None).sum()) / cap
    return max(0.0, min(1.0, uniformity - over))


class TagDiversityEvaluator:
    """Diversity scoring and cap-aware selection"""

    def __init__(
        self,
        constraints: DiversityConstraints = DiversityConstraints(),
        tag_weights: Optional[Mapping[str, float]] = None,
        tag_to_categories: Optional[Mapping[str, FrozenSet[str]]] = None,
        total_categories: Optional[int] = None,
    ):
        self.constraints = constraints
        self.tag_weights = tag_weights
        self.tag_to_categories = TAG_TO_CATEGORIES if tag_to_categories is None else tag_to_categories
        if total_categories is None:
            total_categories = (
                TOTAL_CATEGORIES if tag_to_categories is None
                else len({c for cats in tag_to_categories.values() for c in cats})
            )
        self.total_categories = max(1, total_categories)

    # =========================================================================
    # SCORING
    # =========================================================================

    def diversity_score(self, members: Sequence[User]) -> DiversityScore:
        """
        Diversity of a member set.

        Returns:
            DiversityScore (all zeros for an empty set)
        """
        if not members:
            return DiversityScore()

        size = len(members)
        tag_counts = count_tags(members)
        category_counts = count_categories(members, self.tag_to_categories)

        tag_count = min(len(tag_counts) / self.constraints.min_unique_tags, 1.0)
        coverage_ratio = len(category_counts) / self.total_categories
        category_coverage = min(coverage_ratio / self.constraints.min_category_coverage, 1.0)
        tag_distribution = evenness(list(tag_counts.values()), self.constraints.tag_cap(size))
        category_balance = evenness(list(category_counts.values()), self.constraints.category_cap(size))

        components = {
            'tag_count': tag_count,
            'category_coverage': category_coverage,
            'tag_distribution': tag_distribution,
            'category_balance': category_balance,
        }
        overall = sum(COMPONENT_WEIGHTS[name] * value for name, value in components.items())

        return DiversityScore(overall=round(overall, 4), **components)

    def diversity_contribution(
        self,
        user: User,
        tag_counts: Mapping[str, int],
        category_counts: Mapping[str, int],
    ) -> float:
        """
        Value of adding a user to a set with the given counts.

        Scarce tags and categories earn more; tag-rich profiles earn a
        bounded bonus.
        """
        tag_part = sum(
            tag_weight(tag, self.tag_weights) / (1 + tag_counts.get(tag, 0))
            for tag in user.tags
        )
        category_part = sum(
            1.0 / (1 + category_counts.get(category, 0))
            for category in tag_categories(user.tags, self.tag_to_categories)
        )
        breadth = min(len(user.tags) / self.constraints.max_tags_per_user, 1.0)
        return tag_part + category_part + breadth

    def member_contribution(
        self,
        member: User,
        tag_counts: Mapping[str, int],
        category_counts: Mapping[str, int],
    ) -> float:
        """Contribution of a member to a set whose counts already include it"""
        other_tags = Counter(tag_counts)
        other_tags.subtract(member.tags)
        other_categories = Counter(category_counts)
        other_categories.subtract(tag_categories(member.tags, self.tag_to_categories))
        return self.diversity_contribution(member, other_tags, other_categories)

    # =========================================================================
    # SELECTION
    # =========================================================================

    def apply_constraints(
        self,
        candidates: Sequence[User],
        n: int,
        seed_members: Sequence[User] = (),
        cluster_size: Optional[int] = None,
    ) -> List[User]:
        """
        Greedy cap-aware selection of n candidates.

        At each step the remaining candidate with the highest contribution
        (given the counts so far, seeded with seed_members) is admitted unless
        it would push a tag or category above its cap. If fewer than n pass,
        the rest is back-filled by contribution regardless of caps.

        Args:
            candidates: Ordered candidates (order breaks ties)
            n: How many to admit
            seed_members: Already-fixed members (e.g. core users), counted but not returned
            cluster_size: Size the caps are computed against (default n + len(seed_members))

        Returns:
            min(n, len(candidates)) users in admission order
        """
        n = min(n, len(candidates))
        if n <= 0:
            return []

        size = cluster_size or (n + len(seed_members))
        tag_cap = self.constraints.tag_cap(size)
        category_cap = self.constraints.category_cap(size)

        tag_counts = count_tags(seed_members)
        category_counts = count_categories(seed_members, self.tag_to_categories)
        categories_of = {
            c.user_id: tag_categories(c.tags, self.tag_to_categories) for c in candidates
        }

        remaining = list(candidates)
        admitted: List[User] = []
        rejected: List[User] = []

        while remaining and len(admitted) < n:
            best_index = max(
                range(len(remaining)),
                key=lambda i: (
                    self.diversity_contribution(remaining[i], tag_counts, category_counts),
                    -i,
                ),
            )
            candidate = remaining.pop(best_index)
            categories = categories_of[candidate.user_id]

            over_tag = any(tag_counts[t] + 1 > tag_cap for t in candidate.tags)
            over_category = any(category_counts[c] + 1 > category_cap for c in categories)
            if over_tag or over_category:
                rejected.append(candidate)
                continue

            admitted.append(candidate)
            tag_counts.update(candidate.tags)
            category_counts.update(categories)

        if len(admitted) < n:
            logger.info(
                f"Diversity caps admitted {len(admitted)}/{n}, back-filling "
                f"{n - len(admitted)} from {len(rejected)} capped candidates"
            )
            while rejected and len(admitted) < n:
                best_index = max(
                    range(len(rejected)),
                    key=lambda i: (
                        self.diversity_contribution(rejected[i], tag_counts, category_counts),
                        -i,
                    ),
                )
                candidate = rejected.pop(best_index)
                admitted.append(candidate)
                tag_counts.update(candidate.tags)
                category_counts.update(categories_of[candidate.user_id])

        return admitted

    def optimize_diversity(
        self,
        members: Sequence[User],
        reserve: Sequence[User],
        seed_members: Sequence[User] = (),
        max_iterations: int = 10,
        target: float = 0.9,
        compatible: Optional[Callable[[User, User], bool]] = None,
    ) -> List[User]:
        """
        Raise a selection's diversity by replacing members with reserve users.

        Each iteration takes the member contributing least to the whole set
        and tries every allowed reserve user in its place. The best trial is
        kept only if it raises the overall score. Stops once the score
        reaches target, or when no replacement helps.

        Args:
            members: Current selection (replaceable)
            reserve: Users that may come in
            seed_members: Fixed members, scored with the set but never replaced
            max_iterations: Upper bound on replacements
            target: Overall score at which to stop
            compatible: compatible(outgoing, incoming) restricts replacements

        Returns:
            New list of the same length as members
        """
        current = list(members)
        pool = list(reserve)
        if not current or not pool:
            return current

        seeds = list(seed_members)
        best = self.diversity_score([*seeds, *current]).overall

        for iteration in range(max_iterations):
            if best >= target:
                logger.debug(f"Diversity target {target} reached after {iteration} replacements")
                break

            whole = [*seeds, *current]
            tag_counts = count_tags(whole)
            category_counts = count_categories(whole, self.tag_to_categories)
            out_index = min(
                range(len(current)),
                key=lambda i: self.member_contribution(current[i], tag_counts, category_counts),
            )
            outgoing = current[out_index]

            options = [u for u in pool if compatible is None or compatible(outgoing, u)]
            if not options:
                break

            trials = [
                self.diversity_score([*seeds, *current[:out_index], u, *current[out_index + 1:]]).overall
                for u in options
            ]
            best_index = max(range(len(options)), key=lambda i: (trials[i], -i))
            if trials[best_index] <= best:
                break

            incoming = options[best_index]
            current[out_index] = incoming
            best = trials[best_index]
            pool.remove(incoming)
            pool.append(outgoing)
            logger.debug(f"Replaced {outgoing.user_id} with {incoming.user_id}, diversity {best:.4f}")

        return current

    # =========================================================================
    # REPORTING
    # =========================================================================

    def validate(self, members: Sequence[User]) -> DiversityReport:
        """Check a member set against the constraints"""
        score = self.diversity_score(members)
        if not members:
            return DiversityReport(valid=False, violations=["empty member set"], score=score)

        size = len(members)
        tag_counts = count_tags(members)
        category_counts = count_categories(members, self.tag_to_categories)
        violations = []

        if len(tag_counts) < self.constraints.min_unique_tags:
            violations.append(
                f"only {len(tag_counts)} unique tags (minimum {self.constraints.min_unique_tags})"
            )
        coverage = len(category_counts) / self.total_categories
        if coverage < self.constraints.min_category_coverage:
            violations.append(
                f"category coverage {coverage:.2f} below {self.constraints.min_category_coverage:.2f}"
            )
        tag_cap = self.constraints.tag_cap(size)
        for tag, count in sorted(tag_counts.items()):
            if count > tag_cap:
                violations.append(f"tag '{tag}' held by {count} members (cap {tag_cap})")
        category_cap = self.constraints.category_cap(size)
        for category, count in sorted(category_counts.items()):
            if count > category_cap:
                violations.append(f"category '{category}' held by {count} members (cap {category_cap})")

        return DiversityReport(valid=not violations, violations=violations, score=score)

    def tag_statistics(self, members: Sequence[User], top: int = 10) -> TagStatistics:
        """Most common tags and per-category member counts"""
        tag_counts = count_tags(members)
        category_counts = count_categories(members, self.tag_to_categories)
        top_tags = sorted(tag_counts.items(), key=lambda item: (-item[1], item[0]))[:top]
        return TagStatistics(
            unique_tags=len(tag_counts),
            top_tags=top_tags,
            category_counts=dict(sorted(category_counts.items())),
        )
