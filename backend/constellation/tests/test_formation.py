"""
Test: Cluster Formation
=======================

End-to-end formation over in-memory stores: happy path, precondition
failures, concurrent admission, rollback, lookup, dissolution and the
members already in contact with the core pair.

Scenario data:
- Core pairs share tags and 20 days of reciprocal comments, so their
  resonance clears the formation threshold comfortably.
- Candidates are recently active and carry varied tags.
"""

import asyncio
from datetime import timedelta

import pytest

from models.domain.user import User
from repositories.memory import InMemoryClusterRepository
from constellation.errors import (
    AdmissionConflictError,
    ClusterNotFoundError,
    InsufficientPoolError,
    InsufficientResonanceError,
    TransientDataError,
    ValidationError,
)
from constellation.formation import (
    CandidateAnalysis,
    ClusterFormationEngine,
    FormationConfig,
    SelectionStrategy,
    candidate_diversity,
    cluster_cache_key,
    pair_stability,
)
from constellation.activity import ActivityLevel
from constellation.resonance import resonance_cache_key

VOCABULARY = [
    "travel", "food", "music", "movies", "reading", "sports", "photography",
    "art", "technology", "gaming", "fashion", "pets", "fitness", "yoga",
    "coffee", "tea", "wine", "cooking", "gardening", "crafts", "camping",
]


class ContendedUsers:
    """User store where some users are claimed by a rival formation right before our CAS"""

    def __init__(self, inner, contested, rival="sc_rival001"):
        self.inner = inner
        self.contested = set(contested)
        self.rival = rival

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def set_cluster_if_unset(self, user_id, cluster_id):
        if user_id in self.contested:
            await self.inner.set_cluster_if_unset(user_id, self.rival)
        return await self.inner.set_cluster_if_unset(user_id, cluster_id)


class UnreachableUsers:
    """User store whose candidate query fails"""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def find(self, user_filter):
        raise ConnectionError("user store unavailable")


class FailingClusters(InMemoryClusterRepository):
    async def save(self, cluster):
        raise ConnectionError("cluster store unavailable")


class ReadOnlyClusters:
    """Cluster store that serves reads but rejects writes"""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def save(self, cluster):
        raise ConnectionError("cluster store unavailable")


def candidate(make_user, index, **kwargs):
    tags = kwargs.pop('tags', {VOCABULARY[index % len(VOCABULARY)], VOCABULARY[(index * 7 + 3) % len(VOCABULARY)]})
    days = kwargs.pop('days_active', (0, 20, 120)[index % 3])
    return make_user(user_id=f"cand-{index:03d}", tags=tags, days_active=days, **kwargs)


@pytest.fixture
def seed(stores, make_user, conversation):
    """Factory: store a core pair (with shared history) and candidates."""

    async def _seed(core_tags=("hiking", "coffee"), candidates=60, candidate_tags=None,
                    core_ids=("core-a", "core-b"), candidate_offset=0, core_active=True):
        hours = 1 if core_active else None
        core_a = make_user(user_id=core_ids[0], tags=core_tags, days_active=60, hours_since_active=hours)
        core_b = make_user(user_id=core_ids[1], tags=core_tags, days_active=60, hours_since_active=hours)
        await stores['users'].save(core_a)
        await stores['users'].save(core_b)
        await stores['interactions'].save_many(conversation(core_a.user_id, core_b.user_id))

        pool = []
        for i in range(candidate_offset, candidate_offset + candidates):
            extra = {} if candidate_tags is None else {'tags': candidate_tags}
            user = candidate(make_user, i, **extra)
            await stores['users'].save(user)
            pool.append(user)
        return core_a, core_b, pool

    return _seed


async def cluster_ids_of(stores, user_ids):
    return {uid: (await stores['users'].get(uid)).current_cluster_id for uid in user_ids}


# =============================================================================
# HAPPY PATH
# =============================================================================

class TestFormCluster:
    """form_cluster() success paths"""

    @pytest.mark.asyncio
    async def test_forms_full_cluster(self, build_engine, seed, stores, cache, now):
        core_a, core_b, pool = await seed()
        engine = build_engine()

        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert cluster.size == 49
        assert cluster.members[:2] == [core_a.user_id, core_b.user_id]
        assert len(set(cluster.members)) == 49
        assert cluster.core_users == (core_a.user_id, core_b.user_id)
        assert cluster.resonance_score >= 50
        assert cluster.activity_distribution.total == 49
        assert cluster.expires_at == now + timedelta(days=7)
        assert cluster.is_active
        assert 0.0 <= cluster.quality_score <= 1.0
        assert set(cluster.quality_factors) == {'resonance', 'diversity', 'activity', 'stability'}
        assert 0.0 < cluster.average_resonance <= 100.0

        memberships = await cluster_ids_of(stores, cluster.members)
        assert set(memberships.values()) == {cluster.id}

        saved = await stores['clusters'].get(cluster.id)
        assert saved.members == cluster.members
        assert await cache.get(cluster_cache_key(cluster.id)) == cluster.to_snapshot()

    @pytest.mark.asyncio
    async def test_unselected_candidates_stay_free(self, build_engine, seed, stores):
        core_a, core_b, pool = await seed()
        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        leftovers = [u.user_id for u in pool if u.user_id not in cluster.members]
        assert len(leftovers) == len(pool) - 47
        assert set((await cluster_ids_of(stores, leftovers)).values()) == {None}

    @pytest.mark.asyncio
    async def test_identical_tags_flagged_but_persisted(self, build_engine, seed, stores):
        core_a, core_b, _ = await seed(
            core_tags=("hiking", "camping"), candidates=47, candidate_tags={"hiking"}
        )

        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        assert cluster.tag_diversity_score < 0.3
        assert cluster.quality_score < 0.6
        assert cluster.is_flagged
        assert await stores['clusters'].get(cluster.id) is not None

    @pytest.mark.asyncio
    async def test_stale_and_inactive_users_excluded(self, build_engine, seed, stores, make_user):
        core_a, core_b, _ = await seed(candidates=50)
        stale = make_user(user_id="stale", tags={"art"}, hours_since_active=24 * 10)
        inactive = make_user(user_id="inactive", tags={"art"}, is_active=False)
        await stores['users'].save(stale)
        await stores['users'].save(inactive)

        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        assert "stale" not in cluster.members
        assert "inactive" not in cluster.members

    @pytest.mark.asyncio
    async def test_smaller_cluster_size(self, build_engine, seed):
        core_a, core_b, _ = await seed(candidates=20)
        engine = build_engine(config=FormationConfig(cluster_size=10))

        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert cluster.size == 10


# =============================================================================
# PRECONDITIONS
# =============================================================================

class TestPreconditions:
    """Validation and threshold failures persist nothing"""

    @pytest.mark.asyncio
    async def test_same_user_twice(self, build_engine, seed):
        core_a, _, _ = await seed(candidates=0)
        with pytest.raises(ValidationError):
            await build_engine().form_cluster(core_a.user_id, core_a.user_id)

    @pytest.mark.asyncio
    async def test_unknown_user(self, build_engine, seed):
        core_a, _, _ = await seed(candidates=0)
        with pytest.raises(ValidationError):
            await build_engine().form_cluster(core_a.user_id, "nobody")

    @pytest.mark.asyncio
    async def test_already_clustered_core(self, build_engine, seed, stores):
        core_a, core_b, _ = await seed(candidates=0)
        await stores['users'].set_cluster_if_unset(core_b.user_id, "sc_existing")
        with pytest.raises(ValidationError):
            await build_engine().form_cluster(core_a.user_id, core_b.user_id)

    @pytest.mark.asyncio
    async def test_low_core_resonance(self, build_engine, stores, make_user):
        core_a = make_user(user_id="loner-a", tags={"hiking"})
        core_b = make_user(user_id="loner-b", tags={"gaming"})
        await stores['users'].save(core_a)
        await stores['users'].save(core_b)
        for i in range(60):
            await stores['users'].save(candidate(make_user, i))

        with pytest.raises(InsufficientResonanceError) as exc_info:
            await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        assert exc_info.value.score < 50
        assert len(stores['clusters']) == 0
        assert (await stores['users'].get(core_a.user_id)).current_cluster_id is None

    @pytest.mark.asyncio
    async def test_insufficient_pool(self, build_engine, seed, stores):
        core_a, core_b, pool = await seed(candidates=10)

        with pytest.raises(InsufficientPoolError) as exc_info:
            await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        assert exc_info.value.available == 10
        assert exc_info.value.required == 47
        assert len(stores['clusters']) == 0
        ids = [core_a.user_id, core_b.user_id] + [u.user_id for u in pool]
        assert set((await cluster_ids_of(stores, ids)).values()) == {None}

    @pytest.mark.asyncio
    async def test_geo_filter_shrinks_pool(self, build_engine, stores, make_user, conversation):
        core_a = make_user(user_id="geo-a", tags={"hiking"}, latitude=47.37, longitude=8.54)
        core_b = make_user(user_id="geo-b", tags={"hiking"}, latitude=47.38, longitude=8.55)
        await stores['users'].save(core_a)
        await stores['users'].save(core_b)
        await stores['interactions'].save_many(conversation(core_a.user_id, core_b.user_id))
        for i in range(60):
            # far away (roughly Lisbon)
            await stores['users'].save(candidate(make_user, i, latitude=38.72, longitude=-9.14))

        engine = build_engine(config=FormationConfig(geo_filter_enabled=True, geo_radius_km=50))

        with pytest.raises(InsufficientPoolError):
            await engine.form_cluster(core_a.user_id, core_b.user_id)

    @pytest.mark.asyncio
    async def test_pool_retrieval_failure(self, build_engine, seed, stores):
        core_a, core_b, _ = await seed()
        engine = build_engine(user_repository=UnreachableUsers(stores['users']))

        with pytest.raises(TransientDataError):
            await engine.form_cluster(core_a.user_id, core_b.user_id)


# =============================================================================
# ADMISSION
# =============================================================================

class TestAdmission:
    """Compare-and-swap marking, replacement and rollback"""

    @pytest.mark.asyncio
    async def test_claimed_candidates_replaced(self, build_engine, seed, stores):
        core_a, core_b, pool = await seed()
        contested = [u.user_id for u in pool[:10]]
        engine = build_engine(user_repository=ContendedUsers(stores['users'], contested))

        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert cluster.size == 49
        assert not set(contested) & set(cluster.members)
        assert set((await cluster_ids_of(stores, contested)).values()) == {"sc_rival001"}
        assert set((await cluster_ids_of(stores, cluster.members)).values()) == {cluster.id}

    @pytest.mark.asyncio
    async def test_lost_core_rolls_back(self, build_engine, seed, stores):
        core_a, core_b, pool = await seed()
        engine = build_engine(user_repository=ContendedUsers(stores['users'], [core_b.user_id]))

        with pytest.raises(AdmissionConflictError):
            await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert (await stores['users'].get(core_a.user_id)).current_cluster_id is None
        assert (await stores['users'].get(core_b.user_id)).current_cluster_id == "sc_rival001"
        assert len(stores['clusters']) == 0

    @pytest.mark.asyncio
    async def test_exhausted_reserve_rolls_back(self, build_engine, seed, stores):
        core_a, core_b, pool = await seed(candidates=47)
        contested = [pool[5].user_id]
        engine = build_engine(user_repository=ContendedUsers(stores['users'], contested))

        with pytest.raises(AdmissionConflictError):
            await engine.form_cluster(core_a.user_id, core_b.user_id)

        others = [core_a.user_id, core_b.user_id] + [u.user_id for u in pool if u.user_id not in contested]
        assert set((await cluster_ids_of(stores, others)).values()) == {None}
        assert len(stores['clusters']) == 0

    @pytest.mark.asyncio
    async def test_save_failure_rolls_back(self, build_engine, seed, stores, cache):
        core_a, core_b, pool = await seed()
        engine = build_engine(cluster_repository=FailingClusters())

        with pytest.raises(TransientDataError):
            await engine.form_cluster(core_a.user_id, core_b.user_id)

        ids = [core_a.user_id, core_b.user_id] + [u.user_id for u in pool]
        assert set((await cluster_ids_of(stores, ids)).values()) == {None}

    @pytest.mark.asyncio
    async def test_concurrent_formations_are_disjoint(self, build_engine, seed, stores):
        # cores are not recently active, so neither pair shows up in the other's pool
        a1, b1, _ = await seed(core_ids=("first-a", "first-b"), candidates=60, core_active=False)
        a2, b2, _ = await seed(core_ids=("second-a", "second-b"), candidates=60,
                               candidate_offset=60, core_active=False)
        engine = build_engine()

        first, second = await asyncio.gather(
            engine.form_cluster(a1.user_id, b1.user_id),
            engine.form_cluster(a2.user_id, b2.user_id),
        )

        assert first.size == second.size == 49
        assert not set(first.members) & set(second.members)
        for cluster in (first, second):
            memberships = await cluster_ids_of(stores, cluster.members)
            assert set(memberships.values()) == {cluster.id}


# =============================================================================
# LOOKUP
# =============================================================================

class TestLookup:
    """get_cluster(), current_cluster(), check_generation_conditions()"""

    @pytest.mark.asyncio
    async def test_get_cluster(self, build_engine, seed):
        core_a, core_b, _ = await seed()
        engine = build_engine()
        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        found = await engine.get_cluster(cluster.id)

        assert found.id == cluster.id
        assert found.members == cluster.members
        assert await engine.get_cluster("sc_missing0") is None

    @pytest.mark.asyncio
    async def test_current_cluster(self, build_engine, seed):
        core_a, core_b, pool = await seed()
        engine = build_engine()
        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert (await engine.current_cluster(core_b.user_id)).id == cluster.id
        outsider = next(u for u in pool if u.user_id not in cluster.members)
        assert await engine.current_cluster(outsider.user_id) is None
        assert await engine.current_cluster("nobody") is None

    @pytest.mark.asyncio
    async def test_expired_cluster_dissolved_on_lookup(self, build_engine, seed, stores, now):
        core_a, core_b, _ = await seed()
        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)
        later = build_engine(at=now + timedelta(days=7, seconds=1))

        assert await later.current_cluster(core_a.user_id) is None

        saved = await stores['clusters'].get(cluster.id)
        assert not saved.is_active
        assert (await stores['users'].get(core_a.user_id)).current_cluster_id is None

    @pytest.mark.asyncio
    async def test_generation_conditions_eligible(self, build_engine, seed):
        core_a, core_b, _ = await seed()

        check = await build_engine().check_generation_conditions(core_a.user_id, core_b.user_id)

        assert check.eligible
        assert check.reasons == []
        assert check.pool_size == 60
        assert check.core_resonance >= 50

    @pytest.mark.asyncio
    async def test_generation_conditions_leave_no_trace(self, build_engine, seed, stores, cache):
        core_a, core_b, _ = await seed()
        engine = build_engine()

        check = await engine.check_generation_conditions(core_a.user_id, core_b.user_id)
        await engine.resonance_calculator.history_writer.flush()

        assert check.eligible
        assert await cache.get(resonance_cache_key(core_a.user_id, core_b.user_id)) is None
        assert await stores['resonance'].get_pair(core_a.user_id, core_b.user_id) is None
        assert len(stores['clusters']) == 0

        # the recorded score matches the one reported
        assert await engine.resonance_calculator.resonance(core_a, core_b) == check.core_resonance

    @pytest.mark.asyncio
    async def test_generation_conditions_report_reasons(self, build_engine, seed):
        core_a, core_b, _ = await seed(candidates=5)

        check = await build_engine().check_generation_conditions(core_a.user_id, core_b.user_id)

        assert not check.eligible
        assert check.pool_size == 5
        assert any("pool" in reason for reason in check.reasons)

    @pytest.mark.asyncio
    async def test_generation_conditions_invalid_pair(self, build_engine, seed):
        core_a, _, _ = await seed(candidates=0)

        check = await build_engine().check_generation_conditions(core_a.user_id, core_a.user_id)

        assert not check.eligible
        assert check.core_resonance is None


# =============================================================================
# DISSOLUTION
# =============================================================================

class TestDissolution:
    """dissolve() and dissolve_expired()"""

    @pytest.mark.asyncio
    async def test_dissolve_is_idempotent(self, build_engine, seed, stores, cache, now):
        core_a, core_b, _ = await seed()
        engine = build_engine()
        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert await engine.dissolve(cluster.id) is True
        assert await engine.dissolve(cluster.id) is False

        saved = await stores['clusters'].get(cluster.id)
        assert not saved.is_active
        assert saved.dissolved_at == now
        assert set((await cluster_ids_of(stores, cluster.members)).values()) == {None}
        assert await cache.get(cluster_cache_key(cluster.id)) is None

    @pytest.mark.asyncio
    async def test_failed_save_keeps_members_marked(self, build_engine, seed, stores):
        core_a, core_b, _ = await seed()
        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)
        engine = build_engine(cluster_repository=ReadOnlyClusters(stores['clusters']))

        with pytest.raises(TransientDataError):
            await engine.dissolve(cluster.id)

        assert (await stores['clusters'].get(cluster.id)).is_active
        assert set((await cluster_ids_of(stores, cluster.members)).values()) == {cluster.id}

        assert await build_engine().dissolve(cluster.id) is True
        assert set((await cluster_ids_of(stores, cluster.members)).values()) == {None}

    @pytest.mark.asyncio
    async def test_dissolve_unknown_cluster(self, build_engine):
        with pytest.raises(ClusterNotFoundError):
            await build_engine().dissolve("sc_missing0")

    @pytest.mark.asyncio
    async def test_dissolve_expired(self, build_engine, seed, stores, now):
        core_a, core_b, _ = await seed()
        engine = build_engine()
        cluster = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert await engine.dissolve_expired(now=now + timedelta(days=6)) == 0
        assert await engine.dissolve_expired(now=now + timedelta(days=8)) == 1
        assert await engine.dissolve_expired(now=now + timedelta(days=9)) == 0
        assert not (await stores['clusters'].get(cluster.id)).is_active

    @pytest.mark.asyncio
    async def test_members_can_join_again_after_dissolution(self, build_engine, seed):
        core_a, core_b, _ = await seed()
        engine = build_engine()
        first = await engine.form_cluster(core_a.user_id, core_b.user_id)
        await engine.dissolve(first.id)

        second = await engine.form_cluster(core_a.user_id, core_b.user_id)

        assert second.id != first.id
        assert second.size == 49


# =============================================================================
# SCORING HELPERS
# =============================================================================

class TestSelectionHelpers:
    """Strategy choice, ranking and per-candidate metrics"""

    def analysis(self, avg_resonance, diversity, stability=1.0, user_id=None, activity=0.5):
        return CandidateAnalysis(
            user=User(user_id=user_id or f"u-{avg_resonance}-{diversity}"),
            resonance_a=avg_resonance,
            resonance_b=avg_resonance,
            avg_resonance=avg_resonance,
            stability=stability,
            diversity=diversity,
            activity=activity,
        )

    def test_strategy_diversity_boost(self):
        analyses = [self.analysis(80, 0.2), self.analysis(85, 0.3)]
        assert ClusterFormationEngine.select_strategy(analyses) == SelectionStrategy.DIVERSITY_BOOST

    def test_strategy_resonance_boost(self):
        analyses = [self.analysis(40, 0.8), self.analysis(50, 0.9)]
        assert ClusterFormationEngine.select_strategy(analyses) == SelectionStrategy.RESONANCE_BOOST

    def test_strategy_balanced(self):
        assert ClusterFormationEngine.select_strategy([self.analysis(60, 0.5)]) == SelectionStrategy.BALANCED
        assert ClusterFormationEngine.select_strategy([]) == SelectionStrategy.BALANCED

    def test_strategy_activity_boost(self):
        analyses = [self.analysis(60, 0.5, activity=0.2), self.analysis(62, 0.6, activity=0.25)]
        assert ClusterFormationEngine.select_strategy(analyses) == SelectionStrategy.ACTIVITY_BOOST

    def test_strategy_resonance_rules_come_first(self):
        analyses = [self.analysis(80, 0.2, activity=0.1)]
        assert ClusterFormationEngine.select_strategy(analyses) == SelectionStrategy.DIVERSITY_BOOST

    def test_strategy_balanced_premium(self):
        strong = [self.analysis(70, 0.6, activity=0.6)]
        assert ClusterFormationEngine.select_strategy(strong) == SelectionStrategy.BALANCED_PREMIUM
        lukewarm = [self.analysis(70, 0.6, activity=0.35)]
        assert ClusterFormationEngine.select_strategy(lukewarm) == SelectionStrategy.BALANCED

    def test_activity_boost_ranks_busy_users_first(self):
        busy = self.analysis(60, 0.5, activity=0.9, user_id="busy")
        quiet = self.analysis(70, 0.5, activity=0.1, user_id="quiet")

        boosted = ClusterFormationEngine.rank_candidates([quiet, busy], SelectionStrategy.ACTIVITY_BOOST)
        balanced = ClusterFormationEngine.rank_candidates([quiet, busy], SelectionStrategy.BALANCED)

        assert [a.user.user_id for a in boosted] == ["busy", "quiet"]
        assert [a.user.user_id for a in balanced] == ["quiet", "busy"]

    def test_ranking_monotonic_in_resonance(self):
        low, high = self.analysis(40, 0.5, user_id="low"), self.analysis(90, 0.5, user_id="high")
        ranked = ClusterFormationEngine.rank_candidates([low, high], SelectionStrategy.BALANCED)
        assert [a.user.user_id for a in ranked] == ["high", "low"]

    def test_ranking_ties_broken_by_stability(self):
        shaky = self.analysis(60, 0.5, stability=0.2, user_id="shaky")
        steady = self.analysis(60, 0.5, stability=0.9, user_id="steady")
        ranked = ClusterFormationEngine.rank_candidates([shaky, steady], SelectionStrategy.BALANCED)
        assert ranked[0].user.user_id == "steady"

    def test_candidate_diversity(self):
        core_a = User(user_id="a", tags={"hiking"})
        core_b = User(user_id="b", tags={"coffee"})
        assert candidate_diversity(User(user_id="c", tags={"hiking", "art"}), core_a, core_b) == 0.5
        assert candidate_diversity(User(user_id="d", tags=()), core_a, core_b) == 0.0

    def test_pair_stability(self):
        assert pair_stability([70, 70]) == pytest.approx(1.0)
        # variance of (60, 80) is 100
        assert pair_stability([60, 80]) == pytest.approx(0.5)
        assert pair_stability([70]) == 0.5


# =============================================================================
# CORE CONTACTS
# =============================================================================

class FailingCounts:
    """Interaction store whose counts fail"""

    async def count(self, interaction_filter):
        raise ConnectionError("interaction store unavailable")


def contact(user_id, indirect):
    return CandidateAnalysis(
        user=User(user_id=user_id),
        resonance_a=60.0,
        resonance_b=60.0,
        avg_resonance=60.0,
        stability=1.0,
        diversity=0.5,
        indirect=indirect,
    )


class TestCoreContacts:
    """Candidates already interacting with the core pair"""

    @pytest.mark.asyncio
    async def test_indirect_scores(self, build_engine, seed, stores, conversation):
        core_a, core_b, pool = await seed(candidates=4)
        await stores['interactions'].save_many(conversation("cand-000", core_a.user_id, days=4))
        await stores['interactions'].save_many(conversation("cand-001", core_a.user_id, days=2))
        await stores['interactions'].save_many(conversation(core_b.user_id, "cand-001", days=3))
        await stores['interactions'].save_many(conversation("cand-002", core_b.user_id, days=15))

        scores = await build_engine().indirect_scores(core_a, core_b, pool)

        assert scores["cand-000"] == pytest.approx(0.4)
        assert scores["cand-001"] == pytest.approx(0.5)
        assert scores["cand-002"] == 1.0
        assert scores["cand-003"] == 0.0

    @pytest.mark.asyncio
    async def test_unavailable_counts_score_default(self, build_engine, seed):
        core_a, core_b, pool = await seed(candidates=3)

        engine = build_engine(interaction_repository=FailingCounts())
        scores = await engine.indirect_scores(core_a, core_b, pool)

        assert scores == {u.user_id: 0.1 for u in pool}

    def test_too_few_contacts_swapped_in(self):
        selected = [contact(f"s{i}", 0.0) for i in range(5)]
        outside = [contact(f"c{i}", 0.5) for i in range(4)]
        ranked = [*selected, *outside]

        result = ClusterFormationEngine.ensure_indirect([a.user for a in selected], ranked, 3, 5)

        assert [u.user_id for u in result] == ["s0", "s1", "c2", "c1", "c0"]

    def test_too_many_contacts_swapped_out(self):
        selected = [contact(f"c{i}", 0.8) for i in range(7)]
        outside = [contact(f"s{i}", 0.0) for i in range(3)]
        ranked = [*selected, *outside]

        result = ClusterFormationEngine.ensure_indirect([a.user for a in selected], ranked, 3, 5)

        assert [u.user_id for u in result] == ["c0", "c1", "c2", "c3", "c4", "s1", "s0"]

    def test_within_range_unchanged(self):
        selected = [contact("c0", 0.5), contact("c1", 0.5), contact("c2", 0.5), contact("s0", 0.1)]
        ranked = [*selected, contact("c3", 0.9)]

        result = ClusterFormationEngine.ensure_indirect([a.user for a in selected], ranked, 3, 5)

        assert [u.user_id for u in result] == ["c0", "c1", "c2", "s0"]

    def test_scarce_contacts_all_taken(self):
        selected = [contact(f"s{i}", 0.0) for i in range(5)]
        ranked = [*selected, contact("c0", 0.4)]

        result = ClusterFormationEngine.ensure_indirect([a.user for a in selected], ranked, 3, 5)

        assert "c0" in {u.user_id for u in result}
        assert len(result) == 5

    def test_same_tier_member_leaves_first(self):
        selected = [contact("high", 0.0), contact("low", 0.0)]
        ranked = [*selected, contact("c0", 0.6)]
        levels = {"high": ActivityLevel.HIGH, "low": ActivityLevel.LOW, "c0": ActivityLevel.HIGH}

        result = ClusterFormationEngine.ensure_indirect([a.user for a in selected], ranked, 1, 5, levels)

        assert [u.user_id for u in result] == ["c0", "low"]

    @pytest.mark.asyncio
    async def test_cluster_holds_core_contacts(self, build_engine, seed, stores, conversation):
        core_a, core_b, pool = await seed()
        contacts = [f"cand-{i:03d}" for i in (5, 17, 29, 41, 50, 58)]
        for i, user_id in enumerate(contacts):
            core = core_a if i % 2 == 0 else core_b
            await stores['interactions'].save_many(conversation(user_id, core.user_id, days=4))

        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        held = set(cluster.members) & set(contacts)
        assert 3 <= len(held) <= 5
        assert cluster.size == 49

    @pytest.mark.asyncio
    async def test_scarce_contacts_all_admitted(self, build_engine, seed, stores, conversation):
        core_a, core_b, pool = await seed()
        contacts = ["cand-010", "cand-040"]
        for user_id in contacts:
            await stores['interactions'].save_many(conversation(user_id, core_a.user_id, days=4))

        cluster = await build_engine().form_cluster(core_a.user_id, core_b.user_id)

        assert set(contacts) <= set(cluster.members)
