"""
Test: Tag Diversity
===================

Diversity scoring, cap-aware admission, replacement and constraint validation.
"""

import pytest

from constellation.diversity import (
    DiversityConstraints,
    TagDiversityEvaluator,
    count_tags,
    evenness,
)


@pytest.fixture
def evaluator():
    return TagDiversityEvaluator()


class TestDiversityScore:
    """diversity_score()"""

    def test_empty_set(self, evaluator):
        assert evaluator.diversity_score([]).overall == 0.0

    def test_identical_tags_score_low(self, evaluator, make_user):
        members = [make_user(tags={"hiking"}) for _ in range(49)]
        assert evaluator.diversity_score(members).overall < 0.3

    def test_varied_tags_score_high(self, evaluator, make_user):
        vocabulary = ["travel", "music", "reading", "fitness", "photography",
                      "coffee", "hiking", "gaming", "pets", "art"]
        members = [make_user(tags={vocabulary[i % 10], vocabulary[(i + 3) % 10]}) for i in range(20)]
        score = evaluator.diversity_score(members)
        assert score.tag_count == 1.0
        assert score.category_coverage == 1.0
        assert score.overall > 0.6

    def test_unique_tags_never_reduce_tag_count(self, evaluator, make_user):
        members = [make_user(tags={"hiking"})]
        previous = evaluator.diversity_score(members).tag_count
        for tag in ["coffee", "art", "music", "yoga", "tea", "wine", "pets"]:
            members.append(make_user(tags={tag}))
            current = evaluator.diversity_score(members).tag_count
            assert current >= previous
            previous = current

    def test_components_in_range(self, evaluator, make_user):
        members = [make_user(tags={"hiking", "camping"}), make_user(tags={"gaming"}), make_user(tags=())]
        score = evaluator.diversity_score(members)
        for value in (score.overall, score.tag_count, score.category_coverage,
                      score.tag_distribution, score.category_balance):
            assert 0.0 <= value <= 1.0

    def test_evenness(self):
        assert evenness([], 5) == 0.0
        assert evenness([3, 3, 3], 5) == pytest.approx(1.0)
        assert evenness([10, 10], 5) == 0.0


class TestApplyConstraints:
    """apply_constraints()"""

    def test_returns_requested_count(self, evaluator, make_user):
        candidates = [make_user(tags={"hiking"}) for _ in range(30)]
        selected = evaluator.apply_constraints(candidates, 20)
        assert len(selected) == 20
        assert len({u.user_id for u in selected}) == 20

    def test_never_more_than_candidates(self, evaluator, make_user):
        candidates = [make_user(tags={"art"}) for _ in range(3)]
        assert len(evaluator.apply_constraints(candidates, 10)) == 3

    def test_zero_requested(self, evaluator, make_user):
        assert evaluator.apply_constraints([make_user(tags={"art"})], 0) == []

    def test_caps_respected_when_pool_allows(self, make_user):
        constraints = DiversityConstraints(max_same_tag_ratio=0.4, max_category_ratio=1.0)
        evaluator = TagDiversityEvaluator(constraints)
        candidates = (
            [make_user(tags={"hiking"}) for _ in range(10)]
            + [make_user(tags={"art"}) for _ in range(10)]
            + [make_user(tags={"music"}) for _ in range(10)]
        )

        selected = evaluator.apply_constraints(candidates, 10)

        counts = count_tags(selected)
        assert len(selected) == 10
        assert max(counts.values()) <= constraints.tag_cap(10)

    def test_backfill_ignores_caps(self, evaluator, make_user):
        candidates = [make_user(tags={"hiking"}) for _ in range(10)]
        selected = evaluator.apply_constraints(candidates, 10)
        assert len(selected) == 10

    def test_seed_members_count_toward_caps(self, make_user):
        constraints = DiversityConstraints(max_same_tag_ratio=0.4, max_category_ratio=1.0)
        evaluator = TagDiversityEvaluator(constraints)
        seeds = [make_user(tags={"hiking"}) for _ in range(2)]
        candidates = (
            [make_user(tags={"hiking"}) for _ in range(3)]
            + [make_user(tags={tag}) for tag in ("art", "music", "pets")]
        )

        selected = evaluator.apply_constraints(candidates, 3, seed_members=seeds, cluster_size=5)

        # cap for 5 is 2, already used up by the seeds
        assert all("hiking" not in u.tags for u in selected)

    def test_prefers_scarce_tags(self, evaluator, make_user):
        seed = make_user(tags={"hiking"})
        common = [make_user(tags={"hiking"}) for _ in range(5)]
        rare = make_user(tags={"pets"})
        selected = evaluator.apply_constraints(common + [rare], 2, seed_members=[seed])
        assert rare.user_id in {u.user_id for u in selected}


class TestOptimizeDiversity:
    """optimize_diversity() and member_contribution()"""

    @pytest.fixture
    def flat(self):
        """Evaluator with uniform tag weights and no categories"""
        return TagDiversityEvaluator(tag_weights={}, tag_to_categories={})

    def test_shared_tag_contributes_less(self, flat, make_user):
        members = [make_user(tags={"hiking"}), make_user(tags={"hiking"}), make_user(tags={"music"})]
        tag_counts = count_tags(members)

        shared = flat.member_contribution(members[0], tag_counts, {})
        unique = flat.member_contribution(members[2], tag_counts, {})

        assert unique > shared

    def test_replacement_raises_score(self, flat, make_user):
        members = [make_user(tags={"hiking"}) for _ in range(6)]
        reserve = [make_user(tags={tag}) for tag in ("music", "art", "coffee", "gaming", "pets", "travel")]

        optimized = flat.optimize_diversity(members, reserve)

        assert len(optimized) == len(members)
        assert len({u.user_id for u in optimized}) == len(members)
        assert flat.diversity_score(optimized).overall > flat.diversity_score(members).overall
        assert {u.user_id for u in optimized} & {u.user_id for u in reserve}

    def test_no_gain_keeps_selection(self, flat, make_user):
        members = [make_user(tags={"hiking"}) for _ in range(4)]
        reserve = [make_user(tags={"hiking"}) for _ in range(4)]

        optimized = flat.optimize_diversity(members, reserve)

        assert [u.user_id for u in optimized] == [u.user_id for u in members]

    def test_target_reached_stops(self, flat, make_user):
        members = [make_user(tags={"hiking"}) for _ in range(4)]
        reserve = [make_user(tags={"music"})]

        optimized = flat.optimize_diversity(members, reserve, target=0.0)

        assert [u.user_id for u in optimized] == [u.user_id for u in members]

    def test_seed_members_never_returned(self, flat, make_user):
        seeds = [make_user(tags={"art"}), make_user(tags={"art"})]
        members = [make_user(tags={"hiking"}) for _ in range(4)]
        reserve = [make_user(tags={tag}) for tag in ("music", "coffee")]

        optimized = flat.optimize_diversity(members, reserve, seed_members=seeds)

        assert len(optimized) == 4
        assert not {u.user_id for u in optimized} & {u.user_id for u in seeds}

    def test_incompatible_reserve_skipped(self, flat, make_user):
        members = [make_user(tags={"hiking"}) for _ in range(4)]
        allowed = make_user(user_id="ok-1", tags={"music"})
        blocked = [make_user(user_id=f"no-{i}", tags={tag}) for i, tag in enumerate(("art", "pets", "tea"))]

        optimized = flat.optimize_diversity(
            members,
            [*blocked, allowed],
            compatible=lambda outgoing, incoming: incoming.user_id.startswith("ok"),
        )

        ids = {u.user_id for u in optimized}
        assert "ok-1" in ids
        assert not any(user_id.startswith("no-") for user_id in ids)


class TestValidation:
    """validate() and tag_statistics()"""

    def test_empty_invalid(self, evaluator):
        report = evaluator.validate([])
        assert not report.valid

    def test_concentrated_set_flags_violations(self, evaluator, make_user):
        members = [make_user(tags={"hiking"}) for _ in range(10)]
        report = evaluator.validate(members)
        assert not report.valid
        assert any("hiking" in v for v in report.violations)
        assert any("unique tags" in v for v in report.violations)

    def test_tag_statistics(self, evaluator, make_user):
        members = [make_user(tags={"hiking", "coffee"}), make_user(tags={"hiking"})]
        stats = evaluator.tag_statistics(members)
        assert stats.unique_tags == 2
        assert stats.top_tags[0] == ("hiking", 2)
        assert stats.category_counts["outdoors"] == 2
