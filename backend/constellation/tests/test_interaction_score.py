"""
Test: Interaction Score
=======================

Decay, reciprocity, frequency and recency sub-scores, and the pattern
summary the weight adjuster relies on.
"""

from datetime import timedelta

import pytest

from models.domain.interaction import ActionType, Interaction
from constellation.interaction_score import (
    NO_HISTORY_SCORE,
    analyze_pattern,
    base_score,
    decay,
    frequency_score,
    reciprocity_score,
    recency_score,
    score_interactions,
)


def ix(actor, target, now, days_ago=0, action=ActionType.LIKE):
    return Interaction(
        actor_id=actor,
        target_id=target,
        action_type=action,
        created_at=now - timedelta(days=days_ago),
    )


class TestDecay:
    """Exponential half-life decay."""

    def test_no_age_no_decay(self):
        assert decay(0) == 1.0

    def test_half_life(self):
        assert decay(30, half_life_days=30) == pytest.approx(0.5)
        assert decay(60, half_life_days=30) == pytest.approx(0.25)

    def test_older_weighs_less(self, now):
        fresh = base_score([ix("a", "b", now, 0, ActionType.COMMENT)], now)
        stale = base_score([ix("a", "b", now, 45, ActionType.COMMENT)], now)
        assert fresh > stale


class TestSubScores:
    """Individual sub-scores."""

    def test_reciprocity_one_sided_is_zero(self, now):
        history = [ix("a", "b", now), ix("a", "b", now, 1)]
        assert reciprocity_score(history, "a", "b") == 0.0

    def test_reciprocity_balanced_is_one(self, now):
        history = [ix("a", "b", now), ix("b", "a", now, 1)]
        assert reciprocity_score(history, "a", "b") == 1.0

    def test_reciprocity_ratio(self, now):
        history = [ix("a", "b", now), ix("a", "b", now, 1), ix("b", "a", now, 2)]
        assert reciprocity_score(history, "a", "b") == pytest.approx(0.5)

    def test_frequency_needs_two_interactions(self, now):
        assert frequency_score([ix("a", "b", now)]) == pytest.approx(0.1)

    def test_frequent_beats_sparse(self, now):
        daily = [ix("a", "b", now, d) for d in range(5)]
        weekly = [ix("a", "b", now, d * 7) for d in range(5)]
        assert frequency_score(daily) > frequency_score(weekly)

    def test_recency_uses_latest(self, now):
        history = [ix("a", "b", now, 20), ix("a", "b", now, 0)]
        assert recency_score(history, now) == pytest.approx(1.0)


class TestScoreInteractions:
    """Combined interaction score."""

    def test_no_history(self, now):
        breakdown = score_interactions([], "a", "b", now)
        assert breakdown.score == NO_HISTORY_SCORE
        assert breakdown.count == 0

    def test_rich_history_scores_high(self, now, conversation):
        breakdown = score_interactions(conversation("a", "b"), "a", "b", now)
        assert breakdown.score > 0.8
        assert breakdown.reciprocity == 1.0
        assert breakdown.count == 20

    def test_range(self, now, conversation):
        history = conversation("a", "b", days=200)
        breakdown = score_interactions(history, "a", "b", now)
        assert 0.0 <= breakdown.score <= 1.0
        assert breakdown.base <= 1.0


class TestPattern:
    """analyze_pattern() flags."""

    def test_empty(self):
        pattern = analyze_pattern([], "a", "b")
        assert not pattern.has_history
        assert not pattern.reciprocal

    def test_reciprocal_diverse_sustained(self, now):
        history = [
            ix("a", "b", now, 0, ActionType.LIKE),
            ix("b", "a", now, 4, ActionType.COMMENT),
            ix("a", "b", now, 10, ActionType.SHARE),
        ]
        pattern = analyze_pattern(history, "a", "b")
        assert pattern.has_history
        assert pattern.reciprocal
        assert pattern.diverse
        assert pattern.sustained

    def test_one_sided_burst(self, now):
        history = [ix("a", "b", now, 0), ix("a", "b", now, 1)]
        pattern = analyze_pattern(history, "a", "b")
        assert not pattern.reciprocal
        assert not pattern.diverse
        assert not pattern.sustained
