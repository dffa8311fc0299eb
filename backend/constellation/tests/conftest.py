"""
Pytest configuration for constellation tests.

Everything runs against the in-memory repositories with a fixed clock and
a seeded RNG, so scores are reproducible.
"""

import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from models.domain.user import User
from models.domain.interaction import ActionType, Interaction
from repositories.memory import (
    InMemoryUserRepository,
    InMemoryInteractionRepository,
    InMemoryClusterRepository,
    InMemoryResonanceRepository,
)
from services.cache import InMemoryCache
from services.history_writer import ResonanceHistoryWriter
from constellation.resonance import ResonanceCalculator
from constellation.activity import ActivityClassifier
from constellation.diversity import TagDiversityEvaluator
from constellation.formation import ClusterFormationEngine, FormationConfig


# Wednesday afternoon in spring
NOW = datetime(2026, 3, 4, 14, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest with asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test."
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def make_user():
    """Factory: users active a couple of hours before NOW by default."""
    counter = {'n': 0}

    def _make(user_id=None, tags=(), days_active=30, hours_since_active=2, **kwargs):
        counter['n'] += 1
        last_active = None if hours_since_active is None else NOW - timedelta(hours=hours_since_active)
        return User(
            user_id=user_id or f"user-{counter['n']:03d}",
            tags=tags,
            days_active=days_active,
            last_active_at=kwargs.pop('last_active_at', last_active),
            **kwargs,
        )

    return _make


@pytest.fixture
def conversation():
    """Factory: one comment per day, alternating direction, newest at NOW."""

    def _make(user_a_id, user_b_id, days=20, action_type=ActionType.COMMENT):
        interactions = []
        for day in range(days):
            actor, target = (user_a_id, user_b_id) if day % 2 == 0 else (user_b_id, user_a_id)
            interactions.append(Interaction(
                actor_id=actor,
                target_id=target,
                action_type=action_type,
                created_at=NOW - timedelta(days=day),
            ))
        return interactions

    return _make


@pytest.fixture
def stores():
    """Fresh in-memory repositories."""
    return {
        'users': InMemoryUserRepository(),
        'interactions': InMemoryInteractionRepository(),
        'clusters': InMemoryClusterRepository(),
        'resonance': InMemoryResonanceRepository(),
    }


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def calculator(stores, cache, rng, clock):
    return ResonanceCalculator(
        stores['interactions'],
        resonance_repository=stores['resonance'],
        cache=cache,
        rng=rng,
        clock=clock,
    )


@pytest_asyncio.fixture
async def build_engine(stores, cache, clock):
    """Factory: formation engine over the shared stores, with optional overrides."""
    writers = []

    def _build(config=None, user_repository=None, cluster_repository=None, seed=42, at=None,
               interaction_repository=None):
        engine_clock = clock if at is None else (lambda: at)
        writer = ResonanceHistoryWriter(stores['resonance'])
        writers.append(writer)
        calculator = ResonanceCalculator(
            stores['interactions'],
            resonance_repository=stores['resonance'],
            cache=cache,
            history_writer=writer,
            rng=random.Random(seed),
            clock=engine_clock,
        )
        return ClusterFormationEngine(
            user_repository=stores['users'] if user_repository is None else user_repository,
            cluster_repository=stores['clusters'] if cluster_repository is None else cluster_repository,
            resonance_calculator=calculator,
            activity_classifier=ActivityClassifier(stores['interactions'], clock=engine_clock),
            diversity_evaluator=TagDiversityEvaluator(),
            resonance_repository=stores['resonance'],
            cache=cache,
            config=config or FormationConfig(),
            clock=engine_clock,
            interaction_repository=interaction_repository,
        )

    yield _build

    for writer in writers:
        await writer.close()
