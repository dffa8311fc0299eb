"""
Database Configuration
======================

Centralized connection and wiring configuration for workers and services.
Handles PostgreSQL and Redis connections from Settings, and assembles the
formation engine on top of either PostgreSQL or in-memory repositories.
"""
import logging
import random
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class PostgresConfig:
    """PostgreSQL connection configuration."""
    host: str
    port: int
    user: str
    password: str
    database: str
    min_size: int = 2
    max_size: int = 10

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> 'PostgresConfig':
        """Create config from application settings (env / .env)."""
        settings = settings or get_settings()
        return cls(
            host=settings.postgres_host,
            port=settings.postgres_port,
            user=settings.postgres_user,
            password=settings.postgres_password,
            database=settings.postgres_db,
            min_size=settings.postgres_pool_min,
            max_size=settings.postgres_pool_max,
        )

    def to_asyncpg_kwargs(self) -> dict:
        """Convert to asyncpg.create_pool kwargs."""
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'min_size': self.min_size,
            'max_size': self.max_size,
        }


@dataclass
class RedisConfig:
    """Redis connection configuration."""
    url: str

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> 'RedisConfig':
        settings = settings or get_settings()
        if not settings.redis_url:
            raise ValueError("REDIS_URL is required for the redis cache backend")
        return cls(url=settings.redis_url)


@dataclass
class Repositories:
    """The four stores the engine needs, sharing one interface per kind."""
    users: object
    interactions: object
    clusters: object
    resonance: object


def postgres_repositories(db_pool) -> Repositories:
    from repositories import (
        UserRepository,
        InteractionRepository,
        ClusterRepository,
        ResonanceRepository,
    )
    return Repositories(
        users=UserRepository(db_pool),
        interactions=InteractionRepository(db_pool),
        clusters=ClusterRepository(db_pool),
        resonance=ResonanceRepository(db_pool),
    )


def memory_repositories() -> Repositories:
    from repositories import (
        InMemoryUserRepository,
        InMemoryInteractionRepository,
        InMemoryClusterRepository,
        InMemoryResonanceRepository,
    )
    return Repositories(
        users=InMemoryUserRepository(),
        interactions=InMemoryInteractionRepository(),
        clusters=InMemoryClusterRepository(),
        resonance=InMemoryResonanceRepository(),
    )


async def create_postgres_pool(settings: Optional[Settings] = None, ensure: bool = True):
    """Create PostgreSQL connection pool (and schema) from settings."""
    import asyncpg
    from repositories.schema import ensure_schema

    config = PostgresConfig.from_settings(settings)
    pool = await asyncpg.create_pool(**config.to_asyncpg_kwargs())
    if ensure:
        await ensure_schema(pool)
    logger.info(f"Connected to PostgreSQL at {config.host}:{config.port}/{config.database}")
    return pool


async def create_cache(settings: Optional[Settings] = None):
    """Create the cache adapter selected by settings.cache_backend."""
    from services.cache import InMemoryCache, NullCache, RedisCache

    settings = settings or get_settings()
    if settings.cache_backend == "redis":
        cache = RedisCache(RedisConfig.from_settings(settings).url, default_ttl=settings.resonance_cache_ttl)
        await cache.connect()
        return cache
    if settings.cache_backend == "none":
        return NullCache()
    return InMemoryCache(default_ttl=settings.resonance_cache_ttl)


def create_formation_engine(
    repositories: Repositories,
    settings: Optional[Settings] = None,
    cache=None,
    clock=None,
):
    """
    Wire the formation engine from settings.

    Args:
        repositories: PostgreSQL or in-memory stores
        settings: Defaults to get_settings()
        cache: CacheAdapter (defaults to NullCache)
        clock: Optional time source shared by every component

    Returns:
        ClusterFormationEngine (its calculator's history writer is reachable
        as engine.resonance_calculator.history_writer)
    """
    from constellation.activity import ActivityClassifier
    from constellation.diversity import DiversityConstraints, TagDiversityEvaluator
    from constellation.formation import ClusterFormationEngine, FormationConfig
    from constellation.resonance import ResonanceCalculator
    from constellation.weights import DynamicWeightAdjuster
    from services.cache import NullCache
    from services.history_writer import ResonanceHistoryWriter
    from utils.datetime_utils import utc_now

    settings = settings or get_settings()
    cache = NullCache() if cache is None else cache
    clock = clock or utc_now

    history_writer = ResonanceHistoryWriter(
        repositories.resonance,
        history_limit=settings.resonance_history_limit,
    )
    calculator = ResonanceCalculator(
        repositories.interactions,
        resonance_repository=repositories.resonance,
        cache=cache,
        weight_adjuster=DynamicWeightAdjuster(repositories.interactions, clock=clock),
        history_writer=history_writer,
        rng=random.Random(settings.random_seed),
        clock=clock,
        cache_ttl=settings.resonance_cache_ttl,
        batch_size=settings.resonance_batch_size,
        half_life_days=settings.interaction_half_life_days,
    )
    evaluator = TagDiversityEvaluator(DiversityConstraints(
        max_same_tag_ratio=settings.max_same_tag_ratio,
        max_category_ratio=settings.max_category_ratio,
        min_unique_tags=settings.min_unique_tags,
    ))
    return ClusterFormationEngine(
        user_repository=repositories.users,
        cluster_repository=repositories.clusters,
        resonance_calculator=calculator,
        activity_classifier=ActivityClassifier(repositories.interactions, clock=clock),
        diversity_evaluator=evaluator,
        resonance_repository=repositories.resonance,
        cache=cache,
        config=FormationConfig.from_settings(settings),
        clock=clock,
        interaction_repository=repositories.interactions,
    )
