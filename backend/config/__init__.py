"""
Configuration module for settings, database and service connections.
"""
from .settings import Settings, get_settings
from .database import (
    PostgresConfig,
    RedisConfig,
    Repositories,
    postgres_repositories,
    memory_repositories,
    create_postgres_pool,
    create_cache,
    create_formation_engine,
)

__all__ = [
    'Settings',
    'get_settings',
    'PostgresConfig',
    'RedisConfig',
    'Repositories',
    'postgres_repositories',
    'memory_repositories',
    'create_postgres_pool',
    'create_cache',
    'create_formation_engine',
]
