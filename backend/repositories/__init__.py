"""
Repository Pattern - Storage abstraction layer

Repositories hide storage details from the engine. Consumers work with
domain models, not storage-specific types.

Every repository exists twice with the same interface:
- PostgreSQL (asyncpg): UserRepository, InteractionRepository,
  ClusterRepository, ResonanceRepository
- In-memory: InMemory*Repository (tests, local experiments)
"""
from .filters import (
    UNSET,
    BoundingBox,
    UserFilter,
    UserPatch,
    InteractionFilter,
    ClusterFilter,
)
from .user_repository import UserRepository
from .interaction_repository import InteractionRepository
from .cluster_repository import ClusterRepository
from .resonance_repository import ResonanceRepository
from .memory import (
    InMemoryUserRepository,
    InMemoryInteractionRepository,
    InMemoryClusterRepository,
    InMemoryResonanceRepository,
)
from .schema import SCHEMA_SQL, ensure_schema

__all__ = [
    'UNSET',
    'BoundingBox',
    'UserFilter',
    'UserPatch',
    'InteractionFilter',
    'ClusterFilter',
    'UserRepository',
    'InteractionRepository',
    'ClusterRepository',
    'ResonanceRepository',
    'InMemoryUserRepository',
    'InMemoryInteractionRepository',
    'InMemoryClusterRepository',
    'InMemoryResonanceRepository',
    'SCHEMA_SQL',
    'ensure_schema',
]
