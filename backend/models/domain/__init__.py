"""
Domain Models - Storage-agnostic data structures

These models represent the core domain entities independent of storage layer.
The engine and workers operate on these models, not raw database rows.

Architecture:
- Domain models are pure Python objects (dataclasses)
- Storage details (PostgreSQL, in-memory) are abstracted via repositories
- Business logic operates on these models, not database rows

Models:
- User: interest profile, engagement, current cluster membership
- Interaction: immutable user action (source of truth for interaction scores)
- ResonanceRecord: pairwise resonance with bounded history
- Cluster: 49-member group around two core users
"""

from .preferences import PreferenceMap
from .user import User, normalize_tags
from .interaction import (
    Interaction,
    ActionType,
    TargetType,
    ACTION_WEIGHTS,
    CONTENT_CREATION_ACTIONS,
)
from .resonance_record import (
    ResonanceRecord,
    ResonanceSnapshot,
    pair_key,
    ordered_pair,
)
from .cluster import Cluster, ActivityDistribution, CLUSTER_SIZE

__all__ = [
    'PreferenceMap',
    'User',
    'normalize_tags',
    'Interaction',
    'ActionType',
    'TargetType',
    'ACTION_WEIGHTS',
    'CONTENT_CREATION_ACTIONS',
    'ResonanceRecord',
    'ResonanceSnapshot',
    'pair_key',
    'ordered_pair',
    'Cluster',
    'ActivityDistribution',
    'CLUSTER_SIZE',
]
