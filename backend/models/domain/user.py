"""
User domain model
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, Optional

from models.domain.preferences import PreferenceMap
from utils.id_generator import generate_user_id


def normalize_tags(tags: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Strip, deduplicate and drop empty tags"""
    if not tags:
        return frozenset()
    if isinstance(tags, str):
        tags = [tags]
    return frozenset(t.strip() for t in tags if isinstance(t, str) and t.strip())


@dataclass
class User:
    """
    User domain model - storage-agnostic representation

    Storage: PostgreSQL (users table)

    Note: Users keep UUID format (not short IDs like clusters/interactions)
    This maintains compatibility with the account system that owns users.

    Invariant: a user belongs to at most one active cluster at a time
    (current_cluster_id is only ever set via compare-and-swap).
    """
    user_id: str  # UUID format (not short ID)

    # Interest profile
    tags: FrozenSet[str] = frozenset()
    content_preferences: PreferenceMap = field(default_factory=PreferenceMap)

    # Engagement
    days_active: int = 0
    last_active_at: Optional[datetime] = None
    is_active: bool = True

    # Cluster membership
    current_cluster_id: Optional[str] = None  # sc_xxxxxxxx

    # Optional location for geo prefiltering
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Timestamps
    created_at: Optional[datetime] = None

    # Additional metadata
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        """Generate UUID if not provided, normalize tags and preferences"""
        if not self.user_id:
            self.user_id = generate_user_id()

        self.tags = normalize_tags(self.tags)
        self.content_preferences = PreferenceMap.coerce(self.content_preferences)

        if self.days_active is None or self.days_active < 0:
            raise ValueError(f"days_active must be >= 0, got {self.days_active}")
        self.days_active = int(self.days_active)

        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be set together")

    @property
    def is_clustered(self) -> bool:
        """Check if user is currently in a cluster"""
        return self.current_cluster_id is not None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
