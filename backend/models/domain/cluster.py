"""
Cluster domain model
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from utils.id_generator import generate_cluster_id, validate_id
from utils.datetime_utils import ensure_utc, utc_now

CLUSTER_SIZE = 49
DEFAULT_TTL_DAYS = 7


@dataclass
class ActivityDistribution:
    """Member counts per activity tier"""
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.high + self.medium + self.low

    def to_dict(self) -> Dict[str, int]:
        return {'high': self.high, 'medium': self.medium, 'low': self.low}


@dataclass
class Cluster:
    """
    Cluster domain model - storage-agnostic representation

    Storage: PostgreSQL (clusters table)

    A fixed-size group formed around two core users. Lifecycle:
    active -> dissolved (terminal). While active, every member's
    current_cluster_id equals this cluster's id.

    ID format: sc_xxxxxxxx (11 chars)
    """
    id: str
    members: List[str]  # core users first
    core_users: Tuple[str, str]

    resonance_score: float = 0.0  # core pair
    average_resonance: float = 0.0  # sampled mean pairwise resonance
    activity_distribution: ActivityDistribution = field(default_factory=ActivityDistribution)
    tag_diversity_score: float = 0.0

    # Post-hoc quality
    quality_score: float = 0.0
    quality_factors: Dict[str, float] = field(default_factory=dict)
    is_flagged: bool = False

    # Lifecycle
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    dissolved_at: Optional[datetime] = None

    ttl_days: int = DEFAULT_TTL_DAYS

    def __post_init__(self):
        """Validate and generate ID if needed"""
        if not self.id:
            self.id = generate_cluster_id()
        elif not validate_id(self.id, 'cluster'):
            raise ValueError(f"Invalid cluster id: {self.id}")

        self.core_users = tuple(self.core_users)
        if len(self.core_users) != 2 or self.core_users[0] == self.core_users[1]:
            raise ValueError(f"Cluster needs two distinct core users, got {self.core_users}")
        for core in self.core_users:
            if core not in self.members:
                raise ValueError(f"Core user {core} missing from members")
        if len(set(self.members)) != len(self.members):
            raise ValueError("Cluster members must be unique")

        self.created_at = ensure_utc(self.created_at) or utc_now()
        self.expires_at = ensure_utc(self.expires_at) or (
            self.created_at + timedelta(days=self.ttl_days)
        )
        self.dissolved_at = ensure_utc(self.dissolved_at)

        if isinstance(self.activity_distribution, dict):
            self.activity_distribution = ActivityDistribution(**self.activity_distribution)

    @property
    def size(self) -> int:
        return len(self.members)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the cluster has passed its expiry time"""
        now = ensure_utc(now) or utc_now()
        return now >= self.expires_at

    def mark_dissolved(self, now: Optional[datetime] = None) -> None:
        """
        Transition to the terminal dissolved state.

        Raises:
            ValueError: If the cluster is already dissolved
        """
        if not self.is_active:
            raise ValueError(f"Cluster {self.id} is already dissolved")
        self.is_active = False
        self.dissolved_at = ensure_utc(now) or utc_now()

    def to_snapshot(self) -> dict:
        """JSON-friendly representation (cache snapshot)"""
        return {
            'id': self.id,
            'members': list(self.members),
            'core_users': list(self.core_users),
            'resonance_score': self.resonance_score,
            'average_resonance': self.average_resonance,
            'activity_distribution': self.activity_distribution.to_dict(),
            'tag_diversity_score': self.tag_diversity_score,
            'quality_score': self.quality_score,
            'quality_factors': dict(self.quality_factors),
            'is_flagged': self.is_flagged,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'is_active': self.is_active,
            'dissolved_at': self.dissolved_at.isoformat() if self.dissolved_at else None,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> 'Cluster':
        return cls(
            id=data['id'],
            members=list(data['members']),
            core_users=tuple(data['core_users']),
            resonance_score=data.get('resonance_score', 0.0),
            average_resonance=data.get('average_resonance', 0.0),
            activity_distribution=ActivityDistribution(**(data.get('activity_distribution') or {})),
            tag_diversity_score=data.get('tag_diversity_score', 0.0),
            quality_score=data.get('quality_score', 0.0),
            quality_factors=dict(data.get('quality_factors') or {}),
            is_flagged=data.get('is_flagged', False),
            created_at=ensure_utc(data.get('created_at')),
            expires_at=ensure_utc(data.get('expires_at')),
            is_active=data.get('is_active', True),
            dissolved_at=ensure_utc(data.get('dissolved_at')),
        )
