"""
Query filters and patches shared by all repository implementations

Filters are plain dataclasses: the PostgreSQL repositories translate them to
WHERE clauses, the in-memory repositories evaluate matches() directly.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple

from models.domain.user import User
from models.domain.interaction import ActionType, Interaction
from models.domain.cluster import Cluster
from utils.datetime_utils import ensure_utc

KM_PER_DEGREE = 111.0


class _Unset:
    """Sentinel for patch fields that should be left alone"""

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class BoundingBox:
    """Latitude/longitude box used for geo prefiltering"""
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def around(cls, latitude: float, longitude: float, radius_km: float) -> 'BoundingBox':
        """Square box of +-radius_km around a point (1 degree ~ 111 km)"""
        delta = radius_km / KM_PER_DEGREE
        return cls(
            min_lat=latitude - delta,
            max_lat=latitude + delta,
            min_lng=longitude - delta,
            max_lng=longitude + delta,
        )

    def contains(self, latitude: Optional[float], longitude: Optional[float]) -> bool:
        if latitude is None or longitude is None:
            return False
        return (self.min_lat <= latitude <= self.max_lat
                and self.min_lng <= longitude <= self.max_lng)


def _as_frozenset(values: Optional[Iterable[str]]) -> Optional[FrozenSet[str]]:
    if values is None:
        return None
    return frozenset(values)


@dataclass(frozen=True)
class UserFilter:
    """
    User selection criteria (all set criteria must hold)

    Results are returned in a stable order so that formation is
    deterministic for a given store state.
    """
    user_ids: Optional[FrozenSet[str]] = None
    exclude_ids: FrozenSet[str] = frozenset()
    is_active: Optional[bool] = None
    unclustered: Optional[bool] = None
    current_cluster_id: Optional[str] = None
    active_since: Optional[datetime] = None
    bounding_box: Optional[BoundingBox] = None
    limit: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'user_ids', _as_frozenset(self.user_ids))
        object.__setattr__(self, 'exclude_ids', frozenset(self.exclude_ids or ()))
        object.__setattr__(self, 'active_since', ensure_utc(self.active_since))

    def matches(self, user: User) -> bool:
        if self.user_ids is not None and user.user_id not in self.user_ids:
            return False
        if user.user_id in self.exclude_ids:
            return False
        if self.is_active is not None and user.is_active != self.is_active:
            return False
        if self.unclustered is not None and user.is_clustered == self.unclustered:
            return False
        if self.current_cluster_id is not None and user.current_cluster_id != self.current_cluster_id:
            return False
        if self.active_since is not None:
            last_active = ensure_utc(user.last_active_at)
            if last_active is None or last_active < self.active_since:
                return False
        if self.bounding_box is not None and not self.bounding_box.contains(user.latitude, user.longitude):
            return False
        return True


@dataclass(frozen=True)
class UserPatch:
    """Partial user update; UNSET fields are left untouched"""
    current_cluster_id: object = UNSET
    is_active: object = UNSET
    last_active_at: object = UNSET
    days_active: object = UNSET

    def changes(self) -> dict:
        return {
            name: value for name, value in (
                ('current_cluster_id', self.current_cluster_id),
                ('is_active', self.is_active),
                ('last_active_at', self.last_active_at),
                ('days_active', self.days_active),
            ) if value is not UNSET
        }

    def apply(self, user: User) -> None:
        for name, value in self.changes().items():
            setattr(user, name, value)


@dataclass(frozen=True)
class InteractionFilter:
    """Interaction selection criteria"""
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    between: Optional[Tuple[str, str]] = None  # either direction
    since: Optional[datetime] = None
    action_types: Optional[Sequence[ActionType]] = None
    limit: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'since', ensure_utc(self.since))
        if self.action_types is not None:
            object.__setattr__(
                self, 'action_types', tuple(ActionType(a) for a in self.action_types)
            )

    def matches(self, interaction: Interaction) -> bool:
        if self.actor_id is not None and interaction.actor_id != self.actor_id:
            return False
        if self.target_id is not None and interaction.target_id != self.target_id:
            return False
        if self.between is not None and not interaction.involves(*self.between):
            return False
        if self.since is not None and interaction.created_at < self.since:
            return False
        if self.action_types is not None and interaction.action_type not in self.action_types:
            return False
        return True


@dataclass(frozen=True)
class ClusterFilter:
    """Cluster selection criteria"""
    is_active: Optional[bool] = None
    expires_before: Optional[datetime] = None  # inclusive
    member_id: Optional[str] = None
    limit: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'expires_before', ensure_utc(self.expires_before))

    def matches(self, cluster: Cluster) -> bool:
        if self.is_active is not None and cluster.is_active != self.is_active:
            return False
        if self.expires_before is not None and cluster.expires_at > self.expires_before:
            return False
        if self.member_id is not None and self.member_id not in cluster.members:
            return False
        return True


__all__ = [
    'UNSET',
    'BoundingBox',
    'UserFilter',
    'UserPatch',
    'InteractionFilter',
    'ClusterFilter',
    'KM_PER_DEGREE',
]
