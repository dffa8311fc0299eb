"""
In-memory repositories

Same interface as the PostgreSQL repositories. Used by the test suite and
for local experiments without a database. Objects are copied on the way in
and out so callers never mutate stored state by accident.
"""
import asyncio
import copy
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from models.domain.user import User
from models.domain.interaction import Interaction
from models.domain.cluster import Cluster
from models.domain.resonance_record import ResonanceRecord, pair_key
from repositories.filters import UserFilter, UserPatch, InteractionFilter, ClusterFilter

logger = logging.getLogger(__name__)


class InMemoryUserRepository:
    """Users keyed by id, iterated in insertion order"""

    def __init__(self, users: Iterable[User] = ()):
        self._users: Dict[str, User] = {}
        self._lock = asyncio.Lock()
        for user in users:
            self._users[user.user_id] = copy.deepcopy(user)

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find(self, user_filter: UserFilter) -> List[User]:
        results = [u for u in self._users.values() if user_filter.matches(u)]
        if user_filter.limit is not None:
            results = results[:user_filter.limit]
        return [copy.deepcopy(u) for u in results]

    # =========================================================================
    # CREATE / UPDATE OPERATIONS
    # =========================================================================

    async def save(self, user: User) -> User:
        self._users[user.user_id] = copy.deepcopy(user)
        return user

    async def update_many(self, user_filter: UserFilter, patch: UserPatch) -> int:
        async with self._lock:
            updated = 0
            for user in self._users.values():
                if user_filter.matches(user):
                    patch.apply(user)
                    updated += 1
            return updated

    async def set_cluster_if_unset(self, user_id: str, cluster_id: str) -> bool:
        """
        Compare-and-swap: set current_cluster_id only if it is currently None.

        Returns:
            True if the user was marked, False if missing or already clustered
        """
        async with self._lock:
            user = self._users.get(user_id)
            if user is None or user.current_cluster_id is not None:
                return False
            user.current_cluster_id = cluster_id
            return True

    async def clear_cluster_if_matches(self, user_id: str, cluster_id: str) -> bool:
        """Clear current_cluster_id only if it still points at cluster_id"""
        async with self._lock:
            user = self._users.get(user_id)
            if user is None or user.current_cluster_id != cluster_id:
                return False
            user.current_cluster_id = None
            return True


class InMemoryInteractionRepository:
    """Append-only interaction log"""

    def __init__(self, interactions: Iterable[Interaction] = ()):
        self._interactions: List[Interaction] = list(interactions)

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, interaction_id: str) -> Optional[Interaction]:
        for interaction in self._interactions:
            if interaction.id == interaction_id:
                return interaction
        return None

    async def find(self, interaction_filter: InteractionFilter) -> List[Interaction]:
        """Matching interactions, most recent first"""
        results = sorted(
            (i for i in self._interactions if interaction_filter.matches(i)),
            key=lambda i: i.created_at,
            reverse=True,
        )
        if interaction_filter.limit is not None:
            results = results[:interaction_filter.limit]
        return results

    async def find_between(self, user_a_id: str, user_b_id: str, limit: int = 100) -> List[Interaction]:
        return await self.find(InteractionFilter(between=(user_a_id, user_b_id), limit=limit))

    async def count(self, interaction_filter: InteractionFilter) -> int:
        return sum(1 for i in self._interactions if interaction_filter.matches(i))

    # =========================================================================
    # CREATE OPERATION
    # =========================================================================

    async def save(self, interaction: Interaction) -> Interaction:
        # Interactions are frozen, no copy needed
        self._interactions.append(interaction)
        return interaction

    async def save_many(self, interactions: Iterable[Interaction]) -> int:
        batch = list(interactions)
        self._interactions.extend(batch)
        return len(batch)


class InMemoryClusterRepository:
    """Clusters keyed by id"""

    def __init__(self):
        self._clusters: Dict[str, Cluster] = {}

    async def get(self, cluster_id: str) -> Optional[Cluster]:
        cluster = self._clusters.get(cluster_id)
        return copy.deepcopy(cluster) if cluster else None

    async def find(self, cluster_filter: ClusterFilter) -> List[Cluster]:
        results = [c for c in self._clusters.values() if cluster_filter.matches(c)]
        results.sort(key=lambda c: c.expires_at)
        if cluster_filter.limit is not None:
            results = results[:cluster_filter.limit]
        return [copy.deepcopy(c) for c in results]

    async def save(self, cluster: Cluster) -> Cluster:
        self._clusters[cluster.id] = copy.deepcopy(cluster)
        return cluster

    def __len__(self) -> int:
        return len(self._clusters)


class InMemoryResonanceRepository:
    """ResonanceRecords keyed by canonical pair key"""

    def __init__(self):
        self._records: Dict[str, ResonanceRecord] = {}

    async def get(self, key: str) -> Optional[ResonanceRecord]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record else None

    async def get_pair(self, user_a_id: str, user_b_id: str) -> Optional[ResonanceRecord]:
        return await self.get(pair_key(user_a_id, user_b_id))

    async def find_by_user(self, user_id: str, limit: int = 50) -> List[ResonanceRecord]:
        """Records involving the user, most recently calculated first"""
        records = [
            r for r in self._records.values()
            if user_id in (r.user_a_id, r.user_b_id)
        ]
        records.sort(key=_calculated_sort_key, reverse=True)
        return [copy.deepcopy(r) for r in records[:limit]]

    async def save(self, record: ResonanceRecord) -> ResonanceRecord:
        self._records[record.key] = copy.deepcopy(record)
        return record

    def __len__(self) -> int:
        return len(self._records)


def _calculated_sort_key(record: ResonanceRecord) -> Tuple[int, float]:
    if record.calculated_at is None:
        return (0, 0.0)
    return (1, record.calculated_at.timestamp())
