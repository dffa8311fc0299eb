"""
User Repository - PostgreSQL storage for user profiles and cluster membership

Storage: PostgreSQL (users table)
"""
import json
import logging
from typing import List, Optional, Tuple
import asyncpg

from models.domain.user import User
from repositories.filters import UserFilter, UserPatch

logger = logging.getLogger(__name__)

USER_COLUMNS = """
    user_id, tags, content_preferences, days_active, last_active_at,
    is_active, current_cluster_id, latitude, longitude, created_at, metadata
"""


def build_user_where(user_filter: UserFilter, start: int = 1) -> Tuple[str, list]:
    """
    Translate a UserFilter into a WHERE clause.

    Args:
        user_filter: Selection criteria
        start: First positional parameter index

    Returns:
        (where_sql, params) - where_sql is 'TRUE' when no criteria are set
    """
    clauses = []
    params = []

    def param(value) -> str:
        params.append(value)
        return f"${start + len(params) - 1}"

    if user_filter.user_ids is not None:
        clauses.append(f"user_id = ANY({param(list(user_filter.user_ids))}::text[])")
    if user_filter.exclude_ids:
        clauses.append(f"NOT (user_id = ANY({param(list(user_filter.exclude_ids))}::text[]))")
    if user_filter.is_active is not None:
        clauses.append(f"is_active = {param(user_filter.is_active)}")
    if user_filter.unclustered is True:
        clauses.append("current_cluster_id IS NULL")
    elif user_filter.unclustered is False:
        clauses.append("current_cluster_id IS NOT NULL")
    if user_filter.current_cluster_id is not None:
        clauses.append(f"current_cluster_id = {param(user_filter.current_cluster_id)}")
    if user_filter.active_since is not None:
        clauses.append(f"last_active_at >= {param(user_filter.active_since)}")
    if user_filter.bounding_box is not None:
        box = user_filter.bounding_box
        clauses.append(
            f"latitude BETWEEN {param(box.min_lat)} AND {param(box.max_lat)} "
            f"AND longitude BETWEEN {param(box.min_lng)} AND {param(box.max_lng)}"
        )

    return (" AND ".join(clauses) if clauses else "TRUE"), params


class UserRepository:
    """
    Repository for User domain model

    Handles interest profiles, engagement data and cluster membership.
    Membership changes go through compare-and-swap helpers so that a user is
    never admitted into two clusters concurrently.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, user_id: str) -> Optional[User]:
        """
        Retrieve user by ID.

        Args:
            user_id: User UUID

        Returns:
            User model or None
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE user_id = $1
            """, user_id)

            if not row:
                return None

            return self._row_to_user(row)

    async def find(self, user_filter: UserFilter) -> List[User]:
        """
        Retrieve users matching a filter.

        Ordered by most recently active first, then user_id, so repeated
        calls over the same data return the same order.
        """
        where, params = build_user_where(user_filter)
        limit_sql = ""
        if user_filter.limit is not None:
            params.append(user_filter.limit)
            limit_sql = f"LIMIT ${len(params)}"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE {where}
                ORDER BY last_active_at DESC NULLS LAST, user_id
                {limit_sql}
            """, *params)

            return [self._row_to_user(row) for row in rows]

    # =========================================================================
    # CREATE / UPDATE OPERATIONS
    # =========================================================================

    async def save(self, user: User) -> User:
        """
        Insert or update a user.

        Args:
            user: User model

        Returns:
            The saved user
        """
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO users (
                    user_id, tags, content_preferences, days_active, last_active_at,
                    is_active, current_cluster_id, latitude, longitude, created_at, metadata
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, COALESCE($10, now()), $11)
                ON CONFLICT (user_id) DO UPDATE SET
                    tags = EXCLUDED.tags,
                    content_preferences = EXCLUDED.content_preferences,
                    days_active = EXCLUDED.days_active,
                    last_active_at = EXCLUDED.last_active_at,
                    is_active = EXCLUDED.is_active,
                    current_cluster_id = EXCLUDED.current_cluster_id,
                    latitude = EXCLUDED.latitude,
                    longitude = EXCLUDED.longitude,
                    metadata = EXCLUDED.metadata
            """,
                user.user_id,
                sorted(user.tags),
                json.dumps(user.content_preferences.to_dict()),
                user.days_active,
                user.last_active_at,
                user.is_active,
                user.current_cluster_id,
                user.latitude,
                user.longitude,
                user.created_at,
                json.dumps(user.metadata or {}),
            )

        logger.debug(f"Saved user {user.user_id}")
        return user

    async def update_many(self, user_filter: UserFilter, patch: UserPatch) -> int:
        """
        Apply a partial update to every user matching the filter.

        Returns:
            Number of users updated
        """
        changes = patch.changes()
        if not changes:
            return 0

        set_params = list(changes.values())
        set_sql = ", ".join(f"{name} = ${i + 1}" for i, name in enumerate(changes))
        where, where_params = build_user_where(user_filter, start=len(set_params) + 1)

        async with self.db_pool.acquire() as conn:
            result = await conn.execute(f"""
                UPDATE users SET {set_sql}
                WHERE {where}
            """, *set_params, *where_params)

        # asyncpg returns 'UPDATE <n>'
        return int(result.split()[-1])

    async def set_cluster_if_unset(self, user_id: str, cluster_id: str) -> bool:
        """
        Compare-and-swap: set current_cluster_id only if it is currently NULL.

        Returns:
            True if the user was marked, False if missing or already clustered
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE users SET current_cluster_id = $2
                WHERE user_id = $1 AND current_cluster_id IS NULL
                RETURNING user_id
            """, user_id, cluster_id)
            return row is not None

    async def clear_cluster_if_matches(self, user_id: str, cluster_id: str) -> bool:
        """Clear current_cluster_id only if it still points at cluster_id"""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE users SET current_cluster_id = NULL
                WHERE user_id = $1 AND current_cluster_id = $2
                RETURNING user_id
            """, user_id, cluster_id)
            return row is not None

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _row_to_user(self, row) -> User:
        preferences = row['content_preferences']
        if isinstance(preferences, str):
            preferences = json.loads(preferences)
        metadata = row['metadata']
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return User(
            user_id=str(row['user_id']),
            tags=frozenset(row['tags'] or []),
            content_preferences=preferences or {},
            days_active=row['days_active'] or 0,
            last_active_at=row['last_active_at'],
            is_active=bool(row['is_active']),
            current_cluster_id=row['current_cluster_id'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            created_at=row['created_at'],
            metadata=metadata or {},
        )
