"""
Interaction Repository - PostgreSQL storage for the interaction log

Storage: PostgreSQL (interactions table)

Interactions are immutable: there are no update or delete operations.
"""
import logging
from typing import Iterable, List, Optional, Tuple
import asyncpg

from models.domain.interaction import Interaction
from repositories.filters import InteractionFilter

logger = logging.getLogger(__name__)


def build_interaction_where(interaction_filter: InteractionFilter) -> Tuple[str, list]:
    """Translate an InteractionFilter into a WHERE clause and parameters"""
    clauses = []
    params = []

    def param(value) -> str:
        params.append(value)
        return f"${len(params)}"

    if interaction_filter.actor_id is not None:
        clauses.append(f"actor_id = {param(interaction_filter.actor_id)}")
    if interaction_filter.target_id is not None:
        clauses.append(f"target_id = {param(interaction_filter.target_id)}")
    if interaction_filter.between is not None:
        a, b = interaction_filter.between
        pa, pb = param(a), param(b)
        clauses.append(
            f"((actor_id = {pa} AND target_id = {pb}) OR (actor_id = {pb} AND target_id = {pa}))"
        )
    if interaction_filter.since is not None:
        clauses.append(f"created_at >= {param(interaction_filter.since)}")
    if interaction_filter.action_types is not None:
        clauses.append(
            f"action_type = ANY({param([a.value for a in interaction_filter.action_types])}::text[])"
        )

    return (" AND ".join(clauses) if clauses else "TRUE"), params


class InteractionRepository:
    """
    Repository for Interaction domain model

    Provides pair history for interaction scoring and per-user counts for
    activity scoring.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, interaction_id: str) -> Optional[Interaction]:
        """Retrieve interaction by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT id, actor_id, target_id, target_type, action_type, created_at
                FROM interactions
                WHERE id = $1
            """, interaction_id)

            if not row:
                return None
            return self._row_to_interaction(row)

    async def find(self, interaction_filter: InteractionFilter) -> List[Interaction]:
        """
        Retrieve interactions matching a filter, most recent first.

        Args:
            interaction_filter: Selection criteria

        Returns:
            List of interactions
        """
        where, params = build_interaction_where(interaction_filter)
        limit_sql = ""
        if interaction_filter.limit is not None:
            params.append(interaction_filter.limit)
            limit_sql = f"LIMIT ${len(params)}"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT id, actor_id, target_id, target_type, action_type, created_at
                FROM interactions
                WHERE {where}
                ORDER BY created_at DESC
                {limit_sql}
            """, *params)

            return [self._row_to_interaction(row) for row in rows]

    async def find_between(self, user_a_id: str, user_b_id: str, limit: int = 100) -> List[Interaction]:
        """Interactions between two users in either direction, most recent first"""
        return await self.find(InteractionFilter(between=(user_a_id, user_b_id), limit=limit))

    async def count(self, interaction_filter: InteractionFilter) -> int:
        """Count interactions matching a filter (limit is ignored)."""
        where, params = build_interaction_where(interaction_filter)
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(f"""
                SELECT COUNT(*) FROM interactions WHERE {where}
            """, *params)
            return count or 0

    # =========================================================================
    # CREATE OPERATIONS
    # =========================================================================

    async def save(self, interaction: Interaction) -> Interaction:
        """Append an interaction to the log."""
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO interactions (id, actor_id, target_id, target_type, action_type, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO NOTHING
            """,
                interaction.id,
                interaction.actor_id,
                interaction.target_id,
                interaction.target_type.value,
                interaction.action_type.value,
                interaction.created_at,
            )
        return interaction

    async def save_many(self, interactions: Iterable[Interaction]) -> int:
        """Bulk append; returns the number of rows submitted."""
        rows = [
            (i.id, i.actor_id, i.target_id, i.target_type.value, i.action_type.value, i.created_at)
            for i in interactions
        ]
        if not rows:
            return 0

        async with self.db_pool.acquire() as conn:
            await conn.executemany("""
                INSERT INTO interactions (id, actor_id, target_id, target_type, action_type, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO NOTHING
            """, rows)

        logger.info(f"Saved {len(rows)} interactions")
        return len(rows)

    def _row_to_interaction(self, row) -> Interaction:
        return Interaction(
            id=row['id'],
            actor_id=row['actor_id'],
            target_id=row['target_id'],
            target_type=row['target_type'],
            action_type=row['action_type'],
            created_at=row['created_at'],
        )
