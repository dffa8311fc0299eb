"""
Resonance Repository - PostgreSQL storage for pairwise resonance records

Storage: PostgreSQL (resonance_records table)
"""
import json
import logging
from typing import List, Optional
import asyncpg

from models.domain.resonance_record import ResonanceRecord, ResonanceSnapshot, pair_key

logger = logging.getLogger(__name__)

RECORD_COLUMNS = """
    pair_key, user_a_id, user_b_id, tag_similarity, interaction_score,
    content_preference_match, random_factor, total_resonance, calculated_at, history
"""


class ResonanceRepository:
    """
    Repository for ResonanceRecord domain model

    Records are upserted by pair key: a recompute updates the row in place
    and carries the (already trimmed) history along.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, key: str) -> Optional[ResonanceRecord]:
        """
        Retrieve record by canonical pair key.

        Args:
            key: Pair key ('{lo}:{hi}')

        Returns:
            ResonanceRecord or None
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {RECORD_COLUMNS}
                FROM resonance_records
                WHERE pair_key = $1
            """, key)

            if not row:
                return None
            return self._row_to_record(row)

    async def get_pair(self, user_a_id: str, user_b_id: str) -> Optional[ResonanceRecord]:
        return await self.get(pair_key(user_a_id, user_b_id))

    async def find_by_user(self, user_id: str, limit: int = 50) -> List[ResonanceRecord]:
        """Records involving the user, most recently calculated first"""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {RECORD_COLUMNS}
                FROM resonance_records
                WHERE user_a_id = $1 OR user_b_id = $1
                ORDER BY calculated_at DESC NULLS LAST
                LIMIT $2
            """, user_id, limit)

            return [self._row_to_record(row) for row in rows]

    # =========================================================================
    # CREATE / UPDATE OPERATIONS
    # =========================================================================

    async def save(self, record: ResonanceRecord) -> ResonanceRecord:
        """Insert or update a record by pair key."""
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO resonance_records (
                    pair_key, user_a_id, user_b_id, tag_similarity, interaction_score,
                    content_preference_match, random_factor, total_resonance,
                    calculated_at, history
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (pair_key) DO UPDATE SET
                    tag_similarity = EXCLUDED.tag_similarity,
                    interaction_score = EXCLUDED.interaction_score,
                    content_preference_match = EXCLUDED.content_preference_match,
                    random_factor = EXCLUDED.random_factor,
                    total_resonance = EXCLUDED.total_resonance,
                    calculated_at = EXCLUDED.calculated_at,
                    history = EXCLUDED.history
            """,
                record.key,
                record.user_a_id,
                record.user_b_id,
                record.tag_similarity,
                record.interaction_score,
                record.content_preference_match,
                record.random_factor,
                record.total_resonance,
                record.calculated_at,
                json.dumps([s.to_dict() for s in record.history]),
            )
        return record

    def _row_to_record(self, row) -> ResonanceRecord:
        history = row['history']
        if isinstance(history, str):
            history = json.loads(history)

        return ResonanceRecord(
            user_a_id=row['user_a_id'],
            user_b_id=row['user_b_id'],
            tag_similarity=row['tag_similarity'],
            interaction_score=row['interaction_score'],
            content_preference_match=row['content_preference_match'],
            random_factor=row['random_factor'],
            total_resonance=row['total_resonance'],
            calculated_at=row['calculated_at'],
            history=[ResonanceSnapshot.from_dict(h) for h in (history or [])],
        )
