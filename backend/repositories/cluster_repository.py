"""
Cluster Repository - PostgreSQL storage for formed clusters

Storage: PostgreSQL (clusters table)
"""
import json
import logging
from typing import List, Optional
import asyncpg

from models.domain.cluster import Cluster, ActivityDistribution
from repositories.filters import ClusterFilter

logger = logging.getLogger(__name__)

CLUSTER_COLUMNS = """
    id, members, core_users, resonance_score, average_resonance,
    activity_distribution, tag_diversity_score, quality_score, quality_factors,
    is_flagged, created_at, expires_at, is_active, dissolved_at
"""


class ClusterRepository:
    """
    Repository for Cluster domain model

    Membership itself lives on users.current_cluster_id; the members column
    is the finalized roster recorded at formation time.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, cluster_id: str) -> Optional[Cluster]:
        """
        Retrieve cluster by ID.

        Args:
            cluster_id: Cluster ID (sc_xxxxxxxx)

        Returns:
            Cluster model or None
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {CLUSTER_COLUMNS}
                FROM clusters
                WHERE id = $1
            """, cluster_id)

            if not row:
                return None
            return self._row_to_cluster(row)

    async def find(self, cluster_filter: ClusterFilter) -> List[Cluster]:
        """Retrieve clusters matching a filter, soonest expiry first."""
        clauses = []
        params = []
        if cluster_filter.is_active is not None:
            params.append(cluster_filter.is_active)
            clauses.append(f"is_active = ${len(params)}")
        if cluster_filter.expires_before is not None:
            params.append(cluster_filter.expires_before)
            clauses.append(f"expires_at <= ${len(params)}")
        if cluster_filter.member_id is not None:
            params.append(cluster_filter.member_id)
            clauses.append(f"${len(params)} = ANY(members)")

        where = " AND ".join(clauses) if clauses else "TRUE"
        limit_sql = ""
        if cluster_filter.limit is not None:
            params.append(cluster_filter.limit)
            limit_sql = f"LIMIT ${len(params)}"

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {CLUSTER_COLUMNS}
                FROM clusters
                WHERE {where}
                ORDER BY expires_at
                {limit_sql}
            """, *params)

            return [self._row_to_cluster(row) for row in rows]

    # =========================================================================
    # CREATE / UPDATE OPERATIONS
    # =========================================================================

    async def save(self, cluster: Cluster) -> Cluster:
        """
        Insert or update a cluster.

        Args:
            cluster: Cluster model

        Returns:
            The saved cluster
        """
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO clusters (
                    id, members, core_users, resonance_score, average_resonance,
                    activity_distribution, tag_diversity_score, quality_score,
                    quality_factors, is_flagged, created_at, expires_at,
                    is_active, dissolved_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (id) DO UPDATE SET
                    is_active = EXCLUDED.is_active,
                    dissolved_at = EXCLUDED.dissolved_at,
                    quality_score = EXCLUDED.quality_score,
                    quality_factors = EXCLUDED.quality_factors,
                    is_flagged = EXCLUDED.is_flagged
            """,
                cluster.id,
                list(cluster.members),
                list(cluster.core_users),
                cluster.resonance_score,
                cluster.average_resonance,
                json.dumps(cluster.activity_distribution.to_dict()),
                cluster.tag_diversity_score,
                cluster.quality_score,
                json.dumps(cluster.quality_factors),
                cluster.is_flagged,
                cluster.created_at,
                cluster.expires_at,
                cluster.is_active,
                cluster.dissolved_at,
            )

        logger.debug(f"Saved cluster {cluster.id} (active={cluster.is_active})")
        return cluster

    def _row_to_cluster(self, row) -> Cluster:
        distribution = row['activity_distribution']
        if isinstance(distribution, str):
            distribution = json.loads(distribution)
        factors = row['quality_factors']
        if isinstance(factors, str):
            factors = json.loads(factors)

        return Cluster(
            id=row['id'],
            members=list(row['members']),
            core_users=tuple(row['core_users']),
            resonance_score=row['resonance_score'],
            average_resonance=row['average_resonance'],
            activity_distribution=ActivityDistribution(**(distribution or {})),
            tag_diversity_score=row['tag_diversity_score'],
            quality_score=row['quality_score'],
            quality_factors=factors or {},
            is_flagged=bool(row['is_flagged']),
            created_at=row['created_at'],
            expires_at=row['expires_at'],
            is_active=bool(row['is_active']),
            dissolved_at=row['dissolved_at'],
        )
