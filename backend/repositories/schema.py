"""
PostgreSQL schema for Starcluster

Tables:
- users: interest profile, engagement and current cluster membership
- interactions: immutable action log (actor -> target user)
- clusters: formed clusters with quality metrics and lifecycle
- resonance_records: pairwise resonance keyed by canonical pair key
"""
import logging

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    user_id              TEXT PRIMARY KEY,
    tags                 TEXT[] NOT NULL DEFAULT '{}',
    content_preferences  JSONB NOT NULL DEFAULT '{}'::jsonb,
    days_active          INTEGER NOT NULL DEFAULT 0 CHECK (days_active >= 0),
    last_active_at       TIMESTAMPTZ,
    is_active            BOOLEAN NOT NULL DEFAULT TRUE,
    current_cluster_id   TEXT,
    latitude             DOUBLE PRECISION,
    longitude            DOUBLE PRECISION,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    metadata             JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_users_pool
    ON users (last_active_at DESC)
    WHERE is_active AND current_cluster_id IS NULL;
CREATE INDEX IF NOT EXISTS idx_users_cluster ON users (current_cluster_id);

CREATE TABLE IF NOT EXISTS interactions (
    id           TEXT PRIMARY KEY,
    actor_id     TEXT NOT NULL,
    target_id    TEXT NOT NULL,
    target_type  TEXT NOT NULL DEFAULT 'user',
    action_type  TEXT NOT NULL,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_interactions_actor ON interactions (actor_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_interactions_target ON interactions (target_id, created_at DESC);

CREATE TABLE IF NOT EXISTS clusters (
    id                     TEXT PRIMARY KEY,
    members                TEXT[] NOT NULL,
    core_users             TEXT[] NOT NULL,
    resonance_score        DOUBLE PRECISION NOT NULL DEFAULT 0,
    average_resonance      DOUBLE PRECISION NOT NULL DEFAULT 0,
    activity_distribution  JSONB NOT NULL DEFAULT '{}'::jsonb,
    tag_diversity_score    DOUBLE PRECISION NOT NULL DEFAULT 0,
    quality_score          DOUBLE PRECISION NOT NULL DEFAULT 0,
    quality_factors        JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_flagged             BOOLEAN NOT NULL DEFAULT FALSE,
    created_at             TIMESTAMPTZ NOT NULL,
    expires_at             TIMESTAMPTZ NOT NULL,
    is_active              BOOLEAN NOT NULL DEFAULT TRUE,
    dissolved_at           TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_clusters_expiry ON clusters (expires_at) WHERE is_active;

CREATE TABLE IF NOT EXISTS resonance_records (
    pair_key                  TEXT PRIMARY KEY,
    user_a_id                 TEXT NOT NULL,
    user_b_id                 TEXT NOT NULL,
    tag_similarity            DOUBLE PRECISION NOT NULL DEFAULT 0,
    interaction_score         DOUBLE PRECISION NOT NULL DEFAULT 0,
    content_preference_match  DOUBLE PRECISION NOT NULL DEFAULT 0,
    random_factor             DOUBLE PRECISION NOT NULL DEFAULT 0,
    total_resonance           DOUBLE PRECISION NOT NULL DEFAULT 0,
    calculated_at             TIMESTAMPTZ,
    history                   JSONB NOT NULL DEFAULT '[]'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_resonance_user_a ON resonance_records (user_a_id);
CREATE INDEX IF NOT EXISTS idx_resonance_user_b ON resonance_records (user_b_id);
"""


async def ensure_schema(db_pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist yet"""
    async with db_pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Starcluster schema ensured")
