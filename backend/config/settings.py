from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables can come from:
    - docker-compose.yml environment section
    - .env file
    - System environment

    Variable names match docker-compose conventions:
    - POSTGRES_HOST, POSTGRES_PORT, etc. (for database)
    - REDIS_URL (for the distributed cache)
    - CLUSTER_SIZE, MIN_CORE_RESONANCE, ... (for formation tuning)
    """

    # Environment
    environment: str = "development"

    # PostgreSQL (from docker-compose)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "starcluster_user"
    postgres_password: str = "starcluster_pass"
    postgres_db: str = "starcluster"
    postgres_pool_min: int = 2
    postgres_pool_max: int = 10
    database_url: Optional[str] = Field(default=None, validate_default=True)

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Cache backend: memory | redis | none
    cache_backend: str = "memory"

    # Resonance
    resonance_cache_ttl: int = 3600
    resonance_batch_size: int = 10
    resonance_history_limit: int = 50
    interaction_half_life_days: float = 30.0
    random_seed: Optional[int] = None

    # Cluster formation
    cluster_size: int = 49
    min_core_resonance: float = 50.0
    cluster_ttl_days: int = 7
    candidate_active_days: int = 7
    max_candidates: int = 1000
    quality_sample_size: int = 20
    quality_acceptance_threshold: float = 0.6
    cluster_cache_ttl: int = 3600

    # Geo prefilter
    geo_filter_enabled: bool = False
    geo_radius_km: float = 50.0

    # Tag diversity
    max_same_tag_ratio: float = 0.4
    max_category_ratio: float = 0.6
    min_unique_tags: int = 10
    diversity_max_iterations: int = 10
    diversity_target: float = 0.9

    # Activity balance
    activity_ratio_high: float = 0.3
    activity_ratio_medium: float = 0.4
    activity_ratio_low: float = 0.3
    balance_max_iterations: int = 10

    # Members already in contact with the core pair
    min_indirect_members: int = 3
    max_indirect_members: int = 5

    # Workers
    dissolution_interval_seconds: int = 300

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars

    @field_validator('cache_backend', mode='before')
    @classmethod
    def check_cache_backend(cls, v):
        """Accept memory/redis/none (case-insensitive)"""
        value = (v or "memory").lower()
        if value not in ("memory", "redis", "none"):
            raise ValueError(f"cache_backend must be memory, redis or none, got {v}")
        return value

    @field_validator(
        'max_same_tag_ratio', 'max_category_ratio', 'quality_acceptance_threshold',
        'activity_ratio_high', 'activity_ratio_medium', 'activity_ratio_low', 'diversity_target',
    )
    @classmethod
    def check_ratio(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"ratio must be in [0, 1], got {v}")
        return v

    @field_validator('cluster_size')
    @classmethod
    def check_cluster_size(cls, v):
        if v < 3:
            raise ValueError(f"cluster_size must leave room for candidates, got {v}")
        return v

    @field_validator('database_url', mode='before')
    @classmethod
    def construct_database_url(cls, v, info):
        """Construct database URL from components if not explicitly set"""
        if v:
            return v

        data = info.data
        host = data.get('postgres_host', 'localhost')
        port = data.get('postgres_port', 5432)
        user = data.get('postgres_user', 'starcluster_user')
        password = data.get('postgres_password', 'starcluster_pass')
        db = data.get('postgres_db', 'starcluster')

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @model_validator(mode='after')
    def check_activity_ratios(self):
        """Target tier ratios must describe a whole cluster"""
        total = self.activity_ratio_high + self.activity_ratio_medium + self.activity_ratio_low
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"activity ratios must sum to 1, got {total:.3f}")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
