"""
Cluster Dissolution Worker
==========================

Periodically dissolves clusters whose expiry has passed: members get their
current_cluster_id cleared, the cluster is deactivated and its cache entry
dropped. Lookups through current_cluster() dissolve lazily as well; this
worker keeps the store tidy for clusters nobody looks at.
"""
import asyncio
import logging
from typing import Optional

from services.worker_base import PeriodicWorker

logger = logging.getLogger(__name__)


class ClusterDissolutionWorker(PeriodicWorker):
    """Runs ClusterFormationEngine.dissolve_expired() on an interval"""

    def __init__(self, engine, interval: float = 300, worker_name: str = "dissolution"):
        super().__init__(worker_name=worker_name, interval=interval)
        self.engine = engine
        self.clusters_dissolved = 0
        self.last_dissolved: Optional[int] = None

    async def run_once(self):
        dissolved = await self.engine.dissolve_expired()
        self.last_dissolved = dissolved
        self.clusters_dissolved += dissolved
        if dissolved:
            logger.info(f"[{self.worker_name}] Dissolved {dissolved} expired clusters")
        else:
            logger.debug(f"[{self.worker_name}] No expired clusters")
        return dissolved


async def main():
    """Main worker entry point"""
    from config import (
        get_settings,
        create_postgres_pool,
        create_cache,
        create_formation_engine,
        postgres_repositories,
    )

    settings = get_settings()
    db_pool = await create_postgres_pool(settings)
    cache = await create_cache(settings)
    engine = create_formation_engine(postgres_repositories(db_pool), settings, cache=cache)

    worker = ClusterDissolutionWorker(engine, interval=settings.dissolution_interval_seconds)
    logger.info(f"Starting cluster dissolution worker (every {worker.interval}s)")

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    finally:
        await engine.resonance_calculator.history_writer.close()
        await cache.close()
        await db_pool.close()


if __name__ == "__main__":
    asyncio.run(main())
