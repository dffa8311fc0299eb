#!/usr/bin/env python3
"""
Dissolution Worker Runner
=========================

Runs the ClusterDissolutionWorker that periodically dissolves expired
clusters.

Usage:
    python run_dissolution_worker.py
    python run_dissolution_worker.py --once  # Single sweep, then exit
"""

import asyncio
import os
import sys
import logging
import argparse

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from workers.dissolution_worker import main
from config import (
    get_settings,
    create_postgres_pool,
    create_cache,
    create_formation_engine,
    postgres_repositories,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_once():
    """Run a single expiry sweep."""
    logger.info("Running single dissolution sweep...")

    settings = get_settings()
    db_pool = await create_postgres_pool(settings)
    cache = await create_cache(settings)
    engine = create_formation_engine(postgres_repositories(db_pool), settings, cache=cache)

    try:
        dissolved = await engine.dissolve_expired()
        logger.info(f"Done: {dissolved} clusters dissolved")
    finally:
        await engine.resonance_calculator.history_writer.close()
        await cache.close()
        await db_pool.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cluster Dissolution Worker")
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run single sweep and exit'
    )
    args = parser.parse_args()

    if args.once:
        asyncio.run(run_once())
    else:
        asyncio.run(main())
