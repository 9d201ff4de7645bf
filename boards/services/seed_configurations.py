"""
Configuration seed data for the Boards bot.

Runtime tunables for the sync engine, grouped by concern. Values here are the
defaults ConfigurationService falls back to; seed_configurations() writes any
missing keys to the database so administrators can see and edit them.
"""

import json
import asyncio
from sqlalchemy import select
from boards.config import Config
from boards.constants import PointsConstants
from boards.database.models import Configuration
from boards.database.database import Database

INITIAL_CONFIGS = {
    # Upstream sync (10 parameters)
    'sync.rate_limit_per_second': Config.RATE_LIMIT_PER_SECOND,
    'sync.rate_limit_burst': Config.RATE_LIMIT_BURST,
    'sync.page_size': Config.PAGE_SIZE,
    'sync.page_budget': Config.PAGE_BUDGET,
    'sync.max_attempts': Config.MAX_ATTEMPTS,
    'sync.backoff_base_seconds': Config.BACKOFF_BASE_SECONDS,
    'sync.acquire_timeout_seconds': Config.ACQUIRE_TIMEOUT_SECONDS,
    'sync.cycle_deadline_seconds': Config.CYCLE_DEADLINE_SECONDS,
    'sync.max_workers': Config.MAX_WORKERS,
    'sync.interval_minutes': 10,

    # Coop pairing (1 parameter)
    'coop.timestamp_tolerance_seconds': Config.COOP_TIMESTAMP_TOLERANCE_SECONDS,

    # Points (4 parameters)
    'points.strategy': PointsConstants.RANK_CURVE,
    'points.base_points': Config.BASE_POINTS,
    'points.results_cutoff': Config.RESULTS_CUTOFF,
    'points.coop_mode': PointsConstants.COOP_SHARED,

    # Avatars (3 parameters)
    'avatar.refresh_interval_hours': 24,
    'avatar.batch_size': 50,
    'avatar.stale_after_hours': 72,
}

async def seed_configurations(database: Database) -> int:
    """Insert any missing configuration keys. Returns the number inserted."""
    inserted = 0
    async with database.transaction() as session:
        result = await session.execute(select(Configuration.key))
        existing = set(result.scalars().all())

        for key, value in INITIAL_CONFIGS.items():
            if key in existing:
                continue
            session.add(Configuration(key=key, value=json.dumps(value)))
            inserted += 1

    return inserted

async def main():
    db = Database()
    await db.initialize()
    try:
        count = await seed_configurations(db)
        print(f"Seeded {count} configuration parameters ({len(INITIAL_CONFIGS)} known)")
    finally:
        await db.close()

if __name__ == "__main__":
    asyncio.run(main())
