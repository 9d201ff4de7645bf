from typing import Optional, List
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, or_
from contextlib import asynccontextmanager

from boards.config import Config
from boards.constants import CategoryMode
from boards.database.models import Base, Category, Player, Run, SyncCursor
from boards.services.base import BaseService
from boards.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self) -> async_sessionmaker:
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure. Readers never observe a partially
        applied unit.

        Usage:
            async with db.transaction() as session:
                await reconciler.apply_entries(session, category, page.entries, seen_at)
                Fetcher.commit_page(cursor, page)
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # Category operations
    async def create_category(
        self,
        name: str,
        leaderboard_id: str,
        map_id: str,
        mode: str = CategoryMode.SINGLE,
        demo_threshold: int = 200,
        video_threshold: int = 200
    ) -> Category:
        """Create a category together with its sync cursor"""
        if mode not in (CategoryMode.SINGLE, CategoryMode.COOP):
            raise ValueError(f"Unknown category mode '{mode}'")
        if demo_threshold < 0 or video_threshold < 0:
            raise ValueError("Proof thresholds must be non-negative")

        async with self.transaction() as session:
            category = Category(
                name=name,
                leaderboard_id=leaderboard_id,
                map_id=map_id,
                mode=mode,
                demo_threshold=demo_threshold,
                video_threshold=video_threshold,
                is_active=True
            )
            session.add(category)
            await session.flush()
            session.add(SyncCursor(category_id=category.id, position=0))
        self.logger.info(f"Created category {category.id} '{name}' ({mode}) for leaderboard {leaderboard_id}")
        return category

    async def get_category(self, category_id: int) -> Optional[Category]:
        async with self.get_session() as session:
            return await session.get(Category, category_id)

    async def get_all_categories(self, active_only: bool = True) -> List[Category]:
        """Get all categories"""
        async with self.get_session() as session:
            query = select(Category)
            if active_only:
                query = query.where(Category.is_active == True)
            query = query.order_by(Category.id)

            result = await session.execute(query)
            return list(result.scalars().all())

    async def set_category_thresholds(self, category_id: int, demo_threshold: int, video_threshold: int) -> Category:
        if demo_threshold < 0 or video_threshold < 0:
            raise ValueError("Proof thresholds must be non-negative")

        async def apply():
            async with self.transaction() as session:
                category = await session.get(Category, category_id)
                if category is None:
                    raise ValueError(f"Category {category_id} not found")
                category.demo_threshold = demo_threshold
                category.video_threshold = video_threshold
                cursor = await self.get_or_create_cursor(session, category_id)
                cursor.needs_recompute = True
            return category

        return await self._retry_flagging(apply)

    async def set_category_active(self, category_id: int, is_active: bool) -> Category:
        """Pause or resume syncing a category, e.g. after the upstream reported it gone"""
        async with self.transaction() as session:
            category = await session.get(Category, category_id)
            if category is None:
                raise ValueError(f"Category {category_id} not found")
            category.is_active = is_active
        self.logger.info(f"Category {category_id} {'activated' if is_active else 'deactivated'}")
        return category

    # Cursor operations
    async def get_cursor(self, category_id: int) -> SyncCursor:
        async with self.transaction() as session:
            return await self.get_or_create_cursor(session, category_id)

    async def get_or_create_cursor(self, session: AsyncSession, category_id: int) -> SyncCursor:
        result = await session.execute(
            select(SyncCursor).where(SyncCursor.category_id == category_id)
        )
        cursor = result.scalar_one_or_none()
        if cursor is None:
            cursor = SyncCursor(category_id=category_id, position=0)
            session.add(cursor)
            await session.flush()
        return cursor

    async def _retry_flagging(self, unit):
        """
        Run an admin write that sets needs_recompute. Cursors are versioned, so
        a recompute committing in between makes the write start over on fresh
        rows instead of failing.
        """
        return await BaseService(self.async_session).execute_with_retry(unit)

    # Player operations
    async def get_player_by_external_id(self, external_id: str) -> Optional[Player]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Player).where(Player.external_id == external_id)
            )
            return result.scalar_one_or_none()

    async def set_player_banned(self, external_id: str, banned: bool) -> Player:
        """Ban or unban a player and flag every category they appear in for recompute"""
        async def apply():
            async with self.transaction() as session:
                result = await session.execute(
                    select(Player).where(Player.external_id == external_id)
                )
                player = result.scalar_one_or_none()
                if player is None:
                    raise ValueError(f"Player '{external_id}' not found")
                player.is_banned = banned

                category_ids = await session.execute(
                    select(Run.category_id).where(Run.player_id == player.id).distinct()
                )
                for category_id in category_ids.scalars():
                    cursor = await self.get_or_create_cursor(session, category_id)
                    cursor.needs_recompute = True
            return player

        return await self._retry_flagging(apply)

    # Run operations
    async def set_run_banned(self, entry_id: str, banned: bool) -> List[Run]:
        """Ban or unban every run built from an upstream entry"""
        async def apply():
            async with self.transaction() as session:
                result = await session.execute(
                    select(Run).where(or_(Run.entry_id == entry_id, Run.partner_entry_id == entry_id))
                )
                runs = list(result.scalars().all())
                if not runs:
                    raise ValueError(f"No run built from entry '{entry_id}'")
                for run in runs:
                    run.is_banned = banned
                for category_id in {run.category_id for run in runs}:
                    cursor = await self.get_or_create_cursor(session, category_id)
                    cursor.needs_recompute = True
            return runs

        return await self._retry_flagging(apply)

    async def flag_all_for_recompute(self) -> int:
        """Force a full recompute of every category on the next cycle, e.g. after a points setting changed"""
        async def apply():
            async with self.transaction() as session:
                result = await session.execute(select(Category.id))
                category_ids = list(result.scalars().all())
                for category_id in category_ids:
                    cursor = await self.get_or_create_cursor(session, category_id)
                    cursor.needs_recompute = True
            return len(category_ids)

        flagged = await self._retry_flagging(apply)
        self.logger.info(f"Flagged {flagged} categories for recompute")
        return flagged
