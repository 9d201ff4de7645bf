"""
Base service class for the Boards sync engine.

Provides async database session management and the optimistic concurrency
retry loop shared by every service that writes versioned records.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from boards.utils.sync_exceptions import ConflictError

logger = logging.getLogger(__name__)

class BaseService:
    """Base class for all services with async database session management."""

    def __init__(self, session_factory):
        """
        Initialize base service with session factory.

        Args:
            session_factory: Async session factory from Database class
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except StaleDataError as e:
            await session.rollback()
            raise ConflictError("versioned record", str(e)) from e
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(self, func: Callable, max_retries: int = 5) -> Any:
        """
        Execute a read-modify-write unit, re-running it from scratch when a
        concurrent writer bumped a version counter first.

        func must open its own session so every attempt re-reads fresh rows.
        """
        for attempt in range(max_retries):
            try:
                return await func()
            except (ConflictError, StaleDataError) as e:
                if attempt == max_retries - 1:
                    raise ConflictError(getattr(func, '__name__', 'unit'), f"gave up after {max_retries} attempts") from e
                logger.warning(f"Version conflict, retry attempt {attempt + 1} for {getattr(func, '__name__', func)}: {e}")
                await asyncio.sleep(0.05 * (2 ** attempt))  # Exponential backoff
