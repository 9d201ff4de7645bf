"""
Fetcher: paged retrieval of one category's upstream leaderboard.

Paging starts at the category's persisted cursor and stops at end-of-list, at
the page budget, when the cycle deadline passes, when no rate limit token can
be had in time, or when a page still fails after the retry cap. Only the last
four are "incomplete" outcomes; none of them raise, so the caller commits
everything fetched so far and resumes from the persisted cursor next time.

FatalUpstreamError is the one failure that propagates: the leaderboard itself
is gone and the category has to be deactivated.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Optional

from boards.data_models.sync import FetchProgress, FetchResult, SyncSettings
from boards.database.models import Category, SyncCursor
from boards.services.leaderboard_client import EntryPage, ExternalLeaderboardClient
from boards.services.rate_limiter import TokenBucket
from boards.utils.sync_exceptions import RateLimitTimeout, TransientUpstreamError
from boards.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class StopReason:
    DEADLINE = "deadline"
    PAGE_BUDGET = "page_budget"
    RATE_LIMIT = "rate_limit_timeout"
    RETRIES_EXHAUSTED = "retries_exhausted"


class Fetcher:
    """Drives paged retrieval per category through the shared token bucket."""

    def __init__(self, client: ExternalLeaderboardClient, token_bucket: TokenBucket, settings: SyncSettings):
        self.client = client
        self.token_bucket = token_bucket
        self.settings = settings

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    async def fetch_page(self, category: Category, cursor: int, deadline: Optional[float] = None) -> EntryPage:
        """
        Fetch one page, acquiring a token before every attempt and backing off
        exponentially between transient failures.

        Raises:
            RateLimitTimeout: no token before the acquire timeout or the deadline
            TransientUpstreamError: still failing after max_attempts
            FatalUpstreamError: leaderboard gone upstream (never retried)
        """
        attempts = self.settings.max_attempts
        for attempt in range(attempts):
            timeout = self.settings.acquire_timeout_seconds
            remaining = self._remaining(deadline)
            if remaining is not None:
                timeout = max(0.0, min(timeout, remaining))

            if not await self.token_bucket.acquire(timeout=timeout):
                raise RateLimitTimeout(timeout)

            try:
                return await self.client.list_entries(category.leaderboard_id, cursor, self.settings.page_size)
            except TransientUpstreamError as e:
                if attempt == attempts - 1:
                    raise
                delay = self.settings.backoff_base_seconds * (2 ** attempt)
                remaining = self._remaining(deadline)
                if remaining is not None:
                    if remaining <= 0:
                        raise
                    delay = min(delay, remaining)
                logger.warning(
                    f"Transient failure on category {category.id} page @{cursor} "
                    f"(attempt {attempt + 1}/{attempts}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def iter_pages(
        self,
        category: Category,
        start_cursor: int,
        progress: FetchProgress,
        deadline: Optional[float] = None
    ) -> AsyncIterator[EntryPage]:
        """
        Lazily yield pages from start_cursor. The sequence is finite (page
        budget) and restartable: calling again with the persisted cursor picks
        up after the last page the caller committed.

        progress is updated in place; progress.complete is True only when the
        end of the upstream list was reached.
        """
        cursor = start_cursor
        progress.last_cursor = cursor

        while True:
            if progress.pages >= self.settings.page_budget:
                progress.stop_reason = StopReason.PAGE_BUDGET
                return
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                progress.stop_reason = StopReason.DEADLINE
                return

            try:
                page = await self.fetch_page(category, cursor, deadline)
            except RateLimitTimeout as e:
                logger.warning(f"Category {category.id}: {e}; stopping at cursor {cursor}")
                progress.stop_reason = StopReason.RATE_LIMIT
                return
            except TransientUpstreamError as e:
                logger.error(f"Category {category.id}: abandoning page @{cursor} after retries: {e}")
                progress.stop_reason = StopReason.RETRIES_EXHAUSTED
                return

            progress.pages += 1
            progress.entries += len(page.entries)
            if page.is_last:
                progress.complete = True
                progress.stop_reason = None

            yield page

            if page.is_last:
                return
            cursor = page.next_cursor
            progress.last_cursor = cursor

    async def sync(self, category: Category, start_cursor: int = 0, deadline: Optional[float] = None) -> FetchResult:
        """Collect every page reachable in this cycle without touching the store."""
        progress = FetchProgress()
        entries = []
        async for page in self.iter_pages(category, start_cursor, progress, deadline):
            entries.extend(page.entries)
        return FetchResult(
            entries=entries,
            complete=progress.complete,
            pages=progress.pages,
            cursor=progress.last_cursor,
            stop_reason=progress.stop_reason
        )

    # Cursor bookkeeping, always called inside the page's reconcile transaction

    @staticmethod
    def begin_pass(cursor: SyncCursor, now=None) -> bool:
        """Stamp the start of a full pass when starting from the top. Returns True if a pass began."""
        if cursor.position == 0 or cursor.pass_started_at is None:
            cursor.position = 0
            cursor.pass_started_at = now or utcnow()
            return True
        return False

    @staticmethod
    def commit_page(cursor: SyncCursor, page: EntryPage) -> None:
        """Advance the cursor past a fully reconciled page."""
        if page.next_cursor is not None:
            cursor.position = page.next_cursor

    @staticmethod
    def complete_pass(cursor: SyncCursor, now=None) -> None:
        """End-of-list reached: rewind for the next pass and record success."""
        cursor.position = 0
        cursor.pass_started_at = None
        cursor.last_success_at = now or utcnow()
        cursor.last_cycle_complete = True
        cursor.last_error = None

    @staticmethod
    def mark_partial(cursor: SyncCursor, reason: Optional[str]) -> None:
        cursor.last_cycle_complete = False
        cursor.last_error = reason
