"""
Sync engine: drives one reconciliation cycle across all active categories.

Per category, strictly in order:
1. Fetch pages from the persisted cursor. Each page is reconciled and the
   cursor advanced in a single transaction, so an interrupted cycle resumes
   after the last committed page and never half-applies one.
2. When the last page of a full pass commits, runs not seen since the pass
   started are marked removed in that same transaction.
3. If anything changed (now or in an earlier cycle that ran out of time),
   pairing, proof policy and points are recomputed in one transaction.
4. Totals of every player in the category are rewritten, one player at a
   time, under optimistic concurrency. The recompute commit marks the totals
   pending and only a finished rebuild clears the mark, so readers can briefly
   see new ranks beside old totals but a lost rebuild is redone next cycle.

Categories run concurrently on a bounded worker pool and share one token
bucket and one deadline. A failure in one category is logged and reported
but never stops the others.
"""

import asyncio
import logging
import time
from typing import Iterable, List, Optional

from boards.data_models.sync import AvatarRefreshSummary, CycleReport, FetchProgress, SyncSettings
from boards.database.database import Database
from boards.database.models import Category
from boards.services.avatar_refresher import AvatarRefresher
from boards.services.base import BaseService
from boards.services.coop_pairing import CoopPairingResolver
from boards.services.fetcher import Fetcher
from boards.services.leaderboard_client import EntryPage, ExternalLeaderboardClient
from boards.services.points import PointsCalculator
from boards.services.proof_policy import ProofPolicyEnforcer
from boards.services.rate_limiter import TokenBucket
from boards.services.reconciler import Reconciler
from boards.utils.ranking import load_category_snapshot, quarantine_invalid_runs
from boards.utils.sync_exceptions import FatalUpstreamError
from boards.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class SyncEngine(BaseService):

    def __init__(
        self,
        database: Database,
        client: ExternalLeaderboardClient,
        config_service=None,
        token_bucket: Optional[TokenBucket] = None,
        settings: Optional[SyncSettings] = None
    ):
        super().__init__(database.session_factory)
        self.database = database
        self.client = client
        self.config_service = config_service
        self.token_bucket = token_bucket
        self._owns_bucket = token_bucket is None
        self._fixed_settings = settings
        self.reconciler = Reconciler()
        self.proof_enforcer = ProofPolicyEnforcer()
        self._cycle_lock = asyncio.Lock()

    def load_settings(self) -> SyncSettings:
        if self._fixed_settings is not None:
            return self._fixed_settings
        if self.config_service is not None:
            return SyncSettings.from_config(self.config_service)
        return SyncSettings()

    def _bucket_for(self, settings: SyncSettings) -> TokenBucket:
        """Shared bucket, rebuilt only when an owned bucket's configured budget changed."""
        if self.token_bucket is None or (
            self._owns_bucket
            and (self.token_bucket.rate, self.token_bucket.capacity)
            != (float(settings.rate_limit_per_second), float(settings.rate_limit_burst))
        ):
            self.token_bucket = TokenBucket(settings.rate_limit_per_second, settings.rate_limit_burst)
        return self.token_bucket

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    async def run_cycle(self, category_ids: Optional[Iterable[int]] = None) -> List[CycleReport]:
        """Sync every active category (or the given ones) once. Cycles never overlap."""
        async with self._cycle_lock:
            settings = self.load_settings()
            bucket = self._bucket_for(settings)

            categories = await self.database.get_all_categories(active_only=True)
            if category_ids is not None:
                wanted = set(category_ids)
                categories = [category for category in categories if category.id in wanted]
            if not categories:
                logger.info("Sync cycle: no active categories")
                return []

            deadline = time.monotonic() + settings.cycle_deadline_seconds
            semaphore = asyncio.Semaphore(settings.max_workers)
            logger.info(
                f"Sync cycle starting for {len(categories)} categories "
                f"(workers={settings.max_workers}, deadline={settings.cycle_deadline_seconds:.0f}s)"
            )

            async def worker(category: Category) -> CycleReport:
                async with semaphore:
                    return await self.sync_category(category, settings, deadline, bucket)

            reports = await asyncio.gather(*(worker(category) for category in categories))

            failed = sum(1 for report in reports if not report.ok)
            partial = sum(1 for report in reports if report.ok and not report.complete)
            logger.info(
                f"Sync cycle finished: {len(reports) - failed - partial} complete, "
                f"{partial} partial, {failed} failed"
            )
            return list(reports)

    async def sync_category(
        self,
        category: Category,
        settings: Optional[SyncSettings] = None,
        deadline: Optional[float] = None,
        bucket: Optional[TokenBucket] = None
    ) -> CycleReport:
        """Run one category's cycle. Never raises; failures land on the report."""
        settings = settings or self.load_settings()
        bucket = bucket or self._bucket_for(settings)
        report = CycleReport(category_id=category.id, category_name=category.name)
        started = time.monotonic()

        try:
            await self._fetch_and_reconcile(category, settings, deadline, bucket, report)
            await self._recompute(category, settings, deadline, report)
        except FatalUpstreamError as e:
            report.error = str(e)
            logger.error(f"Category {category.id} '{category.name}' deactivated: {e}")
            await self._record_failure(category.id, str(e), deactivate=True)
        except Exception as e:
            report.error = str(e)
            logger.error(f"Category {category.id} '{category.name}' sync failed: {e}", exc_info=True)
            await self._record_failure(category.id, str(e))
        finally:
            report.duration = time.monotonic() - started

        if report.ok:
            logger.info(f"Sync {report.summary()}")
        return report

    async def _fetch_and_reconcile(
        self,
        category: Category,
        settings: SyncSettings,
        deadline: Optional[float],
        bucket: TokenBucket,
        report: CycleReport
    ) -> None:
        async def begin():
            async with self.get_session() as session:
                cursor = await self.database.get_or_create_cursor(session, category.id)
                if Fetcher.begin_pass(cursor):
                    logger.debug(f"Category {category.id}: starting a full pass")
                return cursor.position, cursor.pass_started_at

        start_position, pass_started_at = await self.execute_with_retry(begin)

        if start_position:
            logger.info(f"Category {category.id}: resuming pass at cursor {start_position}")

        fetcher = Fetcher(self.client, bucket, settings)
        progress = FetchProgress()
        async for page in fetcher.iter_pages(category, start_position, progress, deadline):
            result = await self.execute_with_retry(
                lambda page=page: self._commit_page(category.id, page, pass_started_at)
            )
            report.reconcile.merge(result)

        report.complete = progress.complete
        report.pages = progress.pages
        report.stop_reason = progress.stop_reason

        if not progress.complete:
            async def mark_partial():
                async with self.get_session() as session:
                    cursor = await self.database.get_or_create_cursor(session, category.id)
                    Fetcher.mark_partial(cursor, progress.stop_reason)

            await self.execute_with_retry(mark_partial)
            logger.warning(
                f"Category {category.id}: partial cycle ({progress.stop_reason}), "
                f"cursor left at {progress.last_cursor}"
            )

    async def _commit_page(self, category_id: int, page: EntryPage, pass_started_at):
        """Reconcile one page and advance the cursor past it atomically."""
        seen_at = utcnow()
        async with self.get_session() as session:
            category = await session.get(Category, category_id)
            result = await self.reconciler.apply_entries(session, category, page.entries, seen_at)
            cursor = await self.database.get_or_create_cursor(session, category_id)

            if page.is_last:
                result.removed += await self.reconciler.mark_removed(
                    session, category, pass_started_at or seen_at, now=seen_at
                )
                Fetcher.complete_pass(cursor, seen_at)
            else:
                Fetcher.commit_page(cursor, page)

            if result.changed:
                cursor.needs_recompute = True
            return result

    async def _recompute(
        self,
        category: Category,
        settings: SyncSettings,
        deadline: Optional[float],
        report: CycleReport
    ) -> None:
        cursor = await self.database.get_cursor(category.id)
        if not (cursor.needs_recompute or cursor.totals_pending):
            return
        if deadline is not None and time.monotonic() >= deadline:
            report.abandoned = True
            logger.warning(f"Category {category.id}: deadline passed, recompute deferred to the next cycle")
            return

        calculator = PointsCalculator(self.session_factory, settings)

        if cursor.needs_recompute:
            resolver = CoopPairingResolver(settings.coop_tolerance_seconds)

            async def derive():
                async with self.get_session() as session:
                    # Read before the snapshot so a flag set after it bumps the version
                    cursor = await self.database.get_or_create_cursor(session, category.id)
                    current = await session.get(Category, category.id)
                    pairing = await resolver.resolve(session, current)
                    snapshot = await load_category_snapshot(session, current)
                    quarantined = quarantine_invalid_runs(snapshot)
                    proof = await self.proof_enforcer.apply(session, current, snapshot)
                    points = await calculator.recompute(session, current, snapshot)
                    points.quarantined += quarantined
                    cursor.needs_recompute = False
                    cursor.totals_pending = True
                    return pairing, proof, points

            report.pairing, report.proof, report.points = await self.execute_with_retry(derive)
            report.recomputed = True
        else:
            logger.info(f"Category {category.id}: finishing player totals left pending by an earlier cycle")

        report.totals_updated = await self._rebuild_totals(category.id, calculator)

    async def _rebuild_totals(self, category_id: int, calculator: PointsCalculator) -> int:
        """
        Rewrite the total of every player the category has ever ranked, then
        clear totals_pending. Settings such as the coop share change totals
        without moving any run, so the whole category is covered, not only the
        players whose runs changed.
        """
        async with self.get_session() as session:
            category = await session.get(Category, category_id)
            snapshot = await load_category_snapshot(session, category)
        updated = await calculator.update_player_totals(snapshot.players.keys())

        async def settle():
            async with self.get_session() as session:
                cursor = await self.database.get_or_create_cursor(session, category_id)
                cursor.totals_pending = False

        await self.execute_with_retry(settle)
        return updated

    async def _record_failure(self, category_id: int, message: str, deactivate: bool = False) -> None:
        try:
            async with self.get_session() as session:
                cursor = await self.database.get_or_create_cursor(session, category_id)
                cursor.last_cycle_complete = False
                cursor.last_error = message[:1000]
                if deactivate:
                    category = await session.get(Category, category_id)
                    if category is not None:
                        category.is_active = False
        except Exception as e:
            logger.error(f"Could not record failure for category {category_id}: {e}")

    async def refresh_avatars(self, limit: int = 50, stale_after_hours: float = 72) -> AvatarRefreshSummary:
        """Refresh stale avatars through the same token bucket the fetchers use."""
        settings = self.load_settings()
        refresher = AvatarRefresher(
            self.session_factory,
            self.client,
            self._bucket_for(settings),
            settings.acquire_timeout_seconds
        )
        return await refresher.refresh_stale(limit=limit, stale_after_hours=stale_after_hours)
