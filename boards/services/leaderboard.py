"""
Leaderboard service: the read-only public view of reconciled state.

Boards and previews show only ranked runs (active, not excluded, rank assigned
by the last committed recompute). The history and banned listings cover what
the boards leave out. Results are cached briefly; the sync cog clears the
cache after every cycle.
"""

from typing import Dict, Iterable, List, Optional, Tuple
import asyncio
import json
import time
import logging

from sqlalchemy import select, func, or_

from boards.constants import BanReason, PaginationConstants
from boards.data_models.leaderboard import (
    BannedRunEntry, CategoryPage, CategoryPreview, CoopPairEntry, PointsEntry, PointsPage,
    RunEntry, RunHistoryEntry, UnpairedRunEntry
)
from boards.database.models import Category, CoopPair, Player, Run, RunHistory
from boards.services.base import BaseService
from boards.utils.sync_exceptions import CategoryNotFoundError

logger = logging.getLogger(__name__)


class LeaderboardService(BaseService):
    """Read queries over categories, runs, coop pairs and player totals."""

    def __init__(self, session_factory, cache_ttl: float = 60):
        super().__init__(session_factory)
        self._cache = {}
        self._cache_timestamps = {}
        self._cache_ttl = cache_ttl
        self._cache_lock = asyncio.Lock()

    async def _cached(self, key: str):
        async with self._cache_lock:
            stamp = self._cache_timestamps.get(key)
            if stamp is not None and time.time() - stamp < self._cache_ttl:
                return self._cache[key]
            return None

    async def _store(self, key: str, value):
        async with self._cache_lock:
            self._cache[key] = value
            self._cache_timestamps[key] = time.time()

    async def clear_cache(self):
        async with self._cache_lock:
            self._cache.clear()
            self._cache_timestamps.clear()

    @staticmethod
    def _validate_paging(page: int, page_size: int):
        if not isinstance(page, int) or page < 1:
            raise ValueError("page must be a positive integer")
        if not isinstance(page_size, int) or page_size < 1 or page_size > PaginationConstants.MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {PaginationConstants.MAX_PAGE_SIZE}")

    async def get_category_page(
        self,
        category_id: int,
        page: int = 1,
        page_size: int = PaginationConstants.DEFAULT_PAGE_SIZE
    ) -> CategoryPage:
        """Get one page of a category's ranked runs."""
        self._validate_paging(page, page_size)
        cache_key = f"category:{category_id}:{page}:{page_size}"
        cached = await self._cached(cache_key)
        if cached is not None:
            return cached

        async with self.get_session() as session:
            category = await session.get(Category, category_id)
            if category is None:
                raise CategoryNotFoundError(str(category_id))

            ranked = (Run.category_id == category_id, Run.is_active == True, Run.rank.isnot(None))
            total_runs = await session.scalar(select(func.count(Run.id)).where(*ranked))

            result = await session.execute(
                select(Run).where(*ranked).order_by(Run.rank).limit(page_size).offset((page - 1) * page_size)
            )
            runs = list(result.scalars().all())
            names = await self._owner_names(session, runs)

            category_page = CategoryPage(
                entries=[self._to_entry(run, category, names) for run in runs],
                category_id=category.id,
                category_name=category.name,
                mode=category.mode,
                current_page=page,
                total_pages=(total_runs + page_size - 1) // page_size if total_runs > 0 else 1,
                total_runs=total_runs
            )

        await self._store(cache_key, category_page)
        return category_page

    async def get_player_runs(self, external_id: str) -> List[RunEntry]:
        """Every ranked run a player owns, alone or through a coop pair."""
        async with self.get_session() as session:
            player = await session.scalar(select(Player).where(Player.external_id == external_id))
            if player is None:
                return []

            pair_ids = select(CoopPair.id).where(
                or_(CoopPair.player1_id == player.id, CoopPair.player2_id == player.id)
            )
            result = await session.execute(
                select(Run, Category)
                .join(Category, Run.category_id == Category.id)
                .where(
                    Run.is_active == True,
                    Run.rank.isnot(None),
                    or_(Run.player_id == player.id, Run.coop_pair_id.in_(pair_ids))
                )
                .order_by(Category.name, Run.rank)
            )
            rows = result.all()
            names = await self._owner_names(session, [run for run, _ in rows])
            return [self._to_entry(run, category, names) for run, category in rows]

    async def get_coop_pairs(self, category_id: int) -> List[CoopPairEntry]:
        """Active pairs of a coop category, best ranked first."""
        async with self.get_session() as session:
            if await session.get(Category, category_id) is None:
                raise CategoryNotFoundError(str(category_id))

            result = await session.execute(
                select(CoopPair, Run)
                .outerjoin(Run, Run.coop_pair_id == CoopPair.id)
                .where(CoopPair.category_id == category_id, CoopPair.dissolved_at.is_(None))
                .order_by(Run.rank.is_(None), Run.rank, CoopPair.id)
            )
            rows = result.all()
            players = await self._players(session, (pid for pair, _ in rows for pid in pair.player_ids))

            entries = []
            for pair, run in rows:
                entries.append(CoopPairEntry(
                    pair_id=pair.id,
                    category_id=pair.category_id,
                    player1_name=self._name(players.get(pair.player1_id)),
                    player2_name=self._name(players.get(pair.player2_id)),
                    entry_id1=pair.entry_id1,
                    entry_id2=pair.entry_id2,
                    matched_basis=json.loads(pair.matched_basis or '[]'),
                    timestamp_delta_seconds=pair.timestamp_delta_seconds,
                    run_id=run.id if run else None,
                    rank=run.rank if run else None,
                    points=run.points if run else 0.0
                ))
            return entries

    async def get_unpaired_runs(self, category_id: int) -> List[UnpairedRunEntry]:
        """Coop entries still waiting for a partner."""
        async with self.get_session() as session:
            category = await session.get(Category, category_id)
            if category is None:
                raise CategoryNotFoundError(str(category_id))
            if not category.is_coop:
                return []

            result = await session.execute(
                select(Run, Player)
                .join(Player, Run.player_id == Player.id)
                .where(
                    Run.category_id == category_id,
                    Run.is_active == True,
                    Run.is_banned == False,
                    Run.quarantined == False,
                    Run.merged_into_run_id.is_(None),
                    Player.is_banned == False
                )
                .order_by(Run.score, Run.submitted_at, Run.entry_id)
            )
            return [
                UnpairedRunEntry(
                    run_id=run.id,
                    entry_id=run.entry_id,
                    player_name=self._name(player),
                    score=run.score,
                    submitted_at=run.submitted_at
                )
                for run, player in result.all()
            ]

    async def get_points_ranking(
        self,
        page: int = 1,
        page_size: int = PaginationConstants.DEFAULT_PAGE_SIZE
    ) -> PointsPage:
        """Cross-category ranking by cached total points."""
        self._validate_paging(page, page_size)
        cache_key = f"points:{page}:{page_size}"
        cached = await self._cached(cache_key)
        if cached is not None:
            return cached

        async with self.get_session() as session:
            eligible = (Player.is_banned == False, Player.total_points > 0)
            total_players = await session.scalar(select(func.count(Player.id)).where(*eligible))

            offset = (page - 1) * page_size
            result = await session.execute(
                select(Player)
                .where(*eligible)
                .order_by(Player.total_points.desc(), Player.id)
                .limit(page_size)
                .offset(offset)
            )
            entries = [
                PointsEntry(
                    rank=offset + index,
                    player_id=player.id,
                    external_id=player.external_id,
                    display_name=self._name(player),
                    total_points=player.total_points
                )
                for index, player in enumerate(result.scalars().all(), start=1)
            ]

        points_page = PointsPage(
            entries=entries,
            current_page=page,
            total_pages=(total_players + page_size - 1) // page_size if total_players > 0 else 1,
            total_players=total_players
        )
        await self._store(cache_key, points_page)
        return points_page

    async def get_run_history(self, external_id: str, category_id: Optional[int] = None) -> List[RunHistoryEntry]:
        """Every score a player's entries have held, oldest first within each category."""
        async with self.get_session() as session:
            player = await session.scalar(select(Player).where(Player.external_id == external_id))
            if player is None:
                return []

            query = (
                select(RunHistory, Category)
                .join(Category, RunHistory.category_id == Category.id)
                .where(RunHistory.player_id == player.id)
            )
            if category_id is not None:
                query = query.where(RunHistory.category_id == category_id)
            result = await session.execute(
                query.order_by(Category.name, RunHistory.recorded_at, RunHistory.id)
            )
            return [
                RunHistoryEntry(
                    run_id=row.run_id,
                    category_id=category.id,
                    category_name=category.name,
                    entry_id=row.entry_id,
                    score=row.score,
                    submitted_at=row.submitted_at,
                    recorded_at=row.recorded_at
                )
                for row, category in result.all()
            ]

    async def get_banned_runs(self, category_id: Optional[int] = None) -> List[BannedRunEntry]:
        """
        Active runs held out of ranking by a ban, for one category or all.

        Coop source rows already merged into a pair run are left out; the pair
        run stands for them.
        """
        async with self.get_session() as session:
            if category_id is not None and await session.get(Category, category_id) is None:
                raise CategoryNotFoundError(str(category_id))

            banned_players = select(Player.id).where(Player.is_banned == True)
            banned_pairs = select(CoopPair.id).where(
                or_(CoopPair.player1_id.in_(banned_players), CoopPair.player2_id.in_(banned_players))
            )
            query = (
                select(Run, Category)
                .join(Category, Run.category_id == Category.id)
                .where(
                    Run.is_active == True,
                    Run.merged_into_run_id.is_(None),
                    or_(
                        Run.is_banned == True,
                        Run.player_id.in_(banned_players),
                        Run.coop_pair_id.in_(banned_pairs)
                    )
                )
            )
            if category_id is not None:
                query = query.where(Run.category_id == category_id)
            result = await session.execute(
                query.order_by(Category.name, Run.score, Run.submitted_at, Run.entry_id)
            )
            rows = result.all()
            names = await self._owner_names(session, [run for run, _ in rows])

            return [
                BannedRunEntry(
                    run_id=run.id,
                    category_id=category.id,
                    category_name=category.name,
                    entry_ids=run.entry_ids,
                    player_names=names.get(run.id, ()),
                    score=run.score,
                    submitted_at=run.submitted_at,
                    reason=BanReason.RUN if run.is_banned else BanReason.PLAYER
                )
                for run, category in rows
            ]

    async def get_previews(
        self,
        map_id: Optional[str] = None,
        limit: int = PaginationConstants.PREVIEW_SIZE
    ) -> List[CategoryPreview]:
        """Top ranked runs of every active category (optionally one map), no player listed twice."""
        if not isinstance(limit, int) or limit < 1 or limit > PaginationConstants.MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {PaginationConstants.MAX_PAGE_SIZE}")
        cache_key = f"previews:{map_id}:{limit}"
        cached = await self._cached(cache_key)
        if cached is not None:
            return cached

        async with self.get_session() as session:
            query = select(Category).where(Category.is_active == True)
            if map_id is not None:
                query = query.where(Category.map_id == map_id)
            categories = (await session.execute(query.order_by(Category.map_id, Category.id))).scalars().all()

            previews = []
            for category in categories:
                runs = await self._unique_top_runs(session, category.id, limit)
                names = await self._owner_names(session, runs)
                previews.append(CategoryPreview(
                    category_id=category.id,
                    category_name=category.name,
                    map_id=category.map_id,
                    mode=category.mode,
                    entries=[self._to_entry(run, category, names) for run in runs]
                ))

        await self._store(cache_key, previews)
        return previews

    async def _unique_top_runs(self, session, category_id: int, limit: int) -> List[Run]:
        """Walk the board in rank order, skipping runs whose owners already appear."""
        picked: List[Run] = []
        seen = set()
        offset = 0
        while len(picked) < limit:
            result = await session.execute(
                select(Run)
                .where(Run.category_id == category_id, Run.is_active == True, Run.rank.isnot(None))
                .order_by(Run.rank)
                .limit(PaginationConstants.PREVIEW_SCAN_BATCH)
                .offset(offset)
            )
            batch = list(result.scalars().all())
            if not batch:
                break
            offset += len(batch)

            owners = await self._owner_ids(session, batch)
            for run in batch:
                ids = owners.get(run.id, ())
                if seen.intersection(ids):
                    continue
                seen.update(ids)
                picked.append(run)
                if len(picked) == limit:
                    break
        return picked

    async def _players(self, session, player_ids: Iterable[int]) -> Dict[int, Player]:
        ids = {pid for pid in player_ids if pid is not None}
        if not ids:
            return {}
        result = await session.execute(select(Player).where(Player.id.in_(ids)))
        return {player.id: player for player in result.scalars().all()}

    async def _owner_ids(self, session, runs: List[Run]) -> Dict[int, Tuple[int, ...]]:
        """Player id(s) owning each run, keyed by run id."""
        pair_ids = {run.coop_pair_id for run in runs if run.coop_pair_id}
        pairs = {}
        if pair_ids:
            result = await session.execute(select(CoopPair).where(CoopPair.id.in_(pair_ids)))
            pairs = {pair.id: pair for pair in result.scalars().all()}

        owners = {}
        for run in runs:
            if run.player_id is not None:
                owners[run.id] = (run.player_id,)
            else:
                pair = pairs.get(run.coop_pair_id)
                owners[run.id] = pair.player_ids if pair else ()
        return owners

    async def _owner_names(self, session, runs: List[Run]) -> Dict[int, Tuple[str, ...]]:
        """Display names of each run's owner(s), keyed by run id."""
        owners = await self._owner_ids(session, runs)
        players = await self._players(session, (pid for ids in owners.values() for pid in ids))
        return {
            run_id: tuple(self._name(players.get(pid)) for pid in ids)
            for run_id, ids in owners.items()
        }

    @staticmethod
    def _name(player: Optional[Player]) -> str:
        if player is None:
            return "Unknown"
        return player.display_name or player.external_id

    @staticmethod
    def _to_entry(run: Run, category: Category, names: Dict[int, Tuple[str, ...]]) -> RunEntry:
        return RunEntry(
            run_id=run.id,
            category_id=category.id,
            category_name=category.name,
            rank=run.rank,
            score=run.score,
            submitted_at=run.submitted_at,
            points=run.points,
            entry_ids=run.entry_ids,
            player_names=names.get(run.id, ()),
            demo_required=run.demo_required,
            video_required=run.video_required,
            demo_satisfied=run.demo_satisfied,
            video_satisfied=run.video_satisfied
        )
