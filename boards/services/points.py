"""
Points calculator.

A change anywhere in a category re-ranks the whole category: every rankable
run gets a fresh rank and points from the configured strategy, everything
else drops to no rank and zero points. Player totals are then rebuilt from
each player's best run per category, one player per transaction so that
concurrent categories only contend on the players they share.
"""

import logging
from typing import Dict, Iterable, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from boards.constants import PointsConstants
from boards.data_models.sync import PointsResult, SyncSettings
from boards.database.models import Category, CoopPair, Player, Run
from boards.services.base import BaseService
from boards.utils.ranking import (
    CategorySnapshot, is_rankable, load_category_snapshot, order_runs, quarantine_invalid_runs
)
from boards.utils.scoring_strategies import coop_share, get_points_strategy

logger = logging.getLogger(__name__)


class PointsCalculator(BaseService):
    """Recomputes ranks and points per category and cached player totals."""

    def __init__(self, session_factory, settings: Optional[SyncSettings] = None):
        super().__init__(session_factory)
        self.settings = settings or SyncSettings()
        self.strategy = get_points_strategy(
            self.settings.points_strategy,
            self.settings.base_points,
            self.settings.results_cutoff
        )

    async def recompute(
        self,
        session: AsyncSession,
        category: Category,
        snapshot: Optional[CategorySnapshot] = None
    ) -> PointsResult:
        """
        Re-rank every run of the category.

        The result lists the players whose runs changed rank or points.
        Totals are not touched here; see update_player_totals.
        """
        result = PointsResult()
        if snapshot is None:
            snapshot = await load_category_snapshot(session, category)
        result.quarantined = quarantine_invalid_runs(snapshot)

        ranked = order_runs(run for run in snapshot.runs if is_rankable(run, snapshot))
        ranked_ids = {run.id for run in ranked}
        best_score = ranked[0].score if ranked else None

        for rank, run in enumerate(ranked, start=1):
            points = self.strategy.points_for(rank, run.score, best_score)
            if self._assign(run, rank, points):
                result.changed += 1
                result.player_ids.update(self._owners(run, snapshot))
        result.ranked = len(ranked)

        for run in snapshot.runs:
            if run.id in ranked_ids:
                continue
            result.excluded += 1
            if self._assign(run, None, 0.0):
                result.changed += 1
                result.player_ids.update(self._owners(run, snapshot))

        await session.flush()
        logger.info(
            f"Category {category.id}: ranked {result.ranked} run(s) with {self.strategy.get_strategy_name()}, "
            f"{result.changed} changed, {result.excluded} excluded"
        )
        return result

    @staticmethod
    def _assign(run: Run, rank: Optional[int], points: float) -> bool:
        if run.rank == rank and run.points == points:
            return False
        run.rank = rank
        run.points = points
        return True

    @staticmethod
    def _owners(run: Run, snapshot: CategorySnapshot):
        if run.player_id is not None:
            return {run.player_id}
        pair = snapshot.pair_for(run)
        return set(pair.player_ids) if pair is not None else set()

    async def compute_player_total(self, session: AsyncSession, player_id: int) -> float:
        """Sum over categories of the player's best ranked run, coop runs via either pair slot."""
        best: Dict[int, float] = {}

        single = await session.execute(
            select(Run.category_id, Run.points).where(
                Run.player_id == player_id,
                Run.coop_pair_id.is_(None),
                Run.is_active == True,
                Run.rank.isnot(None)
            )
        )
        for category_id, points in single:
            best[category_id] = max(best.get(category_id, 0.0), points or 0.0)

        coop = await session.execute(
            select(Run.category_id, Run.points)
            .join(CoopPair, Run.coop_pair_id == CoopPair.id)
            .where(
                or_(CoopPair.player1_id == player_id, CoopPair.player2_id == player_id),
                CoopPair.dissolved_at.is_(None),
                Run.is_active == True,
                Run.rank.isnot(None)
            )
        )
        for category_id, points in coop:
            share = coop_share(points or 0.0, self.settings.coop_mode)
            best[category_id] = max(best.get(category_id, 0.0), share)

        return round(sum(best.values()), PointsConstants.PRECISION)

    async def update_player_totals(self, player_ids: Iterable[int]) -> int:
        """Refresh cached totals, retrying each player on a version conflict. Returns how many changed."""
        updated = 0
        for player_id in sorted(set(player_ids)):
            async def update_total(player_id=player_id) -> bool:
                async with self.get_session() as session:
                    player = await session.get(Player, player_id)
                    if player is None:
                        logger.warning(f"Player {player_id} vanished before its total could be updated")
                        return False
                    total = await self.compute_player_total(session, player_id)
                    if player.total_points == total:
                        return False
                    player.total_points = total
                    return True

            if await self.execute_with_retry(update_total):
                updated += 1

        if updated:
            logger.info(f"Updated total points for {updated} player(s)")
        return updated
