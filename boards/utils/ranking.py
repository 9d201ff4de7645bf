"""
Shared ranking utilities.

One ordering rule is used by the proof policy, the points calculator and the
read queries: ascending score, then earliest submission, then external entry
id. The rule is total, so two distinct runs never share a rank.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from boards.constants import QuarantineReason
from boards.database.models import Category, CoopPair, Player, Run
from boards.utils.sync_exceptions import DataInvariantViolation

logger = logging.getLogger(__name__)


def run_sort_key(run: Run) -> Tuple[float, object, str]:
    return (run.score, run.submitted_at, run.entry_id)


def order_runs(runs: Iterable[Run]) -> List[Run]:
    return sorted(runs, key=run_sort_key)


@dataclass
class CategorySnapshot:
    """Every run of one category plus the owners needed to judge rankability."""
    category: Category
    runs: List[Run]
    players: Dict[int, Player] = field(default_factory=dict)
    pairs: Dict[int, CoopPair] = field(default_factory=dict)

    def pair_for(self, run: Run) -> Optional[CoopPair]:
        return self.pairs.get(run.coop_pair_id) if run.coop_pair_id else None


async def load_category_snapshot(session: AsyncSession, category: Category) -> CategorySnapshot:
    """Load every run of a category with the players and pairs that own them."""
    result = await session.execute(
        select(Run).where(Run.category_id == category.id).order_by(Run.id)
    )
    runs = list(result.scalars().all())

    pair_result = await session.execute(
        select(CoopPair).where(CoopPair.category_id == category.id)
    )
    pairs = {pair.id: pair for pair in pair_result.scalars().all()}

    player_ids = {run.player_id for run in runs if run.player_id}
    for pair in pairs.values():
        player_ids.update(pair.player_ids)

    players = {}
    if player_ids:
        player_result = await session.execute(
            select(Player).where(Player.id.in_(player_ids))
        )
        players = {player.id: player for player in player_result.scalars().all()}

    return CategorySnapshot(category=category, runs=runs, players=players, pairs=pairs)


def check_run_invariants(run: Run, snapshot: CategorySnapshot) -> None:
    """
    Raise DataInvariantViolation if a run's ownership is structurally broken.

    Owner rules: exactly one of player/pair, the owner must exist, and a pair
    must reference two existing players.
    """
    record = f"run {run.id}"
    if run.player_id is not None and run.coop_pair_id is not None:
        raise DataInvariantViolation(record, QuarantineReason.TWO_OWNERS)
    if run.player_id is None and run.coop_pair_id is None:
        raise DataInvariantViolation(record, QuarantineReason.NO_OWNER)
    if run.player_id is not None and run.player_id not in snapshot.players:
        raise DataInvariantViolation(record, QuarantineReason.MISSING_PLAYER)
    if run.coop_pair_id is not None:
        pair = snapshot.pair_for(run)
        if pair is None or any(pid not in snapshot.players for pid in pair.player_ids):
            raise DataInvariantViolation(record, QuarantineReason.MISSING_PLAYER)


def quarantine_invalid_runs(snapshot: CategorySnapshot) -> int:
    """
    Quarantine every structurally broken run of the snapshot so the rest of
    the category can still be ranked. Returns the number newly quarantined.
    """
    quarantined = 0
    for run in snapshot.runs:
        if run.quarantined:
            continue
        try:
            check_run_invariants(run, snapshot)
        except DataInvariantViolation as e:
            run.quarantined = True
            run.quarantine_reason = e.reason
            quarantined += 1
            logger.error(f"Category {snapshot.category.id}: quarantined {e}")
    return quarantined


def is_rankable(run: Run, snapshot: CategorySnapshot) -> bool:
    """
    Whether a run takes part in ranking.

    Single-player categories rank player-owned runs. Coop categories rank only
    merged pair-owned runs; the per-player source rows never rank on their own,
    and an unpaired entry stays out until a partner appears.
    """
    if not run.is_active or run.is_banned or run.quarantined:
        return False

    if snapshot.category.is_coop:
        pair = snapshot.pair_for(run)
        if pair is None or not pair.is_active:
            return False
        return not any(snapshot.players[pid].is_banned for pid in pair.player_ids)

    if run.coop_pair_id is not None:
        return False
    return not snapshot.players[run.player_id].is_banned


async def find_runs_by_entry(session: AsyncSession, entry_id: str, category_id: Optional[int] = None) -> List[Run]:
    """Runs built from an upstream entry, either as primary or partner source."""
    query = select(Run).where(or_(Run.entry_id == entry_id, Run.partner_entry_id == entry_id))
    if category_id is not None:
        query = query.where(Run.category_id == category_id)
    result = await session.execute(query.order_by(Run.id))
    return list(result.scalars().all())
