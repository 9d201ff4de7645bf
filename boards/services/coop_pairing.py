"""
Coop pairing resolver.

The upstream records a cooperative run as two independent entries, one per
partner, that report the same shared time. This module merges such entries
into a CoopPair owning one merged Run.

Matching rule: candidates must share the exact score, belong to different
players and have submission timestamps within the tolerance window. Closest
timestamps pair first; ties fall back to entry id order. A player takes part
in at most one active pair per category, and an existing pair is never
re-paired. It only dissolves once both of its source entries are gone.
"""

import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boards.constants import PairingBasis, QuarantineReason
from boards.data_models.sync import PairingResult
from boards.database.models import Category, CoopPair, Player, Run
from boards.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class CoopPairingResolver:
    """Keeps a coop category's pairs in step with its per-player source runs."""

    def __init__(self, tolerance_seconds: float = 60.0):
        if tolerance_seconds < 0:
            raise ValueError(f"tolerance_seconds must be non-negative, got {tolerance_seconds}")
        self.tolerance_seconds = float(tolerance_seconds)

    async def resolve(self, session: AsyncSession, category: Category, now: Optional[datetime] = None) -> PairingResult:
        result = PairingResult()
        if not category.is_coop:
            return result
        now = now or utcnow()

        sources = await self._load_sources(session, category)
        pairs = await self._load_pairs(session, category)
        merged_runs = await self._load_merged_runs(session, category)
        by_entry: Dict[Tuple[int, str], Run] = {(run.player_id, run.entry_id): run for run in sources}

        busy_players: Set[int] = set()
        for pair in pairs.values():
            if not pair.is_active:
                continue
            merged = merged_runs.get(pair.id)
            pair_sources = [by_entry.get((pair.player1_id, pair.entry_id1)), by_entry.get((pair.player2_id, pair.entry_id2))]
            if self._maintain(pair, merged, pair_sources, now, result):
                busy_players.update(pair.player_ids)

        await self._form_pairs(session, category, sources, pairs, merged_runs, busy_players, now, result)
        await session.flush()

        if result.formed or result.dissolved:
            logger.info(
                f"Category {category.id}: {result.formed} pair(s) formed, {result.dissolved} dissolved, "
                f"{result.unpaired} run(s) waiting for a partner"
            )
        return result

    def _maintain(
        self,
        pair: CoopPair,
        merged: Optional[Run],
        pair_sources: List[Optional[Run]],
        now: datetime,
        result: PairingResult
    ) -> bool:
        """Update an active pair from its sources. Returns False if the pair dissolved."""
        active_sources = [run for run in pair_sources if run is not None and run.is_active]

        if not active_sources:
            pair.dissolved_at = now
            if merged is not None and merged.is_active:
                merged.is_active = False
                merged.removed_at = now
            for run in pair_sources:
                if run is not None:
                    run.merged_into_run_id = None
            result.dissolved += 1
            logger.info(f"Pair {pair.id} dissolved: entries {pair.entry_id1} and {pair.entry_id2} both gone upstream")
            return False

        if merged is None:
            # Nothing to rank; the pair still holds its players
            logger.error(f"Pair {pair.id} has no merged run")
            return True

        scores = {run.score for run in active_sources}
        if len(scores) > 1:
            if not merged.quarantined:
                merged.quarantined = True
                merged.quarantine_reason = QuarantineReason.DIVERGED_SCORES
                result.quarantined += 1
                logger.error(
                    f"Quarantined merged run {merged.id} of pair {pair.id}: "
                    f"source scores diverged {sorted(scores)}"
                )
            return True

        if merged.quarantined and merged.quarantine_reason == QuarantineReason.DIVERGED_SCORES:
            merged.quarantined = False
            merged.quarantine_reason = None
            logger.info(f"Merged run {merged.id} of pair {pair.id} released from quarantine, scores agree again")

        score = scores.pop()
        submitted_at = min(run.submitted_at for run in active_sources)
        if merged.score != score or merged.submitted_at != submitted_at:
            merged.score = score
            merged.submitted_at = submitted_at
            result.updated += 1
        return True

    async def _form_pairs(
        self,
        session: AsyncSession,
        category: Category,
        sources: List[Run],
        pairs: Dict[int, CoopPair],
        merged_runs: Dict[int, Run],
        busy_players: Set[int],
        now: datetime,
        result: PairingResult
    ) -> None:
        banned = await self._banned_player_ids(session, {run.player_id for run in sources})

        groups: Dict[float, List[Run]] = defaultdict(list)
        for run in sources:
            if (
                run.is_active
                and not run.is_banned
                and not run.quarantined
                and run.merged_into_run_id is None
                and run.player_id not in banned
            ):
                groups[run.score].append(run)

        dissolved_by_entries = {
            (pair.entry_id1, pair.entry_id2): pair for pair in pairs.values() if not pair.is_active
        }

        for score in sorted(groups):
            candidates = groups[score]
            used: Set[int] = set()
            for delta, first, second in self._candidate_matches(candidates):
                if first.id in used or second.id in used:
                    continue
                if first.player_id in busy_players or second.player_id in busy_players:
                    continue

                previous = dissolved_by_entries.get((first.entry_id, second.entry_id))
                await self._pair(session, category, first, second, delta, previous, merged_runs, now)
                used.update((first.id, second.id))
                busy_players.update((first.player_id, second.player_id))
                result.formed += 1

            result.unpaired += sum(1 for run in candidates if run.id not in used)

    def _candidate_matches(self, candidates: List[Run]) -> List[Tuple[float, Run, Run]]:
        """Every admissible match within one score group, closest timestamps first."""
        matches = []
        for i, a in enumerate(candidates):
            for b in candidates[i + 1:]:
                if a.player_id == b.player_id:
                    continue
                delta = abs((a.submitted_at - b.submitted_at).total_seconds())
                if delta > self.tolerance_seconds:
                    continue
                first, second = sorted((a, b), key=lambda run: (run.entry_id, run.player_id))
                matches.append((delta, first, second))
        matches.sort(key=lambda match: (match[0], match[1].entry_id, match[2].entry_id))
        return matches

    async def _pair(
        self,
        session: AsyncSession,
        category: Category,
        first: Run,
        second: Run,
        delta: float,
        previous: Optional[CoopPair],
        merged_runs: Dict[int, Run],
        now: datetime
    ) -> Run:
        submitted_at = min(first.submitted_at, second.submitted_at)
        merged = merged_runs.get(previous.id) if previous is not None else None

        if previous is not None and previous.player_ids == (first.player_id, second.player_id):
            # Same two entries came back after a dissolve: revive the old pair
            pair = previous
            pair.dissolved_at = None
            pair.timestamp_delta_seconds = delta
            logger.info(f"Pair {pair.id} revived for entries {first.entry_id} and {second.entry_id}")
        else:
            pair = CoopPair(
                category_id=category.id,
                player1_id=first.player_id,
                player2_id=second.player_id,
                entry_id1=first.entry_id,
                entry_id2=second.entry_id,
                matched_basis=json.dumps([PairingBasis.SAME_SCORE, PairingBasis.TIMESTAMP_WINDOW]),
                timestamp_delta_seconds=delta,
                created_at=now,
            )
            session.add(pair)
            await session.flush()
            merged = None
            logger.info(
                f"Category {category.id}: paired entries {first.entry_id} and {second.entry_id} "
                f"(players {first.player_id}/{second.player_id}, delta {delta:.1f}s) as pair {pair.id}"
            )

        if merged is None:
            merged = Run(
                category_id=category.id,
                coop_pair_id=pair.id,
                entry_id=first.entry_id,
                partner_entry_id=second.entry_id,
                score=first.score,
                submitted_at=submitted_at,
                is_active=True,
                demo_satisfied=bool(first.demo_satisfied or second.demo_satisfied),
                video_satisfied=bool(first.video_satisfied or second.video_satisfied),
            )
            session.add(merged)
            await session.flush()
            merged_runs[pair.id] = merged
        else:
            merged.is_active = True
            merged.removed_at = None
            merged.score = first.score
            merged.submitted_at = submitted_at
            merged.demo_satisfied = bool(merged.demo_satisfied or first.demo_satisfied or second.demo_satisfied)
            merged.video_satisfied = bool(merged.video_satisfied or first.video_satisfied or second.video_satisfied)

        first.merged_into_run_id = merged.id
        second.merged_into_run_id = merged.id
        return merged

    async def _load_sources(self, session: AsyncSession, category: Category) -> List[Run]:
        result = await session.execute(
            select(Run)
            .where(Run.category_id == category.id, Run.player_id.isnot(None))
            .order_by(Run.entry_id, Run.id)
        )
        return list(result.scalars().all())

    async def _load_pairs(self, session: AsyncSession, category: Category) -> Dict[int, CoopPair]:
        result = await session.execute(
            select(CoopPair).where(CoopPair.category_id == category.id).order_by(CoopPair.id)
        )
        return {pair.id: pair for pair in result.scalars().all()}

    async def _load_merged_runs(self, session: AsyncSession, category: Category) -> Dict[int, Run]:
        result = await session.execute(
            select(Run).where(Run.category_id == category.id, Run.coop_pair_id.isnot(None))
        )
        return {run.coop_pair_id: run for run in result.scalars().all()}

    async def _banned_player_ids(self, session: AsyncSession, player_ids: Set[int]) -> Set[int]:
        if not player_ids:
            return set()
        result = await session.execute(
            select(Player.id).where(Player.id.in_(player_ids), Player.is_banned == True)
        )
        return set(result.scalars().all())
