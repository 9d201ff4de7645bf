"""
Reconciler: merges fetched upstream entries into persisted Players and Runs.

Runs are keyed by (category, owning player, upstream entry id). A changed
score or timestamp updates the run in place so its identity and proof state
survive, and every score the entry has held is appended to the run history.
Absence only counts once a full pass over the leaderboard completed; removed
runs are deactivated, never deleted.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from boards.data_models.sync import ReconcileResult
from boards.database.models import Category, Player, Run, RunHistory
from boards.services.leaderboard_client import RawEntry
from boards.utils.timestamps import utcnow, to_naive_utc

logger = logging.getLogger(__name__)


class Reconciler:
    """Diffs fetched entries against persisted runs and applies creates, updates and removals."""

    async def reconcile(
        self,
        session: AsyncSession,
        category: Category,
        entries: Iterable[RawEntry],
        complete: bool,
        seen_at: Optional[datetime] = None,
        pass_started_at: Optional[datetime] = None
    ) -> ReconcileResult:
        """
        Apply a fetched entry set in one go.

        When complete is True, every tracked run of the category not seen since
        pass_started_at (defaults to this call's seen_at, i.e. "not in entries")
        is marked removed. A partial fetch never removes anything.
        """
        seen_at = seen_at or utcnow()
        result = await self.apply_entries(session, category, entries, seen_at)
        if complete:
            result.removed += await self.mark_removed(
                session, category, pass_started_at or seen_at, now=seen_at
            )
        return result

    async def apply_entries(
        self,
        session: AsyncSession,
        category: Category,
        entries: Iterable[RawEntry],
        seen_at: datetime
    ) -> ReconcileResult:
        """Upsert players and runs for a batch of entries, stamping each run as seen."""
        result = ReconcileResult()

        # Last occurrence wins if the upstream repeats an entry within a batch
        batch: Dict[str, RawEntry] = {}
        for entry in entries:
            batch[entry.entry_id] = entry
        if not batch:
            return result

        players = await self._resolve_players(session, batch.values(), result)

        existing = await self._load_runs(session, category, batch.keys())

        for entry in batch.values():
            player = players[entry.external_id]
            result.player_ids.add(player.id)
            submitted_at = to_naive_utc(entry.submitted_at)
            run = existing.get((player.id, entry.entry_id))

            if run is None:
                run = Run(
                    category_id=category.id,
                    player_id=player.id,
                    entry_id=entry.entry_id,
                    score=entry.score,
                    submitted_at=submitted_at,
                    is_active=True,
                    last_seen_at=seen_at,
                )
                session.add(run)
                self._record_history(session, category, run, seen_at)
                existing[(player.id, entry.entry_id)] = run
                result.created += 1
                logger.debug(f"Category {category.id}: new run for entry {entry.entry_id} ({entry.score})")
                continue

            changed = False
            if run.score != entry.score or run.submitted_at != submitted_at:
                logger.info(
                    f"Category {category.id}: entry {entry.entry_id} changed "
                    f"{run.score}@{run.submitted_at} -> {entry.score}@{submitted_at}"
                )
                run.score = entry.score
                run.submitted_at = submitted_at
                self._record_history(session, category, run, seen_at)
                changed = True
            if not run.is_active:
                logger.info(f"Category {category.id}: entry {entry.entry_id} reappeared, reactivating run {run.id}")
                run.is_active = True
                run.removed_at = None
                changed = True

            run.last_seen_at = seen_at
            if changed:
                result.updated += 1
            else:
                result.unchanged += 1

        await session.flush()
        return result

    @staticmethod
    def _record_history(session: AsyncSession, category: Category, run: Run, recorded_at: datetime) -> None:
        session.add(RunHistory(
            run=run,
            category_id=category.id,
            player_id=run.player_id,
            entry_id=run.entry_id,
            score=run.score,
            submitted_at=run.submitted_at,
            recorded_at=recorded_at,
        ))

    async def mark_removed(
        self,
        session: AsyncSession,
        category: Category,
        pass_started_at: datetime,
        now: Optional[datetime] = None
    ) -> int:
        """
        Deactivate tracked runs not seen since the pass started.

        Only player-owned runs are tracked against the upstream; merged coop
        runs follow their source runs through the pairing resolver.
        """
        now = now or utcnow()
        result = await session.execute(
            select(Run).where(
                Run.category_id == category.id,
                Run.player_id.isnot(None),
                Run.is_active == True,
                or_(Run.last_seen_at.is_(None), Run.last_seen_at < pass_started_at)
            )
        )
        removed = 0
        for run in result.scalars().all():
            run.is_active = False
            run.removed_at = now
            removed += 1
            logger.info(f"Category {category.id}: entry {run.entry_id} gone upstream, run {run.id} marked removed")

        if removed:
            await session.flush()
        return removed

    async def _resolve_players(
        self,
        session: AsyncSession,
        entries: Iterable[RawEntry],
        result: ReconcileResult
    ) -> Dict[str, Player]:
        """Idempotent upsert of players by external identity."""
        names: Dict[str, Optional[str]] = {}
        for entry in entries:
            if entry.display_name or entry.external_id not in names:
                names[entry.external_id] = entry.display_name

        players = await self._select_players(session, names)
        missing = [external_id for external_id in names if external_id not in players]
        if missing:
            await self._insert_players(session, [
                {'external_id': external_id, 'display_name': names[external_id]}
                for external_id in missing
            ])
            players = await self._select_players(session, names)
            created = [external_id for external_id in missing if external_id in players]
            result.players_created += len(created)
            for external_id in created:
                logger.info(f"Created player {players[external_id].id} for external identity {external_id}")

        for external_id, display_name in names.items():
            player = players[external_id]
            if display_name and not player.display_name:
                player.display_name = display_name

        return players

    async def _select_players(self, session: AsyncSession, external_ids: Iterable[str]) -> Dict[str, Player]:
        found = await session.execute(
            select(Player).where(Player.external_id.in_(list(external_ids)))
        )
        return {player.external_id: player for player in found.scalars().all()}

    async def _insert_players(self, session: AsyncSession, rows: list) -> None:
        """
        INSERT ... ON CONFLICT DO NOTHING on the external identity, so a player
        created concurrently by another category's worker is reused.
        """
        dialect = session.bind.dialect.name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert

        now = utcnow()
        values = [
            {
                **row,
                'is_active': True,
                'is_banned': False,
                'total_points': 0.0,
                'version_id': 1,
                'created_at': now,
                'updated_at': now,
            }
            for row in rows
        ]
        await session.execute(
            insert(Player).values(values).on_conflict_do_nothing(index_elements=['external_id'])
        )

    async def _load_runs(
        self,
        session: AsyncSession,
        category: Category,
        entry_ids: Iterable[str]
    ) -> Dict[tuple, Run]:
        """Player-owned runs of the category for the given entry ids, keyed by (player_id, entry_id)."""
        result = await session.execute(
            select(Run).where(
                Run.category_id == category.id,
                Run.player_id.isnot(None),
                Run.entry_id.in_(list(entry_ids))
            )
        )
        return {(run.player_id, run.entry_id): run for run in result.scalars().all()}
