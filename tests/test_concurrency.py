import asyncio

import pytest
from sqlalchemy import select

from boards.database.models import Category, Player, Run
from boards.services.base import BaseService
from boards.services.points import PointsCalculator
from boards.services.reconciler import Reconciler
from boards.services.sync_engine import SyncEngine
from boards.utils.sync_exceptions import ConflictError
from tests.fakes import T0, entry


async def add_player(db, external_id="p1"):
    async with db.transaction() as session:
        player = Player(external_id=external_id, total_points=0.0)
        session.add(player)
    return player.id


def test_version_conflict_reruns_the_unit(run_db):
    async def scenario(db):
        player_id = await add_player(db)
        service = BaseService(db.session_factory)
        attempts = []

        async def add_ten():
            attempts.append(1)
            async with service.get_session() as session:
                player = await session.get(Player, player_id)
                player.total_points += 10
                if len(attempts) == 1:
                    # A concurrent writer commits first and bumps the version
                    async with db.transaction() as other:
                        rival = await other.get(Player, player_id)
                        rival.total_points += 5

        await service.execute_with_retry(add_ten)
        async with db.get_session() as session:
            player = await session.get(Player, player_id)
        return len(attempts), player.total_points, player.version_id

    attempts, total, version = run_db(scenario)
    assert attempts == 2
    assert total == 15.0
    assert version == 3


def test_retry_gives_up_with_conflict_error(run_db):
    async def scenario(db):
        service = BaseService(db.session_factory)
        calls = []

        async def always_conflicts():
            calls.append(1)
            raise ConflictError("player", "version moved")

        with pytest.raises(ConflictError):
            await service.execute_with_retry(always_conflicts, max_retries=3)
        return len(calls)

    assert run_db(scenario) == 3


def test_concurrent_total_updates_converge(run_db):
    async def scenario(db):
        first = await db.create_category("Any%", "lb-1", "sp_a1")
        second = await db.create_category("Glitchless", "lb-2", "sp_a1")
        async with db.transaction() as session:
            for category_id, score in ((first.id, 10.0), (second.id, 20.0)):
                category = await session.get(Category, category_id)
                await Reconciler().reconcile(
                    session, category, [entry(f"e{category_id}", "shared", score)], complete=True, seen_at=T0
                )

        player_ids = set()
        for category_id in (first.id, second.id):
            calculator = PointsCalculator(db.session_factory)
            async with db.transaction() as session:
                category = await session.get(Category, category_id)
                player_ids |= (await calculator.recompute(session, category)).player_ids

        await asyncio.gather(*(
            PointsCalculator(db.session_factory).update_player_totals(player_ids) for _ in range(4)
        ))
        async with db.get_session() as session:
            return (await session.execute(select(Player))).scalar_one()

    player = run_db(scenario)
    assert player.total_points == 400.0


def test_ban_committed_during_recompute_is_not_overwritten(run_db, client, settings):
    client.set_entries("lb-1", [entry("e1", "p1", 10.0), entry("e2", "p2", 11.0, 1)])

    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        engine = SyncEngine(db, client, settings=settings)
        await engine.run_cycle()
        await db.flag_all_for_recompute()

        apply = engine.proof_enforcer.apply
        calls = []

        async def apply_after_ban(session, current, snapshot):
            calls.append(1)
            if len(calls) == 1:
                # The recompute already holds a snapshot with p1 unbanned
                await db.set_player_banned("p1", True)
            return await apply(session, current, snapshot)

        engine.proof_enforcer.apply = apply_after_ban
        report = (await engine.run_cycle())[0]

        async with db.get_session() as session:
            runs = (await session.execute(select(Run).where(Run.category_id == category.id))).scalars().all()
            banned = await session.scalar(select(Player).where(Player.external_id == "p1"))
        return report, len(calls), {run.entry_id: run.rank for run in runs}, await db.get_cursor(category.id), banned

    report, attempts, ranks, cursor, banned = run_db(scenario)
    assert report.ok and report.recomputed
    assert attempts == 2
    assert ranks == {"e1": None, "e2": 1}
    assert cursor.needs_recompute is False
    assert banned.is_banned and banned.total_points == 0.0


def test_cursor_flag_write_retries_after_a_concurrent_commit(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        service = BaseService(db.session_factory)
        attempts = []

        async def clear_flag():
            attempts.append(1)
            async with service.get_session() as session:
                cursor = await db.get_or_create_cursor(session, category.id)
                seen = cursor.needs_recompute
                cursor.needs_recompute = False
                if len(attempts) == 1:
                    await db.set_category_thresholds(category.id, 1, 1)
            return seen

        seen = await service.execute_with_retry(clear_flag)
        return len(attempts), seen, await db.get_cursor(category.id)

    attempts, seen, cursor = run_db(scenario)
    assert attempts == 2
    assert seen is True
    assert cursor.needs_recompute is False
