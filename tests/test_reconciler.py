from datetime import timedelta

from sqlalchemy import func, select

from boards.database.models import Category, Player, Run, RunHistory
from boards.services.reconciler import Reconciler
from tests.fakes import T0, entry

LATER = T0 + timedelta(hours=1)
LATEST = T0 + timedelta(hours=2)


async def reconcile(db, category_id, entries, complete=True, seen_at=LATER, pass_started_at=None):
    async with db.transaction() as session:
        category = await session.get(Category, category_id)
        return await Reconciler().reconcile(
            session, category, entries, complete, seen_at=seen_at, pass_started_at=pass_started_at
        )


async def all_runs(db, category_id):
    async with db.get_session() as session:
        result = await session.execute(select(Run).where(Run.category_id == category_id).order_by(Run.entry_id))
        return list(result.scalars().all())


async def count(db, model):
    async with db.get_session() as session:
        return await session.scalar(select(func.count()).select_from(model))


def test_reconcile_creates_players_and_runs(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        result = await reconcile(db, category.id, [
            entry("e1", "p1", 10.0, 0, name="Alice"),
            entry("e2", "p2", 11.0, 5),
        ])
        runs = await all_runs(db, category.id)
        alice = await db.get_player_by_external_id("p1")
        return result, runs, alice

    result, runs, alice = run_db(scenario)
    assert (result.created, result.updated, result.removed) == (2, 0, 0)
    assert result.players_created == 2
    assert [run.entry_id for run in runs] == ["e1", "e2"]
    assert all(run.is_active for run in runs)
    assert alice.display_name == "Alice"
    assert alice.version_id == 1


def test_reconcile_is_idempotent(run_db):
    entries = [entry("e1", "p1", 10.0, 0), entry("e2", "p2", 11.0, 5)]

    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, entries, seen_at=LATER)
        before = [(r.id, r.score, r.submitted_at, r.is_active) for r in await all_runs(db, category.id)]
        second = await reconcile(db, category.id, entries, seen_at=LATEST)
        after = [(r.id, r.score, r.submitted_at, r.is_active) for r in await all_runs(db, category.id)]
        return second, before, after, await count(db, Player), await count(db, Run)

    second, before, after, players, runs = run_db(scenario)
    assert (second.created, second.updated, second.removed, second.unchanged) == (0, 0, 0, 2)
    assert second.players_created == 0
    assert before == after
    assert (players, runs) == (2, 2)


def test_changed_score_updates_run_in_place(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, [entry("e1", "p1", 10.0, 0)], seen_at=LATER)
        original = (await all_runs(db, category.id))[0]
        result = await reconcile(db, category.id, [entry("e1", "p1", 9.0, 30)], seen_at=LATEST)
        updated = (await all_runs(db, category.id))[0]
        return result, original, updated

    result, original, updated = run_db(scenario)
    assert result.updated == 1 and result.created == 0
    assert updated.id == original.id
    assert updated.score == 9.0
    assert updated.submitted_at == T0 + timedelta(seconds=30)


def test_partial_fetch_never_removes(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, [entry("e1", "p1", 10.0), entry("e2", "p2", 11.0)], seen_at=LATER)
        result = await reconcile(db, category.id, [entry("e1", "p1", 10.0)], complete=False, seen_at=LATEST)
        return result, await all_runs(db, category.id)

    result, runs = run_db(scenario)
    assert result.removed == 0
    assert all(run.is_active for run in runs)


def test_complete_fetch_flags_missing_runs_removed(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, [entry("e1", "p1", 10.0), entry("e2", "p2", 11.0)], seen_at=LATER)
        result = await reconcile(db, category.id, [entry("e1", "p1", 10.0)], complete=True, seen_at=LATEST)
        return result, await all_runs(db, category.id)

    result, runs = run_db(scenario)
    assert result.removed == 1
    by_entry = {run.entry_id: run for run in runs}
    assert by_entry["e1"].is_active is True
    # Removal keeps the row
    assert by_entry["e2"].is_active is False
    assert by_entry["e2"].removed_at == LATEST


def test_removal_honours_pass_start_across_pages(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, [entry(f"e{i}", f"p{i}", 10.0 + i) for i in range(3)], seen_at=T0)

        # A pass spanning two cycles: page one seen at LATER, last page at LATEST
        pass_started = LATER - timedelta(minutes=1)
        await reconcile(db, category.id, [entry("e0", "p0", 10.0)], complete=False, seen_at=LATER)
        result = await reconcile(
            db, category.id, [entry("e1", "p1", 11.0)], complete=True,
            seen_at=LATEST, pass_started_at=pass_started
        )
        return result, await all_runs(db, category.id)

    result, runs = run_db(scenario)
    assert result.removed == 1
    assert {run.entry_id: run.is_active for run in runs} == {"e0": True, "e1": True, "e2": False}


def test_reappearing_entry_is_reactivated(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, [entry("e1", "p1", 10.0), entry("e2", "p2", 11.0)], seen_at=T0)
        await reconcile(db, category.id, [entry("e1", "p1", 10.0)], seen_at=LATER)
        result = await reconcile(db, category.id, [entry("e1", "p1", 10.0), entry("e2", "p2", 11.0)], seen_at=LATEST)
        return result, await all_runs(db, category.id)

    result, runs = run_db(scenario)
    assert result.updated == 1
    assert result.created == 0
    assert all(run.is_active for run in runs)
    assert all(run.removed_at is None for run in runs)


def test_duplicate_identity_in_batch_creates_one_player(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        other = await db.create_category("Glitchless", "lb-2", "sp_a1")
        await reconcile(db, category.id, [entry("e1", "p1", 10.0), entry("e2", "p1", 12.0)])
        await reconcile(db, other.id, [entry("e9", "p1", 20.0)])
        return await count(db, Player), await count(db, Run)

    players, runs = run_db(scenario)
    assert players == 1
    assert runs == 3


def test_history_keeps_every_score_an_entry_held(run_db):
    async def scenario(db):
        category = await db.create_category("Any%", "lb-1", "sp_a1")
        await reconcile(db, category.id, [entry("e1", "p1", 10.0, 0)], seen_at=LATER)
        await reconcile(db, category.id, [entry("e1", "p1", 10.0, 0)], seen_at=LATER + timedelta(minutes=10))
        await reconcile(db, category.id, [entry("e1", "p1", 9.0, 30)], seen_at=LATEST)
        async with db.get_session() as session:
            result = await session.execute(select(RunHistory).order_by(RunHistory.id))
            history = list(result.scalars().all())
        return history, (await all_runs(db, category.id))[0]

    history, run = run_db(scenario)
    assert [(row.score, row.submitted_at, row.recorded_at) for row in history] == [
        (10.0, T0, LATER),
        (9.0, T0 + timedelta(seconds=30), LATEST),
    ]
    assert {row.run_id for row in history} == {run.id}
    assert {row.player_id for row in history} == {run.player_id}
