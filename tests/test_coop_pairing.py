import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from boards.constants import CategoryMode, PairingBasis, QuarantineReason
from boards.database.models import Category, CoopPair, Run
from boards.services.coop_pairing import CoopPairingResolver
from boards.services.reconciler import Reconciler
from tests.fakes import T0, entry


async def sync(db, category_id, entries, seen_at, tolerance=60):
    """Reconcile a complete fetch and resolve pairs, as one cycle would."""
    async with db.transaction() as session:
        category = await session.get(Category, category_id)
        await Reconciler().reconcile(session, category, entries, complete=True, seen_at=seen_at)
        return await CoopPairingResolver(tolerance).resolve(session, category, now=seen_at)


async def state(db, category_id):
    async with db.get_session() as session:
        pairs = (await session.execute(
            select(CoopPair).where(CoopPair.category_id == category_id).order_by(CoopPair.id)
        )).scalars().all()
        runs = (await session.execute(
            select(Run).where(Run.category_id == category_id).order_by(Run.id)
        )).scalars().all()
        return list(pairs), list(runs)


def merged_runs(runs):
    return [run for run in runs if run.coop_pair_id is not None]


def sources(runs):
    return {run.entry_id: run for run in runs if run.player_id is not None}


async def coop_category(db):
    return await db.create_category("Coop", "lb-coop", "mp_coop", mode=CategoryMode.COOP)


def test_two_entries_same_time_close_timestamps_pair(run_db):
    async def scenario(db):
        category = await coop_category(db)
        result = await sync(db, category.id, [
            entry("a", "p1", 120.0, 0),
            entry("b", "p2", 120.0, 2),
            entry("c", "p3", 120.0, 3600),
        ], seen_at=T0 + timedelta(hours=2))
        return result, await state(db, category.id)

    result, (pairs, runs) = run_db(scenario)
    assert result.formed == 1
    assert result.unpaired == 1
    assert len(pairs) == 1
    pair = pairs[0]
    assert (pair.entry_id1, pair.entry_id2) == ("a", "b")
    assert pair.timestamp_delta_seconds == pytest.approx(2.0)
    assert json.loads(pair.matched_basis) == [PairingBasis.SAME_SCORE, PairingBasis.TIMESTAMP_WINDOW]

    [merged] = merged_runs(runs)
    assert merged.player_id is None
    assert merged.entry_ids == ("a", "b")
    assert merged.score == 120.0
    assert merged.submitted_at == T0

    by_entry = sources(runs)
    assert by_entry["a"].merged_into_run_id == merged.id
    assert by_entry["b"].merged_into_run_id == merged.id
    assert by_entry["c"].merged_into_run_id is None


def test_nearest_timestamp_wins(run_db):
    async def scenario(db):
        category = await coop_category(db)
        await sync(db, category.id, [
            entry("a", "p1", 90.0, 0),
            entry("b", "p2", 90.0, 10),
            entry("c", "p3", 90.0, 12),
        ], seen_at=T0 + timedelta(hours=1))
        return await state(db, category.id)

    pairs, _ = run_db(scenario)
    assert [(p.entry_id1, p.entry_id2) for p in pairs] == [("b", "c")]


def test_equal_deltas_break_ties_by_entry_id(run_db):
    async def scenario(db):
        category = await coop_category(db)
        await sync(db, category.id, [
            entry("e3", "p3", 90.0, 10),
            entry("e2", "p2", 90.0, 5),
            entry("e1", "p1", 90.0, 0),
        ], seen_at=T0 + timedelta(hours=1))
        return await state(db, category.id)

    pairs, _ = run_db(scenario)
    assert [(p.entry_id1, p.entry_id2) for p in pairs] == [("e1", "e2")]


def test_different_scores_or_same_player_never_pair(run_db):
    async def scenario(db):
        category = await coop_category(db)
        result = await sync(db, category.id, [
            entry("a", "p1", 90.0, 0),
            entry("b", "p2", 91.0, 1),
            entry("c", "p3", 95.0, 0),
            entry("d", "p3", 95.0, 1),
        ], seen_at=T0 + timedelta(hours=1))
        return result, await state(db, category.id)

    result, (pairs, runs) = run_db(scenario)
    assert pairs == []
    assert merged_runs(runs) == []
    assert result.unpaired == 4


def test_existing_pair_is_not_repaired_and_player_stays_exclusive(run_db):
    async def scenario(db):
        category = await coop_category(db)
        first = [entry("a", "p1", 120.0, 0), entry("b", "p2", 120.0, 30)]
        await sync(db, category.id, first, seen_at=T0 + timedelta(hours=1))

        # A closer match for "a" and a second entry by p1 both show up later
        second = first + [entry("c", "p3", 120.0, 1), entry("d", "p1", 120.0, 2)]
        result = await sync(db, category.id, second, seen_at=T0 + timedelta(hours=2))
        return result, await state(db, category.id)

    result, (pairs, runs) = run_db(scenario)
    assert result.formed == 0
    assert [(p.entry_id1, p.entry_id2) for p in pairs] == [("a", "b")]
    by_entry = sources(runs)
    assert by_entry["c"].merged_into_run_id is None
    assert by_entry["d"].merged_into_run_id is None

    active_by_player = {}
    for pair in pairs:
        if pair.is_active:
            for player_id in pair.player_ids:
                active_by_player[player_id] = active_by_player.get(player_id, 0) + 1
    assert all(n == 1 for n in active_by_player.values())


def test_pair_survives_one_source_leaving_and_dissolves_when_both_leave(run_db):
    async def scenario(db):
        category = await coop_category(db)
        a, b = entry("a", "p1", 120.0, 0), entry("b", "p2", 120.0, 2)
        await sync(db, category.id, [a, b], seen_at=T0 + timedelta(hours=1))

        one_left = await sync(db, category.id, [a], seen_at=T0 + timedelta(hours=2))
        after_one = await state(db, category.id)

        both_left = await sync(db, category.id, [], seen_at=T0 + timedelta(hours=3))
        after_both = await state(db, category.id)
        return one_left, after_one, both_left, after_both

    one_left, (pairs1, runs1), both_left, (pairs2, runs2) = run_db(scenario)
    assert one_left.dissolved == 0
    assert pairs1[0].is_active
    assert merged_runs(runs1)[0].is_active is True

    assert both_left.dissolved == 1
    assert pairs2[0].dissolved_at is not None
    assert merged_runs(runs2)[0].is_active is False
    assert all(run.merged_into_run_id is None for run in sources(runs2).values())


def test_dissolved_pair_is_revived_when_both_entries_return(run_db):
    async def scenario(db):
        category = await coop_category(db)
        a, b = entry("a", "p1", 120.0, 0), entry("b", "p2", 120.0, 2)
        await sync(db, category.id, [a, b], seen_at=T0 + timedelta(hours=1))
        await sync(db, category.id, [], seen_at=T0 + timedelta(hours=2))
        result = await sync(db, category.id, [a, b], seen_at=T0 + timedelta(hours=3))
        return result, await state(db, category.id)

    result, (pairs, runs) = run_db(scenario)
    assert result.formed == 1
    assert len(pairs) == 1 and pairs[0].is_active
    [merged] = merged_runs(runs)
    assert merged.is_active is True


def test_diverging_partner_scores_quarantine_merged_run(run_db):
    async def scenario(db):
        category = await coop_category(db)
        await sync(db, category.id, [entry("a", "p1", 120.0, 0), entry("b", "p2", 120.0, 2)],
                   seen_at=T0 + timedelta(hours=1))
        diverged = await sync(db, category.id, [entry("a", "p1", 119.0, 0), entry("b", "p2", 120.0, 2)],
                              seen_at=T0 + timedelta(hours=2))
        after_diverge = merged_runs((await state(db, category.id))[1])[0]
        await sync(db, category.id, [entry("a", "p1", 119.0, 0), entry("b", "p2", 119.0, 2)],
                   seen_at=T0 + timedelta(hours=3))
        after_converge = merged_runs((await state(db, category.id))[1])[0]
        return diverged, after_diverge, after_converge

    diverged, after_diverge, after_converge = run_db(scenario)
    assert diverged.quarantined == 1
    assert after_diverge.quarantined is True
    assert after_diverge.quarantine_reason == QuarantineReason.DIVERGED_SCORES
    assert after_converge.quarantined is False
    assert after_converge.score == 119.0


def test_single_player_category_is_left_alone(run_db):
    async def scenario(db):
        category = await db.create_category("Solo", "lb-solo", "sp_a1")
        result = await sync(db, category.id, [entry("a", "p1", 120.0, 0), entry("b", "p2", 120.0, 1)],
                            seen_at=T0 + timedelta(hours=1))
        return result, await state(db, category.id)

    result, (pairs, runs) = run_db(scenario)
    assert result.formed == 0
    assert pairs == []
    assert merged_runs(runs) == []
