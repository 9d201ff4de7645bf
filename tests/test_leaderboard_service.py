import pytest

from boards.constants import BanReason, CategoryMode
from boards.services.leaderboard import LeaderboardService
from boards.services.proof_ingestion import ProofIngestionService
from boards.services.sync_engine import SyncEngine
from boards.utils.sync_exceptions import CategoryNotFoundError, RunNotFoundError
from tests.fakes import entry


@pytest.fixture
def populated(client):
    client.set_entries("lb-1", [
        entry("e1", "p1", 10.0, 0, name="Alice"),
        entry("e2", "p2", 9.5, 1, name="Bob"),
        entry("e3", "p3", 9.5, 2),
    ])
    client.set_entries("lb-coop", [
        entry("a", "p1", 120.0, 0),
        entry("b", "p4", 120.0, 5, name="Dana"),
        entry("c", "p5", 150.0, 0),
    ])
    return client


async def sync_all(db, client, settings):
    single = await db.create_category("Any%", "lb-1", "sp_a1", demo_threshold=2, video_threshold=1)
    coop = await db.create_category("Coop", "lb-coop", "mp_coop", mode=CategoryMode.COOP)
    await SyncEngine(db, client, settings=settings).run_cycle()
    return single.id, coop.id


def test_category_page_lists_ranked_runs(run_db, populated, settings):
    async def scenario(db):
        single_id, _ = await sync_all(db, populated, settings)
        service = LeaderboardService(db.session_factory)
        return await service.get_category_page(single_id, page=1, page_size=2), \
            await service.get_category_page(single_id, page=2, page_size=2)

    first, second = run_db(scenario)
    assert first.total_runs == 3
    assert first.total_pages == 2
    assert [(e.rank, e.player_names) for e in first.entries] == [(1, ("Bob",)), (2, ("p3",))]
    assert first.entries[0].proof_missing is True
    assert [e.entry_ids for e in second.entries] == [("e1",)]


def test_category_page_errors(run_db, populated, settings):
    async def scenario(db):
        single_id, _ = await sync_all(db, populated, settings)
        service = LeaderboardService(db.session_factory)
        with pytest.raises(CategoryNotFoundError):
            await service.get_category_page(9999)
        with pytest.raises(ValueError):
            await service.get_category_page(single_id, page=0)
        with pytest.raises(ValueError):
            await service.get_category_page(single_id, page_size=500)

    run_db(scenario)


def test_player_runs_include_coop_runs(run_db, populated, settings):
    async def scenario(db):
        await sync_all(db, populated, settings)
        service = LeaderboardService(db.session_factory)
        return await service.get_player_runs("p1"), await service.get_player_runs("nobody")

    runs, unknown = run_db(scenario)
    assert unknown == []
    assert {(run.category_name, run.entry_ids) for run in runs} == {("Any%", ("e1",)), ("Coop", ("a", "b"))}
    coop_run = next(run for run in runs if run.category_name == "Coop")
    assert coop_run.player_names == ("Alice", "Dana")


def test_coop_pairs_and_unpaired_runs(run_db, populated, settings):
    async def scenario(db):
        single_id, coop_id = await sync_all(db, populated, settings)
        service = LeaderboardService(db.session_factory)
        return (
            await service.get_coop_pairs(coop_id),
            await service.get_unpaired_runs(coop_id),
            await service.get_unpaired_runs(single_id),
        )

    pairs, unpaired, single_unpaired = run_db(scenario)
    assert len(pairs) == 1
    pair = pairs[0]
    assert (pair.player1_name, pair.player2_name) == ("Alice", "Dana")
    assert pair.rank == 1
    assert pair.timestamp_delta_seconds == 5.0
    assert [run.entry_id for run in unpaired] == ["c"]
    assert single_unpaired == []


def test_points_ranking_orders_by_total(run_db, populated, settings):
    async def scenario(db):
        await sync_all(db, populated, settings)
        return await LeaderboardService(db.session_factory).get_points_ranking()

    page = run_db(scenario)
    totals = [entry.total_points for entry in page.entries]
    assert totals == sorted(totals, reverse=True)
    assert page.entries[0].display_name == "Alice"
    assert "p5" not in {entry.external_id for entry in page.entries}
    assert [entry.rank for entry in page.entries] == list(range(1, len(page.entries) + 1))


def test_cache_is_served_until_cleared(run_db, populated, settings):
    async def scenario(db):
        single_id, _ = await sync_all(db, populated, settings)
        service = LeaderboardService(db.session_factory)
        before = await service.get_category_page(single_id)
        await db.set_player_banned("p2", True)
        await SyncEngine(db, populated, settings=settings).run_cycle()
        cached = await service.get_category_page(single_id)
        await service.clear_cache()
        fresh = await service.get_category_page(single_id)
        return before, cached, fresh

    before, cached, fresh = run_db(scenario)
    assert cached == before
    assert fresh.total_runs == 2
    assert "Bob" not in {name for e in fresh.entries for name in e.player_names}


def test_mark_proof_reaches_source_and_merged_runs(run_db, populated, settings):
    async def scenario(db):
        await sync_all(db, populated, settings)
        proof = ProofIngestionService(db.session_factory)
        marked = await proof.mark_proof("b", video=True)
        with pytest.raises(RunNotFoundError):
            await proof.mark_proof("missing", demo=True)
        with pytest.raises(ValueError):
            await proof.mark_proof("b")
        return marked

    marked = run_db(scenario)
    assert len(marked) == 2
    assert {run.coop_pair_id is not None for run in marked} == {True, False}
    assert all(run.video_satisfied and not run.demo_satisfied for run in marked)


def test_run_history_keeps_replaced_times(run_db, populated, settings):
    async def scenario(db):
        single_id, _ = await sync_all(db, populated, settings)
        populated.set_entries("lb-1", [
            entry("e1", "p1", 9.0, 40, name="Alice"),
            entry("e2", "p2", 9.5, 1, name="Bob"),
            entry("e3", "p3", 9.5, 2),
        ])
        await SyncEngine(db, populated, settings=settings).run_cycle()
        service = LeaderboardService(db.session_factory)
        return (
            await service.get_run_history("p1"),
            await service.get_run_history("p1", single_id),
            await service.get_run_history("nobody"),
        )

    everything, single, unknown = run_db(scenario)
    assert [(row.category_name, row.entry_id, row.score) for row in everything] == [
        ("Any%", "e1", 10.0), ("Any%", "e1", 9.0), ("Coop", "a", 120.0)
    ]
    assert [row.score for row in single] == [10.0, 9.0]
    assert len({row.run_id for row in single}) == 1
    assert unknown == []


def test_banned_runs_list_run_and_player_bans(run_db, populated, settings):
    async def scenario(db):
        single_id, coop_id = await sync_all(db, populated, settings)
        await db.set_player_banned("p2", True)
        await db.set_run_banned("e3", True)
        await SyncEngine(db, populated, settings=settings).run_cycle()
        service = LeaderboardService(db.session_factory)
        with pytest.raises(CategoryNotFoundError):
            await service.get_banned_runs(9999)
        return (
            await service.get_banned_runs(single_id),
            await service.get_banned_runs(coop_id),
            await service.get_banned_runs(),
        )

    single, coop, everything = run_db(scenario)
    assert [(row.entry_ids, row.player_names, row.reason) for row in single] == [
        (("e2",), ("Bob",), BanReason.PLAYER),
        (("e3",), ("p3",), BanReason.RUN),
    ]
    assert coop == []
    assert everything == single


def test_previews_list_each_player_once(run_db, populated, settings):
    populated.set_entries("lb-1", [
        entry("e1", "p1", 10.0, 0, name="Alice"),
        entry("e2", "p2", 9.5, 1, name="Bob"),
        entry("e3", "p3", 9.5, 2),
        entry("e4", "p1", 9.0, 3, name="Alice"),
    ])

    async def scenario(db):
        await sync_all(db, populated, settings)
        service = LeaderboardService(db.session_factory)
        with pytest.raises(ValueError):
            await service.get_previews(limit=0)
        return await service.get_previews(), await service.get_previews("sp_a1", limit=2)

    previews, limited = run_db(scenario)
    by_name = {preview.category_name: preview for preview in previews}
    assert set(by_name) == {"Any%", "Coop"}
    assert [(e.rank, e.entry_ids) for e in by_name["Any%"].entries] == [(1, ("e4",)), (2, ("e2",)), (3, ("e3",))]
    assert [e.player_names for e in by_name["Coop"].entries] == [("Alice", "Dana")]

    assert [preview.map_id for preview in limited] == ["sp_a1"]
    assert [e.entry_ids for e in limited[0].entries] == [("e4",), ("e2",)]
