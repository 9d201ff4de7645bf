import asyncio
import dataclasses
import time

import pytest

from boards.data_models.sync import FetchProgress
from boards.database.models import Category, SyncCursor
from boards.services.fetcher import Fetcher, StopReason
from boards.services.leaderboard_client import EntryPage
from boards.services.rate_limiter import TokenBucket
from boards.utils.sync_exceptions import FatalUpstreamError
from tests.fakes import entry

LB = "lb-1"


def make_category():
    return Category(id=1, name="Any%", leaderboard_id=LB, map_id="sp_a1", mode="single")


def five_entries():
    return [entry(f"e{i}", f"p{i}", 10.0 + i, i) for i in range(5)]


def make_fetcher(client, settings, bucket=None):
    return Fetcher(client, bucket or TokenBucket(1000, 1000), settings)


def test_sync_pages_to_end_of_list(client, settings):
    client.set_entries(LB, five_entries())
    result = asyncio.run(make_fetcher(client, settings).sync(make_category()))

    assert result.complete is True
    assert result.stop_reason is None
    assert result.pages == 3
    assert [e.entry_id for e in result.entries] == ["e0", "e1", "e2", "e3", "e4"]
    assert client.calls == [(LB, 0), (LB, 2), (LB, 4)]


def test_sync_starts_from_given_cursor(client, settings):
    client.set_entries(LB, five_entries())
    result = asyncio.run(make_fetcher(client, settings).sync(make_category(), start_cursor=2))

    assert result.complete is True
    assert [e.entry_id for e in result.entries] == ["e2", "e3", "e4"]
    assert client.calls[0] == (LB, 2)


def test_page_budget_stops_incomplete(client, settings):
    client.set_entries(LB, five_entries())
    budgeted = dataclasses.replace(settings, page_budget=2)
    result = asyncio.run(make_fetcher(client, budgeted).sync(make_category()))

    assert result.complete is False
    assert result.stop_reason == StopReason.PAGE_BUDGET
    assert result.pages == 2
    assert result.cursor == 4


def test_transient_errors_are_retried(client, settings):
    client.set_entries(LB, five_entries())
    client.fail(LB, times=2)
    result = asyncio.run(make_fetcher(client, settings).sync(make_category()))

    assert result.complete is True
    assert len(result.entries) == 5
    assert client.calls[:3] == [(LB, 0), (LB, 0), (LB, 0)]


def test_retry_exhaustion_abandons_page_without_raising(client, settings):
    client.set_entries(LB, five_entries())
    client.fail(LB, times=settings.max_attempts)
    result = asyncio.run(make_fetcher(client, settings).sync(make_category()))

    assert result.complete is False
    assert result.stop_reason == StopReason.RETRIES_EXHAUSTED
    assert result.entries == []
    assert result.cursor == 0


def test_fatal_error_propagates(client, settings):
    client.set_entries(LB, five_entries())
    client.fatal.add(LB)

    with pytest.raises(FatalUpstreamError):
        asyncio.run(make_fetcher(client, settings).sync(make_category()))
    assert len(client.calls) == 1


def test_rate_limit_timeout_signals_incomplete(client, settings):
    client.set_entries(LB, five_entries())
    bucket = TokenBucket(rate=0.001, capacity=1)
    short = dataclasses.replace(settings, acquire_timeout_seconds=0.05)
    result = asyncio.run(make_fetcher(client, short, bucket).sync(make_category()))

    # The single burst token buys exactly one page
    assert result.complete is False
    assert result.stop_reason == StopReason.RATE_LIMIT
    assert result.pages == 1
    assert result.cursor == 2


def test_expired_deadline_fetches_nothing(client, settings):
    client.set_entries(LB, five_entries())
    result = asyncio.run(
        make_fetcher(client, settings).sync(make_category(), deadline=time.monotonic() - 1)
    )

    assert result.stop_reason == StopReason.DEADLINE
    assert client.calls == []


def test_iter_pages_updates_progress_lazily(client, settings):
    client.set_entries(LB, five_entries())
    fetcher = make_fetcher(client, settings)

    async def scenario():
        progress = FetchProgress()
        pages = fetcher.iter_pages(make_category(), 0, progress)
        first = await pages.__anext__()
        seen_after_first = list(client.calls)
        await pages.aclose()
        return first, seen_after_first, progress

    first, calls, progress = asyncio.run(scenario())
    assert [e.entry_id for e in first.entries] == ["e0", "e1"]
    assert calls == [(LB, 0)]
    assert progress.pages == 1
    assert progress.complete is False


def test_cursor_bookkeeping():
    cursor = SyncCursor(category_id=1, position=0, pass_started_at=None)
    assert Fetcher.begin_pass(cursor) is True
    started = cursor.pass_started_at
    assert started is not None

    Fetcher.commit_page(cursor, EntryPage(entries=[], cursor=0, next_cursor=100))
    assert cursor.position == 100
    # A resumed pass keeps its original start
    assert Fetcher.begin_pass(cursor) is False
    assert cursor.pass_started_at == started

    Fetcher.mark_partial(cursor, StopReason.PAGE_BUDGET)
    assert cursor.last_cycle_complete is False
    assert cursor.last_error == StopReason.PAGE_BUDGET

    Fetcher.complete_pass(cursor)
    assert cursor.position == 0
    assert cursor.pass_started_at is None
    assert cursor.last_cycle_complete is True
    assert cursor.last_error is None
