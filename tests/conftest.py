import functools

import pytest

from boards.data_models.sync import SyncSettings
from tests.fakes import FakeLeaderboardClient, run_with_database


@pytest.fixture
def run_db(tmp_path):
    return functools.partial(run_with_database, tmp_path)


@pytest.fixture
def client():
    return FakeLeaderboardClient()


@pytest.fixture
def settings():
    """Fast settings: no real waiting on rate limits or backoff."""
    return SyncSettings(
        rate_limit_per_second=1000.0,
        rate_limit_burst=1000,
        page_size=2,
        page_budget=50,
        max_attempts=3,
        backoff_base_seconds=0.0,
        acquire_timeout_seconds=1.0,
        cycle_deadline_seconds=30.0,
        max_workers=2,
        coop_tolerance_seconds=60,
    )
