from datetime import datetime

import pytest

from boards.services.leaderboard_client import parse_entry, parse_timestamp


def test_parse_timestamp_accepts_epoch_and_iso():
    expected = datetime(2024, 5, 1, 12, 0, 0)
    assert parse_timestamp(1714564800) == expected
    assert parse_timestamp("2024-05-01T12:00:00Z") == expected
    assert parse_timestamp("2024-05-01T14:00:00+02:00") == expected


def test_parse_timestamp_rejects_other_types():
    with pytest.raises(ValueError):
        parse_timestamp(None)


def test_parse_entry_maps_json_row():
    row = parse_entry({
        "entry_id": 991,
        "player_id": "76561198000000001",
        "score": "83.25",
        "submitted_at": "2024-05-01T12:00:00Z",
        "player_name": "Alice",
    })
    assert row.entry_id == "991"
    assert row.external_id == "76561198000000001"
    assert row.score == 83.25
    assert row.display_name == "Alice"


def test_parse_entry_rejects_incomplete_rows():
    with pytest.raises(ValueError):
        parse_entry({"entry_id": "1", "score": 10.0})
