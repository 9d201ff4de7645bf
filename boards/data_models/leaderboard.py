"""
Leaderboard data models for the public read interface.

Provides immutable data transfer objects so callers never hold live ORM rows.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class RunEntry:
    """Single ranked run row."""
    run_id: int
    category_id: int
    category_name: str
    rank: int
    score: float
    submitted_at: datetime
    points: float
    entry_ids: tuple
    player_names: tuple
    demo_required: bool
    video_required: bool
    demo_satisfied: bool
    video_satisfied: bool

    @property
    def proof_missing(self) -> bool:
        return (self.demo_required and not self.demo_satisfied) or (self.video_required and not self.video_satisfied)


@dataclass(frozen=True)
class CategoryPage:
    """Paginated category board."""
    entries: List[RunEntry]
    category_id: int
    category_name: str
    mode: str
    current_page: int
    total_pages: int
    total_runs: int


@dataclass(frozen=True)
class CoopPairEntry:
    pair_id: int
    category_id: int
    player1_name: str
    player2_name: str
    entry_id1: str
    entry_id2: str
    matched_basis: List[str]
    timestamp_delta_seconds: float
    run_id: Optional[int] = None
    rank: Optional[int] = None
    points: float = 0.0


@dataclass(frozen=True)
class UnpairedRunEntry:
    """Coop source run still waiting for a partner."""
    run_id: int
    entry_id: str
    player_name: str
    score: float
    submitted_at: datetime


@dataclass(frozen=True)
class PointsEntry:
    rank: int
    player_id: int
    external_id: str
    display_name: str
    total_points: float


@dataclass(frozen=True)
class PointsPage:
    """Paginated cross-category points ranking."""
    entries: List[PointsEntry]
    current_page: int
    total_pages: int
    total_players: int


@dataclass(frozen=True)
class RunHistoryEntry:
    """One score an upstream entry held, as first seen by the engine."""
    run_id: int
    category_id: int
    category_name: str
    entry_id: str
    score: float
    submitted_at: datetime
    recorded_at: datetime


@dataclass(frozen=True)
class BannedRunEntry:
    """Run kept out of ranking by a ban on the run itself or on an owner."""
    run_id: int
    category_id: int
    category_name: str
    entry_ids: tuple
    player_names: tuple
    score: float
    submitted_at: datetime
    reason: str


@dataclass(frozen=True)
class CategoryPreview:
    """Top of one category's board, at most one run per player."""
    category_id: int
    category_name: str
    map_id: str
    mode: str
    entries: List[RunEntry]
