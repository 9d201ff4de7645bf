"""
Sync engine data models.

Settings snapshot and the per-step result objects reported by one category's
sync cycle.
"""

from dataclasses import dataclass, field
from typing import Optional, Set

from boards.config import Config
from boards.constants import PointsConstants


@dataclass(frozen=True)
class SyncSettings:
    """Tunables read once per cycle from ConfigurationService."""
    rate_limit_per_second: float = Config.RATE_LIMIT_PER_SECOND
    rate_limit_burst: int = Config.RATE_LIMIT_BURST
    page_size: int = Config.PAGE_SIZE
    page_budget: int = Config.PAGE_BUDGET
    max_attempts: int = Config.MAX_ATTEMPTS
    backoff_base_seconds: float = Config.BACKOFF_BASE_SECONDS
    acquire_timeout_seconds: float = Config.ACQUIRE_TIMEOUT_SECONDS
    cycle_deadline_seconds: float = Config.CYCLE_DEADLINE_SECONDS
    max_workers: int = Config.MAX_WORKERS
    coop_tolerance_seconds: float = Config.COOP_TIMESTAMP_TOLERANCE_SECONDS
    points_strategy: str = PointsConstants.RANK_CURVE
    base_points: float = Config.BASE_POINTS
    results_cutoff: int = Config.RESULTS_CUTOFF
    coop_mode: str = PointsConstants.COOP_SHARED

    @classmethod
    def from_config(cls, config_service) -> 'SyncSettings':
        defaults = cls()
        return cls(
            rate_limit_per_second=float(config_service.get('sync.rate_limit_per_second', defaults.rate_limit_per_second)),
            rate_limit_burst=int(config_service.get('sync.rate_limit_burst', defaults.rate_limit_burst)),
            page_size=int(config_service.get('sync.page_size', defaults.page_size)),
            page_budget=int(config_service.get('sync.page_budget', defaults.page_budget)),
            max_attempts=max(1, int(config_service.get('sync.max_attempts', defaults.max_attempts))),
            backoff_base_seconds=float(config_service.get('sync.backoff_base_seconds', defaults.backoff_base_seconds)),
            acquire_timeout_seconds=float(config_service.get('sync.acquire_timeout_seconds', defaults.acquire_timeout_seconds)),
            cycle_deadline_seconds=float(config_service.get('sync.cycle_deadline_seconds', defaults.cycle_deadline_seconds)),
            max_workers=max(1, int(config_service.get('sync.max_workers', defaults.max_workers))),
            coop_tolerance_seconds=float(config_service.get('coop.timestamp_tolerance_seconds', defaults.coop_tolerance_seconds)),
            points_strategy=config_service.get('points.strategy', defaults.points_strategy),
            base_points=float(config_service.get('points.base_points', defaults.base_points)),
            results_cutoff=int(config_service.get('points.results_cutoff', defaults.results_cutoff)),
            coop_mode=config_service.get('points.coop_mode', defaults.coop_mode),
        )


@dataclass
class FetchProgress:
    """Outcome of paging one category, filled in while pages are yielded."""
    pages: int = 0
    entries: int = 0
    complete: bool = False
    stop_reason: Optional[str] = None
    last_cursor: int = 0


@dataclass
class FetchResult:
    entries: list
    complete: bool
    pages: int
    cursor: int
    stop_reason: Optional[str] = None


@dataclass
class ReconcileResult:
    created: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    players_created: int = 0
    player_ids: Set[int] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.removed)

    def merge(self, other: 'ReconcileResult') -> 'ReconcileResult':
        self.created += other.created
        self.updated += other.updated
        self.removed += other.removed
        self.unchanged += other.unchanged
        self.players_created += other.players_created
        self.player_ids |= other.player_ids
        return self


@dataclass
class PairingResult:
    formed: int = 0
    dissolved: int = 0
    updated: int = 0
    unpaired: int = 0
    quarantined: int = 0


@dataclass
class ProofResult:
    demo_required: int = 0
    video_required: int = 0
    changed: int = 0


@dataclass
class PointsResult:
    ranked: int = 0
    excluded: int = 0
    changed: int = 0
    quarantined: int = 0
    player_ids: Set[int] = field(default_factory=set)


@dataclass
class CycleReport:
    """Summary of one category's sync cycle."""
    category_id: int
    category_name: str = ""
    complete: bool = False
    pages: int = 0
    stop_reason: Optional[str] = None
    reconcile: ReconcileResult = field(default_factory=ReconcileResult)
    pairing: PairingResult = field(default_factory=PairingResult)
    proof: ProofResult = field(default_factory=ProofResult)
    points: PointsResult = field(default_factory=PointsResult)
    recomputed: bool = False
    totals_updated: int = 0
    abandoned: bool = False
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        state = "complete" if self.complete else f"partial ({self.stop_reason or 'unknown'})"
        if self.error:
            state = f"failed ({self.error})"
        return (
            f"category {self.category_id} '{self.category_name}': {state}, pages={self.pages}, "
            f"created={self.reconcile.created}, updated={self.reconcile.updated}, removed={self.reconcile.removed}, "
            f"pairs+={self.pairing.formed}, pairs-={self.pairing.dissolved}, ranked={self.points.ranked}, "
            f"totals={self.totals_updated}, "
            f"duration={self.duration:.2f}s"
        )


@dataclass
class AvatarRefreshSummary:
    checked: int = 0
    updated: int = 0
    failed: int = 0
    deactivated: int = 0

