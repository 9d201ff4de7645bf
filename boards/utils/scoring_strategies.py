"""
Scoring Strategy Pattern for rank-derived points

This module implements the Strategy pattern for the points curve applied to a
category's ordered runs, so the curve is a configuration choice rather than a
hard-coded formula.

Every strategy honours the same contract:
- rank 1 receives the maximum points of the category
- points never increase as rank increases
- ranks beyond the results cutoff earn nothing
"""

from abc import ABC, abstractmethod
from typing import Dict, Type
import logging

from boards.constants import PointsConstants

logger = logging.getLogger(__name__)

class PointsStrategy(ABC):
    """
    Abstract base class for points strategies.

    Args:
        base_points: Points awarded to rank 1
        results_cutoff: Last rank that earns points
    """

    def __init__(self, base_points: float = 200.0, results_cutoff: int = 200):
        if base_points <= 0:
            raise ValueError(f"base_points must be positive, got {base_points}")
        if results_cutoff < 1:
            raise ValueError(f"results_cutoff must be at least 1, got {results_cutoff}")
        self.base_points = float(base_points)
        self.results_cutoff = int(results_cutoff)

    def points_for(self, rank: int, score: float, best_score: float) -> float:
        """Points for a run at `rank` with `score`, given the category's best score."""
        if rank < 1:
            raise ValueError(f"rank must start at 1, got {rank}")
        if rank > self.results_cutoff:
            return 0.0
        return round(self._curve(rank, score, best_score), PointsConstants.PRECISION)

    @abstractmethod
    def _curve(self, rank: int, score: float, best_score: float) -> float:
        pass

    @abstractmethod
    def get_strategy_name(self) -> str:
        """Get human-readable name of this strategy"""
        pass

class RankCurveStrategy(PointsStrategy):
    """
    Quadratic falloff by rank.

    points = max(1, (cutoff - rank + 1)^2 / cutoff) scaled so that rank 1 gets
    base_points. With the default cutoff of 200 and base of 200 this is the
    classic board curve: 200, 198.005, 196.02, ... down to 1.
    """

    def _curve(self, rank: int, score: float, best_score: float) -> float:
        cutoff = self.results_cutoff
        raw = max(1.0, ((cutoff - rank + 1) ** 2) / cutoff)
        return raw * (self.base_points / cutoff)

    def get_strategy_name(self) -> str:
        return "Rank Curve"

class TimeRatioStrategy(PointsStrategy):
    """
    Points proportional to how close a time is to the best time.

    points = base_points * best_score / score. Runs are ordered by ascending
    score, so the ratio can only shrink as rank grows.
    """

    def _curve(self, rank: int, score: float, best_score: float) -> float:
        if score <= 0 or rank == 1:
            return self.base_points
        return self.base_points * (max(best_score, 0.0) / score)

    def get_strategy_name(self) -> str:
        return "Time Ratio"

STRATEGIES: Dict[str, Type[PointsStrategy]] = {
    PointsConstants.RANK_CURVE: RankCurveStrategy,
    PointsConstants.TIME_RATIO: TimeRatioStrategy,
}

def get_points_strategy(name: str, base_points: float, results_cutoff: int) -> PointsStrategy:
    """Build the configured strategy, falling back to the rank curve for unknown names."""
    strategy_cls = STRATEGIES.get(name)
    if strategy_cls is None:
        logger.warning(f"Unknown points strategy '{name}', using {PointsConstants.RANK_CURVE}")
        strategy_cls = RankCurveStrategy
    return strategy_cls(base_points=base_points, results_cutoff=results_cutoff)

def coop_share(points: float, coop_mode: str) -> float:
    """Points each partner receives from a coop run."""
    if coop_mode == PointsConstants.COOP_SPLIT:
        return round(points / 2, PointsConstants.PRECISION)
    return points
