"""
Bot-wide constants for the Boards bot.

This module contains the magic numbers and labels shared by the sync engine
and the Discord surface.
"""

class CategoryMode:
    """Category mode flags."""

    SINGLE = "single"
    COOP = "coop"


class PointsConstants:
    """Constants related to points calculation."""

    # Strategy identifiers accepted by points.strategy
    RANK_CURVE = "rank_curve"
    TIME_RATIO = "time_ratio"

    # How coop run points reach the two partners (points.coop_mode)
    COOP_SHARED = "shared"  # Each partner receives the full run points
    COOP_SPLIT = "split"    # Each partner receives half

    # Points are rounded before persisting to keep totals stable across recomputes
    PRECISION = 4


class PairingBasis:
    """Labels recorded on a CoopPair describing which criteria matched."""

    SAME_SCORE = "same_score"
    TIMESTAMP_WINDOW = "timestamp_window"


class BanReason:
    """Why a run shows up in the banned listings."""

    RUN = "run banned"
    PLAYER = "player banned"


class QuarantineReason:
    """Reasons a run may be excluded from ranking."""

    TWO_OWNERS = "run has both a player and a coop pair owner"
    NO_OWNER = "run has neither a player nor a coop pair owner"
    MISSING_PLAYER = "run owner references a missing player or pair"
    DIVERGED_SCORES = "coop partner entries report different scores"


class PaginationConstants:
    """Constants for paginated displays."""

    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 50
    PREVIEW_SIZE = 7        # Top runs per category preview, one per player
    PREVIEW_SCAN_BATCH = 50  # Ranked rows read per query while filling a preview


class UIConstants:
    """Constants for Discord UI elements."""

    DEFAULT_EMBED_COLOR = 0x3498db  # Blue
    GOLD_RANK_COLOR = 0xffd700     # Gold for #1 ranked runs
    ERROR_COLOR = 0xe74c3c         # Red for errors
    SUCCESS_COLOR = 0x2ecc71       # Green for success

    TROPHY_EMOJI = "🏆"
    DEMO_EMOJI = "📼"
    VIDEO_EMOJI = "🎥"
    MISSING_PROOF_EMOJI = "⚠️"
