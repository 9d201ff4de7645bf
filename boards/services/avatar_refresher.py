"""
Avatar refresher.

Keeps each player's cached avatar reference and display name current on its
own cadence, separate from the sync cycle. Failures are cosmetic: a failed
fetch leaves the cached values untouched and never raises to the caller. A
player the platform no longer knows is deactivated.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from boards.data_models.sync import AvatarRefreshSummary
from boards.database.models import Player
from boards.services.base import BaseService
from boards.services.leaderboard_client import ExternalLeaderboardClient, ProfileMetadata
from boards.services.rate_limiter import TokenBucket
from boards.utils.sync_exceptions import ProfileNotFoundError, TransientUpstreamError
from boards.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class RefreshOutcome:
    UPDATED = "updated"
    FAILED = "failed"
    DEACTIVATED = "deactivated"


class AvatarRefresher(BaseService):

    def __init__(
        self,
        session_factory,
        client: ExternalLeaderboardClient,
        token_bucket: Optional[TokenBucket] = None,
        acquire_timeout_seconds: float = 30.0
    ):
        super().__init__(session_factory)
        self.client = client
        self.token_bucket = token_bucket
        self.acquire_timeout_seconds = acquire_timeout_seconds

    async def refresh(self, player: Player) -> bool:
        """Refresh one player's cached profile. Returns True if new metadata was stored."""
        return await self._refresh(player) == RefreshOutcome.UPDATED

    async def refresh_stale(self, limit: int = 50, stale_after_hours: float = 72) -> AvatarRefreshSummary:
        """Refresh up to `limit` active players whose avatar is missing or older than the cutoff."""
        summary = AvatarRefreshSummary()
        cutoff = utcnow() - timedelta(hours=stale_after_hours)

        async with self.get_session() as session:
            result = await session.execute(
                select(Player)
                .where(
                    Player.is_active == True,
                    (Player.avatar_refreshed_at.is_(None)) | (Player.avatar_refreshed_at < cutoff)
                )
                .order_by(Player.avatar_refreshed_at.isnot(None), Player.avatar_refreshed_at, Player.id)
                .limit(limit)
            )
            players = list(result.scalars().all())

        for player in players:
            summary.checked += 1
            try:
                outcome = await self._refresh(player)
            except Exception as e:
                logger.error(f"Avatar refresh crashed for player {player.id}: {e}", exc_info=True)
                outcome = RefreshOutcome.FAILED

            if outcome == RefreshOutcome.UPDATED:
                summary.updated += 1
            elif outcome == RefreshOutcome.DEACTIVATED:
                summary.deactivated += 1
            else:
                summary.failed += 1

        if summary.checked:
            logger.info(
                f"Avatar refresh: checked={summary.checked}, updated={summary.updated}, "
                f"failed={summary.failed}, deactivated={summary.deactivated}"
            )
        return summary

    async def _refresh(self, player: Player) -> str:
        if self.token_bucket is not None:
            if not await self.token_bucket.acquire(timeout=self.acquire_timeout_seconds):
                logger.warning(f"No rate limit token for avatar refresh of player {player.id}, skipping")
                return RefreshOutcome.FAILED

        try:
            profile = await self.client.get_profile(player.external_id)
        except ProfileNotFoundError:
            await self.execute_with_retry(lambda: self._deactivate(player.id))
            logger.warning(f"Player {player.id} ({player.external_id}) no longer exists upstream, deactivated")
            return RefreshOutcome.DEACTIVATED
        except TransientUpstreamError as e:
            logger.warning(f"Avatar refresh failed for player {player.id}, keeping cached value: {e}")
            return RefreshOutcome.FAILED

        await self.execute_with_retry(lambda: self._store(player.id, profile))
        return RefreshOutcome.UPDATED

    async def _store(self, player_id: int, profile: ProfileMetadata) -> None:
        async with self.get_session() as session:
            player = await session.get(Player, player_id)
            if player is None:
                return
            if profile.avatar_url:
                player.avatar_url = profile.avatar_url
            if profile.display_name:
                player.display_name = profile.display_name
            player.avatar_refreshed_at = utcnow()

    async def _deactivate(self, player_id: int) -> None:
        async with self.get_session() as session:
            player = await session.get(Player, player_id)
            if player is not None:
                player.is_active = False
