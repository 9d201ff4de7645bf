"""
Upstream leaderboard platform client.

ExternalLeaderboardClient is the contract the sync engine depends on: a paging
call returning raw entry records and a profile call returning avatar metadata.
HttpLeaderboardClient implements it over aiohttp against a JSON paging
endpoint and a GetPlayerSummaries-shaped profile endpoint.

Errors are normalised into the engine's taxonomy:
- TransientUpstreamError: timeouts, connection errors, HTTP 429 and 5xx
- FatalUpstreamError: the leaderboard itself is gone (HTTP 404/410)
- ProfileNotFoundError: the platform has no such player
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp

from boards.config import Config
from boards.utils.sync_exceptions import (
    TransientUpstreamError, FatalUpstreamError, ProfileNotFoundError
)
from boards.utils.timestamps import from_epoch, to_naive_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawEntry:
    """One upstream leaderboard row: a single player's submission."""
    entry_id: str
    external_id: str
    score: float
    submitted_at: datetime
    display_name: Optional[str] = None


@dataclass(frozen=True)
class EntryPage:
    """A page of entries. next_cursor is None once the list is exhausted."""
    entries: List[RawEntry]
    cursor: int
    next_cursor: Optional[int]

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


@dataclass(frozen=True)
class ProfileMetadata:
    external_id: str
    display_name: Optional[str]
    avatar_url: Optional[str]


class ExternalLeaderboardClient(ABC):
    """Paged read access to upstream rank data and profile data."""

    @abstractmethod
    async def list_entries(self, leaderboard_id: str, cursor: int, page_size: int) -> EntryPage:
        """
        Fetch one page of entries starting at cursor.

        Raises:
            TransientUpstreamError: retryable failure
            FatalUpstreamError: the leaderboard no longer exists upstream
        """

    @abstractmethod
    async def get_profile(self, external_id: str) -> ProfileMetadata:
        """
        Fetch profile metadata for a player.

        Raises:
            ProfileNotFoundError: the identity no longer exists upstream
            TransientUpstreamError: retryable failure
        """

    async def close(self):
        """Release any transport resources."""


def parse_timestamp(value: Any) -> datetime:
    """Accept epoch seconds or ISO-8601 strings; always returns naive UTC."""
    if isinstance(value, (int, float)):
        return from_epoch(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return to_naive_utc(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def parse_entry(payload: Dict[str, Any]) -> RawEntry:
    """Build a RawEntry from one JSON row."""
    try:
        return RawEntry(
            entry_id=str(payload['entry_id']),
            external_id=str(payload['player_id']),
            score=float(payload['score']),
            submitted_at=parse_timestamp(payload['submitted_at']),
            display_name=payload.get('player_name'),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed entry payload {payload!r}: {e}") from e


class HttpLeaderboardClient(ExternalLeaderboardClient):
    """
    aiohttp client.

    Paging endpoint:  GET {base_url}/leaderboards/{leaderboard_id}/entries?start=&count=
        -> {"total": int, "entries": [{"entry_id", "player_id", "score", "submitted_at", "player_name"?}]}
    Profile endpoint: GET {profile_url}?key=&steamids=
        -> {"response": {"players": [{"steamid", "personaname", "avatarfull"}]}}
    """

    def __init__(
        self,
        base_url: str = None,
        profile_url: str = None,
        api_key: str = None,
        timeout_seconds: float = None
    ):
        self.base_url = (base_url or Config.UPSTREAM_BASE_URL).rstrip('/')
        self.profile_url = profile_url or Config.UPSTREAM_PROFILE_URL
        self.api_key = api_key if api_key is not None else Config.UPSTREAM_API_KEY
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.UPSTREAM_TIMEOUT_SECONDS)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _get_json(self, url: str, params: Dict[str, Any], operation: str, leaderboard_id: str = None) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.get(url, params=params) as resp:
                if resp.status in (404, 410) and leaderboard_id is not None:
                    raise FatalUpstreamError(leaderboard_id, f"HTTP {resp.status}")
                if resp.status == 429 or resp.status >= 500:
                    raise TransientUpstreamError(operation, f"HTTP {resp.status}")
                if resp.status >= 400:
                    raise TransientUpstreamError(operation, f"unexpected HTTP {resp.status}")
                return await resp.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise TransientUpstreamError(operation, repr(e)) from e

    async def list_entries(self, leaderboard_id: str, cursor: int, page_size: int) -> EntryPage:
        url = f"{self.base_url}/leaderboards/{leaderboard_id}/entries"
        data = await self._get_json(
            url,
            {'start': cursor, 'count': page_size},
            operation=f"list_entries({leaderboard_id}@{cursor})",
            leaderboard_id=leaderboard_id
        )

        rows = data.get('entries') or []
        entries = []
        for row in rows:
            try:
                entries.append(parse_entry(row))
            except ValueError as e:
                # A malformed row must not hide the rest of the page
                logger.warning(f"Skipping malformed entry on {leaderboard_id}: {e}")

        total = data.get('total')
        consumed = cursor + len(rows)
        if not rows or (total is not None and consumed >= int(total)) or len(rows) < page_size:
            next_cursor = None
        else:
            next_cursor = consumed

        return EntryPage(entries=entries, cursor=cursor, next_cursor=next_cursor)

    async def get_profile(self, external_id: str) -> ProfileMetadata:
        data = await self._get_json(
            self.profile_url,
            {'key': self.api_key, 'steamids': external_id},
            operation=f"get_profile({external_id})"
        )
        players = (data.get('response') or {}).get('players') or []
        if not players:
            raise ProfileNotFoundError(external_id)

        player = players[0]
        return ProfileMetadata(
            external_id=external_id,
            display_name=player.get('personaname'),
            avatar_url=player.get('avatarfull'),
        )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
