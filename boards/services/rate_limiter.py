"""
Rate limiting infrastructure.

TokenBucket bounds outbound calls to the upstream leaderboard platform and is
shared process-wide by every category worker. SimpleRateLimiter throttles
Discord commands per user.
"""

import time
import asyncio
from functools import wraps
from collections import defaultdict, deque
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

class TokenBucket:
    """Async token bucket.

    Tokens refill continuously at `rate` per second up to `capacity`. Waiters
    sleep until the next token is due instead of polling, and give up once
    their timeout elapses.
    """

    def __init__(self, rate: float, capacity: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else max(1, int(rate)))
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()  # Serialises waiters so tokens are handed out in arrival order

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take one token. Returns False if none became available within timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return True

                wait = (1 - self._tokens) / self.rate
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0 or wait > remaining:
                        logger.debug(f"Token wait of {wait:.2f}s exceeds remaining timeout {max(remaining, 0):.2f}s")
                        return False
                await asyncio.sleep(wait)

class SimpleRateLimiter:
    """In-memory rate limiter for Discord commands.

    Note: This implementation stores request history in memory using defaultdict(deque).
    Entries for a key are pruned whenever that key is checked again.
    """

    def __init__(self):
        self._requests = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def is_allowed(self, user_id: int, command: str, limit: int, window: int) -> bool:
        """Check if user can execute command within rate limit."""
        if limit <= 0 or window <= 0:
            return False

        key = f"{user_id}:{command}"
        now = time.time()

        async with self._lock:
            while self._requests[key] and self._requests[key][0] < now - window:
                self._requests[key].popleft()

            if len(self._requests[key]) < limit:
                self._requests[key].append(now)
                return True

            return False

def rate_limit(command: str, limit: int = 1, window: int = 60):
    """Decorator for rate limiting Discord commands."""
    def decorator(func):
        @wraps(func)
        async def wrapper(self, interaction, *args, **kwargs):
            rate_limiter = self.bot.rate_limiter

            # Bot owner bypasses rate limits
            from boards.config import Config
            if interaction.user.id == Config.OWNER_DISCORD_ID:
                return await func(self, interaction, *args, **kwargs)

            if not await rate_limiter.is_allowed(interaction.user.id, command, limit, window):
                await interaction.response.send_message(
                    f"⏰ Rate limit exceeded. Please wait before using `/{command}` again.",
                    ephemeral=True
                )
                return

            return await func(self, interaction, *args, **kwargs)
        return wrapper
    return decorator
