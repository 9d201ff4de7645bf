"""
Services package for the Boards bot.

Sync engine components and the read/write services built on BaseService.
"""

from .base import BaseService
from .rate_limiter import SimpleRateLimiter, TokenBucket

__all__ = ['BaseService', 'SimpleRateLimiter', 'TokenBucket']
