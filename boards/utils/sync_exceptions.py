"""
Custom exceptions for the leaderboard sync engine with user-friendly error messages.
"""

class SyncException(Exception):
    """Base exception for sync-related errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class TransientUpstreamError(SyncException):
    """Raised when the upstream platform times out or answers with a server error."""
    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Transient upstream failure during {operation}: {details}",
            "❌ The leaderboard platform is not responding. Please try again later."
        )
        self.operation = operation

class FatalUpstreamError(SyncException):
    """Raised when the upstream no longer recognises a leaderboard."""
    def __init__(self, leaderboard_id: str, details: str = None):
        super().__init__(
            f"Upstream rejected leaderboard '{leaderboard_id}': {details}",
            f"❌ Leaderboard '{leaderboard_id}' no longer exists upstream."
        )
        self.leaderboard_id = leaderboard_id

class ProfileNotFoundError(SyncException):
    """Raised when the upstream has no profile for an external identity."""
    def __init__(self, external_id: str):
        super().__init__(
            f"Profile '{external_id}' not found upstream",
            f"❌ Player '{external_id}' was not found on the platform."
        )
        self.external_id = external_id

class ConflictError(SyncException):
    """Raised when an optimistic concurrency check fails on write."""
    def __init__(self, entity: str, details: str = None):
        super().__init__(
            f"Concurrent modification of {entity}: {details}",
            "❌ The record changed while saving. Please try again."
        )
        self.entity = entity

class DataInvariantViolation(SyncException):
    """Raised when a stored record breaks a structural rule and must be quarantined."""
    def __init__(self, record: str, reason: str):
        super().__init__(
            f"Invariant violated on {record}: {reason}",
            "❌ A leaderboard record is inconsistent and has been set aside."
        )
        self.record = record
        self.reason = reason

class RateLimitTimeout(SyncException):
    """Raised when no rate limit token became available before the timeout."""
    def __init__(self, waited: float):
        super().__init__(
            f"No rate limit token available after {waited:.1f}s",
            "❌ The sync is rate limited right now. Please try again later."
        )
        self.waited = waited

class CategoryNotFoundError(SyncException):
    """Raised when a category id does not exist."""
    def __init__(self, category: str):
        super().__init__(
            f"Category '{category}' not found",
            f"❌ Category '{category}' not found!"
        )

class RunNotFoundError(SyncException):
    """Raised when no run was built from an external entry id."""
    def __init__(self, entry_id: str):
        super().__init__(
            f"No run built from entry '{entry_id}'",
            f"❌ No run found for entry '{entry_id}'."
        )
        self.entry_id = entry_id
