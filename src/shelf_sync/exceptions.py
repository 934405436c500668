"""Exceptions raised by Shelf Sync.

Everything that talks to the remote store raises a ``GistSyncError`` subclass so
callers can tell transient failures from ones that need the user's attention.
"""

from datetime import datetime
from typing import Any, Optional


class GistSyncError(Exception):
    """Base exception for sync operations."""
    pass


class AuthError(GistSyncError):
    """Credential missing, invalid or expired. Never retried."""
    pass


class RateLimitError(GistSyncError):
    """API quota exhausted.

    Attributes:
        reset_at: When the server says the quota resets, if known
    """

    def __init__(self, message: str, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at


class ApiError(GistSyncError):
    """Non-transient error response from the API."""

    def __init__(self, message: str, status_code: int, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class NetworkError(GistSyncError):
    """Network failure or server error that outlived the retry budget."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DataIntegrityError(GistSyncError):
    """Snapshot or metadata content failed to parse or validate."""
    pass
