"""
Exceptions raised by the checklist sync client.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class AuthenticationError(SyncError):
    """Authentication failed or no session is available."""
    pass


class NetworkError(SyncError):
    """Network-related error."""
    pass


class RemoteError(SyncError):
    """The backend rejected a request."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ImportFormatError(SyncError):
    """An imported backup document could not be parsed."""
    pass
