"""
Exceptions for the sync subsystem.
"""


class SyncError(Exception):
    """Base exception for sync operations."""


class LocalStoreError(SyncError):
    """Raised when the local store cannot be read or written."""


class RemoteStoreError(SyncError):
    """Raised when a remote store request fails."""


class AuthenticationError(RemoteStoreError):
    """Remote store rejected our credentials."""


class NotFoundError(RemoteStoreError):
    """Requested remote resource does not exist."""


class VersionConflictError(RemoteStoreError):
    """Conditional write failed because the remote version moved on."""

    def __init__(self, message: str, current_version: int | None = None):
        super().__init__(message)
        self.current_version = current_version


class UploadError(SyncError):
    """Raised when an attachment upload fails."""


class UploadCancelledError(UploadError):
    """Raised when an in-flight upload was cancelled."""
