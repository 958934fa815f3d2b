"""Device-side persistence: draft records, pending attachments, sync status."""

from recyclesync.local.database import create_session_factory
from recyclesync.local.pending import PendingAttachmentCache, SqlPendingAttachmentCache
from recyclesync.local.store import LocalStore, SqlLocalStore

__all__ = [
    "create_session_factory",
    "LocalStore",
    "SqlLocalStore",
    "PendingAttachmentCache",
    "SqlPendingAttachmentCache",
]
