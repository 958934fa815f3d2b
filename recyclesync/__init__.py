"""Offline-first sync of waste item drafts.

Drafts are created in a local cache, their attachments uploaded to blob
storage, and the records merged into the owner's remote collection whenever
the network is reachable.
"""

from recyclesync.engine import OwnerSyncStatus, SyncEngine, SyncReport
from recyclesync.exceptions import SyncError
from recyclesync.models import DraftRecord, SyncState

__all__ = [
    "DraftRecord",
    "OwnerSyncStatus",
    "SyncEngine",
    "SyncError",
    "SyncReport",
    "SyncState",
]
