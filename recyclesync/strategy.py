"""Sync strategy interface and factories.

Callers hold a :class:`SyncStrategy` and call ``sync(owner_id)`` without
checking whether sync is configured; when it is not, they get a
:class:`NoOpSync`.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from recyclesync.blob import S3BlobUploader
from recyclesync.config import Settings
from recyclesync.connectivity import ConnectivityMonitor, TcpProbe
from recyclesync.engine import SyncEngine
from recyclesync.exceptions import SyncError
from recyclesync.local import (
    SqlLocalStore,
    SqlPendingAttachmentCache,
    create_session_factory,
)
from recyclesync.oplog import SyncOperationLog
from recyclesync.remote import HttpRemoteStore
from recyclesync.status import SyncStatusStore

logger = logging.getLogger(__name__)


class SyncStrategy(ABC):
    """Abstract interface for draft synchronization strategies."""

    @abstractmethod
    async def sync(self, owner_id: str) -> Optional[dict]:
        """Sync an owner's drafts.

        Args:
            owner_id: Owner whose drafts are synced

        Returns:
            Optional dict with sync results (for logging/debugging):
            {
                "status": str,
                "synced": int,
                "attachments_repaired": int,
                "failed": int,
                "held_back": int,
                "deferred": int,
                "error": str (if error occurred)
            }
        """

    async def close(self) -> None:
        """Release resources held by the strategy."""


class NoOpSync(SyncStrategy):
    """No-op implementation - sync is disabled.

    Used when no remote store is configured. Drafts simply stay local.
    """

    async def sync(self, owner_id: str) -> None:
        return None


class EngineSync(SyncStrategy):
    """Strategy backed by a :class:`SyncEngine`."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    async def sync(self, owner_id: str) -> Optional[dict]:
        try:
            report = await self.engine.sync_all(owner_id)
        except SyncError as e:
            logger.warning(f"Sync failed: {e}")
            return {"error": str(e)}

        # Log failures but don't interrupt the caller
        if report.failed:
            logger.warning(f"Sync: {len(report.failed)} records failed to sync")

        return {
            "status": report.status,
            "synced": report.synced_count,
            "attachments_repaired": report.attachments_repaired,
            "failed": len(report.failed),
            "held_back": len(report.held_back_ids),
            "deferred": len(report.deferred_ids),
        }

    async def close(self) -> None:
        self.engine.close()
        await self.engine.remote_store.close()


def create_monitor(settings: Settings) -> ConnectivityMonitor:
    """Build a connectivity monitor from settings.

    Without a probe host the monitor assumes the network is up until the
    platform reports otherwise.
    """
    probe = None
    if settings.probe_host:
        probe = TcpProbe(
            settings.probe_host,
            port=settings.probe_port,
            timeout=settings.probe_timeout,
        )
    return ConnectivityMonitor(probe=probe, initially_online=True)


def create_sync_engine(
    settings: Settings, monitor: ConnectivityMonitor | None = None
) -> SyncEngine:
    """Wire a sync engine from settings.

    Raises:
        ValueError: If the remote store or blob storage is not configured
    """
    if not settings.remote_configured:
        raise ValueError("Remote store is not configured")

    session_factory = create_session_factory(settings.database_url)
    return SyncEngine(
        local_store=SqlLocalStore(session_factory),
        remote_store=HttpRemoteStore(
            settings.remote_url,
            settings.remote_token,
            timeout=settings.request_timeout,
        ),
        uploader=S3BlobUploader.from_settings(settings),
        pending_cache=SqlPendingAttachmentCache(session_factory),
        monitor=monitor or create_monitor(settings),
        status_store=SyncStatusStore(
            session_factory,
            max_attempts=settings.max_failed_attempts,
            lockout_seconds=settings.lockout_seconds,
            max_lockout_seconds=settings.max_lockout_seconds,
            case_sensitive=True,
        ),
        operation_log=SyncOperationLog(settings.operation_log),
        upload_folder=settings.upload_folder,
        push_unresolved_attachments=settings.push_unresolved_attachments,
        max_merge_attempts=settings.max_merge_attempts,
    )


def create_sync_strategy(
    settings: Settings | None = None, monitor: ConnectivityMonitor | None = None
) -> SyncStrategy:
    """Factory function to create the sync strategy.

    Returns:
        EngineSync when the remote store is configured, NoOpSync otherwise
        (including when the engine cannot be built)
    """
    settings = settings or Settings()
    if not settings.remote_configured:
        logger.debug("Remote store not configured, sync disabled")
        return NoOpSync()

    try:
        return EngineSync(create_sync_engine(settings, monitor))
    except Exception as e:
        logger.warning(f"Failed to create sync engine: {e}, using NoOpSync")
        return NoOpSync()
