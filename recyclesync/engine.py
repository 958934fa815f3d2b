"""Sync engine for draft records.

Reconciles the local draft cache with the owner's remote collection. A pass
runs in two phases:

1. Attachment repair: records carrying a ``pending:<temp_id>`` sentinel get
   their cached source uploaded and the sentinel rewritten to the final URL.
2. Push: the remaining unsynced records are merged into the remote
   collection (set union by id, local wins per id) with a version-checked
   write, and only then marked synced locally.

Failures are isolated per record and collected in a :class:`SyncReport`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from recyclesync.blob import BlobUploader
from recyclesync.connectivity import ConnectivityMonitor
from recyclesync.exceptions import (
    LocalStoreError,
    RemoteStoreError,
    SyncError,
    UploadError,
    VersionConflictError,
)
from recyclesync.local.pending import PendingAttachmentCache
from recyclesync.local.store import LocalStore, RecordsCallback
from recyclesync.merge import diff_ids, merge_collections
from recyclesync.models import AttachmentState, DraftRecord
from recyclesync.oplog import OP_MARK, OP_PUSH, OP_UPLOAD, SyncOperationLog
from recyclesync.remote.client import RemoteStore
from recyclesync.status import SyncStatusStore

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_SKIPPED_OFFLINE = "skipped_offline"
STATUS_SKIPPED_IN_FLIGHT = "skipped_in_flight"

RECORD_IDENTIFIER_PREFIX = "record:"


def record_identifier(record_id: str) -> str:
    """Identifier used to rate-limit retries of one record."""
    return f"{RECORD_IDENTIFIER_PREFIX}{record_id}"


@dataclass
class SyncReport:
    """Aggregate result of one sync pass."""

    owner_id: str
    status: str = STATUS_COMPLETED
    synced_ids: list[str] = field(default_factory=list)
    attachments_repaired: int = 0
    failed: dict[str, str] = field(default_factory=dict)
    held_back_ids: list[str] = field(default_factory=list)
    deferred_ids: list[str] = field(default_factory=list)
    remote_version: int | None = None
    duration: float = 0.0

    @property
    def synced_count(self) -> int:
        return len(self.synced_ids)

    @property
    def failed_ids(self) -> list[str]:
        return list(self.failed)

    @property
    def ok(self) -> bool:
        """True when nothing failed. Skipped passes are ok."""
        return not self.failed

    @property
    def skipped(self) -> bool:
        return self.status != STATUS_COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "status": self.status,
            "synced": self.synced_count,
            "synced_ids": list(self.synced_ids),
            "attachments_repaired": self.attachments_repaired,
            "failed": dict(self.failed),
            "held_back_ids": list(self.held_back_ids),
            "deferred_ids": list(self.deferred_ids),
            "remote_version": self.remote_version,
            "duration": self.duration,
        }


@dataclass
class OwnerSyncStatus:
    """Current sync status of an owner's cached records."""

    owner_id: str
    online: bool
    pending_count: int = 0
    pending_attachment_count: int = 0
    locked_ids: list[str] = field(default_factory=list)
    last_report: SyncReport | None = None

    @property
    def needs_sync(self) -> bool:
        return self.pending_count > 0


class SyncEngine:
    """Orchestrate sync passes between the local store and the remote store.

    At most one pass per owner runs at a time. A pass requested while another
    is in flight for the same owner is dropped and reported as
    ``skipped_in_flight``.
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        uploader: BlobUploader,
        pending_cache: PendingAttachmentCache,
        monitor: ConnectivityMonitor,
        status_store: SyncStatusStore | None = None,
        operation_log: SyncOperationLog | None = None,
        upload_folder: str = "waste-items",
        push_unresolved_attachments: bool = False,
        max_merge_attempts: int = 3,
    ):
        """Initialize sync engine.

        Args:
            local_store: Device-side draft cache
            remote_store: Remote document store
            uploader: Blob uploader for attachments
            pending_cache: Cache of attachment sources awaiting upload
            monitor: Connectivity monitor
            status_store: Optional failure tracker; records in lockout are
                          deferred instead of retried
            operation_log: Optional log of per-record operations
            upload_folder: Blob storage folder for attachments
            push_unresolved_attachments: Push records whose attachment could
                          not be resolved, sentinel included. When False they
                          are held back until the upload succeeds.
            max_merge_attempts: Read-merge-write attempts per pass when the
                          remote collection changes underneath us
        """
        if max_merge_attempts < 1:
            raise ValueError("max_merge_attempts must be at least 1")

        self.local_store = local_store
        self.remote_store = remote_store
        self.uploader = uploader
        self.pending_cache = pending_cache
        self.monitor = monitor
        self.status_store = status_store
        self.operation_log = operation_log
        self.upload_folder = upload_folder
        self.push_unresolved_attachments = push_unresolved_attachments
        self.max_merge_attempts = max_merge_attempts

        self._locks: dict[str, asyncio.Lock] = {}
        self._watched: dict[str, Callable[[], None]] = {}
        self._last_reports: dict[str, SyncReport] = {}

    def is_online(self) -> bool:
        return self.monitor.is_online()

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = self._locks[owner_id] = asyncio.Lock()
        return lock

    def is_syncing(self, owner_id: str) -> bool:
        lock = self._locks.get(owner_id)
        return lock is not None and lock.locked()

    # --- Triggers ---

    def watch(self, owner_id: str) -> None:
        """Sync ``owner_id`` automatically whenever the network becomes reachable."""
        if owner_id in self._watched:
            return

        async def on_reachable() -> None:
            try:
                await self.sync_all(owner_id)
            except SyncError as e:
                logger.error(f"Automatic sync for {owner_id} failed: {e}")

        self._watched[owner_id] = self.monitor.on_reachable(on_reachable)
        logger.debug(f"Watching connectivity for {owner_id}")

    def unwatch(self, owner_id: str) -> None:
        unsubscribe = self._watched.pop(owner_id, None)
        if unsubscribe is not None:
            unsubscribe()

    def observe(self, owner_id: str, callback: RecordsCallback) -> Callable[[], None]:
        """Observe an owner's cached records. Returns an unsubscribe function."""
        return self.local_store.subscribe(owner_id, callback)

    def close(self) -> None:
        for owner_id in list(self._watched):
            self.unwatch(owner_id)

    # --- Passes ---

    async def sync_all(self, owner_id: str) -> SyncReport:
        """Run one full sync pass for an owner.

        Returns:
            Report of the pass; ``status`` tells whether it was skipped

        Raises:
            LocalStoreError: If the local store cannot be read at all
        """
        if not await self.monitor.refresh():
            logger.info(f"Offline, skipping sync for {owner_id}")
            return self._remember(
                SyncReport(owner_id=owner_id, status=STATUS_SKIPPED_OFFLINE)
            )

        lock = self._lock_for(owner_id)
        if lock.locked():
            logger.info(f"Sync already in flight for {owner_id}, skipping")
            return SyncReport(owner_id=owner_id, status=STATUS_SKIPPED_IN_FLIGHT)

        async with lock:
            try:
                records = await self.local_store.get_unsynced(owner_id)
            except LocalStoreError as e:
                logger.error(f"Cannot read local store for {owner_id}: {e}")
                raise
            return self._remember(await self._run_pass(owner_id, records))

    async def sync_record(self, record_id: str) -> SyncReport:
        """Force-sync a single record, ignoring any lockout on it.

        Raises:
            LocalStoreError: If the record is not cached or cannot be read
        """
        record = await self.local_store.get(record_id)
        if record is None:
            raise LocalStoreError(f"Record not found: {record_id}")

        owner_id = record.owner_id
        if record.is_synced:
            return SyncReport(owner_id=owner_id)
        if not await self.monitor.refresh():
            return SyncReport(owner_id=owner_id, status=STATUS_SKIPPED_OFFLINE)

        lock = self._lock_for(owner_id)
        if lock.locked():
            return SyncReport(owner_id=owner_id, status=STATUS_SKIPPED_IN_FLIGHT)

        async with lock:
            # Re-read under the lock; a pass may have synced it meanwhile
            record = await self.local_store.get(record_id)
            if record is None or record.is_synced:
                return SyncReport(owner_id=owner_id)
            return await self._run_pass(owner_id, [record], honor_lockout=False)

    async def _run_pass(
        self,
        owner_id: str,
        records: list[DraftRecord],
        honor_lockout: bool = True,
    ) -> SyncReport:
        start_time = time.time()
        report = SyncReport(owner_id=owner_id)

        if honor_lockout and self.status_store is not None:
            records = await self._drop_locked(records, report)

        # Phase 1: attachment repair
        excluded: set[str] = set()
        repaired: list[DraftRecord] = []
        for record in records:
            if record.attachment_state == AttachmentState.PENDING:
                record, ok = await self._repair_attachment(record, report)
                if not ok:
                    excluded.add(record.id)
            repaired.append(record)

        # Phase 2: push
        to_push = []
        for record in repaired:
            if record.id in excluded:
                continue
            if (
                record.attachment_state == AttachmentState.PENDING
                and not self.push_unresolved_attachments
            ):
                report.held_back_ids.append(record.id)
                continue
            to_push.append(record)

        if report.held_back_ids:
            logger.info(
                f"Holding back {len(report.held_back_ids)} records with "
                f"unresolved attachments for {owner_id}"
            )

        if to_push:
            await self._push(owner_id, to_push, report)

        report.duration = time.time() - start_time
        logger.info(
            f"Sync for {owner_id}: {report.synced_count} synced, "
            f"{report.attachments_repaired} attachments repaired, "
            f"{len(report.failed)} failed, {len(report.held_back_ids)} held back, "
            f"{len(report.deferred_ids)} deferred ({report.duration:.2f}s)"
        )
        return report

    async def _drop_locked(
        self, records: list[DraftRecord], report: SyncReport
    ) -> list[DraftRecord]:
        available = []
        for record in records:
            if await self._is_locked(record.id):
                report.deferred_ids.append(record.id)
            else:
                available.append(record)
        if report.deferred_ids:
            logger.info(f"Deferring {len(report.deferred_ids)} records in lockout")
        return available

    async def _repair_attachment(
        self, record: DraftRecord, report: SyncReport
    ) -> tuple[DraftRecord, bool]:
        """Upload a record's pending attachment.

        Returns:
            (record, ok). ``record`` is the resolved copy on success. ``ok`` is
            False when the repair failed and the record must not be pushed this
            pass; a missing cached source is not a failure.
        """
        temp_id = record.pending_temp_id
        source_ref = None
        if temp_id is not None:
            try:
                source_ref = await self.pending_cache.get(temp_id)
            except LocalStoreError as e:
                await self._fail(record, OP_UPLOAD, f"pending cache read failed: {e}", report)
                return record, False

        if source_ref is None:
            logger.debug(f"No cached source for {record.attachment_ref} on {record.id}")
            self._log(OP_UPLOAD, record, "skipped", error="no cached source")
            return record, True

        try:
            url = await self.uploader.upload(source_ref, self.upload_folder)
        except UploadError as e:
            await self._fail(record, OP_UPLOAD, f"upload failed: {e}", report)
            return record, False

        resolved = record.with_attachment(url)
        try:
            await self.local_store.update(resolved)
        except LocalStoreError as e:
            await self._fail(record, OP_UPLOAD, f"local write failed: {e}", report)
            return record, False

        try:
            await self.pending_cache.clear(temp_id)
        except LocalStoreError as e:
            logger.warning(f"Failed to clear pending attachment {temp_id}: {e}")

        report.attachments_repaired += 1
        self._log(OP_UPLOAD, resolved, "success", metadata={"url": url})
        logger.debug(f"Resolved attachment for {record.id} -> {url}")
        return resolved, True

    async def _push(
        self, owner_id: str, records: list[DraftRecord], report: SyncReport
    ) -> None:
        ids = [record.id for record in records]

        try:
            version = await self._merge_and_write(owner_id, records)
        except RemoteStoreError as e:
            logger.warning(f"Push of {len(records)} records for {owner_id} failed: {e}")
            for record in records:
                await self._fail(record, OP_PUSH, f"remote write failed: {e}", report)
            return

        report.remote_version = version
        for record in records:
            self._log(OP_PUSH, record, "success", metadata={"version": version})

        # The remote write is committed; only now may records be marked
        synced = await self._mark_synced(records, report)
        report.synced_ids.extend(synced)
        for record_id in synced:
            await self._record_success(record_id)

        logger.debug(f"Pushed {len(ids)} records for {owner_id} (v{version})")

    async def _merge_and_write(self, owner_id: str, records: list[DraftRecord]) -> int:
        """Read, merge and conditionally write the owner's collection.

        Returns:
            The remote version holding the merged records

        Raises:
            VersionConflictError: If every attempt lost the race
            RemoteStoreError: For any other remote failure
        """
        last_conflict: VersionConflictError | None = None
        for attempt in range(1, self.max_merge_attempts + 1):
            collection = await self.remote_store.get_owner_collection(owner_id)
            merged = merge_collections(collection.items, records)
            if merged == collection.items:
                # Already up to date, e.g. a previous pass pushed but did not mark
                return collection.version

            added, replaced = diff_ids(collection.items, merged)
            logger.debug(
                f"Merging into {owner_id} v{collection.version}: "
                f"{len(added)} added, {len(replaced)} replaced"
            )
            try:
                return await self.remote_store.replace_owner_collection(
                    owner_id, merged, collection.version
                )
            except VersionConflictError as e:
                last_conflict = e
                logger.warning(
                    f"Collection {owner_id} changed during merge "
                    f"(attempt {attempt}/{self.max_merge_attempts})"
                )

        raise VersionConflictError(
            f"Gave up merging into {owner_id} after "
            f"{self.max_merge_attempts} attempts: {last_conflict}",
            current_version=last_conflict.current_version if last_conflict else None,
        )

    async def _mark_synced(
        self, records: list[DraftRecord], report: SyncReport
    ) -> list[str]:
        ids = [record.id for record in records]
        try:
            await self.local_store.mark_many_synced(ids)
            for record in records:
                self._log(OP_MARK, record, "success")
            return ids
        except LocalStoreError as e:
            logger.warning(f"Batch mark failed, marking records one by one: {e}")

        synced = []
        for record in records:
            try:
                await self.local_store.mark_synced(record.id)
            except LocalStoreError as e:
                await self._fail(record, OP_MARK, f"local write failed: {e}", report)
                continue
            self._log(OP_MARK, record, "success")
            synced.append(record.id)
        return synced

    # --- Bookkeeping ---

    async def _fail(
        self, record: DraftRecord, op_type: str, reason: str, report: SyncReport
    ) -> None:
        report.failed[record.id] = reason
        self._log(op_type, record, "failed", error=reason)
        if self.status_store is None:
            return
        try:
            status = await asyncio.to_thread(
                self.status_store.record_failure, record_identifier(record.id), reason
            )
        except LocalStoreError as e:
            logger.warning(f"Could not record failure of {record.id}: {e}")
            return
        if status.is_locked:
                logger.warning(f"Record {record.id} deferred: {status.message}")

    async def _record_success(self, record_id: str) -> None:
        if self.status_store is None:
            return
        try:
            await asyncio.to_thread(
                self.status_store.record_success, record_identifier(record_id)
            )
        except LocalStoreError as e:
            logger.warning(f"Could not reset failure count of {record_id}: {e}")

    async def _is_locked(self, record_id: str) -> bool:
        """Whether a record is in lockout. An unreadable status store locks nothing."""
        if self.status_store is None:
            return False
        try:
            return await asyncio.to_thread(
                self.status_store.is_locked, record_identifier(record_id)
            )
        except LocalStoreError as e:
            logger.warning(f"Could not read lockout of {record_id}: {e}")
            return False

    def _log(
        self,
        op_type: str,
        record: DraftRecord,
        status: str,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.operation_log is None:
            return
        try:
            self.operation_log.log_operation(
                op_type,
                record.id,
                status,
                owner_id=record.owner_id,
                error=error,
                metadata=metadata,
            )
        except OSError as e:
            logger.warning(f"Could not record {op_type} for {record.id}: {e}")

    def _remember(self, report: SyncReport) -> SyncReport:
        self._last_reports[report.owner_id] = report
        return report

    # --- Status ---

    def last_report(self, owner_id: str) -> SyncReport | None:
        return self._last_reports.get(owner_id)

    async def get_status(self, owner_id: str) -> OwnerSyncStatus:
        """Summarize what is still waiting to sync for an owner."""
        pending = await self.local_store.get_unsynced(owner_id)

        locked_ids = []
        if self.status_store is not None:
            for record in pending:
                if await self._is_locked(record.id):
                    locked_ids.append(record.id)

        return OwnerSyncStatus(
            owner_id=owner_id,
            online=self.is_online(),
            pending_count=len(pending),
            pending_attachment_count=sum(
                1 for r in pending if r.attachment_state == AttachmentState.PENDING
            ),
            locked_ids=locked_ids,
            last_report=self.last_report(owner_id),
        )
