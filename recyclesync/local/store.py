"""Local store for draft records.

The store is the device-side cache used for offline creation and editing.
Records stay here until a sync pass confirms the remote collection holds
them; synced records are only removed by age-based eviction.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from recyclesync.exceptions import LocalStoreError
from recyclesync.local.tables import DraftRecordRow
from recyclesync.models import DraftRecord, SyncState

logger = logging.getLogger(__name__)

RecordsCallback = Callable[[list[DraftRecord]], None]


class LocalStore(ABC):
    """Abstract interface for the local draft cache."""

    @abstractmethod
    async def get_unsynced(self, owner_id: str) -> list[DraftRecord]:
        """Return the owner's records that have not been synced yet."""

    @abstractmethod
    async def update(self, record: DraftRecord) -> None:
        """Persist changed payload fields of an existing record.

        Never changes the record's sync state.

        Raises:
            LocalStoreError: If the record does not exist or the write fails
        """

    @abstractmethod
    async def mark_synced(self, record_id: str) -> bool:
        """Flag one record as synced. Returns False if nothing changed."""

    @abstractmethod
    async def mark_many_synced(self, record_ids: list[str]) -> int:
        """Flag several records as synced. Returns the number changed."""

    @abstractmethod
    async def get(self, record_id: str) -> DraftRecord | None:
        """Return one record, or None if it is not cached."""

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> list[DraftRecord]:
        """Return every cached record of an owner."""

    @abstractmethod
    async def count_unsynced(self, owner_id: str) -> int:
        """Number of the owner's records still waiting for sync."""

    @abstractmethod
    async def save_draft(self, record: DraftRecord) -> None:
        """Store a newly created draft."""

    @abstractmethod
    async def evict_synced_older_than(self, cutoff: datetime) -> int:
        """Remove synced records created before ``cutoff``."""

    @abstractmethod
    def subscribe(self, owner_id: str, callback: RecordsCallback) -> Callable[[], None]:
        """Observe an owner's records. Returns an unsubscribe function."""


class SqlLocalStore(LocalStore):
    """SQLAlchemy-backed local store.

    Database work runs in a worker thread so callers on the event loop are
    never blocked on disk I/O.
    """

    def __init__(self, session_factory: sessionmaker):
        """Initialize the store.

        Args:
            session_factory: Factory from ``create_session_factory``
        """
        self._session_factory = session_factory
        self._subscribers: dict[str, list[RecordsCallback]] = {}

    # --- Observation ---

    def subscribe(self, owner_id: str, callback: RecordsCallback) -> Callable[[], None]:
        """Observe an owner's cached records.

        The callback receives the owner's full record list after every write
        touching that owner.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.setdefault(owner_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(owner_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def _notify(self, owner_ids: set[str]) -> None:
        for owner_id in owner_ids:
            callbacks = list(self._subscribers.get(owner_id, []))
            if not callbacks:
                continue
            records = await self.list_for_owner(owner_id)
            for callback in callbacks:
                try:
                    callback(records)
                except Exception as e:
                    logger.warning(f"Record observer for {owner_id} failed: {e}")

    # --- Queries ---

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            raise LocalStoreError(f"Local store operation failed: {e}") from e

    async def get(self, record_id: str) -> DraftRecord | None:
        def _get():
            with self._session_factory() as session:
                row = session.get(DraftRecordRow, record_id)
                return row.to_record() if row else None

        return await self._run(_get)

    async def list_for_owner(self, owner_id: str) -> list[DraftRecord]:
        """All cached records for an owner, newest first."""

        def _list():
            with self._session_factory() as session:
                rows = session.scalars(
                    select(DraftRecordRow)
                    .where(DraftRecordRow.owner_id == owner_id)
                    .order_by(DraftRecordRow.created_at.desc())
                ).all()
                return [row.to_record() for row in rows]

        return await self._run(_list)

    async def get_unsynced(self, owner_id: str) -> list[DraftRecord]:
        def _unsynced():
            with self._session_factory() as session:
                rows = session.scalars(
                    select(DraftRecordRow)
                    .where(
                        DraftRecordRow.owner_id == owner_id,
                        DraftRecordRow.sync_state == SyncState.UNSYNCED.value,
                    )
                    .order_by(DraftRecordRow.created_at.asc())
                ).all()
                return [row.to_record() for row in rows]

        return await self._run(_unsynced)

    async def count_unsynced(self, owner_id: str) -> int:
        def _count():
            with self._session_factory() as session:
                return session.scalar(
                    select(func.count())
                    .select_from(DraftRecordRow)
                    .where(
                        DraftRecordRow.owner_id == owner_id,
                        DraftRecordRow.sync_state == SyncState.UNSYNCED.value,
                    )
                )

        return await self._run(_count)

    # --- Writes ---

    async def save_draft(self, record: DraftRecord) -> None:
        """Insert a new draft, or replace one that has not been synced yet.

        Raises:
            LocalStoreError: If a synced record with the same id exists
        """

        def _save():
            with self._session_factory() as session:
                existing = session.get(DraftRecordRow, record.id)
                if existing is not None:
                    if existing.sync_state == SyncState.SYNCED.value:
                        raise LocalStoreError(
                            f"Record {record.id} is already synced and cannot be replaced"
                        )
                    session.delete(existing)
                    session.flush()
                row = DraftRecordRow.from_record(record)
                row.sync_state = SyncState.UNSYNCED.value
                session.add(row)
                session.commit()

        await self._run(_save)
        logger.debug(f"Saved draft {record.id} for {record.owner_id}")
        await self._notify({record.owner_id})

    async def update(self, record: DraftRecord) -> None:
        def _update():
            with self._session_factory() as session:
                result = session.execute(
                    update(DraftRecordRow)
                    .where(DraftRecordRow.id == record.id)
                    .values(
                        type=record.type,
                        weight=record.weight,
                        estimated_value=record.estimated_value,
                        description=record.description,
                        attachment_ref=record.attachment_ref,
                    )
                )
                session.commit()
                return result.rowcount

        rowcount = await self._run(_update)
        if not rowcount:
            raise LocalStoreError(f"Record not found: {record.id}")
        await self._notify({record.owner_id})

    async def mark_synced(self, record_id: str) -> bool:
        return await self.mark_many_synced([record_id]) == 1

    async def mark_many_synced(self, record_ids: list[str]) -> int:
        if not record_ids:
            return 0

        def _mark():
            with self._session_factory() as session:
                owners = set(
                    session.scalars(
                        select(DraftRecordRow.owner_id).where(
                            DraftRecordRow.id.in_(record_ids)
                        )
                    ).all()
                )
                # Only unsynced rows transition, so a record is marked once
                result = session.execute(
                    update(DraftRecordRow)
                    .where(
                        DraftRecordRow.id.in_(record_ids),
                        DraftRecordRow.sync_state == SyncState.UNSYNCED.value,
                    )
                    .values(
                        sync_state=SyncState.SYNCED.value,
                        synced_at=datetime.now(timezone.utc),
                    )
                )
                session.commit()
                return result.rowcount, owners

        count, owners = await self._run(_mark)
        logger.debug(f"Marked {count} of {len(record_ids)} records synced")
        await self._notify(owners)
        return count

    async def evict_synced_older_than(self, cutoff: datetime) -> int:
        """Delete synced records created before ``cutoff``.

        Unsynced records are never evicted.

        Returns:
            Number of records deleted
        """

        def _evict():
            with self._session_factory() as session:
                owners = set(
                    session.scalars(
                        select(DraftRecordRow.owner_id).where(
                            DraftRecordRow.sync_state == SyncState.SYNCED.value,
                            DraftRecordRow.created_at < cutoff,
                        )
                    ).all()
                )
                result = session.execute(
                    delete(DraftRecordRow).where(
                        DraftRecordRow.sync_state == SyncState.SYNCED.value,
                        DraftRecordRow.created_at < cutoff,
                    )
                )
                session.commit()
                return result.rowcount, owners

        count, owners = await self._run(_evict)
        if count:
            logger.info(f"Evicted {count} synced records older than {cutoff.isoformat()}")
        await self._notify(owners)
        return count
