"""Cache of attachment sources whose upload has not completed.

When a record is saved offline with an image, the image's source reference
(a file path or ``file://`` URI) is stored here under a temporary id and the
record carries ``pending:<temp_id>``. The entry is removed once the upload
succeeded and the record was rewritten with the final URL.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from recyclesync.exceptions import LocalStoreError
from recyclesync.local.tables import PendingAttachmentRow

logger = logging.getLogger(__name__)


class PendingAttachmentCache(ABC):
    """Abstract interface for the pending attachment cache."""

    @abstractmethod
    async def get(self, temp_id: str) -> str | None:
        """Return the cached source reference, or None if unknown."""

    @abstractmethod
    async def clear(self, temp_id: str) -> None:
        """Forget a temp id. Clearing an unknown id is a no-op."""

    @abstractmethod
    async def put(self, source_ref: str, temp_id: str | None = None) -> str:
        """Remember a source reference and return its temp id."""

    @abstractmethod
    async def count(self) -> int:
        """Number of attachments still waiting for upload."""


class SqlPendingAttachmentCache(PendingAttachmentCache):
    """Pending attachment cache stored next to the draft records."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, fn):
        try:
            return await asyncio.to_thread(fn)
        except SQLAlchemyError as e:
            raise LocalStoreError(f"Pending attachment cache failed: {e}") from e

    async def put(self, source_ref: str, temp_id: str | None = None) -> str:
        """Remember a source reference.

        Args:
            source_ref: Path or URI of the original attachment
            temp_id: Id to store it under (generated when omitted)

        Returns:
            The temp id to embed in the record's pending sentinel
        """
        temp_id = temp_id or uuid.uuid4().hex

        def _put():
            with self._session_factory() as session:
                session.merge(PendingAttachmentRow(temp_id=temp_id, source_ref=source_ref))
                session.commit()

        await self._run(_put)
        logger.debug(f"Cached pending attachment {temp_id} -> {source_ref}")
        return temp_id

    async def get(self, temp_id: str) -> str | None:
        def _get():
            with self._session_factory() as session:
                row = session.get(PendingAttachmentRow, temp_id)
                return row.source_ref if row else None

        return await self._run(_get)

    async def clear(self, temp_id: str) -> None:
        def _clear():
            with self._session_factory() as session:
                row = session.get(PendingAttachmentRow, temp_id)
                if row is not None:
                    session.delete(row)
                    session.commit()

        await self._run(_clear)

    async def count(self) -> int:
        def _count():
            with self._session_factory() as session:
                return session.scalar(
                    select(func.count()).select_from(PendingAttachmentRow)
                )

        return await self._run(_count)
