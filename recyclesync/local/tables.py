"""SQLAlchemy tables backing the local cache."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Integer, String, Text

from recyclesync.local.database import Base
from recyclesync.models import DraftRecord, SyncState


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


class DraftRecordRow(Base):
    __tablename__ = "draft_records"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    weight = Column(Float, nullable=False, default=0.0)
    estimated_value = Column(Float, nullable=False, default=0.0)
    description = Column(Text, nullable=False, default="")
    attachment_ref = Column(String, nullable=False, default="")
    created_at = Column(DateTime, nullable=False)
    sync_state = Column(
        String, nullable=False, default=SyncState.UNSYNCED.value, index=True
    )
    synced_at = Column(DateTime, nullable=True)

    def to_record(self) -> DraftRecord:
        return DraftRecord(
            id=self.id,
            owner_id=self.owner_id,
            type=self.type,
            weight=self.weight,
            estimated_value=self.estimated_value,
            description=self.description or "",
            attachment_ref=self.attachment_ref or "",
            created_at=_as_utc(self.created_at),
            sync_state=SyncState(self.sync_state),
        )

    @classmethod
    def from_record(cls, record: DraftRecord) -> "DraftRecordRow":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            type=record.type,
            weight=record.weight,
            estimated_value=record.estimated_value,
            description=record.description,
            attachment_ref=record.attachment_ref,
            created_at=_to_utc(record.created_at),
            sync_state=record.sync_state.value,
        )


class PendingAttachmentRow(Base):
    __tablename__ = "pending_attachments"

    temp_id = Column(String, primary_key=True)
    source_ref = Column(Text, nullable=False)
    created_at = Column(
        DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )


class SyncStatusRow(Base):
    """Failure bookkeeping per identifier (record id, login identifier, ...)."""

    __tablename__ = "sync_status"

    identifier = Column(String, primary_key=True)
    failure_count = Column(Integer, nullable=False, default=0)
    lockout_until = Column(Float, nullable=False, default=0.0)
    last_error = Column(Text, nullable=True)
    updated_at = Column(Float, nullable=False, default=0.0)
