"""Domain model for draft records and their attachments.

A draft record is a waste item created on the device. It lives in the local
store until a sync pass confirms that the remote collection holds it.

The ``attachment_ref`` field carries one of:
- an empty string (no attachment)
- a final URL returned by the blob uploader
- the sentinel ``pending:<temp_id>`` while the upload has not completed
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

PENDING_PREFIX = "pending:"


class SyncState(str, Enum):
    """Sync flag of a draft record."""

    UNSYNCED = "unsynced"
    SYNCED = "synced"


class AttachmentState(str, Enum):
    """Where a record's attachment stands in the repair state machine."""

    NONE = "none"
    PENDING = "pending"
    RESOLVED = "resolved"


def make_pending_ref(temp_id: str) -> str:
    """Build the sentinel stored in ``attachment_ref`` for an unfinished upload."""
    if not temp_id:
        raise ValueError("temp_id must not be empty")
    return f"{PENDING_PREFIX}{temp_id}"


def is_pending_ref(ref: str | None) -> bool:
    return bool(ref) and ref.startswith(PENDING_PREFIX)


def parse_pending_ref(ref: str) -> str | None:
    """Return the temp id inside a pending sentinel, or None for anything else."""
    if not is_pending_ref(ref):
        return None
    temp_id = ref[len(PENDING_PREFIX) :]
    return temp_id or None


def new_record_id(owner_id: str) -> str:
    """Generate an id for a record the caller created without one.

    ``<owner>_<millis>_<random>``; the random suffix keeps two drafts created
    in the same millisecond apart.
    """
    return f"{owner_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _field(data: dict[str, Any], name: str, camel_name: str, default: Any = None) -> Any:
    """Read a document field written either snake_case or camelCase (mobile client)."""
    if name in data:
        return data[name]
    return data.get(camel_name, default)


@dataclass
class DraftRecord:
    """A waste item draft held in the local store."""

    id: str
    owner_id: str
    type: str
    weight: float
    estimated_value: float
    description: str = ""
    attachment_ref: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    sync_state: SyncState = SyncState.UNSYNCED

    @property
    def is_synced(self) -> bool:
        return self.sync_state == SyncState.SYNCED

    @property
    def attachment_state(self) -> AttachmentState:
        if not self.attachment_ref:
            return AttachmentState.NONE
        if is_pending_ref(self.attachment_ref):
            return AttachmentState.PENDING
        return AttachmentState.RESOLVED

    @property
    def pending_temp_id(self) -> str | None:
        return parse_pending_ref(self.attachment_ref)

    def with_attachment(self, url: str) -> "DraftRecord":
        """Copy of this record with its attachment resolved to ``url``."""
        return replace(self, attachment_ref=url)

    def to_remote(self) -> dict[str, Any]:
        """Convert to the document stored in the owner's remote collection."""
        return {
            "id": self.id,
            "type": self.type,
            "weight": float(self.weight),
            "estimated_value": float(self.estimated_value),
            "description": self.description,
            "image_url": self.attachment_ref,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_remote(
        cls,
        owner_id: str,
        data: dict[str, Any],
        sync_state: SyncState = SyncState.SYNCED,
    ) -> "DraftRecord":
        """Build a record from a remote document.

        Args:
            owner_id: Owner of the collection the document came from
            data: Remote document
            sync_state: State to assign (remote documents are synced by definition)

        Raises:
            ValueError: If the document has no id
        """
        record_id = data.get("id")
        if not record_id:
            raise ValueError("Remote record has no id")

        created_at = _field(data, "created_at", "createdAt")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        elif isinstance(created_at, (int, float)):
            # Epoch milliseconds
            created_at = datetime.fromtimestamp(created_at / 1000, tz=timezone.utc)
        else:
            created_at = _utcnow()

        return cls(
            id=record_id,
            owner_id=owner_id,
            type=data.get("type", ""),
            weight=float(data.get("weight", 0.0)),
            estimated_value=float(_field(data, "estimated_value", "estimatedValue", 0.0)),
            description=data.get("description", ""),
            attachment_ref=_field(data, "image_url", "imageUrl", "") or "",
            created_at=created_at,
            sync_state=sync_state,
        )
