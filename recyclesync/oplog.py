"""Operation log for sync passes.

Every per-record outcome of a sync pass (attachment upload, remote push,
local mark) is appended as one JSON line, so a failed or interrupted pass can
be inspected after the fact.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

OP_UPLOAD = "upload"
OP_PUSH = "push"
OP_MARK = "mark"


@dataclass
class SyncOperation:
    """A logged sync operation."""

    op_id: str
    op_type: str  # "upload", "push", "mark"
    record_id: str
    status: str  # "success", "failed", "skipped"
    owner_id: str = ""
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "op_id": self.op_id,
            "op_type": self.op_type,
            "record_id": self.record_id,
            "owner_id": self.owner_id,
            "status": self.status,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, entry: dict[str, Any]) -> "SyncOperation":
        return cls(
            op_id=entry["op_id"],
            op_type=entry["op_type"],
            record_id=entry["record_id"],
            owner_id=entry.get("owner_id", ""),
            status=entry["status"],
            error=entry.get("error"),
            timestamp=datetime.fromisoformat(entry["timestamp"]),
            metadata=entry.get("metadata", {}),
        )


class SyncOperationLog:
    """Append-only JSONL log of sync operations."""

    def __init__(self, log_file: Path):
        """Initialize sync operation log.

        Args:
            log_file: Path of the JSONL file (created on first write)
        """
        self.log_file = Path(log_file)

    def log_operation(
        self,
        op_type: str,
        record_id: str,
        status: str,
        owner_id: str = "",
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a sync operation.

        Args:
            op_type: Operation type ("upload", "push", "mark")
            record_id: Record the operation applied to
            status: Operation status ("success", "failed", "skipped")
            owner_id: Owner of the record
            error: Error message if failed
            metadata: Additional metadata

        Returns:
            Operation ID
        """
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now(timezone.utc)
        digest = hashlib.md5(f"{op_type}:{record_id}".encode()).hexdigest()[:8]
        operation = SyncOperation(
            op_id=f"{int(timestamp.timestamp() * 1000)}_{digest}",
            op_type=op_type,
            record_id=record_id,
            owner_id=owner_id,
            status=status,
            error=error,
            timestamp=timestamp,
            metadata=metadata or {},
        )

        try:
            with open(self.log_file, "a") as f:
                f.write(json.dumps(operation.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to write to operation log: {e}")
            raise

        logger.debug(f"Logged {op_type} operation: {record_id} ({status})")
        return operation.op_id

    def get_failed_operations(self) -> list[SyncOperation]:
        return self._filter_operations(lambda op: op.status == "failed")

    def get_recent_operations(self, limit: int = 50) -> list[SyncOperation]:
        """Get recent operations.

        Args:
            limit: Maximum number of operations to return

        Returns:
            List of recent operations (newest first)
        """
        operations = self._read_all_operations()
        return operations[-limit:][::-1]

    def get_operations_for_record(self, record_id: str) -> list[SyncOperation]:
        return self._filter_operations(lambda op: op.record_id == record_id)

    def get_statistics(self) -> dict[str, Any]:
        """Get statistics about sync operations.

        Returns:
            Dictionary with totals by type and status, plus failures in the
            last 24 hours
        """
        operations = self._read_all_operations()

        stats = {
            "total_operations": len(operations),
            "by_type": {},
            "by_status": {},
            "recent_failures": 0,
        }

        for op in operations:
            stats["by_type"][op.op_type] = stats["by_type"].get(op.op_type, 0) + 1
            stats["by_status"][op.status] = stats["by_status"].get(op.status, 0) + 1

        recent_threshold = datetime.now(timezone.utc) - timedelta(hours=24)
        stats["recent_failures"] = sum(
            1
            for op in operations
            if op.status == "failed" and op.timestamp > recent_threshold
        )

        return stats

    def truncate_after_sync(self, keep_days: int = 7) -> int:
        """Drop entries older than ``keep_days``.

        Returns:
            Number of entries removed
        """
        operations = self._read_all_operations()
        if not operations:
            return 0

        cutoff = datetime.now(timezone.utc) - timedelta(days=keep_days)
        kept = [op for op in operations if op.timestamp > cutoff]
        removed = len(operations) - len(kept)
        if removed == 0:
            return 0

        tmp_file = self.log_file.with_suffix(self.log_file.suffix + ".tmp")
        with open(tmp_file, "w") as f:
            for op in kept:
                f.write(json.dumps(op.to_dict()) + "\n")
        tmp_file.replace(self.log_file)

        logger.info(f"Truncated operation log: removed {removed} entries")
        return removed

    def _read_all_operations(self) -> list[SyncOperation]:
        if not self.log_file.exists():
            return []

        operations = []
        try:
            with open(self.log_file, "r") as f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        operations.append(SyncOperation.from_dict(json.loads(line)))
                    except (json.JSONDecodeError, KeyError, ValueError) as e:
                        logger.warning(f"Skipping invalid log entry: {e}")
                        continue
        except OSError as e:
            logger.error(f"Failed to read operation log: {e}")
            return []

        return operations

    def _filter_operations(
        self, predicate: Callable[[SyncOperation], bool]
    ) -> list[SyncOperation]:
        return [op for op in self._read_all_operations() if predicate(op)]
