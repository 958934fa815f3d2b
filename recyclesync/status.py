"""Failure tracking with exponential lockout.

Tracks consecutive failures per identifier. After ``max_attempts`` failures
the identifier is locked out; every further failure doubles the lockout, up
to ``max_lockout_seconds``. Any success resets the identifier.

The same store gates login attempts (identifier = email or phone) and
chronically failing sync records (identifier = ``record:<id>``), so a record
that keeps failing is not retried on every reachability event.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from recyclesync.exceptions import LocalStoreError
from recyclesync.local.tables import SyncStatusRow

logger = logging.getLogger(__name__)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


@dataclass
class LimitStatus:
    """Current limit state for an identifier."""

    is_locked: bool
    remaining_attempts: int
    lockout_remaining: float = 0.0
    attempts_used: int = 0

    @property
    def message(self) -> str:
        """Human-readable description of the status."""
        if self.is_locked:
            total = int(self.lockout_remaining)
            minutes, seconds = divmod(total, 60)
            if minutes > 0:
                return (
                    f"Too many failed attempts. Try again in "
                    f"{_plural(minutes, 'minute')} and {_plural(seconds, 'second')}."
                )
            return f"Too many failed attempts. Try again in {_plural(seconds, 'second')}."
        if 0 < self.remaining_attempts <= 2:
            return f"{_plural(self.remaining_attempts, 'attempt')} remaining."
        return ""


class SyncStatusStore:
    """Persistent per-identifier failure counter with lockout."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = 5,
        lockout_seconds: float = 300.0,
        max_lockout_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
        case_sensitive: bool = False,
    ):
        """Initialize the store.

        Args:
            session_factory: Factory from ``create_session_factory``
            max_attempts: Failures allowed before the first lockout
            lockout_seconds: Duration of the first lockout
            max_lockout_seconds: Upper bound for the doubled lockouts
            clock: Time source returning epoch seconds
            case_sensitive: Keep the case of identifiers. Login identifiers
                          (emails, phone numbers) are lower-cased; record ids
                          are not.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.max_lockout_seconds = max_lockout_seconds
        self._clock = clock
        self.case_sensitive = case_sensitive

    def normalize(self, identifier: str) -> str:
        identifier = identifier.strip()
        return identifier if self.case_sensitive else identifier.lower()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise LocalStoreError(f"Sync status store operation failed: {e}") from e

    def _lockout_for(self, failure_count: int) -> float:
        exponent = max(failure_count - self.max_attempts, 0)
        return min(self.lockout_seconds * (2**exponent), self.max_lockout_seconds)

    def check_limit(self, identifier: str) -> LimitStatus:
        key = self.normalize(identifier)
        now = self._clock()
        with self._session() as session:
            row = session.get(SyncStatusRow, key)
            if row is None:
                return LimitStatus(is_locked=False, remaining_attempts=self.max_attempts)

            if row.lockout_until > now:
                return LimitStatus(
                    is_locked=True,
                    remaining_attempts=0,
                    lockout_remaining=row.lockout_until - now,
                    attempts_used=row.failure_count,
                )

            return LimitStatus(
                is_locked=False,
                remaining_attempts=max(self.max_attempts - row.failure_count, 0),
                attempts_used=row.failure_count,
            )

    def is_locked(self, identifier: str) -> bool:
        return self.check_limit(identifier).is_locked

    def record_failure(self, identifier: str, error: str | None = None) -> LimitStatus:
        """Count a failed attempt, locking the identifier out when due.

        Returns:
            Status after recording the failure
        """
        key = self.normalize(identifier)
        now = self._clock()
        with self._session() as session:
            row = session.get(SyncStatusRow, key)
            if row is None:
                row = SyncStatusRow(identifier=key, failure_count=0, lockout_until=0.0)
                session.add(row)

            row.failure_count = (row.failure_count or 0) + 1
            row.last_error = error
            row.updated_at = now

            if row.failure_count >= self.max_attempts:
                lockout = self._lockout_for(row.failure_count)
                row.lockout_until = now + lockout
                logger.warning(
                    f"{key} locked out for {lockout:.0f}s after "
                    f"{row.failure_count} consecutive failures"
                )
            session.commit()

        return self.check_limit(key)

    def record_success(self, identifier: str) -> None:
        """Reset the counters for an identifier."""
        self.clear(identifier)

    def clear(self, identifier: str) -> None:
        key = self.normalize(identifier)
        with self._session() as session:
            session.execute(delete(SyncStatusRow).where(SyncStatusRow.identifier == key))
            session.commit()

    def clear_all(self) -> None:
        with self._session() as session:
            session.execute(delete(SyncStatusRow))
            session.commit()

    def time_remaining(self, identifier: str) -> float:
        """Seconds left in the identifier's lockout, 0 if not locked."""
        return self.check_limit(identifier).lockout_remaining

    def last_error(self, identifier: str) -> str | None:
        with self._session() as session:
            row = session.get(SyncStatusRow, self.normalize(identifier))
            return row.last_error if row else None

    def locked_identifiers(self, prefix: str = "") -> list[str]:
        """Identifiers currently locked out, optionally filtered by prefix."""
        now = self._clock()
        prefix = self.normalize(prefix)
        with self._session() as session:
            rows = session.scalars(
                select(SyncStatusRow.identifier).where(
                    SyncStatusRow.lockout_until > now,
                    SyncStatusRow.identifier.startswith(prefix),
                )
            ).all()
            return list(rows)
