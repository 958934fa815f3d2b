"""Shared fixtures for recyclesync tests."""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from recyclesync.blob import BlobUploader
from recyclesync.connectivity import ConnectivityMonitor
from recyclesync.engine import SyncEngine
from recyclesync.exceptions import UploadError, VersionConflictError
from recyclesync.local import (
    SqlLocalStore,
    SqlPendingAttachmentCache,
    create_session_factory,
)
from recyclesync.models import DraftRecord
from recyclesync.oplog import SyncOperationLog
from recyclesync.remote import RemoteCollection, RemoteStore
from recyclesync.status import SyncStatusStore


class FakeClock:
    """Controllable time source for lockout tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemoteStore(RemoteStore):
    """In-memory versioned collections with failure injection."""

    def __init__(self):
        self.collections: dict[str, tuple[dict, int]] = {}
        self.reads = 0
        self.writes = 0
        self.fail_with: Exception | None = None
        # Called with the owner id before the version check of every write
        self.on_write = None

    def seed(self, owner_id: str, items: dict, version: int = 1) -> None:
        self.collections[owner_id] = (copy.deepcopy(items), version)

    def items(self, owner_id: str) -> dict:
        return self.collections.get(owner_id, ({}, 0))[0]

    def version(self, owner_id: str) -> int:
        return self.collections.get(owner_id, ({}, 0))[1]

    async def get_owner_collection(self, owner_id: str) -> RemoteCollection:
        self.reads += 1
        if self.fail_with is not None:
            raise self.fail_with
        items, version = self.collections.get(owner_id, ({}, 0))
        return RemoteCollection(owner_id=owner_id, items=copy.deepcopy(items), version=version)

    async def replace_owner_collection(self, owner_id, items, expected_version) -> int:
        self.writes += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.on_write is not None:
            self.on_write(owner_id)
        current = self.version(owner_id)
        if current != expected_version:
            raise VersionConflictError("version mismatch", current_version=current)
        self.collections[owner_id] = (copy.deepcopy(items), current + 1)
        return current + 1


class FakeUploader(BlobUploader):
    """Records uploads; can fail or block on demand."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def upload(self, source_ref: str, folder: str) -> str:
        self.calls.append((source_ref, folder))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if source_ref in self.failing:
            raise UploadError(f"network down while uploading {source_ref}")
        return f"https://blobs.example.com/{folder}/{Path(source_ref).name}"


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    return create_session_factory("sqlite://")


@pytest.fixture
def local_store(session_factory):
    return SqlLocalStore(session_factory)


@pytest.fixture
def pending_cache(session_factory):
    return SqlPendingAttachmentCache(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def status_store(session_factory, clock):
    return SyncStatusStore(
        session_factory,
        max_attempts=3,
        lockout_seconds=60,
        max_lockout_seconds=600,
        clock=clock,
        case_sensitive=True,
    )


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def monitor():
    return ConnectivityMonitor(initially_online=True)


@pytest.fixture
def operation_log(tmp_path):
    return SyncOperationLog(tmp_path / "oplog.jsonl")


@pytest.fixture
def make_engine(
    local_store, remote, uploader, pending_cache, monitor, status_store, operation_log
):
    """Factory building an engine over the test fixtures."""

    def _make(**overrides) -> SyncEngine:
        kwargs = dict(
            local_store=local_store,
            remote_store=remote,
            uploader=uploader,
            pending_cache=pending_cache,
            monitor=monitor,
            status_store=status_store,
            operation_log=operation_log,
            upload_folder="waste-items",
        )
        kwargs.update(overrides)
        return SyncEngine(**kwargs)

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def make_record():
    """Factory for draft records with increasing creation times."""
    base = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(record_id: str, owner_id: str = "h1", attachment_ref: str = "", **fields):
        counter["n"] += 1
        values = dict(
            type="plastic",
            weight=2.0,
            estimated_value=3000.0,
            description="",
            created_at=base + timedelta(minutes=counter["n"]),
        )
        values.update(fields)
        return DraftRecord(
            id=record_id,
            owner_id=owner_id,
            attachment_ref=attachment_ref,
            **values,
        )

    return _make


@pytest.fixture
def aws_env(monkeypatch):
    """Fake AWS credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test-key")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test-secret")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
