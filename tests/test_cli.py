"""Tests for the recyclesync command line interface."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from recyclesync import cli
from recyclesync.local import SqlLocalStore, SqlPendingAttachmentCache, create_session_factory
from recyclesync.models import AttachmentState, SyncState
from recyclesync.oplog import SyncOperationLog


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a throwaway database and operation log."""
    database_url = f"sqlite:///{tmp_path / 'cache.db'}"
    oplog_path = tmp_path / "oplog.jsonl"
    monkeypatch.setenv("RECYCLESYNC_DATABASE_URL", database_url)
    monkeypatch.setenv("RECYCLESYNC_OPERATION_LOG", str(oplog_path))
    monkeypatch.delenv("RECYCLESYNC_REMOTE_URL", raising=False)
    monkeypatch.delenv("RECYCLESYNC_REMOTE_TOKEN", raising=False)
    monkeypatch.setenv("COLUMNS", "200")
    return database_url, oplog_path


def _records(database_url, owner_id="h1"):
    store = SqlLocalStore(create_session_factory(database_url))
    return asyncio.run(store.list_for_owner(owner_id))


class TestAddDraft:
    def test_creates_draft_without_image(self, cli_env, capsys):
        database_url, _ = cli_env

        cli.add_draft("h1", item_type="plastic", weight=2.5, value=3000.0)

        records = _records(database_url)
        assert len(records) == 1
        assert records[0].type == "plastic"
        assert records[0].attachment_state == AttachmentState.NONE
        assert records[0].sync_state == SyncState.UNSYNCED
        assert "Draft saved" in capsys.readouterr().out

    def test_image_becomes_pending_attachment(self, cli_env, tmp_path):
        database_url, _ = cli_env
        image = tmp_path / "bottle.jpg"
        image.write_bytes(b"jpeg")

        cli.add_draft("h1", item_type="glass", weight=1.0, value=500.0, image=image)

        record = _records(database_url)[0]
        assert record.attachment_state == AttachmentState.PENDING
        cache = SqlPendingAttachmentCache(create_session_factory(database_url))
        assert asyncio.run(cache.get(record.pending_temp_id)) == str(image.resolve())

    def test_drafts_in_same_millisecond_are_kept(self, cli_env):
        database_url, _ = cli_env

        with patch("recyclesync.models.time.time", return_value=1714550400.0):
            cli.add_draft("h1", item_type="paper", weight=1.0, value=100.0)
            cli.add_draft("h1", item_type="glass", weight=2.0, value=200.0)

        assert sorted(r.type for r in _records(database_url)) == ["glass", "paper"]

    def test_missing_image_is_rejected(self, cli_env, tmp_path, capsys):
        database_url, _ = cli_env

        cli.add_draft(
            "h1", item_type="glass", weight=1.0, value=500.0, image=tmp_path / "gone.jpg"
        )

        assert _records(database_url) == []
        assert "Image not found" in capsys.readouterr().out


class TestStatus:
    def test_everything_synced(self, cli_env, capsys):
        cli.status("h1")

        out = capsys.readouterr().out
        assert "Pending records" in out
        assert "Everything is synced" in out

    def test_lists_unsynced_records(self, cli_env, capsys):
        cli.add_draft("h1", item_type="paper", weight=3.0, value=900.0)
        capsys.readouterr()

        cli.status("h1")

        out = capsys.readouterr().out
        assert "Unsynced Records" in out
        assert "paper" in out
        assert "ready" in out


class TestCleanup:
    def test_evicts_old_synced_drafts(self, cli_env, make_record, capsys):
        database_url, oplog_path = cli_env
        store = SqlLocalStore(create_session_factory(database_url))
        old = datetime.now(timezone.utc) - timedelta(days=60)

        async def seed():
            await store.save_draft(make_record("old_synced", created_at=old))
            await store.save_draft(make_record("old_unsynced", created_at=old))
            await store.mark_synced("old_synced")

        asyncio.run(seed())
        SyncOperationLog(oplog_path).log_operation("push", "old_synced", "success")

        cli.cleanup(days=30)

        assert [r.id for r in _records(database_url)] == ["old_unsynced"]
        assert "Evicted 1 synced drafts" in capsys.readouterr().out


class TestSync:
    def test_unconfigured_remote(self, cli_env, capsys):
        cli.sync("h1")

        assert "Remote store not configured" in capsys.readouterr().out

    def test_runs_pass(self, cli_env, monkeypatch, make_engine, local_store, make_record, capsys):
        monkeypatch.setenv("RECYCLESYNC_REMOTE_URL", "https://records.example.com")
        monkeypatch.setenv("RECYCLESYNC_REMOTE_TOKEN", "secret")
        engine = make_engine()
        asyncio.run(local_store.save_draft(make_record("h1_1")))

        with patch("recyclesync.cli.create_sync_engine", return_value=engine):
            cli.sync("h1")

        out = capsys.readouterr().out
        assert "Sync complete" in out
        assert engine.remote_store.items("h1").keys() == {"h1_1"}
