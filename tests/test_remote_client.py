"""Tests for the HTTP remote store client."""

import json

import httpx
import pytest

from recyclesync.exceptions import (
    AuthenticationError,
    RemoteStoreError,
    VersionConflictError,
)
from recyclesync.remote import HttpRemoteStore


def _store(handler) -> HttpRemoteStore:
    return HttpRemoteStore(
        "https://records.example.com/",
        "secret-token",
        transport=httpx.MockTransport(handler),
    )


class TestHttpRemoteStore:
    """Tests for HttpRemoteStore."""

    @pytest.mark.asyncio
    async def test_get_collection(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                json={"owner_id": "h1", "version": 3, "items": {"a": {"id": "a"}}},
            )

        async with _store(handler) as store:
            collection = await store.get_owner_collection("h1")

        assert seen["url"] == "https://records.example.com/collections/h1"
        assert seen["auth"] == "Bearer secret-token"
        assert collection.items == {"a": {"id": "a"}}
        assert collection.version == 3

    @pytest.mark.asyncio
    async def test_missing_collection_is_empty(self):
        async with _store(lambda request: httpx.Response(404)) as store:
            collection = await store.get_owner_collection("h1")

        assert collection.items == {}
        assert collection.version == 0

    @pytest.mark.asyncio
    async def test_replace_sends_expected_version(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["version"] = request.headers["If-Match-Version"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"owner_id": "h1", "version": 4})

        async with _store(handler) as store:
            version = await store.replace_owner_collection("h1", {"a": {"id": "a"}}, 3)

        assert version == 4
        assert seen == {"method": "PUT", "version": "3", "body": {"items": {"a": {"id": "a"}}}}

    @pytest.mark.asyncio
    async def test_precondition_failed_is_version_conflict(self):
        def handler(request):
            return httpx.Response(
                412,
                json={
                    "detail": "Collection version mismatch",
                    "error_code": "PRECONDITION_FAILED",
                    "context": {"current_version": 7, "provided_version": 3},
                },
            )

        async with _store(handler) as store:
            with pytest.raises(VersionConflictError) as exc_info:
                await store.replace_owner_collection("h1", {}, 3)

        assert exc_info.value.current_version == 7

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        async with _store(lambda request: httpx.Response(401, json={"detail": "no"})) as store:
            with pytest.raises(AuthenticationError):
                await store.get_owner_collection("h1")

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with _store(lambda request: httpx.Response(500, text="boom")) as store:
            with pytest.raises(RemoteStoreError):
                await store.replace_owner_collection("h1", {}, 0)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _store(handler) as store:
            with pytest.raises(RemoteStoreError):
                await store.get_owner_collection("h1")
            assert await store.health_check() is False

    @pytest.mark.asyncio
    async def test_health_check(self):
        async with _store(lambda request: httpx.Response(200, json={"status": "ok"})) as store:
            assert await store.health_check() is True

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_remote_error(self):
        def handler(request):
            return httpx.Response(200, text="<html>Login to WiFi</html>")

        async with _store(handler) as store:
            with pytest.raises(RemoteStoreError):
                await store.get_owner_collection("h1")
            with pytest.raises(RemoteStoreError):
                await store.replace_owner_collection("h1", {}, 0)

    @pytest.mark.asyncio
    async def test_write_response_without_version(self):
        async with _store(lambda request: httpx.Response(200, json={"owner_id": "h1"})) as store:
            with pytest.raises(RemoteStoreError):
                await store.replace_owner_collection("h1", {}, 0)


class TestEngineOverHttp:
    """Sync passes against an HTTP remote that answers with garbage."""

    @pytest.mark.asyncio
    async def test_captive_portal_page_fails_records_not_the_pass(
        self, make_engine, local_store, make_record
    ):
        store = _store(lambda request: httpx.Response(200, text="<html>Login to WiFi</html>"))
        engine = make_engine(remote_store=store)
        await local_store.save_draft(make_record("a"))

        report = await engine.sync_all("h1")
        await store.close()

        assert report.failed_ids == ["a"]
        assert report.synced_ids == []
        assert await local_store.count_unsynced("h1") == 1
