"""Client for the remote document store.

The remote store keeps one collection per owner: a map of record id to
record document plus a version number. Writes replace the whole collection
and are conditional on the version the writer read, so two devices merging
into the same owner cannot silently drop each other's additions.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from recyclesync.exceptions import (
    AuthenticationError,
    NotFoundError,
    RemoteStoreError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)


@dataclass
class RemoteCollection:
    """An owner's remote records and the version they were read at."""

    owner_id: str
    items: dict[str, dict[str, Any]] = field(default_factory=dict)
    version: int = 0


class RemoteStore(ABC):
    """Abstract interface for the remote document store."""

    @abstractmethod
    async def get_owner_collection(self, owner_id: str) -> RemoteCollection:
        """Read an owner's collection. Missing collections are empty at version 0."""

    @abstractmethod
    async def replace_owner_collection(
        self,
        owner_id: str,
        items: dict[str, dict[str, Any]],
        expected_version: int,
    ) -> int:
        """Replace an owner's collection.

        Args:
            owner_id: Owner whose collection is written
            items: Complete new collection
            expected_version: Version the caller read (0 for a new collection)

        Returns:
            The new version

        Raises:
            VersionConflictError: If the stored version is not expected_version
            RemoteStoreError: For any other failure
        """

    async def close(self) -> None:
        """Release any held resources."""


class HttpRemoteStore(RemoteStore):
    """Remote store backed by the records proxy HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            base_url: Records proxy URL
            token: Bearer token
            timeout: Request timeout in seconds
            transport: Optional transport override (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def __aenter__(self) -> "HttpRemoteStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _raise_for_status(self, response: httpx.Response, owner_id: str) -> None:
        if response.status_code in (401, 403):
            raise AuthenticationError(f"Authentication failed: {response.text}")
        if response.status_code == 404:
            raise NotFoundError(f"Collection not found: {owner_id}")
        if response.status_code == 412:
            current = None
            try:
                current = response.json().get("context", {}).get("current_version")
            except ValueError:
                pass
            raise VersionConflictError(
                f"Version conflict writing collection {owner_id}",
                current_version=current,
            )
        if response.status_code >= 400:
            raise RemoteStoreError(
                f"Remote store error {response.status_code}: {response.text}"
            )

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False

    async def get_owner_collection(self, owner_id: str) -> RemoteCollection:
        try:
            response = await self.client.get(f"/collections/{owner_id}")
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"Failed to read collection {owner_id}: {e}") from e

        if response.status_code == 404:
            return RemoteCollection(owner_id=owner_id)
        self._raise_for_status(response, owner_id)
        try:
            data = response.json()
            return RemoteCollection(
                owner_id=owner_id,
                items=dict(data.get("items", {})),
                version=int(data.get("version", 0)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise RemoteStoreError(
                f"Unreadable collection response for {owner_id}: {e}"
            ) from e

    async def replace_owner_collection(
        self,
        owner_id: str,
        items: dict[str, dict[str, Any]],
        expected_version: int,
    ) -> int:
        try:
            response = await self.client.put(
                f"/collections/{owner_id}",
                json={"items": items},
                headers={"If-Match-Version": str(expected_version)},
            )
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"Failed to write collection {owner_id}: {e}") from e

        self._raise_for_status(response, owner_id)
        try:
            new_version = int(response.json()["version"])
        except (ValueError, KeyError, TypeError) as e:
            raise RemoteStoreError(f"Unreadable write response for {owner_id}: {e}") from e
        logger.debug(f"Wrote collection {owner_id} (v{new_version}, {len(items)} items)")
        return new_version

    async def close(self) -> None:
        await self.client.aclose()
