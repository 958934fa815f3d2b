"""S3 storage for owner collections.

Each owner's collection is one JSON object ``{"version": n, "items": {...}}``
under ``<prefix>/<owner_id>.json``. Writes are conditional on the version the
client read; a mismatch raises :class:`PreconditionFailedError`.
"""

import json
import logging
import threading
from typing import Any, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""


class PreconditionFailedError(StorageError):
    """Conditional write failed (version mismatch)."""

    def __init__(self, message: str, current_version: int, provided_version: int):
        super().__init__(message)
        self.current_version = current_version
        self.provided_version = provided_version


class S3CollectionStorage:
    """Handles all S3 operations for the records proxy."""

    def __init__(self, settings: Settings = None, client=None):
        """Initialize storage.

        Args:
            settings: Proxy settings (read from the environment when omitted)
            client: Optional pre-built boto3 S3 client
        """
        if settings is None:
            settings = Settings()

        self.s3 = client or boto3.client(
            "s3",
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
        )
        self.bucket = settings.s3_bucket
        self.prefix = settings.s3_prefix.strip("/")

        # Serializes read-check-write per owner within this process
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _make_key(self, owner_id: str) -> str:
        name = f"{owner_id.strip('/')}.json"
        return f"{self.prefix}/{name}" if self.prefix else name

    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = self._locks[owner_id] = threading.Lock()
            return lock

    def health_check(self) -> bool:
        """Check if S3 is accessible."""
        try:
            self.s3.head_bucket(Bucket=self.bucket)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Health check failed: {e}")
            return False

    def read_collection(self, owner_id: str) -> Tuple[dict[str, dict[str, Any]], int]:
        """
        Read an owner's collection.

        Returns:
            Tuple of (items, version); ({}, 0) when the collection does not exist

        Raises:
            StorageError: For S3 errors or a corrupt collection object
        """
        key = self._make_key(owner_id)
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            data = json.loads(response["Body"].read())
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return {}, 0
            logger.error(f"Error reading collection {owner_id}: {e}")
            raise StorageError(f"Failed to read collection: {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to read collection: {e}")
        except json.JSONDecodeError as e:
            raise StorageError(f"Collection {owner_id} is corrupt: {e}")

        return data.get("items", {}), int(data.get("version", 0))

    def write_collection(
        self,
        owner_id: str,
        items: dict[str, dict[str, Any]],
        expected_version: int | None = None,
    ) -> int:
        """
        Replace an owner's collection.

        Args:
            owner_id: Owner identifier
            items: New collection
            expected_version: Version the writer read (0 for a new collection);
                              None writes unconditionally

        Returns:
            The new version

        Raises:
            PreconditionFailedError: If the stored version differs from expected_version
            StorageError: For other S3 errors
        """
        key = self._make_key(owner_id)

        with self._lock_for(owner_id):
            _, current_version = self.read_collection(owner_id)
            if expected_version is not None and current_version != expected_version:
                raise PreconditionFailedError(
                    "Collection version mismatch",
                    current_version=current_version,
                    provided_version=expected_version,
                )

            new_version = current_version + 1
            body = json.dumps({"version": new_version, "items": items}).encode("utf-8")
            try:
                self.s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=body,
                    ContentType="application/json",
                    Metadata={"version": str(new_version)},
                )
            except (BotoCoreError, ClientError) as e:
                logger.error(f"Error writing collection {owner_id}: {e}")
                raise StorageError(f"Failed to write collection: {e}")

        logger.info(f"Wrote collection {owner_id} (v{new_version}, {len(items)} items)")
        return new_version
