"""Blob upload client for record attachments.

Attachments are uploaded to S3-compatible object storage. The source is a
local file (path or ``file://`` URI); it is staged into a temporary copy
first so the original may change or disappear while the upload runs, and the
copy is always removed afterwards.
"""

import asyncio
import logging
import mimetypes
import shutil
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import unquote, urlparse

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from recyclesync.config import Settings
from recyclesync.exceptions import UploadCancelledError, UploadError

logger = logging.getLogger(__name__)


class BlobUploader(ABC):
    """Abstract interface for attachment uploads."""

    @abstractmethod
    async def upload(self, source_ref: str, folder: str) -> str:
        """Upload an attachment and return its stable URL.

        Args:
            source_ref: Path or URI of the attachment on this device
            folder: Destination folder in blob storage

        Raises:
            UploadError: On network, storage or source errors
        """


def resolve_source(source_ref: str) -> Path:
    """Turn a source reference into a local path.

    Raises:
        UploadError: If the reference is not a readable local file
    """
    parsed = urlparse(source_ref)
    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif parsed.scheme in ("", None) or len(parsed.scheme) == 1:
        # Plain paths (a single-letter scheme is a Windows drive)
        path = Path(source_ref)
    else:
        raise UploadError(f"Unsupported attachment source: {source_ref}")

    if not path.is_file():
        raise UploadError(f"Attachment source not found: {source_ref}")
    return path


class S3BlobUploader(BlobUploader):
    """Upload attachments to an S3 bucket.

    The boto3 client is created on first use, once, under a lock; the
    uploader can be constructed at startup and shared freely.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        public_base_url: str | None = None,
        staging_dir: Path | None = None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.staging_dir = staging_dir
        self._credentials = {
            "aws_access_key_id": aws_access_key_id,
            "aws_secret_access_key": aws_secret_access_key,
        }
        self._client = None
        self._client_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobUploader":
        if not settings.s3_bucket:
            raise ValueError("RECYCLESYNC_S3_BUCKET is not configured")
        return cls(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            public_base_url=settings.blob_public_url,
        )

    @property
    def client(self):
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = boto3.client(
                        "s3",
                        region_name=self.region,
                        endpoint_url=self.endpoint_url,
                        **self._credentials,
                    )
                    logger.debug(f"S3 client initialized for bucket {self.bucket}")
        return self._client

    def url_for(self, key: str) -> str:
        """Public URL of an uploaded object."""
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _make_key(self, folder: str, source: Path) -> str:
        suffix = source.suffix.lower() or ".bin"
        folder = folder.strip("/")
        name = f"{uuid.uuid4().hex}{suffix}"
        return f"{folder}/{name}" if folder else name

    def _stage(self, source: Path) -> Path:
        fd, staged = tempfile.mkstemp(
            prefix="attachment_", suffix=source.suffix, dir=self.staging_dir
        )
        with open(fd, "wb") as out, open(source, "rb") as src:
            shutil.copyfileobj(src, out)
        return Path(staged)

    def _upload_sync(self, source_ref: str, folder: str, cancelled: threading.Event) -> str:
        source = resolve_source(source_ref)
        key = self._make_key(folder, source)
        content_type = mimetypes.guess_type(source.name)[0] or "application/octet-stream"

        try:
            staged = self._stage(source)
        except OSError as e:
            raise UploadError(f"Failed to read attachment {source_ref}: {e}") from e

        def progress(_bytes_transferred: int) -> None:
            # Raising here aborts the transfer
            if cancelled.is_set():
                raise UploadCancelledError(f"Upload of {source_ref} cancelled")

        try:
            if cancelled.is_set():
                raise UploadCancelledError(f"Upload of {source_ref} cancelled")
            self.client.upload_file(
                str(staged),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
                Callback=progress,
            )
        except UploadCancelledError:
            logger.info(f"Upload cancelled: {source_ref}")
            raise
        except (BotoCoreError, ClientError, S3UploadFailedError) as e:
            raise UploadError(f"Upload of {source_ref} failed: {e}") from e
        finally:
            staged.unlink(missing_ok=True)

        url = self.url_for(key)
        logger.info(f"Uploaded {source_ref} -> {url}")
        return url

    async def upload(self, source_ref: str, folder: str) -> str:
        """Upload an attachment.

        Cancelling the awaiting task aborts the transfer and removes the
        staged copy.
        """
        cancelled = threading.Event()
        try:
            return await asyncio.to_thread(self._upload_sync, source_ref, folder, cancelled)
        except asyncio.CancelledError:
            cancelled.set()
            raise
