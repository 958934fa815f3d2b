"""Tests for the S3 blob uploader."""

import asyncio
import threading

import boto3
import pytest
from moto import mock_aws

from recyclesync.blob import S3BlobUploader, resolve_source
from recyclesync.config import Settings
from recyclesync.exceptions import UploadCancelledError, UploadError

BUCKET = "test-attachments"


@pytest.fixture
def mock_s3(aws_env):
    """Mock S3 with moto."""
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket=BUCKET)
        yield s3


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "bottle.JPG"
    path.write_bytes(b"\xff\xd8\xff fake jpeg")
    return path


class TestResolveSource:
    """Tests for source reference resolution."""

    def test_plain_path(self, image):
        assert resolve_source(str(image)) == image

    def test_file_uri(self, image):
        assert resolve_source(image.as_uri()) == image

    def test_missing_file(self, tmp_path):
        with pytest.raises(UploadError):
            resolve_source(str(tmp_path / "gone.jpg"))

    def test_unsupported_scheme(self):
        with pytest.raises(UploadError):
            resolve_source("content://media/external/images/42")


class TestS3BlobUploader:
    """Tests for S3BlobUploader."""

    @pytest.mark.asyncio
    async def test_upload_stores_object_and_returns_url(self, mock_s3, image, staging_dir):
        uploader = S3BlobUploader(BUCKET, staging_dir=staging_dir)

        url = await uploader.upload(str(image), "waste-items")

        prefix = f"https://{BUCKET}.s3.us-east-1.amazonaws.com/"
        assert url.startswith(prefix + "waste-items/")
        assert url.endswith(".jpg")
        key = url[len(prefix):]
        obj = mock_s3.get_object(Bucket=BUCKET, Key=key)
        assert obj["Body"].read() == image.read_bytes()
        assert obj["ContentType"] == "image/jpeg"
        assert list(staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_public_base_url(self, mock_s3, image):
        uploader = S3BlobUploader(BUCKET, public_base_url="https://cdn.example.com/")

        url = await uploader.upload(image.as_uri(), "/waste-items/")

        assert url.startswith("https://cdn.example.com/waste-items/")

    @pytest.mark.asyncio
    async def test_missing_bucket_raises_upload_error(self, mock_s3, image, staging_dir):
        uploader = S3BlobUploader("no-such-bucket", staging_dir=staging_dir)

        with pytest.raises(UploadError):
            await uploader.upload(str(image), "waste-items")
        assert list(staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_source_raises_upload_error(self, mock_s3, tmp_path):
        uploader = S3BlobUploader(BUCKET)

        with pytest.raises(UploadError):
            await uploader.upload(str(tmp_path / "gone.jpg"), "waste-items")

    def test_cancelled_upload_cleans_staged_copy(self, mock_s3, image, staging_dir):
        uploader = S3BlobUploader(BUCKET, staging_dir=staging_dir)
        cancelled = threading.Event()
        cancelled.set()

        with pytest.raises(UploadCancelledError):
            uploader._upload_sync(str(image), "waste-items", cancelled)

        assert list(staging_dir.iterdir()) == []
        assert mock_s3.list_objects_v2(Bucket=BUCKET).get("KeyCount", 0) == 0

    def test_client_is_created_once(self, mock_s3):
        uploader = S3BlobUploader(BUCKET)
        clients = []

        def grab():
            clients.append(uploader.client)

        threads = [threading.Thread(target=grab) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(c) for c in clients}) == 1

    def test_endpoint_url(self):
        uploader = S3BlobUploader(BUCKET, endpoint_url="http://minio:9000/")
        assert uploader.url_for("a/b.jpg") == f"http://minio:9000/{BUCKET}/a/b.jpg"

    def test_from_settings_requires_bucket(self):
        with pytest.raises(ValueError):
            S3BlobUploader.from_settings(Settings(_env_file=None, s3_bucket=None))

    def test_from_settings(self):
        settings = Settings(
            _env_file=None, s3_bucket=BUCKET, s3_region="eu-west-1", blob_public_url=None
        )

        uploader = S3BlobUploader.from_settings(settings)

        assert uploader.bucket == BUCKET
        assert uploader.url_for("k.jpg") == f"https://{BUCKET}.s3.eu-west-1.amazonaws.com/k.jpg"

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, mock_s3, image, staging_dir):
        uploader = S3BlobUploader(BUCKET, staging_dir=staging_dir)

        task = asyncio.create_task(uploader.upload(str(image), "waste-items"))
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
