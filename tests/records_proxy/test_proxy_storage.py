"""Tests for S3CollectionStorage class."""

import json

import boto3
import pytest
from moto import mock_aws

from recyclesync.records_proxy.config import Settings
from recyclesync.records_proxy.storage import (
    PreconditionFailedError,
    S3CollectionStorage,
    StorageError,
)

BUCKET = "test-records"


@pytest.fixture
def mock_s3(aws_env):
    """Mock S3 with moto."""
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket=BUCKET)
        yield s3


@pytest.fixture
def storage(mock_s3):
    return S3CollectionStorage(Settings(_env_file=None, s3_bucket=BUCKET))


def test_health_check_success(storage):
    """Test health check with accessible S3."""
    assert storage.health_check() is True


def test_health_check_missing_bucket(mock_s3):
    """Test health check when the bucket does not exist."""
    storage = S3CollectionStorage(Settings(_env_file=None, s3_bucket="no-such-bucket"))
    assert storage.health_check() is False


def test_read_missing_collection(storage):
    """A collection that was never written is empty at version 0."""
    assert storage.read_collection("h1") == ({}, 0)


def test_write_and_read(storage, mock_s3):
    """Test writing a new collection."""
    items = {"h1_1": {"id": "h1_1", "type": "plastic"}}

    version = storage.write_collection("h1", items, expected_version=0)

    assert version == 1
    assert storage.read_collection("h1") == (items, 1)

    # Verify object layout in S3
    response = mock_s3.get_object(Bucket=BUCKET, Key="collections/h1.json")
    assert json.loads(response["Body"].read()) == {"version": 1, "items": items}
    assert response["Metadata"]["version"] == "1"


def test_write_bumps_version(storage):
    storage.write_collection("h1", {"a": {"id": "a"}}, expected_version=0)

    version = storage.write_collection("h1", {"a": {"id": "a"}, "b": {"id": "b"}}, 1)

    assert version == 2
    items, current = storage.read_collection("h1")
    assert set(items) == {"a", "b"}
    assert current == 2


def test_write_version_mismatch(storage):
    """Test conditional write with a stale version."""
    storage.write_collection("h1", {"a": {"id": "a"}}, expected_version=0)
    storage.write_collection("h1", {"a": {"id": "a"}}, expected_version=1)

    with pytest.raises(PreconditionFailedError) as exc_info:
        storage.write_collection("h1", {}, expected_version=1)

    assert exc_info.value.current_version == 2
    assert exc_info.value.provided_version == 1
    assert storage.read_collection("h1") == ({"a": {"id": "a"}}, 2)


def test_new_collection_requires_version_zero(storage):
    with pytest.raises(PreconditionFailedError):
        storage.write_collection("h1", {}, expected_version=3)


def test_unconditional_write(storage):
    storage.write_collection("h1", {"a": {"id": "a"}}, expected_version=0)

    version = storage.write_collection("h1", {"b": {"id": "b"}})

    assert version == 2
    assert storage.read_collection("h1") == ({"b": {"id": "b"}}, 2)


def test_owners_are_isolated(storage):
    storage.write_collection("h1", {"a": {"id": "a"}}, expected_version=0)

    assert storage.read_collection("h2") == ({}, 0)


def test_corrupt_collection(storage, mock_s3):
    mock_s3.put_object(Bucket=BUCKET, Key="collections/h1.json", Body=b"{not json")

    with pytest.raises(StorageError):
        storage.read_collection("h1")


def test_empty_prefix(mock_s3):
    storage = S3CollectionStorage(Settings(_env_file=None, s3_bucket=BUCKET, s3_prefix=""))

    storage.write_collection("h1", {}, expected_version=0)

    mock_s3.head_object(Bucket=BUCKET, Key="h1.json")
