"""Unit tests for the Google Cloud Storage implementation."""
import io
import os
import shutil
import tempfile
import unittest
from types import SimpleNamespace
from unittest.mock import Mock

from google.api_core.exceptions import NotFound

from cloudstore.storage.config import MB, GoogleStorageProperties
from cloudstore.storage.errors import ObjectNotFoundError, TransferError
from cloudstore.storage.google import (
    CHUNK_SIZE_MULTIPLE,
    GoogleStorage,
    GoogleStorageInstance,
    resumable_chunk_size,
)
from tests.test_utils import FakeGCSBucket, make_data


class TestGCSComposedUploads(unittest.TestCase):
    """Test cases for component uploads and compose"""

    def setUp(self):
        """Set up test environment"""
        self.test_dir = tempfile.mkdtemp()
        self.bucket = FakeGCSBucket("test-bucket")
        self.client = Mock()
        self.client.bucket.return_value = self.bucket
        self.instance = GoogleStorageInstance(
            self.client, "test-bucket", GoogleStorageProperties(block_size=4, concurrency=2)
        )

    def tearDown(self):
        """Clean up test environment"""
        shutil.rmtree(self.test_dir)

    def write_file(self, data):
        path = os.path.join(self.test_dir, "upload.bin")
        with open(path, "wb") as f:
            f.write(data)
        return path

    def test_upload_file_composes_components(self):
        """Components are composed into the object and then removed"""
        data = make_data(10)
        self.instance.upload_file("obj", "text/csv", self.write_file(data))

        self.assertEqual(self.bucket.store, {"obj": data})
        self.assertEqual(self.bucket.content_types["obj"], "text/csv")
        self.assertEqual(len(self.bucket.compose_calls), 1)
        self.assertEqual(len(self.bucket.compose_calls[0]), 3)

    def test_upload_file_many_components(self):
        """More components than one compose accepts go through intermediates"""
        self.instance = GoogleStorageInstance(
            self.client, "test-bucket", GoogleStorageProperties(block_size=1, concurrency=4)
        )
        data = make_data(40)
        self.instance.upload_file("big", None, self.write_file(data))

        self.assertEqual(self.bucket.store, {"big": data})
        sizes = [len(sources) for sources in self.bucket.compose_calls]
        self.assertEqual(sizes, [32, 8, 2])

    def test_upload_file_component_failure(self):
        """A failed component aborts and cleans up the others"""
        self.bucket.fail_suffixes = (".part-000001",)

        with self.assertRaises(TransferError) as ctx:
            self.instance.upload_file("obj", None, self.write_file(make_data(12)))

        self.assertEqual(ctx.exception.failed_blocks, [1])
        self.assertEqual(self.bucket.store, {})
        self.assertEqual(self.bucket.compose_calls, [])

    def test_download_file(self):
        """Ranged downloads reassemble the object"""
        data = make_data(11)
        self.bucket.store["obj"] = data
        path = os.path.join(self.test_dir, "download.bin")

        self.instance.download_file("obj", path)

        with open(path, "rb") as f:
            self.assertEqual(f.read(), data)

    def test_missing_object(self):
        """A missing object raises ObjectNotFoundError"""
        with self.assertRaises(ObjectNotFoundError):
            self.instance.transfer_adapter().object_size("missing")


class TestGoogleStorageInstance(unittest.TestCase):
    """Test cases for bucket and object operations"""

    def setUp(self):
        """Set up test environment"""
        self.client = Mock()
        self.bucket = self.client.bucket.return_value
        self.instance = GoogleStorageInstance(
            self.client, "test-bucket", GoogleStorageProperties(),
            delete_timeout=0, poll_interval=0,
        )

    def test_upload_uses_resumable_chunks(self):
        """Whole-object upload uses the block size as chunk size"""
        data = io.BytesIO(b"payload")
        self.instance.upload("obj", None, data, 7)

        self.bucket.blob.assert_called_once_with("obj", chunk_size=5 * MB)
        self.bucket.blob.return_value.upload_from_file.assert_called_once_with(
            data, size=7, content_type="application/octet-stream"
        )

    def test_list_objects_follows_pages(self):
        """Names from every page are returned"""
        self.client.list_blobs.return_value.pages = [
            [SimpleNamespace(name="a")], [SimpleNamespace(name="b")],
        ]
        self.assertEqual(self.instance.list_objects(), ["a", "b"])
        self.client.list_blobs.assert_called_once_with("test-bucket", prefix=None)

    def test_delete_waits_for_bucket(self):
        """Delete returns once the bucket no longer exists"""
        self.bucket.exists.return_value = False
        self.instance.delete()
        self.bucket.delete.assert_called_once_with()

    def test_resumable_chunk_size(self):
        """Chunk sizes are rounded to a multiple of 256KB"""
        self.assertEqual(resumable_chunk_size(100), CHUNK_SIZE_MULTIPLE)
        self.assertEqual(resumable_chunk_size(CHUNK_SIZE_MULTIPLE * 3 + 5), CHUNK_SIZE_MULTIPLE * 3)


class TestGoogleStorage(unittest.TestCase):
    """Test cases for bucket creation and listing"""

    def setUp(self):
        """Set up test environment"""
        self.client = Mock()
        self.storage = GoogleStorage(self.client, project_id="test-project", region="us-central1")

    def test_new_instance_existing(self):
        """An existing bucket is not recreated"""
        self.storage.new_instance("existing")
        self.client.create_bucket.assert_not_called()

    def test_new_instance_creates_private_bucket(self):
        """A missing bucket is created in the region with public access prevented"""
        self.client.get_bucket.side_effect = NotFound("missing")
        bucket = self.client.bucket.return_value

        self.storage.new_instance("fresh")

        self.assertEqual(bucket.iam_configuration.public_access_prevention, "enforced")
        self.client.create_bucket.assert_called_once_with(
            bucket, project="test-project", location="us-central1"
        )

    def test_list_instances_filters_region(self):
        """Only buckets in the configured region are listed"""
        self.client.list_buckets.return_value.pages = [[
            SimpleNamespace(name="here", location="US-CENTRAL1"),
            SimpleNamespace(name="there", location="EU"),
        ]]

        self.assertEqual([i.name for i in self.storage.list_instances()], ["here"])
        self.client.list_buckets.assert_called_once_with(project="test-project")

    def test_set_properties_keeps_region(self):
        """Merging a properties object keeps the region filter in place"""
        self.storage.set_properties(GoogleStorageProperties(concurrency=2))
        self.client.list_buckets.return_value.pages = [[
            SimpleNamespace(name="here", location="US-CENTRAL1"),
            SimpleNamespace(name="there", location="EU"),
        ]]

        self.assertEqual(self.storage.props.region, "us-central1")
        self.assertEqual(self.storage.props.concurrency, 2)
        self.assertEqual([i.name for i in self.storage.list_instances()], ["here"])

    def test_list_instances_without_region(self):
        """Without a region every bucket is listed"""
        storage = GoogleStorage(self.client, project_id="test-project")
        self.client.list_buckets.return_value.pages = [[
            SimpleNamespace(name="here", location="US-CENTRAL1"),
            SimpleNamespace(name="there", location="EU"),
        ]]
        self.assertEqual([i.name for i in storage.list_instances()], ["here", "there"])
