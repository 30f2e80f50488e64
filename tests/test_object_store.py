import tempfile
import unittest
from pathlib import Path

import boto3
from moto import mock_aws

from unical.errors import PublishError
from unical.models import PublishConfig
from unical.object_store import LocalObjectStore, S3ObjectStore, build_object_store


class LocalObjectStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name) / "published"
        self.store = LocalObjectStore(self.root, public_base_url="https://feeds.example.com/")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_upload_download_remove(self) -> None:
        self.store.upload("private-a.ics", b"BEGIN:VCALENDAR", content_type="text/calendar")
        self.assertEqual(self.store.download("private-a.ics"), b"BEGIN:VCALENDAR")
        self.store.upload("private-a.ics", b"v2", content_type="text/calendar", upsert=True)
        self.assertEqual(self.store.download("private-a.ics"), b"v2")
        self.store.remove("private-a.ics")
        self.store.remove("private-a.ics")
        with self.assertRaises(PublishError):
            self.store.download("private-a.ics")

    def test_upload_without_upsert_refuses_overwrite(self) -> None:
        self.store.upload("k.ics", b"one", content_type="text/calendar")
        with self.assertRaises(PublishError):
            self.store.upload("k.ics", b"two", content_type="text/calendar", upsert=False)
        self.assertEqual(self.store.download("k.ics"), b"one")

    def test_rejects_path_like_keys(self) -> None:
        for key in ("../escape.ics", "a/b.ics", "", ".."):
            with self.subTest(key=key):
                with self.assertRaises(PublishError):
                    self.store.upload(key, b"x", content_type="text/calendar")

    def test_public_url(self) -> None:
        self.assertEqual(self.store.get_public_url("private-a.ics"), "https://feeds.example.com/private-a.ics")
        bare = LocalObjectStore(self.root)
        self.assertTrue(bare.get_public_url("private-a.ics").startswith("file://"))


class S3ObjectStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.mock = mock_aws()
        self.mock.start()
        self.client = boto3.client("s3", region_name="us-east-1")
        self.client.create_bucket(Bucket="calendars")
        self.store = S3ObjectStore("calendars", region="us-east-1", client=self.client)

    def tearDown(self) -> None:
        self.mock.stop()

    def test_upload_sets_headers(self) -> None:
        self.store.upload("private-a.ics", b"BEGIN:VCALENDAR", content_type="text/calendar", cache_control="max-age=60")
        head = self.client.head_object(Bucket="calendars", Key="private-a.ics")
        self.assertEqual(head["ContentType"], "text/calendar")
        self.assertEqual(head["CacheControl"], "max-age=60")
        self.assertEqual(self.store.download("private-a.ics"), b"BEGIN:VCALENDAR")

    def test_upload_without_upsert_refuses_overwrite(self) -> None:
        self.store.upload("k.ics", b"one", content_type="text/calendar", upsert=False)
        with self.assertRaises(PublishError):
            self.store.upload("k.ics", b"two", content_type="text/calendar", upsert=False)
        self.assertEqual(self.store.download("k.ics"), b"one")

    def test_remove_and_missing_download(self) -> None:
        self.store.upload("k.ics", b"one", content_type="text/calendar")
        self.store.remove("k.ics")
        with self.assertRaises(PublishError):
            self.store.download("k.ics")

    def test_missing_bucket_raises_publish_error(self) -> None:
        store = S3ObjectStore("no-such-bucket", region="us-east-1", client=self.client)
        with self.assertRaises(PublishError):
            store.upload("k.ics", b"x", content_type="text/calendar")

    def test_public_url(self) -> None:
        self.assertEqual(
            self.store.get_public_url("private-a.ics"),
            "https://calendars.s3.us-east-1.amazonaws.com/private-a.ics",
        )


class BuildObjectStoreTests(unittest.TestCase):
    def test_local_backend_is_default(self) -> None:
        store = build_object_store(PublishConfig(local_root="/tmp/unical-feeds"))
        self.assertIsInstance(store, LocalObjectStore)

    @mock_aws
    def test_s3_backend(self) -> None:
        store = build_object_store(PublishConfig(backend="s3", bucket="calendars", region="us-east-1"))
        self.assertIsInstance(store, S3ObjectStore)
        self.assertEqual(store.bucket, "calendars")


if __name__ == "__main__":
    unittest.main()
