import hashlib
import os
import tempfile
import unittest
from unittest import mock

import requests

from sbomwatch.core.exceptions import CorruptArchiveError, FeedFetchError
from sbomwatch.infrastructure.clients.feed_client import FeedClient

LISTING = {
    "available": {
        "5": [
            {"built": "2024-04-30T00:00:00Z", "url": "https://feed.test/old.tar.gz", "checksum": "sha256:aa"},
            {"built": "2024-05-01T00:00:00Z", "url": "https://feed.test/new.tar.gz", "checksum": "sha256:bb"},
        ],
        "4": [
            {"built": "2024-06-01T00:00:00Z", "url": "https://feed.test/v4.tar.gz", "checksum": "sha256:cc"},
        ],
    }
}


def streaming_response(payload: bytes):
    response = mock.MagicMock()
    response.iter_content.return_value = [payload[:10], payload[10:]]
    return response


class TestFeedClient(unittest.TestCase):

    def setUp(self):
        self.http = mock.MagicMock()
        self.client = FeedClient(timeout=5, session=self.http)
        self.tmp = tempfile.TemporaryDirectory()
        self.destination = os.path.join(self.tmp.name, "feed.tar.gz")

    def tearDown(self):
        self.tmp.cleanup()

    def test_latest_build_for_schema(self):
        self.http.get.return_value.json.return_value = LISTING
        build = self.client.latest_build("https://feed.test/listing.json")
        self.assertEqual(build["url"], "https://feed.test/new.tar.gz")
        self.http.get.assert_called_once_with("https://feed.test/listing.json", timeout=5)

    def test_listing_without_builds(self):
        self.http.get.return_value.json.return_value = {"available": {"4": LISTING["available"]["4"]}}
        with self.assertRaises(FeedFetchError):
            self.client.latest_build("https://feed.test/listing.json")

    def test_listing_that_is_not_json(self):
        self.http.get.return_value.json.side_effect = ValueError("Expecting value")
        with self.assertRaises(FeedFetchError):
            self.client.latest_build("https://feed.test/listing.json")

    def test_http_error(self):
        self.http.get.side_effect = requests.ConnectionError("connection refused")
        with self.assertRaises(FeedFetchError) as ctx:
            self.client.latest_build("https://feed.test/listing.json")
        self.assertEqual(ctx.exception.url, "https://feed.test/listing.json")

    def test_download_verifies_checksum(self):
        payload = b"archive bytes that are long enough"
        self.http.get.return_value.__enter__.return_value = streaming_response(payload)
        checksum = "sha256:" + hashlib.sha256(payload).hexdigest()

        path = self.client.download("https://feed.test/new.tar.gz", self.destination, checksum=checksum)
        with open(path, "rb") as f:
            self.assertEqual(f.read(), payload)

    def test_checksum_mismatch_removes_file(self):
        self.http.get.return_value.__enter__.return_value = streaming_response(b"tampered archive bytes here")
        with self.assertRaises(CorruptArchiveError):
            self.client.download("https://feed.test/new.tar.gz", self.destination, checksum="sha256:00ff")
        self.assertFalse(os.path.exists(self.destination))

    def test_failed_download_removes_partial_file(self):
        response = streaming_response(b"")
        response.raise_for_status.side_effect = requests.HTTPError("503 Service Unavailable")
        self.http.get.return_value.__enter__.return_value = response
        with self.assertRaises(FeedFetchError):
            self.client.download("https://feed.test/new.tar.gz", self.destination)
        self.assertFalse(os.path.exists(self.destination))


if __name__ == "__main__":
    unittest.main()
