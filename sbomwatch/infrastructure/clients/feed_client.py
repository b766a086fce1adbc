import hashlib
import logging
import os
from typing import Dict, Optional

import requests

from sbomwatch.core.exceptions import CorruptArchiveError, FeedFetchError
from sbomwatch.core.interface import IFeedSource


class FeedClient(IFeedSource):
    """Adapter: vulnerability feed listing and archive downloads over HTTP"""

    LISTING_URL = "https://toolbox-data.anchore.io/grype/databases/listing.json"
    SCHEMA_VERSION = 5

    def __init__(self, timeout: int = 120, schema_version: int = SCHEMA_VERSION,
                 session: Optional[requests.Session] = None):
        self.logger = logging.getLogger(__name__)
        self.timeout = timeout
        self.schema_version = schema_version
        self.http = session or requests.Session()

    def latest_build(self, listing_url: str = LISTING_URL) -> Dict:
        """
        Pick the newest archive for our schema from a listing document:
        {"available": {"5": [{"built", "checksum", "url", "version"}, ...]}}
        """
        try:
            response = self.http.get(listing_url, timeout=self.timeout)
            response.raise_for_status()
            listing = response.json()
        except requests.RequestException as e:
            raise FeedFetchError(listing_url, str(e)) from e
        except ValueError as e:
            raise FeedFetchError(listing_url, f"listing is not JSON: {e}") from e

        available = listing.get("available") or {}
        builds = available.get(str(self.schema_version)) or available.get(self.schema_version) or []
        builds = [b for b in builds if isinstance(b, dict) and b.get("url")]
        if not builds:
            raise FeedFetchError(listing_url, f"no builds for schema v{self.schema_version}")

        latest = max(builds, key=lambda b: b.get("built") or "")
        self.logger.info(f"Latest feed build {latest.get('built')} at {latest['url']}")
        return latest

    def download(self, url: str, destination: str, checksum: Optional[str] = None) -> str:
        """
        Stream an archive to destination, verifying a 'sha256:<hex>' checksum
        when one is given. A mismatching file is removed.
        """
        digest = hashlib.sha256()
        self.logger.info(f"Downloading feed archive from {url}")
        try:
            with self.http.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(destination, "wb") as out:
                    for block in response.iter_content(chunk_size=1 << 20):
                        if block:
                            digest.update(block)
                            out.write(block)
        except requests.RequestException as e:
            self._discard(destination)
            raise FeedFetchError(url, str(e)) from e

        if checksum:
            algorithm, _, expected = checksum.partition(":")
            if not expected:
                algorithm, expected = "sha256", algorithm
            if algorithm.lower() != "sha256":
                self.logger.warning(f"Unsupported checksum algorithm {algorithm}, skipping verification")
            elif digest.hexdigest() != expected.lower():
                self._discard(destination)
                raise CorruptArchiveError(f"checksum mismatch (expected {expected}, got {digest.hexdigest()})")

        self.logger.info(f"Downloaded {os.path.getsize(destination)} bytes to {destination}")
        return destination

    @staticmethod
    def _discard(path: str) -> None:
        if os.path.exists(path):
            os.remove(path)
