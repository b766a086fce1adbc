import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_LISTING_URL = "https://toolbox-data.anchore.io/grype/databases/listing.json"


@dataclass
class Settings:
    """Runtime parameters handed to the services and the scheduler"""
    database_url: str = "sqlite:///sbomwatch.db"
    # Listing URL (.json), archive URL or local archive path
    feed_source: str = DEFAULT_LISTING_URL
    feed_checksum: Optional[str] = None
    data_dir: Optional[str] = None
    refresh_interval_seconds: float = 3600.0
    max_backoff_seconds: float = 6 * 3600.0
    invalid_row_threshold: float = 0.05
    incremental: bool = False
    import_chunk_size: int = 5000
    request_timeout: int = 120

    def __post_init__(self):
        if not 0.0 <= float(self.invalid_row_threshold) <= 1.0:
            raise ValueError("invalid_row_threshold must be a ratio between 0 and 1")
        if float(self.refresh_interval_seconds) <= 0:
            raise ValueError("refresh_interval_seconds must be positive")
        self.invalid_row_threshold = float(self.invalid_row_threshold)
        self.refresh_interval_seconds = float(self.refresh_interval_seconds)
        self.max_backoff_seconds = max(float(self.max_backoff_seconds), self.refresh_interval_seconds)


def load_settings(path: Optional[str] = None) -> Settings:
    """Read Settings from a YAML file; a missing file yields the defaults"""
    if not path or not os.path.exists(path):
        if path:
            logger.warning(f"Config file {path} not found, using defaults")
        return Settings()

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    for key in sorted(set(raw) - known):
        logger.warning(f"Ignoring unknown config key '{key}'")
    return Settings(**{k: v for k, v in raw.items() if k in known})
