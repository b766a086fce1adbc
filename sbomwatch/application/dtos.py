from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ImportResult:
    """DTO for a feed import run"""
    tables: List[str] = field(default_factory=list)
    rows_read: int = 0
    invalid_rows: int = 0
    duplicates: int = 0
    vulnerabilities: Dict[str, int] = field(default_factory=lambda: {"inserted": 0, "updated": 0, "unchanged": 0})
    metadata: Dict[str, int] = field(default_factory=lambda: {"inserted": 0, "updated": 0, "unchanged": 0})
    namespaces: int = 0
    build_timestamp: Optional[str] = None
    schema_version: Optional[str] = None
    checksum: Optional[str] = None
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return any(
            counts["inserted"] or counts["updated"]
            for counts in (self.vulnerabilities, self.metadata)
        )


@dataclass
class AlertDTO:
    """DTO for alert output"""
    id: int
    name: str
    state: str
    severity: str
    advisory: str
    source: str
    dependency: str
    snapshot_id: int
    created_at: str
    updated_at: str
