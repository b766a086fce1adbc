"""Builders for vulnerability feed archives used across the test suite."""
import io
import json
import os
import tarfile
import tempfile
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import create_engine

VULNERABILITY_COLUMNS = [
    "pk", "id", "package_name", "namespace", "package_qualifiers", "version_constraint",
    "version_format", "cpes", "related_vulnerabilities", "fixed_in_versions", "fix_state", "advisories",
]
METADATA_COLUMNS = ["id", "namespace", "data_source", "record_source", "severity", "urls", "description", "cvss"]


def vuln_row(identifier: str, package: str, constraint: str, namespace: str = "npm",
             version_format: str = "semver", fixed: Optional[List[str]] = None,
             fix_state: str = "not-fixed") -> Dict:
    return {
        "id": identifier,
        "package_name": package,
        "namespace": namespace,
        "package_qualifiers": "[]",
        "version_constraint": constraint,
        "version_format": version_format,
        "cpes": "[]",
        "related_vulnerabilities": json.dumps([{"id": identifier, "namespace": "nvd:cpe"}]),
        "fixed_in_versions": json.dumps(fixed or []),
        "fix_state": "fixed" if fixed else fix_state,
        "advisories": "[]",
    }


def meta_row(identifier: str, namespace: str = "npm", severity: str = "High",
             description: str = "", score: Optional[float] = None,
             record_source: str = "github:github:npm") -> Dict:
    cvss = []
    if score is not None:
        cvss = [{"version": "3.1", "vector": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H",
                 "metrics": {"base_score": score}}]
    return {
        "id": identifier,
        "namespace": namespace,
        "data_source": f"https://example.test/{identifier}",
        "record_source": record_source,
        "severity": severity,
        "urls": json.dumps([f"https://example.test/advisories/{identifier}"]),
        "description": description or f"Test vulnerability {identifier}",
        "cvss": json.dumps(cvss),
    }


def _frame(rows: List[Dict], columns: List[str]) -> pd.DataFrame:
    frame = pd.DataFrame(rows, columns=[c for c in columns if c != "pk"])
    if "pk" in columns:
        frame.insert(0, "pk", range(1, len(frame) + 1))
    return frame


def build_feed_database(path: str, vulnerabilities: List[Dict], metadata: List[Dict],
                        extra_tables: Optional[Dict[str, pd.DataFrame]] = None,
                        include_build: bool = True) -> str:
    engine = create_engine(f"sqlite:///{path}")
    try:
        if vulnerabilities is not None:
            _frame(vulnerabilities, VULNERABILITY_COLUMNS).to_sql("vulnerability", engine, index=False)
        if metadata is not None:
            _frame(metadata, METADATA_COLUMNS).to_sql("vulnerability_metadata", engine, index=False)
        if include_build:
            pd.DataFrame([{"build_timestamp": "2024-05-01T00:00:00Z", "schema_version": 5}]).to_sql(
                "id", engine, index=False)
        for name, frame in (extra_tables or {}).items():
            frame.to_sql(name, engine, index=False)
    finally:
        engine.dispose()
    return path


def _tar(members: Dict[str, bytes], mode: str = "w:gz") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        for name, payload in members.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def make_archive(vulnerabilities: Optional[List[Dict]], metadata: Optional[List[Dict]],
                 extra_tables: Optional[Dict[str, pd.DataFrame]] = None, mode: str = "w:gz") -> bytes:
    """A feed archive holding vulnerability.db, returned as bytes"""
    with tempfile.TemporaryDirectory() as scratch:
        db_path = build_feed_database(os.path.join(scratch, "vulnerability.db"),
                                      vulnerabilities, metadata, extra_tables)
        with open(db_path, "rb") as f:
            payload = f.read()
    return _tar({"vulnerability.db": payload}, mode=mode)


def make_csv_archive(vulnerabilities: List[Dict], metadata: List[Dict]) -> bytes:
    """A feed archive with one CSV member per table"""
    return _tar({
        "vulnerability.csv": _frame(vulnerabilities, VULNERABILITY_COLUMNS).to_csv(index=False).encode(),
        "vulnerability_metadata.csv": _frame(metadata, METADATA_COLUMNS).to_csv(index=False).encode(),
    })


def write_archive(directory: str, payload: bytes, name: str = "vulnerability.tar.gz") -> str:
    path = os.path.join(directory, name)
    with open(path, "wb") as f:
        f.write(payload)
    return path


LEFT_PAD = [vuln_row("CVE-TEST-1", "left-pad", "<1.3.0")]
LEFT_PAD_META = [meta_row("CVE-TEST-1", severity="High", score=7.5)]
