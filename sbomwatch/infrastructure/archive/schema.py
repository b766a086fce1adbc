"""
Mapping of the upstream feed tables onto vulnerability records.

Upstream columns (schema v5):
    vulnerability           id, namespace, package_name, version_constraint, version_format,
                            package_qualifiers, cpes, related_vulnerabilities,
                            fixed_in_versions, fix_state, advisories
    vulnerability_metadata  id, namespace, data_source, record_source, severity,
                            urls, description, cvss
    id                      build_timestamp, schema_version

List columns hold JSON arrays; their object items are flattened to strings.
"""
import json
import math
from typing import Callable, Dict, Optional, Tuple

from sbomwatch.core.entities import (
    FixState, Severity, Vulnerability, VulnerabilityMetadata, VersionFormat,
)

VULNERABILITY_TABLE = "vulnerability"
METADATA_TABLE = "vulnerability_metadata"
BUILD_TABLE = "id"

REQUIRED_COLUMNS = {
    VULNERABILITY_TABLE: {"id", "namespace", "package_name", "version_constraint", "version_format"},
    METADATA_TABLE: {"id", "namespace", "severity"},
}


class RowDecodeError(ValueError):
    """A single feed row that cannot be mapped"""


def _related_item(item: Dict) -> str:
    identifier = item.get("id") or ""
    namespace = item.get("namespace")
    return f"{namespace}:{identifier}" if namespace else identifier


def _advisory_item(item: Dict) -> str:
    return item.get("link") or item.get("id") or ""


def _qualifier_item(item: Dict) -> str:
    return ";".join(f"{k}={item[k]}" for k in sorted(item))


def _string_list(row: Dict, column: str,
                 item_mapper: Optional[Callable[[Dict], str]] = None) -> Tuple[str, ...]:
    value = row.get(column)
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as e:
            raise RowDecodeError(f"column '{column}' is not valid JSON: {e}") from e
    if value is None:
        return ()
    if not isinstance(value, list):
        raise RowDecodeError(f"column '{column}' is not a JSON list")

    items = []
    for item in value:
        if item is None:
            continue
        if isinstance(item, dict):
            if item_mapper is None:
                raise RowDecodeError(f"column '{column}' holds objects, expected strings")
            item = item_mapper(item)
        item = str(item).strip()
        if item:
            items.append(item)
    return tuple(items)


def _required_text(row: Dict, column: str) -> str:
    value = row.get(column)
    if value is None or not str(value).strip():
        raise RowDecodeError(f"column '{column}' is empty")
    return str(value).strip()


def _optional_text(row: Dict, column: str) -> str:
    value = row.get(column)
    return "" if value is None else str(value)


def _cvss(row: Dict) -> Tuple[Optional[str], Optional[float]]:
    value = row.get("cvss")
    if value is None or value == "":
        return None, None
    try:
        entries = json.loads(value) if isinstance(value, str) else value
    except ValueError as e:
        raise RowDecodeError(f"column 'cvss' is not valid JSON: {e}") from e
    if isinstance(entries, dict):
        entries = [entries]
    if not isinstance(entries, list):
        raise RowDecodeError("column 'cvss' is not a JSON list")

    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("vector"):
            continue
        metrics = entry.get("metrics") or {}
        raw_score = metrics.get("base_score", entry.get("base_score"))
        try:
            score = float(raw_score) if raw_score is not None else None
        except (TypeError, ValueError):
            score = None
        if score is not None and not math.isfinite(score):
            score = None
        return str(entry["vector"]), score
    return None, None


def decode_vulnerability(row: Dict) -> Vulnerability:
    return Vulnerability(
        identifier=_required_text(row, "id"),
        namespace=_required_text(row, "namespace"),
        package_name=_required_text(row, "package_name"),
        version_constraint=_optional_text(row, "version_constraint").strip(),
        version_format=VersionFormat.from_feed(row.get("version_format")),
        package_qualifiers=_string_list(row, "package_qualifiers", _qualifier_item),
        cpes=_string_list(row, "cpes"),
        related_vulnerabilities=_string_list(row, "related_vulnerabilities", _related_item),
        fixed_in_versions=_string_list(row, "fixed_in_versions"),
        fix_state=FixState.parse(row.get("fix_state")),
        advisories=_string_list(row, "advisories", _advisory_item),
    )


def decode_metadata(row: Dict) -> VulnerabilityMetadata:
    vector, score = _cvss(row)
    return VulnerabilityMetadata(
        identifier=_required_text(row, "id"),
        namespace=_required_text(row, "namespace"),
        data_source=_optional_text(row, "data_source"),
        record_source=_optional_text(row, "record_source"),
        severity=Severity.parse(row.get("severity")),
        description=_optional_text(row, "description"),
        urls=_string_list(row, "urls"),
        cvss_vector=vector,
        cvss_score=score,
    )
