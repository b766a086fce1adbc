import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func, desc
from sqlalchemy.orm import Session

from sbomwatch.core.entities import (
    FixState, Severity, Vulnerability, VulnerabilityMetadata, VersionFormat,
)
from sbomwatch.core.interface import IVulnerabilityStore
from sbomwatch.core.matcher import normalize_name
from sbomwatch.infrastructure.persistence.models import (
    FeedImportModel, VulnerabilityMetadataModel, VulnerabilityModel,
)

_LIST_FIELDS = ("package_qualifiers", "cpes", "related_vulnerabilities", "fixed_in_versions", "advisories")


class SQLAlchemyVulnerabilityStore(IVulnerabilityStore):
    """Adapter: vulnerability records in the relational store"""

    def __init__(self, session: Session):
        self.session = session
        self.logger = logging.getLogger(__name__)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def upsert_vulnerabilities(self, namespace: str, records: Iterable[Vulnerability]) -> Dict[str, int]:
        stmt = select(VulnerabilityModel).where(VulnerabilityModel.namespace == namespace)
        existing = {row.identifier: row for row in self.session.execute(stmt).scalars()}
        counts = {"inserted": 0, "updated": 0, "unchanged": 0}

        for record in records:
            row = existing.get(record.identifier)
            if row is None:
                row = VulnerabilityModel(identifier=record.identifier, namespace=namespace)
                self._fill_vulnerability(row, record)
                self.session.add(row)
                existing[record.identifier] = row
                counts["inserted"] += 1
            elif self._to_vulnerability(row) != record:
                self._fill_vulnerability(row, record)
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1

        self.session.flush()
        self.logger.debug(f"Namespace {namespace}: {counts}")
        return counts

    def upsert_metadata(self, namespace: str, records: Iterable[VulnerabilityMetadata]) -> Dict[str, int]:
        stmt = select(VulnerabilityMetadataModel).where(VulnerabilityMetadataModel.namespace == namespace)
        existing = {row.identifier: row for row in self.session.execute(stmt).scalars()}
        counts = {"inserted": 0, "updated": 0, "unchanged": 0}

        for record in records:
            row = existing.get(record.identifier)
            if row is None:
                row = VulnerabilityMetadataModel(identifier=record.identifier, namespace=namespace)
                self._fill_metadata(row, record)
                self.session.add(row)
                existing[record.identifier] = row
                counts["inserted"] += 1
            elif self._to_metadata(row) != record:
                self._fill_metadata(row, record)
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1

        self.session.flush()
        return counts

    def find_by_package(self, package_name: str) -> List[Vulnerability]:
        stmt = (
            select(VulnerabilityModel)
            .where(VulnerabilityModel.package_name_normalized == normalize_name(package_name))
            .order_by(VulnerabilityModel.identifier, VulnerabilityModel.namespace)
        )
        return [self._to_vulnerability(row) for row in self.session.execute(stmt).scalars()]

    def metadata_for(self, identifier: str) -> List[VulnerabilityMetadata]:
        stmt = (
            select(VulnerabilityMetadataModel)
            .where(VulnerabilityMetadataModel.identifier == identifier)
            .order_by(VulnerabilityMetadataModel.namespace)
        )
        return [self._to_metadata(row) for row in self.session.execute(stmt).scalars()]

    def count(self) -> Tuple[int, int]:
        vulns = self.session.execute(select(func.count()).select_from(VulnerabilityModel)).scalar_one()
        metas = self.session.execute(select(func.count()).select_from(VulnerabilityMetadataModel)).scalar_one()
        return vulns, metas

    def last_imported_checksum(self) -> Optional[str]:
        stmt = select(FeedImportModel).order_by(desc(FeedImportModel.id)).limit(1)
        last = self.session.execute(stmt).scalar_one_or_none()
        return last.checksum if last else None

    def record_import(self, checksum: Optional[str], built: Optional[str],
                      schema_version: Optional[str]) -> None:
        self.session.add(FeedImportModel(
            checksum=checksum,
            built=built,
            schema_version=schema_version,
            imported_at=datetime.now(),
        ))
        self.session.flush()

    @staticmethod
    def _fill_vulnerability(row: VulnerabilityModel, record: Vulnerability) -> None:
        row.package_name = record.package_name
        row.package_name_normalized = normalize_name(record.package_name)
        row.version_constraint = record.version_constraint
        row.version_format = record.version_format.value
        row.fix_state = record.fix_state.value
        for name in _LIST_FIELDS:
            setattr(row, name, json.dumps(list(getattr(record, name))))

    @staticmethod
    def _to_vulnerability(row: VulnerabilityModel) -> Vulnerability:
        lists = {name: tuple(json.loads(getattr(row, name) or "[]")) for name in _LIST_FIELDS}
        return Vulnerability(
            identifier=row.identifier,
            namespace=row.namespace,
            package_name=row.package_name,
            version_constraint=row.version_constraint or "",
            version_format=VersionFormat(row.version_format),
            fix_state=FixState(row.fix_state),
            **lists,
        )

    @staticmethod
    def _fill_metadata(row: VulnerabilityMetadataModel, record: VulnerabilityMetadata) -> None:
        row.data_source = record.data_source
        row.record_source = record.record_source
        row.severity = record.severity.value
        row.description = record.description
        row.urls = json.dumps(list(record.urls))
        row.cvss_vector = record.cvss_vector
        row.cvss_score = record.cvss_score

    @staticmethod
    def _to_metadata(row: VulnerabilityMetadataModel) -> VulnerabilityMetadata:
        return VulnerabilityMetadata(
            identifier=row.identifier,
            namespace=row.namespace,
            data_source=row.data_source or "",
            record_source=row.record_source or "",
            severity=Severity(row.severity),
            description=row.description or "",
            urls=tuple(json.loads(row.urls or "[]")),
            cvss_vector=row.cvss_vector,
            cvss_score=row.cvss_score,
        )
