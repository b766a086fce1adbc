from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from sbomwatch.core.entities import (
    Advisory,
    AdvisorySource,
    Alert,
    AlertState,
    Component,
    ComponentType,
    Dependency,
    DependencyKey,
    Project,
    Severity,
    Snapshot,
    SnapshotState,
    Vulnerability,
    VulnerabilityMetadata,
)


class ITransactional(ABC):
    """Port: unit-of-work boundary shared by the persistence adapters"""

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


class IVulnerabilityStore(ITransactional):
    """Port: normalized vulnerability records keyed by identifier + namespace"""

    @abstractmethod
    def upsert_vulnerabilities(self, namespace: str,
                               records: Iterable[Vulnerability]) -> Dict[str, int]:
        """
        Content-equal upsert of one namespace's records.
        Returns counts keyed by 'inserted', 'updated', 'unchanged'.
        """
        pass

    @abstractmethod
    def upsert_metadata(self, namespace: str,
                        records: Iterable[VulnerabilityMetadata]) -> Dict[str, int]:
        pass

    @abstractmethod
    def find_by_package(self, package_name: str) -> List[Vulnerability]:
        """All records whose normalized package name equals package_name"""
        pass

    @abstractmethod
    def metadata_for(self, identifier: str) -> List[VulnerabilityMetadata]:
        pass

    @abstractmethod
    def count(self) -> Tuple[int, int]:
        """(vulnerability rows, metadata rows)"""
        pass

    @abstractmethod
    def last_imported_checksum(self) -> Optional[str]:
        pass

    @abstractmethod
    def record_import(self, checksum: Optional[str], built: Optional[str],
                      schema_version: Optional[str]) -> None:
        pass


class IRepository(ITransactional):
    """Port: projects, snapshots, dependencies, advisories and alerts"""

    # Projects
    @abstractmethod
    def get_or_create_project(self, name: str, description: Optional[str] = None) -> Project:
        pass

    @abstractmethod
    def get_project(self, project_id: int) -> Optional[Project]:
        pass

    @abstractmethod
    def list_projects(self) -> List[Project]:
        pass

    @abstractmethod
    def get_last_calculated(self, project_id: int) -> Optional[int]:
        pass

    @abstractmethod
    def set_last_calculated(self, project_id: int, snapshot_id: int) -> None:
        pass

    # Snapshots
    @abstractmethod
    def create_snapshot(self, project_id: int) -> Snapshot:
        pass

    @abstractmethod
    def get_snapshot(self, snapshot_id: int) -> Optional[Snapshot]:
        pass

    @abstractmethod
    def update_snapshot(self, snapshot_id: int, state: SnapshotState,
                        error: Optional[str] = None, raw_sbom: Optional[str] = None) -> Snapshot:
        pass

    @abstractmethod
    def list_snapshots(self, project_id: int) -> List[Snapshot]:
        """Snapshots of a project in creation order"""
        pass

    # Components and dependencies
    @abstractmethod
    def resolve_component(self, component_type: ComponentType, manager: str,
                          namespace: str, name: str) -> int:
        pass

    @abstractmethod
    def list_components(self, component_types: Optional[Iterable[ComponentType]] = None) -> List[Component]:
        pass

    @abstractmethod
    def update_component_type(self, component_id: int, component_type: ComponentType) -> bool:
        """False when another component already holds that identity"""
        pass

    @abstractmethod
    def resolve_component_version(self, component_id: int, version: str) -> int:
        pass

    @abstractmethod
    def add_dependency(self, snapshot_id: int, component_id: int, version_id: int) -> int:
        pass

    @abstractmethod
    def list_dependencies(self, snapshot_id: int) -> List[Dependency]:
        pass

    # Advisories
    @abstractmethod
    def get_advisory(self, name: str) -> Optional[Advisory]:
        pass

    @abstractmethod
    def list_advisories(self, advisory_ids: Iterable[int]) -> Dict[int, Advisory]:
        pass

    @abstractmethod
    def save_advisory(self, name: str, source: AdvisorySource, severity: Severity,
                      metadata: Dict[str, str]) -> Advisory:
        pass

    # Alerts
    @abstractmethod
    def get_alert(self, snapshot_id: int, dependency_id: int, advisory_id: int) -> Optional[Alert]:
        pass

    @abstractmethod
    def insert_alert(self, name: str, state: AlertState, snapshot_id: int,
                     dependency_id: int, advisory_id: int) -> Alert:
        pass

    @abstractmethod
    def update_alert_state(self, alert_id: int, state: AlertState) -> Alert:
        """Set state and touch updated_at"""
        pass

    @abstractmethod
    def list_alerts(self, snapshot_id: int) -> List[Tuple[Alert, DependencyKey]]:
        pass

    @abstractmethod
    def list_open_alerts_before(self, project_id: int,
                                snapshot_id: int) -> List[Tuple[Alert, DependencyKey]]:
        """Non-resolved alerts on snapshots of the project created before snapshot_id"""
        pass

    @abstractmethod
    def alert_frame(self, snapshot_ids: List[int]) -> pd.DataFrame:
        """One row per alert: snapshot_id, state, severity (current advisory severity)"""
        pass


class IFeedSource(ABC):
    """Port: remote location of vulnerability feed archives"""

    @abstractmethod
    def latest_build(self, listing_url: str) -> Dict:
        """Newest listing entry: {'url', 'checksum', 'built', 'version'}"""
        pass

    @abstractmethod
    def download(self, url: str, destination: str, checksum: Optional[str] = None) -> str:
        pass
