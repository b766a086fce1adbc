from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from sbomwatch.core.entities import (
    Advisory, AdvisorySource, Alert, AlertState, Component, ComponentType, Dependency, DependencyKey,
    Project, Severity, Snapshot, SnapshotState,
)
from sbomwatch.core.interface import IRepository
from sbomwatch.infrastructure.persistence.models import (
    AdvisoryMetadataModel, AdvisoryModel, AlertModel, ComponentModel, ComponentVersionModel,
    DependencyModel, ProjectModel, ProjectSnapshotModel, SnapshotModel,
)


class SQLAlchemyRepository(IRepository):
    """Adapter: SQLAlchemy-based persistence (SQLAlchemy 2.x compatible)"""

    def __init__(self, session: Session):
        self.session = session

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    # Projects

    def get_or_create_project(self, name: str, description: Optional[str] = None) -> Project:
        stmt = select(ProjectModel).where(ProjectModel.name == name)
        project = self.session.execute(stmt).scalar_one_or_none()
        if project is None:
            project = ProjectModel(name=name, description=description, created_at=datetime.now())
            self.session.add(project)
            self.session.flush()
        return self._to_project(project)

    def get_project(self, project_id: int) -> Optional[Project]:
        project = self.session.get(ProjectModel, project_id)
        return self._to_project(project) if project else None

    def list_projects(self) -> List[Project]:
        stmt = select(ProjectModel).order_by(ProjectModel.id)
        return [self._to_project(p) for p in self.session.execute(stmt).scalars()]

    def get_last_calculated(self, project_id: int) -> Optional[int]:
        project = self.session.get(ProjectModel, project_id)
        return project.last_calculated_snapshot_id if project else None

    def set_last_calculated(self, project_id: int, snapshot_id: int) -> None:
        project = self.session.get(ProjectModel, project_id)
        project.last_calculated_snapshot_id = snapshot_id
        self.session.flush()

    # Snapshots

    def create_snapshot(self, project_id: int) -> Snapshot:
        snapshot = SnapshotModel(state=SnapshotState.CREATED.value, created_at=datetime.now())
        self.session.add(snapshot)
        self.session.flush()
        self.session.add(ProjectSnapshotModel(project_id=project_id, snapshot_id=snapshot.id))
        self.session.flush()
        return self._to_snapshot(snapshot, project_id)

    def get_snapshot(self, snapshot_id: int) -> Optional[Snapshot]:
        snapshot = self.session.get(SnapshotModel, snapshot_id)
        project_id = self._project_id_of(snapshot_id)
        if snapshot is None or project_id is None:
            return None
        return self._to_snapshot(snapshot, project_id)

    def update_snapshot(self, snapshot_id: int, state: SnapshotState,
                        error: Optional[str] = None, raw_sbom: Optional[str] = None) -> Snapshot:
        snapshot = self.session.get(SnapshotModel, snapshot_id)
        snapshot.state = state.value
        snapshot.error = error
        if raw_sbom is not None:
            snapshot.raw_sbom = raw_sbom
        self.session.flush()
        return self._to_snapshot(snapshot, self._project_id_of(snapshot_id))

    def _project_id_of(self, snapshot_id: int) -> Optional[int]:
        stmt = select(ProjectSnapshotModel.project_id).where(ProjectSnapshotModel.snapshot_id == snapshot_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_snapshots(self, project_id: int) -> List[Snapshot]:
        stmt = (
            select(SnapshotModel)
            .join(ProjectSnapshotModel, ProjectSnapshotModel.snapshot_id == SnapshotModel.id)
            .where(ProjectSnapshotModel.project_id == project_id)
            .order_by(SnapshotModel.created_at, SnapshotModel.id)
        )
        return [self._to_snapshot(s, project_id) for s in self.session.execute(stmt).scalars()]

    # Components and dependencies

    def resolve_component(self, component_type: ComponentType, manager: str,
                          namespace: str, name: str) -> int:
        stmt = select(ComponentModel).where(
            ComponentModel.component_type == component_type.value,
            ComponentModel.manager == manager,
            ComponentModel.namespace == namespace,
            ComponentModel.name == name,
        )
        component = self.session.execute(stmt).scalar_one_or_none()
        if component is None:
            component = ComponentModel(
                component_type=component_type.value, manager=manager, namespace=namespace, name=name,
            )
            self.session.add(component)
            self.session.flush()
        return component.id

    def list_components(self, component_types: Optional[Iterable[ComponentType]] = None) -> List[Component]:
        stmt = select(ComponentModel).order_by(ComponentModel.id)
        if component_types is not None:
            stmt = stmt.where(ComponentModel.component_type.in_([t.value for t in component_types]))
        return [
            Component(id=c.id, component_type=ComponentType(c.component_type),
                      manager=c.manager, namespace=c.namespace, name=c.name)
            for c in self.session.execute(stmt).scalars()
        ]

    def update_component_type(self, component_id: int, component_type: ComponentType) -> bool:
        component = self.session.get(ComponentModel, component_id)
        clash = select(ComponentModel.id).where(
            ComponentModel.component_type == component_type.value,
            ComponentModel.manager == component.manager,
            ComponentModel.namespace == component.namespace,
            ComponentModel.name == component.name,
            ComponentModel.id != component_id,
        )
        if self.session.execute(clash).first() is not None:
            return False
        component.component_type = component_type.value
        self.session.flush()
        return True

    def resolve_component_version(self, component_id: int, version: str) -> int:
        stmt = select(ComponentVersionModel).where(
            ComponentVersionModel.component_id == component_id,
            ComponentVersionModel.version == version,
        )
        component_version = self.session.execute(stmt).scalar_one_or_none()
        if component_version is None:
            component_version = ComponentVersionModel(component_id=component_id, version=version)
            self.session.add(component_version)
            self.session.flush()
        return component_version.id

    def add_dependency(self, snapshot_id: int, component_id: int, version_id: int) -> int:
        stmt = select(DependencyModel).where(
            DependencyModel.snapshot_id == snapshot_id,
            DependencyModel.component_id == component_id,
            DependencyModel.component_version_id == version_id,
        )
        dependency = self.session.execute(stmt).scalar_one_or_none()
        if dependency is None:
            dependency = DependencyModel(
                snapshot_id=snapshot_id, component_id=component_id, component_version_id=version_id,
            )
            self.session.add(dependency)
            self.session.flush()
        return dependency.id

    def list_dependencies(self, snapshot_id: int) -> List[Dependency]:
        stmt = (
            select(DependencyModel)
            .where(DependencyModel.snapshot_id == snapshot_id)
            .order_by(DependencyModel.id)
        )
        return [self._to_dependency(d) for d in self.session.execute(stmt).scalars()]

    # Advisories

    def get_advisory(self, name: str) -> Optional[Advisory]:
        stmt = select(AdvisoryModel).where(AdvisoryModel.name == name)
        advisory = self.session.execute(stmt).scalar_one_or_none()
        return self._to_advisory(advisory) if advisory else None

    def list_advisories(self, advisory_ids: Iterable[int]) -> Dict[int, Advisory]:
        stmt = select(AdvisoryModel).where(AdvisoryModel.id.in_(list(advisory_ids)))
        return {a.id: self._to_advisory(a) for a in self.session.execute(stmt).scalars()}

    def save_advisory(self, name: str, source: AdvisorySource, severity: Severity,
                      metadata: Dict[str, str]) -> Advisory:
        stmt = select(AdvisoryModel).where(AdvisoryModel.name == name)
        advisory = self.session.execute(stmt).scalar_one_or_none()
        now = datetime.now()
        if advisory is None:
            advisory = AdvisoryModel(name=name, created_at=now, updated_at=now,
                                     source=source.value, severity=severity.value)
            self.session.add(advisory)

        changed = advisory.source != source.value or advisory.severity != severity.value
        advisory.source = source.value
        advisory.severity = severity.value

        entries = {entry.key: entry for entry in advisory.entries}
        for key, value in metadata.items():
            entry = entries.get(key)
            if entry is None:
                advisory.entries.append(AdvisoryMetadataModel(key=key, value=value))
                changed = True
            elif entry.value != value:
                entry.value = value
                changed = True

        if changed and advisory.id is not None:
            advisory.updated_at = now
        self.session.flush()
        return self._to_advisory(advisory)

    # Alerts

    def get_alert(self, snapshot_id: int, dependency_id: int, advisory_id: int) -> Optional[Alert]:
        stmt = select(AlertModel).where(
            AlertModel.snapshot_id == snapshot_id,
            AlertModel.dependency_id == dependency_id,
            AlertModel.advisory_id == advisory_id,
        )
        alert = self.session.execute(stmt).scalar_one_or_none()
        return self._to_alert(alert) if alert else None

    def insert_alert(self, name: str, state: AlertState, snapshot_id: int,
                     dependency_id: int, advisory_id: int) -> Alert:
        now = datetime.now()
        alert = AlertModel(
            name=name, state=state.value, snapshot_id=snapshot_id, dependency_id=dependency_id,
            advisory_id=advisory_id, created_at=now, updated_at=now,
        )
        self.session.add(alert)
        self.session.flush()
        return self._to_alert(alert)

    def update_alert_state(self, alert_id: int, state: AlertState) -> Alert:
        alert = self.session.get(AlertModel, alert_id)
        alert.state = state.value
        alert.updated_at = datetime.now()
        self.session.flush()
        return self._to_alert(alert)

    def list_alerts(self, snapshot_id: int) -> List[Tuple[Alert, DependencyKey]]:
        stmt = (
            select(AlertModel)
            .where(AlertModel.snapshot_id == snapshot_id)
            .order_by(AlertModel.id)
        )
        return [
            (self._to_alert(a), self._dependency_key(a.dependency))
            for a in self.session.execute(stmt).scalars()
        ]

    def list_open_alerts_before(self, project_id: int,
                                snapshot_id: int) -> List[Tuple[Alert, DependencyKey]]:
        current = self.session.get(SnapshotModel, snapshot_id)
        stmt = (
            select(AlertModel)
            .join(SnapshotModel, SnapshotModel.id == AlertModel.snapshot_id)
            .join(ProjectSnapshotModel, ProjectSnapshotModel.snapshot_id == SnapshotModel.id)
            .where(
                ProjectSnapshotModel.project_id == project_id,
                AlertModel.state != AlertState.RESOLVED.value,
                SnapshotModel.id != snapshot_id,
                (SnapshotModel.created_at < current.created_at)
                | ((SnapshotModel.created_at == current.created_at) & (SnapshotModel.id < snapshot_id)),
            )
            .order_by(AlertModel.id)
        )
        return [
            (self._to_alert(a), self._dependency_key(a.dependency))
            for a in self.session.execute(stmt).scalars()
        ]

    def alert_frame(self, snapshot_ids: List[int]) -> pd.DataFrame:
        stmt = (
            select(
                AlertModel.snapshot_id,
                AlertModel.state,
                AdvisoryModel.severity,
            )
            .join(AdvisoryModel, AdvisoryModel.id == AlertModel.advisory_id)
            .where(AlertModel.snapshot_id.in_(snapshot_ids))
        )
        rows = self.session.execute(stmt).all()
        return pd.DataFrame(rows, columns=["snapshot_id", "state", "severity"])

    # Conversions

    @staticmethod
    def _to_project(project: ProjectModel) -> Project:
        return Project(
            id=project.id,
            name=project.name,
            description=project.description,
            created_at=project.created_at,
        )

    @staticmethod
    def _to_snapshot(snapshot: SnapshotModel, project_id: int) -> Snapshot:
        return Snapshot(
            id=snapshot.id,
            project_id=project_id,
            state=SnapshotState(snapshot.state),
            created_at=snapshot.created_at,
            error=snapshot.error,
            raw_sbom=snapshot.raw_sbom,
        )

    @staticmethod
    def _dependency_key(dependency: DependencyModel) -> DependencyKey:
        return DependencyKey(
            manager=dependency.component.manager,
            namespace=dependency.component.namespace,
            name=dependency.component.name,
            version=dependency.component_version.version,
        )

    def _to_dependency(self, dependency: DependencyModel) -> Dependency:
        return Dependency(
            id=dependency.id,
            snapshot_id=dependency.snapshot_id,
            component_type=ComponentType(dependency.component.component_type),
            key=self._dependency_key(dependency),
        )

    @staticmethod
    def _to_advisory(advisory: AdvisoryModel) -> Advisory:
        return Advisory(
            id=advisory.id,
            name=advisory.name,
            source=AdvisorySource(advisory.source),
            severity=Severity(advisory.severity),
            created_at=advisory.created_at,
            updated_at=advisory.updated_at,
            metadata={entry.key: entry.value for entry in advisory.entries},
        )

    @staticmethod
    def _to_alert(alert: AlertModel) -> Alert:
        return Alert(
            id=alert.id,
            name=alert.name,
            state=AlertState(alert.state),
            snapshot_id=alert.snapshot_id,
            dependency_id=alert.dependency_id,
            advisory_id=alert.advisory_id,
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )
