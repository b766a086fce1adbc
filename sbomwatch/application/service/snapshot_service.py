import logging
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from sbomwatch.core.catalogue import Catalogue, default_catalogue
from sbomwatch.core.diff import diff_dependencies
from sbomwatch.core.entities import (
    ComponentType, Dependency, DependencyKey, Project, SbomComponent, Snapshot, SnapshotDiff, SnapshotState,
)
from sbomwatch.core.exceptions import ComponentResolutionError, SnapshotStateError, StoreUnavailableError
from sbomwatch.core.interface import IRepository
from sbomwatch.core.matcher import canonical_ecosystem
from sbomwatch.core.versions import PLACEHOLDER_VERSION
from sbomwatch.infrastructure.persistence.database import translate_store_errors

logger = logging.getLogger(__name__)

ComponentInput = Union[SbomComponent, Dict, str]
SnapshotRef = Union[Snapshot, int]


def _snapshot_id(snapshot: SnapshotRef) -> int:
    return snapshot.id if isinstance(snapshot, Snapshot) else int(snapshot)


def _text(value) -> str:
    # SBOM producers hand over numbers for versions now and then (1.16)
    return "" if value is None else str(value).strip()


class SnapshotService:
    """Use Case: record SBOM snapshots of a project and compare them"""

    def __init__(self, repository: IRepository, catalogue: Optional[Catalogue] = None):
        self.repository = repository
        self.catalogue = catalogue or default_catalogue()

    def create_project(self, name: str, description: Optional[str] = None) -> Project:
        with translate_store_errors(self.repository, "ingest"):
            project = self.repository.get_or_create_project(name, description)
            self.repository.commit()
        return project

    def create_snapshot(self, project: Union[Project, int]) -> Snapshot:
        project_id = project.id if isinstance(project, Project) else int(project)
        with translate_store_errors(self.repository, "ingest"):
            if self.repository.get_project(project_id) is None:
                raise ValueError(f"Unknown project {project_id}")
            snapshot = self.repository.create_snapshot(project_id)
            self.repository.commit()
        logger.info(f"Created snapshot {snapshot.id} for project {project_id}")
        return snapshot

    def ingest(self, snapshot: SnapshotRef, sbom_components: Iterable[ComponentInput],
               raw_sbom: Optional[str] = None) -> Snapshot:
        """
        Resolve every observed component into Component/ComponentVersion rows
        and record the snapshot's dependencies, all in one transaction.

        A component that cannot be resolved fails the snapshot: its state and
        error text are returned rather than raised. Store failures raise.
        """
        snapshot_id = _snapshot_id(snapshot)
        with translate_store_errors(self.repository, "ingest"):
            current = self.repository.get_snapshot(snapshot_id)
            if current is None:
                raise ValueError(f"Unknown snapshot {snapshot_id}")
            if current.state != SnapshotState.CREATED:
                raise SnapshotStateError(snapshot_id, current.state.value)
            self.repository.update_snapshot(snapshot_id, SnapshotState.PROCESSING)
            self.repository.commit()

        seen = set()
        try:
            for item in sbom_components:
                component_type, key = self.normalize(item)
                if key in seen:
                    continue
                seen.add(key)
                component_id = self.repository.resolve_component(
                    component_type, key.manager, key.namespace, key.name)
                version_id = self.repository.resolve_component_version(component_id, key.version)
                self.repository.add_dependency(snapshot_id, component_id, version_id)

            completed = self.repository.update_snapshot(snapshot_id, SnapshotState.COMPLETED, raw_sbom=raw_sbom)
            self.repository.commit()
        except ComponentResolutionError as e:
            self.repository.rollback()
            logger.warning(f"Snapshot {snapshot_id} failed: {e}")
            with translate_store_errors(self.repository, "ingest"):
                failed = self.repository.update_snapshot(
                    snapshot_id, SnapshotState.FAILED, error=str(e), raw_sbom=raw_sbom)
                self.repository.commit()
            return failed
        except SQLAlchemyError as e:
            self.repository.rollback()
            self._mark_failed_after_store_error(snapshot_id, e)
            raise StoreUnavailableError("ingest", str(e)) from e

        logger.info(f"Snapshot {snapshot_id} completed with {len(seen)} dependencies")
        return completed

    def normalize(self, item: ComponentInput):
        """Turn one SBOM tuple into (ComponentType, DependencyKey)"""
        if isinstance(item, str):
            try:
                item = SbomComponent.from_purl(item)
            except ValueError as e:
                raise ComponentResolutionError(str(e), component=item) from e
        elif isinstance(item, dict):
            item = SbomComponent(
                ecosystem=item.get("ecosystem") or item.get("manager") or "",
                name=item.get("name") or "",
                version=item.get("version"),
                namespace=item.get("namespace"),
                component_type=item.get("type") or item.get("component_type"),
            )
        elif not isinstance(item, SbomComponent):
            raise ComponentResolutionError(f"unsupported component {type(item).__name__}", component=repr(item))

        name = _text(item.name)
        ecosystem = canonical_ecosystem(_text(item.ecosystem))
        if not name:
            raise ComponentResolutionError("missing package name", component=str(item))
        if not ecosystem:
            raise ComponentResolutionError("missing ecosystem", component=name)

        key = DependencyKey(
            manager=ecosystem,
            namespace=_text(item.namespace),
            name=name,
            version=_text(item.version) or PLACEHOLDER_VERSION,
        )
        declared = _text(item.component_type) or None
        return self.catalogue.classify(key, declared), key

    def diff(self, old: SnapshotRef, new: SnapshotRef) -> SnapshotDiff:
        old_keys = [d.key for d in self.dependencies(old)]
        new_keys = [d.key for d in self.dependencies(new)]
        return diff_dependencies(old_keys, new_keys)

    def dependencies(self, snapshot: SnapshotRef) -> List[Dependency]:
        with translate_store_errors(self.repository, "query"):
            return self.repository.list_dependencies(_snapshot_id(snapshot))

    def get_snapshot(self, snapshot_id: int) -> Optional[Snapshot]:
        with translate_store_errors(self.repository, "query"):
            return self.repository.get_snapshot(snapshot_id)

    def list_snapshots(self, project: Union[Project, int]) -> List[Snapshot]:
        project_id = project.id if isinstance(project, Project) else int(project)
        with translate_store_errors(self.repository, "query"):
            return self.repository.list_snapshots(project_id)

    def latest_snapshot(self, project: Union[Project, int]) -> Optional[Snapshot]:
        """Most recent completed snapshot, the one alerts are calculated for"""
        completed = [s for s in self.list_snapshots(project) if s.state == SnapshotState.COMPLETED]
        return completed[-1] if completed else None

    def previous_snapshot(self, snapshot: Snapshot) -> Optional[Snapshot]:
        previous = None
        for candidate in self.list_snapshots(snapshot.project_id):
            if candidate.id == snapshot.id:
                break
            if candidate.state == SnapshotState.COMPLETED:
                previous = candidate
        return previous

    def recatalogue(self, force: bool = False) -> int:
        """
        Re-run the catalogue over stored components, e.g. after the catalogue
        gained entries. Only generic types are revisited unless forced.
        Returns the number of components whose type changed.
        """
        generic = None if force else [t for t in ComponentType if t.is_generic]
        updated = 0
        with translate_store_errors(self.repository, "ingest"):
            for component in self.repository.list_components(generic):
                kind = self.catalogue.lookup(component.manager, component.namespace, component.name)
                if kind is None or kind == component.component_type:
                    continue
                if self.repository.update_component_type(component.id, kind):
                    updated += 1
                else:
                    logger.warning(f"Cannot recatalogue {component.manager}/{component.name}: "
                                   f"a {kind.value} component with that name already exists")
            self.repository.commit()
        logger.info(f"Recatalogued {updated} components")
        return updated

    def _mark_failed_after_store_error(self, snapshot_id: int, error: Exception) -> None:
        try:
            self.repository.update_snapshot(snapshot_id, SnapshotState.FAILED, error=f"store error: {error}")
            self.repository.commit()
        except SQLAlchemyError:
            self.repository.rollback()
            logger.exception(f"Could not mark snapshot {snapshot_id} as failed")
