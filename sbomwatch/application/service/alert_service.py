import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

import pandas as pd

from sbomwatch.application.dtos import AlertDTO
from sbomwatch.core.diff import diff_dependencies
from sbomwatch.core.entities import (
    Advisory, AdvisorySource, AlertState, AlertSummary, Dependency, DependencyKey, Project,
    Severity, Snapshot, SnapshotState, Vulnerability, VulnerabilityMetadata,
)
from sbomwatch.core.exceptions import SnapshotStateError, StaleSnapshotError
from sbomwatch.core.interface import IRepository, IVulnerabilityStore
from sbomwatch.core.lifecycle import AlertEvent, next_state
from sbomwatch.core.matcher import MatchOutcome, VersionConstraintMatcher, is_placeholder
from sbomwatch.infrastructure.persistence.database import translate_store_errors

logger = logging.getLogger(__name__)

NVD_URL = "https://nvd.nist.gov/vuln/detail/{}"
GITHUB_URL = "https://github.com/advisories/{}"


@dataclass
class _Run:
    """Bookkeeping for one calculation"""
    snapshot: Snapshot
    summary: AlertSummary
    # Open alerts of earlier snapshots, keyed by (dependency key, advisory id)
    prior: Dict[Tuple[DependencyKey, int], list] = field(default_factory=dict)
    matched: Set[Tuple[int, int]] = field(default_factory=set)
    matched_keys: Set[Tuple[DependencyKey, int]] = field(default_factory=set)
    # Pairs whose record could not be evaluated; their alerts are left as they are
    held: Set[Tuple[int, int]] = field(default_factory=set)
    held_keys: Set[Tuple[DependencyKey, int]] = field(default_factory=set)
    advisories: Dict[str, Advisory] = field(default_factory=dict)
    cancelled: bool = False


class AlertCalculator:
    """Use Case: match a snapshot's dependencies against the vulnerability store and keep its alerts"""

    def __init__(
        self,
        repository: IRepository,
        store: IVulnerabilityStore,
        matcher: Optional[VersionConstraintMatcher] = None,
        incremental: bool = False,
    ):
        self.repository = repository
        self.store = store
        self.matcher = matcher or VersionConstraintMatcher()
        self.incremental = incremental

    def calculate(self, snapshot: Union[Snapshot, int], incremental: Optional[bool] = None,
                  cancel_token: Optional[threading.Event] = None) -> AlertSummary:
        """
        Recalculate alerts for a completed snapshot. Safe to repeat: existing
        (snapshot, dependency, advisory) alerts are updated in place.
        Each dependency is committed on its own, so a cancelled run keeps
        what it already wrote.
        """
        snapshot_id = snapshot.id if isinstance(snapshot, Snapshot) else int(snapshot)
        incremental = self.incremental if incremental is None else incremental
        with translate_store_errors(self.repository, "calculate"):
            return self._calculate(snapshot_id, incremental, cancel_token)

    def _calculate(self, snapshot_id: int, incremental: bool,
                   cancel_token: Optional[threading.Event]) -> AlertSummary:
        snapshot = self.repository.get_snapshot(snapshot_id)
        if snapshot is None:
            raise ValueError(f"Unknown snapshot {snapshot_id}")
        if snapshot.state != SnapshotState.COMPLETED:
            raise SnapshotStateError(snapshot_id, snapshot.state.value, expected="completed")
        self._check_order(snapshot)

        run = _Run(snapshot=snapshot, summary=AlertSummary())
        for alert, key in self.repository.list_open_alerts_before(snapshot.project_id, snapshot.id):
            run.prior.setdefault((key, alert.advisory_id), []).append(alert)
        existing = {
            (alert.dependency_id, alert.advisory_id): alert
            for alert, _ in self.repository.list_alerts(snapshot.id)
        }

        dependencies = self.repository.list_dependencies(snapshot.id)
        carried = self._carried_alerts(snapshot, dependencies) if incremental else {}

        for dependency in dependencies:
            if cancel_token is not None and cancel_token.is_set():
                logger.info(f"Calculation for snapshot {snapshot.id} cancelled")
                run.cancelled = True
                break
            run.summary.dependencies_scanned += 1
            if dependency.key in carried:
                for advisory_id, name in carried[dependency.key]:
                    self._upsert_alert(run, dependency, advisory_id, name)
            else:
                self._match_dependency(run, dependency)
            self.repository.commit()

        if not run.cancelled:
            resolved = self._resolve_unconfirmed(run, existing)
            self.repository.set_last_calculated(snapshot.project_id, snapshot.id)
            self.repository.commit()
            logger.info(
                f"Snapshot {snapshot.id}: {len(run.matched)} matches, {resolved} alerts resolved, "
                f"{len(run.summary.failures)} dependencies skipped"
            )

        summary = self._summary_from_frame(self.repository.alert_frame([snapshot.id]))
        summary.dependencies_scanned = run.summary.dependencies_scanned
        summary.failures = run.summary.failures
        return summary

    def _check_order(self, snapshot: Snapshot) -> None:
        last_id = self.repository.get_last_calculated(snapshot.project_id)
        if last_id is None or last_id == snapshot.id:
            return
        last = self.repository.get_snapshot(last_id)
        if last is not None and (last.created_at, last.id) > (snapshot.created_at, snapshot.id):
            raise StaleSnapshotError(snapshot.id, last_id)

    def _carried_alerts(self, snapshot: Snapshot, dependencies: List[Dependency]):
        """Open alerts of the previous snapshot for dependencies that did not change"""
        previous = None
        for candidate in self.repository.list_snapshots(snapshot.project_id):
            if candidate.id == snapshot.id:
                break
            if candidate.state == SnapshotState.COMPLETED:
                previous = candidate
        if previous is None:
            return {}

        previous_alerts = self.repository.list_alerts(previous.id)
        changes = diff_dependencies(self._keys(previous.id), {d.key for d in dependencies})
        carried: Dict[DependencyKey, List[Tuple[int, str]]] = {key: [] for key in changes.unchanged}
        for alert, key in previous_alerts:
            if key in carried and alert.state != AlertState.RESOLVED:
                carried[key].append((alert.advisory_id, alert.name))
        logger.debug(
            f"Incremental run for snapshot {snapshot.id}: {len(changes.added)} added, "
            f"{len(changes.removed)} removed, {len(changes.unchanged)} carried over"
        )
        return carried

    def _keys(self, snapshot_id: int) -> Set[DependencyKey]:
        return {d.key for d in self.repository.list_dependencies(snapshot_id)}

    def _match_dependency(self, run: _Run, dependency: Dependency) -> None:
        key = dependency.key
        reported = False
        for vulnerability in self.store.find_by_package(key.name):
            outcome = self.matcher.evaluate(key.manager, key.name, key.version, vulnerability)
            if outcome is MatchOutcome.UNPARSEABLE_VERSION:
                self._hold(run, dependency, vulnerability)
                if not reported and not is_placeholder(key.version):
                    run.summary.failures.append(f"{key}: unparseable version")
                    logger.warning(f"Cannot evaluate {key} against {vulnerability.version_format.value} "
                                   f"records: version '{key.version}' cannot be parsed")
                reported = True
                continue
            if outcome is MatchOutcome.INVALID_CONSTRAINT:
                logger.debug(f"Ignoring {vulnerability.identifier} ({vulnerability.namespace}): "
                             f"bad constraint '{vulnerability.version_constraint}'")
                continue
            if outcome is not MatchOutcome.AFFECTED:
                continue

            advisory = self._advisory_for(run, vulnerability)
            self._upsert_alert(run, dependency, advisory.id, f"{vulnerability.identifier}: {key}")

    def _hold(self, run: _Run, dependency: Dependency, vulnerability: Vulnerability) -> None:
        advisory = run.advisories.get(vulnerability.identifier) or \
            self.repository.get_advisory(vulnerability.identifier)
        if advisory is None:
            # Never alerted on, nothing to keep
            return
        run.held.add((dependency.id, advisory.id))
        run.held_keys.add((dependency.key, advisory.id))

    def _upsert_alert(self, run: _Run, dependency: Dependency, advisory_id: int, name: str) -> None:
        triple = (dependency.id, advisory_id)
        if triple in run.matched:
            return
        run.matched.add(triple)
        run.matched_keys.add((dependency.key, advisory_id))

        alert = self.repository.get_alert(run.snapshot.id, dependency.id, advisory_id)
        if alert is None:
            # Already alerted on an earlier snapshot of this project
            state = AlertState.ACTIVE if (dependency.key, advisory_id) in run.prior else AlertState.NEW
            self.repository.insert_alert(name, state, run.snapshot.id, dependency.id, advisory_id)
            return

        target = next_state(alert.state, AlertEvent.CONFIRM)
        if target is not None:
            self.repository.update_alert_state(alert.id, target)

    def _resolve_unconfirmed(self, run: _Run, existing: Dict) -> int:
        resolved = 0

        # This snapshot's alerts that no longer match, e.g. after a feed update added a fix
        for (dependency_id, advisory_id), alert in existing.items():
            if (dependency_id, advisory_id) in run.matched or (dependency_id, advisory_id) in run.held:
                continue
            if next_state(alert.state, AlertEvent.RESOLVE) is not None:
                self.repository.update_alert_state(alert.id, AlertState.RESOLVED)
                resolved += 1

        # Earlier snapshots: re-confirmed while still present, resolved once gone
        for (key, advisory_id), alerts in run.prior.items():
            if (key, advisory_id) in run.matched_keys:
                event = AlertEvent.CONFIRM
            elif (key, advisory_id) in run.held_keys:
                continue
            else:
                event = AlertEvent.RESOLVE
            for alert in alerts:
                target = next_state(alert.state, event)
                if target is not None:
                    self.repository.update_alert_state(alert.id, target)
                    if target == AlertState.RESOLVED:
                        resolved += 1
        return resolved

    def _advisory_for(self, run: _Run, vulnerability: Vulnerability) -> Advisory:
        cached = run.advisories.get(vulnerability.identifier)
        if cached is not None:
            return cached

        advisory = self.repository.get_advisory(vulnerability.identifier)
        if advisory is None or advisory.source != AdvisorySource.CUSTOM:
            metadata = self._best_metadata(vulnerability)
            if metadata is not None:
                severity = metadata.severity
                source = AdvisorySource.from_record_source(metadata.record_source or metadata.namespace)
            else:
                severity = Severity.UNKNOWN
                source = AdvisorySource.from_record_source(vulnerability.namespace)
            advisory = self.repository.save_advisory(
                vulnerability.identifier, source, severity, self._advisory_metadata(vulnerability, metadata))

        run.advisories[vulnerability.identifier] = advisory
        return advisory

    def _best_metadata(self, vulnerability: Vulnerability) -> Optional[VulnerabilityMetadata]:
        records = self.store.metadata_for(vulnerability.identifier)
        if not records:
            return None
        for record in records:
            if record.namespace == vulnerability.namespace:
                return record

        identifier = vulnerability.identifier.upper()
        for record in records:
            if identifier.startswith("CVE-") and record.namespace == "nvd:cpe":
                return record
            if identifier.startswith("GHSA-") and record.namespace.startswith("github:"):
                return record
        return records[0]

    @staticmethod
    def _advisory_metadata(vulnerability: Vulnerability,
                           metadata: Optional[VulnerabilityMetadata]) -> Dict[str, str]:
        entries = {"data.source": (metadata.data_source if metadata else "") or "vulnerability-feed"}
        if metadata and metadata.description:
            entries["description"] = metadata.description
        if metadata and metadata.cvss_vector:
            entries["cvss"] = metadata.cvss_vector
            if metadata.cvss_score is not None:
                entries["cvss.score"] = f"{metadata.cvss_score:.1f}"

        urls = list(metadata.urls) if metadata else []
        if not urls:
            urls = list(vulnerability.advisories)
        if not urls:
            identifier = vulnerability.identifier
            if identifier.upper().startswith("CVE-"):
                urls = [NVD_URL.format(identifier)]
            elif identifier.upper().startswith("GHSA-"):
                urls = [GITHUB_URL.format(identifier)]
        if urls:
            entries["urls"] = "\n".join(urls)
        return entries

    # Read accessors

    def summarize(self, snapshot: Union[Snapshot, int]) -> AlertSummary:
        snapshot_id = snapshot.id if isinstance(snapshot, Snapshot) else int(snapshot)
        with translate_store_errors(self.repository, "query"):
            return self._summary_from_frame(self.repository.alert_frame([snapshot_id]))

    def global_summary(self) -> AlertSummary:
        """Alert totals across the latest completed snapshot of every project"""
        with translate_store_errors(self.repository, "query"):
            snapshot_ids = [s.id for s in self.latest_snapshots()]
            if not snapshot_ids:
                return AlertSummary()
            return self._summary_from_frame(self.repository.alert_frame(snapshot_ids))

    def latest_snapshots(self) -> List[Snapshot]:
        latest = []
        for project in self.repository.list_projects():
            completed = [s for s in self.repository.list_snapshots(project.id)
                         if s.state == SnapshotState.COMPLETED]
            if completed:
                latest.append(completed[-1])
        return latest

    def alerts_for_snapshot(self, snapshot: Union[Snapshot, int],
                            include_resolved: bool = True) -> List[AlertDTO]:
        snapshot_id = snapshot.id if isinstance(snapshot, Snapshot) else int(snapshot)
        with translate_store_errors(self.repository, "query"):
            alerts = self.repository.list_alerts(snapshot_id)
            advisories = self.repository.list_advisories({alert.advisory_id for alert, _ in alerts})

        results = []
        for alert, key in alerts:
            if not include_resolved and alert.state == AlertState.RESOLVED:
                continue
            advisory = advisories[alert.advisory_id]
            results.append(AlertDTO(
                id=alert.id,
                name=alert.name,
                state=alert.state.value,
                severity=advisory.severity.value,
                advisory=advisory.name,
                source=advisory.source.value,
                dependency=str(key),
                snapshot_id=alert.snapshot_id,
                created_at=alert.created_at.isoformat(),
                updated_at=alert.updated_at.isoformat(),
            ))
        return results

    def alerts_for_project(self, project: Union[Project, int], include_resolved: bool = False) -> List[AlertDTO]:
        """Alerts of the project's latest completed snapshot"""
        project_id = project.id if isinstance(project, Project) else int(project)
        with translate_store_errors(self.repository, "query"):
            completed = [s for s in self.repository.list_snapshots(project_id)
                         if s.state == SnapshotState.COMPLETED]
        if not completed:
            return []
        return self.alerts_for_snapshot(completed[-1], include_resolved=include_resolved)

    @staticmethod
    def _summary_from_frame(frame: pd.DataFrame) -> AlertSummary:
        summary = AlertSummary()
        if frame.empty:
            return summary

        open_alerts = frame[frame["state"] != AlertState.RESOLVED.value]
        by_severity = open_alerts.groupby("severity").size()
        for severity in Severity:
            setattr(summary, severity.value, int(by_severity.get(severity.value, 0)))

        by_state = frame["state"].value_counts()
        summary.new = int(by_state.get(AlertState.NEW.value, 0))
        summary.active = int(by_state.get(AlertState.ACTIVE.value, 0))
        summary.resolved = int(by_state.get(AlertState.RESOLVED.value, 0))
        return summary
