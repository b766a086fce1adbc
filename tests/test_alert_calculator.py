import threading
import unittest
from unittest import mock

from sqlalchemy.exc import OperationalError

from sbomwatch.application.service.alert_service import AlertCalculator
from sbomwatch.application.service.import_service import ArchiveImportService
from sbomwatch.application.service.snapshot_service import SnapshotService
from sbomwatch.core.entities import AdvisorySource, AlertState, SbomComponent, Severity
from sbomwatch.core.exceptions import SnapshotStateError, StaleSnapshotError, StoreUnavailableError
from sbomwatch.infrastructure.persistence.database import create_database_engine, create_session
from sbomwatch.infrastructure.persistence.repositories import SQLAlchemyRepository
from sbomwatch.infrastructure.persistence.vulnerability_store import SQLAlchemyVulnerabilityStore

from feed_fixtures import LEFT_PAD, LEFT_PAD_META, make_archive, meta_row, vuln_row


class AlertCalculatorTestCase(unittest.TestCase):

    def setUp(self):
        self.engine = create_database_engine("sqlite://")
        self.session = create_session(self.engine)
        self.repository = SQLAlchemyRepository(self.session)
        self.store = SQLAlchemyVulnerabilityStore(self.session)
        self.snapshots = SnapshotService(self.repository)
        self.importer = ArchiveImportService(self.store)
        self.calculator = AlertCalculator(self.repository, self.store)
        self.project = self.snapshots.create_project("web-shop")

    def tearDown(self):
        self.session.close()
        self.engine.dispose()

    def load_feed(self, vulnerabilities, metadata):
        return self.importer.import_archive(make_archive(vulnerabilities, metadata))

    def snapshot_of(self, *purls, project=None):
        snapshot = self.snapshots.create_snapshot(project or self.project)
        return self.snapshots.ingest(snapshot, list(purls))

    def alerts(self, snapshot):
        return {str(key): alert for alert, key in self.repository.list_alerts(snapshot.id)}


class TestLeftPadScenario(AlertCalculatorTestCase):

    def test_fix_in_next_snapshot_resolves_alert(self):
        self.load_feed(LEFT_PAD, LEFT_PAD_META)

        first = self.snapshot_of("pkg:npm/left-pad@1.2.0")
        summary = self.calculator.calculate(first)
        self.assertEqual(summary.high, 1)
        self.assertEqual(summary.new, 1)
        self.assertEqual(summary.total, 1)
        [alert] = self.alerts(first).values()
        self.assertEqual(alert.state, AlertState.NEW)
        self.assertEqual(alert.name, "CVE-TEST-1: npm:left-pad@1.2.0")

        second = self.snapshot_of("pkg:npm/left-pad@1.3.0")
        summary = self.calculator.calculate(second)
        self.assertEqual(summary.total, 0)
        self.assertEqual(self.alerts(second), {})
        [alert] = self.alerts(first).values()
        self.assertEqual(alert.state, AlertState.RESOLVED)

    def test_advisory_is_built_from_metadata(self):
        self.load_feed(LEFT_PAD, LEFT_PAD_META)
        self.calculator.calculate(self.snapshot_of("pkg:npm/left-pad@1.2.0"))

        advisory = self.repository.get_advisory("CVE-TEST-1")
        self.assertEqual(advisory.severity, Severity.HIGH)
        self.assertEqual(advisory.source, AdvisorySource.GITHUB)
        self.assertEqual(advisory.metadata["cvss.score"], "7.5")
        self.assertEqual(advisory.metadata["urls"], "https://example.test/advisories/CVE-TEST-1")
        self.assertEqual(advisory.metadata["data.source"], "https://example.test/CVE-TEST-1")

    def test_advisory_without_metadata_gets_default_link(self):
        self.load_feed([vuln_row("GHSA-xxxx-yyyy", "left-pad", "<1.3.0")], [])
        self.calculator.calculate(self.snapshot_of("pkg:npm/left-pad@1.2.0"))
        advisory = self.repository.get_advisory("GHSA-xxxx-yyyy")
        self.assertEqual(advisory.severity, Severity.UNKNOWN)
        self.assertEqual(advisory.metadata["urls"], "https://github.com/advisories/GHSA-xxxx-yyyy")


class TestRecalculation(AlertCalculatorTestCase):

    def test_recalculation_does_not_duplicate(self):
        self.load_feed(LEFT_PAD, LEFT_PAD_META)
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0")

        self.calculator.calculate(snapshot)
        [before] = self.alerts(snapshot).values()
        summary = self.calculator.calculate(snapshot)
        [after] = self.alerts(snapshot).values()

        self.assertEqual(before.id, after.id)
        self.assertEqual(after.state, AlertState.ACTIVE)
        self.assertGreaterEqual(after.updated_at, before.updated_at)
        self.assertEqual(after.created_at, before.created_at)
        self.assertEqual(summary.total, 1)
        self.assertEqual(summary.active, 1)

    def test_feed_fix_resolves_existing_alert(self):
        self.load_feed(LEFT_PAD, LEFT_PAD_META)
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0")
        self.calculator.calculate(snapshot)

        self.load_feed([vuln_row("CVE-TEST-1", "left-pad", "<1.3.0", fixed=["1.2.0"])], LEFT_PAD_META)
        summary = self.calculator.calculate(snapshot)

        [alert] = self.alerts(snapshot).values()
        self.assertEqual(alert.state, AlertState.RESOLVED)
        self.assertEqual(summary.total, 0)
        self.assertEqual(summary.resolved, 1)

    def test_severity_change_is_reflected_in_summary(self):
        self.load_feed(LEFT_PAD, LEFT_PAD_META)
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0")
        self.calculator.calculate(snapshot)

        self.load_feed(LEFT_PAD, [meta_row("CVE-TEST-1", severity="Critical")])
        summary = self.calculator.calculate(snapshot)
        self.assertEqual(summary.critical, 1)
        self.assertEqual(summary.high, 0)

    def test_resolved_alert_stays_resolved(self):
        self.load_feed(LEFT_PAD, LEFT_PAD_META)
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0")
        self.calculator.calculate(snapshot)
        self.load_feed([vuln_row("CVE-TEST-1", "left-pad", "<1.0.0")], LEFT_PAD_META)
        self.calculator.calculate(snapshot)

        # The range widens again, the old alert must not reopen
        self.load_feed(LEFT_PAD, LEFT_PAD_META)
        self.calculator.calculate(snapshot)
        [alert] = self.alerts(snapshot).values()
        self.assertEqual(alert.state, AlertState.RESOLVED)


class TestAcrossSnapshots(AlertCalculatorTestCase):

    def setUp(self):
        super().setUp()
        self.load_feed(
            LEFT_PAD + [vuln_row("CVE-TEST-2", "lodash", "<4.17.21")],
            LEFT_PAD_META + [meta_row("CVE-TEST-2", severity="Critical")],
        )

    def test_severity_buckets(self):
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20",
                                    "pkg:npm/express@4.18.0")
        summary = self.calculator.calculate(snapshot)
        self.assertEqual((summary.critical, summary.high, summary.medium), (1, 1, 0))
        self.assertEqual(summary.dependencies_scanned, 3)
        self.assertEqual(self.calculator.summarize(snapshot).total, 2)

    def test_removed_dependency_resolves_and_kept_one_carries_state(self):
        first = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20")
        self.calculator.calculate(first)

        second = self.snapshot_of("pkg:npm/lodash@4.17.20")
        self.calculator.calculate(second)

        old = self.alerts(first)
        self.assertEqual(old["npm:left-pad@1.2.0"].state, AlertState.RESOLVED)
        self.assertEqual(old["npm:lodash@4.17.20"].state, AlertState.ACTIVE)
        new = self.alerts(second)
        self.assertEqual(set(new), {"npm:lodash@4.17.20"})
        self.assertEqual(new["npm:lodash@4.17.20"].state, AlertState.ACTIVE)

    def test_older_snapshot_is_stale(self):
        first = self.snapshot_of("pkg:npm/left-pad@1.2.0")
        second = self.snapshot_of("pkg:npm/left-pad@1.3.0")
        self.calculator.calculate(second)
        with self.assertRaises(StaleSnapshotError):
            self.calculator.calculate(first)

    def test_only_completed_snapshots_are_calculated(self):
        snapshot = self.snapshots.create_snapshot(self.project)
        with self.assertRaises(SnapshotStateError):
            self.calculator.calculate(snapshot)

    def test_unparseable_version_is_reported_not_alerted(self):
        snapshot = self.snapshot_of("pkg:npm/left-pad@not.a.version!", "pkg:npm/lodash@4.17.20")
        summary = self.calculator.calculate(snapshot)
        self.assertEqual(summary.total, 1)
        self.assertEqual(len(summary.failures), 1)
        self.assertIn("left-pad", summary.failures[0])

    def test_placeholder_version_is_silent(self):
        snapshot = self.snapshots.create_snapshot(self.project)
        self.snapshots.ingest(snapshot, [SbomComponent("npm", "left-pad")])
        summary = self.calculator.calculate(snapshot)
        self.assertEqual(summary.total, 0)
        self.assertEqual(summary.failures, [])

    def test_cancelled_run_writes_nothing_further(self):
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20")
        token = threading.Event()
        token.set()
        summary = self.calculator.calculate(snapshot, cancel_token=token)
        self.assertEqual(summary.dependencies_scanned, 0)
        self.assertEqual(self.alerts(snapshot), {})
        self.assertIsNone(self.repository.get_last_calculated(self.project.id))

    def test_cancel_between_dependencies_keeps_committed_work(self):
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20")
        token = threading.Event()
        commit = self.repository.commit

        def commit_then_cancel():
            commit()
            token.set()

        with mock.patch.object(self.repository, "commit", side_effect=commit_then_cancel):
            summary = self.calculator.calculate(snapshot, cancel_token=token)

        self.assertEqual(summary.dependencies_scanned, 1)
        self.assertEqual(set(self.alerts(snapshot)), {"npm:left-pad@1.2.0"})

    def test_store_error_keeps_committed_alerts(self):
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20")
        find = self.store.find_by_package

        def fail_after_first(name):
            if name != "left-pad":
                raise OperationalError("SELECT vulnerabilities", {}, Exception("disk I/O error"))
            return find(name)

        with mock.patch.object(self.store, "find_by_package", side_effect=fail_after_first):
            with self.assertRaises(StoreUnavailableError) as ctx:
                self.calculator.calculate(snapshot)

        self.assertEqual(ctx.exception.phase, "calculate")
        self.assertEqual(set(self.alerts(snapshot)), {"npm:left-pad@1.2.0"})
        self.assertIsNone(self.repository.get_last_calculated(self.project.id))

    def test_incremental_run_carries_unchanged_dependencies(self):
        first = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20")
        self.calculator.calculate(first)
        second = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.21")

        store = mock.Mock(wraps=self.store)
        calculator = AlertCalculator(self.repository, store, incremental=True)
        calculator.calculate(second)

        store.find_by_package.assert_called_once_with("lodash")
        new = self.alerts(second)
        self.assertEqual(set(new), {"npm:left-pad@1.2.0"})
        self.assertEqual(new["npm:left-pad@1.2.0"].state, AlertState.ACTIVE)
        self.assertEqual(self.alerts(first)["npm:lodash@4.17.20"].state, AlertState.RESOLVED)

    def test_curated_advisory_is_not_overwritten(self):
        self.repository.save_advisory("CVE-TEST-1", AdvisorySource.CUSTOM, Severity.LOW,
                                      {"description": "triaged by security team"})
        self.repository.commit()

        summary = self.calculator.calculate(self.snapshot_of("pkg:npm/left-pad@1.2.0"))
        advisory = self.repository.get_advisory("CVE-TEST-1")
        self.assertEqual(advisory.source, AdvisorySource.CUSTOM)
        self.assertEqual(advisory.severity, Severity.LOW)
        self.assertEqual(summary.low, 1)

    def test_global_summary_uses_latest_snapshot_per_project(self):
        other = self.snapshots.create_project("backoffice")
        old = self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20")
        self.calculator.calculate(old)
        latest = self.snapshot_of("pkg:npm/lodash@4.17.20")
        self.calculator.calculate(latest)
        self.calculator.calculate(self.snapshot_of("pkg:npm/left-pad@1.2.0", project=other))

        summary = self.calculator.global_summary()
        self.assertEqual(summary.critical, 1)
        self.assertEqual(summary.high, 1)
        self.assertEqual(summary.total, 2)

    def test_alerts_for_project(self):
        self.calculator.calculate(self.snapshot_of("pkg:npm/left-pad@1.2.0", "pkg:npm/lodash@4.17.20"))
        alerts = self.calculator.alerts_for_project(self.project)
        self.assertEqual(sorted(a.advisory for a in alerts), ["CVE-TEST-1", "CVE-TEST-2"])
        by_advisory = {a.advisory: a for a in alerts}
        self.assertEqual(by_advisory["CVE-TEST-2"].severity, "critical")
        self.assertEqual(by_advisory["CVE-TEST-2"].dependency, "npm:lodash@4.17.20")
        self.assertEqual(by_advisory["CVE-TEST-2"].state, "new")


class TestMixedVersionFormats(AlertCalculatorTestCase):

    def assert_exact_record_alerts(self, exact_id):
        self.load_feed([
            vuln_row("MMM-RANGE", "left-pad", "<2.0.0"),
            vuln_row(exact_id, "left-pad", "1.0.0-custom", version_format="unstructured"),
        ], [])
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.0.0-custom")
        summary = self.calculator.calculate(snapshot)

        [alert] = self.alerts(snapshot).values()
        self.assertEqual(alert.name, f"{exact_id}: npm:left-pad@1.0.0-custom")
        self.assertEqual(summary.total, 1)
        self.assertEqual(summary.failures, ["npm:left-pad@1.0.0-custom: unparseable version"])

    def test_exact_record_sorted_before_range_record(self):
        self.assert_exact_record_alerts("AAA-EXACT")

    def test_exact_record_sorted_after_range_record(self):
        self.assert_exact_record_alerts("ZZZ-EXACT")

    def test_alert_is_kept_while_its_record_cannot_be_evaluated(self):
        self.load_feed([vuln_row("CVE-TEST-9", "left-pad", "1.0.0-custom", version_format="unstructured")], [])
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.0.0-custom")
        self.calculator.calculate(snapshot)
        self.assertEqual(self.alerts(snapshot)["npm:left-pad@1.0.0-custom"].state, AlertState.NEW)

        self.load_feed([vuln_row("CVE-TEST-9", "left-pad", "<2.0.0")], [])
        summary = self.calculator.calculate(snapshot)

        self.assertEqual(self.alerts(snapshot)["npm:left-pad@1.0.0-custom"].state, AlertState.NEW)
        self.assertEqual(summary.resolved, 0)
        self.assertEqual(len(summary.failures), 1)

    def test_other_advisories_still_resolve(self):
        self.load_feed([
            vuln_row("CVE-TEST-8", "left-pad", "1.0.0-custom", version_format="unstructured"),
            vuln_row("CVE-TEST-9", "left-pad", "1.0.0-custom", version_format="unstructured"),
        ], [])
        snapshot = self.snapshot_of("pkg:npm/left-pad@1.0.0-custom")
        self.calculator.calculate(snapshot)

        self.load_feed([
            vuln_row("CVE-TEST-8", "left-pad", "1.0.0-other", version_format="unstructured"),
            vuln_row("CVE-TEST-9", "left-pad", "<2.0.0"),
        ], [])
        self.calculator.calculate(snapshot)

        states = {alert.name.split(":")[0]: alert.state for alert, _ in self.repository.list_alerts(snapshot.id)}
        self.assertEqual(states, {"CVE-TEST-8": AlertState.RESOLVED, "CVE-TEST-9": AlertState.NEW})


if __name__ == "__main__":
    unittest.main()
