import os
import tempfile
import unittest

from sbomwatch.application.config import Settings, load_settings
from sbomwatch.core.diff import diff_dependencies
from sbomwatch.core.entities import (
    AdvisorySource, AlertSummary, ComponentType, DependencyKey, FixState, SbomComponent, Severity, VersionFormat,
)
from sbomwatch.core.lifecycle import AlertEvent, next_state
from sbomwatch.core.entities import AlertState


class TestEnums(unittest.TestCase):

    def test_severity_order_and_aliases(self):
        self.assertLess(Severity.UNKNOWN, Severity.LOW)
        self.assertLess(Severity.HIGH, Severity.CRITICAL)
        self.assertEqual(max([Severity.MEDIUM, Severity.CRITICAL, Severity.LOW]), Severity.CRITICAL)
        self.assertEqual(Severity.parse("Moderate"), Severity.MEDIUM)
        self.assertEqual(Severity.parse("Negligible"), Severity.LOW)
        self.assertEqual(Severity.parse("very-high"), Severity.CRITICAL)
        self.assertEqual(Severity.parse(None), Severity.UNKNOWN)
        self.assertEqual(Severity.parse("whatever"), Severity.UNKNOWN)

    def test_version_format_from_feed(self):
        self.assertEqual(VersionFormat.from_feed("semver"), VersionFormat.SEMANTIC)
        self.assertEqual(VersionFormat.from_feed("python"), VersionFormat.SEMANTIC)
        self.assertEqual(VersionFormat.from_feed("dpkg"), VersionFormat.UNSTRUCTURED)
        self.assertEqual(VersionFormat.from_feed(None), VersionFormat.UNSTRUCTURED)

    def test_fix_state_parse(self):
        self.assertEqual(FixState.parse("wont_fix"), FixState.WONT_FIX)
        self.assertEqual(FixState.parse("bogus"), FixState.UNKNOWN)

    def test_component_type_defaults_to_library(self):
        self.assertEqual(ComponentType.parse(None), ComponentType.LIBRARY)
        self.assertEqual(ComponentType.parse("OS"), ComponentType.OPERATING_SYSTEM)
        self.assertEqual(ComponentType.parse("gizmo"), ComponentType.UNKNOWN)

    def test_component_type_aliases(self):
        self.assertEqual(ComponentType.parse("crypto"), ComponentType.CRYPTOGRAPHY_LIBRARY)
        self.assertEqual(ComponentType.parse("programming_language"), ComponentType.PROGRAMMING_LANGUAGE)
        self.assertEqual(ComponentType.parse("db"), ComponentType.DATABASE)
        self.assertTrue(ComponentType.parse("app").is_generic)
        self.assertFalse(ComponentType.DATABASE.is_generic)

    def test_advisory_source_from_record_source(self):
        cases = {
            "nvdv2:nvdv2:cves": AdvisorySource.NVD,
            "github:github:npm": AdvisorySource.GITHUB,
            "vulnerabilities:debian:12": AdvisorySource.DEBIAN,
            "vulnerabilities:rhel:9": AdvisorySource.REDHAT,
            "vulnerabilities:wolfi:rolling": AdvisorySource.WOLFI,
            "something-else": AdvisorySource.ANCHORE,
            None: AdvisorySource.ANCHORE,
        }
        for record_source, expected in cases.items():
            self.assertEqual(AdvisorySource.from_record_source(record_source), expected, record_source)


class TestSbomComponent(unittest.TestCase):

    def test_from_purl(self):
        component = SbomComponent.from_purl("pkg:npm/%40babel/core@7.0.0?foo=bar")
        self.assertEqual(component.ecosystem, "npm")
        self.assertEqual(component.namespace, "@babel")
        self.assertEqual(component.name, "core")
        self.assertEqual(component.version, "7.0.0")

    def test_from_purl_without_version(self):
        component = SbomComponent.from_purl("pkg:pypi/requests")
        self.assertIsNone(component.version)
        self.assertIsNone(component.namespace)

    def test_rejects_non_purl(self):
        with self.assertRaises(ValueError):
            SbomComponent.from_purl("npm/left-pad@1.0.0")


class TestDiffAndLifecycle(unittest.TestCase):

    def test_diff_dependencies(self):
        a = DependencyKey("npm", "", "left-pad", "1.2.0")
        b = DependencyKey("npm", "", "lodash", "4.17.21")
        c = DependencyKey("npm", "", "left-pad", "1.3.0")
        result = diff_dependencies([a, b], [b, c])
        self.assertEqual(result.added, {c})
        self.assertEqual(result.removed, {a})
        self.assertEqual(result.unchanged, {b})
        self.assertTrue(result.changed)

    def test_resolved_is_terminal(self):
        self.assertEqual(next_state(AlertState.NEW, AlertEvent.CONFIRM), AlertState.ACTIVE)
        self.assertEqual(next_state(AlertState.ACTIVE, AlertEvent.RESOLVE), AlertState.RESOLVED)
        self.assertIsNone(next_state(AlertState.RESOLVED, AlertEvent.CONFIRM))
        self.assertIsNone(next_state(AlertState.RESOLVED, AlertEvent.RESOLVE))

    def test_summary_merge(self):
        first = AlertSummary(critical=1, high=2, new=3)
        first.merge(AlertSummary(high=1, low=4, failures=["x"]))
        self.assertEqual(first.total, 8)
        self.assertEqual(first.count(Severity.HIGH), 3)
        self.assertEqual(first.failures, ["x"])


class TestSettings(unittest.TestCase):

    def test_missing_file_gives_defaults(self):
        settings = load_settings("/nonexistent/sbomwatch.yaml")
        self.assertEqual(settings, Settings())

    def test_yaml_values_and_unknown_keys(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.yaml")
            with open(path, "w") as f:
                f.write("refresh_interval_seconds: 60\ninvalid_row_threshold: 0.2\nincremental: true\nbogus: 1\n")
            with self.assertLogs("sbomwatch.application.config", level="WARNING"):
                settings = load_settings(path)
        self.assertEqual(settings.refresh_interval_seconds, 60.0)
        self.assertEqual(settings.invalid_row_threshold, 0.2)
        self.assertTrue(settings.incremental)

    def test_threshold_must_be_a_ratio(self):
        with self.assertRaises(ValueError):
            Settings(invalid_row_threshold=5)


if __name__ == "__main__":
    unittest.main()
