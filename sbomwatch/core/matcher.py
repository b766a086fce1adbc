"""
Version constraint matching.

Each VersionFormat has its own matcher object implementing the same
`check(version, vulnerability)` contract; VersionConstraintMatcher picks one
from a registry after the package identity filter. Everything here is pure
and holds no mutable state, so one instance can be shared across threads.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from packaging.version import InvalidVersion, Version

from sbomwatch.core.entities import Vulnerability, VersionFormat
from sbomwatch.core.versions import (
    PLACEHOLDER_VERSION,
    ConstraintError,
    VersionRange,
    branch_of,
    parse_version,
)


class MatchOutcome(Enum):
    AFFECTED = "affected"
    NOT_AFFECTED = "not-affected"
    FIXED = "fixed"
    PACKAGE_MISMATCH = "package-mismatch"
    UNPARSEABLE_VERSION = "unparseable-version"
    INVALID_CONSTRAINT = "invalid-constraint"


# Package managers and the namespace tokens feeds use for them
_ECOSYSTEM_ALIASES: Dict[str, FrozenSet[str]] = {
    "npm": frozenset({"npm", "node", "javascript", "js"}),
    "pypi": frozenset({"pypi", "pip", "python"}),
    "golang": frozenset({"golang", "go"}),
    "maven": frozenset({"maven", "java"}),
    "cargo": frozenset({"cargo", "rust", "crates.io"}),
    "gem": frozenset({"gem", "ruby", "rubygems"}),
    "composer": frozenset({"composer", "php", "packagist"}),
    "nuget": frozenset({"nuget", "dotnet"}),
    "deb": frozenset({"deb", "debian", "ubuntu"}),
    "apk": frozenset({"apk", "alpine", "wolfi", "chainguard"}),
    "rpm": frozenset({"rpm", "redhat", "rhel", "centos", "fedora", "amazon"}),
    "generic": frozenset({"generic"}),
}

# Namespaces keyed by CPE rather than ecosystem
_ECOSYSTEM_AGNOSTIC = frozenset({"nvd"})


def ecosystem_aliases(ecosystem: str) -> FrozenSet[str]:
    token = (ecosystem or "").strip().lower()
    for aliases in _ECOSYSTEM_ALIASES.values():
        if token in aliases:
            return aliases
    return frozenset({token})


def canonical_ecosystem(ecosystem: str) -> str:
    token = (ecosystem or "").strip().lower()
    for canonical, aliases in _ECOSYSTEM_ALIASES.items():
        if token in aliases:
            return canonical
    return token


def normalize_name(name: str) -> str:
    return (name or "").strip().lower()


def namespace_matches(ecosystem: str, namespace: str) -> bool:
    segments = {s for s in (namespace or "").lower().split(":") if s}
    if not segments:
        return False
    if segments & _ECOSYSTEM_AGNOSTIC:
        return True
    return bool(segments & ecosystem_aliases(ecosystem))


def is_placeholder(version: Optional[str]) -> bool:
    return not version or not version.strip() or version.strip() == PLACEHOLDER_VERSION


class SemanticVersionMatcher:
    """Range evaluation over parsed versions, with fixed-in precedence"""

    def check(self, version: str, vulnerability: Vulnerability) -> MatchOutcome:
        try:
            candidate = parse_version(version)
        except InvalidVersion:
            return MatchOutcome.UNPARSEABLE_VERSION

        try:
            constraint = VersionRange.parse(vulnerability.version_constraint)
        except ConstraintError:
            return MatchOutcome.INVALID_CONSTRAINT

        if not constraint.contains(candidate):
            return MatchOutcome.NOT_AFFECTED
        if self._is_fixed(candidate, vulnerability):
            return MatchOutcome.FIXED
        return MatchOutcome.AFFECTED

    @staticmethod
    def _is_fixed(candidate: Version, vulnerability: Vulnerability) -> bool:
        fixed = []
        for raw in vulnerability.fixed_in_versions:
            try:
                fixed.append(parse_version(raw))
            except InvalidVersion:
                continue
        if not fixed:
            return False

        same_branch = [v for v in fixed if branch_of(v) == branch_of(candidate)]
        if same_branch:
            return candidate >= min(same_branch)
        return candidate >= max(fixed)


class UnstructuredMatcher:
    """Opaque versions: exact membership, no ordering assumed"""

    def check(self, version: str, vulnerability: Vulnerability) -> MatchOutcome:
        candidate = version.strip()
        members = self._members(vulnerability.version_constraint)
        if members is None:
            return MatchOutcome.INVALID_CONSTRAINT
        if candidate not in members:
            return MatchOutcome.NOT_AFFECTED
        if candidate in {v.strip() for v in vulnerability.fixed_in_versions}:
            return MatchOutcome.FIXED
        return MatchOutcome.AFFECTED

    @staticmethod
    def _members(expression: str):
        if not expression or not expression.strip():
            return None
        members = set()
        for group in expression.split("||"):
            for item in group.split(","):
                item = item.strip()
                if item.startswith("=="):
                    item = item[2:]
                elif item.startswith("="):
                    item = item[1:]
                item = item.strip()
                if item:
                    members.add(item)
        return members or None


MATCHERS = {
    VersionFormat.SEMANTIC: SemanticVersionMatcher(),
    VersionFormat.UNSTRUCTURED: UnstructuredMatcher(),
}


class VersionConstraintMatcher:
    """Decides whether a package version is affected by a vulnerability record"""

    def __init__(self, matchers: Optional[Dict[VersionFormat, object]] = None):
        self.matchers = dict(matchers or MATCHERS)

    def evaluate(self, ecosystem: str, package_name: str, version: str,
                 vulnerability: Vulnerability) -> MatchOutcome:
        if normalize_name(package_name) != normalize_name(vulnerability.package_name):
            return MatchOutcome.PACKAGE_MISMATCH
        if not namespace_matches(ecosystem, vulnerability.namespace):
            return MatchOutcome.PACKAGE_MISMATCH

        # Unknown versions never alert
        if is_placeholder(version):
            return MatchOutcome.UNPARSEABLE_VERSION

        matcher = self.matchers.get(vulnerability.version_format, self.matchers[VersionFormat.UNSTRUCTURED])
        return matcher.check(version, vulnerability)

    def matches(self, ecosystem: str, package_name: str, version: str,
                vulnerability: Vulnerability) -> bool:
        return self.evaluate(ecosystem, package_name, version, vulnerability) is MatchOutcome.AFFECTED


_default = VersionConstraintMatcher()


def matches(ecosystem: str, package_name: str, version: str, vulnerability: Vulnerability) -> bool:
    return _default.matches(ecosystem, package_name, version, vulnerability)
