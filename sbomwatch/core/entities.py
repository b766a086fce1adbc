from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple
from datetime import datetime
from enum import Enum
from functools import total_ordering
from urllib.parse import unquote


@total_ordering
class Severity(Enum):
    UNKNOWN = "unknown"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: Optional[str]) -> "Severity":
        """Map free-form feed severities onto the ordered buckets"""
        if not value:
            return cls.UNKNOWN
        return _SEVERITY_ALIASES.get(str(value).strip().lower(), cls.UNKNOWN)


_SEVERITY_ORDER = [Severity.UNKNOWN, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

_SEVERITY_ALIASES = {
    "critical": Severity.CRITICAL,
    "crit": Severity.CRITICAL,
    "very-high": Severity.CRITICAL,
    "high": Severity.HIGH,
    "important": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "med": Severity.MEDIUM,
    "moderate": Severity.MEDIUM,
    "low": Severity.LOW,
    "negligible": Severity.LOW,
    "informational": Severity.LOW,
    "info": Severity.LOW,
}


class VersionFormat(Enum):
    SEMANTIC = "semantic-version"
    UNSTRUCTURED = "unstructured"

    @classmethod
    def from_feed(cls, value: Optional[str]) -> "VersionFormat":
        if value and str(value).strip().lower() in _SEMANTIC_FORMATS:
            return cls.SEMANTIC
        return cls.UNSTRUCTURED


# Feed format tags whose versions order like semantic versions
_SEMANTIC_FORMATS = {
    "semantic-version", "semver", "semantic", "python", "pep440",
    "go", "golang", "npm", "gem", "maven", "cargo", "nuget",
}


class FixState(Enum):
    FIXED = "fixed"
    NOT_FIXED = "not-fixed"
    WONT_FIX = "wont-fix"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FixState":
        normalized = (value or "").strip().lower().replace("_", "-")
        for state in cls:
            if state.value == normalized:
                return state
        return cls.UNKNOWN


class SnapshotState(Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertState(Enum):
    NEW = "new"
    ACTIVE = "active"
    RESOLVED = "resolved"


class ComponentType(Enum):
    LIBRARY = "library"
    APPLICATION = "application"
    FRAMEWORK = "framework"
    OPERATING_SYSTEM = "operating-system"
    CONTAINER = "container"
    FIRMWARE = "firmware"
    SERVICE = "service"
    DATABASE = "database"
    PACKAGE_MANAGER = "package-manager"
    PROGRAMMING_LANGUAGE = "programming-language"
    CRYPTOGRAPHY_LIBRARY = "cryptography-library"
    COMPRESSION_LIBRARY = "compression-library"
    OPERATING_ENVIRONMENT = "operating-environment"
    MIDDLEWARE = "middleware"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ComponentType":
        if not value:
            return cls.LIBRARY
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized in _COMPONENT_TYPE_ALIASES:
            return _COMPONENT_TYPE_ALIASES[normalized]
        for kind in cls:
            if kind.value == normalized:
                return kind
        return cls.UNKNOWN

    @property
    def is_generic(self) -> bool:
        """Types an SBOM producer emits by default; the catalogue may refine them"""
        return self in (ComponentType.LIBRARY, ComponentType.APPLICATION, ComponentType.UNKNOWN)


_COMPONENT_TYPE_ALIASES = {
    "lib": ComponentType.LIBRARY,
    "app": ComponentType.APPLICATION,
    "os": ComponentType.OPERATING_SYSTEM,
    "operatingsystem": ComponentType.OPERATING_SYSTEM,
    "docker": ComponentType.CONTAINER,
    "db": ComponentType.DATABASE,
    "packagemanager": ComponentType.PACKAGE_MANAGER,
    "language": ComponentType.PROGRAMMING_LANGUAGE,
    "programminglanguage": ComponentType.PROGRAMMING_LANGUAGE,
    "crypto": ComponentType.CRYPTOGRAPHY_LIBRARY,
    "cryptography": ComponentType.CRYPTOGRAPHY_LIBRARY,
    "cryptographylibrary": ComponentType.CRYPTOGRAPHY_LIBRARY,
    "compression": ComponentType.COMPRESSION_LIBRARY,
    "compressionlibrary": ComponentType.COMPRESSION_LIBRARY,
    "oe": ComponentType.OPERATING_ENVIRONMENT,
    "operatingenvironment": ComponentType.OPERATING_ENVIRONMENT,
}


class AdvisorySource(Enum):
    NVD = "nvd"
    GITHUB = "github"
    ALPINE = "alpine"
    DEBIAN = "debian"
    UBUNTU = "ubuntu"
    REDHAT = "redhat"
    CHAINGUARD = "chainguard"
    WOLFI = "wolfi"
    ANCHORE = "anchore"
    CUSTOM = "custom"

    @classmethod
    def from_record_source(cls, record_source: Optional[str]) -> "AdvisorySource":
        """
        Derive provenance from a metadata record source such as
        'nvdv2:nvdv2:cves', 'github:github:npm' or 'vulnerabilities:debian:11'.
        """
        source = (record_source or "").lower()
        if source.startswith("nvd"):
            return cls.NVD
        if source.startswith("github:"):
            return cls.GITHUB
        parts = source.split(":")
        if len(parts) > 1 and parts[0] == "vulnerabilities":
            distro = parts[1]
            if distro == "rhel":
                return cls.REDHAT
            for candidate in (cls.ALPINE, cls.DEBIAN, cls.UBUNTU, cls.CHAINGUARD, cls.WOLFI):
                if candidate.value == distro:
                    return candidate
        return cls.ANCHORE


@dataclass(frozen=True)
class Vulnerability:
    """Domain entity representing one imported vulnerability record"""
    identifier: str
    namespace: str
    package_name: str
    version_constraint: str = ""
    version_format: VersionFormat = VersionFormat.UNSTRUCTURED
    package_qualifiers: Tuple[str, ...] = ()
    cpes: Tuple[str, ...] = ()
    related_vulnerabilities: Tuple[str, ...] = ()
    fixed_in_versions: Tuple[str, ...] = ()
    fix_state: FixState = FixState.UNKNOWN
    advisories: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.identifier, self.namespace)


@dataclass(frozen=True)
class VulnerabilityMetadata:
    """Severity and enrichment data for a vulnerability identifier"""
    identifier: str
    namespace: str
    data_source: str = ""
    record_source: str = ""
    severity: Severity = Severity.UNKNOWN
    description: str = ""
    urls: Tuple[str, ...] = ()
    cvss_vector: Optional[str] = None
    cvss_score: Optional[float] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.identifier, self.namespace)


@dataclass(frozen=True)
class DependencyKey:
    """Natural key of a dependency, independent of any snapshot"""
    manager: str
    namespace: str
    name: str
    version: str

    def __str__(self):
        prefix = f"{self.namespace}/" if self.namespace else ""
        return f"{self.manager}:{prefix}{self.name}@{self.version}"


@dataclass
class SbomComponent:
    """One observed (component, version) tuple handed over by the SBOM producer"""
    ecosystem: str
    name: str
    version: Optional[str] = None
    namespace: Optional[str] = None
    component_type: Optional[str] = None

    @classmethod
    def from_purl(cls, purl: str) -> "SbomComponent":
        """
        Build from a package URL, e.g. pkg:npm/%40babel/core@7.0.0
        Qualifiers and subpaths are ignored.
        """
        if not purl or not purl.startswith("pkg:"):
            raise ValueError(f"Not a package URL: {purl!r}")
        body = purl[4:].split("#", 1)[0].split("?", 1)[0]
        ecosystem, _, path = body.partition("/")
        if not ecosystem or not path:
            raise ValueError(f"Package URL without type or name: {purl!r}")
        version = None
        if "@" in path:
            path, version = path.rsplit("@", 1)
            version = unquote(version)
        segments = [unquote(s) for s in path.split("/") if s]
        name = segments[-1]
        namespace = "/".join(segments[:-1]) or None
        return cls(ecosystem=ecosystem.lower(), name=name, version=version, namespace=namespace)


@dataclass
class Component:
    id: int
    component_type: ComponentType
    manager: str
    namespace: str
    name: str


@dataclass
class Project:
    id: int
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Snapshot:
    """Point-in-time SBOM container"""
    id: int
    project_id: int
    state: SnapshotState
    created_at: datetime
    error: Optional[str] = None
    raw_sbom: Optional[str] = None


@dataclass
class Dependency:
    id: int
    snapshot_id: int
    component_type: ComponentType
    key: DependencyKey


@dataclass
class SnapshotDiff:
    added: set = field(default_factory=set)
    removed: set = field(default_factory=set)
    unchanged: set = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class Advisory:
    id: int
    name: str
    source: AdvisorySource
    severity: Severity
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class Alert:
    """Durable flag: this dependency in this snapshot matches this advisory"""
    id: int
    name: str
    state: AlertState
    snapshot_id: int
    dependency_id: int
    advisory_id: int
    created_at: datetime
    updated_at: datetime


@dataclass
class AlertSummary:
    """Aggregated alert counts for one snapshot (or across projects)"""
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    unknown: int = 0
    new: int = 0
    active: int = 0
    resolved: int = 0
    dependencies_scanned: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.unknown

    def count(self, severity: Severity) -> int:
        return getattr(self, severity.value)

    def merge(self, other: "AlertSummary") -> None:
        for name in ("critical", "high", "medium", "low", "unknown",
                     "new", "active", "resolved", "dependencies_scanned"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.failures.extend(other.failures)
