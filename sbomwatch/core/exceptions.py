class SbomWatchException(Exception):
    def __init__(self, message: str, error_code: str = "SBW-GENERIC"):
        self.message = message
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self):
        return f"[{self.error_code}] {self.message}"


class ArchiveImportError(SbomWatchException):
    """Base for failures that abort a feed import"""


class CorruptArchiveError(ArchiveImportError):
    def __init__(self, reason: str, member: str = None):
        self.member = member
        msg = f"Archive is not readable: {reason}"
        if member:
            msg += f" (member: {member})"
        super().__init__(msg, error_code="SBW-IMPORT-001")


class SchemaMismatchError(ArchiveImportError):
    def __init__(self, table: str, missing_columns=None):
        self.table = table
        self.missing_columns = sorted(missing_columns or [])
        if self.missing_columns:
            msg = f"Table '{table}' is missing columns: {', '.join(self.missing_columns)}"
        else:
            msg = f"Required table '{table}' not found in archive"
        super().__init__(msg, error_code="SBW-IMPORT-002")


class TooManyInvalidRowsError(ArchiveImportError):
    def __init__(self, invalid: int, total: int, threshold: float):
        self.invalid = invalid
        self.total = total
        self.threshold = threshold
        ratio = invalid / total if total else 1.0
        msg = f"{invalid} of {total} rows could not be decoded ({ratio:.1%} > {threshold:.1%})"
        super().__init__(msg, error_code="SBW-IMPORT-003")


class StoreUnavailableError(SbomWatchException):
    def __init__(self, phase: str, details: str):
        self.phase = phase
        super().__init__(f"Store unavailable during {phase}: {details}", error_code="SBW-STORE-001")


class IngestError(SbomWatchException):
    """Base for snapshot ingestion failures"""


class ComponentResolutionError(IngestError):
    def __init__(self, reason: str, component: str = None):
        self.component = component
        msg = f"Component could not be resolved: {reason}"
        if component:
            msg += f" ({component})"
        super().__init__(msg, error_code="SBW-INGEST-001")


class SnapshotStateError(IngestError):
    def __init__(self, snapshot_id: int, state: str, expected: str = "created"):
        self.snapshot_id = snapshot_id
        self.state = state
        self.expected = expected
        super().__init__(
            f"Snapshot {snapshot_id} is '{state}', expected '{expected}'",
            error_code="SBW-INGEST-002",
        )


class StaleSnapshotError(SbomWatchException):
    def __init__(self, snapshot_id: int, latest_id: int):
        self.snapshot_id = snapshot_id
        self.latest_id = latest_id
        super().__init__(
            f"Snapshot {snapshot_id} is older than already processed snapshot {latest_id}",
            error_code="SBW-CALC-001",
        )


class FeedFetchError(ArchiveImportError):
    def __init__(self, url: str, details: str):
        self.url = url
        super().__init__(f"Could not fetch feed from {url}: {details}", error_code="SBW-FEED-001")
