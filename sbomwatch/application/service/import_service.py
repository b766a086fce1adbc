import logging
import os
import tempfile
from collections import defaultdict
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from sbomwatch.application.dtos import ImportResult
from sbomwatch.core.exceptions import SchemaMismatchError, StoreUnavailableError, TooManyInvalidRowsError
from sbomwatch.core.interface import IFeedSource, IVulnerabilityStore
from sbomwatch.infrastructure.archive.reader import ArchiveSource, FeedArchive, open_feed_archive
from sbomwatch.infrastructure.archive.schema import (
    BUILD_TABLE, METADATA_TABLE, REQUIRED_COLUMNS, VULNERABILITY_TABLE,
    RowDecodeError, decode_metadata, decode_vulnerability,
)

logger = logging.getLogger(__name__)


class ArchiveImportService:
    """Use Case: load a vulnerability feed archive into the vulnerability store"""

    def __init__(
        self,
        store: IVulnerabilityStore,
        feed_source: Optional[IFeedSource] = None,
        invalid_row_threshold: float = 0.05,
        chunk_size: int = 5000,
        data_dir: Optional[str] = None,
    ):
        self.store = store
        self.feed_source = feed_source
        self.invalid_row_threshold = invalid_row_threshold
        self.chunk_size = chunk_size
        self.data_dir = data_dir

    def import_from_feed(self, location: str, checksum: Optional[str] = None) -> ImportResult:
        """
        Import from a listing URL (newest build is picked), an archive URL
        or a local archive path.
        """
        if not location.startswith(("http://", "https://")):
            return self.import_archive(location, checksum=checksum)

        if self.feed_source is None:
            raise ValueError("A feed source is required to import from a URL")

        built = None
        url = location
        if location.endswith(".json"):
            build = self.feed_source.latest_build(location)
            url, checksum, built = build["url"], build.get("checksum"), build.get("built")
            if checksum and checksum == self._last_checksum():
                logger.info(f"Feed build {built} already imported, skipping download")
                return ImportResult(checksum=checksum, build_timestamp=built, skipped=True)

        work_dir = tempfile.mkdtemp(prefix="sbomwatch-download-", dir=self.data_dir)
        path = os.path.join(work_dir, os.path.basename(url.split("?", 1)[0]) or "feed.tar.gz")
        try:
            self.feed_source.download(url, path, checksum=checksum)
            result = self.import_archive(path, checksum=checksum)
        finally:
            if os.path.exists(path):
                os.remove(path)
            os.rmdir(work_dir)
        if built and not result.build_timestamp:
            result.build_timestamp = built
        return result

    def import_archive(self, source: ArchiveSource, checksum: Optional[str] = None) -> ImportResult:
        """
        Decode every recognized table, then upsert namespace by namespace.
        Nothing is written when the archive is rejected.
        """
        result = ImportResult(checksum=checksum)

        with open_feed_archive(source, work_dir=self.data_dir) as archive:
            result.tables = archive.table_names
            self._check_schema(archive)
            result.build_timestamp, result.schema_version = self._build_info(archive)

            vulnerabilities, total_v, invalid_v, dup_v = self._decode_table(
                archive, VULNERABILITY_TABLE, decode_vulnerability)
            metadata, total_m, invalid_m, dup_m = self._decode_table(
                archive, METADATA_TABLE, decode_metadata)

        result.rows_read = total_v + total_m
        result.invalid_rows = invalid_v + invalid_m
        result.duplicates = dup_v + dup_m

        if result.rows_read and result.invalid_rows / result.rows_read > self.invalid_row_threshold:
            raise TooManyInvalidRowsError(result.invalid_rows, result.rows_read, self.invalid_row_threshold)

        self._apply(vulnerabilities, metadata, result)
        logger.info(
            f"Imported feed: {result.rows_read} rows, {result.invalid_rows} invalid, "
            f"vulnerabilities {result.vulnerabilities}, metadata {result.metadata}"
        )
        return result

    def _check_schema(self, archive: FeedArchive) -> None:
        for table, required in REQUIRED_COLUMNS.items():
            if not archive.has_table(table):
                raise SchemaMismatchError(table)
            missing = required - set(archive.columns(table))
            if missing:
                raise SchemaMismatchError(table, missing)

        for table in archive.table_names:
            if table not in REQUIRED_COLUMNS and table != BUILD_TABLE:
                logger.debug(f"Ignoring unrecognized table '{table}'")

    def _build_info(self, archive: FeedArchive) -> Tuple[Optional[str], Optional[str]]:
        if not archive.has_table(BUILD_TABLE):
            return None, None
        for row in archive.iter_rows(BUILD_TABLE, self.chunk_size):
            built = row.get("build_timestamp")
            schema = row.get("schema_version")
            return (str(built) if built is not None else None,
                    str(schema) if schema is not None else None)
        return None, None

    def _decode_table(self, archive: FeedArchive, table: str, decoder: Callable):
        """Returns ({namespace: {identifier: record}}, rows, invalid, duplicates)"""
        records: Dict[str, Dict] = defaultdict(dict)
        total = invalid = duplicates = 0

        for row in archive.iter_rows(table, self.chunk_size):
            total += 1
            try:
                record = decoder(row)
            except RowDecodeError as e:
                invalid += 1
                logger.warning(f"Skipping {table} row {total} ({row.get('id')}): {e}")
                continue
            # Last row wins for a repeated identifier + namespace
            if record.identifier in records[record.namespace]:
                duplicates += 1
            records[record.namespace][record.identifier] = record

        logger.info(f"Decoded {total} rows from '{table}' ({invalid} invalid, {duplicates} duplicates)")
        return records, total, invalid, duplicates

    def _apply(self, vulnerabilities: Dict[str, Dict], metadata: Dict[str, Dict],
               result: ImportResult) -> None:
        namespaces = sorted(set(vulnerabilities) | set(metadata))
        result.namespaces = len(namespaces)
        try:
            for namespace in namespaces:
                # One transaction per namespace so readers never see half a namespace
                v_counts = self.store.upsert_vulnerabilities(
                    namespace, vulnerabilities.get(namespace, {}).values())
                m_counts = self.store.upsert_metadata(
                    namespace, metadata.get(namespace, {}).values())
                self.store.commit()
                for key in v_counts:
                    result.vulnerabilities[key] += v_counts[key]
                for key in m_counts:
                    result.metadata[key] += m_counts[key]

            new_checksum = result.checksum and result.checksum != self.store.last_imported_checksum()
            if result.changed or new_checksum:
                self.store.record_import(result.checksum, result.build_timestamp, result.schema_version)
                self.store.commit()
        except SQLAlchemyError as e:
            self.store.rollback()
            raise StoreUnavailableError("import", str(e)) from e

    def _last_checksum(self) -> Optional[str]:
        try:
            return self.store.last_imported_checksum()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("import", str(e)) from e
