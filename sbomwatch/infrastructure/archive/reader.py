import io
import logging
import lzma
import os
import shutil
import tarfile
import tempfile
import zlib
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Union

import pandas as pd
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from sbomwatch.core.exceptions import CorruptArchiveError

logger = logging.getLogger(__name__)

ArchiveSource = Union[str, os.PathLike, bytes, io.IOBase]

_DATABASE_SUFFIXES = (".db", ".sqlite", ".sqlite3")
_CSV_SUFFIX = ".csv"
_ARCHIVE_ERRORS = (tarfile.TarError, EOFError, zlib.error, lzma.LZMAError, OSError)


class FeedArchive:
    """
    Unpacked feed archive exposing its tables.

    Two inner layouts are understood: a SQLite database member whose tables
    are the exports (vulnerability.db in the upstream feed), and one CSV
    member per table (<table>.csv). Both may appear; the database wins on
    a table name clash.
    """

    def __init__(self, work_dir: str, database_path: Optional[str], csv_paths: Dict[str, str]):
        self.work_dir = work_dir
        self.database_path = database_path
        self.csv_paths = csv_paths
        self._engine = None
        self._db_tables: Dict[str, List[str]] = {}

        if database_path:
            self._engine = create_engine(f"sqlite:///{database_path}")
            try:
                inspector = inspect(self._engine)
                for table in inspector.get_table_names():
                    self._db_tables[table] = [c["name"] for c in inspector.get_columns(table)]
            except SQLAlchemyError as e:
                self.close()
                raise CorruptArchiveError(str(e), member=os.path.basename(database_path)) from e

    @property
    def table_names(self) -> List[str]:
        return sorted(set(self._db_tables) | set(self.csv_paths))

    def has_table(self, table: str) -> bool:
        return table in self._db_tables or table in self.csv_paths

    def columns(self, table: str) -> List[str]:
        if table in self._db_tables:
            return list(self._db_tables[table])
        try:
            return list(pd.read_csv(self.csv_paths[table], nrows=0).columns)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise CorruptArchiveError(str(e), member=f"{table}.csv") from e

    def iter_chunks(self, table: str, chunk_size: int = 5000) -> Iterator[pd.DataFrame]:
        """Stream a table as DataFrames with missing values normalized to None"""
        if table in self._db_tables:
            chunks = self._sql_chunks(table, chunk_size)
        else:
            chunks = self._csv_chunks(table, chunk_size)
        for chunk in chunks:
            yield chunk.astype(object).where(chunk.notna(), None)

    def iter_rows(self, table: str, chunk_size: int = 5000) -> Iterator[Dict]:
        for chunk in self.iter_chunks(table, chunk_size):
            for row in chunk.to_dict(orient="records"):
                yield row

    def _sql_chunks(self, table: str, chunk_size: int) -> Iterator[pd.DataFrame]:
        try:
            with self._engine.connect() as conn:
                query = text(f'SELECT * FROM "{table}"')
                for chunk in pd.read_sql_query(query, conn, chunksize=chunk_size):
                    yield chunk
        except SQLAlchemyError as e:
            raise CorruptArchiveError(str(e), member=f"table {table}") from e

    def _csv_chunks(self, table: str, chunk_size: int) -> Iterator[pd.DataFrame]:
        try:
            for chunk in pd.read_csv(self.csv_paths[table], chunksize=chunk_size,
                                     dtype=str, keep_default_na=False):
                yield chunk
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise CorruptArchiveError(str(e), member=f"{table}.csv") from e

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


@contextmanager
def open_feed_archive(source: ArchiveSource, work_dir: Optional[str] = None) -> Iterator[FeedArchive]:
    """
    Unpack a compressed tar archive (gz, bz2 or xz) into a scratch directory
    and yield a FeedArchive over its tables. The scratch directory is removed
    on exit.
    """
    scratch = tempfile.mkdtemp(prefix="sbomwatch-feed-", dir=work_dir)
    archive = None
    try:
        database_path, csv_paths = _unpack(source, scratch)
        if database_path is None and not csv_paths:
            logger.warning("Archive contains no database or CSV members")
        archive = FeedArchive(scratch, database_path, csv_paths)
        logger.info(f"Opened feed archive with tables: {', '.join(archive.table_names) or '-'}")
        yield archive
    finally:
        if archive is not None:
            archive.close()
        shutil.rmtree(scratch, ignore_errors=True)


def _open_tar(source: ArchiveSource) -> tarfile.TarFile:
    if isinstance(source, (bytes, bytearray)):
        return tarfile.open(fileobj=io.BytesIO(source), mode="r:*")
    if isinstance(source, (str, os.PathLike)):
        return tarfile.open(name=os.fspath(source), mode="r:*")
    return tarfile.open(fileobj=source, mode="r:*")


def _unpack(source: ArchiveSource, scratch: str):
    database_path = None
    csv_paths: Dict[str, str] = {}
    try:
        with _open_tar(source) as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                base = os.path.basename(member.name)
                lowered = base.lower()
                if lowered.endswith(_DATABASE_SUFFIXES):
                    if database_path is not None:
                        logger.warning(f"Ignoring additional database member {member.name}")
                        continue
                    database_path = _copy_member(tar, member, os.path.join(scratch, "feed.db"))
                elif lowered.endswith(_CSV_SUFFIX):
                    table = base[: -len(_CSV_SUFFIX)]
                    csv_paths[table] = _copy_member(tar, member, os.path.join(scratch, f"{len(csv_paths)}.csv"))
                else:
                    logger.debug(f"Skipping archive member {member.name}")
    except FileNotFoundError:
        raise
    except _ARCHIVE_ERRORS as e:
        raise CorruptArchiveError(str(e) or type(e).__name__) from e
    return database_path, csv_paths


def _copy_member(tar: tarfile.TarFile, member: tarfile.TarInfo, destination: str) -> str:
    # Members are copied by content only so archive paths never touch the filesystem
    extracted = tar.extractfile(member)
    if extracted is None:
        raise CorruptArchiveError("member has no content", member=member.name)
    with extracted, open(destination, "wb") as out:
        shutil.copyfileobj(extracted, out)
    return destination
