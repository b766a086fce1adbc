import asyncio
import logging
import threading
from typing import Dict, List, Optional, Tuple

from sbomwatch.application.config import Settings
from sbomwatch.application.dtos import ImportResult
from sbomwatch.application.service.alert_service import AlertCalculator
from sbomwatch.application.service.import_service import ArchiveImportService
from sbomwatch.core.entities import AlertSummary, Snapshot
from sbomwatch.core.exceptions import StaleSnapshotError
from sbomwatch.core.interface import IFeedSource
from sbomwatch.core.matcher import VersionConstraintMatcher
from sbomwatch.infrastructure.persistence.repositories import SQLAlchemyRepository
from sbomwatch.infrastructure.persistence.vulnerability_store import SQLAlchemyVulnerabilityStore

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """
    Periodically imports the vulnerability feed and recalculates alerts.

    The scheduler owns its timer task and is driven through start()/stop().
    Blocking work (download, decompression, store I/O) runs in worker threads,
    each with its own database session. Every snapshot calculation is a
    separate task:

    - a calculation already in flight for a snapshot is reused, not restarted
    - calculations of one project run one at a time, oldest snapshot first,
      and a snapshot older than one already processed is skipped
    - a slow project never holds up the others
    """

    def __init__(self, session_factory, settings: Settings,
                 feed_source: Optional[IFeedSource] = None,
                 matcher: Optional[VersionConstraintMatcher] = None):
        self.session_factory = session_factory
        self.settings = settings
        self.feed_source = feed_source
        self.matcher = matcher or VersionConstraintMatcher()

        # Consecutive failed feed imports; drives the backoff
        self.failures = 0
        # Consecutive failed calculations; retried on the next tick, no backoff
        self.calculation_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._primed = False
        self._recalculate_pending = False
        self._in_flight: Dict[int, asyncio.Task] = {}
        self._project_locks: Dict[int, asyncio.Lock] = {}
        self._last_processed: Dict[int, Tuple] = {}
        self._cancel_tokens: Dict[int, threading.Event] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        """Refresh interval, doubled for every consecutive failure up to the cap"""
        delay = self.settings.refresh_interval_seconds * (2 ** self.failures)
        return min(delay, self.settings.max_backoff_seconds)

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name="sbomwatch-refresh")
            logger.info(f"Refresh scheduler started (interval {self.settings.refresh_interval_seconds:.0f}s)")
        return self._task

    async def stop(self) -> None:
        """Cancel the timer and any running calculations"""
        for token in self._cancel_tokens.values():
            token.set()
        tasks = list(self._in_flight.values())
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        logger.info("Refresh scheduler stopped")

    async def run_once(self) -> bool:
        """One import and the calculations it triggers, awaited to completion"""
        ok = await self.tick()
        await self.wait_idle()
        return ok

    async def wait_idle(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            await self.tick()
            delay = self.next_delay()
            logger.debug(f"Next refresh in {delay:.0f}s")
            await asyncio.sleep(delay)

    async def tick(self) -> bool:
        """Import the feed; on success recalculate every project's latest snapshot"""
        try:
            result = await asyncio.to_thread(self._import)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception(f"Feed refresh failed ({self.failures} in a row), retrying in {self.next_delay():.0f}s")
            return False

        self.failures = 0
        if result.changed or not self._primed or self._recalculate_pending:
            self._primed = True
            self._recalculate_pending = False
            await self.trigger_all()
        else:
            logger.info("Feed unchanged, alerts left as they are")
        return True

    async def trigger_all(self) -> List[asyncio.Task]:
        try:
            snapshots = await asyncio.to_thread(self._latest_snapshots)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._recalculate_pending = True
            logger.exception("Could not list projects for recalculation")
            return []
        return [self.trigger(snapshot) for snapshot in snapshots]

    async def notify_snapshot_completed(self, snapshot_id: int) -> Optional[asyncio.Task]:
        """External trigger: a snapshot finished ingesting"""
        snapshot = await asyncio.to_thread(self._load_snapshot, snapshot_id)
        if snapshot is None:
            logger.warning(f"Snapshot {snapshot_id} not found, nothing to calculate")
            return None
        return self.trigger(snapshot)

    def trigger(self, snapshot: Snapshot) -> asyncio.Task:
        existing = self._in_flight.get(snapshot.id)
        if existing is not None and not existing.done():
            logger.debug(f"Calculation for snapshot {snapshot.id} already in flight")
            return existing

        task = asyncio.create_task(self._calculate_project(snapshot), name=f"sbomwatch-calc-{snapshot.id}")
        self._in_flight[snapshot.id] = task
        task.add_done_callback(lambda t, sid=snapshot.id: self._forget(sid, t))
        return task

    def _forget(self, snapshot_id: int, task: asyncio.Task) -> None:
        if self._in_flight.get(snapshot_id) is task:
            del self._in_flight[snapshot_id]

    async def _calculate_project(self, snapshot: Snapshot) -> Optional[AlertSummary]:
        lock = self._project_locks.setdefault(snapshot.project_id, asyncio.Lock())
        async with lock:
            order = (snapshot.created_at, snapshot.id)
            last = self._last_processed.get(snapshot.project_id)
            if last is not None and last > order:
                logger.info(f"Skipping snapshot {snapshot.id}: project {snapshot.project_id} "
                            f"already processed a newer snapshot")
                return None

            token = threading.Event()
            self._cancel_tokens[snapshot.id] = token
            try:
                summary = await asyncio.to_thread(self._calculate, snapshot.id, token)
            except asyncio.CancelledError:
                token.set()
                raise
            except StaleSnapshotError as e:
                logger.info(f"Skipping snapshot {snapshot.id}: {e}")
                return None
            except Exception:
                self.calculation_failures += 1
                self._recalculate_pending = True
                logger.exception(f"Alert calculation for snapshot {snapshot.id} failed "
                                 f"({self.calculation_failures} in a row)")
                return None
            finally:
                self._cancel_tokens.pop(snapshot.id, None)

            self.calculation_failures = 0
            self._last_processed[snapshot.project_id] = order
            logger.info(
                f"Project {snapshot.project_id} snapshot {snapshot.id}: {summary.total} open alerts "
                f"(critical {summary.critical}, high {summary.high})"
            )
            return summary

    # Worker thread bodies, one session each

    def _import(self) -> ImportResult:
        session = self.session_factory()
        try:
            service = ArchiveImportService(
                SQLAlchemyVulnerabilityStore(session),
                feed_source=self.feed_source,
                invalid_row_threshold=self.settings.invalid_row_threshold,
                chunk_size=self.settings.import_chunk_size,
                data_dir=self.settings.data_dir,
            )
            return service.import_from_feed(self.settings.feed_source, checksum=self.settings.feed_checksum)
        finally:
            session.close()

    def _calculator(self, session) -> AlertCalculator:
        return AlertCalculator(
            SQLAlchemyRepository(session),
            SQLAlchemyVulnerabilityStore(session),
            matcher=self.matcher,
            incremental=self.settings.incremental,
        )

    def _calculate(self, snapshot_id: int, cancel_token: threading.Event) -> AlertSummary:
        session = self.session_factory()
        try:
            return self._calculator(session).calculate(snapshot_id, cancel_token=cancel_token)
        finally:
            session.close()

    def _latest_snapshots(self) -> List[Snapshot]:
        session = self.session_factory()
        try:
            return self._calculator(session).latest_snapshots()
        finally:
            session.close()

    def _load_snapshot(self, snapshot_id: int) -> Optional[Snapshot]:
        session = self.session_factory()
        try:
            return SQLAlchemyRepository(session).get_snapshot(snapshot_id)
        finally:
            session.close()
