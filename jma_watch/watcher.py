"""
Cycle orchestration for the JMA warning watcher.

Exposes the two entry points the scheduler calls:
- run_cycle(region, cities): fetch, parse, reconcile and commit one region
- run_cleanup(): purge soft-deleted rows and old archive entries

All writes of one cycle (cursor, archive, city state) share one transaction.
Notifications go out only after that transaction has committed.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

from .client import ArchiveWrite, CycleFetch, CycleOutcome, FeedClient, ReportParseFailure
from .database import Database
from .engine import ReconcileResult, WarningStateEngine
from .errors import FetchError, ParseError, PersistenceError
from .notifier import LoggingNotifier, Notifier

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


@dataclass
class CycleResult:
    """Result of one region cycle."""
    region: str
    outcome: str
    success: bool
    notifications: int
    mutations: int
    error_message: Optional[str]
    report_file: Optional[str]
    fetch_time: str
    duration_ms: int


@dataclass
class CleanupResult:
    """Result of a cleanup run."""
    success: bool
    warnings_purged: int
    reports_purged: int
    cutoff: str
    error_message: Optional[str] = None


class WarningWatcher:
    """
    Runs reconciliation cycles, one worker per region.

    A trigger for a region whose previous cycle is still running is skipped,
    not queued. Failures are returned as CycleResult, never raised, so one
    region cannot affect another.
    """

    def __init__(
        self,
        database: Database,
        client: FeedClient,
        engine: Optional[WarningStateEngine] = None,
        notifier: Optional[Notifier] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS
    ):
        self.database = database
        self.client = client
        self.engine = engine or WarningStateEngine()
        self.notifier = notifier or LoggingNotifier()
        self.retention_days = retention_days
        self._region_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._closing = False

    def _region_lock(self, region: str) -> threading.Lock:
        with self._locks_guard:
            return self._region_locks.setdefault(region, threading.Lock())

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self, region: str, cities: Iterable[str]) -> CycleResult:
        """Run one reconciliation cycle for a region and its whitelisted cities."""
        start = datetime.now(timezone.utc)

        if self._closing:
            logger.info(f"Shutting down; cycle for {region} not started")
            return self._result(region, CycleOutcome.SKIPPED, start)

        lock = self._region_lock(region)
        if not lock.acquire(blocking=False):
            logger.warning(f"Cycle for {region} still in flight; skipping trigger")
            return self._result(region, CycleOutcome.SKIPPED, start)

        try:
            return self._run_locked(region, list(cities), start)
        finally:
            lock.release()

    def _run_locked(self, region: str, cities: list, start: datetime) -> CycleResult:
        logger.info(f"Starting cycle for {region} ({len(cities)} cities)")

        try:
            fetch = self.client.run_cycle(region)
        except ReportParseFailure as e:
            logger.error(f"Malformed report for {region}: {e}")
            self._archive_failed(e.archive, str(e))
            return self._result(region, CycleOutcome.FAILED, start, error=e, report_file=e.archive.filename)
        except (FetchError, ParseError, PersistenceError) as e:
            logger.error(f"Cycle for {region} failed: {e}")
            return self._result(region, CycleOutcome.FAILED, start, error=e)

        if fetch.outcome is CycleOutcome.UNCHANGED:
            logger.info(f"Feed index unchanged for {region}")
            return self._result(region, fetch.outcome, start)

        try:
            reconciled = self._commit(region, cities, fetch)
        except (ParseError, PersistenceError) as e:
            logger.error(f"Cycle for {region} rolled back: {e}")
            return self._result(region, CycleOutcome.FAILED, start, error=e)

        report_file = fetch.entry.filename if fetch.entry else None
        sent = 0
        mutations = 0
        if reconciled is not None:
            mutations = reconciled.mutations
            pending = [replace(n, report_file=report_file) for n in reconciled.notifications]
            if pending:
                sent = self.notifier.send_all(pending)
                logger.info(f"Emitted {sent}/{len(pending)} notifications for {region}")

        result = self._result(region, fetch.outcome, start, report_file=report_file)
        result.notifications = sent
        result.mutations = mutations
        logger.info(
            f"Cycle for {region} finished: {fetch.outcome.value}, "
            f"{mutations} state writes in {result.duration_ms}ms"
        )
        return result

    def _commit(self, region: str, cities: list, fetch: CycleFetch) -> Optional[ReconcileResult]:
        """Apply cursor, archive and state writes as one atomic unit."""
        reconciled = None
        with self.database.transaction():
            if fetch.cursor:
                self.database.set_cursor(fetch.cursor.endpoint, fetch.cursor.token, fetch.cursor.fetched_at)

            if fetch.outcome is CycleOutcome.FETCHED:
                self._write_archive(fetch.archive)
                reconciled = self.engine.reconcile(
                    self.database,
                    region,
                    cities,
                    fetch.observations,
                    report_file=fetch.entry.filename,
                )
        if fetch.cursor:
            logger.info(f"Cursor advanced for {region}: {fetch.cursor.token}")
        return reconciled

    def _write_archive(self, archive: ArchiveWrite) -> None:
        if archive.existing_id is not None:
            self.database.touch_archive(archive.existing_id, archive.retrieved_at)
            logger.debug(f"Report {archive.filename} unchanged; freshness refreshed")
            return

        self.database.insert_archive(
            region=archive.region,
            filename=archive.filename,
            report_url=archive.report_url,
            content=archive.content,
            content_hash=archive.content_hash,
            retrieved_at=archive.retrieved_at,
        )
        logger.info(f"Archived report {archive.filename} for {archive.region}")

    def _archive_failed(self, archive: ArchiveWrite, error: str) -> None:
        """Keep the unparseable report for audit; state stays untouched."""
        if archive.existing_id is not None:
            return
        try:
            with self.database.transaction():
                self.database.insert_archive(
                    region=archive.region,
                    filename=archive.filename,
                    report_url=archive.report_url,
                    content=archive.content,
                    content_hash=archive.content_hash,
                    retrieved_at=archive.retrieved_at,
                    parse_ok=False,
                    error=error,
                )
        except PersistenceError as e:
            logger.error(f"Failed to archive malformed report {archive.filename}: {e}")

    def _result(
        self,
        region: str,
        outcome: CycleOutcome,
        start: datetime,
        error: Optional[Exception] = None,
        report_file: Optional[str] = None
    ) -> CycleResult:
        now = datetime.now(timezone.utc)
        return CycleResult(
            region=region,
            outcome=outcome.value,
            success=error is None,
            notifications=0,
            mutations=0,
            error_message=str(error) if error else None,
            report_file=report_file,
            fetch_time=start.isoformat(),
            duration_ms=int((now - start).total_seconds() * 1000),
        )

    # =========================================================================
    # Cleanup
    # =========================================================================

    def run_cleanup(self, retention_days: Optional[int] = None) -> CleanupResult:
        """Purge soft-deleted rows and archive entries past the retention window."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        logger.info(f"Starting cleanup (retention {days} days)")
        try:
            with self.database.transaction():
                warnings_purged = self.database.purge_deleted_warnings(cutoff)
                reports_purged = self.database.purge_archive(cutoff)
        except PersistenceError as e:
            logger.error(f"Cleanup failed: {e}")
            return CleanupResult(False, 0, 0, cutoff, str(e))

        logger.info(f"Cleanup complete: {warnings_purged} warning rows, {reports_purged} reports purged")
        return CleanupResult(True, warnings_purged, reports_purged, cutoff)

    def shutdown(self) -> None:
        """Refuse new cycles; cycles in flight finish their commit."""
        self._closing = True
        with self._locks_guard:
            locks = list(self._region_locks.items())
        for region, lock in locks:
            with lock:
                logger.debug(f"Cycle for {region} drained")
