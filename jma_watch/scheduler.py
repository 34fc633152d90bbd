"""
Scheduler module for the JMA warning watcher.

Triggers the watcher entry points:
- run_cycle(region, cities) every few minutes, one job per region
- run_cleanup() once a day
"""

import logging
from dataclasses import asdict
from typing import Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import CLEANUP_HOUR, POLL_INTERVAL_MINUTES
from .watcher import CleanupResult, CycleResult, WarningWatcher

logger = logging.getLogger(__name__)

FAILURE_WARNING_THRESHOLD = 3


class WarningScheduler:
    """
    Manages periodic warning checks.

    Each region has its own job (max_instances=1, coalesce=True), so a slow
    region never delays the others.
    """

    def __init__(
        self,
        watcher: WarningWatcher,
        targets: Dict[str, List[str]],
        poll_interval: int = POLL_INTERVAL_MINUTES,
        cleanup_hour: int = CLEANUP_HOUR
    ):
        self.watcher = watcher
        self.targets = {region: list(cities) for region, cities in targets.items()}
        self.poll_interval = poll_interval
        self.cleanup_hour = cleanup_hour
        self.scheduler = BackgroundScheduler()
        self._is_running = False

        self._last_results: Dict[str, CycleResult] = {}
        self._failures: Dict[str, int] = {}
        self._last_cleanup: Optional[CleanupResult] = None

    def check_region(self, region: str) -> CycleResult:
        """Run one cycle for a configured region and track its health."""
        result = self.watcher.run_cycle(region, self.targets.get(region, []))

        if result.success:
            previous = self._failures.get(region, 0)
            self._failures[region] = 0
            if previous >= FAILURE_WARNING_THRESHOLD:
                logger.info(f"Checks for {region} recovered after {previous} consecutive failures")
        else:
            count = self._failures.get(region, 0) + 1
            self._failures[region] = count
            if count >= FAILURE_WARNING_THRESHOLD:
                logger.warning(f"Checks for {region} have failed {count} consecutive times")

        self._last_results[region] = result
        return result

    def check_all(self) -> List[CycleResult]:
        """Run one cycle for every configured region."""
        logger.info("Starting check of all regions")
        results = [self.check_region(region) for region in self.targets]
        ok = sum(1 for r in results if r.success)
        logger.info(f"Check complete: {ok}/{len(results)} regions OK")
        return results

    def cleanup(self) -> CleanupResult:
        self._last_cleanup = self.watcher.run_cleanup()
        return self._last_cleanup

    def start(self) -> None:
        """Start the scheduler."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        for region in self.targets:
            self.scheduler.add_job(
                self.check_region,
                trigger=IntervalTrigger(minutes=self.poll_interval),
                args=[region],
                id=f"check_{region}",
                name=f"Warning check: {region}",
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self.scheduler.add_job(
            self.cleanup,
            trigger=CronTrigger(hour=self.cleanup_hour, minute=0),
            id="cleanup_job",
            name="Daily cleanup",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True

        logger.info(f"Scheduler started: {len(self.targets)} regions every {self.poll_interval}min, "
                    f"cleanup daily at {self.cleanup_hour:02d}:00")

    def stop(self) -> None:
        """Stop the scheduler, letting running cycles commit."""
        if not self._is_running:
            return
        self.watcher.shutdown()
        self.scheduler.shutdown(wait=True)
        self._is_running = False
        logger.info("Scheduler stopped")

    def get_last_results(self) -> List[CycleResult]:
        """Get the last cycle result of each region."""
        return list(self._last_results.values())

    def get_failure_counts(self) -> Dict[str, int]:
        return dict(self._failures)

    def get_last_cleanup(self) -> Optional[CleanupResult]:
        return self._last_cleanup

    def get_scheduler_status(self) -> dict:
        """Get scheduler status information."""
        jobs = {}
        for region in self.targets:
            job = self.scheduler.get_job(f"check_{region}")
            jobs[region] = job.next_run_time.isoformat() if job and job.next_run_time else None
        cleanup_job = self.scheduler.get_job("cleanup_job")

        return {
            "is_running": self._is_running,
            "poll_interval_minutes": self.poll_interval,
            "next_checks": jobs,
            "next_cleanup": cleanup_job.next_run_time.isoformat() if cleanup_job and cleanup_job.next_run_time else None,
            "last_cleanup": asdict(self._last_cleanup) if self._last_cleanup else None,
        }

    @property
    def is_running(self) -> bool:
        return self._is_running
