"""
Scraping Scheduler.

A single cooperative loop that, while running, asks the Source Manager
which sources are due and submits one job per due source. Ticks never
overlap. The same loop runs the periodic health check and queue cleanup.

Stopping only halts enqueuing; jobs already submitted run to completion.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from src.ingestion.errors import BrokerUnavailable, ScrapingError, SourceNotFoundError
from src.ingestion.job_queue import JobState
from src.ingestion.source_manager import SourceManager
from src.ingestion.worker import EventScraperWorker
from src.schemas.scraping import EventSource, JobPriority

logger = logging.getLogger(__name__)

HIGH_PRIORITY_MAX_FREQUENCY_HOURS = 6
LOW_PRIORITY_MIN_ERRORS = 3

HEALTHY_MAX_WAITING = 100
HEALTHY_MAX_FAILED = 10

COMPLETED_GRACE_SECONDS = 24 * 60 * 60
FAILED_GRACE_SECONDS = 7 * 24 * 60 * 60

SCHEDULES = ("scraping", "health-check", "cleanup")


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def calculate_source_priority(source: EventSource) -> int:
    """
    Queue priority for a source.

    High for error-free sources scraped at least every 6 hours, low for
    sources with more than 3 errors, normal otherwise.
    """
    frequent = source.scrape_frequency_hours <= HIGH_PRIORITY_MAX_FREQUENCY_HOURS
    if source.error_count == 0 and frequent:
        return JobPriority.HIGH
    if source.error_count > LOW_PRIORITY_MIN_ERRORS:
        return JobPriority.LOW
    return JobPriority.NORMAL


class ScrapingScheduler:
    """
    Periodic enqueuer of due sources.

    Example:
        >>> scheduler = ScrapingScheduler(manager, worker, tick_interval_seconds=900)
        >>> await scheduler.start()
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        source_manager: SourceManager,
        worker: EventScraperWorker,
        tick_interval_seconds: float = 900.0,
        max_queue_size: int = 1000,
        cleanup_interval_hours: float = 24.0,
        health_check_interval_seconds: float = 3600.0,
    ):
        """
        Initialize the scheduler.

        Args:
            source_manager: Registry queried for due sources
            worker: Worker whose queue receives the jobs
            tick_interval_seconds: Pause between scheduling ticks
            max_queue_size: Skip a tick when this many jobs are pending
            cleanup_interval_hours: How often old terminal jobs are purged
            health_check_interval_seconds: How often queue health is checked
        """
        self.source_manager = source_manager
        self.worker = worker
        self.tick_interval_seconds = tick_interval_seconds
        self.max_queue_size = max_queue_size
        self.cleanup_interval = timedelta(hours=cleanup_interval_hours)
        self.health_check_interval = timedelta(seconds=health_check_interval_seconds)

        self._state = SchedulerState.STOPPED
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()

        self._next_tick_at: datetime | None = None
        self._last_run_at: datetime | None = None
        self._last_tick_summary: dict[str, Any] | None = None
        self._last_cleanup_at: datetime | None = None
        self._last_health_check_at: datetime | None = None
        self._last_health: dict[str, Any] | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        if self.is_running:
            logger.info("Scheduler already running")
            return
        logger.info("Starting scraping scheduler...")
        self._state = SchedulerState.RUNNING
        self._stop_event = asyncio.Event()
        self._next_tick_at = datetime.now(UTC)
        self._task = asyncio.create_task(self._run_loop(), name="scraping-scheduler")

    async def stop(self) -> None:
        """Stop ticking. A tick in progress finishes first."""
        if not self.is_running:
            return
        logger.info("Stopping scraping scheduler...")
        self._state = SchedulerState.STOPPED
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._next_tick_at = None
        logger.info("Scraping scheduler stopped")

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    async def _run_loop(self) -> None:
        while self.is_running:
            try:
                await self.run_scheduled_scraping()
                now = datetime.now(UTC)
                if self._is_due(self._last_health_check_at, self.health_check_interval, now):
                    await self.run_health_check()
                if self._is_due(self._last_cleanup_at, self.cleanup_interval, now):
                    await self.run_cleanup()
            except Exception:
                logger.error("Error in scheduler loop", exc_info=True)

            if not self.is_running:
                break
            self._next_tick_at = datetime.now(UTC) + timedelta(seconds=self.tick_interval_seconds)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval_seconds)
            except TimeoutError:
                pass

    @staticmethod
    def _is_due(last: datetime | None, interval: timedelta, now: datetime) -> bool:
        return last is None or now - last >= interval

    # ========================================================================
    # TICK
    # ========================================================================

    async def run_scheduled_scraping(self) -> dict[str, Any]:
        """
        Run one scheduling tick.

        Returns:
            Summary with sources_due, jobs_added, jobs_skipped and queue_full
        """
        summary: dict[str, Any] = {
            "sources_due": 0,
            "jobs_added": 0,
            "jobs_skipped": 0,
            "queue_full": False,
        }
        if self._tick_lock.locked():
            logger.info("Scheduled scraping already running, skipping...")
            return summary

        async with self._tick_lock:
            # pick up sources created or changed by other processes
            await self.source_manager.refresh()
            due = self.source_manager.get_sources_due_for_scraping()
            summary["sources_due"] = len(due)
            self._last_run_at = datetime.now(UTC)
            self._last_tick_summary = summary

            if not due:
                logger.info("No sources due for scraping")
                return summary

            try:
                stats = await self.worker.get_queue_stats()
            except BrokerUnavailable as e:
                logger.warning(f"Cannot read queue stats, skipping tick: {e}")
                return summary

            if stats.pending >= self.max_queue_size:
                logger.warning(f"Queue is full ({stats.pending} jobs), skipping scheduled scraping")
                summary["queue_full"] = True
                return summary

            logger.info(f"Found {len(due)} sources due for scraping")
            for source in due:
                try:
                    job_id = await self.worker.add_scrape_source_job(
                        source.id, source.name, priority=calculate_source_priority(source)
                    )
                except BrokerUnavailable as e:
                    logger.warning(f"Queue unavailable, stopping tick early: {e}")
                    break
                if job_id is None:
                    summary["jobs_skipped"] += 1
                else:
                    summary["jobs_added"] += 1

            logger.info(
                f"Added {summary['jobs_added']} scraping jobs, "
                f"{summary['jobs_skipped']} sources already in flight"
            )
            return summary

    async def schedule_source_scraping(
        self, source_id: str, delay_minutes: float = 0
    ) -> str | None:
        """
        Submit a one-off job for a source, optionally delayed.

        Raises:
            SourceNotFoundError: If the source is unknown
        """
        source = await self.source_manager.load_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        job_id = await self.worker.add_scrape_source_job(
            source.id,
            source.name,
            priority=JobPriority.NORMAL,
            delay_seconds=delay_minutes * 60,
        )
        logger.info(f"Scheduled scraping for {source.name} with {delay_minutes} minute delay")
        return job_id

    # ========================================================================
    # MAINTENANCE
    # ========================================================================

    async def run_health_check(self) -> dict[str, Any]:
        """Healthy when fewer than 100 jobs wait and fewer than 10 failed."""
        self._last_health_check_at = datetime.now(UTC)
        try:
            stats = await self.worker.get_queue_stats()
            metrics = await self.worker.coordinator.get_metrics()
        except ScrapingError as e:
            logger.warning(f"Health check failed: {e}")
            self._last_health = {
                "healthy": False,
                "error": str(e),
                "timestamp": self._last_health_check_at.isoformat(),
            }
            return self._last_health

        healthy = stats.waiting < HEALTHY_MAX_WAITING and stats.failed < HEALTHY_MAX_FAILED
        self._last_health = {
            "healthy": healthy,
            "queue": stats.model_dump(),
            "metrics": metrics.model_dump(mode="json"),
            "timestamp": self._last_health_check_at.isoformat(),
        }
        if healthy:
            logger.info("Health check passed")
        else:
            logger.warning(f"Health check failed: {stats.model_dump()}")
        return self._last_health

    async def run_cleanup(self) -> dict[str, int]:
        """Purge completed jobs older than 24h and failed jobs older than 7 days."""
        self._last_cleanup_at = datetime.now(UTC)
        try:
            completed = await self.worker.clean_queue(COMPLETED_GRACE_SECONDS, JobState.COMPLETED)
            failed = await self.worker.clean_queue(FAILED_GRACE_SECONDS, JobState.FAILED)
        except BrokerUnavailable as e:
            logger.warning(f"Queue cleanup failed: {e}")
            return {"completed": 0, "failed": 0}

        logger.info(
            f"Cleanup completed: {len(completed)} completed jobs, {len(failed)} failed jobs removed"
        )
        return {"completed": len(completed), "failed": len(failed)}

    def get_metrics(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "state": self._state.value,
            "next_tick_at": self._next_tick_at,
            "active_schedules": len(SCHEDULES) if self.is_running else 0,
            "last_run_at": self._last_run_at,
            "last_tick_summary": self._last_tick_summary,
            "last_cleanup_at": self._last_cleanup_at,
            "last_health": self._last_health,
        }
