"""
Event Scraper Worker.

Binds the job queue to the ingestion coordinator. The operating mode is
chosen once, in ``initialize()``: queued mode when Redis answers PING,
direct mode otherwise.
"""

import logging

from src.configs.settings import Settings, get_settings
from src.ingestion.errors import BrokerUnavailable, FetchError, StoreUnavailable
from src.ingestion.job_queue import (
    DirectJobQueue,
    JobInfo,
    JobQueue,
    JobState,
    QueueOptions,
    RedisJobQueue,
)
from src.ingestion.orchestrator import ScrapingService
from src.monitoring.metrics import MetricsRegistry
from src.schemas.scraping import JobPriority, JobStatus, QueueStats, ScrapeJob, ScrapeJobResult

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


class EventScraperWorker:
    """
    Executes scrape jobs with bounded concurrency.

    Example:
        >>> worker = EventScraperWorker(service, settings)
        >>> await worker.initialize()
        >>> await worker.add_scrape_source_job(source.id, source.name)
    """

    def __init__(
        self,
        coordinator: ScrapingService,
        settings: Settings | None = None,
        queue: JobQueue | None = None,
        metrics: MetricsRegistry | None = None,
    ):
        """
        Initialize the worker.

        Args:
            coordinator: Ingestion coordinator that runs each job
            settings: Application settings (defaults to get_settings())
            queue: Pre-built queue; skips the broker connection check when given
            metrics: Registry for job counters and timings
        """
        self.coordinator = coordinator
        self.settings = settings or get_settings()
        self.metrics = metrics or MetricsRegistry()
        self._queue = queue

    @property
    def queue(self) -> JobQueue:
        if self._queue is None:
            raise RuntimeError("EventScraperWorker not initialized")
        return self._queue

    def _queue_options(self) -> QueueOptions:
        s = self.settings
        return QueueOptions(
            concurrency=s.SCRAPING_CONCURRENCY,
            attempts=s.JOB_ATTEMPTS,
            backoff_delay_seconds=s.JOB_BACKOFF_SECONDS,
            remove_on_complete=s.REMOVE_ON_COMPLETE,
            remove_on_fail=s.REMOVE_ON_FAIL,
            lock_duration_seconds=s.JOB_LOCK_SECONDS,
            stalled_check_seconds=s.JOB_LOCK_SECONDS,
        )

    async def _select_queue(self) -> JobQueue:
        redis_url = self.settings.REDIS_URL
        if not redis_url:
            logger.warning("REDIS_URL not set, running scraper in DIRECT MODE (no queue)")
            return DirectJobQueue()
        try:
            queue = await RedisJobQueue.connect(
                redis_url, name=self.settings.QUEUE_NAME, options=self._queue_options()
            )
        except BrokerUnavailable as e:
            logger.warning(f"Running scraper in DIRECT MODE (no queue): {e}")
            return DirectJobQueue()
        logger.info(f"Connected to Redis queue '{self.settings.QUEUE_NAME}'")
        return queue

    async def initialize(self, consume: bool = True) -> None:
        """
        Initialize the coordinator and pick the operating mode.

        Args:
            consume: Start pulling jobs in queued mode. Producers that only
                enqueue or read stats pass False.
        """
        try:
            await self.coordinator.initialize()
        except StoreUnavailable as e:
            logger.warning(f"Continuing with degraded source registry: {e}")

        if self._queue is None:
            self._queue = await self._select_queue()

        if consume or not self._queue.is_queue_mode:
            await self._queue.start(self._handle_job)

        self.metrics.set_gauge("queue_mode", 1.0 if self._queue.is_queue_mode else 0.0)
        logger.info("EventScraperWorker initialized successfully")

    def is_queue_mode(self) -> bool:
        return self.queue.is_queue_mode

    # ========================================================================
    # JOB EXECUTION
    # ========================================================================

    async def _handle_job(self, job: ScrapeJob) -> ScrapeJobResult | None:
        """
        Run one job through the coordinator.

        Raises:
            FetchError: When the run failed, so the queue's retry policy applies
        """
        logger.info(f"Processing scrape job for source: {job.source_name} ({job.source_id})")

        with self.metrics.time("job_duration_seconds"):
            result = await self.coordinator.scrape_source(
                job.source_id, retry_count=job.retry_count
            )

        if result is None:
            self.metrics.inc("jobs_skipped")
            return None
        if result.status == JobStatus.FAILED:
            self.metrics.inc("jobs_failed")
            raise FetchError(result.error_message or "scrape failed", source_id=job.source_id)

        self.metrics.inc("jobs_completed")
        self.metrics.inc("events_created", result.events_created)
        return result

    async def add_scrape_source_job(
        self,
        source_id: str,
        source_name: str,
        priority: int = JobPriority.NORMAL,
        delay_seconds: float = 0,
        attempts: int | None = None,
    ) -> str | None:
        """
        Submit a scrape job.

        Returns:
            Job id, or None when the source already has an outstanding job
        """
        job = ScrapeJob(source_id=source_id, source_name=source_name, priority=priority)
        return await self.queue.enqueue(job, delay_seconds=delay_seconds, attempts=attempts)

    async def scrape_source_direct(self, source_id: str) -> ScrapeJobResult | None:
        """
        Run a source immediately in the caller's task, bypassing the queue.

        Returns:
            The run result, or None if the source is unknown, inactive,
            already queued, or the store failed
        """
        if self.is_queue_mode() and await self.queue.is_outstanding(source_id):
            logger.warning(f"Source {source_id} already has a queued job, not running directly")
            return None

        logger.info(f"Direct scraping: {source_id}")
        try:
            with self.metrics.time("job_duration_seconds"):
                result = await self.coordinator.scrape_source(source_id)
        except StoreUnavailable as e:
            logger.error(f"Direct scrape failed for {source_id}: {e}")
            self.metrics.inc("jobs_failed")
            return None

        if result is not None:
            counter = "jobs_failed" if result.status == JobStatus.FAILED else "jobs_completed"
            self.metrics.inc(counter)
            logger.info(
                f"Direct scrape finished for {source_id}: {result.status.value}, "
                f"found {result.events_found}, created {result.events_created}"
            )
        return result

    # ========================================================================
    # QUEUE MANAGEMENT
    # ========================================================================

    async def get_queue_stats(self) -> QueueStats:
        return await self.queue.get_stats()

    async def pause_queue(self) -> None:
        await self.queue.pause()

    async def resume_queue(self) -> None:
        await self.queue.resume()

    async def retry_failed_jobs(self) -> int:
        return await self.queue.retry_failed()

    async def clean_queue(
        self,
        grace_seconds: float = DAY_SECONDS,
        state: JobState | str = JobState.COMPLETED,
    ) -> list[str]:
        return await self.queue.clean(grace_seconds, state)

    async def get_job(self, job_id: str) -> JobInfo | None:
        return await self.queue.get_job(job_id)

    async def close(self) -> None:
        if self._queue is not None:
            await self._queue.close()
        await self.coordinator.close()
        logger.info("EventScraperWorker closed successfully")
