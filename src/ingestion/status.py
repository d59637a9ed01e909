"""
Operational status and control surface.

``build_control()`` wires the ingestion stack from Settings and returns a
ScrapingControl, the single entry point used by the CLI (and by any admin
surface built on top): a status snapshot and a fixed set of named actions.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from src.configs.settings import Settings, get_settings
from src.ingestion.adapters import EventExtractor, build_default_extractor
from src.ingestion.errors import BrokerUnavailable, SourceNotFoundError, StoreUnavailable
from src.ingestion.orchestrator import ScrapingService
from src.ingestion.persist import PostgresRecordStore
from src.ingestion.scheduler import ScrapingScheduler
from src.ingestion.source_manager import SourceManager
from src.ingestion.store import InMemoryRecordStore, RecordStore
from src.ingestion.worker import EventScraperWorker

logger = logging.getLogger(__name__)

HEALTHY_MAX_FAILED_JOBS = 10
HEALTHY_MAX_ERROR_RATE = 0.2

ActionHandler = Callable[..., Awaitable[dict[str, Any]]]


def _require(params: dict[str, Any], name: str) -> Any:
    value = params.pop(name, None)
    if value in (None, ""):
        raise ValueError(f"Parameter '{name}' is required")
    return value


class ScrapingControl:
    """
    Status and administrative actions over the ingestion stack.

    Example:
        >>> control = build_control()
        >>> await control.initialize()
        >>> status = await control.get_status()
        >>> await control.perform_action("trigger-source", source_id="abc")
    """

    def __init__(
        self,
        source_manager: SourceManager,
        service: ScrapingService,
        worker: EventScraperWorker,
        scheduler: ScrapingScheduler,
        store: RecordStore,
    ):
        self.source_manager = source_manager
        self.service = service
        self.worker = worker
        self.scheduler = scheduler
        self.store = store

        self._actions: dict[str, ActionHandler] = {
            "start-scheduler": self._start_scheduler,
            "stop-scheduler": self._stop_scheduler,
            "restart-scheduler": self._restart_scheduler,
            "pause-queue": self._pause_queue,
            "resume-queue": self._resume_queue,
            "retry-failed": self._retry_failed,
            "cleanup": self._cleanup,
            "trigger-source": self._trigger_source,
            "create-source": self._create_source,
            "update-source": self._update_source,
            "activate-source": self._activate_source,
            "deactivate-source": self._deactivate_source,
            "reset-errors": self._reset_errors,
        }

    @property
    def actions(self) -> list[str]:
        return list(self._actions)

    async def initialize(self, consume: bool = True) -> None:
        """Initialize the worker (and through it the source registry)."""
        await self.worker.initialize(consume=consume)

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.worker.close()
        await asyncio.to_thread(self.store.close)

    # ========================================================================
    # STATUS
    # ========================================================================

    async def get_status(self) -> dict[str, Any]:
        """
        Snapshot of the whole ingestion stack.

        Healthy when fewer than 10 jobs failed in the queue and today's
        error rate stays below 20%.
        """
        metrics = await self.service.get_metrics()

        queue: dict[str, Any]
        try:
            stats = await self.worker.get_queue_stats()
        except BrokerUnavailable as e:
            logger.warning(f"Queue stats unavailable: {e}")
            queue = {"error": str(e)}
            healthy = False
        else:
            queue = stats.model_dump()
            healthy = (
                stats.failed < HEALTHY_MAX_FAILED_JOBS
                and metrics.error_rate < HEALTHY_MAX_ERROR_RATE
            )
        queue["mode"] = "queued" if self.worker.is_queue_mode() else "direct"

        sources = {
            **self.source_manager.get_metrics(),
            "degraded": self.source_manager.is_degraded,
        }

        return {
            "scraping": metrics.model_dump(mode="json"),
            "sources": sources,
            "queue": queue,
            "scheduler": self.scheduler.get_metrics(),
            "worker": self.worker.metrics.to_dict(),
            "timestamp": datetime.now(UTC).isoformat(),
            "healthy": healthy,
        }

    # ========================================================================
    # ACTIONS
    # ========================================================================

    async def perform_action(self, action: str, **params: Any) -> dict[str, Any]:
        """
        Run a named administrative action.

        Raises:
            ValueError: Unknown action or missing parameter
            SourceNotFoundError: The action targets an unknown source
        """
        handler = self._actions.get(action)
        if handler is None:
            raise ValueError(f"Unknown action: {action}")
        logger.info(f"Performing action: {action}")
        return await handler(**params)

    async def _start_scheduler(self) -> dict[str, Any]:
        await self.scheduler.start()
        return {"message": "Scheduler started"}

    async def _stop_scheduler(self) -> dict[str, Any]:
        await self.scheduler.stop()
        return {"message": "Scheduler stopped"}

    async def _restart_scheduler(self) -> dict[str, Any]:
        await self.scheduler.restart()
        return {"message": "Scheduler restarted"}

    async def _pause_queue(self) -> dict[str, Any]:
        await self.worker.pause_queue()
        return {"message": "Queue paused"}

    async def _resume_queue(self) -> dict[str, Any]:
        await self.worker.resume_queue()
        return {"message": "Queue resumed"}

    async def _retry_failed(self) -> dict[str, Any]:
        retried = await self.worker.retry_failed_jobs()
        return {"message": f"Retrying {retried} failed jobs", "retried": retried}

    async def _cleanup(self) -> dict[str, Any]:
        removed = await self.scheduler.run_cleanup()
        return {"message": "Queue cleanup completed", **removed}

    async def _trigger_source(self, **params: Any) -> dict[str, Any]:
        source_id = _require(params, "source_id")
        delay_minutes = float(params.get("delay_minutes", 0))
        job_id = await self.scheduler.schedule_source_scraping(source_id, delay_minutes)
        if job_id is None:
            return {"message": f"Source {source_id} already has a job outstanding", "job_id": None}
        return {"message": f"Scraping triggered for source {source_id}", "job_id": job_id}

    async def _create_source(self, **params: Any) -> dict[str, Any]:
        source = await self.source_manager.create_source(params)
        return {
            "message": f"Source {source.name} created",
            "source": source.model_dump(mode="json"),
        }

    async def _update_source(self, **params: Any) -> dict[str, Any]:
        source_id = _require(params, "source_id")
        source = await self.source_manager.update_source(source_id, params)
        if source is None:
            raise SourceNotFoundError(source_id)
        return {
            "message": f"Source {source.name} updated",
            "source": source.model_dump(mode="json"),
        }

    async def _activate_source(self, **params: Any) -> dict[str, Any]:
        source_id = _require(params, "source_id")
        if not await self.source_manager.activate_source(source_id):
            raise SourceNotFoundError(source_id)
        return {"message": f"Source {source_id} activated"}

    async def _deactivate_source(self, **params: Any) -> dict[str, Any]:
        source_id = _require(params, "source_id")
        if not await self.source_manager.deactivate_source(source_id):
            raise SourceNotFoundError(source_id)
        return {"message": f"Source {source_id} deactivated"}

    async def _reset_errors(self, **params: Any) -> dict[str, Any]:
        source_id = _require(params, "source_id")
        if await self.source_manager.reset_error_count(source_id) is None:
            raise SourceNotFoundError(source_id)
        return {"message": f"Error count reset for source {source_id}"}


# ============================================================================
# WIRING
# ============================================================================


def build_store(settings: Settings) -> RecordStore:
    """PostgreSQL when DATABASE_URL is set, in-memory otherwise."""
    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL not set, using in-memory record store")
        return InMemoryRecordStore()

    store = PostgresRecordStore(settings.get_psycopg2_params())
    try:
        store.ensure_schema()
    except StoreUnavailable as e:
        logger.warning(f"Could not ensure record store schema: {e}")
    return store


def build_control(
    settings: Settings | None = None,
    store: RecordStore | None = None,
    extractor: EventExtractor | None = None,
) -> ScrapingControl:
    """
    Wire the ingestion stack.

    Args:
        settings: Application settings (defaults to get_settings())
        store: Record store override (defaults to build_store(settings))
        extractor: Extraction collaborator override

    Returns:
        An uninitialized ScrapingControl; call ``initialize()`` before use
    """
    settings = settings or get_settings()
    store = store or build_store(settings)

    source_manager = SourceManager(
        store,
        error_threshold=settings.ERROR_THRESHOLD,
        default_frequency_hours=settings.DEFAULT_SCRAPE_FREQUENCY_HOURS,
        sources_config_path=settings.SOURCES_CONFIG_PATH,
    )
    service = ScrapingService(
        source_manager,
        store,
        extractor or build_default_extractor(),
        dedup_config=settings.dedup_config(),
        dedup_strategy=settings.IN_RUN_DEDUP_STRATEGY,
        validate_candidates=settings.VALIDATE_CANDIDATES,
        max_concurrent_scrapes=settings.MAX_CONCURRENT_SCRAPES,
    )
    worker = EventScraperWorker(service, settings)
    scheduler = ScrapingScheduler(
        source_manager,
        worker,
        tick_interval_seconds=settings.SCHEDULER_TICK_SECONDS,
        max_queue_size=settings.MAX_QUEUE_SIZE,
        cleanup_interval_hours=settings.CLEANUP_INTERVAL_HOURS,
    )
    return ScrapingControl(source_manager, service, worker, scheduler, store)
