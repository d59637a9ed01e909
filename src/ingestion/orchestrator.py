"""
Ingestion Coordinator.

Runs a full ingestion pass for one source (fetch candidates, deduplicate
against the source's persisted events, write creates/updates, update the
source's scheduling state, record job history) and fans out across all due
sources.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime

from src.ingestion.adapters import EventExtractor
from src.ingestion.deduplication import (
    DeduplicationConfig,
    DeduplicationStrategy,
    calculate_event_quality_score,
    find_similar_events,
    generate_event_hash,
    get_deduplicator,
    is_exact_duplicate,
    merge_event_data,
    normalize_event_data,
)
from src.ingestion.errors import FetchError, StoreUnavailable
from src.ingestion.source_manager import SourceManager
from src.ingestion.store import RecordStore
from src.ingestion.validation import validate_events
from src.monitoring.logging import with_context
from src.schemas.scraping import (
    EventRecord,
    EventSource,
    JobStatus,
    RawEventData,
    ScrapeJobResult,
    ScrapingMetrics,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessingCounts:
    """Per-run tallies of candidate outcomes."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    invalid: int = 0
    malformed: int = 0
    rejection_reasons: Counter = field(default_factory=Counter)


class ScrapingService:
    """
    Coordinates ingestion runs.

    Responsibilities:
    - Fetch candidates through the extraction collaborator
    - Deduplicate against a snapshot of the source's persisted events
    - Create, update or skip each candidate
    - Update source state and record job history
    - Roll up daily metrics
    """

    def __init__(
        self,
        source_manager: SourceManager,
        store: RecordStore,
        extractor: EventExtractor,
        dedup_config: DeduplicationConfig | None = None,
        dedup_strategy: DeduplicationStrategy | str = DeduplicationStrategy.EXACT,
        validate_candidates: bool = True,
        max_concurrent_scrapes: int = 3,
    ):
        """
        Initialize the coordinator.

        Args:
            source_manager: Registry of sources
            store: Durable record store (events and job history)
            extractor: Extraction collaborator
            dedup_config: Matching thresholds
            dedup_strategy: How candidates of one run are collapsed before matching
            validate_candidates: Reject invalid candidates before matching
            max_concurrent_scrapes: Batch size for scrape_all_sources
        """
        self.source_manager = source_manager
        self.store = store
        self.extractor = extractor
        self.dedup_config = dedup_config or DeduplicationConfig()
        self.validate_candidates = validate_candidates
        self.max_concurrent_scrapes = max_concurrent_scrapes
        self._in_run_deduplicator = get_deduplicator(
            DeduplicationStrategy(dedup_strategy), self.dedup_config
        )

    async def initialize(self) -> None:
        """Initialize the source registry if nobody did yet."""
        if not self.source_manager.is_initialized:
            await self.source_manager.initialize()

    async def close(self) -> None:
        await self.extractor.close()

    # ========================================================================
    # SINGLE SOURCE
    # ========================================================================

    async def scrape_source(self, source_id: str, retry_count: int = 0) -> ScrapeJobResult | None:
        """
        Run ingestion for one source.

        Args:
            source_id: Source to ingest
            retry_count: Attempt number supplied by the queue

        Returns:
            ScrapeJobResult, or None if the source is unknown or inactive

        Raises:
            StoreUnavailable: If the source state cannot be persisted
        """
        source = await self.source_manager.load_active_source(source_id)
        if source is None:
            logger.warning(f"Source {source_id} not found or inactive")
            return None

        result = ScrapeJobResult(
            source_id=source_id,
            retry_count=retry_count,
            metadata={"source_name": source.name},
        )
        log = with_context(logger, source_id=source_id, job_id=result.job_id)
        log.info(f"Starting scrape job for source: {source.name}")
        await self._record_job(result)

        try:
            candidates = await self._extract(source)
            result.events_found = len(candidates)
            log.info(f"Extracted {len(candidates)} events from {source.name}")

            counts = await self._process_candidates(source, candidates)
            result.events_created = counts.created
            result.events_updated = counts.updated
            result.events_skipped = counts.skipped
            result.metadata["invalid_candidates"] = counts.invalid
            result.metadata["malformed_candidates"] = counts.malformed
            if counts.rejection_reasons:
                result.metadata["rejection_reasons"] = dict(counts.rejection_reasons)

            await self.source_manager.update_last_scraped(source_id)
            await self.source_manager.reset_error_count(source_id)
            result.status = JobStatus.COMPLETED
            log.info(
                f"Scrape job completed for {source.name}: {counts.created} created, "
                f"{counts.updated} updated, {counts.skipped} skipped"
            )

        except (FetchError, StoreUnavailable) as e:
            log.error(f"Scrape job failed for {source.name}: {e}")
            result.status = JobStatus.FAILED
            result.error_message = str(e)
            result.completed_at = datetime.now(UTC)
            await self._record_job(result)
            await self.source_manager.increment_error_count(source_id, result.error_message)
            return result

        result.completed_at = datetime.now(UTC)
        await self._record_job(result)
        return result

    async def _extract(self, source: EventSource) -> list[RawEventData]:
        try:
            return await self.extractor.extract(source)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(
                f"Extractor raised {type(e).__name__}: {e}", source_id=source.id
            ) from e

    def _prepare(
        self, candidates: list[RawEventData], counts: ProcessingCounts
    ) -> list[RawEventData]:
        """Normalize, hash, collapse in-run duplicates and validate."""
        prepared: list[RawEventData] = []
        for candidate in candidates:
            if not candidate.title.strip():
                # no title: the item could not be mapped to an event
                counts.skipped += 1
                counts.malformed += 1
                continue
            try:
                normalized = normalize_event_data(candidate)
                normalized.scrape_hash = generate_event_hash(normalized)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed candidate {candidate.title!r}: {e}")
                counts.skipped += 1
                counts.malformed += 1
                continue
            prepared.append(normalized)

        unique = self._in_run_deduplicator.deduplicate(prepared)
        counts.skipped += len(prepared) - len(unique)

        if not self.validate_candidates:
            return unique

        summary = validate_events(unique)
        counts.skipped += len(summary.invalid)
        counts.invalid += len(summary.invalid)
        counts.rejection_reasons.update(summary.rejection_reasons)
        return summary.accepted

    async def _process_candidates(
        self, source: EventSource, candidates: list[RawEventData]
    ) -> ProcessingCounts:
        counts = ProcessingCounts()
        if not candidates:
            return counts

        prepared = self._prepare(candidates, counts)

        # Snapshot taken once; candidates of this run are matched against it only
        existing = await asyncio.to_thread(self.store.list_events, source.id)
        existing_by_id = {event.id: event for event in existing}
        existing_hashes = {event.scrape_hash or generate_event_hash(event) for event in existing}
        config = self.dedup_config

        for candidate in prepared:
            try:
                if is_exact_duplicate(candidate.scrape_hash, existing_hashes):
                    counts.skipped += 1
                    continue

                matches = (
                    find_similar_events(candidate, existing, config)
                    if config.enable_fuzzy_matching
                    else []
                )
                top = matches[0] if matches else None

                if top is not None and top.similarity >= config.combined_similarity_threshold:
                    merged = merge_event_data(existing_by_id[top.event_id], candidate)
                    merged.quality_score = calculate_event_quality_score(merged)
                    merged.updated_at = datetime.now(UTC)
                    await asyncio.to_thread(self.store.update_event, merged)
                    counts.updated += 1
                else:
                    record = EventRecord(
                        **candidate.model_dump(),
                        quality_score=calculate_event_quality_score(candidate),
                        status="pending",
                    )
                    await asyncio.to_thread(self.store.create_event, record)
                    counts.created += 1

            except StoreUnavailable:
                raise
            except Exception as e:
                logger.warning(f"Skipping candidate {candidate.title!r}: {e}", exc_info=True)
                counts.skipped += 1

        return counts

    async def _record_job(self, result: ScrapeJobResult) -> None:
        """Write job history. A store outage here is logged, not raised."""
        try:
            await asyncio.to_thread(self.store.record_job, result.model_copy(deep=True))
        except StoreUnavailable as e:
            logger.warning(f"Could not record job {result.job_id}: {e}")

    # ========================================================================
    # FAN-OUT
    # ========================================================================

    async def scrape_all_sources(self) -> list[ScrapeJobResult]:
        """
        Run every due source, ``max_concurrent_scrapes`` at a time.

        Returns:
            Results of the runs that produced one
        """
        sources = self.source_manager.get_sources_due_for_scraping()
        logger.info(f"Scraping {len(sources)} sources due for update")

        results: list[ScrapeJobResult] = []
        batch_size = self.max_concurrent_scrapes
        for i in range(0, len(sources), batch_size):
            batch = sources[i : i + batch_size]
            outcomes = await asyncio.gather(
                *(self.scrape_source(source.id) for source in batch),
                return_exceptions=True,
            )
            for source, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error(f"Failed to scrape {source.name}: {outcome}")
                elif outcome is not None:
                    results.append(outcome)

        return results

    # ========================================================================
    # METRICS
    # ========================================================================

    async def get_metrics(self) -> ScrapingMetrics:
        """Roll up source registry state and today's job history."""
        today = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        source_metrics = self.source_manager.get_metrics()
        jobs = await asyncio.to_thread(self.store.list_jobs, today)

        successful = [j for j in jobs if j.status == JobStatus.COMPLETED]
        failed = [j for j in jobs if j.status == JobStatus.FAILED]
        finished = [j for j in jobs if j.completed_at is not None]
        average_duration = (
            sum(j.duration_seconds for j in finished) / len(finished) if finished else 0.0
        )
        last_successful = max(
            (j.completed_at for j in successful if j.completed_at), default=None
        )

        return ScrapingMetrics(
            total_sources=source_metrics["total_sources"],
            active_sources=source_metrics["active_sources"],
            total_jobs_today=len(jobs),
            successful_jobs_today=len(successful),
            failed_jobs_today=len(failed),
            events_scraped_today=sum(j.events_found for j in jobs),
            events_created_today=sum(j.events_created for j in jobs),
            average_job_duration=average_duration,
            error_rate=len(failed) / len(jobs) if jobs else 0.0,
            last_successful_scrape=last_successful,
        )
