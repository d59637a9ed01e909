# src/schemas/scraping.py
"""
Scraping Schemas for the Event Ingestion Core.

Defines the records that flow through the ingestion system:

- EventSource: an external origin of event listings and its scheduling state
- ScrapeJob / ScrapeJobResult: queue payload and per-run outcome
- RawEventData / EventRecord: extracted candidates and persisted events
- EventDeduplicationMatch: computed similarity between a candidate and a record
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


# ============================================================================
# ENUMS
# ============================================================================


class SourceType(str, Enum):
    """How events are obtained from a source."""

    WEBSITE = "website"
    API = "api"
    MANUAL = "manual"


class JobPriority(IntEnum):
    """Queue priority levels. Higher values are dequeued first."""

    LOW = 1
    NORMAL = 5
    HIGH = 10


class JobStatus(str, Enum):
    """Outcome of a single scrape job execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MatchType(str, Enum):
    """Dimension that drove a deduplication match."""

    TITLE = "title"
    LOCATION = "location"
    TIME = "time"
    COMBINED = "combined"


# ============================================================================
# SOURCES
# ============================================================================


class EventSource(BaseModel):
    """
    An external origin of event listings.

    ``scrape_config`` is opaque to the core and handed verbatim to the
    extraction collaborator.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    base_url: str
    source_type: SourceType = SourceType.WEBSITE
    scrape_config: dict[str, Any] = Field(default_factory=dict)
    scrape_frequency_hours: float = Field(default=24, gt=0)
    is_active: bool = True
    error_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    last_scraped_at: datetime | None = None
    next_scrape_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("last_scraped_at", "next_scrape_at", "created_at", "updated_at")
    @classmethod
    def ensure_timezone(cls, v: datetime | None) -> datetime | None:
        """Treat naive datetimes as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


# ============================================================================
# JOBS
# ============================================================================


class ScrapeJob(BaseModel):
    """Queue payload: run ingestion for one source."""

    source_id: str
    source_name: str
    priority: int = JobPriority.NORMAL
    retry_count: int = 0


class ScrapeJobResult(BaseModel):
    """Outcome of one ingestion run, persisted as job history."""

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None
    events_found: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    error_message: str | None = None
    retry_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        """Calculate run duration."""
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()


class QueueStats(BaseModel):
    """Job counts per queue state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0

    @property
    def pending(self) -> int:
        """Jobs not yet finished, including those held by a pause."""
        return self.waiting + self.paused + self.active + self.delayed


# ============================================================================
# EVENTS
# ============================================================================


class RawEventData(BaseModel):
    """
    Candidate event produced by extraction.

    Times are kept as the ISO-8601 strings delivered by the extractor; they
    may be missing or unparsable.
    """

    source_id: str
    title: str = ""
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    location: str | None = None
    price: str | None = None
    image_url: str | None = None
    source_url: str | None = None
    extracted_at: datetime = Field(default_factory=_utc_now)
    scrape_hash: str = ""


class EventRecord(RawEventData):
    """An event persisted in the catalog."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    quality_score: int = 0
    status: str = "pending"
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


@dataclass(frozen=True)
class EventDeduplicationMatch:
    """Similarity between a candidate and an existing event."""

    event_id: str
    similarity: float
    match_type: MatchType
    confidence: float


# ============================================================================
# METRICS
# ============================================================================


class ScrapingMetrics(BaseModel):
    """Rolled-up ingestion metrics for the current day."""

    total_sources: int = 0
    active_sources: int = 0
    total_jobs_today: int = 0
    successful_jobs_today: int = 0
    failed_jobs_today: int = 0
    events_scraped_today: int = 0
    events_created_today: int = 0
    average_job_duration: float = 0.0
    error_rate: float = 0.0
    last_successful_scrape: datetime | None = None
