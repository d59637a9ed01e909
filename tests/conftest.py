"""
Shared pytest fixtures for the Event Ingestion Core test suite.

Provides factories for sources, candidates and persisted events, an
in-memory record store, a scriptable extractor and a fully wired
ingestion service.
"""

from datetime import UTC, datetime, timedelta

import pytest

from src.configs.settings import Settings
from src.ingestion.adapters import EventExtractor
from src.ingestion.deduplication import generate_event_hash, normalize_event_data
from src.ingestion.orchestrator import ScrapingService
from src.ingestion.source_manager import SourceManager
from src.ingestion.store import InMemoryRecordStore
from src.schemas.scraping import EventRecord, EventSource, RawEventData, SourceType


def future_iso(days: int = 7, hour: int = 20, minute: int = 0) -> str:
    """ISO timestamp ``days`` from today at a fixed UTC wall-clock time."""
    base = datetime.now(UTC).replace(hour=hour, minute=minute, second=0, microsecond=0)
    return (base + timedelta(days=days)).isoformat()


class FakeExtractor(EventExtractor):
    """
    Extractor returning scripted candidates per source id.

    A scripted exception is raised instead of returning candidates.
    """

    def __init__(self):
        self.results: dict[str, list[RawEventData] | Exception] = {}
        self.calls: list[str] = []
        self.closed = False

    async def extract(self, source: EventSource) -> list[RawEventData]:
        self.calls.append(source.id)
        outcome = self.results.get(source.id, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def create_source():
    """
    Return a function that creates EventSource objects with sensible defaults.

    Example:
        source = create_source(name="Venue", error_count=2)
    """

    def _create_source(
        name: str = "Test Venue",
        base_url: str = "https://venue.example.com/events",
        **kwargs,
    ) -> EventSource:
        defaults = {
            "name": name,
            "base_url": base_url,
            "source_type": SourceType.API,
            "scrape_frequency_hours": 24,
        }
        defaults.update(kwargs)
        return EventSource(**defaults)

    return _create_source


@pytest.fixture
def create_candidate():
    """
    Return a function that creates RawEventData candidates.

    Example:
        candidate = create_candidate(title="Jazz Night at the Blue Note")
    """

    def _create_candidate(
        title: str = "Jazz Night at the Blue Note",
        source_id: str = "source-1",
        start_time: str | None = None,
        location: str | None = "Blue Note Club",
        **kwargs,
    ) -> RawEventData:
        defaults = {
            "source_id": source_id,
            "title": title,
            "start_time": start_time if start_time is not None else future_iso(),
            "location": location,
        }
        defaults.update(kwargs)
        return RawEventData(**defaults)

    return _create_candidate


@pytest.fixture
def create_record(create_candidate):
    """Return a function that creates persisted EventRecords with their hash set."""

    def _create_record(**kwargs) -> EventRecord:
        candidate = normalize_event_data(create_candidate(**kwargs))
        return EventRecord(
            **candidate.model_dump(exclude={"scrape_hash"}),
            scrape_hash=generate_event_hash(candidate),
        )

    return _create_record


@pytest.fixture
def memory_store():
    """Fresh in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def fake_extractor():
    """Scriptable extractor with no scripted results."""
    return FakeExtractor()


@pytest.fixture
def source_manager(memory_store):
    """Source manager over the in-memory store, with no declared sources."""
    return SourceManager(memory_store, error_threshold=3, declared_sources=[])


@pytest.fixture
def service(source_manager, memory_store, fake_extractor):
    """Ingestion service wired to the in-memory store and fake extractor."""
    return ScrapingService(source_manager, memory_store, fake_extractor)


@pytest.fixture
def settings():
    """Settings with no backing services and no .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        REDIS_URL=None,
        ERROR_THRESHOLD=3,
        JOB_BACKOFF_SECONDS=0,
    )


@pytest.fixture
def event_time():
    """Return the ``future_iso`` helper for building candidate start times."""
    return future_iso
