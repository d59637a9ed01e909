"""
Record Store interface.

The durable store is an external collaborator reached through this narrow
interface: CRUD over sources, persisted events and job history. Methods are
synchronous; async callers run them with ``asyncio.to_thread``.

Implementations raise StoreUnavailable when the backing store cannot be
reached.
"""

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime

from src.ingestion.errors import StoreUnavailable
from src.schemas.scraping import EventRecord, EventSource, ScrapeJobResult


class RecordStore(ABC):
    """Abstract durable store for sources, events and job history."""

    @abstractmethod
    def ping(self) -> None:
        """Raise StoreUnavailable if the store cannot be reached."""
        pass

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    @abstractmethod
    def list_sources(self) -> list[EventSource]:
        """Return every stored source."""
        pass

    @abstractmethod
    def get_source(self, source_id: str) -> EventSource | None:
        """Return one stored source, or None if it does not exist."""
        pass

    @abstractmethod
    def save_source(self, source: EventSource) -> None:
        """Insert or replace a source by id."""
        pass

    @abstractmethod
    def replace_source(self, source: EventSource, expected_updated_at: datetime | None) -> bool:
        """
        Replace a stored source only if it is unchanged since it was read.

        Returns False when the stored row is missing or its ``updated_at``
        differs from ``expected_updated_at`` (another writer got there first).
        """
        pass

    @abstractmethod
    def delete_source(self, source_id: str) -> bool:
        """Hard delete a source. Returns False if it did not exist."""
        pass

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abstractmethod
    def list_events(self, source_id: str) -> list[EventRecord]:
        """Return persisted events that came from a source."""
        pass

    @abstractmethod
    def create_event(self, event: EventRecord) -> str:
        """Insert a new event and return its id."""
        pass

    @abstractmethod
    def update_event(self, event: EventRecord) -> None:
        """Replace an existing event by id."""
        pass

    # ------------------------------------------------------------------
    # Job history
    # ------------------------------------------------------------------

    @abstractmethod
    def record_job(self, result: ScrapeJobResult) -> None:
        """Insert or update a job history record by job id."""
        pass

    @abstractmethod
    def list_jobs(self, since: datetime | None = None) -> list[ScrapeJobResult]:
        """Return job history, optionally only jobs started at or after ``since``."""
        pass

    def close(self) -> None:
        """Release resources held by the store."""
        pass


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-process store.

    Used when no DATABASE_URL is configured and in tests. Setting
    ``available = False`` makes every call raise StoreUnavailable.
    """

    def __init__(self) -> None:
        self.available = True
        self._lock = threading.Lock()
        self._sources: dict[str, EventSource] = {}
        self._events: dict[str, EventRecord] = {}
        self._jobs: dict[str, ScrapeJobResult] = {}

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("In-memory store marked unavailable")

    def ping(self) -> None:
        self._check()

    def list_sources(self) -> list[EventSource]:
        with self._lock:
            self._check()
            return [copy.deepcopy(s) for s in self._sources.values()]

    def get_source(self, source_id: str) -> EventSource | None:
        with self._lock:
            self._check()
            source = self._sources.get(source_id)
            return copy.deepcopy(source) if source is not None else None

    def save_source(self, source: EventSource) -> None:
        with self._lock:
            self._check()
            self._sources[source.id] = copy.deepcopy(source)

    def replace_source(self, source: EventSource, expected_updated_at: datetime | None) -> bool:
        with self._lock:
            self._check()
            stored = self._sources.get(source.id)
            if stored is None or stored.updated_at != expected_updated_at:
                return False
            self._sources[source.id] = copy.deepcopy(source)
            return True

    def delete_source(self, source_id: str) -> bool:
        with self._lock:
            self._check()
            return self._sources.pop(source_id, None) is not None

    def list_events(self, source_id: str) -> list[EventRecord]:
        with self._lock:
            self._check()
            return [copy.deepcopy(e) for e in self._events.values() if e.source_id == source_id]

    def create_event(self, event: EventRecord) -> str:
        with self._lock:
            self._check()
            self._events[event.id] = copy.deepcopy(event)
            return event.id

    def update_event(self, event: EventRecord) -> None:
        with self._lock:
            self._check()
            if event.id not in self._events:
                raise KeyError(f"Event '{event.id}' not found")
            self._events[event.id] = copy.deepcopy(event)

    def record_job(self, result: ScrapeJobResult) -> None:
        with self._lock:
            self._check()
            self._jobs[result.job_id] = copy.deepcopy(result)

    def list_jobs(self, since: datetime | None = None) -> list[ScrapeJobResult]:
        with self._lock:
            self._check()
            jobs = [copy.deepcopy(j) for j in self._jobs.values()]
        if since is not None:
            jobs = [j for j in jobs if j.started_at >= since]
        return sorted(jobs, key=lambda j: j.started_at)
