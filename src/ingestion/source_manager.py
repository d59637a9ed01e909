"""
Source Manager.

Owns the registry of ingestion sources: an in-memory map keyed by id that
caches the record store. The store is the source of truth, shared with
other processes (the CLI control actions run beside a serving process).

Every mutation re-reads the stored row, applies its changes and writes
back conditionally on the row's ``updated_at``; a stale write is retried
against the fresh row, so changes made elsewhere are never reverted.
Within a process, mutations of one source are also serialized through a
per-source asyncio.Lock. ``refresh()`` reloads the whole registry.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from src.configs.config import Config
from src.ingestion.errors import ConcurrentUpdateError, StoreUnavailable, ValidationError
from src.ingestion.store import RecordStore
from src.schemas.scraping import EventSource, SourceType

logger = logging.getLogger(__name__)

DEFAULT_ERROR_THRESHOLD = 10
DEFAULT_SCRAPE_FREQUENCY_HOURS = 24.0

# Conditional writes retried before giving up on a contended source
MAX_WRITE_ATTEMPTS = 5

# Declared fields compared when merging static configuration
DECLARED_FIELDS = ("name", "base_url", "source_type", "scrape_config", "scrape_frequency_hours")


class SourceManager:
    """
    Registry and lifecycle owner for event sources.

    Example:
        >>> manager = SourceManager(InMemoryRecordStore(), declared_sources=[])
        >>> await manager.initialize()
        >>> source = await manager.create_source({"name": "Venue", "base_url": "https://v.example"})
    """

    def __init__(
        self,
        store: RecordStore,
        error_threshold: int = DEFAULT_ERROR_THRESHOLD,
        default_frequency_hours: float = DEFAULT_SCRAPE_FREQUENCY_HOURS,
        declared_sources: list[dict] | None = None,
        sources_config_path: Path | None = None,
    ):
        """
        Initialize the manager.

        Args:
            store: Durable record store
            error_threshold: Consecutive errors that deactivate a source
            default_frequency_hours: Frequency for sources that do not set one
            declared_sources: Statically declared sources (overrides the YAML file)
            sources_config_path: YAML file with declared sources
        """
        self._store = store
        self.error_threshold = error_threshold
        self.default_frequency_hours = default_frequency_hours
        self._declared_sources = declared_sources
        self._sources_config_path = sources_config_path

        self._sources: dict[str, EventSource] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._degraded = False
        self._initialized = False

    @property
    def is_degraded(self) -> bool:
        """True when the store was unreachable at initialization."""
        return self._degraded

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ========================================================================
    # INITIALIZATION
    # ========================================================================

    def _load_declared(self) -> list[dict]:
        if self._declared_sources is not None:
            return [dict(d) for d in self._declared_sources]
        try:
            declared = Config.load_sources_config(self._sources_config_path)
        except FileNotFoundError:
            logger.debug("No declared sources file found")
            return []
        return [dict(d) for d in declared]

    async def initialize(self) -> None:
        """
        Load sources from the store and merge declared sources.

        Idempotent: declared sources already present (matched by id, then
        name, then base URL) are only updated when their declared
        configuration changed.

        Raises:
            StoreUnavailable: If the store cannot be reached. The manager is
                left in degraded mode holding only the declared sources.
        """
        declared = self._load_declared()

        try:
            stored = await asyncio.to_thread(self._store.list_sources)
        except StoreUnavailable as e:
            logger.warning(
                f"Record store unavailable, running with {len(declared)} declared sources only: {e}"
            )
            self._degraded = True
            self._sources = {}
            for data in declared:
                try:
                    source = self._build_source(data)
                except ValidationError as ve:
                    logger.error(f"Skipping invalid declared source {data.get('name')!r}: {ve}")
                    continue
                self._sources[source.id] = source
            self._initialized = True
            raise

        self._degraded = False
        self._sources = {s.id: s for s in stored}

        for data in declared:
            try:
                await self._merge_declared(data)
            except ValidationError as e:
                logger.error(f"Skipping invalid declared source {data.get('name')!r}: {e}")

        self._initialized = True
        logger.info(f"SourceManager initialized with {len(self._sources)} sources")

    def _find_declared_match(self, data: Mapping[str, Any]) -> EventSource | None:
        declared_id = data.get("id")
        if declared_id and declared_id in self._sources:
            return self._sources[declared_id]
        for key in ("name", "base_url"):
            value = data.get(key)
            if not value:
                continue
            for source in self._sources.values():
                if getattr(source, key) == value:
                    return source
        return None

    async def _merge_declared(self, data: dict) -> None:
        existing = self._find_declared_match(data)
        if existing is None:
            await self.create_source(data)
            return

        declared = self._build_source({**data, "id": existing.id})
        changes = {
            name: getattr(declared, name)
            for name in DECLARED_FIELDS
            if name in data and getattr(declared, name) != getattr(existing, name)
        }
        if changes:
            await self.update_source(existing.id, changes)
            logger.info(f"Updated source configuration: {existing.name}")

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def _build_source(self, data: Mapping[str, Any]) -> EventSource:
        """Validate a source definition and apply creation defaults."""
        name = (data.get("name") or "").strip()
        base_url = (data.get("base_url") or "").strip()
        if not name:
            raise ValidationError("Source name is required", field="name")
        if not base_url:
            raise ValidationError("Source base_url is required", field="base_url")

        frequency = data.get("scrape_frequency_hours")
        if not frequency or frequency <= 0:
            frequency = self.default_frequency_hours

        now = datetime.now(UTC)
        next_scrape_at = data.get("next_scrape_at") or now + timedelta(hours=frequency)

        try:
            return EventSource(
                id=data.get("id") or str(uuid.uuid4()),
                name=name,
                base_url=base_url,
                source_type=data.get("source_type") or SourceType.WEBSITE,
                scrape_config=dict(data.get("scrape_config") or {}),
                scrape_frequency_hours=frequency,
                is_active=data.get("is_active", True),
                error_count=0,
                last_scraped_at=data.get("last_scraped_at"),
                next_scrape_at=next_scrape_at,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid source definition: {e}") from e

    async def _persist(self, source: EventSource) -> None:
        if self._degraded:
            return
        await asyncio.to_thread(self._store.save_source, source)

    async def _read_current(self, source_id: str) -> EventSource | None:
        """Latest committed copy of a source; the registry copy in degraded mode."""
        if self._degraded:
            return self._sources.get(source_id)
        current = await asyncio.to_thread(self._store.get_source, source_id)
        if current is None:
            self._sources.pop(source_id, None)
        else:
            self._sources[source_id] = current
        return current

    async def create_source(self, data: Mapping[str, Any]) -> EventSource:
        """
        Register a new source.

        Args:
            data: Source fields. ``name`` and ``base_url`` are required.

        Returns:
            The created EventSource

        Raises:
            ValidationError: If the definition is invalid (nothing is persisted)
            StoreUnavailable: If the store cannot be reached
        """
        source = self._build_source(data)

        async with self._locks[source.id]:
            if source.id in self._sources:
                raise ValidationError(f"Source '{source.id}' already exists", field="id")
            await self._persist(source)
            self._sources[source.id] = source

        logger.info(f"Created new source: {source.name}")
        return source

    async def _apply_update(
        self,
        source_id: str,
        changes: Mapping[str, Any] | Callable[[EventSource], Mapping[str, Any]],
    ) -> EventSource | None:
        """
        Merge changes into the latest stored copy of a source.

        ``changes`` may be a callable computing the changes from that copy.
        The write only succeeds if nobody else wrote the source since it was
        read; otherwise the copy is re-read and the changes re-applied.
        Caller holds the source lock.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            existing = await self._read_current(source_id)
            if existing is None:
                logger.warning(f"Source {source_id} not found")
                return None

            updates = changes(existing) if callable(changes) else changes
            updated = self._merge(existing, updates)

            if self._degraded:
                self._sources[source_id] = updated
                return updated
            written = await asyncio.to_thread(
                self._store.replace_source, updated, existing.updated_at
            )
            if written:
                self._sources[source_id] = updated
                return updated
            logger.debug(f"Source {source_id} changed concurrently, re-reading")

        raise ConcurrentUpdateError(
            f"Source {source_id} kept changing, gave up after {MAX_WRITE_ATTEMPTS} attempts"
        )

    @staticmethod
    def _merge(existing: EventSource, updates: Mapping[str, Any]) -> EventSource:
        for key in ("name", "base_url"):
            if key in updates and not (updates[key] or "").strip():
                raise ValidationError(f"Source {key} cannot be empty", field=key)

        merged = {
            **existing.model_dump(),
            **{k: v for k, v in updates.items() if k not in ("id", "created_at")},
            "updated_at": datetime.now(UTC),
        }
        try:
            return EventSource.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid source update: {e}") from e

    async def update_source(self, source_id: str, updates: Mapping[str, Any]) -> EventSource | None:
        """
        Partially update a source.

        Returns:
            The updated source, or None if the id is unknown
        """
        async with self._locks[source_id]:
            return await self._apply_update(source_id, updates)

    async def activate_source(self, source_id: str) -> bool:
        return await self.update_source(source_id, {"is_active": True}) is not None

    async def deactivate_source(self, source_id: str) -> bool:
        return await self.update_source(source_id, {"is_active": False}) is not None

    async def delete_source(self, source_id: str) -> bool:
        """Hard delete a source (admin operation)."""
        async with self._locks[source_id]:
            existed = source_id in self._sources
            if not self._degraded:
                existed = await asyncio.to_thread(self._store.delete_source, source_id) or existed
            self._sources.pop(source_id, None)

        self._locks.pop(source_id, None)
        if existed:
            logger.info(f"Deleted source: {source_id}")
        return existed

    async def increment_error_count(
        self, source_id: str, message: str | None = None
    ) -> EventSource | None:
        """
        Record a failed run.

        Deactivates the source in the same update once the counter reaches
        the error threshold.
        """

        def changes(existing: EventSource) -> dict[str, Any]:
            error_count = existing.error_count + 1
            updates: dict[str, Any] = {"error_count": error_count, "last_error": message}
            if error_count >= self.error_threshold and existing.is_active:
                updates["is_active"] = False
                logger.warning(
                    f"Deactivating source {existing.name} after {error_count} consecutive errors"
                )
            return updates

        async with self._locks[source_id]:
            return await self._apply_update(source_id, changes)

    async def reset_error_count(self, source_id: str) -> EventSource | None:
        return await self.update_source(source_id, {"error_count": 0, "last_error": None})

    async def update_last_scraped(self, source_id: str) -> EventSource | None:
        """Stamp a successful run and schedule the next one."""

        def changes(existing: EventSource) -> dict[str, Any]:
            now = datetime.now(UTC)
            return {
                "last_scraped_at": now,
                "next_scrape_at": now + timedelta(hours=existing.scrape_frequency_hours),
            }

        async with self._locks[source_id]:
            return await self._apply_update(source_id, changes)

    # ========================================================================
    # SYNCHRONIZATION
    # ========================================================================

    async def refresh(self) -> None:
        """
        Reload the registry from the store.

        Picks up sources created, changed or deleted by other processes. A
        degraded manager retries full initialization instead. Store outages
        are logged and leave the registry as it was.
        """
        if self._degraded:
            try:
                await self.initialize()
            except StoreUnavailable as e:
                logger.warning(f"Record store still unavailable: {e}")
            return

        try:
            stored = await asyncio.to_thread(self._store.list_sources)
        except StoreUnavailable as e:
            logger.warning(f"Could not refresh sources, keeping registry: {e}")
            return
        self._sources = {s.id: s for s in stored}

    async def load_source(self, source_id: str) -> EventSource | None:
        """
        Fetch the latest stored copy of a source into the registry.

        Falls back to the registry copy when the store is unreachable.
        """
        try:
            return await self._read_current(source_id)
        except StoreUnavailable as e:
            logger.warning(f"Could not reload source {source_id}, using cached copy: {e}")
            return self._sources.get(source_id)

    async def load_active_source(self, source_id: str) -> EventSource | None:
        source = await self.load_source(source_id)
        return source if source is not None and source.is_active else None

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_source(self, source_id: str) -> EventSource | None:
        return self._sources.get(source_id)

    def get_active_source(self, source_id: str) -> EventSource | None:
        source = self._sources.get(source_id)
        return source if source is not None and source.is_active else None

    def get_active_sources(self) -> list[EventSource]:
        return [s for s in self._sources.values() if s.is_active]

    def get_all_sources(self) -> list[EventSource]:
        return list(self._sources.values())

    def get_sources_by_type(self, source_type: SourceType | str) -> list[EventSource]:
        source_type = SourceType(source_type)
        return [s for s in self.get_active_sources() if s.source_type == source_type]

    def get_sources_due_for_scraping(self, now: datetime | None = None) -> list[EventSource]:
        """
        Active sources whose next run is due.

        Ordered oldest-due first; sources never scheduled come first.
        """
        now = now or datetime.now(UTC)
        due = [
            s
            for s in self.get_active_sources()
            if s.next_scrape_at is None or s.next_scrape_at <= now
        ]
        return sorted(
            due,
            key=lambda s: (s.next_scrape_at is not None, s.next_scrape_at or now),
        )

    def get_metrics(self) -> dict[str, int]:
        """Point-in-time registry snapshot."""
        active = self.get_active_sources()
        return {
            "total_sources": len(self._sources),
            "active_sources": len(active),
            "error_sources": sum(1 for s in active if s.error_count > 0),
            "sources_due": len(self.get_sources_due_for_scraping()),
        }
