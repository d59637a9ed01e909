"""
Base Event Extractor.

Abstract base class defining the interface for extraction collaborators.
Implements the Strategy pattern: each source type gets the extractor that
knows how to turn it into structured candidates.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.ingestion.errors import FetchError
from src.schemas.scraping import EventSource, RawEventData, SourceType

logger = logging.getLogger(__name__)

# Fields an extracted item may carry, in RawEventData naming
CANDIDATE_FIELDS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "price",
    "image_url",
    "source_url",
)


@dataclass
class FetchResult:
    """
    Result of a data fetch operation.

    Raw items as delivered by the source, before mapping to candidates.
    """

    success: bool
    raw_data: list[Any] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    fetch_started_at: datetime | None = None
    fetch_ended_at: datetime | None = None

    @property
    def total_fetched(self) -> int:
        """Number of raw items fetched."""
        return len(self.raw_data)

    @property
    def duration_seconds(self) -> float:
        """Calculate fetch duration."""
        if self.fetch_started_at and self.fetch_ended_at:
            return (self.fetch_ended_at - self.fetch_started_at).total_seconds()
        return 0.0


def _lookup(item: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path inside a nested dict."""
    value: Any = item
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def map_item(
    source: EventSource,
    item: Any,
    field_map: dict[str, str] | None = None,
) -> RawEventData:
    """
    Map one raw item to a candidate.

    Args:
        source: Source the item came from
        item: Raw item; anything but a dict maps to an empty candidate, which
            the coordinator counts as malformed and skips
        field_map: Candidate field -> dotted path in the item. Unmapped
            fields are read from the key of the same name.

    Returns:
        RawEventData candidate (values stringified, empty values dropped)
    """
    if not isinstance(item, dict):
        logger.debug(f"Item from {source.name} is not an object: {item!r}")
        return RawEventData(source_id=source.id)

    field_map = field_map or {}
    values: dict[str, Any] = {}
    for name in CANDIDATE_FIELDS:
        raw = _lookup(item, field_map.get(name, name))
        if raw is None or raw == "":
            continue
        values[name] = str(raw)
    return RawEventData(source_id=source.id, **values)


class EventExtractor(ABC):
    """
    Abstract base class for extraction collaborators.

    Extractors fetch listings for a source and return structured
    candidates. Subclasses must implement ``extract`` and raise FetchError
    when the source cannot be fetched.
    """

    @abstractmethod
    async def extract(self, source: EventSource) -> list[RawEventData]:
        """
        Fetch candidates for a source.

        Args:
            source: Source to extract from

        Returns:
            List of candidates (may be empty)

        Raises:
            FetchError: If the source could not be fetched
        """
        pass

    async def close(self) -> None:
        """
        Release any resources held by the extractor.

        Override in subclasses that hold resources (e.g., HTTP clients).
        """
        pass

    async def __aenter__(self) -> "EventExtractor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class StaticEventExtractor(EventExtractor):
    """
    Extractor for manual sources.

    Candidates are declared inline under ``scrape_config["events"]``.
    """

    async def extract(self, source: EventSource) -> list[RawEventData]:
        items = source.scrape_config.get("events", [])
        if not isinstance(items, list):
            raise FetchError("scrape_config.events must be a list", source_id=source.id)
        field_map = source.scrape_config.get("fields")
        return [map_item(source, item, field_map) for item in items]


class ExtractorRegistry(EventExtractor):
    """Dispatch extraction by source type."""

    def __init__(self, extractors: dict[SourceType, EventExtractor] | None = None):
        self._extractors: dict[SourceType, EventExtractor] = dict(extractors or {})

    def register(self, source_type: SourceType, extractor: EventExtractor) -> None:
        """Register the extractor for a source type."""
        self._extractors[source_type] = extractor

    async def extract(self, source: EventSource) -> list[RawEventData]:
        extractor = self._extractors.get(source.source_type)
        if extractor is None:
            raise FetchError(
                f"No extractor registered for source type '{source.source_type.value}'",
                source_id=source.id,
            )
        return await extractor.extract(source)

    async def close(self) -> None:
        for extractor in self._extractors.values():
            await extractor.close()
