"""
Extraction collaborators for Event Ingestion.

Extractors turn a source into structured candidates:
- API sources (JSON over HTTP)
- Manual sources (candidates declared inline in scrape_config)

Usage:
    from src.ingestion.adapters import build_default_extractor

    extractor = build_default_extractor()
    candidates = await extractor.extract(source)
"""

from src.schemas.scraping import SourceType

from .api_adapter import APIEventExtractor
from .base_adapter import (
    EventExtractor,
    ExtractorRegistry,
    FetchResult,
    StaticEventExtractor,
    map_item,
)


def build_default_extractor() -> ExtractorRegistry:
    """Registry with the built-in extractors. Website parsing is not built in."""
    return ExtractorRegistry(
        {
            SourceType.API: APIEventExtractor(),
            SourceType.MANUAL: StaticEventExtractor(),
        }
    )


__all__ = [
    "EventExtractor",
    "ExtractorRegistry",
    "StaticEventExtractor",
    "APIEventExtractor",
    "FetchResult",
    "map_item",
    "build_default_extractor",
]
