"""
API Event Extractor.

Extractor for sources that publish their listings as JSON over HTTP.

The source's ``scrape_config`` drives the request and the mapping:

- ``url``: endpoint to call (defaults to the source base URL)
- ``params`` / ``headers``: passed through to the request
- ``items_path``: dotted path to the list of items in the response
- ``fields``: candidate field -> dotted path inside each item
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from src.ingestion.errors import FetchError
from src.schemas.scraping import EventSource, RawEventData

from .base_adapter import EventExtractor, FetchResult, _lookup, map_item

logger = logging.getLogger(__name__)


class APIEventExtractor(EventExtractor):
    """
    Extractor for JSON API sources.

    Features:
    - Shared async HTTP client
    - Retry logic with exponential backoff
    - Configurable item path and field mapping per source
    """

    def __init__(
        self,
        request_timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the extractor.

        Args:
            request_timeout: Per-request timeout in seconds
            max_retries: Retries after the first failed request
            backoff_base_seconds: Delay before the first retry, doubled each retry
            client: Optional pre-built HTTP client (used by tests)
        """
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "User-Agent": "event-ingestion-core/0.1",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def fetch(self, source: EventSource) -> FetchResult:
        """
        Fetch raw items for a source.

        Args:
            source: Source to fetch

        Returns:
            FetchResult with the raw items
        """
        config = source.scrape_config
        fetch_started = datetime.now(UTC)
        url = config.get("url") or source.base_url

        payload = await self._make_request(
            self._get_client(),
            url,
            params=config.get("params") or {},
            headers=config.get("headers") or {},
        )
        items = self._parse_items(payload, config.get("items_path"))

        return FetchResult(
            success=True,
            raw_data=items,
            metadata={"url": url, "api_calls": 1},
            fetch_started_at=fetch_started,
            fetch_ended_at=datetime.now(UTC),
        )

    async def extract(self, source: EventSource) -> list[RawEventData]:
        try:
            result = await self.fetch(source)
        except httpx.HTTPError as e:
            raise FetchError(f"API fetch failed: {e}", source_id=source.id) from e
        except ValueError as e:
            raise FetchError(f"Invalid API response: {e}", source_id=source.id) from e

        field_map = source.scrape_config.get("fields")
        candidates = [map_item(source, item, field_map) for item in result.raw_data]
        logger.info(
            f"Fetched {result.total_fetched} items from {source.name} "
            f"in {result.duration_seconds:.2f}s"
        )
        return candidates

    async def _make_request(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict,
        headers: dict,
        retry_count: int = 0,
    ) -> Any:
        """
        Make HTTP request with retry logic.

        Args:
            client: Async HTTP client
            url: Endpoint
            params: Query parameters
            headers: Extra request headers
            retry_count: Current retry attempt

        Returns:
            Decoded JSON response

        Raises:
            httpx.HTTPError: After the last retry failed
        """
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            return response.json()

        except httpx.HTTPError as e:
            if retry_count < self.max_retries:
                wait_time = self.backoff_base_seconds * 2**retry_count
                logger.warning(f"Request to {url} failed, retrying in {wait_time}s: {e}")
                await asyncio.sleep(wait_time)
                return await self._make_request(client, url, params, headers, retry_count + 1)

            logger.error(f"Request to {url} failed after {retry_count} retries: {e}")
            raise

    def _parse_items(self, payload: Any, items_path: str | None) -> list[Any]:
        """Locate the list of items in a response."""
        if items_path:
            items = _lookup(payload, items_path) if isinstance(payload, dict) else None
        elif isinstance(payload, list):
            items = payload
        elif isinstance(payload, dict) and "data" in payload:
            items = payload["data"]
        else:
            items = None

        if not isinstance(items, list):
            raise ValueError(f"expected a list of items at '{items_path or 'data'}'")
        return items

    async def close(self) -> None:
        """Close async HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
