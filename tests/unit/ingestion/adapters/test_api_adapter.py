"""
Unit tests for the APIEventExtractor.

HTTP is served by httpx.MockTransport; no network access.
"""

import asyncio
import json

import httpx
import pytest

from src.ingestion.adapters import APIEventExtractor
from src.ingestion.errors import FetchError

PAYLOAD = {
    "data": [
        {
            "name": "Jazz Night at the Blue Note",
            "summary": "Live quartet",
            "dates": {"start": "2030-06-01T20:00:00+00:00"},
            "venue": {"name": "Blue Note Club"},
            "price": {"display": "15 EUR"},
            "url": "https://api.example.org/events/1",
        },
        {"name": "Untimed Gathering"},
        "not-a-dict",
    ]
}

FIELDS = {
    "title": "name",
    "description": "summary",
    "start_time": "dates.start",
    "location": "venue.name",
    "price": "price.display",
    "source_url": "url",
}


def _extractor(handler, **kwargs) -> APIEventExtractor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("backoff_base_seconds", 0)
    return APIEventExtractor(client=client, **kwargs)


def _extract(extractor: APIEventExtractor, source):
    async def scenario():
        try:
            return await extractor.extract(source)
        finally:
            await extractor.close()

    return asyncio.run(scenario())


class TestExtract:
    """Request building and item mapping."""

    def test_maps_items(self, create_source):
        source = create_source(
            base_url="https://api.example.org/v1/events",
            scrape_config={"items_path": "data", "fields": FIELDS},
        )
        extractor = _extractor(lambda request: httpx.Response(200, json=PAYLOAD))

        candidates = _extract(extractor, source)

        assert len(candidates) == 3
        jazz = candidates[0]
        assert jazz.source_id == source.id
        assert jazz.title == "Jazz Night at the Blue Note"
        assert jazz.start_time == "2030-06-01T20:00:00+00:00"
        assert jazz.location == "Blue Note Club"
        assert jazz.price == "15 EUR"
        assert candidates[1].start_time is None
        # handed on for the coordinator to count as malformed
        assert candidates[2].title == ""

    def test_request_uses_config(self, create_source):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        source = create_source(
            scrape_config={
                "url": "https://api.example.org/search",
                "params": {"city": "barcelona"},
                "headers": {"X-Api-Key": "k"},
            }
        )

        assert _extract(_extractor(handler), source) == []
        assert seen[0].url.path == "/search"
        assert seen[0].url.params["city"] == "barcelona"
        assert seen[0].headers["X-Api-Key"] == "k"

    def test_top_level_data_key_by_default(self, create_source):
        extractor = _extractor(lambda request: httpx.Response(200, json={"data": [{"title": "A"}]}))
        assert [c.title for c in _extract(extractor, create_source())] == ["A"]


class TestErrors:
    """Failures surface as FetchError."""

    def test_retries_then_succeeds(self, create_source):
        responses = [httpx.Response(503), httpx.Response(200, json=[{"title": "A"}])]
        calls: list[int] = []

        def handler(request):
            calls.append(1)
            return responses[len(calls) - 1]

        candidates = _extract(_extractor(handler, max_retries=2), create_source())

        assert len(calls) == 2
        assert candidates[0].title == "A"

    def test_http_error_after_retries(self, create_source):
        calls: list[int] = []

        def handler(request):
            calls.append(1)
            return httpx.Response(500)

        with pytest.raises(FetchError, match="API fetch failed"):
            _extract(_extractor(handler, max_retries=2), create_source())
        assert len(calls) == 3

    def test_invalid_json(self, create_source):
        extractor = _extractor(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(FetchError, match="Invalid API response"):
            _extract(extractor, create_source())

    def test_missing_items_path(self, create_source):
        source = create_source(scrape_config={"items_path": "results.items"})
        extractor = _extractor(
            lambda request: httpx.Response(200, content=json.dumps({"results": {}}).encode())
        )
        with pytest.raises(FetchError):
            _extract(extractor, source)

    def test_close_releases_client(self):
        extractor = _extractor(lambda request: httpx.Response(200, json=[]))
        asyncio.run(extractor.close())
        assert extractor._client is None
