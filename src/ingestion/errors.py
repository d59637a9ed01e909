"""
Error taxonomy for the ingestion core.

- ValidationError: bad source definition, rejected before persistence
- SourceNotFoundError: an operation needs a source that does not exist
- FetchError: the extraction collaborator failed for a source
- StoreUnavailable: the durable record store cannot be reached
- ConcurrentUpdateError: a source write kept losing to concurrent writers
- BrokerUnavailable: the durable queue broker cannot be reached
"""


class ScrapingError(Exception):
    """Base class for ingestion errors."""


class ValidationError(ScrapingError):
    """A source definition failed validation."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class SourceNotFoundError(ScrapingError):
    """Raised by operations that must act on an existing source."""

    def __init__(self, source_id: str):
        super().__init__(f"Source '{source_id}' not found")
        self.source_id = source_id


class FetchError(ScrapingError):
    """Extraction failed for a source (unreachable, extractor raised, ...)."""

    def __init__(self, message: str, source_id: str | None = None):
        super().__init__(message)
        self.source_id = source_id


class StoreUnavailable(ScrapingError):
    """The durable record store is unreachable."""


class ConcurrentUpdateError(StoreUnavailable):
    """The store kept rejecting a conditional source write as stale."""


class BrokerUnavailable(ScrapingError):
    """The durable job broker is unreachable."""
