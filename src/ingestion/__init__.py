"""
Ingestion Layer for the Event Ingestion Core.

This package schedules, executes and records ingestion runs for external
event sources, and deduplicates their candidates against the catalog.

Key Components:
- SourceManager: Registry and lifecycle of sources (circuit breaker, due times)
- ScrapingScheduler: Periodically enqueues due sources
- EventScraperWorker / JobQueue: Queued (Redis) or direct job execution
- ScrapingService: Coordinates one ingestion run per source
- deduplication: Hashing, fuzzy matching, merge and quality scoring
"""
