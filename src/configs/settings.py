"""Centralized settings management for the Event Ingestion Core."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import make_url

from src.ingestion.deduplication import DeduplicationConfig, DeduplicationStrategy


class Settings(BaseSettings):
    """
    Application settings powered by pydantic-settings.

    Loads configuration from environment variables and a .env file located
    at the project root.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False

    # -------------------------------------------------------------------------
    # BACKING SERVICES
    # -------------------------------------------------------------------------
    # Without a database the record store lives in memory
    DATABASE_URL: str | None = None
    # Without a reachable broker jobs run inline (direct mode)
    REDIS_URL: str | None = None

    # -------------------------------------------------------------------------
    # QUEUE
    # -------------------------------------------------------------------------
    QUEUE_NAME: str = "event-scraping"
    SCRAPING_CONCURRENCY: int = Field(default=3, ge=1)
    JOB_ATTEMPTS: int = Field(default=3, ge=1)
    JOB_BACKOFF_SECONDS: float = Field(default=2.0, ge=0)
    REMOVE_ON_COMPLETE: int = Field(default=100, ge=0)
    REMOVE_ON_FAIL: int = Field(default=50, ge=0)
    # Lock a running job holds; it is recovered as stalled once the lock lapses
    JOB_LOCK_SECONDS: float = Field(default=30.0, gt=0)

    # -------------------------------------------------------------------------
    # SOURCES
    # -------------------------------------------------------------------------
    ERROR_THRESHOLD: int = Field(default=10, ge=1)
    DEFAULT_SCRAPE_FREQUENCY_HOURS: float = Field(default=24.0, gt=0)

    # -------------------------------------------------------------------------
    # DEDUPLICATION
    # -------------------------------------------------------------------------
    TITLE_SIMILARITY_THRESHOLD: float = Field(default=0.85, ge=0, le=1)
    LOCATION_SIMILARITY_THRESHOLD: float = Field(default=0.9, ge=0, le=1)
    TIME_SIMILARITY_THRESHOLD: float = Field(default=0.9, ge=0, le=1)
    TIME_TOLERANCE_MINUTES: float = Field(default=30.0, ge=0)
    COMBINED_SIMILARITY_THRESHOLD: float = Field(default=0.8, ge=0, le=1)
    ENABLE_FUZZY_MATCHING: bool = True
    # How duplicates within one run are collapsed: exact | fuzzy | composite
    IN_RUN_DEDUP_STRATEGY: DeduplicationStrategy = DeduplicationStrategy.EXACT
    VALIDATE_CANDIDATES: bool = True

    # -------------------------------------------------------------------------
    # SCHEDULER
    # -------------------------------------------------------------------------
    SCHEDULER_TICK_SECONDS: float = Field(default=900.0, gt=0)
    CLEANUP_INTERVAL_HOURS: float = Field(default=24.0, gt=0)
    MAX_QUEUE_SIZE: int = Field(default=1000, ge=1)
    MAX_CONCURRENT_SCRAPES: int = Field(default=3, ge=1)

    # -------------------------------------------------------------------------
    # PATHS
    # -------------------------------------------------------------------------
    BASE_DIR: Path = Path(__file__).resolve().parents[2]

    SOURCES_CONFIG_PATH: Path = BASE_DIR / "src" / "configs" / "sources.yaml"

    # -------------------------------------------------------------------------
    # CONFIGURATION
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        # Allow extra fields in .env but ignore them in the model
        extra="ignore",
    )

    def get_psycopg2_params(self) -> dict:
        """
        Parse DATABASE_URL into psycopg2-compatible connection parameters.

        Uses sqlalchemy.make_url for robust parsing of complex connection strings.

        Returns
        -------
        dict
            psycopg2 connection arguments (host, port, dbname, user, password).
        """
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is not configured")
        url = make_url(self.DATABASE_URL)
        return {
            "host": url.host,
            "port": url.port,
            "dbname": url.database,
            "user": url.username,
            "password": url.password,
        }

    def dedup_config(self) -> DeduplicationConfig:
        """Build the deduplication thresholds from settings."""
        return DeduplicationConfig(
            title_similarity_threshold=self.TITLE_SIMILARITY_THRESHOLD,
            location_similarity_threshold=self.LOCATION_SIMILARITY_THRESHOLD,
            time_similarity_threshold=self.TIME_SIMILARITY_THRESHOLD,
            time_tolerance_minutes=self.TIME_TOLERANCE_MINUTES,
            combined_similarity_threshold=self.COMBINED_SIMILARITY_THRESHOLD,
            enable_fuzzy_matching=self.ENABLE_FUZZY_MATCHING,
        )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns
    -------
    Settings
        The singleton settings instance.
    """
    return Settings()
