# Persistence layer for ingested data
"""
PostgreSQL Record Store.

Implements the RecordStore interface over three tables:

- event_sources: registered sources and their scheduling state
- events: the deduplicated event catalog
- scrape_jobs: job history (one row per ingestion run)

Each call runs in its own transaction on a pooled psycopg2 connection.
Connection-level failures surface as StoreUnavailable.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

import psycopg2
import psycopg2.pool
from psycopg2.extras import Json, RealDictCursor

from src.ingestion.errors import StoreUnavailable
from src.ingestion.store import RecordStore
from src.schemas.scraping import EventRecord, EventSource, ScrapeJobResult

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS event_sources (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    base_url TEXT NOT NULL,
    source_type TEXT NOT NULL,
    scrape_config JSONB NOT NULL DEFAULT '{}'::jsonb,
    scrape_frequency_hours DOUBLE PRECISION NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    error_count INTEGER NOT NULL DEFAULT 0 CHECK (error_count >= 0),
    last_error TEXT,
    last_scraped_at TIMESTAMPTZ,
    next_scrape_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    start_time TEXT,
    end_time TEXT,
    location TEXT,
    price TEXT,
    image_url TEXT,
    source_url TEXT,
    scrape_hash TEXT,
    quality_score INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    extracted_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS events_source_id_idx ON events (source_id);

CREATE TABLE IF NOT EXISTS scrape_jobs (
    job_id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    events_found INTEGER NOT NULL DEFAULT 0,
    events_created INTEGER NOT NULL DEFAULT 0,
    events_updated INTEGER NOT NULL DEFAULT 0,
    events_skipped INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    job_metadata JSONB NOT NULL DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS scrape_jobs_started_at_idx ON scrape_jobs (started_at);
"""

SOURCE_COLUMNS = (
    "id",
    "name",
    "base_url",
    "source_type",
    "scrape_config",
    "scrape_frequency_hours",
    "is_active",
    "error_count",
    "last_error",
    "last_scraped_at",
    "next_scrape_at",
    "created_at",
    "updated_at",
)

EVENT_COLUMNS = (
    "id",
    "source_id",
    "title",
    "description",
    "start_time",
    "end_time",
    "location",
    "price",
    "image_url",
    "source_url",
    "scrape_hash",
    "quality_score",
    "status",
    "extracted_at",
    "created_at",
    "updated_at",
)

JOB_COLUMNS = (
    "job_id",
    "source_id",
    "status",
    "started_at",
    "completed_at",
    "events_found",
    "events_created",
    "events_updated",
    "events_skipped",
    "error_message",
    "retry_count",
    "job_metadata",
)


def _upsert_sql(table: str, columns: tuple[str, ...], key: str) -> str:
    names = ", ".join(columns)
    placeholders = ", ".join(["%s"] * len(columns))
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != key)
    return (
        f"INSERT INTO {table} ({names}) VALUES ({placeholders}) "
        f"ON CONFLICT ({key}) DO UPDATE SET {updates}"
    )


class PostgresRecordStore(RecordStore):
    """
    RecordStore backed by PostgreSQL.

    Implements the 'Data Mapper' pattern between the pydantic records and
    the relational schema.
    """

    def __init__(self, conn_params: dict, minconn: int = 1, maxconn: int = 5) -> None:
        """
        Initialize the store.

        Args:
            conn_params: psycopg2 connection arguments (see Settings.get_psycopg2_params)
            minconn: Minimum pooled connections
            maxconn: Maximum pooled connections
        """
        self._conn_params = conn_params
        self._minconn = minconn
        self._maxconn = maxconn
        self._pool: psycopg2.pool.ThreadedConnectionPool | None = None

    def _get_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        if self._pool is None:
            try:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    self._minconn, self._maxconn, **self._conn_params
                )
            except psycopg2.OperationalError as e:
                raise StoreUnavailable(f"Cannot connect to PostgreSQL: {e}") from e
        return self._pool

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        """Yield a dict cursor inside a transaction."""
        pool = self._get_pool()
        try:
            conn = pool.getconn()
        except psycopg2.Error as e:
            raise StoreUnavailable(f"Cannot acquire PostgreSQL connection: {e}") from e

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            conn.rollback()
            raise StoreUnavailable(f"PostgreSQL connection lost: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            pool.putconn(conn)

    def ensure_schema(self) -> None:
        """Create tables if they do not exist."""
        with self._cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Record store schema ensured")

    def ping(self) -> None:
        with self._cursor() as cur:
            cur.execute("SELECT 1")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def list_sources(self) -> list[EventSource]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {', '.join(SOURCE_COLUMNS)} FROM event_sources ORDER BY created_at"
            )
            rows = cur.fetchall()
        return [EventSource.model_validate(dict(row)) for row in rows]

    def get_source(self, source_id: str) -> EventSource | None:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {', '.join(SOURCE_COLUMNS)} FROM event_sources WHERE id = %s",
                (source_id,),
            )
            row = cur.fetchone()
        return EventSource.model_validate(dict(row)) if row else None

    @staticmethod
    def _source_values(source: EventSource) -> dict:
        values = source.model_dump()
        values["source_type"] = source.source_type.value
        values["scrape_config"] = Json(source.scrape_config)
        return values

    def save_source(self, source: EventSource) -> None:
        values = self._source_values(source)
        with self._cursor() as cur:
            cur.execute(
                _upsert_sql("event_sources", SOURCE_COLUMNS, "id"),
                tuple(values[c] for c in SOURCE_COLUMNS),
            )

    def replace_source(self, source: EventSource, expected_updated_at: datetime | None) -> bool:
        values = self._source_values(source)
        columns = [c for c in SOURCE_COLUMNS if c not in ("id", "created_at")]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE event_sources SET {assignments} "
                "WHERE id = %s AND updated_at IS NOT DISTINCT FROM %s",
                tuple(values[c] for c in columns) + (source.id, expected_updated_at),
            )
            return cur.rowcount == 1

    def delete_source(self, source_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute("DELETE FROM event_sources WHERE id = %s", (source_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def list_events(self, source_id: str) -> list[EventRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {', '.join(EVENT_COLUMNS)} FROM events WHERE source_id = %s",
                (source_id,),
            )
            rows = cur.fetchall()
        return [EventRecord.model_validate(dict(row)) for row in rows]

    def create_event(self, event: EventRecord) -> str:
        values = event.model_dump()
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO events ({', '.join(EVENT_COLUMNS)}) "
                f"VALUES ({', '.join(['%s'] * len(EVENT_COLUMNS))})",
                tuple(values[c] for c in EVENT_COLUMNS),
            )
        return event.id

    def update_event(self, event: EventRecord) -> None:
        values = event.model_dump()
        columns = [c for c in EVENT_COLUMNS if c not in ("id", "created_at")]
        assignments = ", ".join(f"{c} = %s" for c in columns)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE events SET {assignments} WHERE id = %s",
                tuple(values[c] for c in columns) + (event.id,),
            )
            if cur.rowcount == 0:
                raise KeyError(f"Event '{event.id}' not found")

    # ------------------------------------------------------------------
    # Job history
    # ------------------------------------------------------------------

    def record_job(self, result: ScrapeJobResult) -> None:
        values = result.model_dump()
        values["status"] = result.status.value
        values["job_metadata"] = Json(result.metadata)
        with self._cursor() as cur:
            cur.execute(
                _upsert_sql("scrape_jobs", JOB_COLUMNS, "job_id"),
                tuple(values[c] for c in JOB_COLUMNS),
            )

    def list_jobs(self, since: datetime | None = None) -> list[ScrapeJobResult]:
        query = f"SELECT {', '.join(JOB_COLUMNS)} FROM scrape_jobs"
        params: tuple = ()
        if since is not None:
            query += " WHERE started_at >= %s"
            params = (since,)
        query += " ORDER BY started_at"

        with self._cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()

        results = []
        for row in rows:
            data = dict(row)
            data["metadata"] = data.pop("job_metadata") or {}
            results.append(ScrapeJobResult.model_validate(data))
        return results
