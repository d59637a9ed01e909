"""
Job Queue.

Two implementations of one small interface, picked once at startup:

- RedisJobQueue (queued mode): durable, priority-ordered queue on Redis with
  bounded concurrency, retries with exponential backoff, delayed jobs,
  queue-wide pause and bounded job history. A running job holds a lock that
  its worker renews; a job whose lock lapses (worker crashed or lost Redis)
  is stalled and goes back to waiting, or to failed once out of attempts.
- DirectJobQueue (direct mode): runs each job inline in the caller's
  context, once, without retries or history.

Both refuse a job for a source that already has one outstanding.

Redis layout (``{p}`` is the queue prefix):

    {p}:wait       ZSET  job id -> priority/FIFO score
    {p}:delayed    ZSET  job id -> ready-at (epoch ms)
    {p}:active     ZSET  job id -> lock expiry (epoch ms), renewed while running
    {p}:completed  ZSET  job id -> finished-at (epoch ms)
    {p}:failed     ZSET  job id -> finished-at (epoch ms)
    {p}:inflight   SET   source ids with an outstanding job
    {p}:paused     STR   present while the queue is paused
    {p}:id         STR   job id counter
    {p}:job:{id}   HASH  job payload and state
"""

import asyncio
import functools
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError, WatchError

from src.ingestion.errors import BrokerUnavailable
from src.schemas.scraping import QueueStats, ScrapeJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[ScrapeJob], Awaitable[Any]]

# Priority dominates the waiting score; enqueue time (ms) breaks ties FIFO
PRIORITY_SCORE_FACTOR = 1e13


class JobState(str, Enum):
    """Lifecycle states of a queued job."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_mode: str = "exp"  # exp | fixed | none
    base_delay_s: float = 2.0
    max_delay_s: float = 3600.0

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N (the attempt that just failed)
        """
        if self.backoff_mode == "none":
            return 0.0
        if self.backoff_mode == "fixed":
            delay = self.base_delay_s
        else:
            # exponential
            delay = self.base_delay_s * (2 ** max(0, attempt - 1))
        return max(0.0, min(delay, self.max_delay_s))


@dataclass(frozen=True)
class QueueOptions:
    """Queued-mode tuning."""

    concurrency: int = 3
    attempts: int = 3
    backoff_delay_seconds: float = 2.0
    remove_on_complete: int = 100
    remove_on_fail: int = 50
    poll_interval_seconds: float = 0.5
    lock_duration_seconds: float = 30.0
    stalled_check_seconds: float = 30.0

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.attempts, base_delay_s=self.backoff_delay_seconds)


@dataclass
class JobInfo:
    """Snapshot of a queued job."""

    id: str
    state: JobState
    job: ScrapeJob
    attempts_made: int
    max_attempts: int
    failed_reason: str | None = None
    return_value: Any = None
    created_at: datetime | None = None
    finished_at: datetime | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _from_ms(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(float(value)) / 1000, tz=UTC)


def _encode_result(result: Any) -> str:
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    return json.dumps(result, default=str)


def _broker_errors(func):
    """Surface Redis failures as BrokerUnavailable."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (RedisError, OSError) as e:
            raise BrokerUnavailable(f"Redis error during {func.__name__}: {e}") from e

    return wrapper


class JobQueue(ABC):
    """Interface shared by queued and direct mode."""

    @property
    @abstractmethod
    def is_queue_mode(self) -> bool:
        pass

    @abstractmethod
    async def start(self, handler: JobHandler) -> None:
        """Bind the job handler and begin processing."""
        pass

    @abstractmethod
    async def enqueue(
        self,
        job: ScrapeJob,
        delay_seconds: float = 0,
        attempts: int | None = None,
    ) -> str | None:
        """
        Submit a job.

        Returns:
            The job id, or None when the source already has an outstanding job
        """
        pass

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        pass

    @abstractmethod
    async def pause(self) -> None:
        pass

    @abstractmethod
    async def resume(self) -> None:
        pass

    @abstractmethod
    async def retry_failed(self) -> int:
        """Re-enqueue every failed job. Returns how many were re-enqueued."""
        pass

    @abstractmethod
    async def clean(
        self, grace_seconds: float, state: JobState | str = JobState.COMPLETED
    ) -> list[str]:
        """Purge terminal jobs older than the grace period. Returns removed ids."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> JobInfo | None:
        pass

    @abstractmethod
    async def is_outstanding(self, source_id: str) -> bool:
        """True while a job for the source is waiting, delayed or active."""
        pass

    async def close(self) -> None:
        pass


# ============================================================================
# QUEUED MODE
# ============================================================================


class RedisJobQueue(JobQueue):
    """
    Durable priority queue on Redis.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        name: str = "event-scraping",
        options: QueueOptions | None = None,
        owns_client: bool = False,
    ):
        """
        Initialize the queue.

        Args:
            client: redis.asyncio client (decode_responses=True)
            name: Queue name, used as key prefix
            options: Concurrency, retry and retention settings
            owns_client: Close the client when the queue is closed
        """
        self._redis = client
        self.name = name
        self.options = options or QueueOptions()
        self._retry_policy = self.options.retry_policy
        self._owns_client = owns_client

        self._prefix = f"ingest:{name}"
        self._handler: JobHandler | None = None
        self._tasks: list[asyncio.Task] = []
        self._closing = False
        self._last_stall_check = float("-inf")

    @classmethod
    async def connect(
        cls,
        url: str,
        name: str = "event-scraping",
        options: QueueOptions | None = None,
    ) -> "RedisJobQueue":
        """
        Connect to Redis and verify it answers PING.

        Raises:
            BrokerUnavailable: If Redis cannot be reached
        """
        client = aioredis.from_url(url, decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise BrokerUnavailable(f"Redis at {url} is unreachable: {e}") from e
        return cls(client, name=name, options=options, owns_client=True)

    @property
    def is_queue_mode(self) -> bool:
        return True

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    @staticmethod
    def _wait_score(priority: int, enqueued_ms: int) -> float:
        return -priority * PRIORITY_SCORE_FACTOR + enqueued_ms

    def _lock_expiry(self) -> int:
        return _now_ms() + int(self.options.lock_duration_seconds * 1000)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    @_broker_errors
    async def enqueue(
        self,
        job: ScrapeJob,
        delay_seconds: float = 0,
        attempts: int | None = None,
    ) -> str | None:
        if not await self._redis.sadd(self._key("inflight"), job.source_id):
            logger.info(f"Job for source {job.source_name} already outstanding, not enqueued")
            return None

        job_id = str(await self._redis.incr(self._key("id")))
        now = _now_ms()
        delayed = delay_seconds > 0
        state = JobState.DELAYED if delayed else JobState.WAITING

        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(
            self._job_key(job_id),
            mapping={
                "data": job.model_dump_json(),
                "source_id": job.source_id,
                "priority": int(job.priority),
                "state": state.value,
                "attempts_made": 0,
                "max_attempts": attempts or self.options.attempts,
                "created_at": now,
            },
        )
        if delayed:
            pipe.zadd(self._key("delayed"), {job_id: now + int(delay_seconds * 1000)})
        else:
            pipe.zadd(self._key("wait"), {job_id: self._wait_score(job.priority, now)})
        await pipe.execute()

        logger.debug(f"Enqueued job {job_id} for {job.source_name} ({state.value})")
        return job_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def bind(self, handler: JobHandler) -> None:
        """Set the handler without starting worker tasks."""
        self._handler = handler

    async def start(self, handler: JobHandler) -> None:
        self.bind(handler)
        if self._tasks:
            return
        self._closing = False
        await self._check_stalled()
        self._tasks = [
            asyncio.create_task(self._worker_loop(n), name=f"{self.name}-worker-{n}")
            for n in range(self.options.concurrency)
        ]
        logger.info(f"Queue {self.name} started with {self.options.concurrency} workers")

    async def _worker_loop(self, worker_no: int) -> None:
        while not self._closing:
            try:
                if worker_no == 0:
                    await self._check_stalled()
                job_id = await self.process_next()
            except BrokerUnavailable as e:
                logger.warning(f"Worker {worker_no} lost Redis, retrying: {e}")
                job_id = None
            if job_id is None:
                await asyncio.sleep(self.options.poll_interval_seconds)

    async def _check_stalled(self) -> None:
        """Run ``recover_stalled`` at most once per ``stalled_check_seconds``."""
        now = time.monotonic()
        if now - self._last_stall_check < self.options.stalled_check_seconds:
            return
        self._last_stall_check = now
        try:
            await self.recover_stalled()
        except BrokerUnavailable as e:
            logger.warning(f"Stalled job check skipped: {e}")

    @_broker_errors
    async def recover_stalled(self) -> list[str]:
        """
        Release active jobs whose lock has lapsed.

        A stalled job counts as a failed attempt: it goes back to waiting
        while attempts remain, otherwise it is failed and its source is
        released.

        Returns:
            Ids of the recovered jobs
        """
        expired = await self._redis.zrangebyscore(self._key("active"), "-inf", _now_ms())
        recovered = [job_id for job_id in expired if await self._recover_one(job_id)]
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled jobs: {', '.join(recovered)}")
        return recovered

    async def _recover_one(self, job_id: str) -> bool:
        active_key = self._key("active")
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(active_key, self._job_key(job_id))
                lock = await pipe.zscore(active_key, job_id)
                if lock is None or lock > _now_ms():
                    # finished or renewed since the scan
                    return False
                data = await pipe.hgetall(self._job_key(job_id))

                pipe.multi()
                pipe.zrem(active_key, job_id)
                if not data:
                    await pipe.execute()
                    return False

                now = _now_ms()
                attempts_made = int(data["attempts_made"]) + 1
                fields: dict[str, Any] = {
                    "attempts_made": attempts_made,
                    "failed_reason": "job stalled",
                }
                if attempts_made < int(data["max_attempts"]):
                    fields["state"] = JobState.WAITING.value
                    score = self._wait_score(int(data["priority"]), now)
                    pipe.zadd(self._key("wait"), {job_id: score})
                else:
                    fields["state"] = JobState.FAILED.value
                    fields["finished_at"] = now
                    pipe.zadd(self._key("failed"), {job_id: now})
                    pipe.srem(self._key("inflight"), data["source_id"])
                pipe.hset(self._job_key(job_id), mapping=fields)
                await pipe.execute()
            except WatchError:
                # touched concurrently; the next check sees its new state
                return False
        return True

    @_broker_errors
    async def _promote_delayed(self) -> int:
        """Move delayed jobs whose time has come to the waiting set."""
        ready = await self._redis.zrangebyscore(self._key("delayed"), "-inf", _now_ms())
        promoted = 0
        for job_id in ready:
            # zrem is the claim; another worker may have promoted it already
            if not await self._redis.zrem(self._key("delayed"), job_id):
                continue
            priority = await self._redis.hget(self._job_key(job_id), "priority")
            await self._redis.hset(self._job_key(job_id), "state", JobState.WAITING.value)
            await self._redis.zadd(
                self._key("wait"), {job_id: self._wait_score(int(priority or 0), _now_ms())}
            )
            promoted += 1
        return promoted

    @_broker_errors
    async def process_next(self) -> str | None:
        """
        Process at most one job.

        Returns:
            The processed job id, or None if nothing was ready (or paused)
        """
        if self._handler is None:
            raise RuntimeError("Queue has no handler; call start() first")
        if await self._redis.exists(self._key("paused")):
            return None

        await self._promote_delayed()
        job_id = await self._claim_next()
        if job_id is None:
            return None

        await self._run(job_id)
        return job_id

    async def _claim_next(self) -> str | None:
        """Move the head of the waiting set to active in one transaction."""
        wait_key = self._key("wait")
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(wait_key)
                    head = await pipe.zrange(wait_key, 0, 0)
                    if not head:
                        return None
                    job_id = head[0]
                    pipe.multi()
                    pipe.zrem(wait_key, job_id)
                    pipe.zadd(self._key("active"), {job_id: self._lock_expiry()})
                    pipe.hset(self._job_key(job_id), "state", JobState.ACTIVE.value)
                    await pipe.execute()
                    return job_id
                except WatchError:
                    continue

    async def _renew_lock(self, job_id: str) -> None:
        """Push the job's lock expiry forward until cancelled."""
        interval = self.options.lock_duration_seconds / 2
        while True:
            await asyncio.sleep(interval)
            try:
                # xx: never resurrect a job that was recovered as stalled
                await self._redis.zadd(
                    self._key("active"), {job_id: self._lock_expiry()}, xx=True
                )
            except (RedisError, OSError) as e:
                logger.warning(f"Could not renew lock of job {job_id}: {e}")

    async def _release(self, job_id: str, priority: int) -> None:
        """Return an interrupted job to the head of its priority band."""
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._key("active"), job_id)
        pipe.hset(self._job_key(job_id), "state", JobState.WAITING.value)
        pipe.zadd(self._key("wait"), {job_id: self._wait_score(priority, 0)})
        await pipe.execute()

    async def _run(self, job_id: str) -> None:
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            await self._redis.zrem(self._key("active"), job_id)
            return

        attempts_made = int(data["attempts_made"]) + 1
        max_attempts = int(data["max_attempts"])
        job = ScrapeJob.model_validate_json(data["data"])
        job.retry_count = attempts_made - 1

        lock = asyncio.create_task(self._renew_lock(job_id))
        try:
            result = await self._handler(job)
        except asyncio.CancelledError:
            try:
                await self._release(job_id, int(data["priority"]))
                logger.warning(f"Job {job_id} for {job.source_name} interrupted, back to waiting")
            except (RedisError, OSError) as e:
                logger.warning(f"Job {job_id} left active until its lock lapses: {e}")
            raise
        except Exception as e:
            if attempts_made < max_attempts:
                await self._schedule_retry(job_id, attempts_made, e)
            else:
                await self._finish(
                    job_id, job, JobState.FAILED, attempts_made, failed_reason=str(e)
                )
                logger.error(
                    f"Job {job_id} for {job.source_name} failed after {attempts_made} attempts: {e}"
                )
            return
        finally:
            lock.cancel()

        await self._finish(job_id, job, JobState.COMPLETED, attempts_made, return_value=result)
        logger.info(f"Job {job_id} for {job.source_name} completed")

    async def _schedule_retry(self, job_id: str, attempts_made: int, error: Exception) -> None:
        delay = self._retry_policy.compute_backoff_s(attempts_made)
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._key("active"), job_id)
        pipe.hset(
            self._job_key(job_id),
            mapping={
                "state": JobState.DELAYED.value,
                "attempts_made": attempts_made,
                "failed_reason": str(error),
            },
        )
        pipe.zadd(self._key("delayed"), {job_id: _now_ms() + int(delay * 1000)})
        await pipe.execute()
        logger.warning(
            f"Job {job_id} attempt {attempts_made} failed, retrying in {delay}s: {error}"
        )

    async def _finish(
        self,
        job_id: str,
        job: ScrapeJob,
        state: JobState,
        attempts_made: int,
        failed_reason: str | None = None,
        return_value: Any = None,
    ) -> None:
        now = _now_ms()
        fields: dict[str, Any] = {
            "state": state.value,
            "attempts_made": attempts_made,
            "finished_at": now,
        }
        if failed_reason is not None:
            fields["failed_reason"] = failed_reason
        if return_value is not None:
            fields["return_value"] = _encode_result(return_value)

        set_key = self._key(state.value)
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._key("active"), job_id)
        pipe.srem(self._key("inflight"), job.source_id)
        pipe.hset(self._job_key(job_id), mapping=fields)
        pipe.zadd(set_key, {job_id: now})
        await pipe.execute()

        keep = (
            self.options.remove_on_complete
            if state == JobState.COMPLETED
            else self.options.remove_on_fail
        )
        await self._trim(set_key, keep)

    async def _trim(self, set_key: str, keep: int) -> None:
        """Keep only the newest ``keep`` jobs in a terminal set."""
        count = await self._redis.zcard(set_key)
        excess = count - keep
        if excess <= 0:
            return
        stale = await self._redis.zrange(set_key, 0, excess - 1)
        if not stale:
            return
        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(set_key, *stale)
        pipe.delete(*[self._job_key(j) for j in stale])
        await pipe.execute()

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    @_broker_errors
    async def get_stats(self) -> QueueStats:
        pipe = self._redis.pipeline(transaction=False)
        pipe.zcard(self._key("wait"))
        pipe.zcard(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        pipe.zcard(self._key("delayed"))
        pipe.exists(self._key("paused"))
        waiting, active, completed, failed, delayed, paused = await pipe.execute()

        stats = QueueStats(
            waiting=waiting, active=active, completed=completed, failed=failed, delayed=delayed
        )
        if paused:
            stats.paused, stats.waiting = stats.waiting, 0
        return stats

    @_broker_errors
    async def pause(self) -> None:
        await self._redis.set(self._key("paused"), "1")
        logger.info(f"Queue {self.name} paused")

    @_broker_errors
    async def resume(self) -> None:
        await self._redis.delete(self._key("paused"))
        logger.info(f"Queue {self.name} resumed")

    @_broker_errors
    async def retry_failed(self) -> int:
        failed = await self._redis.zrange(self._key("failed"), 0, -1)
        retried = 0
        for job_id in failed:
            data = await self._redis.hgetall(self._job_key(job_id))
            if not data:
                await self._redis.zrem(self._key("failed"), job_id)
                continue
            if not await self._redis.sadd(self._key("inflight"), data["source_id"]):
                # a newer job for this source is already outstanding
                continue

            now = _now_ms()
            pipe = self._redis.pipeline(transaction=True)
            pipe.zrem(self._key("failed"), job_id)
            pipe.hset(
                self._job_key(job_id),
                mapping={"state": JobState.WAITING.value, "attempts_made": 0},
            )
            pipe.hdel(self._job_key(job_id), "finished_at", "failed_reason")
            pipe.zadd(self._key("wait"), {job_id: self._wait_score(int(data["priority"]), now)})
            await pipe.execute()
            retried += 1

        logger.info(f"Retrying {retried} failed jobs")
        return retried

    @_broker_errors
    async def clean(
        self, grace_seconds: float, state: JobState | str = JobState.COMPLETED
    ) -> list[str]:
        state = JobState(state)
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Can only clean terminal states, got '{state.value}'")

        set_key = self._key(state.value)
        cutoff = _now_ms() - int(grace_seconds * 1000)
        stale = await self._redis.zrangebyscore(set_key, "-inf", cutoff)
        if stale:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zrem(set_key, *stale)
            pipe.delete(*[self._job_key(j) for j in stale])
            await pipe.execute()

        logger.info(f"Cleaned {len(stale)} {state.value} jobs from the queue")
        return list(stale)

    @_broker_errors
    async def get_job(self, job_id: str) -> JobInfo | None:
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return_value = data.get("return_value")
        return JobInfo(
            id=job_id,
            state=JobState(data["state"]),
            job=ScrapeJob.model_validate_json(data["data"]),
            attempts_made=int(data["attempts_made"]),
            max_attempts=int(data["max_attempts"]),
            failed_reason=data.get("failed_reason") or None,
            return_value=json.loads(return_value) if return_value else None,
            created_at=_from_ms(data.get("created_at")),
            finished_at=_from_ms(data.get("finished_at")),
        )

    @_broker_errors
    async def is_outstanding(self, source_id: str) -> bool:
        return bool(await self._redis.sismember(self._key("inflight"), source_id))

    async def close(self, timeout: float = 30.0) -> None:
        """Stop workers after their current job, then release the client."""
        self._closing = True
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []
        if self._owns_client:
            await self._redis.aclose()
        logger.info(f"Queue {self.name} closed")


# ============================================================================
# DIRECT MODE
# ============================================================================


class DirectJobQueue(JobQueue):
    """
    Inline execution without a broker.

    Each enqueued job runs once, immediately, in the caller's task. There is
    no retry, no delay and no job history, so stats are always zero.
    """

    def __init__(self) -> None:
        self._handler: JobHandler | None = None
        self._running: set[str] = set()

    @property
    def is_queue_mode(self) -> bool:
        return False

    async def start(self, handler: JobHandler) -> None:
        self._handler = handler

    async def enqueue(
        self,
        job: ScrapeJob,
        delay_seconds: float = 0,
        attempts: int | None = None,
    ) -> str | None:
        if self._handler is None:
            raise RuntimeError("Queue has no handler; call start() first")
        if job.source_id in self._running:
            logger.info(f"Job for source {job.source_name} already running, not started")
            return None
        if delay_seconds > 0:
            logger.warning(f"Direct mode ignores delays; running {job.source_name} now")

        job_id = str(uuid.uuid4())
        self._running.add(job.source_id)
        try:
            await self._handler(job)
        except Exception as e:
            logger.error(f"Direct job for {job.source_name} failed: {e}")
        finally:
            self._running.discard(job.source_id)
        return job_id

    async def get_stats(self) -> QueueStats:
        return QueueStats()

    async def pause(self) -> None:
        logger.info("Direct mode: pause is a no-op")

    async def resume(self) -> None:
        logger.info("Direct mode: resume is a no-op")

    async def retry_failed(self) -> int:
        logger.info("Direct mode: no failed jobs are kept")
        return 0

    async def clean(
        self, grace_seconds: float, state: JobState | str = JobState.COMPLETED
    ) -> list[str]:
        logger.info("Direct mode: no job history to clean")
        return []

    async def get_job(self, job_id: str) -> JobInfo | None:
        return None

    async def is_outstanding(self, source_id: str) -> bool:
        return source_id in self._running
