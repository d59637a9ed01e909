"""
Unit tests for the job queue.

RedisJobQueue runs against fakeredis; jobs are processed one at a time
with ``process_next()`` so no worker tasks are involved.
"""

import asyncio

import fakeredis
import pytest

from src.ingestion.job_queue import (
    DirectJobQueue,
    JobState,
    QueueOptions,
    RedisJobQueue,
    RetryPolicy,
)
from src.schemas.scraping import JobPriority, ScrapeJob

# =============================================================================
# HELPERS
# =============================================================================


def _job(source_id: str = "source-1", priority: int = JobPriority.NORMAL) -> ScrapeJob:
    return ScrapeJob(source_id=source_id, source_name=f"Source {source_id}", priority=priority)


class RecordingHandler:
    """Job handler that records calls and fails a scripted number of times."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[ScrapeJob] = []

    async def __call__(self, job: ScrapeJob):
        self.calls.append(job)
        if len(self.calls) <= self.failures:
            raise RuntimeError(f"attempt {len(self.calls)} failed")
        return {"source_id": job.source_id}


def _make_queue(handler=None, server=None, **options) -> RedisJobQueue:
    server = server or fakeredis.FakeServer()
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    defaults = {"backoff_delay_seconds": 0}
    defaults.update(options)
    queue = RedisJobQueue(client, name="test", options=QueueOptions(**defaults))
    queue.bind(handler or RecordingHandler())
    return queue


# =============================================================================
# RETRY POLICY
# =============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy.compute_backoff_s."""

    def test_exponential(self):
        policy = RetryPolicy(base_delay_s=2.0)
        assert [policy.compute_backoff_s(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay_s=2.0, max_delay_s=5.0)
        assert policy.compute_backoff_s(10) == 5.0

    def test_fixed_and_none(self):
        assert RetryPolicy(backoff_mode="fixed", base_delay_s=3).compute_backoff_s(4) == 3
        assert RetryPolicy(backoff_mode="none").compute_backoff_s(4) == 0.0


# =============================================================================
# QUEUED MODE
# =============================================================================


class TestEnqueue:
    """Submission and the one-job-per-source rule."""

    def test_enqueue_returns_id(self):
        async def scenario():
            queue = _make_queue()
            job_id = await queue.enqueue(_job())
            return job_id, await queue.get_stats()

        job_id, stats = asyncio.run(scenario())
        assert job_id == "1"
        assert stats.waiting == 1

    def test_outstanding_source_is_refused(self):
        async def scenario():
            queue = _make_queue()
            first = await queue.enqueue(_job("a"))
            second = await queue.enqueue(_job("a"))
            other = await queue.enqueue(_job("b"))
            return first, second, other, await queue.is_outstanding("a")

        first, second, other, outstanding = asyncio.run(scenario())
        assert first is not None
        assert second is None
        assert other is not None
        assert outstanding is True

    def test_source_can_be_enqueued_again_after_completion(self):
        async def scenario():
            queue = _make_queue()
            await queue.enqueue(_job("a"))
            await queue.process_next()
            return await queue.enqueue(_job("a")), await queue.is_outstanding("a")

        job_id, outstanding = asyncio.run(scenario())
        assert job_id is not None
        assert outstanding is True

    def test_delayed_job_waits(self):
        async def scenario():
            handler = RecordingHandler()
            queue = _make_queue(handler)
            await queue.enqueue(_job(), delay_seconds=60)
            processed = await queue.process_next()
            return processed, await queue.get_stats(), handler

        processed, stats, handler = asyncio.run(scenario())
        assert processed is None
        assert stats.delayed == 1
        assert handler.calls == []


class TestProcessing:
    """Ordering, retries and terminal states."""

    def test_priority_order(self):
        async def scenario():
            handler = RecordingHandler()
            queue = _make_queue(handler)
            await queue.enqueue(_job("low", JobPriority.LOW))
            await queue.enqueue(_job("normal", JobPriority.NORMAL))
            await queue.enqueue(_job("high", JobPriority.HIGH))
            while await queue.process_next():
                pass
            return handler

        handler = asyncio.run(scenario())
        assert [j.source_id for j in handler.calls] == ["high", "normal", "low"]

    def test_fifo_within_priority(self):
        async def scenario():
            handler = RecordingHandler()
            queue = _make_queue(handler)
            await queue.enqueue(_job("first"))
            await queue.enqueue(_job("second"))
            while await queue.process_next():
                pass
            return handler

        handler = asyncio.run(scenario())
        assert [j.source_id for j in handler.calls] == ["first", "second"]

    def test_success_marks_completed(self):
        async def scenario():
            queue = _make_queue()
            job_id = await queue.enqueue(_job("a"))
            await queue.process_next()
            return await queue.get_job(job_id), await queue.get_stats()

        info, stats = asyncio.run(scenario())
        assert info.state == JobState.COMPLETED
        assert info.attempts_made == 1
        assert info.return_value == {"source_id": "a"}
        assert info.finished_at is not None
        assert stats.completed == 1
        assert stats.pending == 0

    def test_retries_then_succeeds(self):
        async def scenario():
            handler = RecordingHandler(failures=2)
            queue = _make_queue(handler, attempts=3)
            job_id = await queue.enqueue(_job())
            for _ in range(3):
                await queue.process_next()
            return handler, await queue.get_job(job_id)

        handler, info = asyncio.run(scenario())
        assert [j.retry_count for j in handler.calls] == [0, 1, 2]
        assert info.state == JobState.COMPLETED
        assert info.attempts_made == 3

    def test_exhausted_attempts_mark_failed(self):
        async def scenario():
            handler = RecordingHandler(failures=10)
            queue = _make_queue(handler, attempts=3)
            job_id = await queue.enqueue(_job("a"))
            for _ in range(5):
                await queue.process_next()
            return (
                handler,
                await queue.get_job(job_id),
                await queue.get_stats(),
                await queue.is_outstanding("a"),
            )

        handler, info, stats, outstanding = asyncio.run(scenario())
        assert len(handler.calls) == 3
        assert info.state == JobState.FAILED
        assert info.failed_reason == "attempt 3 failed"
        assert stats.failed == 1
        assert outstanding is False

    def test_per_job_attempts_override(self):
        async def scenario():
            handler = RecordingHandler(failures=10)
            queue = _make_queue(handler, attempts=3)
            job_id = await queue.enqueue(_job(), attempts=1)
            await queue.process_next()
            return handler, await queue.get_job(job_id)

        handler, info = asyncio.run(scenario())
        assert len(handler.calls) == 1
        assert info.state == JobState.FAILED

    def test_retention_trims_history(self):
        async def scenario():
            queue = _make_queue(remove_on_complete=2)
            ids = []
            for n in range(3):
                ids.append(await queue.enqueue(_job(f"s{n}")))
                await queue.process_next()
            return ids, await queue.get_stats(), await queue.get_job(ids[0])

        ids, stats, oldest = asyncio.run(scenario())
        assert stats.completed == 2
        assert oldest is None

    def test_requires_handler(self):
        client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        queue = RedisJobQueue(client)
        with pytest.raises(RuntimeError):
            asyncio.run(queue.process_next())


class TestManagement:
    """Pause, retry, clean."""

    def test_pause_and_resume(self):
        async def scenario():
            handler = RecordingHandler()
            queue = _make_queue(handler)
            await queue.enqueue(_job())
            await queue.pause()
            paused_result = await queue.process_next()
            paused_stats = await queue.get_stats()
            await queue.resume()
            resumed_result = await queue.process_next()
            return paused_result, paused_stats, resumed_result, handler

        paused_result, paused_stats, resumed_result, handler = asyncio.run(scenario())
        assert paused_result is None
        assert paused_stats.paused == 1
        assert paused_stats.waiting == 0
        assert paused_stats.pending == 1
        assert resumed_result is not None
        assert len(handler.calls) == 1

    def test_retry_failed(self):
        async def scenario():
            handler = RecordingHandler(failures=1)
            queue = _make_queue(handler, attempts=1)
            job_id = await queue.enqueue(_job("a"))
            await queue.process_next()
            retried = await queue.retry_failed()
            stats = await queue.get_stats()
            await queue.process_next()
            return retried, stats, await queue.get_job(job_id)

        retried, stats, info = asyncio.run(scenario())
        assert retried == 1
        assert stats.failed == 0
        assert stats.waiting == 1
        assert info.state == JobState.COMPLETED

    def test_retry_skips_source_with_newer_job(self):
        async def scenario():
            queue = _make_queue(RecordingHandler(failures=1), attempts=1)
            await queue.enqueue(_job("a"))
            await queue.process_next()
            await queue.enqueue(_job("a"))
            return await queue.retry_failed()

        assert asyncio.run(scenario()) == 0

    def test_clean_completed(self):
        async def scenario():
            queue = _make_queue()
            job_id = await queue.enqueue(_job())
            await queue.process_next()
            kept = await queue.clean(grace_seconds=3600, state=JobState.COMPLETED)
            removed = await queue.clean(grace_seconds=0, state="completed")
            return job_id, kept, removed, await queue.get_stats()

        job_id, kept, removed, stats = asyncio.run(scenario())
        assert kept == []
        assert removed == [job_id]
        assert stats.completed == 0

    def test_clean_rejects_non_terminal_state(self):
        queue = _make_queue()
        with pytest.raises(ValueError):
            asyncio.run(queue.clean(0, JobState.WAITING))

    def test_close_stops_workers(self):
        async def scenario():
            queue = _make_queue(poll_interval_seconds=0.01, concurrency=2)
            handler = RecordingHandler()
            await queue.enqueue(_job())
            await queue.start(handler)
            for _ in range(50):
                if handler.calls:
                    break
                await asyncio.sleep(0.01)
            await queue.close(timeout=1)
            return handler, queue

        handler, queue = asyncio.run(scenario())
        assert len(handler.calls) == 1
        assert queue._tasks == []


class TestStalledJobs:
    """Jobs whose worker died or was interrupted are not left active."""

    def test_interrupted_job_returns_to_waiting(self):
        async def scenario():
            server = fakeredis.FakeServer()
            started = asyncio.Event()

            async def slow(job):
                started.set()
                await asyncio.sleep(10)

            queue = _make_queue(server=server, poll_interval_seconds=0.01, concurrency=1)
            job_id = await queue.enqueue(_job("a"))
            await queue.start(slow)
            await asyncio.wait_for(started.wait(), timeout=1)
            await queue.close(timeout=0.05)

            handler = RecordingHandler()
            restarted = _make_queue(handler, server=server)
            stats = await restarted.get_stats()
            processed = await restarted.process_next()
            return job_id, stats, processed, handler, await restarted.enqueue(_job("a"))

        job_id, stats, processed, handler, new_id = asyncio.run(scenario())
        assert stats.active == 0
        assert stats.waiting == 1
        assert processed == job_id
        assert [j.retry_count for j in handler.calls] == [0]
        assert new_id is not None

    def test_lapsed_lock_requeues_job(self):
        async def scenario():
            handler = RecordingHandler()
            queue = _make_queue(handler, lock_duration_seconds=0)
            job_id = await queue.enqueue(_job("a"))
            # claimed by a worker that died before running it
            await queue._claim_next()
            recovered = await queue.recover_stalled()
            processed = await queue.process_next()
            return job_id, recovered, processed, handler, await queue.get_job(job_id)

        job_id, recovered, processed, handler, info = asyncio.run(scenario())
        assert recovered == [job_id]
        assert processed == job_id
        assert handler.calls[0].retry_count == 1
        assert info.state == JobState.COMPLETED

    def test_stalled_job_out_of_attempts_fails_and_frees_source(self):
        async def scenario():
            queue = _make_queue(attempts=1, lock_duration_seconds=0)
            job_id = await queue.enqueue(_job("a"))
            await queue._claim_next()
            await queue.recover_stalled()
            return (
                await queue.get_job(job_id),
                await queue.get_stats(),
                await queue.is_outstanding("a"),
                await queue.enqueue(_job("a")),
            )

        info, stats, outstanding, new_id = asyncio.run(scenario())
        assert info.state == JobState.FAILED
        assert info.failed_reason == "job stalled"
        assert stats.active == 0
        assert stats.failed == 1
        assert outstanding is False
        assert new_id is not None

    def test_held_lock_is_not_recovered(self):
        async def scenario():
            queue = _make_queue()
            await queue.enqueue(_job("a"))
            await queue._claim_next()
            return await queue.recover_stalled(), await queue.get_stats()

        recovered, stats = asyncio.run(scenario())
        assert recovered == []
        assert stats.active == 1

    def test_start_recovers_jobs_of_a_dead_worker(self):
        async def scenario():
            server = fakeredis.FakeServer()
            crashed = _make_queue(server=server, lock_duration_seconds=0)
            await crashed.enqueue(_job("a"))
            await crashed._claim_next()

            handler = RecordingHandler()
            queue = _make_queue(server=server, poll_interval_seconds=0.01, concurrency=1)
            await queue.start(handler)
            for _ in range(100):
                if handler.calls:
                    break
                await asyncio.sleep(0.01)
            await queue.close(timeout=1)
            return handler

        handler = asyncio.run(scenario())
        assert [j.source_id for j in handler.calls] == ["a"]


# =============================================================================
# DIRECT MODE
# =============================================================================


class TestDirectJobQueue:
    """Inline execution."""

    def test_runs_inline(self):
        async def scenario():
            handler = RecordingHandler()
            queue = DirectJobQueue()
            await queue.start(handler)
            job_id = await queue.enqueue(_job(), delay_seconds=30)
            return handler, job_id, await queue.get_stats()

        handler, job_id, stats = asyncio.run(scenario())
        assert len(handler.calls) == 1
        assert job_id is not None
        assert stats.pending == 0
        assert stats.completed == 0

    def test_handler_failure_is_contained(self):
        async def scenario():
            queue = DirectJobQueue()
            await queue.start(RecordingHandler(failures=1))
            return await queue.enqueue(_job()), await queue.is_outstanding("source-1")

        job_id, outstanding = asyncio.run(scenario())
        assert job_id is not None
        assert outstanding is False

    def test_refuses_source_already_running(self):
        async def scenario():
            queue = DirectJobQueue()
            nested: list = []

            async def handler(job):
                nested.append(await queue.enqueue(job))

            await queue.start(handler)
            await queue.enqueue(_job())
            return nested

        assert asyncio.run(scenario()) == [None]

    def test_management_is_noop(self):
        async def scenario():
            queue = DirectJobQueue()
            await queue.pause()
            await queue.resume()
            return (
                queue.is_queue_mode,
                await queue.retry_failed(),
                await queue.clean(0),
                await queue.get_job("1"),
            )

        assert asyncio.run(scenario()) == (False, 0, [], None)
