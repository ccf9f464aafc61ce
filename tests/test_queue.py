"""Tests for the in-process run queue.

Tests cover:
- RetryPolicy: Exponential backoff calculation
- JobOptions: Run-specific attempt policy
- RunQueue: Processing, retries, priorities, removal and retention
"""

from __future__ import annotations

import asyncio

import pytest

from agentflow.core.queue import (
    DuplicateJobError,
    JobOptions,
    JobState,
    RetryPolicy,
    RunQueue,
    UnrecoverableError,
)

NO_DELAY = RetryPolicy(initial_delay=0.0, jitter=0.0)


def _options(**kwargs) -> JobOptions:
    kwargs.setdefault("backoff", NO_DELAY)
    return JobOptions(**kwargs)


# =============================================================================
# RetryPolicy / JobOptions
# =============================================================================


class TestRetryPolicy:
    def test_default_values(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.initial_delay == 2.0
        assert policy.backoff_multiplier == 2.0
        assert policy.max_delay == 60.0
        assert policy.jitter == 0.1

    def test_exponential_backoff_calculation(self):
        policy = RetryPolicy(initial_delay=2.0, backoff_multiplier=2.0, jitter=0.0)

        assert policy.get_delay(0) == 2.0
        assert policy.get_delay(1) == 4.0
        assert policy.get_delay(2) == 8.0

    def test_max_delay_enforced(self):
        policy = RetryPolicy(initial_delay=10.0, max_delay=50.0, jitter=0.0)
        assert policy.get_delay(10) == 50.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=10.0, jitter=0.1)
        delays = [policy.get_delay(0) for _ in range(100)]
        assert all(9.0 <= d <= 11.0 for d in delays)


class TestJobOptions:
    def test_normal_run_uses_retry_policy(self):
        options = JobOptions.for_run(False, priority=5, retry=RetryPolicy(max_attempts=4))
        assert options.attempts == 4
        assert options.priority == 5

    def test_test_mode_runs_exactly_once(self):
        options = JobOptions.for_run(True, retry=RetryPolicy(max_attempts=4))
        assert options.attempts == 1

    def test_defaults(self):
        options = JobOptions.for_run(False)
        assert options.attempts == 3
        assert options.backoff.initial_delay == 2.0
        assert options.remove_on_complete == 10
        assert options.remove_on_fail == 5


# =============================================================================
# RunQueue
# =============================================================================


async def _drain(queue: RunQueue) -> RunQueue:
    """Start the queue, wait until every job settles, then stop it."""
    await queue.start()
    await queue.join()
    await queue.stop()
    return queue


class TestRunQueue:
    @pytest.mark.asyncio
    async def test_processes_job(self):
        async def processor(job):
            return job.data["value"] * 2

        queue = RunQueue(processor)
        queue.add("j1", {"value": 21})
        await _drain(queue)

        job = queue.get_job("j1")
        assert job.state == JobState.COMPLETED
        assert job.result == 42
        assert job.attempts_made == 1
        assert queue.counts()["completed"] == 1

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = []

        async def processor(job):
            attempts.append(job.attempts_made)
            if len(attempts) < 3:
                raise RuntimeError("transient")
            return "ok"

        queue = RunQueue(processor)
        queue.add("j1", {}, _options(attempts=3))
        await _drain(queue)

        assert attempts == [0, 1, 2]
        job = queue.get_job("j1")
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 3

    @pytest.mark.asyncio
    async def test_fails_after_attempts_exhausted(self):
        async def processor(job):
            raise RuntimeError("always broken")

        queue = RunQueue(processor)
        queue.add("j1", {}, _options(attempts=2))
        await _drain(queue)

        job = queue.get_job("j1")
        assert job.state == JobState.FAILED
        assert job.attempts_made == 2
        assert job.failed_reason == "always broken"
        assert [j.id for j in queue.failed_jobs] == ["j1"]

    @pytest.mark.asyncio
    async def test_unrecoverable_error_skips_retries(self):
        calls = []

        async def processor(job):
            calls.append(job.id)
            raise UnrecoverableError("bad input")

        queue = RunQueue(processor)
        queue.add("j1", {}, _options(attempts=5))
        await _drain(queue)

        assert calls == ["j1"]
        assert queue.get_job("j1").state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_is_final_attempt(self):
        seen = []

        async def processor(job):
            seen.append(job.is_final_attempt)
            raise RuntimeError("x")

        queue = RunQueue(processor)
        queue.add("j1", {}, _options(attempts=3))
        await _drain(queue)

        assert seen == [False, False, True]

    @pytest.mark.asyncio
    async def test_priority_order_then_fifo(self):
        order = []

        async def processor(job):
            order.append(job.id)

        queue = RunQueue(processor, concurrency=1)
        queue.add("low", {}, _options(priority=0))
        queue.add("high", {}, _options(priority=10))
        queue.add("mid-1", {}, _options(priority=5))
        queue.add("mid-2", {}, _options(priority=5))
        await _drain(queue)

        assert order == ["high", "mid-1", "mid-2", "low"]

    def test_duplicate_live_job_rejected(self):
        queue = RunQueue(lambda job: asyncio.sleep(0))
        queue.add("j1", {})
        with pytest.raises(DuplicateJobError):
            queue.add("j1", {})

    @pytest.mark.asyncio
    async def test_remove_waiting_job(self):
        processed = []

        async def processor(job):
            processed.append(job.id)

        queue = RunQueue(processor)
        queue.add("keep", {})
        queue.add("drop", {})
        assert queue.remove("drop") is True
        assert queue.remove("drop") is False
        await _drain(queue)

        assert processed == ["keep"]
        assert queue.get_job("drop") is None

    @pytest.mark.asyncio
    async def test_active_job_cannot_be_removed(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def processor(job):
            started.set()
            await release.wait()

        queue = RunQueue(processor)
        queue.add("j1", {})
        await queue.start()
        await started.wait()

        assert queue.get_job("j1").state == JobState.ACTIVE
        assert queue.remove("j1") is False

        release.set()
        await queue.join()
        await queue.stop()
        assert queue.get_job("j1").state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_remove_delayed_job(self):
        failed_once = asyncio.Event()

        async def processor(job):
            failed_once.set()
            raise RuntimeError("retry me")

        queue = RunQueue(processor)
        queue.add("j1", {}, _options(attempts=3, backoff=RetryPolicy(initial_delay=30.0, jitter=0.0)))
        await queue.start()
        await failed_once.wait()
        # Let the worker park the job as delayed
        for _ in range(5):
            await asyncio.sleep(0)

        assert queue.get_job("j1").state == JobState.DELAYED
        assert queue.remove("j1") is True
        await asyncio.wait_for(queue.join(), timeout=1.0)
        await queue.stop()

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        async def processor(job):
            return job.id

        queue = RunQueue(processor)
        for i in range(5):
            queue.add(f"j{i}", {}, _options(remove_on_complete=2))
        await _drain(queue)

        assert [j.id for j in queue.completed_jobs] == ["j3", "j4"]
        assert queue.get_job("j0") is None

    @pytest.mark.asyncio
    async def test_concurrency_runs_jobs_in_parallel(self):
        running = 0
        peak = 0

        async def processor(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        queue = RunQueue(processor, concurrency=3)
        for i in range(6):
            queue.add(f"j{i}", {})
        await _drain(queue)

        assert peak == 3

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            RunQueue(lambda job: None, concurrency=0)
