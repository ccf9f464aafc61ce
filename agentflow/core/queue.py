"""In-process run queue with retry, backoff and bounded job history.

One job per execution id. Worker tasks pull the highest-priority waiting job and
run it to completion before taking another. A failed attempt with attempts left is
parked as DELAYED and re-queued after its backoff delay.

Job history is kept only for operability (a small rolling window of completed and
failed jobs); execution and step records are the system of record.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Error in run queue."""

    pass


class DuplicateJobError(QueueError):
    """A live job already exists for this id."""

    pass


class UnrecoverableError(Exception):
    """Raised by a processor to fail a job without using remaining attempts."""

    pass


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return delay + jitter


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass
class JobOptions:
    """Per-job policy."""

    attempts: int = 3
    backoff: RetryPolicy = field(default_factory=RetryPolicy)
    priority: int = 0  # Higher runs first; FIFO within a priority
    timeout: float | None = None  # Seconds per attempt, enforced by the processor
    remove_on_complete: int = 10  # Completed jobs retained
    remove_on_fail: int = 5  # Failed jobs retained

    @classmethod
    def for_run(
        cls,
        test_mode: bool,
        priority: int = 0,
        retry: RetryPolicy | None = None,
        timeout: float | None = None,
        remove_on_complete: int = 10,
        remove_on_fail: int = 5,
    ) -> JobOptions:
        """Options for an execution job: test-mode runs get exactly one attempt."""
        retry = retry or RetryPolicy()
        return cls(
            attempts=1 if test_mode else max(1, retry.max_attempts),
            backoff=retry,
            priority=priority,
            timeout=timeout,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
        )


@dataclass
class Job:
    id: str
    data: dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    failed_reason: str | None = None
    result: Any = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def is_final_attempt(self) -> bool:
        """True while processing the last allowed attempt."""
        return self.attempts_made + 1 >= self.options.attempts


JobProcessor = Callable[[Job], Awaitable[Any]]


class RunQueue:
    """
    Priority job queue processed by a fixed number of asyncio worker tasks.

    Lifecycle is owned by the caller: ``await start()``, then ``await stop()``.
    ``add`` and ``remove`` are synchronous and may be called before start.
    """

    def __init__(self, processor: JobProcessor, concurrency: int = 1, name: str = "runs"):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.processor = processor
        self.concurrency = concurrency
        self.name = name

        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._jobs: dict[str, Job] = {}
        self._completed: deque[Job] = deque()
        self._failed: deque[Job] = deque()
        self._delay_tasks: dict[str, asyncio.Task] = {}
        self._workers: list[asyncio.Task] = []
        self._available = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    # ========== Producer API ==========

    def add(self, job_id: str, data: dict[str, Any], options: JobOptions | None = None) -> Job:
        """Queue a job.

        Raises:
            DuplicateJobError: A waiting, delayed or active job already uses this id
        """
        if job_id in self._jobs:
            raise DuplicateJobError(f"Job '{job_id}' is already queued")

        job = Job(id=job_id, data=data, options=options or JobOptions())
        self._jobs[job_id] = job
        self._idle.clear()
        self._push(job)
        logger.debug(f"[{self.name}] queued job {job_id} (priority={job.options.priority})")
        return job

    def remove(self, job_id: str) -> bool:
        """Remove a waiting or delayed job. Active jobs cannot be removed."""
        job = self._jobs.get(job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.DELAYED):
            return False

        task = self._delay_tasks.pop(job_id, None)
        if task is not None:
            task.cancel()
        job.state = JobState.REMOVED
        del self._jobs[job_id]
        self._mark_idle_if_empty()
        logger.info(f"[{self.name}] removed job {job_id}")
        return True

    def get_job(self, job_id: str) -> Job | None:
        if job_id in self._jobs:
            return self._jobs[job_id]
        for job in itertools.chain(self._completed, self._failed):
            if job.id == job_id:
                return job
        return None

    def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState if state != JobState.REMOVED}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        counts[JobState.COMPLETED.value] = len(self._completed)
        counts[JobState.FAILED.value] = len(self._failed)
        return counts

    @property
    def completed_jobs(self) -> list[Job]:
        return list(self._completed)

    @property
    def failed_jobs(self) -> list[Job]:
        return list(self._failed)

    # ========== Lifecycle ==========

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"[{self.name}] started {self.concurrency} worker(s)")

    async def stop(self) -> None:
        """Cancel worker and backoff tasks. Jobs still queued stay queued."""
        tasks = self._workers + list(self._delay_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delay_tasks.clear()

    async def join(self) -> None:
        """Wait until no job is waiting, delayed or active."""
        await self._idle.wait()

    # ========== Internals ==========

    def _push(self, job: Job) -> None:
        job.state = JobState.WAITING
        heapq.heappush(self._heap, (-job.options.priority, next(self._seq), job.id))
        self._available.set()

    def _mark_idle_if_empty(self) -> None:
        if not self._jobs:
            self._idle.set()

    async def _next_job(self) -> Job:
        while True:
            while self._heap:
                _, _, job_id = heapq.heappop(self._heap)
                job = self._jobs.get(job_id)
                # Stale heap entries (removed jobs) are skipped
                if job is not None and job.state == JobState.WAITING:
                    job.state = JobState.ACTIVE
                    return job
            self._available.clear()
            await self._available.wait()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._next_job()
            await self._process(job)

    async def _process(self, job: Job) -> None:
        try:
            result = await self.processor(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.attempts_made += 1
            job.failed_reason = str(e)
            if isinstance(e, UnrecoverableError) or job.attempts_made >= job.options.attempts:
                logger.error(
                    f"[{self.name}] job {job.id} failed after {job.attempts_made} attempt(s): {e}"
                )
                self._finish(job, JobState.FAILED)
            else:
                delay = job.options.backoff.get_delay(job.attempts_made - 1)
                logger.warning(
                    f"[{self.name}] job {job.id} attempt {job.attempts_made} failed: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                job.state = JobState.DELAYED
                self._delay_tasks[job.id] = asyncio.create_task(self._requeue_after(job, delay))
        else:
            job.attempts_made += 1
            job.result = result
            self._finish(job, JobState.COMPLETED)

    async def _requeue_after(self, job: Job, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))
        self._delay_tasks.pop(job.id, None)
        if self._jobs.get(job.id) is job and job.state == JobState.DELAYED:
            self._push(job)

    def _finish(self, job: Job, state: JobState) -> None:
        job.state = state
        job.finished_at = time.time()
        self._jobs.pop(job.id, None)

        if state == JobState.COMPLETED:
            history, keep = self._completed, job.options.remove_on_complete
        else:
            history, keep = self._failed, job.options.remove_on_fail
        history.append(job)
        while len(history) > max(0, keep):
            history.popleft()

        self._mark_idle_if_empty()
