"""In-process asynchronous job queue.

Coordinates the enrichment work that follows a capture (classification,
image upload). Jobs live in memory only: a restart drops anything that has not
finished. The queue runs on a single asyncio event loop, so shared state is
never touched from two threads and needs no locking.

Scheduling is FIFO by submission order, bounded by a concurrency ceiling.
A failed job is retried with exponential backoff; while it waits out its delay
it is held back from the pending pool by a retry timer, so the next scheduling
pass cannot claim it early.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from config import settings
from services.errors import (
    CaptureValidationError,
    JobNotFoundError,
    JobTimeoutError,
    UnknownJobTypeError,
)

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Valid states for a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobType(str, Enum):
    """Job types with a built-in handler."""

    CLASSIFY = "classify"
    IMAGE_UPLOAD = "image_upload"


JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
Clock = Callable[[], datetime]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_job_id(now: Optional[datetime] = None) -> str:
    """Millisecond timestamp plus a 9 character base36 suffix."""
    now = now or utcnow()
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(now.timestamp() * 1000)}-{suffix}"


@dataclass
class Job:
    """A unit of asynchronous work."""

    id: str
    type: str
    payload: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    result: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_api(self) -> Dict[str, Any]:
        """Return the status fields exposed over HTTP."""

        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "attempts": self.attempts,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "error": self.error,
            "result": self.result,
        }


class RetryHandle(Protocol):
    def cancel(self) -> None: ...


class RetryScheduler(Protocol):
    """Runs a callback after a delay and returns a cancellable handle."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> RetryHandle: ...


class AsyncioRetryScheduler:
    """Retry timers backed by the running event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class JobQueue:
    """Bounded-concurrency job queue with retry and status tracking."""

    def __init__(
        self,
        handlers: Optional[Mapping[str, JobHandler]] = None,
        *,
        concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        cleanup_max_age: Optional[float] = None,
        scheduler: Optional[RetryScheduler] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.concurrency = concurrency if concurrency is not None else settings.job_concurrency
        self.max_retries = max_retries if max_retries is not None else settings.job_max_retries
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.job_retry_base_delay_seconds
        )
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else settings.job_cleanup_interval_seconds
        )
        self.cleanup_max_age = (
            cleanup_max_age if cleanup_max_age is not None else settings.job_cleanup_max_age_seconds
        )
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self._handlers: Dict[str, JobHandler] = dict(handlers or {})
        self._scheduler: RetryScheduler = scheduler or AsyncioRetryScheduler()
        self._clock: Clock = clock or utcnow

        # dict preserves insertion order, which gives FIFO claiming
        self._jobs: Dict[str, Job] = {}
        self._in_flight: set[str] = set()
        self._retry_timers: Dict[str, RetryHandle] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.current_processing = 0

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[_type_name(job_type)] = handler

    def has_handler(self, job_type: str) -> bool:
        return _type_name(job_type) in self._handlers

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit(self, job_type: str, payload: Optional[Mapping[str, Any]] = None) -> str:
        """Store a pending job and trigger a scheduling pass.

        Never waits for execution. An unregistered type is accepted here and
        fails when the job runs.
        """

        job_type = _type_name(job_type) if job_type is not None else ""
        if not isinstance(job_type, str) or not job_type.strip():
            raise CaptureValidationError("Job type is required")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise CaptureValidationError("Job payload must be an object")

        now = self._clock()
        job_id = generate_job_id(now)
        while job_id in self._jobs:
            job_id = generate_job_id(now)

        self._jobs[job_id] = Job(
            id=job_id,
            type=job_type,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
        )
        logger.debug(f"Job {job_id} submitted ({job_type})")
        self._schedule()
        return job_id

    def get_status(self, job_id: str) -> Optional[Job]:
        """Return a snapshot of the job, or None when unknown."""

        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job is not None else None

    def get_stats(self) -> Dict[str, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return {
            "total": len(self._jobs),
            "pending": counts[JobStatus.PENDING],
            "processing": counts[JobStatus.PROCESSING],
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "currentProcessing": self.current_processing,
            "maxConcurrency": self.concurrency,
        }

    def cleanup(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop terminal jobs last updated more than ``max_age_seconds`` ago."""

        max_age = self.cleanup_max_age if max_age_seconds is None else max_age_seconds
        cutoff = self._clock() - timedelta(seconds=max_age)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.updated_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._waiters.pop(job_id, None)
        if expired:
            logger.info(f"Job cleanup removed {len(expired)} finished jobs")
        return len(expired)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Wait until the job is completed or failed.

        The timeout bounds the wait only; the job is not cancelled.
        """

        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.is_terminal:
            return dataclasses.replace(job)

        future = self._waiters.get(job_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._waiters[job_id] = future
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            raise JobTimeoutError(
                f"Timed out waiting for job {job_id}",
                details={"jobId": job_id, "status": job.status.value},
            ) from None

    async def poll_until_done(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> Job:
        """Fixed-interval polling variant of :meth:`wait_for`."""

        timeout = settings.job_wait_timeout_seconds if timeout is None else timeout
        interval = settings.job_wait_poll_interval_seconds if interval is None else interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if job.is_terminal:
                return dataclasses.replace(job)
            if loop.time() >= deadline:
                raise JobTimeoutError(
                    f"Timed out waiting for job {job_id}",
                    details={"jobId": job_id, "status": job.status.value},
                )
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the periodic cleanup sweep on the running loop."""

        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._stopping = False
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        logger.info(
            f"Job queue started (concurrency={self.concurrency}, max_retries={self.max_retries})"
        )

    async def stop(self) -> None:
        """Cancel the cleanup sweep, pending retry timers and running handlers.

        Pending jobs are left pending; nothing new is claimed until ``start``.
        """

        self._stopping = True
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()

        tasks = [t for t in (self._cleanup_task, *self._tasks) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._cleanup_task = None
        logger.info("Job queue stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Job cleanup sweep failed: {e}")

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _schedule(self) -> None:
        """Claim pending jobs until none are left or the ceiling is reached."""

        if self._stopping:
            return
        while self.current_processing < self.concurrency:
            job = self._next_claimable()
            if job is None:
                return
            self._claim(job)

    def _next_claimable(self) -> Optional[Job]:
        for job in self._jobs.values():
            if (
                job.status is JobStatus.PENDING
                and job.id not in self._in_flight
                and job.id not in self._retry_timers
            ):
                return job
        return None

    def _claim(self, job: Job) -> None:
        loop = asyncio.get_running_loop()
        self.current_processing += 1
        self._in_flight.add(job.id)
        job.attempts += 1
        self._transition(job, JobStatus.PROCESSING)

        task = loop.create_task(self._execute(job), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job) -> None:
        try:
            await self._run(job)
        finally:
            self._in_flight.discard(job.id)
            self.current_processing -= 1
            self._schedule()

    async def _run(self, job: Job) -> None:
        try:
            handler = self._handlers.get(job.type)
            if handler is None:
                raise UnknownJobTypeError(f"Unknown job type: {job.type}")
            result = await handler(job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._jobs.get(job.id) is job:
                self._record_failure(job, exc)
            return

        if self._jobs.get(job.id) is not job:
            logger.warning(f"Job {job.id} finished after it was removed; result dropped")
            return
        job.result = result
        self._transition(job, JobStatus.COMPLETED)
        self._resolve(job)

    def _record_failure(self, job: Job, exc: Exception) -> None:
        job.error = str(exc) or exc.__class__.__name__

        if job.attempts < self.max_retries:
            delay = self.retry_base_delay * (2 ** (job.attempts - 1))
            self._transition(job, JobStatus.PENDING)
            logger.warning(
                f"Job {job.id} failed (attempt {job.attempts}/{self.max_retries}). "
                f"Retrying in {delay:g}s: {job.error}"
            )
            self._retry_timers[job.id] = self._scheduler.call_later(
                delay, lambda: self._release_retry(job.id)
            )
        else:
            self._transition(job, JobStatus.FAILED)
            logger.error(
                f"Job {job.id} failed permanently after {job.attempts} attempts: {job.error}"
            )
            self._resolve(job)

    def _release_retry(self, job_id: str) -> None:
        """Retry timer fired: the job may be claimed again."""

        if self._retry_timers.pop(job_id, None) is None or self._stopping:
            return
        self._schedule()

    def _transition(self, job: Job, status: JobStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[job.status]:
            raise RuntimeError(f"Illegal job transition {job.status.value} -> {status.value}")
        job.status = status
        job.updated_at = self._clock()

    def _resolve(self, job: Job) -> None:
        future = self._waiters.pop(job.id, None)
        if future is not None and not future.done():
            future.set_result(dataclasses.replace(job))


def _type_name(job_type: Any) -> Any:
    return job_type.value if isinstance(job_type, Enum) else job_type
