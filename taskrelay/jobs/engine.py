"""Job engine: a bounded worker pool draining an in-process priority queue.

Jobs move ``PENDING -> RUNNING -> COMPLETED | FAILED``; ``cancel_job`` moves a
non-terminal job to ``CANCELLED``. Delayed work (scheduled jobs, retry
backoff, the next firing of a repeat job) is held as a timer handle and
released into the ready queue when due. Terminal records are retained up to
``max_retained_jobs``; the oldest are evicted first.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from collections import Counter, OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from taskrelay.core.errors import FunctionNotFound, InvalidSchedule, NotRepeatable
from taskrelay.core.models import (
    ExecutionContext,
    FunctionType,
    HealthState,
    HealthStatus,
    Job,
    JobData,
    JobExecutionType,
    JobStatus,
    utcnow,
)
from taskrelay.functions.registry import FunctionRegistry

logger = logging.getLogger(__name__)

DEFAULT_REPEAT_WINDOW = 24 * 60 * 60.0


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobEngine:
    """Accept job specifications and drive them to a terminal state."""

    def __init__(
        self,
        registry: FunctionRegistry,
        *,
        max_concurrent_jobs: int = 10,
        backoff_base: float = 2.0,
        max_retained_jobs: int = 150,
        default_repeat_window: float = DEFAULT_REPEAT_WINDOW,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self._registry = registry
        self._max_concurrent = max_concurrent_jobs
        self._backoff_base = backoff_base
        self._max_retained = max_retained_jobs
        self._repeat_window = default_repeat_window
        self._services = services if services is not None else {}

        self._jobs: Dict[str, Job] = {}
        self._terminal: "OrderedDict[str, None]" = OrderedDict()
        self._ready: "asyncio.PriorityQueue[tuple[int, int, str]]" = asyncio.PriorityQueue()
        self._queued: set[str] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._running: Dict[str, "asyncio.Task[None]"] = {}
        self._workers: List["asyncio.Task[None]"] = []
        self._seq = itertools.count()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._closing = False

    @property
    def max_concurrent_jobs(self) -> int:
        return self._max_concurrent

    @property
    def started(self) -> bool:
        return bool(self._workers) and not self._closing

    async def start(self) -> None:
        """Spawn the worker pool."""
        if self._workers:
            return
        self._closing = False
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"job-worker-{index}")
            for index in range(self._max_concurrent)
        ]
        logger.info("Job engine started with %d workers", self._max_concurrent)

    async def add_job(self, data: JobData) -> str:
        """Validate and enqueue a job, returning its id."""
        func = self._registry.lookup(data.function_name)
        if func is None:
            raise FunctionNotFound(data.function_name)

        data.execution_type = JobExecutionType(data.execution_type)
        now = utcnow()
        delay = 0.0
        if data.execution_type is JobExecutionType.SCHEDULE:
            if data.schedule_time is None:
                raise InvalidSchedule("Schedule time is required for scheduled jobs")
            data.schedule_time = _as_utc(data.schedule_time)
            delay = (data.schedule_time - now).total_seconds()
            if delay <= 0:
                raise InvalidSchedule("Schedule time must be in the future")
        elif data.execution_type is JobExecutionType.REPEAT:
            if not data.repeat_interval or data.repeat_interval <= 0:
                raise InvalidSchedule("Repeat interval is required for repeat jobs")
            if func.definition.type is not FunctionType.RUNNER:
                raise NotRepeatable(
                    f"Only runner functions can be repeated; {func.name} is a {func.definition.type.value}"
                )
            if data.repeat_deadline is None:
                data.repeat_deadline = now + timedelta(seconds=self._repeat_window)
            data.repeat_deadline = _as_utc(data.repeat_deadline)
            if data.repeat_deadline <= now:
                raise InvalidSchedule("Repeat deadline must be in the future")

        job = Job(id=str(uuid.uuid4()), data=data, created_at=now)
        self._jobs[job.id] = job
        if delay > 0:
            self._schedule(job.id, delay)
        else:
            self._enqueue(job)

        logger.info(
            "Job added: %s (function=%s, type=%s)", job.id, data.function_name, data.execution_type.value
        )
        return job.id

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or running job. False if unknown or already terminal."""
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False

        handle = self._timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        self._queued.discard(job_id)
        self._finish(job, JobStatus.CANCELLED)

        task = self._running.get(job_id)
        if task is not None:
            task.cancel()
        logger.info("Job cancelled: %s", job_id)
        return True

    async def remove_job(self, job_id: str) -> bool:
        if job_id not in self._jobs:
            return False
        await self.cancel_job(job_id)
        self._jobs.pop(job_id, None)
        self._terminal.pop(job_id, None)
        logger.info("Job removed: %s", job_id)
        return True

    async def retry_job(self, job_id: str) -> bool:
        """Re-enqueue a failed job with a fresh attempt budget."""
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.FAILED:
            return False
        self._terminal.pop(job_id, None)
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.error = None
        job.completed_at = None
        self._enqueue(job)
        logger.info("Job retry initiated: %s", job_id)
        return True

    async def set_priority(self, job_id: str, priority: int) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        job.data.priority = priority
        if job_id in self._queued:
            self._ready.put_nowait((priority, next(self._seq), job_id))
        logger.info("Job priority updated: %s -> %d", job_id, priority)
        return True

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def jobs_by_status(self, status: JobStatus) -> List[Job]:
        return [job for job in self._jobs.values() if job.status is status]

    def pause(self) -> None:
        self._resumed.clear()
        logger.info("Job queue paused")

    def resume(self) -> None:
        self._resumed.set()
        logger.info("Job queue resumed")

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def clean_jobs(self, grace: float = 24 * 60 * 60.0) -> int:
        """Drop terminal records that finished more than ``grace`` seconds ago."""
        cutoff = utcnow() - timedelta(seconds=grace)
        stale = [
            job_id
            for job_id in self._terminal
            if (job := self._jobs.get(job_id)) is None
            or (job.completed_at is not None and job.completed_at < cutoff)
        ]
        for job_id in stale:
            self._terminal.pop(job_id, None)
            self._jobs.pop(job_id, None)
        logger.info("Cleaned %d old jobs", len(stale))
        return len(stale)

    async def get_queue_stats(self) -> Dict[str, int]:
        counts = Counter(job.status for job in self._jobs.values())
        queued = len(self._queued)
        return {
            "waiting": 0 if self.paused else queued,
            "active": len(self._running),
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "delayed": len(self._timers),
            "paused": queued if self.paused else 0,
        }

    def health_status(self) -> HealthStatus:
        counts = Counter(job.status for job in self._jobs.values())
        repeating = sum(
            1
            for job in self._jobs.values()
            if job.data.execution_type is JobExecutionType.REPEAT and not job.status.is_terminal
        )
        return HealthStatus(
            module="JobEngine",
            status=HealthState.HEALTHY if self.started else HealthState.UNHEALTHY,
            details=(
                f"Total: {len(self._jobs)}, Active: {counts[JobStatus.RUNNING]}, "
                f"Pending: {counts[JobStatus.PENDING]}, Repeat: {repeating}"
            ),
        )

    async def shutdown(self, drain_timeout: float = 10.0) -> None:
        """Stop timers, let running jobs finish up to ``drain_timeout``, then stop workers."""
        logger.info("Shutting down job engine...")
        self._closing = True
        for job_id, handle in list(self._timers.items()):
            handle.cancel()
            logger.info("Cancelled pending timer for job %s", job_id)
        self._timers.clear()

        running = list(self._running.values())
        if running and drain_timeout > 0:
            await asyncio.wait(running, timeout=drain_timeout)

        for job_id in list(self._running):
            job = self._jobs.get(job_id)
            if job is not None and not job.status.is_terminal:
                job.error = "Job interrupted by shutdown"
                self._finish(job, JobStatus.FAILED)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Job engine shutdown completed")

    def _enqueue(self, job: Job) -> None:
        self._queued.add(job.id)
        self._ready.put_nowait((job.data.priority, next(self._seq), job.id))

    def _schedule(self, job_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(delay, self._release, job_id)

    def _release(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is not None and job.status is JobStatus.PENDING:
            self._enqueue(job)

    async def _worker_loop(self, index: int) -> None:
        while True:
            await self._resumed.wait()
            priority, _, job_id = await self._ready.get()
            job = self._jobs.get(job_id)
            if (
                job is None
                or job_id not in self._queued
                or job.status is not JobStatus.PENDING
                or job.data.priority != priority
            ):
                continue
            if self.paused:
                self._ready.put_nowait((priority, next(self._seq), job_id))
                continue

            self._queued.discard(job_id)
            task = asyncio.create_task(self._execute(job))
            self._running[job_id] = task
            try:
                await task
            except asyncio.CancelledError:
                if self._closing:
                    raise
            finally:
                self._running.pop(job_id, None)

    async def _execute(self, job: Job) -> None:
        job.status = JobStatus.RUNNING
        job.attempts += 1
        if job.started_at is None:
            job.started_at = utcnow()
        logger.info("Job started: %s (attempt %d)", job.id, job.attempts)

        context = ExecutionContext(
            job_id=job.id,
            metadata={
                "executionType": job.data.execution_type.value,
                "attempt": job.attempts,
                "runCount": job.run_count,
            },
            logger=logging.LoggerAdapter(logging.getLogger("taskrelay.functions"), {"job_id": job.id}),
            services=self._services,
        )
        try:
            result = await self._registry.invoke(job.data.function_name, job.data.parameters, context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._on_failure(job, exc)
        else:
            self._on_success(job, result)

    def _on_success(self, job: Job, result: Any) -> None:
        if job.status.is_terminal:
            return
        job.result = result
        job.error = None
        if job.data.execution_type is not JobExecutionType.REPEAT:
            self._finish(job, JobStatus.COMPLETED)
            logger.info("Job completed: %s", job.id)
            return

        job.run_count += 1
        job.attempts = 0
        if self._closing:
            self._finish(job, JobStatus.COMPLETED)
            logger.info("Repeat job %s stopped by shutdown after %d runs", job.id, job.run_count)
            return
        interval = float(job.data.repeat_interval or 0)
        next_run = utcnow() + timedelta(seconds=interval)
        if job.data.repeat_deadline is None or next_run > job.data.repeat_deadline:
            self._finish(job, JobStatus.COMPLETED)
            logger.info("Repeat job %s reached its deadline after %d runs", job.id, job.run_count)
            return
        job.status = JobStatus.PENDING
        self._schedule(job.id, interval)

    def _on_failure(self, job: Job, exc: Exception) -> None:
        if job.status.is_terminal:
            return
        job.error = str(exc) or type(exc).__name__
        func = self._registry.lookup(job.data.function_name)
        if job.data.retries is not None:
            max_attempts = job.data.retries
        else:
            max_attempts = func.definition.retries if func else 1
        max_attempts = max(1, max_attempts)

        retry = getattr(exc, "retryable", True) and job.attempts < max_attempts
        if retry and self._closing:
            job.error = f"Job interrupted by shutdown: {job.error}"
            self._finish(job, JobStatus.FAILED)
            logger.error("Job %s not retried during shutdown (%s)", job.id, exc)
            return
        if retry:
            delay = self._backoff_base * 2 ** (job.attempts - 1)
            job.status = JobStatus.PENDING
            self._schedule(job.id, delay)
            logger.warning(
                "Job %s attempt %d/%d failed: %s; retrying in %.2fs",
                job.id,
                job.attempts,
                max_attempts,
                job.error,
                delay,
            )
            return

        self._finish(job, JobStatus.FAILED)
        logger.error("Job failed: %s (%s)", job.id, job.error)

    def _finish(self, job: Job, status: JobStatus) -> None:
        job.status = status
        job.completed_at = utcnow()
        self._terminal[job.id] = None
        self._terminal.move_to_end(job.id)
        while len(self._terminal) > self._max_retained:
            evicted, _ = self._terminal.popitem(last=False)
            self._jobs.pop(evicted, None)
