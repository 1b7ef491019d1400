"""
In-process merge job queue.

Single worker, strict FIFO, at-least-once. A failed job goes back to the
tail and becomes eligible again after retry_delay; the head of the queue
blocks everything behind it while it waits. Jobs are not persisted; the
unmerged_sweep worker job re-enqueues merges lost to a restart.
"""

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import HTTPException, Request

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.proctoring_domain import utcnow
from app.repositories.attempt_repository import AttemptRepository, attempt_repository

logger = get_logger(__name__)

MergeCallable = Callable[..., Awaitable[Any]]
ReadinessProbe = Callable[[], Awaitable[bool]]
FailureRecorder = Callable[[str, str], Awaitable[Any]]


@dataclass(slots=True)
class MergeJob:
    attempt_id: str
    max_retries: int
    retries: int = 0
    added_at: datetime = field(default_factory=utcnow)
    last_attempt: datetime | None = None
    error: str | None = None
    force: bool = False
    eligible_at: float = 0.0  # event-loop clock

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "added_at": self.added_at.isoformat(),
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "error": self.error,
            "force": self.force,
        }


class MergeJobQueue:
    """
    Serializes merge work for the whole process.

    Args:
        merge: Coroutine function run per job as merge(attempt_id, force=...)
        is_ready: Persistence readiness probe checked before each run of the loop
        on_terminal_failure: Called with (attempt_id, error) once retries are exhausted
        max_retries: Retries after the first attempt
        retry_delay: Seconds between attempts of one job, and loop backoff
            when persistence is not ready
        inter_job_delay: Pause after every job
        readiness_timeout: How long to poll is_ready before backing off
    """

    def __init__(
        self,
        merge: MergeCallable,
        *,
        is_ready: ReadinessProbe | None = None,
        on_terminal_failure: FailureRecorder | None = None,
        max_retries: int = 3,
        retry_delay: float = 60.0,
        inter_job_delay: float = 2.0,
        readiness_timeout: float = 10.0,
        readiness_poll_interval: float = 0.5,
    ):
        self._merge = merge
        self._is_ready = is_ready
        self._on_terminal_failure = on_terminal_failure
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.inter_job_delay = inter_job_delay
        self.readiness_timeout = readiness_timeout
        self.readiness_poll_interval = readiness_poll_interval

        self._queue: deque[MergeJob] = deque()
        self._in_flight: set[str] = set()
        self._worker: asyncio.Task | None = None
        self._wakeup: asyncio.TimerHandle | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self.completed_count = 0
        self.failed_count = 0

    def enqueue(self, attempt_id: str, *, force: bool = False) -> bool:
        """
        Queue a merge for the attempt. force re-runs channels already merged.

        Returns:
            False when the attempt is already queued or running
        """
        if self._closed:
            logger.warning("Merge queue closed, job dropped", attempt_id=attempt_id)
            return False

        if attempt_id in self._in_flight or any(job.attempt_id == attempt_id for job in self._queue):
            logger.info("Merge already queued or processing", attempt_id=attempt_id)
            return False

        self._queue.append(MergeJob(attempt_id=attempt_id, max_retries=self.max_retries, force=force))
        self._idle.clear()
        logger.info("Merge job queued", attempt_id=attempt_id, queue_size=len(self._queue))

        if self._worker is None:
            self._start_worker()
        return True

    def _start_worker(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        self._worker = asyncio.get_running_loop().create_task(self._run(), name="merge-queue-worker")

    def _schedule_wakeup(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        if self._wakeup is not None:
            self._wakeup.cancel()
        self._wakeup = loop.call_later(max(delay, 0.0), self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        if self._worker is None and self._queue and not self._closed:
            self._start_worker()
        self._update_idle()

    def _update_idle(self) -> None:
        if self._worker is None and self._wakeup is None and not self._queue:
            self._idle.set()

    async def _wait_until_ready(self) -> bool:
        if self._is_ready is None:
            return True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout
        while True:
            try:
                if await self._is_ready():
                    return True
            except Exception as e:
                logger.warning("Readiness probe raised", error=str(e))
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.readiness_poll_interval)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            if not await self._wait_until_ready():
                logger.error(
                    "Database not ready, merge queue backing off",
                    retry_in_seconds=self.retry_delay,
                    queued=len(self._queue),
                )
                self._schedule_wakeup(self.retry_delay)
                return

            while self._queue:
                job = self._queue[0]
                remaining = job.eligible_at - loop.time()
                if remaining > 0:
                    logger.info(
                        "Merge job waiting for retry delay",
                        attempt_id=job.attempt_id,
                        remaining_seconds=round(remaining, 1),
                    )
                    self._schedule_wakeup(remaining)
                    break

                self._queue.popleft()
                self._in_flight.add(job.attempt_id)
                logger.info(
                    "Merge job started",
                    attempt_id=job.attempt_id,
                    attempt=job.retries + 1,
                    max_attempts=job.max_retries + 1,
                )

                try:
                    await self._merge(job.attempt_id, force=job.force)
                    self.completed_count += 1
                    logger.info("Merge job succeeded", attempt_id=job.attempt_id)
                except Exception as e:
                    await self._handle_failure(job, e)
                finally:
                    self._in_flight.discard(job.attempt_id)

                await asyncio.sleep(self.inter_job_delay)
        finally:
            self._worker = None
            self._update_idle()

    async def _handle_failure(self, job: MergeJob, error: Exception) -> None:
        job.last_attempt = utcnow()
        job.error = str(error) or type(error).__name__

        if job.retries < job.max_retries:
            job.retries += 1
            job.eligible_at = asyncio.get_running_loop().time() + self.retry_delay
            self._queue.append(job)
            logger.warning(
                "Merge job failed, requeued",
                attempt_id=job.attempt_id,
                retries=job.retries,
                max_retries=job.max_retries,
                error=job.error,
            )
            return

        self.failed_count += 1
        logger.error(
            "Merge job failed permanently",
            attempt_id=job.attempt_id,
            retries=job.retries,
            error=job.error,
        )
        if self._on_terminal_failure is None:
            return
        try:
            await self._on_terminal_failure(job.attempt_id, job.error)
        except Exception as e:
            logger.error("Could not record terminal merge failure", attempt_id=job.attempt_id, error=str(e))

    def get_status(self) -> dict[str, Any]:
        """Read-only snapshot for monitoring."""
        return {
            "queued": len(self._queue),
            "processing": len(self._in_flight),
            "jobs": [job.to_dict() for job in self._queue],
            "worker_running": self._worker is not None,
            "waiting_for_retry": self._wakeup is not None,
            "completed": self.completed_count,
            "failed": self.failed_count,
        }

    def clear(self) -> int:
        """Drop every queued job. A job already running is left to finish."""
        dropped = len(self._queue)
        self._queue.clear()
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        self._update_idle()
        logger.warning("Merge queue cleared", dropped=dropped)
        return dropped

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is running or scheduled."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        self._closed = True
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        worker = self._worker
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        logger.info("Merge queue stopped", dropped=len(self._queue))


def build_merge_queue(merge: MergeCallable, is_ready: ReadinessProbe | None = None) -> MergeJobQueue:
    """Queue wired with configured timing and terminal failures recorded on the attempt."""
    return MergeJobQueue(
        merge,
        is_ready=is_ready,
        on_terminal_failure=attempt_repository.mark_merge_failed,
        max_retries=settings.MERGE_MAX_RETRIES,
        retry_delay=settings.MERGE_RETRY_DELAY_SECONDS,
        inter_job_delay=settings.MERGE_INTER_JOB_DELAY_SECONDS,
    )


async def schedule_recording_merge(
    attempt_id: str,
    queue: MergeJobQueue,
    repository: AttemptRepository | None = None,
) -> bool:
    """
    Submission hook: queue a merge once an attempt is completed and has media.

    Returns:
        True when a job was queued
    """
    repository = repository or attempt_repository
    attempt = await repository.get(attempt_id)

    if attempt is None:
        logger.warning("Merge not scheduled, attempt not found", attempt_id=attempt_id)
        return False
    if attempt.status != "completed":
        logger.info("Merge not scheduled, attempt not completed", attempt_id=attempt_id, status=attempt.status)
        return False
    if not attempt.has_media:
        logger.info("Merge not scheduled, no media segments", attempt_id=attempt_id)
        return False

    return queue.enqueue(attempt_id)


def get_merge_queue(request: Request) -> MergeJobQueue:
    """FastAPI dependency: the queue created in the application lifespan."""
    queue = getattr(request.app.state, "merge_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Merge queue unavailable")
    return queue
