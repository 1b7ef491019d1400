"""
Unmerged Recording Sweep Job - recovers merges lost to a process restart.

The API process keeps merge jobs in memory only. This job periodically looks
for completed attempts that still have local chunks and no finished merge
(no merge status, or a channel left pending/processing past the grace
period) and runs them through a MergeJobQueue of its own, so retries and
terminal failure recording behave exactly as in the API process.

Usage:
    python -m app.jobs.worker unmerged_sweep        # scheduler
    python -m app.jobs.worker unmerged_sweep_once   # single pass
"""

import asyncio
from datetime import UTC, datetime

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.repositories.attempt_repository import AttemptRepository, attempt_repository
from app.services.recording.merge_engine import MergeEngine, get_merge_engine
from app.services.recording.merge_queue import MergeJobQueue, build_merge_queue
from app.services.recording.transcoder import check_transcoder_available
from app.services.storage.storage_service import storage_service

logger = get_logger(__name__)


class SweepMetrics:
    """Counters for one sweep run."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.end_time = None
        self.candidates_found = 0
        self.jobs_queued = 0
        self.merges_succeeded = 0
        self.merges_failed = 0

    def finalize(self):
        self.end_time = datetime.now(UTC)

    def to_dict(self) -> dict:
        duration = (self.end_time - self.start_time).total_seconds() if self.end_time else None
        return {
            "candidates_found": self.candidates_found,
            "jobs_queued": self.jobs_queued,
            "merges_succeeded": self.merges_succeeded,
            "merges_failed": self.merges_failed,
            "duration_seconds": duration,
        }


class UnmergedSweepJob:
    def __init__(
        self,
        repository: AttemptRepository | None = None,
        engine: MergeEngine | None = None,
        queue_factory=build_merge_queue,
    ):
        self.repository = repository or attempt_repository
        self.engine = engine
        self.queue_factory = queue_factory
        self.is_running = False
        self.metrics = SweepMetrics()

    async def run_once(self) -> dict:
        """
        Find unmerged attempts and merge them one at a time.

        Returns:
            dict: {"success": bool, "attempt_ids": [...], "metrics": {...}}
        """
        if self.is_running:
            logger.warning("Unmerged sweep already running, skipping")
            return {"success": False, "error": "Already running"}

        self.is_running = True
        self.metrics.reset()

        try:
            attempt_ids = await self.repository.find_unmerged_attempt_ids(
                grace_minutes=settings.UNMERGED_SWEEP_GRACE_MINUTES,
                limit=settings.UNMERGED_SWEEP_BATCH_SIZE,
            )
            self.metrics.candidates_found = len(attempt_ids)

            if not attempt_ids:
                logger.info("No unmerged recordings found")
                return {"success": True, "attempt_ids": [], "metrics": self.metrics.to_dict()}

            engine = self.engine or get_merge_engine()
            queue: MergeJobQueue = self.queue_factory(engine.merge_attempt, is_ready=db_pool.is_ready)

            for attempt_id in attempt_ids:
                if queue.enqueue(attempt_id):
                    self.metrics.jobs_queued += 1

            logger.info("Unmerged recordings queued", count=self.metrics.jobs_queued)
            try:
                await queue.join()
            finally:
                await queue.shutdown()

            self.metrics.merges_succeeded = queue.completed_count
            self.metrics.merges_failed = queue.failed_count
            return {"success": True, "attempt_ids": attempt_ids, "metrics": self.metrics.to_dict()}

        except Exception as e:
            logger.error("Unmerged sweep failed", error=str(e))
            return {"success": False, "error": str(e), "metrics": self.metrics.to_dict()}

        finally:
            self.metrics.finalize()
            self.is_running = False
            logger.info("Unmerged sweep finished", **self.metrics.to_dict())


async def _prepare_worker() -> bool:
    """Pool, storage and transcoder must all be available before sweeping."""
    transcoder = check_transcoder_available()
    if not transcoder["ok"]:
        logger.error("Unmerged sweep cannot start: ffmpeg/ffprobe unavailable")
        return False

    await db_pool.initialize()
    storage_service.initialize()
    return True


async def run_unmerged_sweep_once() -> None:
    if not await _prepare_worker():
        return
    try:
        result = await unmerged_sweep_job.run_once()
        logger.info("Unmerged sweep result", result=result)
    finally:
        await db_pool.close()


async def start_unmerged_sweep_scheduler():
    """Sweep every UNMERGED_SWEEP_INTERVAL_MINUTES until cancelled."""
    if not await _prepare_worker():
        return

    interval_seconds = settings.UNMERGED_SWEEP_INTERVAL_MINUTES * 60
    logger.info(
        "Unmerged sweep scheduler STARTED",
        interval_minutes=settings.UNMERGED_SWEEP_INTERVAL_MINUTES,
        grace_minutes=settings.UNMERGED_SWEEP_GRACE_MINUTES,
    )

    try:
        while True:
            try:
                await unmerged_sweep_job.run_once()
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                logger.info("Unmerged sweep scheduler cancelled")
                break
            except Exception as e:
                logger.error("Error in unmerged sweep scheduler, will retry", error=str(e))
                await asyncio.sleep(interval_seconds)
    finally:
        await db_pool.close()


unmerged_sweep_job = UnmergedSweepJob()
