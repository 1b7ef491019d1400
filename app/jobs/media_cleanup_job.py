"""
Local Proctoring Media Cleanup Job - bounds disk usage of the local media root.

Each run walks {media_root}/{attempt_id}/ and:
1. Prunes .webm files whose mtime is older than the retention window
2. Removes attempt directories left empty

Design:
- Dry-run mode logs what would be removed without touching anything
- A run is skipped while the previous one is still in progress
- Never raises out of the scheduler loop

Usage:
    python -m app.jobs.worker media_cleanup
"""

import asyncio
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class CleanupStats:
    folders_scanned: int = 0
    files_examined: int = 0
    files_pruned: int = 0
    bytes_freed: int = 0
    directories_removed: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mb_freed"] = round(self.bytes_freed / (1024 * 1024), 2)
        return data


def cleanup_local_media(
    media_root: Path, retention_minutes: float, dry_run: bool = False, now: float | None = None
) -> CleanupStats:
    """Synchronous filesystem walk; run it in a worker thread."""
    stats = CleanupStats()

    if not media_root.is_dir():
        logger.info("Media directory not found, skipping", media_root=str(media_root))
        return stats

    cutoff = (now if now is not None else time.time()) - retention_minutes * 60

    for attempt_dir in sorted(media_root.iterdir()):
        if not attempt_dir.is_dir():
            continue
        stats.folders_scanned += 1

        entries = list(attempt_dir.iterdir())
        remaining = len(entries)

        for entry in entries:
            if not entry.is_file() or entry.suffix != ".webm":
                continue

            stat = entry.stat()
            stats.files_examined += 1
            if stat.st_mtime >= cutoff:
                continue

            if dry_run:
                logger.info("Would remove media file", path=str(entry))
            else:
                entry.unlink(missing_ok=True)
                logger.debug("Removed media file", path=str(entry))

            stats.files_pruned += 1
            stats.bytes_freed += stat.st_size
            remaining -= 1

        if remaining == 0:
            if dry_run:
                logger.info("Would remove empty directory", path=str(attempt_dir))
            else:
                try:
                    os.rmdir(attempt_dir)
                except OSError as e:
                    logger.warning("Could not remove directory", path=str(attempt_dir), error=str(e))
                    continue
            stats.directories_removed += 1

    return stats


class MediaCleanupJob:
    """Prunes stale local proctoring media."""

    def __init__(
        self,
        media_root: Path | None = None,
        retention_minutes: float | None = None,
        dry_run: bool | None = None,
    ):
        self.media_root = media_root or settings.media_root()
        self.retention_minutes = (
            settings.PROCTORING_MEDIA_RETENTION_MINUTES if retention_minutes is None else retention_minutes
        )
        self.dry_run = settings.PROCTORING_MEDIA_CLEANUP_DRY_RUN if dry_run is None else dry_run
        self.is_running = False
        self.last_run_stats: CleanupStats | None = None

    async def run_cleanup(self) -> dict:
        """
        Run one cleanup pass.

        Returns:
            dict: {"success": bool, "dry_run": bool, "stats": {...}} or an
            error entry when skipped or failed
        """
        if self.is_running:
            logger.warning("Media cleanup already running, skipping")
            return {"success": False, "error": "Already running"}

        self.is_running = True
        start = time.monotonic()
        try:
            stats = await asyncio.to_thread(
                cleanup_local_media, self.media_root, self.retention_minutes, self.dry_run
            )
        except OSError as e:
            logger.error("Media cleanup failed", media_root=str(self.media_root), error=str(e))
            return {"success": False, "error": str(e)}
        finally:
            self.is_running = False

        self.last_run_stats = stats
        logger.info(
            "Media cleanup completed",
            media_root=str(self.media_root),
            retention_minutes=self.retention_minutes,
            dry_run=self.dry_run,
            duration_seconds=round(time.monotonic() - start, 2),
            **stats.to_dict(),
        )
        return {"success": True, "dry_run": self.dry_run, "stats": stats.to_dict()}


# ==========================================================================
# SCHEDULER
# ==========================================================================


async def start_media_cleanup_scheduler():
    """Run the cleanup immediately, then every PROCTORING_CLEANUP_INTERVAL_MINUTES."""
    if not settings.PROCTORING_CLEANUP_ENABLED:
        logger.info("Media cleanup scheduler DISABLED", environment=settings.environment)
        return

    interval_seconds = settings.PROCTORING_CLEANUP_INTERVAL_MINUTES * 60

    logger.info(
        "Media cleanup scheduler STARTED",
        interval_minutes=settings.PROCTORING_CLEANUP_INTERVAL_MINUTES,
        retention_minutes=media_cleanup_job.retention_minutes,
        dry_run=media_cleanup_job.dry_run,
    )

    while True:
        try:
            await media_cleanup_job.run_cleanup()
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("Media cleanup scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in media cleanup scheduler, will retry", error=str(e))
            await asyncio.sleep(interval_seconds)


# Singleton instance for manual triggers
media_cleanup_job = MediaCleanupJob()
