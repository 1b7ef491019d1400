"""
Merge engine: turns an attempt's locally staged media chunks into one
playable recording per channel.

Per channel: order local chunks by sequence, concatenate them (only the
first MediaRecorder chunk carries a WebM header, so the chunks are only
valid as one stream), re-encode with ffmpeg, probe the duration, push the
result to durable storage and record the URL on the attempt.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.proctoring_domain import CHANNELS, MediaSegment, select_merge_segments
from app.repositories.attempt_repository import AttemptRepository, attempt_repository
from app.services.recording.transcoder import probe_duration_seconds, run_transcode
from app.services.storage.backends import StorageError, StorageLocator
from app.services.storage.storage_service import StorageService, storage_service

logger = get_logger(__name__)

MERGED_CONTENT_TYPE = "video/webm"


class MergeEngineError(Exception):
    """Merge could not proceed for an attempt."""

    def __init__(self, message: str, attempt_id: str, channel: str | None = None):
        super().__init__(message)
        self.attempt_id = attempt_id
        self.channel = channel


@dataclass(slots=True)
class ChannelMergeResult:
    channel: str
    segment_count: int
    concatenated_bytes: int
    output_size: int
    recording_url: str
    durable: bool
    duration_seconds: float | None = None


def _unlink(path: Path) -> None:
    path.unlink(missing_ok=True)


class MergeEngine:
    def __init__(
        self,
        repository: AttemptRepository | None = None,
        storage: StorageService | None = None,
        transcode: Callable[..., Awaitable[Path]] = run_transcode,
        probe: Callable[..., Awaitable[float | None]] = probe_duration_seconds,
        delete_chunks_after_merge: bool | None = None,
    ):
        self.repository = repository or attempt_repository
        self.storage = storage or storage_service
        self.transcode = transcode
        self.probe = probe
        self.delete_chunks_after_merge = (
            settings.DELETE_CHUNKS_AFTER_MERGE
            if delete_chunks_after_merge is None
            else delete_chunks_after_merge
        )

    async def merge_attempt(self, attempt_id: str, *, force: bool = False) -> list[ChannelMergeResult]:
        """
        Merge every channel of an attempt that has local chunks.

        Channels already marked completed are skipped unless force is set,
        so a retried job does not redo finished work.

        Raises:
            Whatever failed the channel in progress, after that channel has
            been marked failed on the attempt.
        """
        attempt = await self.repository.get(attempt_id)
        if attempt is None:
            logger.warning("Merge skipped, attempt not found", attempt_id=attempt_id)
            return []

        report = attempt.proctoring_report
        results: list[ChannelMergeResult] = []
        merged_segments: list[MediaSegment] = []

        logger.info(
            "Merge started",
            attempt_id=attempt_id,
            local_segments=sum(1 for s in report.media_segments if s.storage == "local"),
            force=force,
        )

        for channel in CHANNELS:
            segments = select_merge_segments(report.media_segments, channel)
            if not segments:
                continue

            current = report.merge_status.get(channel)
            if current and current.status == "completed" and not force:
                logger.info("Channel already merged, skipping", attempt_id=attempt_id, channel=channel)
                continue

            try:
                await self.repository.set_merge_status(attempt_id, channel, "processing")
                result = await self._merge_channel(attempt_id, channel, segments)
                await self.repository.record_merge_success(attempt_id, channel, result.recording_url)
            except Exception as e:
                logger.error(
                    "Channel merge failed",
                    attempt_id=attempt_id,
                    channel=channel,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._record_failure(attempt_id, channel, e)
                raise

            results.append(result)
            merged_segments.extend(segments)

        if results and self.delete_chunks_after_merge:
            await self._delete_chunks(attempt_id, merged_segments)

        logger.info(
            "Merge complete",
            attempt_id=attempt_id,
            channels=[r.channel for r in results],
            segments=sum(r.segment_count for r in results),
        )
        return results

    async def _record_failure(self, attempt_id: str, channel: str, error: Exception) -> None:
        try:
            await self.repository.set_merge_status(attempt_id, channel, "failed", error=str(error))
        except Exception as status_error:
            logger.error(
                "Could not record merge failure",
                attempt_id=attempt_id,
                channel=channel,
                error=str(status_error),
            )

    async def _merge_channel(
        self, attempt_id: str, channel: str, segments: list[MediaSegment]
    ) -> ChannelMergeResult:
        local = self.storage.local
        concatenated_path = local.path_for(attempt_id, f"{channel}-concatenated.webm")
        output_path = local.path_for(attempt_id, f"{channel}-merged.webm")

        logger.info(
            "Merging channel",
            attempt_id=attempt_id,
            channel=channel,
            segments=len(segments),
            sequences=[s.sequence for s in segments],
        )

        try:
            concatenated_bytes = await self._concatenate(attempt_id, channel, segments, concatenated_path)
            try:
                await self.transcode(channel, concatenated_path, output_path)
            except BaseException:
                await asyncio.to_thread(_unlink, output_path)
                raise
        finally:
            await asyncio.to_thread(_unlink, concatenated_path)

        output_size = (await asyncio.to_thread(output_path.stat)).st_size
        duration = await self.probe(output_path)
        if duration is not None:
            logger.info("Merged duration probed", attempt_id=attempt_id, channel=channel, seconds=duration)

        recording_url, durable = await self._publish(attempt_id, channel, output_path)

        return ChannelMergeResult(
            channel=channel,
            segment_count=len(segments),
            concatenated_bytes=concatenated_bytes,
            output_size=output_size,
            recording_url=recording_url,
            durable=durable,
            duration_seconds=duration,
        )

    async def _concatenate(
        self, attempt_id: str, channel: str, segments: list[MediaSegment], target: Path
    ) -> int:
        """Write the chunks back to back in sequence order; returns bytes written."""
        local = self.storage.local
        target.parent.mkdir(parents=True, exist_ok=True)
        written = 0

        with target.open("wb") as handle:
            for segment in segments:
                stored = await local.get(StorageLocator(backend="local", path=segment.file_path))
                if stored is None:
                    raise MergeEngineError(
                        f"Segment file missing: {segment.segment_id}",
                        attempt_id=attempt_id,
                        channel=channel,
                    )
                data = await asyncio.to_thread(stored.read_all)
                await asyncio.to_thread(handle.write, data)
                written += len(data)

        logger.info("Chunks concatenated", attempt_id=attempt_id, channel=channel, bytes=written)
        return written

    async def _publish(self, attempt_id: str, channel: str, output_path: Path) -> tuple[str, bool]:
        """
        Push the merged file to durable storage.

        Returns:
            (recording URL, whether it is durable). With local storage, or
            when the upload fails, the local file stays and its path is used.
        """
        backend = self.storage.backend
        if backend.kind == "local":
            return str(output_path), False

        try:
            locator = await backend.put_named_file(
                attempt_id, output_path.name, output_path, MERGED_CONTENT_TYPE
            )
        except StorageError as e:
            logger.warning(
                "Merged recording upload failed, keeping local copy",
                attempt_id=attempt_id,
                channel=channel,
                path=str(output_path),
                error=str(e),
            )
            return str(output_path), False

        try:
            await asyncio.to_thread(_unlink, output_path)
        except OSError as e:
            logger.warning("Could not delete local merged file", path=str(output_path), error=str(e))

        logger.info("Merged recording uploaded", attempt_id=attempt_id, channel=channel, url=locator.url)
        return locator.url, True

    async def _delete_chunks(self, attempt_id: str, segments: list[MediaSegment]) -> None:
        local = self.storage.local
        deleted = 0
        for segment in segments:
            try:
                await local.delete(StorageLocator(backend="local", path=segment.file_path))
                deleted += 1
            except OSError as e:
                logger.warning(
                    "Could not delete chunk", attempt_id=attempt_id, segment_id=segment.segment_id, error=str(e)
                )
        logger.info("Chunks deleted after merge", attempt_id=attempt_id, deleted=deleted)


_merge_engine: MergeEngine | None = None


def get_merge_engine() -> MergeEngine:
    global _merge_engine
    if _merge_engine is None:
        _merge_engine = MergeEngine()
    return _merge_engine
