"""
Persistence for attempts and their embedded proctoring reports.

Every report mutation is a read-modify-write inside one transaction that
holds the row lock (SELECT ... FOR UPDATE), so event ingestion, media
ingestion and the merge engine can touch the same attempt concurrently
without losing each other's writes.
"""

from collections.abc import Callable
from typing import Any, TypeVar

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger
from app.models.domain.proctoring_domain import (
    CHANNELS,
    Attempt,
    ChannelMergeStatus,
    ProctoringReport,
    select_merge_segments,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")


class AttemptNotFoundError(DatabaseError):
    """Raised when a report mutation targets an attempt that does not exist."""

    def __init__(self, attempt_id: str):
        super().__init__(f"Attempt not found: {attempt_id}", operation="load_attempt", recoverable=False)
        self.attempt_id = attempt_id


class AttemptRepository:
    """Data access for the proctoring_attempts table."""

    SELECT_COLUMNS = "id, status, proctoring_report, created_at, updated_at"

    INSERT_IF_MISSING = """
        INSERT INTO proctoring_attempts (id, status, proctoring_report)
        VALUES (%s, 'in_progress', %s)
        ON CONFLICT (id) DO NOTHING
    """

    @staticmethod
    def _row_to_attempt(row: dict | None) -> Attempt | None:
        if not row:
            return None
        return Attempt(
            id=str(row["id"]),
            status=row["status"],
            proctoring_report=ProctoringReport.from_document(row.get("proctoring_report")),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, attempt_id: str) -> Attempt | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM proctoring_attempts WHERE id = %s"
        return self._row_to_attempt(await fetch_one(query, (attempt_id,)))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_or_create(self, attempt_id: str) -> Attempt:
        """
        Return the attempt, creating it with a default report if missing.

        The insert is ON CONFLICT DO NOTHING, so racing first writers all
        converge on the single row that won.
        """
        async with db_pool.transaction() as conn:
            created = await execute_query(
                self.INSERT_IF_MISSING,
                (attempt_id, Jsonb(ProctoringReport().to_document())),
                connection=conn,
            )
            row = await fetch_one(
                f"SELECT {self.SELECT_COLUMNS} FROM proctoring_attempts WHERE id = %s",
                (attempt_id,),
                connection=conn,
            )

        if created:
            logger.info("Proctoring attempt created lazily", attempt_id=attempt_id)

        attempt = self._row_to_attempt(row)
        if attempt is None:
            raise AttemptNotFoundError(attempt_id)
        return attempt

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def update_report(
        self,
        attempt_id: str,
        mutate: Callable[[ProctoringReport], T],
        *,
        create_if_missing: bool = False,
    ) -> tuple[ProctoringReport, T]:
        """
        Apply `mutate` to the current stored report and write it back.

        Args:
            attempt_id: Attempt identifier
            mutate: Synchronous function that edits the report in place; its
                return value is handed back to the caller
            create_if_missing: Lazily create the attempt row first

        Returns:
            (updated report, mutate's return value)

        Raises:
            AttemptNotFoundError: attempt missing and create_if_missing is False
            DatabaseError: persistence failure; nothing is written
        """
        async with db_pool.transaction() as conn:
            if create_if_missing:
                await execute_query(
                    self.INSERT_IF_MISSING,
                    (attempt_id, Jsonb(ProctoringReport().to_document())),
                    connection=conn,
                )

            row = await fetch_one(
                "SELECT proctoring_report FROM proctoring_attempts WHERE id = %s FOR UPDATE",
                (attempt_id,),
                connection=conn,
            )
            if not row:
                raise AttemptNotFoundError(attempt_id)

            report = ProctoringReport.from_document(row.get("proctoring_report"))
            result = mutate(report)

            await execute_query(
                """
                UPDATE proctoring_attempts
                SET proctoring_report = %s,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (Jsonb(report.to_document()), attempt_id),
                connection=conn,
            )

        return report, result

    async def set_merge_status(
        self, attempt_id: str, channel: str, status: str, error: str | None = None
    ) -> ProctoringReport:
        def _apply(report: ProctoringReport) -> None:
            report.merge_status[channel] = ChannelMergeStatus(
                status=status, last_attempt_at=utcnow(), error=error
            )

        report, _ = await self.update_report(attempt_id, _apply)
        logger.info("Merge status updated", attempt_id=attempt_id, channel=channel, status=status)
        return report

    async def record_merge_success(self, attempt_id: str, channel: str, recording_url: str) -> None:
        def _apply(report: ProctoringReport) -> None:
            report.recording_urls[channel] = recording_url
            report.merge_status[channel] = ChannelMergeStatus(
                status="completed", last_attempt_at=utcnow(), error=None
            )

        await self.update_report(attempt_id, _apply)
        logger.info(
            "Merged recording recorded",
            attempt_id=attempt_id,
            channel=channel,
            recording_url=recording_url,
        )

    async def mark_merge_failed(self, attempt_id: str, error: str) -> list[str]:
        """
        Record a terminal merge failure on every channel that has segments
        eligible for merging and is not already completed. Channels the
        merge engine never touches keep their merge status.

        Returns:
            Channels marked as failed
        """

        def _apply(report: ProctoringReport) -> list[str]:
            channels = [
                channel
                for channel in CHANNELS
                if select_merge_segments(report.media_segments, channel)
            ]
            marked = []
            now = utcnow()
            for channel in channels:
                current = report.merge_status.get(channel)
                if current and current.status == "completed":
                    continue
                report.merge_status[channel] = ChannelMergeStatus(
                    status="failed", last_attempt_at=now, error=error
                )
                marked.append(channel)
            return marked

        _, marked = await self.update_report(attempt_id, _apply)
        logger.warning(
            "Merge marked as permanently failed", attempt_id=attempt_id, channels=marked, error=error
        )
        return marked

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def find_unmerged_attempt_ids(
        self, *, grace_minutes: int = 30, limit: int = 50
    ) -> list[str]:
        """
        Completed attempts that still have sequenced local segments but no
        finished merge. Attempts whose local segments all lack a sequence
        have nothing to merge and are never picked.

        Picks attempts with no merge status at all, a pending channel, or a
        channel stuck in processing for longer than the grace period.
        Recently updated attempts are skipped so a merge that the API process
        is about to run is not duplicated.
        """
        query = """
            SELECT a.id
            FROM proctoring_attempts a
            WHERE a.status = 'completed'
              AND a.updated_at < NOW() - make_interval(mins => %s)
              AND EXISTS (
                  SELECT 1
                  FROM jsonb_array_elements(
                      COALESCE(a.proctoring_report->'media_segments', '[]'::jsonb)
                  ) seg
                  WHERE seg->>'storage' = 'local'
                    AND seg->>'sequence' IS NOT NULL
              )
              AND (
                  COALESCE(a.proctoring_report->'merge_status', '{}'::jsonb) = '{}'::jsonb
                  OR EXISTS (
                      SELECT 1
                      FROM jsonb_each(a.proctoring_report->'merge_status') ms
                      WHERE ms.value->>'status' IN ('pending', 'processing')
                  )
              )
            ORDER BY a.updated_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (grace_minutes, limit))
        return [str(row["id"]) for row in rows]


def report_summary_fields(report: ProctoringReport) -> dict[str, Any]:
    """Fields most call sites log after a mutation."""
    return {
        "trust_score": report.trust_score,
        "risk_level": report.risk_level,
        "events": len(report.events),
        "media_segments": len(report.media_segments),
    }


attempt_repository = AttemptRepository()


def get_attempt_repository() -> AttemptRepository:
    return attempt_repository
