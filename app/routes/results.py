"""
Recruiter Results Routes
Proctoring review surface: report detail, media streaming and operator actions.
"""

import re

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import RedirectResponse, Response, StreamingResponse

from app.auth.verify import RecruiterSession, recruiter_dependency
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.api.proctoring_response import (
    MediaSegmentView,
    MergeRequestResponse,
    MergeStatusView,
    ProctoringDetail,
    ProctoringDetailResponse,
    ProctoringEventView,
    RecordingView,
)
from app.models.domain.proctoring_domain import CHANNELS, Attempt, ProctoringReport
from app.repositories.attempt_repository import (
    AttemptNotFoundError,
    AttemptRepository,
    get_attempt_repository,
)
from app.services.proctoring.ingestion_service import ProctoringIngestionService, get_ingestion_service
from app.services.proctoring.risk_scorer import SEVERITY_LEVELS, severity_rank
from app.services.recording.merge_queue import MergeJobQueue, get_merge_queue
from app.services.storage.backends import (
    ByteRange,
    ObjectStorageBackend,
    RangeNotSatisfiable,
    StorageError,
    StorageLocator,
)
from app.services.storage.storage_service import StorageService, get_storage_service

logger = get_logger(__name__)

router = APIRouter(prefix="/results", tags=["results"])

_RANGE_PATTERN = re.compile(r"^bytes=(\d+)-(\d*)$")


def parse_range_header(value: str) -> ByteRange:
    """
    Parse a single `bytes=start-end` range.

    Raises:
        RangeNotSatisfiable: malformed, multi-part, suffix or inverted ranges
    """
    match = _RANGE_PATTERN.match(value.strip())
    if not match:
        raise RangeNotSatisfiable(None)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else None
    if end is not None and end < start:
        raise RangeNotSatisfiable(None)
    return ByteRange(start=start, end=end)


def build_flags(report: ProctoringReport) -> list[str]:
    """Highest severity seen, plus the stored risk level when it differs."""
    highest = severity_rank(report.risk_level)
    for event in report.events:
        highest = max(highest, severity_rank(event.severity))

    flags = [SEVERITY_LEVELS[highest]]
    if report.risk_level not in flags:
        flags.append(report.risk_level)
    return flags


def build_proctoring_detail(attempt: Attempt) -> ProctoringDetail:
    report = attempt.proctoring_report

    events = sorted(report.events, key=lambda event: event.timestamp, reverse=True)
    segments = sorted(report.media_segments, key=lambda segment: segment.recorded_at, reverse=True)

    return ProctoringDetail(
        attempt_id=attempt.id,
        status=attempt.status,
        trust_score=report.trust_score,
        risk_level=report.risk_level,
        summary=report.summary,
        recording=RecordingView(
            latest={channel: report.recording_urls.get(channel) for channel in CHANNELS}
        ),
        merge_status={
            channel: MergeStatusView(**state.model_dump())
            for channel, state in report.merge_status.items()
        },
        flags=build_flags(report),
        events=[
            ProctoringEventView(
                type=event.type,
                severity=event.severity,
                timestamp=event.timestamp,
                details=event.details,
            )
            for event in events
        ],
        media_segments=[
            MediaSegmentView(
                segment_id=segment.segment_id,
                type=segment.channel,
                storage=segment.storage,
                recorded_at=segment.recorded_at,
                mime_type=segment.mime_type,
                duration_ms=segment.duration_ms,
                size=segment.size,
                sequence=segment.sequence,
            )
            for segment in segments
        ],
    )


async def _load_attempt(repository: AttemptRepository, attempt_id: str) -> Attempt:
    try:
        attempt = await repository.get(attempt_id)
    except DatabaseError as e:
        logger.error("Database error loading attempt", attempt_id=attempt_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable"
        ) from e

    if attempt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attempt not found")
    return attempt


@router.get("/{attempt_id}/proctoring", response_model=ProctoringDetailResponse)
async def get_proctoring_details(
    attempt_id: str,
    session: RecruiterSession = Depends(recruiter_dependency),
    repository: AttemptRepository = Depends(get_attempt_repository),
):
    """Trust score, risk level, recordings, merge status, events and segments."""
    attempt = await _load_attempt(repository, attempt_id)
    return ProctoringDetailResponse(data=build_proctoring_detail(attempt))


@router.get("/{attempt_id}/proctoring/media/{segment_id}")
async def stream_proctoring_media(
    attempt_id: str,
    segment_id: str,
    range_header: str | None = Header(None, alias="Range"),
    session: RecruiterSession = Depends(recruiter_dependency),
    repository: AttemptRepository = Depends(get_attempt_repository),
    storage: StorageService = Depends(get_storage_service),
):
    """Stream one stored segment, honoring single byte ranges."""
    attempt = await _load_attempt(repository, attempt_id)

    segment = next(
        (s for s in attempt.proctoring_report.media_segments if s.segment_id == segment_id), None
    )
    if segment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media segment not found")

    if segment.storage == "r2":
        backend = storage.backend
        public_url = segment.public_url
        if not public_url and segment.file_key and isinstance(backend, ObjectStorageBackend):
            public_url = backend.public_url_for(segment.file_key)
        if public_url:
            return RedirectResponse(public_url, status_code=status.HTTP_302_FOUND)
        if not isinstance(backend, ObjectStorageBackend):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media segment unavailable")
        locator = StorageLocator(backend="r2", key=segment.file_key)
    else:
        backend = storage.local
        locator = StorageLocator(backend="local", path=segment.file_path)

    try:
        byte_range = parse_range_header(range_header) if range_header else None
        stored = await backend.get(locator, byte_range)
    except RangeNotSatisfiable as e:
        headers = {"Content-Range": f"bytes */{e.total_size}"} if e.total_size is not None else {}
        return Response(status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE, headers=headers)
    except StorageError as e:
        logger.error("Media fetch failed", attempt_id=attempt_id, segment_id=segment_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Media storage unavailable"
        ) from e

    if stored is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media file missing")

    headers = {"Accept-Ranges": "bytes"}
    if stored.content_length is not None:
        headers["Content-Length"] = str(stored.content_length)

    status_code = status.HTTP_200_OK
    if byte_range is not None and stored.content_range:
        status_code = status.HTTP_206_PARTIAL_CONTENT
        headers["Content-Range"] = stored.content_range

    return StreamingResponse(
        stored.body,
        status_code=status_code,
        media_type=segment.mime_type or stored.content_type or "video/webm",
        headers=headers,
    )


@router.post("/{attempt_id}/proctoring/merge", response_model=MergeRequestResponse)
async def request_recording_merge(
    attempt_id: str,
    force: bool = Query(default=False, description="Re-run channels that already merged"),
    session: RecruiterSession = Depends(recruiter_dependency),
    repository: AttemptRepository = Depends(get_attempt_repository),
    queue: MergeJobQueue = Depends(get_merge_queue),
):
    """Operator action: queue a merge for the attempt's recordings."""
    attempt = await _load_attempt(repository, attempt_id)

    if not attempt.has_media:
        return MergeRequestResponse(
            queued=False, attempt_id=attempt_id, force=force, message="No media segments to merge"
        )

    queued = queue.enqueue(attempt_id, force=force)
    logger.info(
        "Merge requested by operator",
        attempt_id=attempt_id,
        user_id=session.user_id,
        force=force,
        queued=queued,
    )
    return MergeRequestResponse(
        queued=queued,
        attempt_id=attempt_id,
        force=force,
        message="Merge queued" if queued else "Merge already queued or processing",
    )


@router.post("/{attempt_id}/proctoring/reset", response_model=ProctoringDetailResponse)
async def reset_proctoring_report(
    attempt_id: str,
    session: RecruiterSession = Depends(recruiter_dependency),
    repository: AttemptRepository = Depends(get_attempt_repository),
    service: ProctoringIngestionService = Depends(get_ingestion_service),
):
    """Administrative reset of events, trust score and risk level."""
    try:
        await service.reset(attempt_id)
    except AttemptNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attempt not found") from e
    except DatabaseError as e:
        logger.error("Database error resetting report", attempt_id=attempt_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable"
        ) from e

    logger.warning("Proctoring report reset by operator", attempt_id=attempt_id, user_id=session.user_id)
    attempt = await _load_attempt(repository, attempt_id)
    return ProctoringDetailResponse(data=build_proctoring_detail(attempt))
