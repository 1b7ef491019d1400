"""
Candidate Proctoring Routes
Ingestion endpoints called by the exam client while an attempt is in progress.
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from app.auth.verify import CandidateSession, candidate_dependency
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.api.proctoring_request import LogProctoringEventsRequest, MediaSegmentUploadRequest
from app.models.api.proctoring_response import (
    EventLogData,
    EventLogResponse,
    MediaUploadData,
    MediaUploadResponse,
)
from app.services.proctoring.ingestion_service import (
    MAX_SEGMENT_BYTES,
    ProctoringIngestionError,
    ProctoringIngestionService,
    decode_media_payload,
    get_ingestion_service,
)
from app.services.storage.backends import StorageError

logger = get_logger(__name__)

router = APIRouter(prefix="/candidate/proctoring", tags=["candidate-proctoring"])


def _translate_error(e: Exception, attempt_id: str, action: str) -> HTTPException:
    if isinstance(e, ProctoringIngestionError):
        return HTTPException(status_code=e.status_code, detail=e.message)
    if isinstance(e, DatabaseError):
        logger.error("Database error during ingestion", action=action, attempt_id=attempt_id, error=str(e))
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable"
        )
    if isinstance(e, StorageError):
        logger.error("Storage error during ingestion", action=action, attempt_id=attempt_id, error=str(e))
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Media storage unavailable"
        )
    logger.error("Unexpected ingestion error", action=action, attempt_id=attempt_id, error=str(e))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Unable to record {action}"
    )


@router.post("/events", response_model=EventLogResponse)
async def log_proctoring_events(
    request: LogProctoringEventsRequest,
    session: CandidateSession = Depends(candidate_dependency),
    service: ProctoringIngestionService = Depends(get_ingestion_service),
):
    """Record a batch of behavioral events and return the updated score."""
    try:
        result = await service.log_events(
            session.attempt_id, [event.model_dump() for event in request.events]
        )
    except Exception as e:
        raise _translate_error(e, session.attempt_id, "proctoring events") from e

    return EventLogResponse(
        data=EventLogData(
            events_logged=result.events_logged,
            trust_score=result.trust_score,
            risk_level=result.risk_level,
        )
    )


@router.post("/media", response_model=MediaUploadResponse)
async def upload_media_segment(
    request: MediaSegmentUploadRequest,
    session: CandidateSession = Depends(candidate_dependency),
    service: ProctoringIngestionService = Depends(get_ingestion_service),
):
    """Store one base64-encoded media chunk."""
    try:
        data = decode_media_payload(request.chunk)
        result = await service.store_media_segment(
            session.attempt_id,
            request.media_type,
            data,
            mime_type=request.mime_type,
            duration_ms=request.duration_ms,
            sequence=request.sequence,
        )
    except Exception as e:
        raise _translate_error(e, session.attempt_id, "media segment") from e

    return MediaUploadResponse(
        data=MediaUploadData(segment_id=result.segment_id, size=result.size, mime_type=result.mime_type)
    )


@router.post("/media/upload", response_model=MediaUploadResponse)
async def upload_media_file(
    file: UploadFile = File(...),
    media_type: str = Form(..., alias="mediaType"),
    mime_type: str | None = Form(None, alias="mimeType"),
    duration_ms: float | None = Form(None, alias="durationMs"),
    sequence: int | None = Form(None, alias="sequence"),
    session: CandidateSession = Depends(candidate_dependency),
    service: ProctoringIngestionService = Depends(get_ingestion_service),
):
    """Store one media chunk sent as a multipart file."""
    try:
        # One byte past the limit is enough to reject the chunk
        data = await file.read(MAX_SEGMENT_BYTES + 1)
        result = await service.store_media_segment(
            session.attempt_id,
            media_type,
            data,
            mime_type=mime_type or file.content_type,
            duration_ms=duration_ms,
            sequence=sequence,
        )
    except Exception as e:
        raise _translate_error(e, session.attempt_id, "media segment") from e
    finally:
        await file.close()

    return MediaUploadResponse(
        data=MediaUploadData(segment_id=result.segment_id, size=result.size, mime_type=result.mime_type)
    )
