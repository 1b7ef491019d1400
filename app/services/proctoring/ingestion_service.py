"""
Proctoring ingestion: behavioral event batches and media segment uploads.

All validation happens before anything is written. Report mutations go
through AttemptRepository.update_report, which re-reads the stored report
under a row lock, so concurrent uploads for one attempt never drop each
other's changes.
"""

import base64
import binascii
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.proctoring_domain import CHANNELS, MediaSegment, ProctoringReport, utcnow
from app.repositories.attempt_repository import (
    AttemptRepository,
    attempt_repository,
    report_summary_fields,
)
from app.services.proctoring.risk_scorer import (
    normalize_events,
    record_events,
    reset_report,
    trim_collections,
)
from app.services.storage.storage_service import StorageService, storage_service

logger = get_logger(__name__)

MAX_SEGMENT_BYTES = 8 * 1024 * 1024
SMALL_SEGMENT_WARNING_BYTES = 1024
DEFAULT_MIME_TYPE = "video/webm"


class ProctoringIngestionError(Exception):
    """Client input error on an ingestion request."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NoEventsProvided(ProctoringIngestionError):
    def __init__(self):
        super().__init__("No proctoring events provided")


class UnsupportedMediaType(ProctoringIngestionError):
    def __init__(self, media_type: Any):
        super().__init__("Unsupported media type")
        self.media_type = media_type


class EmptyPayload(ProctoringIngestionError):
    def __init__(self):
        super().__init__("Missing media payload")


class InvalidPayloadEncoding(ProctoringIngestionError):
    def __init__(self):
        super().__init__("Unable to decode media chunk")


class PayloadTooLarge(ProctoringIngestionError):
    status_code = 413

    def __init__(self, size: int):
        super().__init__("Media chunk exceeds 8MB limit")
        self.size = size


def decode_media_payload(chunk: Any) -> bytes:
    """
    Decode a base64 media chunk, with or without a data-URL prefix.

    Raises:
        EmptyPayload: chunk missing or empty
        InvalidPayloadEncoding: chunk is not valid base64
    """
    if not isinstance(chunk, str) or not chunk:
        raise EmptyPayload()

    encoded = chunk.split(",", 1)[1] if "," in chunk else chunk
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidPayloadEncoding() from e


def new_segment_id(channel: str) -> str:
    epoch_ms = int(utcnow().timestamp() * 1000)
    return f"{channel}-{epoch_ms}-{uuid.uuid4()}.webm"


@dataclass(slots=True)
class EventLogResult:
    events_logged: int
    trust_score: int
    risk_level: str


@dataclass(slots=True)
class MediaUploadResult:
    segment_id: str
    size: int
    mime_type: str
    storage: str


class ProctoringIngestionService:
    def __init__(
        self,
        repository: AttemptRepository | None = None,
        storage: StorageService | None = None,
    ):
        self.repository = repository or attempt_repository
        self.storage = storage or storage_service

    async def log_events(
        self, attempt_id: str, raw_events: list[Mapping[str, Any]] | None
    ) -> EventLogResult:
        """
        Append a batch of behavioral events and rescore the report.

        Raises:
            NoEventsProvided: empty batch
            DatabaseError: persistence failure; the report is left unchanged
        """
        if not raw_events:
            raise NoEventsProvided()

        events = normalize_events(raw_events)

        report, _ = await self.repository.update_report(
            attempt_id,
            lambda current: record_events(current, events),
            create_if_missing=True,
        )

        logger.info(
            "Proctoring events logged",
            attempt_id=attempt_id,
            batch_size=len(events),
            **report_summary_fields(report),
        )

        return EventLogResult(
            events_logged=len(events),
            trust_score=report.trust_score,
            risk_level=report.risk_level,
        )

    async def store_media_segment(
        self,
        attempt_id: str,
        media_type: Any,
        data: bytes | None,
        *,
        mime_type: str | None = None,
        duration_ms: float | None = None,
        sequence: int | None = None,
    ) -> MediaUploadResult:
        """
        Store one media chunk and register it on the attempt's report.

        Args:
            attempt_id: Attempt the chunk belongs to
            media_type: Channel name (webcam, screen, microphone), any case
            data: Decoded chunk bytes
            mime_type: Defaults to video/webm
            duration_ms: Client-reported chunk duration
            sequence: Client-assigned order within the channel

        Raises:
            UnsupportedMediaType, EmptyPayload, PayloadTooLarge: invalid input
            StorageError: the blob could not be written
            DatabaseError: the report could not be updated
        """
        channel = media_type.lower() if isinstance(media_type, str) else ""
        if channel not in CHANNELS:
            raise UnsupportedMediaType(media_type)

        if not data:
            raise EmptyPayload()

        size = len(data)
        if size > MAX_SEGMENT_BYTES:
            logger.warning(
                "Media chunk rejected as too large",
                attempt_id=attempt_id,
                channel=channel,
                size=size,
            )
            raise PayloadTooLarge(size)

        if size < SMALL_SEGMENT_WARNING_BYTES:
            logger.warning(
                "Very small media chunk received",
                attempt_id=attempt_id,
                channel=channel,
                sequence=sequence,
                size=size,
            )

        # Lazy creation happens before the blob is written so the scope id is valid
        await self.repository.find_or_create(attempt_id)

        segment_id = new_segment_id(channel)
        resolved_mime_type = mime_type if isinstance(mime_type, str) and mime_type else DEFAULT_MIME_TYPE

        locator = await self.storage.backend.put(attempt_id, segment_id, data, resolved_mime_type)

        segment = MediaSegment(
            segment_id=segment_id,
            channel=channel,
            storage=locator.backend,
            file_path=locator.path,
            file_key=locator.key,
            public_url=locator.public_url,
            mime_type=resolved_mime_type,
            recorded_at=utcnow(),
            size=size,
            sequence=sequence,
            duration_ms=duration_ms,
        )

        def _register(report: ProctoringReport) -> None:
            report.media_segments = [*report.media_segments, segment]
            report.recording_urls[channel] = segment.locator_url
            trim_collections(report)

        await self.repository.update_report(attempt_id, _register)

        logger.info(
            "Media segment stored",
            attempt_id=attempt_id,
            channel=channel,
            segment_id=segment_id,
            sequence=sequence,
            size=size,
            storage=locator.backend,
        )

        return MediaUploadResult(
            segment_id=segment_id,
            size=size,
            mime_type=resolved_mime_type,
            storage=locator.backend,
        )

    async def reset(self, attempt_id: str) -> ProctoringReport:
        """Administrative reset of events, trust score and risk level."""
        report, _ = await self.repository.update_report(attempt_id, reset_report)
        logger.warning("Proctoring report reset", attempt_id=attempt_id)
        return report


_ingestion_service: ProctoringIngestionService | None = None


def get_ingestion_service() -> ProctoringIngestionService:
    global _ingestion_service
    if _ingestion_service is None:
        _ingestion_service = ProctoringIngestionService()
    return _ingestion_service
