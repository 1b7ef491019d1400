"""
Proctoring API response models.
Serialized with camelCase aliases to match the exam and review clients.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventLogData(CamelResponse):
    events_logged: int
    trust_score: int
    risk_level: str


class EventLogResponse(CamelResponse):
    success: bool = True
    data: EventLogData


class MediaUploadData(CamelResponse):
    segment_id: str
    size: int
    mime_type: str


class MediaUploadResponse(CamelResponse):
    success: bool = True
    data: MediaUploadData


class ProctoringEventView(CamelResponse):
    type: str
    severity: str
    timestamp: datetime
    details: Any = None


class MediaSegmentView(CamelResponse):
    segment_id: str
    type: str = Field(..., description="Channel the segment was captured from")
    storage: str
    recorded_at: datetime
    mime_type: str
    duration_ms: float | None = None
    size: int
    sequence: int | None = None


class MergeStatusView(CamelResponse):
    status: str
    last_attempt_at: datetime | None = None
    error: str | None = None


class RecordingView(CamelResponse):
    latest: dict[str, str | None]


class ProctoringDetail(CamelResponse):
    attempt_id: str
    status: str
    trust_score: int
    risk_level: str
    summary: str
    recording: RecordingView
    merge_status: dict[str, MergeStatusView] = Field(default_factory=dict)
    flags: list[str] = Field(default_factory=list)
    events: list[ProctoringEventView] = Field(default_factory=list)
    media_segments: list[MediaSegmentView] = Field(default_factory=list)


class ProctoringDetailResponse(CamelResponse):
    success: bool = True
    data: ProctoringDetail


class MergeRequestResponse(CamelResponse):
    success: bool = True
    queued: bool
    attempt_id: str
    force: bool = False
    message: str
