from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Severity = Literal["low", "medium", "high"]
Channel = Literal["webcam", "screen", "microphone"]
StorageKind = Literal["local", "r2"]
MergeState = Literal["pending", "processing", "completed", "failed"]

CHANNELS: tuple[str, ...] = ("webcam", "screen", "microphone")

DEFAULT_SUMMARY = "Proctoring events recorded. Detailed analysis forthcoming."


def utcnow() -> datetime:
    return datetime.now(UTC)


class ProctoringEvent(BaseModel):
    """One behavioral signal reported by the exam client. Append-only."""

    model_config = ConfigDict(frozen=True)

    type: str
    severity: Severity = "low"
    details: Any = None
    timestamp: datetime


class MediaSegment(BaseModel):
    """One stored chunk of captured media for a single channel."""

    model_config = ConfigDict(frozen=True)

    segment_id: str
    channel: Channel
    storage: StorageKind = "local"
    file_path: str | None = None  # local storage only
    file_key: str | None = None  # object storage only
    public_url: str | None = None  # object storage with public base URL
    mime_type: str = "video/webm"
    recorded_at: datetime
    size: int = 0
    sequence: int | None = None
    duration_ms: float | None = None

    @property
    def locator_url(self) -> str:
        """Best available reference: public URL, then object key, then path."""
        return self.public_url or self.file_key or self.file_path or self.segment_id


def select_merge_segments(segments: list[MediaSegment], channel: str) -> list[MediaSegment]:
    """Locally staged chunks of one channel that carry a sequence, in sequence order."""
    eligible = [
        segment
        for segment in segments
        if segment.channel == channel
        and segment.storage == "local"
        and segment.file_path
        and segment.sequence is not None
    ]
    return sorted(eligible, key=lambda segment: segment.sequence)


class ChannelMergeStatus(BaseModel):
    status: MergeState = "pending"
    last_attempt_at: datetime | None = None
    error: str | None = None


class ProctoringReport(BaseModel):
    """
    Proctoring state embedded in an attempt.

    Stored as a single JSONB document; every mutation rewrites the whole
    document under a row lock.
    """

    events: list[ProctoringEvent] = Field(default_factory=list)
    trust_score: int = Field(default=100, ge=0, le=100)
    risk_level: Severity = "low"
    summary: str = DEFAULT_SUMMARY
    media_segments: list[MediaSegment] = Field(default_factory=list)
    recording_urls: dict[str, str] = Field(default_factory=dict)
    merge_status: dict[str, ChannelMergeStatus] = Field(default_factory=dict)

    @field_validator("risk_level", mode="before")
    @classmethod
    def _coerce_risk_level(cls, value: Any) -> str:
        if isinstance(value, str) and value.lower() in ("medium", "high"):
            return value.lower()
        return "low"

    @field_validator("trust_score", mode="before")
    @classmethod
    def _coerce_trust_score(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int | float):
            return 100
        return max(0, min(100, int(value)))

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> "ProctoringReport":
        """Build a report from a stored JSONB document, tolerating missing fields."""
        if not document:
            return cls()
        cleaned = {key: value for key, value in document.items() if value is not None}
        if not cleaned.get("summary"):
            cleaned.pop("summary", None)
        return cls.model_validate(cleaned)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def segments_for(self, channel: str) -> list[MediaSegment]:
        return [segment for segment in self.media_segments if segment.channel == channel]


class Attempt(BaseModel):
    """The slice of a candidate's exam attempt this service reads and writes."""

    id: str
    status: str = "in_progress"
    proctoring_report: ProctoringReport = Field(default_factory=ProctoringReport)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_media(self) -> bool:
        return bool(self.proctoring_report.media_segments)
