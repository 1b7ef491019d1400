"""
Proctoring ingestion request models.
Field names are camelCase on the wire, snake_case in Python.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ProctoringEventRequest(CamelModel):
    """One behavioral event as reported by the exam client."""

    type: str | None = Field(None, description="Free-form event tag, e.g. tab_switch")
    severity: str | None = Field(None, description="low, medium or high; anything else counts as low")
    details: Any = Field(None, description="Arbitrary event payload")
    occurred_at: str | None = Field(None, description="ISO-8601 client timestamp")


class LogProctoringEventsRequest(CamelModel):
    events: list[ProctoringEventRequest] = Field(default_factory=list)

    @field_validator("events", mode="before")
    @classmethod
    def _wrap_single_event(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value


class MediaSegmentUploadRequest(CamelModel):
    """Base64 media chunk upload (optionally a data URL)."""

    media_type: str | None = Field(None, description="webcam, screen or microphone")
    chunk: str | None = Field(None, description="Base64 payload, data-URL prefix allowed")
    mime_type: str | None = Field(None, description="Defaults to video/webm")
    duration_ms: float | None = Field(None, ge=0)
    sequence: int | None = Field(None, ge=0, description="Order of the chunk within its channel")
