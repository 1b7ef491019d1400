"""
Behavioral risk scoring for proctoring reports.

Pure functions over ProctoringReport: event normalization, trust score
deductions, risk escalation, summary text and collection caps. The
ingestion service applies them inside a locked read-modify-write.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from app.models.domain.proctoring_domain import (
    DEFAULT_SUMMARY,
    ProctoringEvent,
    ProctoringReport,
    utcnow,
)

# Index is the severity rank
SEVERITY_LEVELS: tuple[str, ...] = ("low", "medium", "high")
SEVERITY_IMPACT: dict[str, int] = {"low": 2, "medium": 7, "high": 15}

MAX_PROCTORING_EVENTS = 120
MAX_MEDIA_SEGMENTS = 24


def normalize_severity(value: Any) -> str:
    """Lower-case known severities; anything else counts as low."""
    if isinstance(value, str) and value.lower() in SEVERITY_LEVELS:
        return value.lower()
    return "low"


def severity_rank(severity: str) -> int:
    return SEVERITY_LEVELS.index(normalize_severity(severity))


def _parse_occurred_at(value: Any, default: datetime) -> datetime:
    if isinstance(value, str) and value:
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return default
    if not isinstance(value, datetime):
        return default
    # Naive client timestamps are taken as UTC
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def normalize_events(
    raw_events: Iterable[Mapping[str, Any]], *, now: datetime | None = None
) -> list[ProctoringEvent]:
    """
    Turn client-supplied event dicts into ProctoringEvent records.

    Missing type becomes "unknown", unknown severity becomes "low" and a
    missing or unparseable occurredAt becomes the ingestion time.
    """
    received_at = now or utcnow()
    events = []
    for raw in raw_events:
        event_type = raw.get("type")
        occurred_at = raw.get("occurredAt", raw.get("occurred_at"))
        events.append(
            ProctoringEvent(
                type=event_type if isinstance(event_type, str) and event_type else "unknown",
                severity=normalize_severity(raw.get("severity")),
                details=raw.get("details"),
                timestamp=_parse_occurred_at(occurred_at, received_at),
            )
        )
    return events


def build_summary(event_count: int, risk_level: str) -> str:
    return f"Recorded {event_count} proctoring events · Highest severity {risk_level.upper()}"


def apply_event_impact(report: ProctoringReport, events: list[ProctoringEvent]) -> None:
    """
    Deduct each event's fixed impact from the trust score (floored at 0) and
    escalate the risk level to the highest rank seen. Never lowers risk.
    """
    highest_rank = severity_rank(report.risk_level)
    trust_score = report.trust_score

    for event in events:
        trust_score = max(0, trust_score - SEVERITY_IMPACT[event.severity])
        highest_rank = max(highest_rank, severity_rank(event.severity))

    report.trust_score = trust_score
    report.risk_level = SEVERITY_LEVELS[highest_rank]
    report.summary = build_summary(len(report.events), report.risk_level)


def trim_collections(report: ProctoringReport) -> None:
    """Evict the oldest events and media segments past their caps."""
    if len(report.events) > MAX_PROCTORING_EVENTS:
        report.events = report.events[-MAX_PROCTORING_EVENTS:]
    if len(report.media_segments) > MAX_MEDIA_SEGMENTS:
        report.media_segments = report.media_segments[-MAX_MEDIA_SEGMENTS:]


def record_events(report: ProctoringReport, events: list[ProctoringEvent]) -> None:
    """Append, score and trim in one step."""
    report.events = [*report.events, *events]
    apply_event_impact(report, events)
    trim_collections(report)


def reset_report(report: ProctoringReport) -> None:
    """Administrative reset: the only path that lowers risk or restores trust."""
    report.events = []
    report.trust_score = 100
    report.risk_level = "low"
    report.summary = DEFAULT_SUMMARY
