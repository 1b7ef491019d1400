from datetime import UTC, datetime

import pytest

from app.models.domain.proctoring_domain import DEFAULT_SUMMARY, ProctoringReport
from app.services.proctoring.risk_scorer import (
    MAX_MEDIA_SEGMENTS,
    MAX_PROCTORING_EVENTS,
    SEVERITY_IMPACT,
    normalize_events,
    record_events,
    reset_report,
    trim_collections,
)


def _events(*severities):
    return normalize_events([{"type": "tab_switch", "severity": s} for s in severities])


@pytest.mark.parametrize("severity", ["low", "medium", "high"])
def test_single_event_deducts_fixed_impact(severity):
    report = ProctoringReport()

    record_events(report, _events(severity))

    assert report.trust_score == 100 - SEVERITY_IMPACT[severity]
    assert report.risk_level == severity


def test_trust_score_floors_at_zero():
    report = ProctoringReport(trust_score=10)

    record_events(report, _events("high"))

    assert report.trust_score == 0


def test_risk_level_never_decreases():
    report = ProctoringReport()
    record_events(report, _events("high"))

    record_events(report, _events("low", "low"))

    assert report.risk_level == "high"


def test_batch_takes_highest_severity():
    report = ProctoringReport()

    record_events(report, _events("low", "medium", "low"))

    assert report.risk_level == "medium"
    assert report.trust_score == 100 - 2 - 7 - 2


def test_unknown_severity_counts_as_low():
    events = normalize_events([{"type": "blur", "severity": "CRITICAL"}, {"severity": None}])

    assert [e.severity for e in events] == ["low", "low"]
    assert events[1].type == "unknown"


def test_severity_is_case_insensitive():
    events = normalize_events([{"type": "face_missing", "severity": "HIGH"}])

    assert events[0].severity == "high"


def test_missing_or_bad_timestamp_uses_ingestion_time():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    events = normalize_events(
        [
            {"type": "a"},
            {"type": "b", "occurredAt": "not-a-date"},
            {"type": "c", "occurredAt": "2024-05-01T11:59:00+00:00"},
        ],
        now=now,
    )

    assert events[0].timestamp == now
    assert events[1].timestamp == now
    assert events[2].timestamp == datetime(2024, 5, 1, 11, 59, tzinfo=UTC)


def test_summary_counts_all_events():
    report = ProctoringReport()
    record_events(report, _events("low"))
    record_events(report, _events("medium", "low"))

    assert report.summary == "Recorded 3 proctoring events · Highest severity MEDIUM"


def test_events_capped_oldest_evicted_first():
    report = ProctoringReport()
    raw = [{"type": f"event-{i}", "severity": "low"} for i in range(MAX_PROCTORING_EVENTS + 5)]

    record_events(report, normalize_events(raw))

    assert len(report.events) == MAX_PROCTORING_EVENTS
    assert report.events[0].type == "event-5"
    assert report.events[-1].type == f"event-{MAX_PROCTORING_EVENTS + 4}"


def test_media_segments_capped_oldest_evicted_first():
    now = datetime.now(UTC)
    report = ProctoringReport.model_validate(
        {
            "media_segments": [
                {"segment_id": f"seg-{i}", "channel": "webcam", "recorded_at": now}
                for i in range(MAX_MEDIA_SEGMENTS + 3)
            ]
        }
    )

    trim_collections(report)

    assert len(report.media_segments) == MAX_MEDIA_SEGMENTS
    assert report.media_segments[0].segment_id == "seg-3"


def test_reset_restores_defaults():
    report = ProctoringReport()
    record_events(report, _events("high", "high"))

    reset_report(report)

    assert report.trust_score == 100
    assert report.risk_level == "low"
    assert report.events == []
    assert report.summary == DEFAULT_SUMMARY
