from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from app.models.domain.proctoring_domain import ChannelMergeStatus, ProctoringReport
from app.repositories import attempt_repository as attempt_repository_module

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _segment(segment_id, channel, sequence):
    return {
        "segment_id": segment_id,
        "channel": channel,
        "storage": "local",
        "file_path": f"/media/attempt-1/{segment_id}",
        "recorded_at": NOW,
        "sequence": sequence,
    }


@pytest.mark.asyncio
async def test_terminal_failure_marks_only_mergeable_channels(fake_repository):
    report = ProctoringReport.model_validate(
        {
            "media_segments": [
                _segment("webcam-0.webm", "webcam", 0),
                _segment("microphone-x.webm", "microphone", None),
            ]
        }
    )
    fake_repository.add_attempt("attempt-1", status="completed", report=report)

    marked = await fake_repository.mark_merge_failed("attempt-1", "ffmpeg exited with code 1")

    assert marked == ["webcam"]
    status = fake_repository.report("attempt-1").merge_status
    assert set(status) == {"webcam"}
    assert status["webcam"].status == "failed"
    assert status["webcam"].error == "ffmpeg exited with code 1"


@pytest.mark.asyncio
async def test_terminal_failure_keeps_completed_channels(fake_repository):
    report = ProctoringReport.model_validate(
        {
            "media_segments": [
                _segment("webcam-0.webm", "webcam", 0),
                _segment("screen-0.webm", "screen", 0),
            ],
        }
    )
    report.merge_status["webcam"] = ChannelMergeStatus(status="completed", last_attempt_at=NOW)
    fake_repository.add_attempt("attempt-1", status="completed", report=report)

    marked = await fake_repository.mark_merge_failed("attempt-1", "boom")

    assert marked == ["screen"]
    status = fake_repository.report("attempt-1").merge_status
    assert status["webcam"].status == "completed"
    assert status["screen"].status == "failed"


@pytest.mark.asyncio
async def test_unmerged_query_requires_sequenced_local_segment(monkeypatch):
    fetch_all = AsyncMock(return_value=[{"id": "attempt-1"}])
    monkeypatch.setattr(attempt_repository_module, "fetch_all", fetch_all)

    ids = await attempt_repository_module.AttemptRepository().find_unmerged_attempt_ids(
        grace_minutes=15, limit=5
    )

    assert ids == ["attempt-1"]
    query, params = fetch_all.await_args.args
    assert "seg->>'storage' = 'local'" in query
    assert "seg->>'sequence' IS NOT NULL" in query
    assert params == (15, 5)
