"""
HTTP-level tests for candidate ingestion and recruiter review routes.

Persistence is the in-memory repository from conftest, storage is local
under tmp_path, and the merge queue is a mock.
"""

import base64
import time
from unittest.mock import MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from app.models.domain.proctoring_domain import ProctoringReport
from app.repositories.attempt_repository import get_attempt_repository
from app.services.proctoring.ingestion_service import MAX_SEGMENT_BYTES, get_ingestion_service
from app.services.recording.merge_queue import get_merge_queue
from app.services.storage.storage_service import get_storage_service

ATTEMPT_ID = "attempt-123"
PAYLOAD = bytes(range(256)) * 8  # 2 KiB


def _token(**claims) -> str:
    claims.setdefault("exp", int(time.time()) + 300)
    return jwt.encode(claims, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)


@pytest.fixture
def merge_queue():
    queue = MagicMock()
    queue.enqueue.return_value = True
    return queue


@pytest.fixture
def wired_app(fake_repository, local_storage, ingestion_service, merge_queue):
    app.dependency_overrides[get_attempt_repository] = lambda: fake_repository
    app.dependency_overrides[get_storage_service] = lambda: local_storage
    app.dependency_overrides[get_ingestion_service] = lambda: ingestion_service
    app.dependency_overrides[get_merge_queue] = lambda: merge_queue
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(wired_app, apply_auth_override):
    apply_auth_override(wired_app)
    return TestClient(wired_app)


@pytest.fixture
def unauthenticated_client(wired_app):
    return TestClient(wired_app)


def _upload(client, media_type="webcam", payload=PAYLOAD, sequence=0):
    response = client.post(
        "/candidate/proctoring/media",
        json={
            "mediaType": media_type,
            "chunk": "data:video/webm;base64," + base64.b64encode(payload).decode(),
            "sequence": sequence,
            "durationMs": 1000,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]["segmentId"]


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def test_candidate_route_requires_token(unauthenticated_client):
    response = unauthenticated_client.post(
        "/candidate/proctoring/events", json={"events": [{"type": "blur"}]}
    )

    assert response.status_code == 401


def test_invalid_token_rejected(unauthenticated_client):
    response = unauthenticated_client.post(
        "/candidate/proctoring/events",
        json={"events": [{"type": "blur"}]},
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


def test_candidate_token_scopes_attempt(unauthenticated_client, fake_repository):
    token = _token(sub="candidate-9", attempt_id="attempt-from-token")

    response = unauthenticated_client.post(
        "/candidate/proctoring/events",
        json={"events": [{"type": "blur", "severity": "low"}]},
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 200
    assert "attempt-from-token" in fake_repository.rows


def test_results_require_recruiter_role(unauthenticated_client, fake_repository):
    fake_repository.add_attempt(ATTEMPT_ID)
    candidate_token = _token(sub="candidate-9", attempt_id=ATTEMPT_ID)
    recruiter_token = _token(sub="recruiter-1", role="recruiter")

    denied = unauthenticated_client.get(
        f"/results/{ATTEMPT_ID}/proctoring", headers={"Authorization": f"Bearer {candidate_token}"}
    )
    allowed = unauthenticated_client.get(
        f"/results/{ATTEMPT_ID}/proctoring", headers={"Authorization": f"Bearer {recruiter_token}"}
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200


# ---------------------------------------------------------------------------
# Event ingestion
# ---------------------------------------------------------------------------


def test_log_events_returns_updated_score(client, fake_repository):
    response = client.post(
        "/candidate/proctoring/events",
        json={
            "events": [
                {"type": "tab_switch", "severity": "medium", "occurredAt": "2024-05-01T10:00:00Z"},
                {"type": "copy", "severity": "high", "details": {"chars": 120}},
            ]
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {"eventsLogged": 2, "trustScore": 78, "riskLevel": "high"}
    assert fake_repository.report(ATTEMPT_ID).summary.startswith("Recorded 2 proctoring events")


def test_single_event_object_accepted(client):
    response = client.post("/candidate/proctoring/events", json={"events": {"type": "blur"}})

    assert response.status_code == 200
    assert response.json()["data"]["eventsLogged"] == 1


def test_empty_event_batch_rejected(client, fake_repository):
    response = client.post("/candidate/proctoring/events", json={"events": []})

    assert response.status_code == 400
    assert response.json()["detail"] == "No proctoring events provided"
    assert fake_repository.rows == {}


# ---------------------------------------------------------------------------
# Media ingestion
# ---------------------------------------------------------------------------


def test_upload_base64_segment(client, fake_repository, media_root):
    segment_id = _upload(client, "Screen")

    report = fake_repository.report(ATTEMPT_ID)
    assert report.media_segments[0].segment_id == segment_id
    assert report.media_segments[0].channel == "screen"
    assert (media_root / ATTEMPT_ID / segment_id).read_bytes() == PAYLOAD


def test_upload_rejects_unknown_media_type(client):
    response = client.post(
        "/candidate/proctoring/media",
        json={"mediaType": "hologram", "chunk": base64.b64encode(PAYLOAD).decode()},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Unsupported media type"


def test_upload_rejects_missing_chunk(client):
    response = client.post("/candidate/proctoring/media", json={"mediaType": "webcam"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing media payload"


def test_upload_rejects_bad_base64(client):
    response = client.post(
        "/candidate/proctoring/media", json={"mediaType": "webcam", "chunk": "%%%not base64%%%"}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Unable to decode media chunk"


def test_upload_rejects_oversized_chunk(client, media_root):
    oversized = base64.b64encode(b"\0" * (MAX_SEGMENT_BYTES + 1)).decode()

    response = client.post(
        "/candidate/proctoring/media", json={"mediaType": "webcam", "chunk": oversized}
    )

    assert response.status_code == 413
    assert not (media_root / ATTEMPT_ID).exists()


def test_multipart_upload(client, fake_repository):
    response = client.post(
        "/candidate/proctoring/media/upload",
        files={"file": ("chunk.webm", PAYLOAD, "video/webm")},
        data={"mediaType": "microphone", "sequence": "4", "durationMs": "1500"},
    )

    assert response.status_code == 200, response.text
    segment = fake_repository.report(ATTEMPT_ID).media_segments[0]
    assert segment.channel == "microphone"
    assert segment.sequence == 4
    assert segment.duration_ms == 1500
    assert segment.size == len(PAYLOAD)


def test_storage_failure_maps_to_503(client, local_storage, monkeypatch):
    from unittest.mock import AsyncMock

    from app.services.storage.backends import StorageError

    monkeypatch.setattr(
        local_storage.backend, "put", AsyncMock(side_effect=StorageError("disk full", operation="put"))
    )

    response = client.post(
        "/candidate/proctoring/media",
        json={"mediaType": "webcam", "chunk": base64.b64encode(PAYLOAD).decode()},
    )

    assert response.status_code == 503
    assert response.json()["detail"] == "Media storage unavailable"


# ---------------------------------------------------------------------------
# Review surface
# ---------------------------------------------------------------------------


def test_proctoring_detail(client):
    client.post(
        "/candidate/proctoring/events",
        json={"events": [{"type": "tab_switch", "severity": "medium"}]},
    )
    first = _upload(client, "webcam", sequence=0)
    second = _upload(client, "webcam", sequence=1)

    response = client.get(f"/results/{ATTEMPT_ID}/proctoring")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["attemptId"] == ATTEMPT_ID
    assert data["trustScore"] == 93
    assert data["riskLevel"] == "medium"
    assert data["flags"] == ["medium"]
    assert set(data["recording"]["latest"]) == {"webcam", "screen", "microphone"}
    assert data["recording"]["latest"]["screen"] is None
    assert [s["segmentId"] for s in data["mediaSegments"]] == [second, first]
    assert data["mediaSegments"][0]["type"] == "webcam"
    assert "filePath" not in data["mediaSegments"][0]
    assert data["events"][0]["type"] == "tab_switch"


def test_proctoring_detail_unknown_attempt(client):
    response = client.get("/results/missing/proctoring")

    assert response.status_code == 404


def test_stream_full_segment(client):
    segment_id = _upload(client)

    response = client.get(f"/results/{ATTEMPT_ID}/proctoring/media/{segment_id}")

    assert response.status_code == 200
    assert response.content == PAYLOAD
    assert response.headers["accept-ranges"] == "bytes"
    assert response.headers["content-type"].startswith("video/webm")


def test_stream_partial_range(client):
    segment_id = _upload(client)

    response = client.get(
        f"/results/{ATTEMPT_ID}/proctoring/media/{segment_id}", headers={"Range": "bytes=0-99"}
    )

    assert response.status_code == 206
    assert response.content == PAYLOAD[:100]
    assert response.headers["content-range"] == f"bytes 0-99/{len(PAYLOAD)}"
    assert response.headers["content-length"] == "100"


def test_stream_open_ended_range(client):
    segment_id = _upload(client)

    response = client.get(
        f"/results/{ATTEMPT_ID}/proctoring/media/{segment_id}", headers={"Range": "bytes=2000-"}
    )

    assert response.status_code == 206
    assert response.content == PAYLOAD[2000:]


def test_stream_range_past_end(client):
    segment_id = _upload(client)

    response = client.get(
        f"/results/{ATTEMPT_ID}/proctoring/media/{segment_id}",
        headers={"Range": f"bytes={len(PAYLOAD)}-"},
    )

    assert response.status_code == 416
    assert response.headers["content-range"] == f"bytes */{len(PAYLOAD)}"


def test_stream_malformed_range(client):
    segment_id = _upload(client)

    response = client.get(
        f"/results/{ATTEMPT_ID}/proctoring/media/{segment_id}", headers={"Range": "bytes=-500"}
    )

    assert response.status_code == 416


def test_stream_unknown_segment(client, fake_repository):
    fake_repository.add_attempt(ATTEMPT_ID)

    response = client.get(f"/results/{ATTEMPT_ID}/proctoring/media/nope.webm")

    assert response.status_code == 404


def test_stream_missing_file(client, media_root):
    segment_id = _upload(client)
    (media_root / ATTEMPT_ID / segment_id).unlink()

    response = client.get(f"/results/{ATTEMPT_ID}/proctoring/media/{segment_id}")

    assert response.status_code == 404
    assert response.json()["detail"] == "Media file missing"


def test_stream_object_segment_redirects_to_public_url(client, fake_repository):
    report = ProctoringReport.model_validate(
        {
            "media_segments": [
                {
                    "segment_id": "screen-1.webm",
                    "channel": "screen",
                    "storage": "r2",
                    "file_key": "proctoring/attempt-123/screen-1.webm",
                    "public_url": "https://cdn.example.com/proctoring/attempt-123/screen-1.webm",
                    "recorded_at": "2024-05-01T10:00:00Z",
                }
            ]
        }
    )
    fake_repository.add_attempt(ATTEMPT_ID, report=report)

    response = client.get(
        f"/results/{ATTEMPT_ID}/proctoring/media/screen-1.webm", follow_redirects=False
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://cdn.example.com/proctoring/attempt-123/screen-1.webm"


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


def test_merge_request_queues_job(client, merge_queue):
    _upload(client)

    response = client.post(f"/results/{ATTEMPT_ID}/proctoring/merge?force=true")

    assert response.status_code == 200
    body = response.json()
    assert body["queued"] is True
    assert body["force"] is True
    merge_queue.enqueue.assert_called_once_with(ATTEMPT_ID, force=True)


def test_merge_request_without_media(client, fake_repository, merge_queue):
    fake_repository.add_attempt(ATTEMPT_ID)

    response = client.post(f"/results/{ATTEMPT_ID}/proctoring/merge")

    assert response.json()["queued"] is False
    merge_queue.enqueue.assert_not_called()


def test_merge_request_when_queue_unavailable(wired_app, apply_auth_override, fake_repository):
    apply_auth_override(wired_app)
    wired_app.dependency_overrides.pop(get_merge_queue)
    wired_app.state.merge_queue = None
    fake_repository.add_attempt(ATTEMPT_ID)

    response = TestClient(wired_app).post(f"/results/{ATTEMPT_ID}/proctoring/merge")

    assert response.status_code == 503


def test_reset_report(client):
    client.post("/candidate/proctoring/events", json={"events": [{"type": "copy", "severity": "high"}]})
    _upload(client)

    response = client.post(f"/results/{ATTEMPT_ID}/proctoring/reset")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["trustScore"] == 100
    assert data["riskLevel"] == "low"
    assert data["events"] == []
    assert len(data["mediaSegments"]) == 1


def test_reset_unknown_attempt(client):
    response = client.post("/results/missing/proctoring/reset")

    assert response.status_code == 404
