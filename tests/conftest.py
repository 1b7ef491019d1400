import pytest

from app.auth.verify import (
    CandidateSession,
    RecruiterSession,
    candidate_dependency,
    recruiter_dependency,
)
from app.config import Settings
from app.models.domain.proctoring_domain import Attempt, ProctoringReport
from app.repositories.attempt_repository import AttemptNotFoundError, AttemptRepository
from app.services.proctoring.ingestion_service import ProctoringIngestionService
from app.services.storage.storage_service import StorageService


class FakeAttemptRepository(AttemptRepository):
    """
    In-memory attempts. Stores reports as JSON documents, like the JSONB
    column, so every read returns a fresh copy and a mutate() that raises
    leaves the stored report untouched.
    """

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.update_calls = 0

    def add_attempt(
        self, attempt_id: str, status: str = "in_progress", report: ProctoringReport | None = None
    ) -> None:
        self.rows[attempt_id] = {
            "status": status,
            "proctoring_report": (report or ProctoringReport()).to_document(),
        }

    def report(self, attempt_id: str) -> ProctoringReport:
        return ProctoringReport.from_document(self.rows[attempt_id]["proctoring_report"])

    async def get(self, attempt_id: str) -> Attempt | None:
        row = self.rows.get(attempt_id)
        if row is None:
            return None
        return Attempt(
            id=attempt_id,
            status=row["status"],
            proctoring_report=ProctoringReport.from_document(row["proctoring_report"]),
        )

    async def find_or_create(self, attempt_id: str) -> Attempt:
        if attempt_id not in self.rows:
            self.add_attempt(attempt_id)
        return await self.get(attempt_id)

    async def update_report(self, attempt_id, mutate, *, create_if_missing=False):
        self.update_calls += 1
        if create_if_missing and attempt_id not in self.rows:
            self.add_attempt(attempt_id)
        if attempt_id not in self.rows:
            raise AttemptNotFoundError(attempt_id)

        report = ProctoringReport.from_document(self.rows[attempt_id]["proctoring_report"])
        result = mutate(report)
        self.rows[attempt_id]["proctoring_report"] = report.to_document()
        return report, result

    async def find_unmerged_attempt_ids(self, *, grace_minutes: int = 30, limit: int = 50) -> list[str]:
        found = []
        for attempt_id, row in self.rows.items():
            report = ProctoringReport.from_document(row["proctoring_report"])
            has_local = any(
                s.storage == "local" and s.sequence is not None for s in report.media_segments
            )
            open_merge = not report.merge_status or any(
                state.status in ("pending", "processing") for state in report.merge_status.values()
            )
            if row["status"] == "completed" and has_local and open_merge:
                found.append(attempt_id)
        return found[:limit]


@pytest.fixture
def fake_repository():
    return FakeAttemptRepository()


@pytest.fixture
def media_root(tmp_path):
    return tmp_path / "media"


@pytest.fixture
def local_settings(media_root):
    return Settings(
        PROCTORING_MEDIA_DIR=str(media_root),
        R2_ENDPOINT=None,
        R2_ACCOUNT_ID=None,
        R2_ACCESS_KEY_ID=None,
        R2_SECRET_ACCESS_KEY=None,
        R2_BUCKET=None,
        R2_PUBLIC_BASE_URL=None,
    )


@pytest.fixture
def local_storage(local_settings):
    storage = StorageService(config=local_settings)
    storage.initialize()
    return storage


@pytest.fixture
def ingestion_service(fake_repository, local_storage):
    return ProctoringIngestionService(repository=fake_repository, storage=local_storage)


@pytest.fixture
def candidate_override():
    def _override():
        return CandidateSession(attempt_id="attempt-123", claims={"attempt_id": "attempt-123"})

    return _override


@pytest.fixture
def recruiter_override():
    def _override():
        return RecruiterSession(user_id="recruiter-1", role="recruiter", claims={"role": "recruiter"})

    return _override


@pytest.fixture
def apply_auth_override(candidate_override, recruiter_override):
    def _apply(app):
        app.dependency_overrides[candidate_dependency] = candidate_override
        app.dependency_overrides[recruiter_dependency] = recruiter_override

    return _apply
