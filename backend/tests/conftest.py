"""
Shared fixtures for grade sync tests.
"""

import pytest
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

from gradesync.core.config import EngineConfig
from gradesync.core.database import build_engine, build_session_factory, init_db
from gradesync.integrations.canvas.error_handler import CanvasAPIError
from gradesync.schemas.grade_sync import RollupSnapshot
from gradesync.services.grade_sync.run_store import RunStore
from gradesync.services.grade_sync.status import StatusReporter


TARGET_OUTCOME_ID = "100"
ASSIGNMENT_ID = "555"
CRITERION_ID = "_4821"


def make_snapshot(
    scores: Dict[str, Dict[str, Any]],
    outcomes: Dict[str, str]
) -> RollupSnapshot:
    """Build a rollup snapshot from ``{user_id: {outcome_id: score}}``."""
    return RollupSnapshot.model_validate({
        "rollups": [
            {
                "scores": [
                    {"score": score, "title": outcomes.get(outcome_id, ""), "links": {"outcome": outcome_id}}
                    for outcome_id, score in user_scores.items()
                ],
                "links": {"user": user_id}
            }
            for user_id, user_scores in scores.items()
        ],
        "linked": {
            "outcomes": [{"id": outcome_id, "title": title} for outcome_id, title in outcomes.items()]
        }
    })


class FakeCanvasClient:
    """In-memory stand-in for CanvasClient with the endpoints the engine uses."""

    def __init__(
        self,
        scores: Dict[str, Dict[str, Any]],
        outcomes: Optional[Dict[str, str]] = None,
        progress_states: Optional[List[str]] = None
    ):
        self.outcomes = outcomes or {
            TARGET_OUTCOME_ID: "Current Score",
            "1": "Reading",
            "2": "Writing",
            "3": "Homework Completion",
        }
        self.scores = scores
        self.progress_states = list(progress_states or ["queued", "running", "completed"])
        self.submission_failures: Dict[str, int] = {}
        self.apply_writes = True
        self.assignment_rubric = [{"id": CRITERION_ID, "outcome_id": int(TARGET_OUTCOME_ID)}]

        self.update_calls: List[str] = []
        self.bulk_calls: List[Dict[str, Any]] = []
        self.progress_calls = 0
        self.rollup_calls = 0
        self.override_calls: List[tuple] = []
        self._pending_bulk: Dict[str, Any] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def _write(self, user_id: str, average: float) -> None:
        if self.apply_writes:
            self.scores.setdefault(user_id, {})[TARGET_OUTCOME_ID] = average

    async def get_outcome_rollups(self, course_id, outcome_ids=None):
        self.rollup_calls += 1
        wanted = set(outcome_ids) if outcome_ids else None
        filtered = {
            user_id: {
                outcome_id: score for outcome_id, score in user_scores.items()
                if wanted is None or outcome_id in wanted
            }
            for user_id, user_scores in self.scores.items()
        }
        return make_snapshot(filtered, self.outcomes)

    async def search_assignments(self, course_id, search_term):
        return [{"id": int(ASSIGNMENT_ID), "name": "Current Score Assignment", "rubric": self.assignment_rubric}]

    async def get_assignment(self, course_id, assignment_id):
        return {"id": int(assignment_id), "name": "Current Score Assignment", "rubric": self.assignment_rubric}

    async def update_submission(self, course_id, assignment_id, user_id, payload):
        self.update_calls.append(user_id)
        remaining = self.submission_failures.get(user_id, 0)
        if remaining:
            self.submission_failures[user_id] = remaining - 1
            raise CanvasAPIError("update_submission failed: HTTP 500", status=500, body="boom")
        self._write(user_id, payload["submission"]["score"])
        return {"id": 1}

    async def bulk_update_grades(self, course_id, assignment_id, grade_data):
        self.bulk_calls.append(grade_data)
        self._pending_bulk = grade_data
        return {"id": 9001, "workflow_state": "queued"}

    async def get_progress(self, progress_id):
        self.progress_calls += 1
        state = self.progress_states.pop(0) if len(self.progress_states) > 1 else self.progress_states[0]
        if state == "completed":
            for user_id, data in self._pending_bulk.items():
                self._write(user_id, data["posted_grade"])
            self._pending_bulk = {}
        return {"id": progress_id, "workflow_state": state, "updated_at": "2026-10-19T12:00:00Z"}

    async def list_student_enrollments(self, course_id):
        return [{"id": f"e{user_id}", "user_id": int(user_id)} for user_id in self.scores]

    async def set_override_score(self, enrollment_id, override_score):
        self.override_calls.append((enrollment_id, override_score))
        return override_score


class RecordingStatusReporter(StatusReporter):
    """Keeps every status message in memory."""

    def __init__(self):
        self.messages: List[Tuple[str, bool]] = []

    def report(self, message: str, transient: bool = False) -> None:
        self.messages.append((message, transient))

    @property
    def texts(self) -> List[str]:
        return [message for message, _ in self.messages]


@pytest.fixture
def fake_canvas():
    """Factory for fake Canvas clients."""
    return FakeCanvasClient


@pytest.fixture
def fast_config():
    """Engine config without real waits."""
    return EngineConfig(
        poll_interval=0,
        verify_interval=0,
        verify_max_attempts=3,
        override_drain_timeout=5
    )


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
async def store(tmp_path):
    """Run store backed by a temporary SQLite database."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'gradesync_test.db'}")
    await init_db(engine)
    yield RunStore(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def snapshot_factory():
    """Factory building rollup snapshots from ``{user_id: {outcome_id: score}}``."""
    return make_snapshot


@pytest.fixture
def reporter():
    """Status reporter that records messages for assertions."""
    return RecordingStatusReporter()
