"""
Tests for the grade sync task manager.
"""

import asyncio
import socket
import pytest
from unittest.mock import patch

from gradesync.integrations.canvas.error_handler import AuthenticationError, RunInProgressError
from gradesync.schemas.grade_sync import RunOutcome, RunPhase, RunState, RunStrategy, ScoreDelta
from gradesync.tasks.grade_sync_tasks import GradeSyncTaskManager, course_id_for_scope


def students(count):
    return {str(i): {"1": 3, "2": 4} for i in range(1, count + 1)}


def polling_state():
    """A bulk run interrupted while its job was being polled."""
    return RunState(
        phase=RunPhase.POLLING,
        in_progress=True,
        strategy=RunStrategy.BULK,
        job_id="9001",
        target_id="100",
        expected_deltas=[ScoreDelta(user_id="1", average=3.5)],
        verification_pending=True
    )


@pytest.fixture
def canvas(fake_canvas):
    return fake_canvas(students(3))


@pytest.fixture
def task_manager(store, fast_config, canvas):
    return GradeSyncTaskManager(store, fast_config, client_factory=lambda token: canvas)


class TestCourseScope:

    def test_course_id_for_scope(self):
        assert course_id_for_scope("course:42") == "42"

    def test_rejects_other_scopes(self):
        with pytest.raises(ValueError):
            course_id_for_scope("section:42")


class TestGradeSyncTaskManager:
    """Test background run management."""

    @pytest.mark.asyncio
    async def test_start_run_completes(self, task_manager, canvas, store):
        resuming = await task_manager.start_run("42")
        report = await task_manager.wait("42")

        assert resuming is False
        assert report.outcome == RunOutcome.COMPLETED
        assert len(canvas.update_calls) == 3
        assert not task_manager.is_running("42")
        assert task_manager.get_report("42") == report

    @pytest.mark.asyncio
    async def test_duplicate_run_refused(self, task_manager):
        await task_manager.start_run("42")

        with pytest.raises(RunInProgressError):
            await task_manager.start_run("42")

        await task_manager.wait("42")

    @pytest.mark.asyncio
    async def test_live_lease_elsewhere_refused(self, task_manager, store):
        await store.acquire_lease("course:42", "other-process", ttl_seconds=600)

        with pytest.raises(RunInProgressError) as exc_info:
            await task_manager.start_run("42")

        assert exc_info.value.owner == "other-process"

    @pytest.mark.asyncio
    async def test_missing_token(self, store, fast_config):
        def no_token(token):
            raise AuthenticationError()

        manager = GradeSyncTaskManager(store, fast_config, client_factory=no_token)

        with pytest.raises(AuthenticationError):
            await manager.start_run("42")

    @pytest.mark.asyncio
    async def test_startup_resumes_pending_runs(self, task_manager, canvas, store):
        canvas.scores["1"]["100"] = 3.5
        await store.save("course:42", RunState(
            phase=RunPhase.VERIFYING,
            strategy=RunStrategy.PER_RECORD,
            target_id="100",
            expected_deltas=[ScoreDelta(user_id="1", average=3.5)],
            verification_pending=True
        ))

        resumed = await task_manager.start()
        report = await task_manager.wait("42")

        assert resumed == ["42"]
        assert report.resumed
        assert report.outcome == RunOutcome.COMPLETED
        assert canvas.update_calls == []

    @pytest.mark.asyncio
    async def test_startup_takes_over_lease_of_exited_process(self, task_manager, canvas, store):
        canvas.scores["1"]["100"] = 3.5
        await store.save("course:42", polling_state())
        await store.acquire_lease("course:42", f"{socket.gethostname()}:999999:abc123", ttl_seconds=600)

        with patch("gradesync.services.grade_sync.orchestrator.psutil.pid_exists", return_value=False):
            resumed = await task_manager.start()
        report = await task_manager.wait("42")

        assert resumed == ["42"]
        assert report.resumed
        assert report.outcome == RunOutcome.COMPLETED
        assert canvas.progress_calls == 3
        assert await store.get("course:42") is None

    @pytest.mark.asyncio
    async def test_startup_keeps_lease_of_running_process(self, task_manager, store):
        await store.save("course:42", polling_state())
        await store.acquire_lease("course:42", f"{socket.gethostname()}:999999:abc123", ttl_seconds=600)

        with patch("gradesync.services.grade_sync.orchestrator.psutil.pid_exists", return_value=True):
            resumed = await task_manager.start()

        assert resumed == []
        assert await store.lease_owner("course:42") is not None

    @pytest.mark.asyncio
    async def test_startup_resumes_once_remote_lease_expires(self, task_manager, fast_config, canvas, store):
        clock = {"now": 1000.0}
        store._clock = lambda: clock["now"]
        canvas.scores["1"]["100"] = 3.5
        await store.save("course:42", polling_state())
        await store.acquire_lease("course:42", "dead-host:123:abc", ttl_seconds=fast_config.lease_ttl)

        clock["now"] += fast_config.lease_ttl + 1
        resumed = await task_manager.start()
        report = await task_manager.wait("42")

        assert resumed == ["42"]
        assert report.outcome == RunOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_startup_without_resume(self, store, fast_config, canvas):
        await store.save("course:42", RunState(in_progress=True, strategy=RunStrategy.BULK, job_id="1"))
        manager = GradeSyncTaskManager(store, fast_config, lambda token: canvas, resume_on_startup=False)

        assert await manager.start() == []
        assert not manager.is_running("42")

    @pytest.mark.asyncio
    async def test_cancel_clears_stored_state(self, task_manager, store):
        await store.save("course:42", RunState(in_progress=True, strategy=RunStrategy.BULK, job_id="1"))

        assert await task_manager.cancel("42") is True
        assert await store.get("course:42") is None
        assert await task_manager.cancel("42") is False

    @pytest.mark.asyncio
    async def test_stop_keeps_state_for_resume(self, task_manager, canvas, store):
        entered = asyncio.Event()

        async def hang(course_id, outcome_ids=None):
            entered.set()
            await asyncio.sleep(60)

        canvas.get_outcome_rollups = hang

        await task_manager.start_run("42")
        await entered.wait()
        await task_manager.stop()

        assert not task_manager.is_running("42")
        assert await store.get("course:42") is not None
        assert await store.lease_owner("course:42") is None
