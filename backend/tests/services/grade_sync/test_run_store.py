"""
Tests for the persisted run store and lease.
"""

import pytest
from sqlalchemy import select

from gradesync.integrations.canvas.error_handler import RunCancelledError, RunInProgressError
from gradesync.models.run_state import GradeSyncRun
from gradesync.schemas.grade_sync import (
    RunOutcome, RunPhase, RunState, RunStrategy, ScoreDelta
)
from gradesync.services.grade_sync.run_store import scope_key_for_course


SCOPE = scope_key_for_course("42")


class TestRunState:
    """Test state persistence."""

    @pytest.mark.asyncio
    async def test_get_missing_scope(self, store):
        assert await store.get(SCOPE) is None

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        state = RunState(
            phase=RunPhase.POLLING,
            in_progress=True,
            strategy=RunStrategy.BULK,
            job_id="9001",
            target_id="100",
            expected_deltas=[ScoreDelta(user_id="1", average=3.5)],
            verification_pending=True
        )

        await store.save(SCOPE, state)
        loaded = await store.get(SCOPE)

        assert loaded == state

    @pytest.mark.asyncio
    async def test_set_merges_and_validates(self, store):
        await store.save(SCOPE, RunState(in_progress=True))

        updated = await store.set(SCOPE, strategy=RunStrategy.BULK, job_id="77")

        assert updated.in_progress
        assert updated.job_id == "77"
        assert (await store.get(SCOPE)).job_id == "77"

    @pytest.mark.asyncio
    async def test_set_rejects_inconsistent_record(self, store):
        await store.save(SCOPE, RunState())

        with pytest.raises(ValueError):
            await store.set(SCOPE, job_id="77")

        assert (await store.get(SCOPE)).job_id is None

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.save(SCOPE, RunState(in_progress=True))

        assert await store.clear(SCOPE) is True
        assert await store.get(SCOPE) is None
        assert await store.clear(SCOPE) is False

    @pytest.mark.asyncio
    async def test_corrupt_state_is_cleared(self, store):
        async with store.session_factory() as session:
            session.add(GradeSyncRun(scope_key=SCOPE, state={"version": 99, "phase": "nope"}, version=99))
            await session.commit()

        assert await store.get(SCOPE) is None

        async with store.session_factory() as session:
            row = (await session.execute(select(GradeSyncRun))).scalar_one()
            assert row.state is None

    @pytest.mark.asyncio
    async def test_pending_scopes(self, store):
        deltas = [ScoreDelta(user_id="1", average=2.0)]
        await store.save("course:1", RunState(in_progress=True, strategy=RunStrategy.BULK, job_id="5"))
        await store.save("course:2", RunState(verification_pending=True, target_id="100", expected_deltas=deltas))
        await store.save("course:3", RunState(in_progress=True))

        assert sorted(await store.pending_scopes()) == ["course:1", "course:2"]


class TestLease:
    """Test lease ownership."""

    @pytest.mark.asyncio
    async def test_second_owner_refused(self, store):
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)

        with pytest.raises(RunInProgressError) as exc_info:
            await store.acquire_lease(SCOPE, "owner-b", ttl_seconds=60)

        assert exc_info.value.owner == "owner-a"

    @pytest.mark.asyncio
    async def test_same_owner_reacquires(self, store):
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)

        assert await store.lease_owner(SCOPE) == "owner-a"

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self, store):
        clock = {"now": 1000.0}
        store._clock = lambda: clock["now"]

        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)
        clock["now"] += 61
        await store.acquire_lease(SCOPE, "owner-b", ttl_seconds=60)

        assert await store.lease_owner(SCOPE) == "owner-b"

    @pytest.mark.asyncio
    async def test_renew_and_release(self, store):
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)

        assert await store.renew_lease(SCOPE, "owner-a", ttl_seconds=60)
        assert not await store.renew_lease(SCOPE, "owner-b", ttl_seconds=60)

        await store.release_lease(SCOPE, "owner-b")
        assert await store.lease_owner(SCOPE) == "owner-a"

        await store.release_lease(SCOPE, "owner-a")
        assert await store.lease_owner(SCOPE) is None

    @pytest.mark.asyncio
    async def test_clear_frees_lease(self, store):
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)
        await store.save(SCOPE, RunState(in_progress=True))

        await store.clear(SCOPE)

        assert await store.lease_owner(SCOPE) is None
        assert not await store.renew_lease(SCOPE, "owner-a", ttl_seconds=60)

    @pytest.mark.asyncio
    async def test_owned_save_refused_after_clear(self, store):
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)
        await store.save(SCOPE, RunState(in_progress=True), owner="owner-a")
        await store.clear(SCOPE)

        with pytest.raises(RunCancelledError):
            await store.save(
                SCOPE,
                RunState(in_progress=True, strategy=RunStrategy.BULK, job_id="9001"),
                owner="owner-a"
            )

        assert await store.get(SCOPE) is None

    @pytest.mark.asyncio
    async def test_owned_save_refused_for_other_owner(self, store):
        await store.acquire_lease(SCOPE, "owner-a", ttl_seconds=60)

        with pytest.raises(RunCancelledError):
            await store.save(SCOPE, RunState(in_progress=True), owner="owner-b")

        assert await store.get(SCOPE) is None


class TestLastRun:
    """Test run history."""

    @pytest.mark.asyncio
    async def test_record_and_overwrite(self, store):
        await store.record_last_run(SCOPE, RunOutcome.FAILED, 12.0, message="Bulk update failed.")
        await store.record_last_run(
            SCOPE, RunOutcome.COMPLETED, 30.0, updated_count=5, summary_csv="note\nUser ID\n"
        )

        last_run = await store.get_last_run(SCOPE)

        assert last_run.outcome == RunOutcome.COMPLETED
        assert last_run.updated_count == 5
        assert last_run.has_summary
        assert last_run.message is None

    @pytest.mark.asyncio
    async def test_last_success_survives_later_failure(self, store):
        await store.record_last_run(SCOPE, RunOutcome.COMPLETED, 30.0, updated_count=5)
        succeeded_at = (await store.get_last_run(SCOPE)).last_success_at

        await store.record_last_run(SCOPE, RunOutcome.FAILED, 12.0, message="Bulk update failed.")
        await store.record_last_run(SCOPE, RunOutcome.CANCELLED, 1.0, message="Update cancelled: x")

        last_run = await store.get_last_run(SCOPE)

        assert last_run.outcome == RunOutcome.CANCELLED
        assert last_run.last_success_at == succeeded_at
        assert last_run.last_success_duration_seconds == 30.0
        assert last_run.last_success_count == 5

    @pytest.mark.asyncio
    async def test_no_success_recorded_for_failures_only(self, store):
        await store.record_last_run(SCOPE, RunOutcome.FAILED, 12.0)

        last_run = await store.get_last_run(SCOPE)

        assert last_run.last_success_at is None
        assert last_run.last_success_count is None
