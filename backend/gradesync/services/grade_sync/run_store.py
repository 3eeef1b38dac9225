"""
Persisted Run Store

Durable, course-scoped storage for the grade sync state machine. Each scope
holds one versioned RunState record plus a lease (owner token and expiry) that
keeps two runs from driving the same scope at once.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from gradesync.integrations.canvas.error_handler import (
    RunCancelledError, RunInProgressError, RunStateCorruptError
)
from gradesync.models.run_state import GradeSyncRun, GradeSyncLastRun
from gradesync.schemas.grade_sync import RunState, RunOutcome, RUN_STATE_VERSION

logger = logging.getLogger(__name__)

# Outcomes whose writes landed (or were accepted) and count as the last update
SUCCESS_OUTCOMES = (RunOutcome.COMPLETED, RunOutcome.UNCONFIRMED)


def scope_key_for_course(course_id: str) -> str:
    return f"course:{course_id}"


class RunStore:
    """SQLAlchemy backed run state store."""

    def __init__(self, session_factory: async_sessionmaker, clock=time.time):
        self.session_factory = session_factory
        self._clock = clock

    async def _get_row(self, session, scope_key: str) -> Optional[GradeSyncRun]:
        result = await session.execute(
            select(GradeSyncRun).where(GradeSyncRun.scope_key == scope_key)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_row(self, session, scope_key: str) -> GradeSyncRun:
        row = await self._get_row(session, scope_key)
        if row is None:
            row = GradeSyncRun(scope_key=scope_key)
            session.add(row)
        return row

    def _load_state(self, row: GradeSyncRun) -> RunState:
        try:
            return RunState.model_validate(row.state)
        except ValidationError as e:
            raise RunStateCorruptError(
                f"Stored run state for {row.scope_key} is invalid: {e.error_count()} error(s)",
                scope_key=row.scope_key,
                original_exception=e
            )

    async def get(self, scope_key: str) -> Optional[RunState]:
        """
        Load the run state for a scope.

        A record that fails validation is cleared so a fresh run can start.
        """
        async with self.session_factory() as session:
            row = await self._get_row(session, scope_key)
            if row is None or not row.has_state:
                return None

            try:
                return self._load_state(row)
            except RunStateCorruptError as e:
                logger.error(f"{e.message}; clearing it")
                row.state = None
                row.version = None
                await session.commit()
                return None

    async def save(self, scope_key: str, state: RunState, owner: Optional[str] = None) -> RunState:
        """
        Persist a whole state record.

        Raises:
            RunCancelledError: ``owner`` was given and no longer holds the lease,
                so the scope was cleared or claimed since the run started
        """
        async with self.session_factory() as session:
            row = await self._get_or_create_row(session, scope_key)
            if owner is not None and row.lease_owner != owner:
                raise RunCancelledError(
                    "run was cleared or taken over before its state could be saved",
                    scope_key=scope_key
                )

            row.state = state.model_dump(mode="json")
            row.version = RUN_STATE_VERSION
            await session.commit()

        logger.debug(f"Saved run state for {scope_key}: phase={state.phase.value}")
        return state

    async def set(self, scope_key: str, **partial: Any) -> RunState:
        """Read-modify-write a subset of fields; the result is validated as a whole."""
        async with self.session_factory() as session:
            row = await self._get_or_create_row(session, scope_key)
            current = self._load_state(row) if row.has_state else RunState()
            updated = current.update(**partial)
            row.state = updated.model_dump(mode="json")
            row.version = RUN_STATE_VERSION
            await session.commit()
            return updated

    async def clear(self, scope_key: str) -> bool:
        """Remove all run state fields and release any lease. Returns True if state existed."""
        async with self.session_factory() as session:
            row = await self._get_row(session, scope_key)
            if row is None:
                return False

            existed = row.has_state
            row.state = None
            row.version = None
            row.lease_owner = None
            row.lease_expires_at = None
            await session.commit()

        logger.info(f"Cleared run state for {scope_key}")
        return existed

    async def pending_scopes(self) -> List[str]:
        """Scopes whose stored state asks for resumption."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(GradeSyncRun).where(GradeSyncRun.state.is_not(None))
            )
            rows = list(result.scalars().all())

        scopes = []
        for row in rows:
            try:
                state = self._load_state(row)
            except RunStateCorruptError as e:
                logger.warning(f"Skipping corrupt run state: {e.message}")
                continue
            if state.is_resumable:
                scopes.append(row.scope_key)
        return scopes

    # Lease handling

    async def acquire_lease(self, scope_key: str, owner: str, ttl_seconds: int) -> None:
        """
        Claim the scope for ``owner``.

        Raises:
            RunInProgressError: another owner holds a lease that has not expired
        """
        now = self._clock()
        async with self.session_factory() as session:
            row = await self._get_or_create_row(session, scope_key)

            if row.lease_is_live(now) and row.lease_owner != owner:
                raise RunInProgressError(
                    f"A grade update is already running for {scope_key}",
                    owner=row.lease_owner,
                    scope_key=scope_key
                )

            if row.lease_owner and row.lease_owner != owner:
                logger.warning(
                    f"Taking over expired lease on {scope_key} from {row.lease_owner}"
                )

            row.lease_owner = owner
            row.lease_expires_at = now + ttl_seconds
            await session.commit()

    async def renew_lease(self, scope_key: str, owner: str, ttl_seconds: int) -> bool:
        """Extend the lease; False when ``owner`` no longer holds it."""
        async with self.session_factory() as session:
            row = await self._get_row(session, scope_key)
            if row is None or row.lease_owner != owner:
                return False
            row.lease_expires_at = self._clock() + ttl_seconds
            await session.commit()
            return True

    async def release_lease(self, scope_key: str, owner: str) -> None:
        async with self.session_factory() as session:
            row = await self._get_row(session, scope_key)
            if row is None or row.lease_owner != owner:
                return
            row.lease_owner = None
            row.lease_expires_at = None
            await session.commit()

    async def lease_owner(self, scope_key: str) -> Optional[str]:
        async with self.session_factory() as session:
            row = await self._get_row(session, scope_key)
            if row is None or not row.lease_is_live(self._clock()):
                return None
            return row.lease_owner

    # Run history

    async def record_last_run(
        self,
        scope_key: str,
        outcome: RunOutcome,
        duration_seconds: float,
        updated_count: int = 0,
        message: Optional[str] = None,
        summary_csv: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None
    ) -> GradeSyncLastRun:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GradeSyncLastRun).where(GradeSyncLastRun.scope_key == scope_key)
            )
            last_run = result.scalar_one_or_none()
            if last_run is None:
                last_run = GradeSyncLastRun(scope_key=scope_key)
                session.add(last_run)

            last_run.finished_at = datetime.now(timezone.utc)
            if outcome in SUCCESS_OUTCOMES:
                last_run.last_success_at = last_run.finished_at
                last_run.last_success_duration_seconds = duration_seconds
                last_run.last_success_count = updated_count

            last_run.duration_seconds = duration_seconds
            last_run.updated_count = updated_count
            last_run.outcome = outcome
            last_run.message = message
            last_run.summary_csv = summary_csv
            last_run.error_details = error_details
            await session.commit()
            return last_run

    async def get_last_run(self, scope_key: str) -> Optional[GradeSyncLastRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GradeSyncLastRun).where(GradeSyncLastRun.scope_key == scope_key)
            )
            return result.scalar_one_or_none()
