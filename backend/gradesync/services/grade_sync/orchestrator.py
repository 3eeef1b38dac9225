"""
Update Orchestrator

Drives one grade update for a course through the persisted state machine:

    Idle -> (Resuming) -> ComputingAverages -> WritingPerRecord | SubmittingBulk
         -> (Polling) -> Verifying -> Completed | Failed

Every phase change is written to the run store before the phase's work
starts, so a run interrupted at any point can be picked up again: a bulk job
with a stored id goes straight back to polling, a run with pending
verification goes straight back to verifying, anything else starts over.
"""

import asyncio
import logging
import os
import socket
import uuid
from typing import Awaitable, Callable, List, Optional, Tuple

import psutil

from gradesync.core.config import EngineConfig
from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import (
    GradeSyncError, PrerequisiteDeclinedError, RetryConfig, RunCancelledError,
    SyncErrorHandler, get_user_friendly_message, global_error_handler
)
from gradesync.schemas.grade_sync import (
    RunOutcome, RunPhase, RunReport, RunState, RunStrategy, ScoreDelta, utcnow
)
from gradesync.services.grade_sync.average_calculator import compute_score_deltas
from gradesync.services.grade_sync.bulk_submitter import BulkJobSubmitter
from gradesync.services.grade_sync.job_poller import JobPoller
from gradesync.services.grade_sync.override_propagator import EnrollmentResolver, OverridePropagator
from gradesync.services.grade_sync.record_writer import RecordWriter, write_per_record
from gradesync.services.grade_sync.run_store import RunStore, scope_key_for_course
from gradesync.services.grade_sync.status import LoggingStatusReporter, StatusReporter, elapsed_seconds
from gradesync.services.grade_sync.summary_export import build_summary_csv
from gradesync.services.grade_sync.targets import GradingTarget, TargetLocator
from gradesync.services.grade_sync.verifier import Verifier

logger = logging.getLogger(__name__)


def new_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def owner_is_stale(owner: str) -> bool:
    """
    Check if a lease owner token names a process on this host that has exited.

    Owners on other hosts cannot be checked and are left to lease expiry.
    """
    host, _, rest = owner.partition(":")
    pid_text = rest.partition(":")[0]
    if host != socket.gethostname() or not pid_text.isdigit():
        return False

    pid = int(pid_text)
    if pid == os.getpid():
        return False
    return not psutil.pid_exists(pid)


class UpdateOrchestrator:
    """Runs the grade update state machine for one course."""

    def __init__(
        self,
        store: RunStore,
        client: CanvasClient,
        course_id: str,
        config: Optional[EngineConfig] = None,
        reporter: Optional[StatusReporter] = None,
        owner: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        error_handler: Optional[SyncErrorHandler] = None
    ):
        self.store = store
        self.client = client
        self.course_id = str(course_id)
        self.scope_key = scope_key_for_course(self.course_id)
        self.config = config or EngineConfig()
        self.reporter = reporter or LoggingStatusReporter(self.scope_key)
        self.owner = owner or new_owner_token()
        self.error_handler = error_handler or global_error_handler
        self._sleep = sleep
        self._cancelled = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._propagator: Optional[OverridePropagator] = None

    # Cancellation

    def cancel(self) -> None:
        """Ask the running orchestrator to stop at its next check."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _should_continue(self) -> bool:
        return not self._cancelled

    async def _checkpoint(self) -> RunState:
        """
        Phase boundary check.

        Returns the stored state, or raises RunCancelledError when the state
        was cleared or the lease was lost since the last boundary.
        """
        if self._cancelled:
            raise RunCancelledError("stopped by request", scope_key=self.scope_key)

        state = await self.store.get(self.scope_key)
        if state is None:
            self._cancelled = True
            raise RunCancelledError("run state was cleared", scope_key=self.scope_key)

        if not await self.store.renew_lease(self.scope_key, self.owner, self.config.lease_ttl):
            self._cancelled = True
            raise RunCancelledError("run lease was taken by another owner", scope_key=self.scope_key)

        return state

    async def _heartbeat(self) -> None:
        interval = max(1.0, self.config.lease_ttl / 3)
        while True:
            await asyncio.sleep(interval)
            renewed = await self.store.renew_lease(self.scope_key, self.owner, self.config.lease_ttl)
            if not renewed:
                logger.warning(f"[{self.scope_key}] lease lost, stopping run")
                self._cancelled = True
                return

    async def _save(self, state: RunState) -> RunState:
        return await self.store.save(self.scope_key, state, owner=self.owner)

    def _report(self, message: str, transient: bool = False) -> None:
        self.reporter.report(message, transient)

    # Entry point

    async def run(self) -> RunReport:
        """
        Execute (or resume) a run to completion.

        Raises:
            RunInProgressError: another owner holds a live lease on the course

        Returns:
            The run report; fatal errors are reported, not raised
        """
        await self.store.acquire_lease(self.scope_key, self.owner, self.config.lease_ttl)
        logger.info(f"[{self.scope_key}] run started by {self.owner}")

        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        state: Optional[RunState] = None
        resumed = False

        try:
            stored = await self.store.get(self.scope_key)
            if stored is not None and stored.is_resumable and not stored.is_terminal:
                resumed = True
                state, report = await self._resume(stored)
            else:
                if stored is not None:
                    logger.info(f"[{self.scope_key}] discarding non-resumable state in phase {stored.phase.value}")
                state = await self._save(RunState(in_progress=True))
                state, report = await self._fresh_run(state)

            report.resumed = resumed
            await self._finish(report, state)
            return report

        except GradeSyncError as e:
            return await self._fail(e, state, resumed)

        except Exception as e:
            logger.exception(f"[{self.scope_key}] unexpected error during run")
            return await self._fail(e, state, resumed)

        finally:
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
                try:
                    await self._heartbeat_task
                except asyncio.CancelledError:
                    pass
                self._heartbeat_task = None
            await self._close_propagator()
            await self.store.release_lease(self.scope_key, self.owner)

    # Phases

    async def _resume(self, stored: RunState) -> Tuple[RunState, RunReport]:
        state = stored
        if state.phase != RunPhase.RESUMING:
            state = await self._save(state.transition(RunPhase.RESUMING))
        self._report("Resuming previous grade update...")

        if state.awaiting_job:
            logger.info(f"[{self.scope_key}] resuming bulk job {state.job_id}")
            state = await self._save(state.transition(RunPhase.POLLING))
            state = await self._poll(state)
        else:
            logger.info(f"[{self.scope_key}] resuming verification")
            state = await self._save(state.transition(RunPhase.VERIFYING))

        expected = state.expected_deltas or []
        return await self._verify(state, RunReport(
            scope_key=self.scope_key,
            outcome=RunOutcome.COMPLETED,
            message="",
            updated_count=len(expected),
            strategy=state.strategy
        ))

    async def _fresh_run(self, state: RunState) -> Tuple[RunState, RunReport]:
        state = await self._save(state.transition(RunPhase.COMPUTING_AVERAGES))
        self._report(f'Checking setup for "{self.config.target_outcome_name}"...')

        snapshot = await self.client.get_outcome_rollups(self.course_id)
        locator = TargetLocator(
            self.client, self.config.target_outcome_name, self.config.target_assignment_name
        )
        target = await locator.locate(self.course_id, snapshot)

        self._report(f'Calculating "{self.config.target_outcome_name}" scores...')
        deltas = compute_score_deltas(
            snapshot,
            target.outcome_id,
            excluded_keywords=self.config.excluded_keywords,
            zero_out=self.config.zero_out
        )

        await self._checkpoint()

        if not deltas:
            state = await self._save(state.transition(RunPhase.COMPLETED, in_progress=False))
            return state, RunReport(
                scope_key=self.scope_key,
                outcome=RunOutcome.NO_CHANGES,
                message=f"No changes to {self.config.target_outcome_name} found."
            )

        if len(deltas) < self.config.per_record_threshold:
            return await self._write_per_record(state, target, deltas)
        return await self._submit_bulk(state, target, deltas)

    async def _write_per_record(
        self,
        state: RunState,
        target: GradingTarget,
        deltas: List[ScoreDelta]
    ) -> Tuple[RunState, RunReport]:
        total = len(deltas)
        self._report(
            f"Detected {total} changes - updating scores one at a time for quicker processing."
        )

        # Expected values are persisted before the first write
        state = await self._save(state.transition(
            RunPhase.WRITING_PER_RECORD,
            strategy=RunStrategy.PER_RECORD,
            target_id=target.outcome_id,
            expected_deltas=deltas,
            verification_pending=True
        ))

        propagator = self._build_propagator()
        writer = RecordWriter(self.client, self.course_id, target.assignment_id, target.rubric_criterion_id)
        retry_config = RetryConfig(
            max_attempts=self.config.max_write_attempts,
            base_delay=self.config.write_retry_delay
        )

        def on_progress(processed: int, count: int) -> None:
            self._report(
                f'Updating "{self.config.target_outcome_name}" scores: {processed}/{count} students',
                transient=True
            )

        result = await write_per_record(
            deltas,
            writer,
            retry_config,
            on_success=lambda delta: propagator.propagate(delta.user_id, delta.average),
            on_progress=on_progress,
            should_continue=self._should_continue
        )

        await self._checkpoint()

        summary_csv = build_summary_csv(result.retries, result.failures) if result.needs_summary else None
        report = RunReport(
            scope_key=self.scope_key,
            outcome=RunOutcome.COMPLETED,
            message="",
            updated_count=len(result.succeeded),
            strategy=RunStrategy.PER_RECORD,
            retries=result.retries,
            failures=result.failures,
            summary_csv=summary_csv
        )

        if not result.succeeded:
            state = await self._save(state.transition(RunPhase.FAILED, verification_pending=False))
            report.outcome = RunOutcome.FAILED
            report.message = f"Scores of all {total} students failed to update."
            return state, report

        # Failed students will never match, so only successes are verified
        state = await self._save(state.transition(
            RunPhase.VERIFYING,
            expected_deltas=result.succeeded
        ))
        return await self._verify(state, report)

    async def _submit_bulk(
        self,
        state: RunState,
        target: GradingTarget,
        deltas: List[ScoreDelta]
    ) -> Tuple[RunState, RunReport]:
        self._report(f"Detected {len(deltas)} changes - using bulk update for error prevention")

        state = await self._save(state.transition(
            RunPhase.SUBMITTING_BULK,
            strategy=RunStrategy.BULK,
            target_id=target.outcome_id,
            expected_deltas=deltas,
            verification_pending=True
        ))

        submitter = BulkJobSubmitter(
            self.client,
            self.course_id,
            target.assignment_id,
            target.rubric_criterion_id,
            propagator=self._build_propagator()
        )
        job_id = await submitter.submit(deltas)
        await self._checkpoint()

        # The job id is stored before the first poll so the job can be resumed
        state = await self._save(state.transition(RunPhase.POLLING, job_id=job_id))
        state = await self._poll(state)

        return await self._verify(state, RunReport(
            scope_key=self.scope_key,
            outcome=RunOutcome.COMPLETED,
            message="",
            updated_count=len(deltas),
            strategy=RunStrategy.BULK
        ))

    async def _poll(self, state: RunState) -> RunState:
        poller = JobPoller(
            self.client,
            self.reporter,
            interval=self.config.poll_interval,
            timeout=self.config.poll_timeout,
            sleep=self._sleep
        )
        handle = await poller.wait(state.job_id, state.start_time, should_continue=self._should_continue)
        if handle is None:
            raise RunCancelledError("stopped by request", scope_key=self.scope_key)

        await self._checkpoint()
        return await self._save(state.transition(
            RunPhase.VERIFYING,
            job_id=None,
            in_progress=False,
            job_completed_at=utcnow()
        ))

    async def _verify(self, state: RunState, report: RunReport) -> Tuple[RunState, RunReport]:
        self._report("Verifying updated scores...")
        verifier = Verifier(
            self.client,
            self.course_id,
            reporter=self.reporter,
            interval=self.config.verify_interval,
            max_attempts=self.config.verify_max_attempts,
            tolerance=self.config.verify_tolerance,
            sleep=self._sleep
        )
        result = await verifier.verify(
            state.expected_deltas or [], state.target_id, should_continue=self._should_continue
        )
        await self._checkpoint()

        report.verification_attempts = result.attempts
        state = await self._save(state.transition(
            RunPhase.COMPLETED,
            in_progress=False,
            verification_pending=False
        ))

        elapsed = elapsed_seconds(state.start_time)
        if result.matched:
            report.outcome = RunOutcome.COMPLETED
            report.message = f"{report.updated_count} student scores updated successfully! (elapsed time: {elapsed}s)"
        else:
            report.outcome = RunOutcome.UNCONFIRMED
            report.message = (
                f"{report.updated_count} student scores were written but {len(result.mismatches)} "
                f"could not be confirmed after {result.attempts} checks. They will likely appear shortly. "
                f"(elapsed time: {elapsed}s)"
            )

        if report.failures:
            report.message += f" Scores of {len(report.failures)} students failed to update."
        return state, report

    # Terminal handling

    async def _finish(self, report: RunReport, state: RunState) -> None:
        report.elapsed_seconds = float(elapsed_seconds(state.start_time))
        await self._close_propagator()

        await self.store.record_last_run(
            self.scope_key,
            report.outcome,
            duration_seconds=report.elapsed_seconds,
            updated_count=report.updated_count,
            message=report.message,
            summary_csv=report.summary_csv
        )
        await self.store.clear(self.scope_key)

        if report.outcome in (RunOutcome.COMPLETED, RunOutcome.NO_CHANGES):
            logger.info(f"[{self.scope_key}] {report.message}")
        else:
            logger.warning(f"[{self.scope_key}] {report.message}")
        self._report(report.message)

    async def _fail(self, error: Exception, state: Optional[RunState], resumed: bool) -> RunReport:
        cancelled = isinstance(error, (RunCancelledError, PrerequisiteDeclinedError))
        message = get_user_friendly_message(error)

        self.error_handler.log_error(error, context={'scope_key': self.scope_key})
        if state is not None:
            logger.info(f"[{self.scope_key}] run failed in phase {state.phase.value}")

        report = RunReport(
            scope_key=self.scope_key,
            outcome=RunOutcome.CANCELLED if cancelled else RunOutcome.FAILED,
            message=message,
            elapsed_seconds=float(elapsed_seconds(state.start_time)) if state else 0.0,
            strategy=state.strategy if state else None,
            resumed=resumed,
            error=error.to_dict() if isinstance(error, GradeSyncError) else {
                'message': str(error), 'error_type': type(error).__name__
            }
        )

        await self._close_propagator()
        await self.store.record_last_run(
            self.scope_key,
            report.outcome,
            duration_seconds=report.elapsed_seconds,
            message=message,
            error_details=report.error
        )

        # A scope cleared from outside may already belong to a new run
        still_owned = await self.store.lease_owner(self.scope_key) == self.owner
        if not isinstance(error, RunCancelledError) or still_owned:
            await self.store.clear(self.scope_key)

        self._report(message)
        return report

    # Override propagation

    def _build_propagator(self) -> OverridePropagator:
        if self._propagator is None:
            self._propagator = OverridePropagator(
                self.client,
                EnrollmentResolver(self.client, self.course_id),
                scale_factor=self.config.override_scale_factor,
                retry_config=RetryConfig(
                    max_attempts=self.config.override_max_attempts,
                    base_delay=0.5,
                    jitter=True
                ),
                enabled=self.config.enable_grade_override
            )
        return self._propagator

    async def _close_propagator(self) -> None:
        if self._propagator is not None:
            await self._propagator.close(timeout=self.config.override_drain_timeout)
            self._propagator = None
