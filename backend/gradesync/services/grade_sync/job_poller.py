"""
Bulk job polling.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import (
    BulkJobFailedError, CanvasAPIError, PollTimeoutError
)
from gradesync.schemas.grade_sync import JobHandle, JobState
from gradesync.services.grade_sync.status import StatusReporter, elapsed_seconds

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = (
    "Bulk update is taking longer than expected. In a few minutes try updating again. "
    "If there are no changes to be made the update completed"
)


class JobPoller:
    """Polls the progress endpoint of a bulk job until it is terminal."""

    def __init__(
        self,
        client: CanvasClient,
        reporter: StatusReporter,
        interval: float = 2.0,
        timeout: float = 1200.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Optional[Callable[[], datetime]] = None
    ):
        self.client = client
        self.reporter = reporter
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._now = now

    def _elapsed(self, started_at: datetime) -> int:
        return elapsed_seconds(started_at, self._now() if self._now else None)

    async def wait(
        self,
        job_id: str,
        started_at: datetime,
        should_continue: Optional[Callable[[], bool]] = None
    ) -> Optional[JobHandle]:
        """
        Wait for ``job_id`` to finish.

        The timeout is measured from ``started_at``, the run's start time, so a
        resumed run does not get a fresh budget.

        Returns:
            The completed job, or None when ``should_continue`` stopped polling

        Raises:
            BulkJobFailedError: the job reached the failed state
            PollTimeoutError: the job was still running when the budget ran out
        """
        while self._elapsed(started_at) < self.timeout:
            if should_continue and not should_continue():
                return None

            try:
                data = await self.client.get_progress(job_id)
                handle = JobHandle(
                    id=str(data.get("id", job_id)),
                    state=JobState(data.get("workflow_state")),
                    updated_at=data.get("updated_at"),
                    completion=data.get("completion"),
                    message=data.get("message")
                )
            except (CanvasAPIError, ValueError) as e:
                logger.warning(f"Could not read progress of job {job_id}: {e}")
                await self._sleep(self.interval)
                continue

            elapsed = self._elapsed(started_at)
            logger.debug(f"Bulk Uploading Status: {handle.state.value} (elapsed: {elapsed}s)")

            if handle.state == JobState.FAILED:
                logger.error("Bulk update job failed.")
                raise BulkJobFailedError(
                    "Bulk update failed.",
                    operation_type="poll_job",
                    details={'job_id': job_id, 'message': handle.message}
                )

            if handle.state == JobState.COMPLETED:
                logger.info(f"Bulk upload completed: {handle.updated_at}")
                return handle

            self.reporter.report(
                f"Bulk uploading status: {handle.state.value.upper()}. (Elapsed time: {elapsed}s)",
                transient=True
            )
            await self._sleep(self.interval)

        raise PollTimeoutError(
            TIMEOUT_MESSAGE,
            timeout_seconds=self.timeout,
            operation_type="poll_job",
            details={'job_id': job_id}
        )
