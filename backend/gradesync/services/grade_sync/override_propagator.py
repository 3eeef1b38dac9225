"""
Grade override propagation.

Writes a rescaled course grade override for each student next to the primary
outcome score. Work is handed to a detached worker through a queue, so the
primary write path only ever enqueues. Each item gets its own retry with
backoff; items that still fail land in a separate failure log and are never
raised to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import (
    ErrorCategory, ErrorSeverity, RetryConfig, SyncErrorHandler, attempt_with_retry
)
from gradesync.services.grade_sync.average_calculator import round2

logger = logging.getLogger(__name__)


def scale_override(average: float, factor: float) -> float:
    """Map an outcome average onto the override scale (0-4 -> 0-100 with factor 25)."""
    return round2(average * factor)


class EnrollmentResolver:
    """Memoized user id -> enrollment id lookup for one course."""

    def __init__(self, client: CanvasClient, course_id: str):
        self.client = client
        self.course_id = course_id
        self._enrollments: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, str]:
        # Concurrent misses wait for the same paginated fetch
        async with self._lock:
            if self._enrollments is None:
                enrollments = await self.client.list_student_enrollments(self.course_id)
                mapping: Dict[str, str] = {}
                for enrollment in enrollments or []:
                    if enrollment.get("user_id") and enrollment.get("id"):
                        mapping[str(enrollment["user_id"])] = str(enrollment["id"])
                logger.debug(f"Fetched {len(mapping)} enrollment ids for course {self.course_id}")
                self._enrollments = mapping
        return self._enrollments

    async def enrollment_id_for(self, user_id: str) -> Optional[str]:
        enrollments = await self._load()
        return enrollments.get(str(user_id))


@dataclass
class PropagationFailure:
    user_id: str
    average: float
    error: str


class OverridePropagator:
    """Detached queue writing secondary override scores."""

    _STOP = object()

    def __init__(
        self,
        client: CanvasClient,
        resolver: EnrollmentResolver,
        scale_factor: float = 25.0,
        retry_config: Optional[RetryConfig] = None,
        enabled: bool = True,
        error_handler: Optional[SyncErrorHandler] = None
    ):
        self.client = client
        self.resolver = resolver
        self.scale_factor = scale_factor
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, jitter=True)
        self.enabled = enabled
        self.error_handler = error_handler or SyncErrorHandler()
        self.failures: List[PropagationFailure] = []
        self.written = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def propagate(self, user_id: str, average: float) -> None:
        """Enqueue an override write and return immediately."""
        if not self.enabled:
            return

        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

        self._queue.put_nowait((str(user_id), average))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is self._STOP:
                    return
                user_id, average = item
                await self._write_override(user_id, average)
            finally:
                self._queue.task_done()

    async def _write_override(self, user_id: str, average: float) -> None:
        try:
            enrollment_id = await self.resolver.enrollment_id_for(user_id)
        except Exception as e:
            self._record_failure(user_id, average, f"enrollment lookup failed: {e}")
            return

        if not enrollment_id:
            logger.warning(f"[override] no enrollment id for user {user_id}")
            return

        override = scale_override(average, self.scale_factor)
        outcome = await attempt_with_retry(
            self.client.set_override_score, self.retry_config, enrollment_id, override
        )

        if outcome.succeeded:
            self.written += 1
            logger.debug(f"[override] user {user_id} -> enrollment {enrollment_id}: {override}")
        else:
            self._record_failure(user_id, average, str(outcome.error))

    def _record_failure(self, user_id: str, average: float, error: str) -> None:
        self.failures.append(PropagationFailure(user_id=user_id, average=average, error=error))
        self.error_handler.log_error(
            Exception(f"[override] failed for user {user_id}: {error}"),
            context={
                'category': ErrorCategory.PROPAGATION,
                'severity': ErrorSeverity.LOW,
                'user_id': user_id,
            }
        )

    async def close(self, timeout: Optional[float] = None) -> None:
        """Let queued writes finish (up to ``timeout`` seconds), then stop the worker."""
        if self._worker is None:
            return

        if not self._worker.done():
            self._queue.put_nowait(self._STOP)
            try:
                await asyncio.wait_for(asyncio.shield(self._worker), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[override] {self.pending} override writes still queued after {timeout}s, abandoning them"
                )
                self._worker.cancel()
                try:
                    await self._worker
                except asyncio.CancelledError:
                    pass

        self._worker = None
        if self.failures:
            logger.warning(f"[override] {len(self.failures)} override writes failed")
