"""
Read-back verification of written scores.

The remote rollups are eventually consistent, so verification re-reads them
on a fixed interval until every expected value is visible or the attempt
budget runs out.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import CanvasAPIError
from gradesync.schemas.grade_sync import RollupSnapshot, ScoreDelta
from gradesync.services.grade_sync.status import StatusReporter

logger = logging.getLogger(__name__)


@dataclass
class Mismatch:
    user_id: str
    expected: float
    actual: Optional[float]
    reason: str = "mismatch"


@dataclass
class VerificationResult:
    matched: bool
    attempts: int
    mismatches: List[Mismatch] = field(default_factory=list)


def within_tolerance(actual: float, expected: float, tolerance: float) -> bool:
    """Compare as decimals so a difference of exactly ``tolerance`` is accepted."""
    difference = abs(Decimal(str(actual)) - Decimal(str(expected)))
    return difference <= Decimal(str(tolerance))


def find_mismatches(
    snapshot: RollupSnapshot,
    deltas: List[ScoreDelta],
    target_id: str,
    tolerance: float = 0.001
) -> List[Mismatch]:
    """Compare expected values with what the rollups currently show."""
    rollups = {rollup.user_id: rollup for rollup in snapshot.rollups}
    mismatches: List[Mismatch] = []

    for delta in deltas:
        rollup = rollups.get(delta.user_id)
        if rollup is None:
            mismatches.append(Mismatch(delta.user_id, delta.average, None, "not yet visible"))
            continue

        score = rollup.score_for(target_id)
        if score is None or not score.is_numeric:
            mismatches.append(Mismatch(delta.user_id, delta.average, None, "not yet visible"))
            continue

        actual = float(score.score)
        if not within_tolerance(actual, delta.average, tolerance):
            mismatches.append(Mismatch(delta.user_id, delta.average, actual))

    return mismatches


class Verifier:
    """Confirms written scores through the rollups API."""

    def __init__(
        self,
        client: CanvasClient,
        course_id: str,
        reporter: Optional[StatusReporter] = None,
        interval: float = 5.0,
        max_attempts: int = 50,
        tolerance: float = 0.001,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.client = client
        self.course_id = course_id
        self.reporter = reporter
        self.interval = interval
        self.max_attempts = max_attempts
        self.tolerance = tolerance
        self._sleep = sleep

    async def verify(
        self,
        deltas: List[ScoreDelta],
        target_id: str,
        should_continue: Optional[Callable[[], bool]] = None
    ) -> VerificationResult:
        """
        Re-read rollups until every delta is visible.

        Exhausting the attempt budget is not an error; the caller gets
        ``matched=False`` with the mismatches from the last read.
        """
        mismatches: List[Mismatch] = []
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            if should_continue and not should_continue():
                break
            attempts = attempt

            try:
                snapshot = await self.client.get_outcome_rollups(self.course_id, [target_id])
                mismatches = find_mismatches(snapshot, deltas, target_id, self.tolerance)
            except CanvasAPIError as e:
                logger.warning(f"Verification read {attempt} failed: {e}")
                mismatches = []
                snapshot = None

            if snapshot is not None and not mismatches:
                logger.info(f"All {len(deltas)} scores verified after {attempt} attempt(s)")
                return VerificationResult(matched=True, attempts=attempt)

            if snapshot is not None:
                sample: Dict[str, str] = {
                    m.user_id: m.reason for m in mismatches[:5]
                }
                logger.debug(f"{len(mismatches)} scores not yet matching: {sample}")

            if self.reporter is not None:
                self.reporter.report(
                    f"Verifying updated scores... (attempt {attempt}/{self.max_attempts})",
                    transient=True
                )

            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        logger.warning(
            f"Verification gave up after {attempts} attempt(s) with {len(mismatches)} mismatches"
        )
        return VerificationResult(matched=False, attempts=attempts, mismatches=mismatches)
