"""
Per-record grade writes.

RecordWriter performs one idempotent submission update per student. The
per-record pass drives it sequentially with the retry policy: three attempts
per student, a deferred second pass over the failures, and a summary of
students that needed more than one attempt.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import RetryConfig, attempt_with_retry
from gradesync.schemas.grade_sync import FailureRecord, RetryRecord, ScoreDelta

logger = logging.getLogger(__name__)


def annotation_for(average: float, when: Optional[datetime] = None) -> str:
    stamp = (when or datetime.now()).strftime("%m/%d/%Y, %I:%M:%S %p")
    return f"Score: {average}  Updated: {stamp}"


class RecordWriter:
    """Writes one student's score for the target outcome."""

    def __init__(self, client: CanvasClient, course_id: str, assignment_id: str, rubric_criterion_id: str):
        self.client = client
        self.course_id = course_id
        self.assignment_id = assignment_id
        self.rubric_criterion_id = rubric_criterion_id

    def build_payload(self, average: float) -> Dict[str, object]:
        return {
            "rubric_assessment": {
                str(self.rubric_criterion_id): {"points": average}
            },
            "submission": {
                "posted_grade": str(average),
                "score": average
            },
            "comment": {
                "text_comment": annotation_for(average)
            }
        }

    async def write(self, user_id: str, average: float) -> None:
        """
        Set the student's score to ``average``. Safe to repeat.

        Raises:
            CanvasAPIError: the remote call failed; carries the remote body
        """
        await self.client.update_submission(
            self.course_id, self.assignment_id, user_id, self.build_payload(average)
        )
        logger.debug(f"Score {average} written for user {user_id}")


@dataclass
class PerRecordResult:
    succeeded: List[ScoreDelta] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    attempts: Dict[str, int] = field(default_factory=dict)

    @property
    def retries(self) -> List[RetryRecord]:
        """Students that needed more than one attempt."""
        return [
            RetryRecord(user_id=user_id, attempts=count)
            for user_id, count in self.attempts.items()
            if count > 1
        ]

    @property
    def needs_summary(self) -> bool:
        return bool(self.failures) or any(count > 1 for count in self.attempts.values())


async def write_per_record(
    deltas: List[ScoreDelta],
    writer: RecordWriter,
    retry_config: RetryConfig,
    on_success: Optional[Callable[[ScoreDelta], None]] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
    should_continue: Optional[Callable[[], bool]] = None
) -> PerRecordResult:
    """
    Write every delta one at a time.

    Writes are never concurrent. A student failing all attempts in the first
    pass is deferred and retried once more with the same policy after the
    first pass; only then is it recorded as a failure.

    Args:
        deltas: Scores to write
        writer: Single-record writer
        retry_config: Attempts per student per pass
        on_success: Called after each successful write (override propagation)
        on_progress: Called with (processed, total) after every record
        should_continue: Checked before each write, False stops the pass early
    """
    result = PerRecordResult()
    total = len(deltas)
    deferred: List[tuple] = []

    async def try_update(delta: ScoreDelta):
        outcome = await attempt_with_retry(writer.write, retry_config, delta.user_id, delta.average)
        result.attempts[delta.user_id] = result.attempts.get(delta.user_id, 0) + outcome.attempts
        if outcome.succeeded:
            result.succeeded.append(delta)
            if on_success:
                on_success(delta)
        return outcome

    # First pass
    for index, delta in enumerate(deltas):
        if should_continue and not should_continue():
            logger.info(f"Per-record pass stopped after {index} of {total} students")
            return result

        outcome = await try_update(delta)
        if not outcome.succeeded:
            deferred.append((delta, outcome.error))

        if on_progress:
            on_progress(index + 1, total)

    if deferred:
        logger.info(f"Retrying {len(deferred)} students...")

    # Deferred pass
    for delta, _ in deferred:
        if should_continue and not should_continue():
            break

        outcome = await try_update(delta)
        if not outcome.succeeded:
            result.failures.append(FailureRecord(
                user_id=delta.user_id,
                average=delta.average,
                error=str(outcome.error)
            ))

    retried = len(result.retries)
    if retried:
        logger.info(f"{retried} students needed more than one attempt.")
    if result.failures:
        logger.warning(
            f"Scores of {len(result.failures)} students failed to update: "
            f"{[failure.user_id for failure in result.failures]}"
        )

    return result
