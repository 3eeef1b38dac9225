"""
Bulk grade submission.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import CanvasAPIError, SubmissionError
from gradesync.schemas.grade_sync import ScoreDelta
from gradesync.services.grade_sync.override_propagator import OverridePropagator
from gradesync.services.grade_sync.record_writer import annotation_for

logger = logging.getLogger(__name__)


class BulkJobSubmitter:
    """Submits every delta as one asynchronous remote bulk job."""

    def __init__(
        self,
        client: CanvasClient,
        course_id: str,
        assignment_id: str,
        rubric_criterion_id: str,
        propagator: Optional[OverridePropagator] = None
    ):
        self.client = client
        self.course_id = course_id
        self.assignment_id = assignment_id
        self.rubric_criterion_id = rubric_criterion_id
        self.propagator = propagator

    def build_grade_data(self, deltas: List[ScoreDelta], when: Optional[datetime] = None) -> Dict[str, Any]:
        when = when or datetime.now()
        grade_data: Dict[str, Any] = {}
        for delta in deltas:
            grade_data[delta.user_id] = {
                "posted_grade": delta.average,
                "text_comment": annotation_for(delta.average, when),
                "rubric_assessment": {
                    str(self.rubric_criterion_id): {"points": delta.average}
                }
            }
        return grade_data

    async def submit(self, deltas: List[ScoreDelta]) -> str:
        """
        Create the bulk job and return its progress id.

        Override writes are queued for every delta; they are not awaited.

        Raises:
            SubmissionError: the job could not be created
        """
        grade_data = self.build_grade_data(deltas)

        try:
            result = await self.client.bulk_update_grades(self.course_id, self.assignment_id, grade_data)
        except CanvasAPIError as e:
            raise SubmissionError(
                f"Bulk update submission failed: {e.body or e.message}",
                operation_type="bulk_update_grades",
                details={'status': e.status, 'body': e.body},
                original_exception=e
            )

        job_id = (result or {}).get("id")
        if job_id is None:
            raise SubmissionError(
                f"Bulk update submission returned no progress id: {result}",
                operation_type="bulk_update_grades"
            )

        if self.propagator is not None:
            for delta in deltas:
                self.propagator.propagate(delta.user_id, delta.average)

        logger.info(f"Waiting for grading to complete, progress id: {job_id}")
        return str(job_id)
