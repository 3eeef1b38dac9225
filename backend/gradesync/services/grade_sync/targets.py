"""
Grading target lookup.

Finds the outcome, assignment and rubric criterion a run writes to. Creating
them is a one-time setup step handled outside the engine; when any of them is
missing the run is cancelled with a PrerequisiteDeclinedError.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import PrerequisiteDeclinedError
from gradesync.schemas.grade_sync import RollupSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradingTarget:
    outcome_id: str
    assignment_id: str
    rubric_criterion_id: str


class TargetLocator:
    """Resolves the grading target for a course from Canvas."""

    def __init__(self, client: CanvasClient, outcome_name: str, assignment_name: str):
        self.client = client
        self.outcome_name = outcome_name
        self.assignment_name = assignment_name

    async def locate(self, course_id: str, snapshot: RollupSnapshot) -> GradingTarget:
        outcome = snapshot.find_outcome(self.outcome_name)
        if outcome is None:
            raise PrerequisiteDeclinedError(
                f'Outcome "{self.outcome_name}" not found. Create it before updating scores.',
                operation_type="locate_target"
            )
        outcome_id = str(outcome.id)

        assignment = await self._find_assignment(course_id, outcome_id)
        if assignment is None:
            raise PrerequisiteDeclinedError(
                f'Assignment "{self.assignment_name}" not found. Create it before updating scores.',
                operation_type="locate_target"
            )
        assignment_id = str(assignment["id"])

        criterion_id = self._find_criterion(assignment, outcome_id)
        if criterion_id is None:
            # Search results may omit the rubric, fetch the full assignment
            assignment = await self.client.get_assignment(course_id, assignment_id)
            criterion_id = self._find_criterion(assignment, outcome_id)

        if criterion_id is None:
            raise PrerequisiteDeclinedError(
                f'No rubric aligned to "{self.outcome_name}" on assignment {assignment_id}. '
                f'Create it before updating scores.',
                operation_type="locate_target"
            )

        logger.debug(
            f"Grading target for course {course_id}: outcome={outcome_id} "
            f"assignment={assignment_id} criterion={criterion_id}"
        )
        return GradingTarget(outcome_id, assignment_id, criterion_id)

    async def _find_assignment(self, course_id: str, outcome_id: str) -> Optional[Dict[str, Any]]:
        candidates: List[Dict[str, Any]] = await self.client.search_assignments(
            course_id, self.assignment_name
        ) or []

        # Prefer the assignment whose rubric is aligned with the outcome
        for assignment in candidates:
            if self._find_criterion(assignment, outcome_id) is not None:
                return assignment

        for assignment in candidates:
            if assignment.get("name") == self.assignment_name:
                return assignment

        return None

    @staticmethod
    def _find_criterion(assignment: Dict[str, Any], outcome_id: str) -> Optional[str]:
        rubric = assignment.get("rubric") or []
        for criterion in rubric:
            if str(criterion.get("outcome_id")) == outcome_id:
                return str(criterion["id"])
        return None
