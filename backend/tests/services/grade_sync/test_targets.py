"""
Tests for grading target lookup.
"""

import pytest
from unittest.mock import AsyncMock

from gradesync.integrations.canvas.error_handler import PrerequisiteDeclinedError
from gradesync.services.grade_sync.targets import GradingTarget, TargetLocator


OUTCOMES = {"100": "Current Score", "1": "Reading"}


@pytest.fixture
def mock_client():
    client = AsyncMock()
    client.search_assignments.return_value = [
        {"id": 554, "name": "Current Score Assignment (old)", "rubric": []},
        {"id": 555, "name": "Current Score Assignment", "rubric": [{"id": "_4821", "outcome_id": 100}]},
    ]
    return client


@pytest.fixture
def locator(mock_client):
    return TargetLocator(mock_client, "Current Score", "Current Score Assignment")


class TestTargetLocator:
    """Test target resolution."""

    @pytest.mark.asyncio
    async def test_locates_aligned_assignment(self, locator, snapshot_factory):
        target = await locator.locate("42", snapshot_factory({}, OUTCOMES))

        assert target == GradingTarget(outcome_id="100", assignment_id="555", rubric_criterion_id="_4821")

    @pytest.mark.asyncio
    async def test_fetches_rubric_when_search_omits_it(self, locator, mock_client, snapshot_factory):
        mock_client.search_assignments.return_value = [{"id": 555, "name": "Current Score Assignment"}]
        mock_client.get_assignment.return_value = {
            "id": 555, "rubric": [{"id": "_4821", "outcome_id": 100}]
        }

        target = await locator.locate("42", snapshot_factory({}, OUTCOMES))

        assert target.rubric_criterion_id == "_4821"
        mock_client.get_assignment.assert_awaited_once_with("42", "555")

    @pytest.mark.asyncio
    async def test_missing_outcome(self, locator, snapshot_factory):
        with pytest.raises(PrerequisiteDeclinedError) as exc_info:
            await locator.locate("42", snapshot_factory({}, {"1": "Reading"}))

        assert "Current Score" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_assignment(self, locator, mock_client, snapshot_factory):
        mock_client.search_assignments.return_value = []

        with pytest.raises(PrerequisiteDeclinedError):
            await locator.locate("42", snapshot_factory({}, OUTCOMES))

    @pytest.mark.asyncio
    async def test_missing_rubric(self, locator, mock_client, snapshot_factory):
        mock_client.search_assignments.return_value = [{"id": 555, "name": "Current Score Assignment"}]
        mock_client.get_assignment.return_value = {"id": 555, "rubric": []}

        with pytest.raises(PrerequisiteDeclinedError):
            await locator.locate("42", snapshot_factory({}, OUTCOMES))
