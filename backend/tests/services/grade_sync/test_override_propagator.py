"""
Tests for grade override propagation.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from gradesync.integrations.canvas.error_handler import CanvasAPIError, RetryConfig
from gradesync.services.grade_sync.override_propagator import (
    EnrollmentResolver, OverridePropagator, scale_override
)


@pytest.fixture
def mock_client():
    client = AsyncMock()
    client.list_student_enrollments.return_value = [
        {"id": 501, "user_id": 1},
        {"id": 502, "user_id": 2},
    ]
    client.set_override_score.return_value = 87.5
    return client


@pytest.fixture
def propagator(mock_client):
    return OverridePropagator(
        mock_client,
        EnrollmentResolver(mock_client, "42"),
        scale_factor=25,
        retry_config=RetryConfig(max_attempts=3)
    )


class TestScaleOverride:

    def test_scales_and_rounds(self):
        assert scale_override(3.5, 25) == 87.5
        assert scale_override(3.33, 25) == 83.25


class TestEnrollmentResolver:
    """Test the memoized enrollment lookup."""

    @pytest.mark.asyncio
    async def test_fetches_once(self, mock_client):
        resolver = EnrollmentResolver(mock_client, "42")

        results = await asyncio.gather(
            resolver.enrollment_id_for("1"),
            resolver.enrollment_id_for("2"),
            resolver.enrollment_id_for("3"),
        )

        assert results == ["501", "502", None]
        mock_client.list_student_enrollments.assert_awaited_once_with("42")


class TestOverridePropagator:
    """Test the detached propagation queue."""

    @pytest.mark.asyncio
    async def test_propagate_writes_scaled_override(self, propagator, mock_client):
        propagator.propagate("1", 3.5)
        propagator.propagate("2", 2.0)
        await propagator.close(timeout=5)

        mock_client.set_override_score.assert_any_await("501", 87.5)
        mock_client.set_override_score.assert_any_await("502", 50.0)
        assert propagator.written == 2
        assert propagator.failures == []

    @pytest.mark.asyncio
    async def test_propagate_does_not_block(self, propagator, mock_client):
        """Enqueueing returns before any override is written."""
        propagator.propagate("1", 3.5)

        mock_client.set_override_score.assert_not_called()
        assert propagator.pending == 1

        await propagator.close(timeout=5)
        mock_client.set_override_score.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, propagator, mock_client):
        mock_client.set_override_score.side_effect = CanvasAPIError("GraphQL error", status=200)

        propagator.propagate("1", 3.5)
        await propagator.close(timeout=5)

        assert mock_client.set_override_score.await_count == 3
        assert len(propagator.failures) == 1
        assert propagator.failures[0].user_id == "1"

    @pytest.mark.asyncio
    async def test_unknown_enrollment_is_skipped(self, propagator, mock_client):
        propagator.propagate("99", 3.0)
        await propagator.close(timeout=5)

        mock_client.set_override_score.assert_not_called()
        assert propagator.failures == []

    @pytest.mark.asyncio
    async def test_disabled_propagator_does_nothing(self, mock_client):
        propagator = OverridePropagator(mock_client, EnrollmentResolver(mock_client, "42"), enabled=False)

        propagator.propagate("1", 3.5)
        await propagator.close(timeout=5)

        mock_client.list_student_enrollments.assert_not_called()
        mock_client.set_override_score.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_abandons_slow_writes(self, propagator, mock_client):
        async def slow(enrollment_id, score):
            await asyncio.sleep(10)

        mock_client.set_override_score.side_effect = slow

        propagator.propagate("1", 3.5)
        await propagator.close(timeout=0.05)

        assert propagator.written == 0
