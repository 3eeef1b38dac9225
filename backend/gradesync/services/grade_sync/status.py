"""
Status reporting for grade sync runs.

Reporters receive human-readable progress strings at each phase transition.
They own display and timing and must never block the caller.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def elapsed_seconds(start_time: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds since ``start_time`` (a run's persisted start, not poll start)."""
    now = now or datetime.now(timezone.utc)
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)
    return max(0, int((now - start_time).total_seconds()))


class StatusReporter(ABC):
    """Receives progress messages for one run scope."""

    @abstractmethod
    def report(self, message: str, transient: bool = False) -> None:
        """
        Publish a status message.

        Args:
            message: Human-readable status
            transient: True for periodic updates (poll ticks) that a display
                may replace rather than keep
        """


class LoggingStatusReporter(StatusReporter):
    def __init__(self, scope_key: str):
        self.scope_key = scope_key

    def report(self, message: str, transient: bool = False) -> None:
        if transient:
            logger.debug(f"[{self.scope_key}] {message}")
        else:
            logger.info(f"[{self.scope_key}] {message}")


class CompositeStatusReporter(StatusReporter):
    def __init__(self, *reporters: StatusReporter):
        self.reporters = list(reporters)

    def report(self, message: str, transient: bool = False) -> None:
        for reporter in self.reporters:
            try:
                reporter.report(message, transient)
            except Exception as e:
                logger.error(f"Status reporter {type(reporter).__name__} failed: {e}")
