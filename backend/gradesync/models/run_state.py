"""
SQLAlchemy models for persisted grade sync run state and run history.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON, Float, Enum as SQLEnum
)
from sqlalchemy.sql import func
import time
from typing import Optional

from gradesync.core.database import Base
from gradesync.schemas.grade_sync import RunOutcome


class GradeSyncRun(Base):
    """One row per run scope holding the serialized RunState and its lease."""

    __tablename__ = "grade_sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    scope_key = Column(String(100), unique=True, index=True, nullable=False)

    # Serialized RunState (None once cleared)
    state = Column(JSON(none_as_null=True), nullable=True)
    version = Column(Integer, nullable=True)

    # Lease
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(Float, nullable=True)  # epoch seconds

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_state(self) -> bool:
        return self.state is not None

    def lease_is_live(self, now: Optional[float] = None) -> bool:
        """Check if another owner may not take this scope."""
        if not self.lease_owner or self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now if now is not None else time.time())


class GradeSyncLastRun(Base):
    """Outcome of the most recent finished run for a scope."""

    __tablename__ = "grade_sync_last_runs"

    id = Column(Integer, primary_key=True, index=True)
    scope_key = Column(String(100), unique=True, index=True, nullable=False)

    finished_at = Column(DateTime(timezone=True), nullable=False)
    duration_seconds = Column(Float, default=0.0)
    updated_count = Column(Integer, default=0)
    outcome = Column(SQLEnum(RunOutcome), nullable=False)
    message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    # CSV retry/failure summary offered to the user
    summary_csv = Column(Text, nullable=True)

    # Kept across later failed or cancelled runs for display
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_success_duration_seconds = Column(Float, nullable=True)
    last_success_count = Column(Integer, nullable=True)

    @property
    def has_summary(self) -> bool:
        return self.summary_csv is not None
