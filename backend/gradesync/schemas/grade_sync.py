"""
Pydantic schemas for grade synchronization runs
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Union
from enum import Enum

from gradesync.integrations.canvas.error_handler import InvalidTransitionError

RUN_STATE_VERSION = 1


class ScoreDelta(BaseModel):
    """A computed (student, new value) pair pending write"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    average: float


class RunPhase(str, Enum):
    """Phases of the update workflow"""
    IDLE = "idle"
    RESUMING = "resuming"
    COMPUTING_AVERAGES = "computing_averages"
    WRITING_PER_RECORD = "writing_per_record"
    SUBMITTING_BULK = "submitting_bulk"
    POLLING = "polling"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStrategy(str, Enum):
    """Write path chosen for a run"""
    PER_RECORD = "per_record"
    BULK = "bulk"


VALID_TRANSITIONS: Dict[RunPhase, List[RunPhase]] = {
    RunPhase.IDLE: [RunPhase.RESUMING, RunPhase.COMPUTING_AVERAGES, RunPhase.FAILED],
    RunPhase.RESUMING: [
        RunPhase.POLLING, RunPhase.VERIFYING, RunPhase.COMPUTING_AVERAGES, RunPhase.FAILED
    ],
    RunPhase.COMPUTING_AVERAGES: [
        RunPhase.WRITING_PER_RECORD, RunPhase.SUBMITTING_BULK, RunPhase.COMPLETED,
        RunPhase.RESUMING, RunPhase.FAILED
    ],
    RunPhase.WRITING_PER_RECORD: [RunPhase.VERIFYING, RunPhase.RESUMING, RunPhase.FAILED],
    RunPhase.SUBMITTING_BULK: [RunPhase.POLLING, RunPhase.RESUMING, RunPhase.FAILED],
    RunPhase.POLLING: [RunPhase.VERIFYING, RunPhase.RESUMING, RunPhase.FAILED],
    RunPhase.VERIFYING: [RunPhase.COMPLETED, RunPhase.RESUMING, RunPhase.FAILED],
    RunPhase.COMPLETED: [],
    RunPhase.FAILED: [],
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(BaseModel):
    """
    Persisted state of one run scope.

    Stored as a single versioned record; every instance is validated, so a
    partially written or inconsistent record can never be loaded.
    """
    model_config = ConfigDict(frozen=True)

    version: int = RUN_STATE_VERSION
    phase: RunPhase = RunPhase.IDLE
    in_progress: bool = False
    start_time: datetime = Field(default_factory=utcnow)
    strategy: Optional[RunStrategy] = None
    job_id: Optional[str] = None
    target_id: Optional[str] = None
    expected_deltas: Optional[List[ScoreDelta]] = None
    verification_pending: bool = False
    job_completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_invariants(self):
        if self.version != RUN_STATE_VERSION:
            raise ValueError(f"Unsupported run state version {self.version}")
        if self.verification_pending and (self.expected_deltas is None or self.target_id is None):
            raise ValueError("verification_pending requires expected_deltas and target_id")
        if self.job_id is not None and self.strategy != RunStrategy.BULK:
            raise ValueError("job_id is only set on the bulk strategy")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.phase in (RunPhase.COMPLETED, RunPhase.FAILED)

    @property
    def awaiting_job(self) -> bool:
        return self.in_progress and self.job_id is not None

    @property
    def awaiting_verification(self) -> bool:
        return self.verification_pending and bool(self.expected_deltas is not None)

    @property
    def is_resumable(self) -> bool:
        return self.awaiting_job or self.awaiting_verification

    def can_transition(self, to_phase: RunPhase) -> bool:
        return to_phase in VALID_TRANSITIONS[self.phase]

    def transition(self, to_phase: RunPhase, **updates: Any) -> "RunState":
        """Return a new validated state in ``to_phase`` with ``updates`` applied."""
        if not self.can_transition(to_phase):
            valid = ", ".join(p.value for p in VALID_TRANSITIONS[self.phase]) or "none"
            raise InvalidTransitionError(
                f"Invalid transition from {self.phase.value} to {to_phase.value}. "
                f"Valid transitions: {valid}"
            )
        return self.update(phase=to_phase, **updates)

    def update(self, **updates: Any) -> "RunState":
        """Return a new validated state with ``updates`` applied (phase unchanged unless given)."""
        data = self.model_dump()
        data.update(updates)
        return RunState.model_validate(data)


class JobState(str, Enum):
    """Remote bulk job workflow states"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class JobHandle(BaseModel):
    """Remote bulk job as observed through polling"""
    id: str
    state: JobState
    updated_at: Optional[str] = None
    completion: Optional[float] = None
    message: Optional[str] = None


class RetryRecord(BaseModel):
    user_id: str
    attempts: int


class FailureRecord(BaseModel):
    user_id: str
    average: float
    error: str


class RunOutcome(str, Enum):
    """Terminal outcome of a run"""
    COMPLETED = "completed"
    NO_CHANGES = "no_changes"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunReport(BaseModel):
    """Summary returned by the orchestrator for a finished run"""
    scope_key: str
    outcome: RunOutcome
    message: str
    updated_count: int = 0
    elapsed_seconds: float = 0.0
    strategy: Optional[RunStrategy] = None
    resumed: bool = False
    retries: List[RetryRecord] = Field(default_factory=list)
    failures: List[FailureRecord] = Field(default_factory=list)
    summary_csv: Optional[str] = None
    verification_attempts: int = 0
    error: Optional[Dict[str, Any]] = None


# Canvas outcome rollup wire format

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class RollupScore(BaseModel):
    model_config = ConfigDict(extra="allow")

    score: Any = None
    title: Optional[str] = None
    links: Dict[str, Any] = Field(default_factory=dict)

    @property
    def outcome_id(self) -> Optional[str]:
        outcome = self.links.get("outcome")
        return None if outcome is None else str(outcome)

    @property
    def is_numeric(self) -> bool:
        return _is_number(self.score)


class StudentRollup(BaseModel):
    model_config = ConfigDict(extra="allow")

    scores: List[RollupScore] = Field(default_factory=list)
    links: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        user = self.links.get("user")
        return None if user is None else str(user)

    def score_for(self, outcome_id: str) -> Optional[RollupScore]:
        for score in self.scores:
            if score.outcome_id == str(outcome_id):
                return score
        return None


class OutcomeRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Union[int, str]
    title: str = ""


class RollupLinked(BaseModel):
    model_config = ConfigDict(extra="allow")

    outcomes: List[OutcomeRef] = Field(default_factory=list)


class RollupSnapshot(BaseModel):
    """A page (or merged set of pages) of ``outcome_rollups``"""
    model_config = ConfigDict(extra="allow")

    rollups: List[StudentRollup] = Field(default_factory=list)
    linked: RollupLinked = Field(default_factory=RollupLinked)

    def outcome_titles(self) -> Dict[str, str]:
        return {str(outcome.id): outcome.title for outcome in self.linked.outcomes}

    def find_outcome(self, title: str) -> Optional[OutcomeRef]:
        for outcome in self.linked.outcomes:
            if outcome.title == title:
                return outcome
        return None

    def find_rollup(self, user_id: str) -> Optional[StudentRollup]:
        for rollup in self.rollups:
            if rollup.user_id == str(user_id):
                return rollup
        return None

    def merge(self, other: "RollupSnapshot") -> "RollupSnapshot":
        known = {str(outcome.id) for outcome in self.linked.outcomes}
        outcomes = list(self.linked.outcomes) + [
            outcome for outcome in other.linked.outcomes if str(outcome.id) not in known
        ]
        return RollupSnapshot(
            rollups=list(self.rollups) + list(other.rollups),
            linked=RollupLinked(outcomes=outcomes)
        )


# API schemas

class LastRunSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    scope_key: str
    finished_at: datetime
    duration_seconds: float
    updated_count: int
    outcome: RunOutcome
    message: Optional[str] = None
    has_summary: bool = False
    last_success_at: Optional[datetime] = None
    last_success_duration_seconds: Optional[float] = None
    last_success_count: Optional[int] = None


class StartRunResponse(BaseModel):
    scope_key: str
    accepted: bool
    resuming: bool = False
    message: str


class RunStatusResponse(BaseModel):
    course_id: str
    scope_key: str
    active: bool
    state: Optional[RunState] = None
    last_run: Optional[LastRunSchema] = None


class CancelRunResponse(BaseModel):
    scope_key: str
    cancelled: bool
    message: str
