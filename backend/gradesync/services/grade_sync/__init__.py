"""
Grade Synchronization Engine

Components:
- Average computation from outcome rollups
- Per-record writes with retry and a deferred second pass
- Bulk job submission and progress polling
- Read-back verification against eventually consistent rollups
- Detached grade override propagation
- Persisted, leased run state driving a resumable state machine
"""

from .average_calculator import compute_score_deltas, round2
from .bulk_submitter import BulkJobSubmitter
from .job_poller import JobPoller
from .orchestrator import UpdateOrchestrator
from .override_propagator import EnrollmentResolver, OverridePropagator
from .record_writer import RecordWriter, write_per_record
from .run_store import RunStore, scope_key_for_course
from .verifier import Verifier, VerificationResult

__all__ = [
    "compute_score_deltas",
    "round2",
    "BulkJobSubmitter",
    "JobPoller",
    "UpdateOrchestrator",
    "EnrollmentResolver",
    "OverridePropagator",
    "RecordWriter",
    "write_per_record",
    "RunStore",
    "scope_key_for_course",
    "Verifier",
    "VerificationResult"
]
