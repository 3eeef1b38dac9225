"""
Error taxonomy, logging and retry utilities for grade synchronization.
"""

import asyncio
import logging
import random
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Callable, Union, Awaitable


# Grade sync specific logger
sync_logger = logging.getLogger('grade_sync')


class ErrorSeverity:
    """Error severity levels for grade sync operations."""
    LOW = "low"           # Absorbed locally, summarized at the end of a run
    MEDIUM = "medium"     # Single record or request failed
    HIGH = "high"         # Run aborted
    CRITICAL = "critical" # Engine cannot operate at all


class ErrorCategory:
    """Error categories for better classification."""
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    REMOTE_API = "remote_api"
    SUBMISSION = "submission"
    JOB_FAILED = "job_failed"
    TIMEOUT = "timeout"
    PROPAGATION = "propagation"
    PREREQUISITE = "prerequisite"
    CANCELLED = "cancelled"
    STATE = "state"
    UNKNOWN = "unknown"


class GradeSyncError(Exception):
    """Base exception for grade sync errors with enhanced metadata."""

    def __init__(
        self,
        message: str,
        category: str = ErrorCategory.UNKNOWN,
        severity: str = ErrorSeverity.MEDIUM,
        scope_key: Optional[str] = None,
        operation_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.scope_key = scope_key
        self.operation_type = operation_type
        self.details = details or {}
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'message': self.message,
            'category': self.category,
            'severity': self.severity,
            'scope_key': self.scope_key,
            'operation_type': self.operation_type,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
            'error_type': type(self).__name__,
        }


class CanvasAPIError(GradeSyncError):
    """Non-success response from the Canvas API."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "", **kwargs):
        details = kwargs.pop('details', {})
        details.update({'status': status, 'body': body})
        super().__init__(
            message,
            category=ErrorCategory.REMOTE_API,
            severity=ErrorSeverity.MEDIUM,
            retryable=status is None or status >= 500 or status == 429,
            details=details,
            **kwargs
        )
        self.status = status
        self.body = body


class AuthenticationError(GradeSyncError):
    """No usable session token for mutating requests."""

    def __init__(self, message: str = "Canvas API token is missing", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.AUTHENTICATION,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            **kwargs
        )


class SubmissionError(GradeSyncError):
    """The bulk job could not be created."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.SUBMISSION,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


class BulkJobFailedError(GradeSyncError):
    """The remote bulk job reached the failed terminal state."""

    def __init__(self, message: str = "Bulk update failed.", **kwargs):
        # Writes are idempotent so a fresh run is always safe
        super().__init__(
            message,
            category=ErrorCategory.JOB_FAILED,
            severity=ErrorSeverity.HIGH,
            retryable=True,
            **kwargs
        )


class PollTimeoutError(GradeSyncError):
    """The bulk job did not finish inside the polling budget."""

    def __init__(self, message: str, timeout_seconds: float, **kwargs):
        details = kwargs.pop('details', {})
        details['timeout_seconds'] = timeout_seconds
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.HIGH,
            retryable=True,
            details=details,
            **kwargs
        )
        self.timeout_seconds = timeout_seconds


class PrerequisiteDeclinedError(GradeSyncError):
    """A required one-time setup object is missing and was not provisioned."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PREREQUISITE,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


class RunCancelledError(GradeSyncError):
    """The run state was cleared while the run was active."""

    def __init__(self, message: str = "Run state was cleared", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.LOW,
            retryable=False,
            **kwargs
        )


class RunInProgressError(GradeSyncError):
    """Another owner holds a live lease on the run scope."""

    def __init__(self, message: str, owner: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            details={'owner': owner},
            **kwargs
        )
        self.owner = owner


class InvalidTransitionError(GradeSyncError):
    """A state transition not present in the transition table."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            retryable=False,
            **kwargs
        )


class RunStateCorruptError(GradeSyncError):
    """A persisted run state failed schema validation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


def get_user_friendly_message(error: Exception) -> str:
    """Single terminal message shown to the user for a failed run."""
    if isinstance(error, (PrerequisiteDeclinedError, RunCancelledError)):
        return f"Update cancelled: {error.message}"

    if isinstance(error, PollTimeoutError):
        return (
            "Bulk update is taking longer than expected. The update may still complete; "
            "try updating again in a few minutes. Writes are idempotent, so nothing is duplicated."
        )

    if isinstance(error, BulkJobFailedError):
        return "Bulk update failed. It is safe to start a new update."

    if isinstance(error, AuthenticationError):
        return "You are not signed in to Canvas. Please sign in and try again."

    if isinstance(error, CanvasAPIError):
        if error.status in (401, 403):
            return "You don't have permission to perform this action."
        if error.status == 404:
            return "The requested resource was not found."
        if error.status is not None and error.status >= 500:
            return "Canvas server error. Please try again later."

    if isinstance(error, GradeSyncError):
        return error.message

    return f"An unexpected error occurred: {error}"


class SyncErrorHandler:
    """Central error handler for grade sync operations."""

    def __init__(self, max_log_entries: int = 1000):
        self._error_log: List[Dict[str, Any]] = []
        self._max_log_entries = max_log_entries

    def log_error(
        self,
        error: Union[GradeSyncError, Exception],
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Log an error with full context.

        Args:
            error: The error to log
            context: Additional context information

        Returns:
            The stored error record
        """
        if isinstance(error, GradeSyncError):
            error_dict = error.to_dict()
        else:
            error_dict = {
                'message': str(error),
                'category': ErrorCategory.UNKNOWN,
                'severity': ErrorSeverity.MEDIUM,
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'error_type': type(error).__name__,
                'traceback': traceback.format_exception_only(type(error), error)[-1].strip()
            }

        if context:
            error_dict.update(context)

        severity = error_dict.get('severity', ErrorSeverity.MEDIUM)
        log_message = f"Grade sync error [{severity.upper()}]: {error_dict['message']}"

        if severity == ErrorSeverity.CRITICAL:
            sync_logger.critical(log_message)
        elif severity == ErrorSeverity.HIGH:
            sync_logger.error(log_message)
        elif severity == ErrorSeverity.MEDIUM:
            sync_logger.warning(log_message)
        else:
            sync_logger.info(log_message)

        self._error_log.append(error_dict)
        if len(self._error_log) > self._max_log_entries:
            self._error_log.pop(0)

        return error_dict

    def get_recent_errors(
        self,
        limit: int = 50,
        severity_filter: Optional[str] = None,
        category_filter: Optional[str] = None,
        scope_filter: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get recent errors with optional filtering."""
        filtered_errors = self._error_log.copy()

        if severity_filter:
            filtered_errors = [e for e in filtered_errors if e.get('severity') == severity_filter]

        if category_filter:
            filtered_errors = [e for e in filtered_errors if e.get('category') == category_filter]

        if scope_filter:
            filtered_errors = [e for e in filtered_errors if e.get('scope_key') == scope_filter]

        return filtered_errors[-limit:]


# Retry mechanism with exponential backoff
class RetryConfig:
    """Configuration for retry attempts."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        if self.base_delay <= 0:
            return 0.0

        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

        # Add jitter to avoid thundering herd
        if self.jitter:
            delay *= (0.5 + random.random())

        return delay


@dataclass
class AttemptOutcome:
    """Result of running an operation under a retry policy."""
    succeeded: bool
    attempts: int
    result: Any = None
    error: Optional[Exception] = None


async def attempt_with_retry(
    func: Callable[..., Awaitable[Any]],
    retry_config: RetryConfig,
    *args,
    **kwargs
) -> AttemptOutcome:
    """
    Run an async operation up to ``retry_config.max_attempts`` times.

    A failed attempt never aborts the next one; the last error is returned
    instead of raised so the caller decides how to escalate it.
    """
    last_exception: Optional[Exception] = None

    for attempt in range(1, retry_config.max_attempts + 1):
        try:
            result = await func(*args, **kwargs)
            return AttemptOutcome(succeeded=True, attempts=attempt, result=result)

        except asyncio.CancelledError:
            raise

        except Exception as e:
            last_exception = e
            sync_logger.warning(
                f"Attempt {attempt}/{retry_config.max_attempts} failed: {e}"
            )

            if attempt == retry_config.max_attempts:
                break

            delay = retry_config.delay_for(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

    return AttemptOutcome(
        succeeded=False,
        attempts=retry_config.max_attempts,
        error=last_exception
    )


# Global error handler instance
global_error_handler = SyncErrorHandler()
