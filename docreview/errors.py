"""
Error Handling Utilities

Typed exceptions raised by the review engine, plus retry logic with
exponential backoff for calls into persistence and other collaborators.
"""

import time
import random
from typing import Callable, Any, Optional, Type
from dataclasses import dataclass


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ReviewEngineError(Exception):
    """Base exception for review engine errors"""
    pass


class RetryableError(ReviewEngineError):
    """Transient collaborator failure that should be retried"""
    pass


class ConfigValidationError(ReviewEngineError):
    """Workflow or engine configuration is invalid"""

    def __init__(self, errors: list[str], subject: str = "configuration"):
        self.errors = list(errors)
        self.subject = subject
        details = "; ".join(self.errors)
        super().__init__(f"Invalid {subject}: {details}")


class NoEligibleReviewerError(ReviewEngineError):
    """No reviewer qualifies for a stage"""

    def __init__(self, stage_number: int, role: str, session_id: Optional[str] = None):
        self.stage_number = stage_number
        self.role = role
        self.session_id = session_id
        super().__init__(
            f"No eligible reviewer with role '{role}' for stage {stage_number}"
            + (f" of session {session_id}" if session_id else "")
        )


class InvalidStateTransitionError(ReviewEngineError):
    """Operation is not allowed in the session's current status"""

    def __init__(self, session_id: str, status: str, operation: str, reason: str = ""):
        self.session_id = session_id
        self.status = status
        self.operation = operation
        message = f"Cannot {operation} on session {session_id} in status '{status}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidScoreError(ReviewEngineError):
    """Score is missing, NaN, or outside 0..100"""

    def __init__(self, field: str, value: Any):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {value!r} (expected a number in 0..100)")


class ConflictError(ReviewEngineError):
    """Optimistic concurrency violation on save"""

    def __init__(self, session_id: str, expected_version: int, actual_version: Optional[int]):
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Session {session_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class SessionNotFoundError(ReviewEngineError):
    """Session id is unknown to the store"""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class WorkflowNotFoundError(ReviewEngineError):
    """Workflow id or document type has no registered workflow"""
    pass


class ReviewerNotFoundError(ReviewEngineError):
    """Reviewer id is unknown to the directory"""

    def __init__(self, reviewer_id: str):
        self.reviewer_id = reviewer_id
        super().__init__(f"Reviewer not found: {reviewer_id}")


# ============================================================================
# RETRY LOGIC
# ============================================================================

@dataclass
class RetryPolicy:
    """Retry policy configuration"""
    max_attempts: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 5000
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[Type[Exception], ...] = (RetryableError, ConnectionError, TimeoutError)


class RetryHandler:
    """Handles retry logic with exponential backoff and jitter"""

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize retry handler

        Args:
            policy: Retry policy (uses defaults if not provided)
            sleep: Sleep function, replaceable in tests
        """
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute function with retry logic

        Args:
            func: Function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            Exception: Last exception if all retries fail
        """
        last_exception = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except ConflictError:
                # Caller must reload and reapply
                raise
            except self.policy.retryable_exceptions as e:
                last_exception = e

                if attempt == self.policy.max_attempts:
                    break

                delay_ms = self._calculate_delay(attempt)
                self._sleep(delay_ms / 1000.0)

        raise last_exception

    def _calculate_delay(self, attempt: int) -> int:
        """
        Calculate delay for retry attempt

        Args:
            attempt: Attempt number (1-indexed)

        Returns:
            Delay in milliseconds
        """
        delay = self.policy.initial_delay_ms * (self.policy.exponential_base ** (attempt - 1))
        delay = min(delay, self.policy.max_delay_ms)

        if self.policy.jitter:
            # Random jitter between 0% and 25% of delay
            delay = delay + random.uniform(0, delay * 0.25)

        return int(delay)
