"""
Error taxonomy for the Guardian governance engine.

Every error carries a human-readable message plus a details dict so that
callers can log it with structured context.

- ValidationError: malformed policy spec, terminal for that generation
- TransientApiError: conflict, timeout or connectivity failure, retried
- NotFoundError: the object no longer exists in the cluster API
- EvaluationTimeout: admission decision exceeded its deadline
- AggregationError: one cluster could not be polled
- ConfigurationError: invalid settings or cluster list
"""

from __future__ import annotations

from typing import Any


class GuardianError(Exception):
    """Base exception for Guardian errors."""

    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(GuardianError):
    """Raised for configuration-related errors."""


class ValidationError(GuardianError):
    """Raised when a policy spec is malformed."""

    def __init__(self, message: str, problems: list[str] | None = None, **details: Any):
        super().__init__(message, details)
        self.problems = problems or []


class TransientApiError(GuardianError):
    """Raised when a cluster API call failed in a way worth retrying."""

    retryable = True


class ConflictError(TransientApiError):
    """Raised when a write lost a concurrent-modification race."""


class ApiTimeoutError(TransientApiError):
    """Raised when a cluster API call timed out."""


class NotFoundError(GuardianError):
    """Raised when the target object no longer exists."""


class EvaluationTimeout(GuardianError):
    """Raised when an admission decision could not finish before its deadline."""


class AggregationError(GuardianError):
    """Raised when polling a single cluster fails."""

    def __init__(self, cluster_id: str, message: str):
        super().__init__(message, {"cluster_id": cluster_id})
        self.cluster_id = cluster_id


def format_error_message(error: GuardianError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
