"""Core building blocks shared by every Guardian component."""

from guardian.core.errors import (
    AggregationError,
    ApiTimeoutError,
    ConfigurationError,
    ConflictError,
    EvaluationTimeout,
    GuardianError,
    NotFoundError,
    TransientApiError,
    ValidationError,
    format_error_message,
)

__all__ = [
    "AggregationError",
    "ApiTimeoutError",
    "ConfigurationError",
    "ConflictError",
    "EvaluationTimeout",
    "GuardianError",
    "NotFoundError",
    "TransientApiError",
    "ValidationError",
    "format_error_message",
]
