"""
Error taxonomy for the feedback pipeline.

Retry decisions never inspect exception classes directly. Every failure is
reduced to an ErrorKind and looked up in ERROR_POLICIES, which says whether
the job may be retried and which dead-letter category it belongs to.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Normalized failure kinds."""

    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    CIRCUIT_OPEN = "circuit_open"
    AUTHENTICATION_FAILED = "authentication_failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class FailureCategory(str, Enum):
    """Dead-letter categories."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    SERVICE_ERROR = "service_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorPolicy:
    """Retry behaviour and dead-letter category for one ErrorKind."""

    retryable: bool
    category: FailureCategory


ERROR_POLICIES: dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorPolicy(True, FailureCategory.RATE_LIMIT),
    ErrorKind.SERVICE_UNAVAILABLE: ErrorPolicy(True, FailureCategory.SERVICE_ERROR),
    ErrorKind.TIMEOUT: ErrorPolicy(True, FailureCategory.TIMEOUT),
    ErrorKind.NETWORK_ERROR: ErrorPolicy(True, FailureCategory.SERVICE_ERROR),
    ErrorKind.CIRCUIT_OPEN: ErrorPolicy(True, FailureCategory.SERVICE_ERROR),
    ErrorKind.AUTHENTICATION_FAILED: ErrorPolicy(False, FailureCategory.AUTH_ERROR),
    ErrorKind.QUOTA_EXCEEDED: ErrorPolicy(False, FailureCategory.RATE_LIMIT),
    ErrorKind.VALIDATION_ERROR: ErrorPolicy(False, FailureCategory.VALIDATION_ERROR),
    ErrorKind.NOT_FOUND: ErrorPolicy(False, FailureCategory.VALIDATION_ERROR),
    ErrorKind.UNKNOWN: ErrorPolicy(True, FailureCategory.UNKNOWN),
}


def policy_for(kind: ErrorKind) -> ErrorPolicy:
    """Return the retry policy for an error kind."""
    return ERROR_POLICIES.get(kind, ERROR_POLICIES[ErrorKind.UNKNOWN])


@dataclass(frozen=True)
class JobError:
    """Failure half of a Result."""

    kind: ErrorKind
    message: str
    retry_after: float | None = None
    details: dict[str, Any] | None = None

    @property
    def retryable(self) -> bool:
        return policy_for(self.kind).retryable

    @property
    def category(self) -> FailureCategory:
        return policy_for(self.kind).category


@dataclass(frozen=True)
class Result(Generic[T]):
    """Explicit success/failure value returned by job handlers."""

    value: T | None = None
    error: JobError | None = None

    @property
    def ok(self) -> bool:
        """Return True when no error is present."""
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> Result[T]:
        return cls(error=JobError(kind, message, retry_after, details))

    @classmethod
    def from_exception(cls, exc: BaseException) -> Result[T]:
        kind = classify_exception(exc)
        retry_after = getattr(exc, "retry_after", None)
        return cls(error=JobError(kind, str(exc) or type(exc).__name__, retry_after))


# ========================================
# Exceptions
# ========================================


class LearnLoopError(Exception):
    """Base class for pipeline errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class AiGatewayError(LearnLoopError):
    """Typed failure from the AI gateway."""

    def __init__(
        self,
        message: str,
        error_type: str | None = None,
        provider: str | None = None,
        retry_after: float | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.retry_after = retry_after
        self.error_code = error_code

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        try:
            return ErrorKind(self.error_type)
        except ValueError:
            return ErrorKind.UNKNOWN

    @property
    def retryable(self) -> bool:
        return policy_for(self.kind).retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "error_type": self.error_type,
            "provider": self.provider,
            "retry_after": self.retry_after,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }


class CircuitOpenError(LearnLoopError):
    """Raised without calling the dependency while its breaker is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, retry_after: float | None = None):
        super().__init__(f"Circuit '{name}' is open")
        self.name = name
        self.retry_after = retry_after


class EntityNotFoundError(LearnLoopError):
    kind = ErrorKind.NOT_FOUND


class EmbeddingReferenceError(LearnLoopError):
    """Embedding points at a row that does not exist for its declared type."""

    kind = ErrorKind.VALIDATION_ERROR


class FeedbackValidationError(LearnLoopError, ValueError):
    kind = ErrorKind.VALIDATION_ERROR


def classify_exception(exc: BaseException) -> ErrorKind:
    """Reduce any exception to an ErrorKind."""
    if isinstance(exc, LearnLoopError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.UNKNOWN
