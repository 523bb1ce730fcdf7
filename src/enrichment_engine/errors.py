"""
Custom exceptions for the enrichment engine.

Provider adapters raise the record-level errors below; the worker classifies
them into retry, credential rotation or a terminal error row. The run-level
errors abort the whole run.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .coordinator.orchestrator import RunReport


class ErrorKind(str, Enum):
    """Classification of a failed provider call."""

    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class EnrichmentError(Exception):
    """Base error for the enrichment engine."""

    kind: ErrorKind = ErrorKind.UNKNOWN


# --- record-level (raised by providers) ---


class ValidationError(EnrichmentError):
    """Bad input record. Skipped, logged, never retried."""

    kind = ErrorKind.VALIDATION


class RateLimited(EnrichmentError):
    """Provider backpressure (HTTP 429 and friends)."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AuthFailed(EnrichmentError):
    """Credential rejected by the provider (bad, expired, out of quota)."""

    kind = ErrorKind.AUTH_FAILED


class TransientError(EnrichmentError):
    """Network errors, timeouts and 5xx responses."""

    kind = ErrorKind.TRANSIENT


class PermanentError(EnrichmentError):
    """Request the provider will never accept (malformed input, 4xx validation)."""

    kind = ErrorKind.PERMANENT


class RecordNotFound(PermanentError):
    """Provider has no such resource. Recorded as not_found, not as an error."""

    kind = ErrorKind.NOT_FOUND


# --- run-level (fatal) ---


class PoolExhausted(EnrichmentError):
    """Every credential is banned and none can recover during this run."""


class SinkWriteFailed(EnrichmentError):
    """Output could not be written durably."""


class RunAborted(EnrichmentError):
    """Run stopped by a fatal error. Carries the partial run report."""

    def __init__(self, message: str, report: "RunReport"):
        super().__init__(message)
        self.report = report


_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "429")
_AUTH_HINTS = ("authentication token is not valid", "not authorized", "unauthorized", "401")
_TRANSIENT_HINTS = ("timeout", "timed out", "temporar", "connection reset", "unavailable")


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map any exception raised by a provider call to an ErrorKind.

    Typed engine errors keep their own kind. Everything else is classified by
    type (timeouts, connection errors) and then by message text.
    """
    if isinstance(exc, EnrichmentError):
        return exc.kind
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    msg = str(exc).lower()
    if any(h in msg for h in _RATE_LIMIT_HINTS):
        return ErrorKind.RATE_LIMITED
    if any(h in msg for h in _AUTH_HINTS):
        return ErrorKind.AUTH_FAILED
    if any(h in msg for h in _TRANSIENT_HINTS):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
