"""
enrichment_engine - credential-rotating batch enrichment.

Reads records, calls a rate-limited external provider under a pool of
rotating credentials, and appends one durable result row per record so an
interrupted run can resume without duplicates.
"""

from .errors import (
    AuthFailed,
    EnrichmentError,
    ErrorKind,
    PermanentError,
    PoolExhausted,
    RateLimited,
    RecordNotFound,
    RunAborted,
    SinkWriteFailed,
    TransientError,
    ValidationError,
)
from .coordinator import (
    BackoffPolicy,
    Credential,
    CredentialPool,
    CsvResultSink,
    EnrichmentResult,
    Orchestrator,
    Record,
    ResumeLedger,
    RunReport,
    RunStatus,
)

__version__ = "0.1.0"

__all__ = [
    "AuthFailed",
    "EnrichmentError",
    "ErrorKind",
    "PermanentError",
    "PoolExhausted",
    "RateLimited",
    "RecordNotFound",
    "RunAborted",
    "SinkWriteFailed",
    "TransientError",
    "ValidationError",
    "BackoffPolicy",
    "Credential",
    "CredentialPool",
    "CsvResultSink",
    "EnrichmentResult",
    "Orchestrator",
    "Record",
    "ResumeLedger",
    "RunReport",
    "RunStatus",
]
