"""Enrichment coordinator

Record source -> queue -> worker -> sink pipeline with:
- CredentialPool (least-recently-used rotation, cooling, bans, credit caps)
- RequestGovernor (global + per-credential in-flight bounds, pacing)
- BackoffPolicy with jitter
- ResumeLedger (append-only JSONL journal of finished keys)
- CsvResultSink (append-only, durable rows)
- Orchestrator supervision, graceful shutdown and progress events
"""

from .types import (
    Credential,
    CredentialState,
    EnrichmentResult,
    Outcome,
    Provider,
    Record,
    RecordSource,
    ResultStatus,
)
from .policy import BackoffPolicy, RETRYABLE_KINDS
from .credentials import CredentialPool
from .governor import RequestGovernor, Ticket
from .ledger import ResumeLedger
from .queue import BoundedQueue
from .sink import ResultSink, CsvResultSink
from .metrics import MetricsSnapshot, RunMetrics
from .progress import ProgressBus, ProgressEvent, RunPhase
from .worker import EnrichmentWorker
from .orchestrator import EngineHealth, Orchestrator, RunReport, RunStatus

__all__ = [
    # types
    "Credential",
    "CredentialState",
    "EnrichmentResult",
    "Outcome",
    "Provider",
    "Record",
    "RecordSource",
    "ResultStatus",
    "MetricsSnapshot",
    "ProgressEvent",
    "RunPhase",
    "RunReport",
    "RunStatus",
    "EngineHealth",
    # policies
    "BackoffPolicy",
    "RETRYABLE_KINDS",
    "CredentialPool",
    "RequestGovernor",
    "Ticket",
    # runtime
    "BoundedQueue",
    "EnrichmentWorker",
    "Orchestrator",
    "ProgressBus",
    "RunMetrics",
    # persistence
    "ResumeLedger",
    "ResultSink",
    "CsvResultSink",
]
