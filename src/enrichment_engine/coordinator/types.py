from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, AsyncIterable, Iterable, Mapping, Optional, Protocol, Union

from ..errors import ErrorKind


def _frozen(fields: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(fields or {}))


@dataclass(frozen=True)
class Record:
    """One input unit, identified by its natural key (URL, email, phone, id)."""

    key: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    line: Optional[int] = None
    invalid_reason: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", _frozen(self.fields))

    @property
    def is_valid(self) -> bool:
        return self.invalid_reason is None


class ResultStatus(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class EnrichmentResult:
    """Outcome of enriching one record. Immutable once produced."""

    record_key: str
    status: ResultStatus
    fields: Mapping[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    credential_id: Optional[str] = None
    attempts: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", _frozen(self.fields))

    @classmethod
    def success(cls, record: Record, fields: Optional[Mapping[str, Any]] = None) -> "EnrichmentResult":
        return cls(record_key=record.key, status=ResultStatus.SUCCESS, fields=fields or {})

    @classmethod
    def not_found(cls, record: Record, message: Optional[str] = None) -> "EnrichmentResult":
        return cls(
            record_key=record.key,
            status=ResultStatus.NOT_FOUND,
            error_kind=ErrorKind.NOT_FOUND if message else None,
            error_message=message,
        )

    @classmethod
    def error(cls, record: Record, kind: ErrorKind, message: str) -> "EnrichmentResult":
        return cls(
            record_key=record.key,
            status=ResultStatus.ERROR,
            error_kind=kind,
            error_message=message,
        )

    @property
    def ok(self) -> bool:
        return self.status is not ResultStatus.ERROR


class CredentialState(str, Enum):
    ACTIVE = "active"
    COOLING = "cooling"
    BANNED = "banned"


class Outcome(str, Enum):
    """Credential-level outcome of one provider call."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_error(cls, kind: ErrorKind) -> "Outcome":
        if kind is ErrorKind.RATE_LIMITED:
            return cls.RATE_LIMITED
        if kind is ErrorKind.AUTH_FAILED:
            return cls.AUTH_FAILED
        # the call itself went through; the record was the problem
        if kind in (ErrorKind.NOT_FOUND, ErrorKind.PERMANENT, ErrorKind.VALIDATION):
            return cls.SUCCESS
        return cls.UNKNOWN


@dataclass(eq=False)
class Credential:
    """API key/token plus its health state.

    Owned by CredentialPool: workers read it, only the pool mutates it.
    """

    id: str
    secret: str = field(repr=False)
    credit_cap: Optional[int] = None
    state: CredentialState = CredentialState.ACTIVE
    cooling_until: float = 0.0
    checked_out_at: float = 0.0
    calls_made: int = 0
    credits_used: int = 0
    rate_limit_strikes: int = 0
    leases: int = 0
    reason: str = ""
    last_used_at: Optional[datetime] = None

    @property
    def hint(self) -> str:
        """Masked secret, safe for logs."""
        s = self.secret or ""
        if len(s) <= 8:
            return "*" * len(s)
        return f"{s[:4]}...{s[-4:]}"

    @property
    def calls_remaining(self) -> Optional[int]:
        if self.credit_cap is None:
            return None
        return max(0, self.credit_cap - self.credits_used)


class Provider(Protocol):
    """External enrichment service, called once per record per attempt.

    Raises the record-level errors from ``enrichment_engine.errors`` (or any
    exception, classified by message) on failure.
    """

    async def enrich(self, record: Record, credential: Credential) -> EnrichmentResult:
        ...


RecordSource = Union[Iterable[Record], AsyncIterable[Record]]
