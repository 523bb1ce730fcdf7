from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from ..metrics.registry import CREDENTIALS, RECORD_RETRIES_TOTAL, RECORDS_TOTAL
from .types import CredentialState, EnrichmentResult, ResultStatus


@dataclass(frozen=True)
class MetricsSnapshot:
    """Read-only view of RunMetrics at one point in time."""

    total: int
    processed: int
    succeeded: int
    not_found: int
    failed: int
    skipped: int
    retries: int
    active_credentials: int
    cooling_credentials: int
    banned_credentials: int
    in_flight: int
    elapsed_sec: float

    @property
    def accounted(self) -> int:
        """Records with a final outcome (succeeded + failed + skipped)."""
        return self.succeeded + self.failed + self.skipped

    @property
    def pending(self) -> int:
        return max(0, self.total - self.accounted)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["pending"] = self.pending
        return d


class RunMetrics:
    """Run counters. Counters only grow; mutate through the record_* methods.

    ``succeeded`` includes not_found rows: the lookup completed, the provider
    simply had nothing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._total = 0
        self._processed = 0
        self._succeeded = 0
        self._not_found = 0
        self._failed = 0
        self._skipped = 0
        self._retries = 0
        self._credentials: Dict[CredentialState, int] = {s: 0 for s in CredentialState}
        self._in_flight = 0

    def record_read(self, n: int = 1) -> None:
        with self._lock:
            self._total += n

    def record_skipped(self, n: int = 1) -> None:
        with self._lock:
            self._skipped += n
        RECORDS_TOTAL.labels(outcome="skipped").inc(n)

    def record_retry(self, error_kind: str) -> None:
        with self._lock:
            self._retries += 1
        RECORD_RETRIES_TOTAL.labels(error_kind=error_kind).inc()

    def record_result(self, result: EnrichmentResult) -> None:
        with self._lock:
            self._processed += 1
            if result.status is ResultStatus.ERROR:
                self._failed += 1
            else:
                self._succeeded += 1
                if result.status is ResultStatus.NOT_FOUND:
                    self._not_found += 1
        RECORDS_TOTAL.labels(outcome=result.status.value).inc()

    def set_credentials(self, counts: Mapping[CredentialState, int]) -> None:
        with self._lock:
            for state in CredentialState:
                self._credentials[state] = counts.get(state, 0)
        for state in CredentialState:
            CREDENTIALS.labels(state=state.value).set(counts.get(state, 0))

    def set_in_flight(self, n: int) -> None:
        with self._lock:
            self._in_flight = n

    def snapshot(self, now: Optional[float] = None) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                total=self._total,
                processed=self._processed,
                succeeded=self._succeeded,
                not_found=self._not_found,
                failed=self._failed,
                skipped=self._skipped,
                retries=self._retries,
                active_credentials=self._credentials[CredentialState.ACTIVE],
                cooling_credentials=self._credentials[CredentialState.COOLING],
                banned_credentials=self._credentials[CredentialState.BANNED],
                in_flight=self._in_flight,
                elapsed_sec=round((now or time.monotonic()) - self._started, 3),
            )
