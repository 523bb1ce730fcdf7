from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional

from ..errors import ErrorKind

RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT, ErrorKind.UNKNOWN})


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter.

    delay = min(cap, base * 2**attempt) * uniform(0.5, 1.0)

    ``attempt`` is the 0-based index of the attempt that just failed, so the
    first retry waits about ``base_ms``. ``None`` means stop retrying.
    """

    max_attempts: int = 5
    base_ms: int = 750
    cap_ms: int = 15_000
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_ms < 0 or self.cap_ms < 0:
            raise ValueError("backoff base/cap must be >= 0")

    def base_delay_ms(self, attempt: int) -> float:
        """Delay before jitter; monotonic in attempt up to the cap."""
        return float(min(self.cap_ms, self.base_ms * (2 ** max(0, attempt))))

    def _seconds(self, attempt: int) -> float:
        delay_ms = self.base_delay_ms(attempt)
        if self.jitter:
            delay_ms *= self.rng.uniform(0.5, 1.0)
        return delay_ms / 1000.0

    def next_delay(self, attempt: int, kind: ErrorKind) -> Optional[float]:
        """Seconds to sleep before the next attempt, or None to stop."""
        if kind not in RETRYABLE_KINDS:
            return None
        if attempt + 1 >= self.max_attempts:
            return None
        return self._seconds(attempt)

    def cooldown(self, strikes: int) -> float:
        """Credential cooldown after ``strikes`` rate limits without recovering."""
        return self._seconds(max(0, strikes - 1))
