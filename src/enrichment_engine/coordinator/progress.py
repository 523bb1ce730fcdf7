"""
Progress feedback for a run.

In-process pub/sub for periodic RunMetrics snapshots. Subscribers (a CLI
printing JSON status lines, a UI, a test) receive immutable ProgressEvents;
the engine itself never formats human-readable output.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from loguru import logger

from .metrics import MetricsSnapshot


class RunPhase(str, Enum):
    """Lifecycle phase reported with each progress event."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    DONE = "done"
    INTERRUPTED = "interrupted"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """Immutable progress event.

    Attributes:
        run_id: Identifies the run (defaults to the output file name)
        phase: Lifecycle phase
        metrics: Snapshot of the run counters
        reason: Optional context (e.g., "stop flag", "PoolExhausted")
    """

    run_id: str
    phase: RunPhase
    metrics: MetricsSnapshot
    reason: Optional[str] = None

    @property
    def completion(self) -> float:
        """Share of read records with a final outcome (0.0 to 1.0)."""
        total = self.metrics.total
        return self.metrics.accounted / total if total > 0 else 0.0

    def to_status_line(self) -> Dict[str, Any]:
        """``{"type": "status", ...}`` payload for external UIs."""
        payload: Dict[str, Any] = {
            "type": "status",
            "status": self.phase.value,
            "run_id": self.run_id,
            "metrics": self.metrics.to_dict(),
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload


class ProgressSubscriber(Protocol):
    """Async callable accepting a ProgressEvent.

    Exceptions are caught and logged so one subscriber cannot break a run.
    """

    async def __call__(self, event: ProgressEvent) -> None:
        ...


class ProgressBus:
    """In-process pub/sub bus for progress events, with error isolation."""

    def __init__(self) -> None:
        self._subs: list[ProgressSubscriber] = []

    def subscribe(self, callback: ProgressSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Progress subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: ProgressSubscriber) -> None:
        """No-op if callback not found."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Progress subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: ProgressEvent) -> None:
        """Deliver ``event`` to all subscribers in registration order (best effort)."""
        if not self._subs:
            return

        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.debug(f"Progress subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
