from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from .types import Credential


@dataclass(frozen=True)
class Ticket:
    """Proof of admission; hand it back to ``release``."""

    credential_id: str
    admitted_at: float


class RequestGovernor:
    """Admission gate for provider calls.

    Enforces a global in-flight ceiling, an optional per-credential in-flight
    cap and an optional global request pacing. ``admit`` suspends the caller
    until every limit allows the call.
    """

    def __init__(
        self,
        concurrency: int,
        *,
        per_credential_limit: int = 1,
        requests_per_second: Optional[float] = None,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if per_credential_limit < 0:
            raise ValueError("per_credential_limit must be >= 0 (0 = unlimited)")
        if requests_per_second is not None and requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")

        self._concurrency = concurrency
        self._per_cred = per_credential_limit
        self._interval = 1.0 / requests_per_second if requests_per_second else 0.0

        self._global = asyncio.Semaphore(concurrency)
        self._gates: Dict[str, asyncio.Semaphore] = {}
        self._pace_lock = asyncio.Lock()
        self._next_slot = 0.0

        self._in_flight = 0
        self._peak = 0
        self._per_cred_in_flight: Dict[str, int] = {}
        self._per_cred_peak: Dict[str, int] = {}

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak

    def peak_for(self, credential_id: str) -> int:
        return self._per_cred_peak.get(credential_id, 0)

    def _gate(self, credential_id: str) -> Optional[asyncio.Semaphore]:
        if not self._per_cred:
            return None
        gate = self._gates.get(credential_id)
        if gate is None:
            gate = self._gates[credential_id] = asyncio.Semaphore(self._per_cred)
        return gate

    async def admit(self, credential: Credential) -> Ticket:
        # per-credential gate first so a waiting call does not hold a global slot
        gate = self._gate(credential.id)
        if gate is not None:
            await gate.acquire()
        try:
            await self._global.acquire()
        except BaseException:
            if gate is not None:
                gate.release()
            raise

        try:
            await self._pace()
        except BaseException:
            self._global.release()
            if gate is not None:
                gate.release()
            raise

        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)
        n = self._per_cred_in_flight.get(credential.id, 0) + 1
        self._per_cred_in_flight[credential.id] = n
        self._per_cred_peak[credential.id] = max(self._per_cred_peak.get(credential.id, 0), n)
        return Ticket(credential_id=credential.id, admitted_at=time.monotonic())

    def release(self, ticket: Ticket) -> None:
        self._in_flight -= 1
        self._per_cred_in_flight[ticket.credential_id] -= 1
        self._global.release()
        gate = self._gates.get(ticket.credential_id)
        if gate is not None:
            gate.release()

    @asynccontextmanager
    async def slot(self, credential: Credential) -> AsyncIterator[Ticket]:
        ticket = await self.admit(credential)
        try:
            yield ticket
        finally:
            self.release(ticket)

    async def _pace(self) -> None:
        if not self._interval:
            return
        async with self._pace_lock:
            now = time.monotonic()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self._interval
        if wait > 0:
            await asyncio.sleep(wait)
