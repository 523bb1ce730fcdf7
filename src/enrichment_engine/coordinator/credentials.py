"""
Credential pool with least-recently-used rotation and per-credential health.

Health state machine::

    active --rate_limited--> cooling(until) --cooldown elapsed--> active
    cooling --rate_limited (ban_threshold strikes before recovering)--> banned
    active --auth_failed | credit cap reached--> banned

Cooling credentials are reactivated lazily on the next checkout, which also
clears their rate-limit strikes. Banned is final for the run.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..errors import PoolExhausted
from .policy import BackoffPolicy
from .types import Credential, CredentialState, Outcome

ReleaseFn = Callable[[], None]
Clock = Callable[[], float]

REASON_AUTH = "authentication failed"
REASON_PRECHECK = "precheck failed"
REASON_CREDITS = "credit cap reached"


class CredentialPool:
    """Owns the credentials and every change to their health state."""

    def __init__(
        self,
        credentials: Iterable[Credential],
        *,
        backoff: Optional[BackoffPolicy] = None,
        ban_threshold: int = 3,
        clock: Clock = time.monotonic,
    ):
        self._creds: List[Credential] = list(credentials)
        if not self._creds:
            raise ValueError("credential pool needs at least one credential")
        ids = [c.id for c in self._creds]
        if len(set(ids)) != len(ids):
            raise ValueError("credential ids must be unique")
        if ban_threshold < 1:
            raise ValueError("ban_threshold must be >= 1")

        self._by_id: Dict[str, Credential] = {c.id: c for c in self._creds}
        self._backoff = backoff or BackoffPolicy()
        self._ban_threshold = ban_threshold
        self._clock = clock
        self._cond = asyncio.Condition()
        # checkout sequence per credential id, drives LRU order
        self._seq = 0
        self._lru: Dict[str, int] = {c.id: 0 for c in self._creds}

    def __len__(self) -> int:
        return len(self._creds)

    def get(self, credential_id: str) -> Credential:
        return self._by_id[credential_id]

    @property
    def credentials(self) -> Tuple[Credential, ...]:
        return tuple(self._creds)

    # --------------------------- checkout

    async def checkout(self) -> Tuple[Credential, ReleaseFn]:
        """Lease the least-recently-used active credential.

        Suspends while every usable credential is cooling. Raises
        PoolExhausted once all of them are banned.
        """
        async with self._cond:
            while True:
                now = self._clock()
                self._reactivate_expired(now)

                cred = self._pick()
                if cred is not None:
                    cred.leases += 1
                    cred.checked_out_at = now
                    self._seq += 1
                    self._lru[cred.id] = self._seq
                    return cred, self._release_fn(cred)

                cooling = [c for c in self._creds if c.state is CredentialState.COOLING]
                if not cooling:
                    raise PoolExhausted(
                        f"all {len(self._creds)} credentials are banned: "
                        + ", ".join(f"{c.id}={c.reason or 'banned'}" for c in self._creds)
                    )

                wake_in = max(0.0, min(c.cooling_until for c in cooling) - now)
                logger.debug(f"No active credential, waiting {wake_in:.2f}s for cooldown")
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wake_in)
                except asyncio.TimeoutError:
                    pass

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Credential]:
        cred, release = await self.checkout()
        try:
            yield cred
        finally:
            release()

    def _pick(self) -> Optional[Credential]:
        candidates = [
            c
            for c in self._creds
            if c.state is CredentialState.ACTIVE and c.calls_remaining != 0
        ]
        if not candidates:
            return None
        # idle credentials first, then least recently used; list order breaks ties
        return min(candidates, key=lambda c: (c.leases, self._lru[c.id]))

    def is_usable(self, credential: Credential) -> bool:
        """True while the credential may still carry a new provider call."""
        cred = self._by_id[credential.id]
        return cred.state is CredentialState.ACTIVE and cred.calls_remaining != 0

    def _release_fn(self, cred: Credential) -> ReleaseFn:
        released = False

        def release() -> None:
            nonlocal released
            if not released:
                released = True
                cred.leases -= 1

        return release

    def _reactivate_expired(self, now: float) -> None:
        for c in self._creds:
            if c.state is CredentialState.COOLING and c.cooling_until <= now:
                c.state = CredentialState.ACTIVE
                c.cooling_until = 0.0
                c.rate_limit_strikes = 0
                logger.info(f"Credential {c.id} back to active after cooldown")

    # --------------------------- outcomes

    async def report_outcome(
        self,
        credential: Credential,
        outcome: Outcome,
        *,
        retry_after: Optional[float] = None,
    ) -> CredentialState:
        """Apply the outcome of one provider call to the credential's health."""
        async with self._cond:
            cred = self._by_id[credential.id]
            cred.calls_made += 1
            cred.last_used_at = datetime.now(timezone.utc)

            if outcome is Outcome.SUCCESS:
                cred.rate_limit_strikes = 0
                cred.credits_used += 1
                if cred.calls_remaining == 0:
                    self._ban(cred, REASON_CREDITS)

            elif outcome is Outcome.RATE_LIMITED:
                cred.rate_limit_strikes += 1
                if cred.rate_limit_strikes >= self._ban_threshold:
                    self._ban(
                        cred, f"rate limited {cred.rate_limit_strikes} times before recovering"
                    )
                elif cred.state is not CredentialState.BANNED:
                    delay = (
                        retry_after
                        if retry_after is not None
                        else self._backoff.cooldown(cred.rate_limit_strikes)
                    )
                    cred.state = CredentialState.COOLING
                    cred.cooling_until = max(cred.cooling_until, self._clock() + delay)
                    logger.warning(f"Credential {cred.id} rate limited, cooling for {delay:.2f}s")

            elif outcome is Outcome.AUTH_FAILED:
                self._ban(cred, REASON_AUTH)

            self._cond.notify_all()
            return cred.state

    async def ban(self, credential: Credential, reason: str) -> None:
        async with self._cond:
            self._ban(self._by_id[credential.id], reason)
            self._cond.notify_all()

    def _ban(self, cred: Credential, reason: str) -> None:
        if cred.state is CredentialState.BANNED:
            return
        cred.state = CredentialState.BANNED
        cred.cooling_until = 0.0
        cred.reason = reason
        logger.warning(f"Credential {cred.id} ({cred.hint}) banned: {reason}")

    async def precheck(self, verify: Callable[[Credential], Awaitable[bool]]) -> int:
        """Ban every credential ``verify`` rejects. Returns how many passed."""
        passed = 0
        for cred in self._creds:
            if cred.state is CredentialState.BANNED:
                continue
            try:
                ok = await verify(cred)
            except Exception as exc:
                logger.warning(f"Credential {cred.id} precheck raised {type(exc).__name__}: {exc}")
                ok = False
            if ok:
                passed += 1
                logger.debug(f"Credential {cred.id} precheck ok")
            else:
                await self.ban(cred, REASON_PRECHECK)
        return passed

    # --------------------------- views

    def counts(self) -> Dict[CredentialState, int]:
        self._reactivate_expired(self._clock())
        out = {s: 0 for s in CredentialState}
        for c in self._creds:
            out[c.state] += 1
        return out

    def usage(self) -> Dict[str, int]:
        """Calls made per credential id."""
        return {c.id: c.calls_made for c in self._creds}
