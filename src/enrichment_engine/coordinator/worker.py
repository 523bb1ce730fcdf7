from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Optional

from loguru import logger

from ..errors import ErrorKind, TransientError, classify_exception
from ..metrics.registry import IN_FLIGHT, PROVIDER_CALL_LATENCY_MS, PROVIDER_CALLS_TOTAL
from .credentials import CredentialPool
from .governor import RequestGovernor
from .ledger import ResumeLedger
from .metrics import RunMetrics
from .policy import BackoffPolicy
from .queue import BoundedQueue
from .sink import ResultSink
from .types import Credential, EnrichmentResult, Outcome, Provider, Record

STOP = object()  # end-of-input sentinel, one per worker


class WorkerCancelled(Exception):
    """Run cancellation observed at a suspension point."""


class EnrichmentWorker:
    """Pulls records off the shared queue and drives each one to a final row.

    Per record: checkout credential -> governor admission -> provider call ->
    classify. Auth failures rotate to another credential immediately; other
    failures go through the backoff policy. Final rows are appended to the
    sink, then marked in the ledger. PoolExhausted and SinkWriteFailed escape
    the task and abort the run.
    """

    def __init__(
        self,
        worker_id: int,
        *,
        queue: BoundedQueue[Any],
        provider: Provider,
        pool: CredentialPool,
        governor: RequestGovernor,
        sink: ResultSink,
        ledger: ResumeLedger,
        metrics: RunMetrics,
        backoff: Optional[BackoffPolicy] = None,
        cancel: Optional[asyncio.Event] = None,
        call_timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ):
        self.worker_id = worker_id
        self._queue = queue
        self._provider = provider
        self._pool = pool
        self._governor = governor
        self._sink = sink
        self._ledger = ledger
        self._metrics = metrics
        self._backoff = backoff or BackoffPolicy()
        self._cancel = cancel or asyncio.Event()
        self._call_timeout = call_timeout
        self._poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self.current: Optional[str] = None

    # --------------------------- lifecycle

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"enrich-worker-{self.worker_id}")
        return self._task

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Cancel the task outright (in-flight call aborted)."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        logger.debug(f"Worker {self.worker_id} started")
        while not self._cancel.is_set():
            try:
                item = await self._queue.get(timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue
            if item is STOP:
                break
            try:
                await self._handle(item)
            except WorkerCancelled:
                logger.info(f"Worker {self.worker_id} left {item.key} unfinished on cancel")
                break
            finally:
                self.current = None
        logger.debug(f"Worker {self.worker_id} stopped")

    # --------------------------- per record

    async def _handle(self, record: Record) -> None:
        self.current = record.key
        result = await self.process(record)
        if result is None:
            self._metrics.record_skipped()
            return

        await self._sink.append(result)
        await self._ledger.mark_done(
            result.record_key,
            status=result.status.value,
            credential_id=result.credential_id,
        )
        self._metrics.record_result(result)
        logger.debug(
            f"Worker {self.worker_id} • {record.key} • {result.status.value} "
            f"• attempts={result.attempts} • credential={result.credential_id}"
        )

    async def process(self, record: Record) -> Optional[EnrichmentResult]:
        """Enrich one record until it succeeds, stops, or is rejected as invalid.

        Returns None for records the provider rejects as invalid input.
        """
        attempt = 0  # backoff index, does not advance on credential rotation
        calls = 0
        while True:
            if self._cancel.is_set():
                raise WorkerCancelled()

            credential, release = await self._pool.checkout()
            error: Optional[BaseException] = None
            result: Optional[EnrichmentResult] = None
            try:
                async with self._governor.slot(credential):
                    # banned or cooling while this call waited for admission
                    if not self._pool.is_usable(credential):
                        logger.debug(
                            f"Worker {self.worker_id}: credential {credential.id} "
                            f"no longer usable, checking out another"
                        )
                        continue
                    self._track_in_flight()
                    calls += 1
                    t0 = time.perf_counter()
                    try:
                        result = await self._call(record, credential)
                    except Exception as exc:
                        error = exc
                    PROVIDER_CALL_LATENCY_MS.observe((time.perf_counter() - t0) * 1000.0)

                    if error is None and result is not None:
                        kind = None
                        outcome = Outcome.SUCCESS
                    else:
                        kind = classify_exception(error) if error is not None else ErrorKind.UNKNOWN
                        outcome = Outcome.from_error(kind)
                    # report before releasing the slot
                    await self._pool.report_outcome(
                        credential, outcome, retry_after=getattr(error, "retry_after", None)
                    )
            finally:
                release()
                self._track_in_flight()
            PROVIDER_CALLS_TOTAL.labels(outcome=outcome.value).inc()

            if kind is None:
                return replace(
                    result, record_key=record.key, credential_id=credential.id, attempts=calls
                )

            message = (str(error) or type(error).__name__) if error is not None else "empty result"

            if kind is ErrorKind.VALIDATION:
                logger.warning(f"Skipping {record.key}: provider rejected input ({message})")
                return None

            if kind is ErrorKind.NOT_FOUND:
                return replace(
                    EnrichmentResult.not_found(record, message),
                    credential_id=credential.id,
                    attempts=calls,
                )

            if kind is ErrorKind.AUTH_FAILED:
                # credential is banned now; try the same record on another one
                logger.warning(
                    f"Worker {self.worker_id}: credential {credential.id} rejected "
                    f"on {record.key}, rotating"
                )
                continue

            delay = self._backoff.next_delay(attempt, kind)
            if delay is None:
                logger.warning(
                    f"Giving up on {record.key} after {calls} call(s): {kind.value}: {message}"
                )
                return replace(
                    EnrichmentResult.error(record, kind, message),
                    credential_id=credential.id,
                    attempts=calls,
                )

            self._metrics.record_retry(kind.value)
            logger.debug(
                f"Worker {self.worker_id} retry ({kind.value}) • {record.key} in {delay:.2f}s"
            )
            await self._sleep(delay)
            attempt += 1

    async def _call(self, record: Record, credential: Credential) -> EnrichmentResult:
        if not self._call_timeout:
            return await self._provider.enrich(record, credential)
        try:
            return await asyncio.wait_for(
                self._provider.enrich(record, credential), timeout=self._call_timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"provider call timed out after {self._call_timeout:.1f}s"
            ) from exc

    async def _sleep(self, delay: float) -> None:
        """Backoff sleep that wakes early (and raises) on run cancellation."""
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise WorkerCancelled()

    def _track_in_flight(self) -> None:
        n = self._governor.in_flight
        self._metrics.set_in_flight(n)
        IN_FLIGHT.set(n)
