from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Set

from loguru import logger

from ..errors import RunAborted, SinkWriteFailed
from .credentials import CredentialPool
from .governor import RequestGovernor
from .ledger import ResumeLedger
from .metrics import MetricsSnapshot, RunMetrics
from .policy import BackoffPolicy
from .progress import ProgressBus, ProgressEvent, RunPhase
from .queue import BoundedQueue
from .sink import ResultSink
from .types import Provider, Record, RecordSource
from .worker import STOP, EnrichmentWorker

if TYPE_CHECKING:
    from ..config import EngineSettings
    from ..keys import CredentialStore


class RunStatus(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"  # cancelled or timed out; resumable
    ABORTED = "aborted"  # fatal error


@dataclass(frozen=True)
class RunReport:
    run_id: str
    status: RunStatus
    metrics: MetricsSnapshot
    credential_usage: Dict[str, int] = field(default_factory=dict)
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED


@dataclass(frozen=True)
class EngineHealth:
    workers_alive: int
    queue_size: int
    capacity: int
    in_flight: int
    credentials: Dict[str, int]


class Orchestrator:
    """Drives one enrichment run from the record source to the result sink.

    Wires the credential pool, governor, backoff policy, ledger, sink and a
    fixed set of workers; supervises them; publishes progress; and reports a
    terminal status. Fatal errors raise RunAborted after a graceful shutdown.

    Example:
        orch = Orchestrator(source, provider, pool, sink, ledger=ledger, concurrency=5)
        report = await orch.run()
    """

    def __init__(
        self,
        source: RecordSource,
        provider: Provider,
        pool: CredentialPool,
        sink: ResultSink,
        *,
        ledger: ResumeLedger,
        concurrency: int = 5,
        batch_size: int = 100,
        per_credential_limit: int = 1,
        requests_per_second: Optional[float] = None,
        governor: Optional[RequestGovernor] = None,
        backoff: Optional[BackoffPolicy] = None,
        resume: bool = True,
        precheck: bool = False,
        call_timeout: Optional[float] = None,
        shutdown_timeout: float = 10.0,
        run_timeout: Optional[float] = None,
        progress_interval: float = 1.0,
        stop_flag_file: Optional[str | Path] = None,
        credential_store: Optional["CredentialStore"] = None,
        progress: Optional[ProgressBus] = None,
        run_id: Optional[str] = None,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self._source = source
        self._provider = provider
        self._pool = pool
        self._sink = sink
        self._ledger = ledger
        self._concurrency = concurrency
        self._batch_size = batch_size
        self._governor = governor or RequestGovernor(
            concurrency,
            per_credential_limit=per_credential_limit,
            requests_per_second=requests_per_second,
        )
        self._backoff = backoff or BackoffPolicy()
        self._resume = resume
        self._precheck = precheck
        self._call_timeout = call_timeout
        self._shutdown_timeout = shutdown_timeout
        self._run_timeout = run_timeout
        self._progress_interval = progress_interval
        self._stop_flag = Path(stop_flag_file) if stop_flag_file else None
        self._store = credential_store
        self.progress = progress or ProgressBus()
        self.run_id = run_id or getattr(sink, "path", Path("run")).name

        self.metrics = RunMetrics()
        self._cancel = asyncio.Event()
        self._stop_reason: Optional[str] = None
        self._queue: Optional[BoundedQueue[Any]] = None
        self._workers: List[EnrichmentWorker] = []
        self._producer: Optional[asyncio.Task] = None
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: "EngineSettings",
        *,
        source: RecordSource,
        provider: Provider,
        pool: CredentialPool,
        sink: ResultSink,
        ledger: Optional[ResumeLedger] = None,
        credential_store: Optional["CredentialStore"] = None,
        progress: Optional[ProgressBus] = None,
    ) -> "Orchestrator":
        return cls(
            source,
            provider,
            pool,
            sink,
            ledger=ledger or ResumeLedger(settings.resolved_ledger_path, fsync=settings.fsync),
            concurrency=settings.concurrency,
            batch_size=settings.batch_size,
            per_credential_limit=settings.per_credential_limit,
            requests_per_second=settings.requests_per_second,
            backoff=settings.to_backoff_policy(),
            resume=settings.resume,
            precheck=settings.precheck_keys,
            call_timeout=settings.call_timeout_s,
            shutdown_timeout=settings.shutdown_timeout_s,
            run_timeout=settings.run_timeout_s,
            progress_interval=settings.progress_interval_s,
            stop_flag_file=settings.stop_flag_file,
            credential_store=credential_store,
            progress=progress,
        )

    # --------------------------- control & views

    def cancel(self, reason: str = "cancel requested") -> None:
        """Stop dequeuing new records; in-flight calls get shutdown_timeout to finish."""
        if not self._cancel.is_set():
            self._stop_reason = reason
            logger.warning(f"Run {self.run_id} stopping: {reason}")
            self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def snapshot(self) -> MetricsSnapshot:
        self._refresh_gauges()
        return self.metrics.snapshot()

    def health(self) -> EngineHealth:
        counts = self._pool.counts()
        return EngineHealth(
            workers_alive=sum(1 for w in self._workers if w.alive),
            queue_size=self._queue.size if self._queue else 0,
            capacity=self._batch_size,
            in_flight=self._governor.in_flight,
            credentials={s.value: n for s, n in counts.items()},
        )

    # --------------------------- run

    async def run(self) -> RunReport:
        if self._started:
            raise RuntimeError("an Orchestrator runs once; build a new one for the next run")
        self._started = True

        fatal: Optional[BaseException] = None
        try:
            await self._prepare()
            async with self._sink:
                fatal = await self._execute()
        except SinkWriteFailed as exc:
            fatal = fatal or exc
        finally:
            await self._ledger.close()
            self._save_credentials()

        snapshot = self.snapshot()
        usage = self._pool.usage()

        if fatal is not None:
            msg = f"{type(fatal).__name__}: {fatal}"
            report = RunReport(
                self.run_id, RunStatus.ABORTED, snapshot, usage, reason=self._stop_reason, error=msg
            )
            logger.error(
                f"Run {self.run_id} aborted ({msg}); succeeded={snapshot.succeeded} "
                f"failed={snapshot.failed} skipped={snapshot.skipped} pending={snapshot.pending}"
            )
            await self._publish(RunPhase.ERROR, reason=msg)
            raise RunAborted(f"run {self.run_id} aborted: {msg}", report) from fatal

        status = RunStatus.INTERRUPTED if self._cancel.is_set() else RunStatus.COMPLETED
        report = RunReport(self.run_id, status, snapshot, usage, reason=self._stop_reason)
        logger.info(
            f"Run {self.run_id} {status.value}: total={snapshot.total} "
            f"succeeded={snapshot.succeeded} failed={snapshot.failed} "
            f"skipped={snapshot.skipped} pending={snapshot.pending}"
        )
        await self._publish(
            RunPhase.DONE if status is RunStatus.COMPLETED else RunPhase.INTERRUPTED,
            reason=self._stop_reason,
        )
        return report

    async def _prepare(self) -> None:
        self._sink.resume = self._resume
        if self._resume:
            self._ledger.load(seed=self._sink.completed_keys())
        else:
            self._ledger.reset()

        if self._precheck:
            verify = getattr(self._provider, "verify", None)
            if verify is not None:
                passed = await self._pool.precheck(verify)
                logger.info(f"Key precheck: {passed}/{len(self._pool)} credentials usable")

        logger.info(
            f"Run {self.run_id} starting: concurrency={self._concurrency} "
            f"credentials={len(self._pool)} resume={self._resume}"
        )
        await self._publish(RunPhase.STARTING)

    async def _execute(self) -> Optional[BaseException]:
        """Run producer and workers to completion, cancellation, or first fatal error."""
        self._queue = BoundedQueue[Any](
            self._batch_size, on_high=self._on_queue_high, on_low=self._on_queue_low
        )
        self._workers = [
            EnrichmentWorker(
                i + 1,
                queue=self._queue,
                provider=self._provider,
                pool=self._pool,
                governor=self._governor,
                sink=self._sink,
                ledger=self._ledger,
                metrics=self.metrics,
                backoff=self._backoff,
                cancel=self._cancel,
                call_timeout=self._call_timeout,
            )
            for i in range(self._concurrency)
        ]
        tasks: Set[asyncio.Task] = {w.start() for w in self._workers}
        self._producer = asyncio.create_task(self._produce(), name="enrich-producer")
        tasks.add(self._producer)
        progress = asyncio.create_task(self._progress_loop(), name="enrich-progress")
        cancel_wait = asyncio.create_task(self._cancel.wait())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._run_timeout if self._run_timeout else None
        fatal: Optional[BaseException] = None
        pending = set(tasks)
        try:
            while pending:
                timeout = None if deadline is None else max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    pending | {cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    self.cancel(f"run timeout of {self._run_timeout}s reached")
                    break
                for t in done:
                    if t is cancel_wait:
                        continue
                    pending.discard(t)
                    if not t.cancelled() and t.exception() is not None:
                        fatal = t.exception()
                        break
                if fatal is not None or self._cancel.is_set():
                    break

            if fatal is not None:
                self._cancel.set()
            if pending:
                late = await self._shutdown(pending)
                fatal = fatal or late
        finally:
            progress.cancel()
            cancel_wait.cancel()
            await asyncio.gather(progress, cancel_wait, return_exceptions=True)
        return fatal

    async def _shutdown(self, pending: Set[asyncio.Task]) -> Optional[BaseException]:
        """Give in-flight work shutdown_timeout seconds, then cancel what is left."""
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
        busy = [w.current for w in self._workers if w.current]
        logger.info(
            f"Waiting up to {self._shutdown_timeout}s for {len(busy)} in-flight record(s)"
        )
        await self._publish(RunPhase.STOPPING, reason=self._stop_reason)
        _, still = await asyncio.wait(pending, timeout=self._shutdown_timeout)
        for t in still:
            t.cancel()
        if still:
            logger.warning(f"Cancelled {len(still)} task(s) still running after grace period")

        late: Optional[BaseException] = None
        for res in await asyncio.gather(*pending, return_exceptions=True):
            if isinstance(res, BaseException) and not isinstance(res, asyncio.CancelledError):
                late = late or res
        if self._queue is not None:
            left = self._queue.drain()
            if left:
                logger.info(f"{left} queued record(s) left for the next run")
        return late

    # --------------------------- producer

    async def _records(self) -> AsyncIterator[Record]:
        src = self._source
        if hasattr(src, "__aiter__"):
            async for record in src:  # type: ignore[union-attr]
                yield record
        else:
            for record in src:  # type: ignore[union-attr]
                yield record

    async def _produce(self) -> None:
        seen: Set[str] = set()
        async for record in self._records():
            if self._cancel.is_set():
                break
            self.metrics.record_read()

            if not record.is_valid or not record.key:
                reason = record.invalid_reason or "empty key"
                logger.warning(f"Skipping invalid input row {record.line or '?'}: {reason}")
                self.metrics.record_skipped()
                continue
            if record.key in self._ledger:
                logger.debug(f"Skipping {record.key}: already completed")
                self.metrics.record_skipped()
                continue
            if record.key in seen:
                logger.debug(f"Skipping {record.key}: duplicate key in input")
                self.metrics.record_skipped()
                continue

            seen.add(record.key)
            await self._queue.put(record)

        if not self._cancel.is_set():
            for _ in self._workers:
                await self._queue.put(STOP)
            logger.debug(f"Producer done after {self.metrics.snapshot().total} records")

    async def _on_queue_high(self) -> None:
        logger.debug("Record queue at high watermark; workers saturated")

    async def _on_queue_low(self) -> None:
        logger.debug("Record queue drained to low watermark")

    # --------------------------- progress

    async def _progress_loop(self) -> None:
        while True:
            await asyncio.sleep(self._progress_interval)
            if self._stop_flag is not None and self._stop_flag.exists():
                self.cancel(f"stop flag file {self._stop_flag} present")
            self._save_credentials()
            await self._publish(RunPhase.STOPPING if self._cancel.is_set() else RunPhase.RUNNING)

    async def _publish(self, phase: RunPhase, reason: Optional[str] = None) -> None:
        await self.progress.publish(
            ProgressEvent(run_id=self.run_id, phase=phase, metrics=self.snapshot(), reason=reason)
        )

    def _refresh_gauges(self) -> None:
        self.metrics.set_credentials(self._pool.counts())
        self.metrics.set_in_flight(self._governor.in_flight)

    def _save_credentials(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self._pool.credentials)
        except OSError as exc:
            logger.warning(f"Could not save credential usage: {exc}")


__all__ = [
    "Orchestrator",
    "RunReport",
    "RunStatus",
    "EngineHealth",
]
