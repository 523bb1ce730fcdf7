from __future__ import annotations

import asyncio
import csv
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Any, Iterator, List, Optional, Sequence

from loguru import logger

from ..errors import SinkWriteFailed
from ..metrics.registry import SINK_WRITE_LATENCY, SINK_WRITES_TOTAL
from .types import EnrichmentResult

STATUS_COLUMN = "status"
ERROR_STATUS_COLUMN = "error_status"
ERROR_MESSAGE_COLUMN = "error_message"


class ResultSink(ABC):
    """Durable destination for enrichment results.

    ``append`` must be safe to call concurrently from several workers.
    Usable as an async context manager: opened on enter, flushed and closed
    on exit. With ``resume`` off, existing output is discarded on open.
    """

    resume: bool = True

    async def __aenter__(self) -> "ResultSink":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        await self.flush()

    @abstractmethod
    async def append(self, result: EnrichmentResult) -> None:
        ...

    async def flush(self) -> None:
        return None

    def completed_keys(self) -> Iterator[str]:
        """Keys already present in durable output (replayed on resume)."""
        return iter(())


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "; ".join(_cell(v) for v in value)
    return str(value)


class CsvResultSink(ResultSink):
    """Append-only CSV file with a fixed header.

    Header: key column, the configured field columns, then status,
    error_status and error_message. Each row is flushed (and fsynced by
    default) under a single writer lock.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        key_column: str,
        field_columns: Sequence[str] = (),
        resume: bool = True,
        fsync: bool = True,
        mkdirs: bool = True,
        encoding: str = "utf-8",
    ):
        self.path = Path(path)
        self.key_column = key_column
        self.field_columns = list(field_columns)
        self.columns: List[str] = [
            key_column,
            *self.field_columns,
            STATUS_COLUMN,
            ERROR_STATUS_COLUMN,
            ERROR_MESSAGE_COLUMN,
        ]
        if len(set(self.columns)) != len(self.columns):
            raise ValueError(f"duplicate output columns: {self.columns}")

        self.resume = resume
        self._fsync = fsync
        self._mkdirs = mkdirs
        self._encoding = encoding
        self._fh: Optional[IO[str]] = None
        self._writer: Any = None
        self._lock = asyncio.Lock()
        self.rows_written = 0

    # --------------------------- resume support

    def _existing_header(self) -> Optional[List[str]]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return None
        with self.path.open("r", encoding=self._encoding, newline="") as f:
            return next(csv.reader(f), None)

    def _check_header(self) -> bool:
        """True if the file already has our header, False if new/empty."""
        header = self._existing_header()
        if header is None:
            return False
        if header != self.columns:
            raise SinkWriteFailed(
                f"{self.path} has a different header; expected {self.columns}, found {header}"
            )
        return True

    def completed_keys(self) -> Iterator[str]:
        if not self._check_header():
            return
        with self.path.open("r", encoding=self._encoding, newline="") as f:
            for row in csv.DictReader(f):
                key = (row.get(self.key_column) or "").strip()
                if key:
                    yield key

    # --------------------------- lifecycle

    async def open(self) -> None:
        if self._fh is not None:
            return
        try:
            has_header = self.resume and self._check_header()
            await asyncio.to_thread(self._open_file, has_header)
        except OSError as exc:
            raise SinkWriteFailed(f"cannot open {self.path}: {exc}") from exc
        logger.info(
            f"{'Appending to' if has_header else 'Creating'} results file {self.path}"
        )

    def _open_file(self, has_header: bool) -> None:
        if self._mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = "a" if self.resume else "w"
        self._fh = self.path.open(mode, encoding=self._encoding, newline="")
        self._writer = csv.writer(self._fh)
        if not has_header:
            self._writer.writerow(self.columns)
            self._sync()
        elif not self._ends_with_newline():
            # torn last row from a crash; start ours on a fresh line
            self._fh.write("\r\n")
            self._sync()

    def _ends_with_newline(self) -> bool:
        with self.path.open("rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) in (b"\n", b"\r")

    async def flush(self) -> None:
        async with self._lock:
            if self._fh is None:
                return
            try:
                await asyncio.to_thread(self._sync)
            except OSError as exc:
                raise SinkWriteFailed(f"flush failed for {self.path}: {exc}") from exc

    async def close(self) -> None:
        await self.flush()
        async with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
                self._writer = None

    # --------------------------- writes

    def _row(self, result: EnrichmentResult) -> List[str]:
        return [
            result.record_key,
            *(_cell(result.fields.get(c)) for c in self.field_columns),
            result.status.value,
            result.error_kind.value if result.error_kind else "",
            _cell(result.error_message),
        ]

    async def append(self, result: EnrichmentResult) -> None:
        row = self._row(result)
        async with self._lock:
            if self._fh is None:
                raise SinkWriteFailed(f"{self.path} is not open")
            t0 = time.perf_counter()
            try:
                await asyncio.to_thread(self._write_row, row)
            except (OSError, csv.Error) as exc:
                SINK_WRITES_TOTAL.labels(status="failure").inc()
                raise SinkWriteFailed(f"append to {self.path} failed: {exc}") from exc
            SINK_WRITE_LATENCY.observe(time.perf_counter() - t0)
            SINK_WRITES_TOTAL.labels(status="success").inc()
            self.rows_written += 1

    def _write_row(self, row: List[str]) -> None:
        self._writer.writerow(row)
        self._sync()

    def _sync(self) -> None:
        if self._fh is None:
            raise SinkWriteFailed(f"{self.path} is not open")
        self._fh.flush()
        if self._fsync:
            os.fsync(self._fh.fileno())
