"""
Resume ledger: durable set of record keys that already produced an output row.

Backed by an append-only JSONL journal. Every ``mark_done`` is flushed (and
fsynced by default) before it returns. ``load`` rebuilds the set from the
journal plus any keys replayed from the existing results file, so a crash
between the row write and the journal write never causes a duplicate row.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import IO, Iterable, Optional, Set

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ..errors import SinkWriteFailed
from ..models import LedgerEntry


class ResumeLedger:
    def __init__(self, path: str | Path, *, fsync: bool = True, mkdirs: bool = True):
        self.path = Path(path)
        self._fsync = fsync
        self._mkdirs = mkdirs
        self._done: Set[str] = set()
        self._fh: Optional[IO[str]] = None
        self._lock = asyncio.Lock()

    def __contains__(self, key: str) -> bool:
        return key in self._done

    def __len__(self) -> int:
        return len(self._done)

    def contains(self, key: str) -> bool:
        return key in self._done

    @property
    def keys(self) -> frozenset:
        return frozenset(self._done)

    # --------------------------- lifecycle

    def load(self, seed: Iterable[str] = ()) -> int:
        """Rebuild the completed-key set. Returns the number of known keys."""
        self._done.clear()
        journal = 0
        if self.path.exists():
            with self.path.open("r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = LedgerEntry.model_validate_json(line)
                    except PydanticValidationError:
                        # a crash mid-write leaves a torn last line
                        logger.warning(f"Ignoring unreadable ledger line {lineno} in {self.path}")
                        continue
                    self._done.add(entry.key)
                    journal += 1

        replayed = 0
        for key in seed:
            if key and key not in self._done:
                self._done.add(key)
                replayed += 1

        logger.info(
            f"Ledger loaded: {len(self._done)} completed keys "
            f"({journal} journal entries, {replayed} replayed from output)"
        )
        return len(self._done)

    def reset(self) -> None:
        """Forget all completed keys and truncate the journal (fresh run)."""
        self._close_fh()
        self._done.clear()
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Ledger reset: removed {self.path}")

    async def close(self) -> None:
        async with self._lock:
            self._close_fh()

    def _close_fh(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    # --------------------------- writes

    async def mark_done(
        self,
        key: str,
        *,
        status: Optional[str] = None,
        credential_id: Optional[str] = None,
    ) -> bool:
        """Durably record ``key`` as completed. Returns False if already known."""
        async with self._lock:
            if key in self._done:
                return False
            entry = LedgerEntry(key=key, status=status, credential_id=credential_id)
            try:
                await asyncio.to_thread(self._append_line, entry.model_dump_json())
            except OSError as exc:
                raise SinkWriteFailed(f"ledger write failed for {self.path}: {exc}") from exc
            self._done.add(key)
            return True

    def _append_line(self, line: str) -> None:
        if self._fh is None:
            if self._mkdirs:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("a", encoding="utf-8")
        self._fh.write(line + "\n")
        self._fh.flush()
        if self._fsync:
            os.fsync(self._fh.fileno())
