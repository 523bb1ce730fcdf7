from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")
WatermarkCallback = Callable[[], Awaitable[None]]


class BoundedQueue(Generic[T]):
    """Bounded read-ahead queue between the producer and the workers.

    ``put`` blocks when full, which throttles reading the record source.
    Items are never dropped. Emits ``on_high`` once when the depth reaches the
    high watermark and ``on_low`` once when it drains back to the low one.
    """

    def __init__(
        self,
        capacity: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        on_high: Optional[WatermarkCallback] = None,
        on_low: Optional[WatermarkCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._q: asyncio.Queue[T] = asyncio.Queue(maxsize=capacity)

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        if self._low_wm > self._high_wm:
            raise ValueError("low_watermark must be <= high_watermark")
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False  # avoid duplicate signals

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return self._q.qsize()

    def empty(self) -> bool:
        return self._q.empty()

    async def put(self, item: T) -> None:
        await self._q.put(item)
        await self._maybe_signal_high()

    async def get(self, timeout: float | None = None) -> T:
        """Next item; raises asyncio.TimeoutError if none arrives in ``timeout``."""
        if timeout is None:
            item = await self._q.get()
        else:
            item = await asyncio.wait_for(self._q.get(), timeout=timeout)
        await self._maybe_signal_low()
        return item

    def drain(self) -> int:
        """Discard everything still queued (used on cancellation). Returns count."""
        n = 0
        while True:
            try:
                self._q.get_nowait()
            except asyncio.QueueEmpty:
                return n
            n += 1

    async def _maybe_signal_high(self) -> None:
        if not self._high_fired and self.size >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                await self._on_high()

    async def _maybe_signal_low(self) -> None:
        if self._high_fired and self.size <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                await self._on_low()
