from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Literal, Optional

from .errors import PipelineFatalError, QueueFullError
from .models import Batch
from .types import BackpressureCallback

OverflowStrategy = Literal["block", "error"]


class BatchQueue:
    """Bounded hand-off between the ingest buffer and delivery workers.

    Holds at most ``max_batches`` flushed batches. ``block`` makes put() wait
    for a free slot (back-pressure reaches producers through the buffer);
    ``error`` raises QueueFullError instead. There is no dropping strategy:
    every flushed batch must reach a worker.

    High/low watermarks (in batches) fire their callbacks once per crossing.
    """

    def __init__(
        self,
        max_batches: int,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        overflow_strategy: OverflowStrategy = "block",
        on_high: Optional[BackpressureCallback] = None,
        on_low: Optional[BackpressureCallback] = None,
    ):
        if max_batches <= 0:
            raise ValueError("max_batches must be > 0")

        self._max = max_batches
        self._q: asyncio.Queue[Batch] = asyncio.Queue(maxsize=max_batches)
        self._records = 0  # records inside queued batches

        self._high_wm = high_watermark if high_watermark is not None else max_batches
        self._low_wm = low_watermark if low_watermark is not None else max_batches // 2
        self._overflow = overflow_strategy
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False

        self._failure: Optional[BaseException] = None
        self._failed = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def max_batches(self) -> int:
        return self._max

    @property
    def size(self) -> int:
        """Batches waiting for a worker."""
        return self._q.qsize()

    @property
    def pending_records(self) -> int:
        return self._records

    @property
    def failed(self) -> bool:
        return self._failure is not None

    def fail(self, exc: BaseException) -> None:
        """Refuse every later put; puts waiting for a slot raise PipelineFatalError."""
        if self._failure is None:
            self._failure = exc
            self._failed.set()

    async def put(self, batch: Batch) -> None:
        self._raise_if_failed()
        if self._overflow == "error" and self._q.full():
            raise QueueFullError(f"BatchQueue full ({self._max} batches pending)")

        if self._q.full():
            putter = asyncio.ensure_future(self._q.put(batch))
            failed = asyncio.ensure_future(self._failed.wait())
            try:
                await asyncio.wait({putter, failed}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                failed.cancel()
                if not putter.done():
                    putter.cancel()
                    with suppress(asyncio.CancelledError):
                        await putter
            if putter.cancelled():
                self._raise_if_failed()
        else:
            self._q.put_nowait(batch)

        async with self._lock:
            self._records += len(batch)
            await self._maybe_signal_high()

    async def get(self, timeout: float | None = None) -> Batch:
        """Next batch; raises asyncio.TimeoutError after ``timeout`` seconds."""
        if timeout is None:
            batch = await self._q.get()
        else:
            batch = await asyncio.wait_for(self._q.get(), timeout=timeout)

        async with self._lock:
            self._records -= len(batch)
            await self._maybe_signal_low()
        return batch

    def task_done(self) -> None:
        """Mark a batch returned by get() as fully processed."""
        self._q.task_done()

    async def join(self) -> None:
        """Wait until every put() batch has been marked task_done()."""
        await self._q.join()

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise PipelineFatalError(
                f"BatchQueue closed after fatal error: {self._failure}"
            ) from self._failure

    async def _maybe_signal_high(self) -> None:
        if not self._high_fired and self._q.qsize() >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                await self._on_high()

    async def _maybe_signal_low(self) -> None:
        if self._high_fired and self._q.qsize() <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                await self._on_low()
