"""
IngestBuffer: accumulates records and flushes them as immutable batches.

A single asyncio.Lock guards the accumulation list, so add() and flush() are
linearizable: every record lands in exactly one batch, in add() order.
Flushed batches are handed to ``on_flush`` while the lock is still held,
which keeps batches arriving downstream in sequence order and lets a full
downstream queue push back on producers.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from time import monotonic
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from loguru import logger

from .errors import BufferClosedError, QueueFullError
from .metrics import BATCHES_FLUSHED_TOTAL, BUFFERED_RECORDS, RECORDS_ADDED_TOTAL
from .models import Batch
from .types import FlushReason
from .utils import freeze_record

FlushCallback = Callable[[Batch], Awaitable[None]]


class IngestBuffer:
    """Capacity-bounded record buffer.

    Usage:
        buf = IngestBuffer(capacity=500, on_flush=queue.put, flush_interval=1.0)
        buf.start()
        await buf.add({"id": 1, "ts": datetime.now(timezone.utc)})
        ...
        await buf.close()  # final flush
    """

    def __init__(
        self,
        capacity: int,
        on_flush: Optional[FlushCallback] = None,
        *,
        flush_interval: float | None = None,
        pipeline_id: str = "default",
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if flush_interval is not None and flush_interval <= 0:
            raise ValueError("flush_interval must be > 0")

        self._capacity = capacity
        self._on_flush = on_flush
        self._flush_interval = flush_interval
        self.pipeline_id = pipeline_id

        self._records: list[Mapping[str, Any]] = []
        self._first_at = 0.0  # monotonic time of the oldest buffered record
        self._sequence = 0
        self._added = 0
        self._closed = False

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    # --------------------------- properties

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._records)

    @property
    def pending(self) -> tuple[Mapping[str, Any], ...]:
        """Snapshot of buffered (not yet flushed) records."""
        return tuple(self._records)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def batches_flushed(self) -> int:
        return self._sequence

    @property
    def records_added(self) -> int:
        return self._added

    # --------------------------- public API

    async def add(self, record: Mapping[str, Any]) -> Optional[Batch]:
        """Buffer one record; returns the batch if this add filled the buffer.

        All or nothing: if the size flush this add triggers cannot be handed
        off, the record is taken back out and the error propagates, so the
        caller may retry the same record without duplicating it.
        """
        frozen = freeze_record(record)
        async with self._lock:
            if self._closed:
                raise BufferClosedError("IngestBuffer is closed")
            if not self._records:
                self._first_at = monotonic()
            self._records.append(frozen)

            batch = None
            if len(self._records) >= self._capacity:
                try:
                    batch = await self._flush_locked(FlushReason.SIZE)
                except BaseException:
                    self._records.pop()
                    BUFFERED_RECORDS.labels(self.pipeline_id).set(len(self._records))
                    raise

            self._added += 1
            RECORDS_ADDED_TOTAL.labels(self.pipeline_id).inc()
            BUFFERED_RECORDS.labels(self.pipeline_id).set(len(self._records))
            return batch

    async def add_many(self, records: Iterable[Mapping[str, Any]]) -> list[Batch]:
        """Buffer records in order; returns every batch flushed along the way."""
        flushed = []
        for record in records:
            batch = await self.add(record)
            if batch is not None:
                flushed.append(batch)
        return flushed

    async def flush(self, reason: FlushReason = FlushReason.MANUAL) -> Optional[Batch]:
        """Flush whatever is buffered. Returns None when empty."""
        async with self._lock:
            return await self._flush_locked(reason)

    def start(self) -> None:
        """Start the interval flusher (no-op without ``flush_interval``)."""
        if self._flush_interval is None or self._task is not None:
            return
        self._task = asyncio.create_task(
            self._interval_loop(), name=f"ingest-buffer-{self.pipeline_id}"
        )

    async def stop(self) -> None:
        """Stop the interval flusher; buffered records stay buffered."""
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def close(self) -> Optional[Batch]:
        """Stop the flusher, flush the remainder and refuse further adds."""
        await self.stop()
        async with self._lock:
            if self._closed:
                return None
            batch = await self._flush_locked(FlushReason.CLOSE)
            self._closed = True
            return batch

    # --------------------------- internals

    async def _flush_locked(self, reason: FlushReason) -> Optional[Batch]:
        if not self._records:
            return None

        records, self._records = self._records, []
        self._sequence += 1
        batch = Batch(records=tuple(records), sequence=self._sequence, flush_reason=reason)

        if self._on_flush is not None:
            try:
                await self._on_flush(batch)
            except BaseException:
                # hand-off failed: put the records back untouched
                self._records = records
                self._sequence -= 1
                raise

        BATCHES_FLUSHED_TOTAL.labels(self.pipeline_id, reason.value).inc()
        BUFFERED_RECORDS.labels(self.pipeline_id).set(0)
        logger.debug(
            f"[{self.pipeline_id}] flushed batch {batch.sequence} "
            f"({len(batch)} records, reason={reason.value})"
        )
        return batch

    async def _interval_loop(self) -> None:
        assert self._flush_interval is not None
        tick = max(0.01, self._flush_interval / 4)
        while True:
            await asyncio.sleep(tick)
            if not self._records or monotonic() - self._first_at < self._flush_interval:
                continue
            try:
                await self.flush(FlushReason.INTERVAL)
            except QueueFullError as exc:
                logger.warning(f"[{self.pipeline_id}] interval flush deferred: {exc}")
