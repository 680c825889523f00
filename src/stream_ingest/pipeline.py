"""
IngestPipeline: producer-facing facade.

    add() -> IngestBuffer -> BatchQueue -> DeliveryWorker x N
          -> RetryCoordinator -> BatchSender / DeadLetterSink

Owns the lifecycle (start / drain / stop), health snapshots, running stats
and the metrics poll loop. A dead-letter storage failure in any worker is
fatal: later add() calls raise PipelineFatalError and stop() re-raises the
original error.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from .buffer import IngestBuffer
from .dlq import DeadLetterSink, FileDeadLetterSink
from .errors import PipelineFatalError
from .metrics import CIRCUIT_STATE, CIRCUIT_STATE_VALUES, QUEUED_BATCHES, WORKERS_ALIVE
from .models import Batch, DeliveryReport
from .policy import CircuitBreaker, RetryPolicy
from .queue import BatchQueue, OverflowStrategy
from .retry import RetryCoordinator
from .sender import BatchSender
from .settings import IngestSettings
from .types import BackpressureCallback, BatchState, FailureReason, FlushReason
from .worker import DeliveryWorker

_ABORT_GRACE_SEC = 1.0


@dataclass(frozen=True)
class PipelineHealth:
    workers_alive: int
    buffered_records: int
    queued_batches: int
    queued_records: int
    max_pending_batches: int
    batch_size: int
    inflight: dict[str, int]
    circuit_state: str
    fatal_error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.fatal_error is None and self.workers_alive > 0


@dataclass
class PipelineStats:
    """Running totals since start().

    ``records_added`` and ``batches_flushed`` mirror the buffer; the rest is
    updated from delivery reports.
    """

    records_added: int = 0
    batches_flushed: int = 0
    batches_delivered: int = 0
    batches_dead_lettered: int = 0
    records_accepted: int = 0
    records_dead_lettered: int = 0
    retries: int = 0
    dead_lettered_by_reason: dict[str, int] = field(default_factory=dict)

    def record(self, report: DeliveryReport) -> None:
        if report.state == BatchState.DELIVERED:
            self.batches_delivered += 1
        else:
            self.batches_dead_lettered += 1
        self.records_accepted += report.accepted_count
        self.records_dead_lettered += report.dead_lettered_count
        self.retries += report.retries
        for reason in report.reasons:
            key = reason.value
            self.dead_lettered_by_reason[key] = (
                self.dead_lettered_by_reason.get(key, 0) + report.dead_lettered_count
            )


class IngestPipeline:
    """Buffered, retrying, dead-lettering ingestion pipeline.

    Example:
        sender = HttpBatchSender("https://ingest.example.com/v1/rows")
        dlq = FileDeadLetterSink(".dlq/records.ndjson")
        async with IngestPipeline(sender, dlq, batch_size=500, flush_interval=1.0) as p:
            for row in rows:
                await p.add(row)
        # context exit flushes, drains and stops
    """

    def __init__(
        self,
        sender: BatchSender,
        dead_letter: DeadLetterSink,
        *,
        batch_size: int = 500,
        flush_interval: float | None = 1.0,
        max_pending_batches: int = 16,
        workers: int = 2,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        overflow_strategy: OverflowStrategy = "block",
        on_backpressure_high: Optional[BackpressureCallback] = None,
        on_backpressure_low: Optional[BackpressureCallback] = None,
        drain_timeout: float = 30.0,
        pipeline_id: str = "default",
        metrics_poll_sec: float = 0.25,
        manage_sender: bool = True,
    ):
        if workers <= 0:
            raise ValueError("workers must be > 0")

        self.pipeline_id = pipeline_id
        self._sender = sender
        self._manage_sender = manage_sender
        self._drain_timeout = drain_timeout
        self._metrics_poll_sec = metrics_poll_sec

        self._queue = BatchQueue(
            max_pending_batches,
            overflow_strategy=overflow_strategy,
            on_high=on_backpressure_high,
            on_low=on_backpressure_low,
        )
        self._buffer = IngestBuffer(
            batch_size,
            on_flush=self._queue.put,
            flush_interval=flush_interval,
            pipeline_id=pipeline_id,
        )
        self._coordinator = RetryCoordinator(
            sender,
            dead_letter,
            retry_policy,
            circuit_breaker=circuit_breaker,
            pipeline_id=pipeline_id,
        )
        self._workers = [
            DeliveryWorker(i, self._queue, self._coordinator, on_report=self._on_report)
            for i in range(workers)
        ]

        self._stats = PipelineStats()
        self._fatal: Optional[BaseException] = None
        self._started = False
        self._stopped = False
        self._metrics_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: IngestSettings,
        sender: BatchSender,
        dead_letter: Optional[DeadLetterSink] = None,
        **overrides: Any,
    ) -> "IngestPipeline":
        """Build a pipeline from IngestSettings (keyword overrides win)."""
        breaker = None
        if settings.circuit_failure_threshold > 0:
            breaker = CircuitBreaker(
                failure_threshold=settings.circuit_failure_threshold,
                half_open_after_sec=settings.circuit_half_open_after,
            )
        kwargs: dict[str, Any] = dict(
            batch_size=settings.batch_size,
            flush_interval=settings.flush_interval or None,
            max_pending_batches=settings.max_pending_batches,
            workers=settings.workers,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay_ms=settings.backoff_base_ms,
                max_delay_ms=settings.backoff_max_ms,
                jitter=settings.backoff_jitter,
            ),
            circuit_breaker=breaker,
            drain_timeout=settings.drain_timeout,
            pipeline_id=settings.pipeline_id,
            metrics_poll_sec=settings.metrics_poll_sec,
        )
        kwargs.update(overrides)
        if dead_letter is None:
            dead_letter = FileDeadLetterSink(settings.dlq_path)
        return cls(sender, dead_letter, **kwargs)

    # --------------------------- lifecycle

    async def __aenter__(self) -> "IngestPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop(drain=True)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._manage_sender:
            await self._sender.start()
        for w in self._workers:
            w.start()
            assert w.task is not None
            w.task.add_done_callback(self._on_worker_done)
        self._buffer.start()
        if self._metrics_poll_sec > 0:
            self._metrics_task = asyncio.create_task(
                self._metrics_loop(), name=f"ingest-metrics-{self.pipeline_id}"
            )
        logger.info(
            f"[{self.pipeline_id}] IngestPipeline started "
            f"(batch_size={self._buffer.capacity}, workers={len(self._workers)})"
        )

    async def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """Flush, deliver (or dead-letter) everything buffered, then stop.

        With ``drain`` the final flush and the queue share one ``timeout``
        seconds deadline to deliver normally. Whatever is still buffered,
        queued or backing off afterwards (or immediately when ``drain`` is
        False) is dead-lettered with reason ``shutdown``.
        """
        if self._stopped or not self._started:
            return
        self._stopped = True
        timeout = self._drain_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        if self._fatal is None:
            if not drain:
                self._coordinator.abort()
            if not await self._close_buffer(deadline):
                logger.warning(
                    f"[{self.pipeline_id}] final flush timed out after {timeout}s "
                    f"(queue full); dead-lettering remainder"
                )
            elif drain and not await self._wait_queue(deadline):
                logger.warning(
                    f"[{self.pipeline_id}] drain timed out after {timeout}s "
                    f"({self._queue.size} batches queued); dead-lettering remainder"
                )
        else:
            await self._buffer.stop()

        self._coordinator.abort()
        if self._fatal is None:
            # aborted batches dead-letter without sending, so a short grace is enough
            await self._close_buffer(None)
            grace = max(deadline, loop.time() + _ABORT_GRACE_SEC)
            if not await self._wait_queue(grace):
                logger.error(
                    f"[{self.pipeline_id}] {self._queue.size} batch(es) still queued at stop"
                )

        for w in self._workers:
            await w.stop()

        if self._metrics_task:
            self._metrics_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._metrics_task
            self._metrics_task = None
        self._update_gauges()

        if self._manage_sender:
            await self._sender.close()

        logger.info(
            f"[{self.pipeline_id}] IngestPipeline stopped "
            f"(accepted={self._stats.records_accepted}, "
            f"dead_lettered={self._stats.records_dead_lettered})"
        )
        if self._fatal is not None:
            raise self._fatal

    # --------------------------- producer API

    async def add(self, record: Mapping[str, Any]) -> Optional[Batch]:
        self._raise_if_fatal()
        return await self._buffer.add(record)

    async def add_many(self, records: Iterable[Mapping[str, Any]]) -> list[Batch]:
        self._raise_if_fatal()
        return await self._buffer.add_many(records)

    async def flush(self) -> Optional[Batch]:
        self._raise_if_fatal()
        return await self._buffer.flush(FlushReason.MANUAL)

    # --------------------------- introspection

    @property
    def stats(self) -> PipelineStats:
        self._stats.records_added = self._buffer.records_added
        self._stats.batches_flushed = self._buffer.batches_flushed
        return self._stats

    @property
    def buffer(self) -> IngestBuffer:
        return self._buffer

    @property
    def coordinator(self) -> RetryCoordinator:
        return self._coordinator

    def health(self) -> PipelineHealth:
        inflight = Counter(state.value for state in self._coordinator.states().values())
        breaker = self._coordinator.circuit_breaker
        fatal = None if self._fatal is None else f"{type(self._fatal).__name__}: {self._fatal}"
        return PipelineHealth(
            workers_alive=sum(1 for w in self._workers if w.is_alive()),
            buffered_records=self._buffer.size,
            queued_batches=self._queue.size,
            queued_records=self._queue.pending_records,
            max_pending_batches=self._queue.max_batches,
            batch_size=self._buffer.capacity,
            inflight=dict(inflight),
            circuit_state=breaker.state if breaker else "closed",
            fatal_error=fatal,
        )

    # --------------------------- internals

    async def _on_report(self, report: DeliveryReport) -> None:
        self._stats.record(report)
        if FailureReason.SHUTDOWN in report.reasons:
            logger.warning(
                f"[{self.pipeline_id}] batch {report.batch_id} dead-lettered at shutdown "
                f"({report.dead_lettered_count} records)"
            )

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and self._fatal is None:
            self._fatal = exc
            # wake producers blocked on a full queue nobody will drain
            self._queue.fail(exc)
            logger.error(f"[{self.pipeline_id}] delivery worker died: {type(exc).__name__}: {exc}")

    def _raise_if_fatal(self) -> None:
        if self._fatal is not None:
            raise PipelineFatalError(
                f"pipeline {self.pipeline_id} stopped after fatal error: {self._fatal}"
            ) from self._fatal

    async def _close_buffer(self, deadline: float | None) -> bool:
        """Final flush into the queue. False when ``deadline`` passed first."""
        try:
            if deadline is None:
                await self._buffer.close()
            else:
                await self._buffer.stop()
                remaining = max(0.0, deadline - asyncio.get_running_loop().time())
                await asyncio.wait_for(self._buffer.close(), timeout=remaining)
        except asyncio.TimeoutError:
            # the interrupted hand-off left the records buffered
            return False
        except PipelineFatalError:
            # a worker died meanwhile; stop() re-raises the original error
            pass
        return True

    async def _wait_queue(self, deadline: float) -> bool:
        """Wait for the queue to drain or every worker to die. True when drained."""
        loop = asyncio.get_running_loop()
        join = asyncio.create_task(self._queue.join())
        worker_tasks = [w.task for w in self._workers if w.task is not None]
        try:
            while not join.done():
                alive = [t for t in worker_tasks if not t.done()]
                remaining = deadline - loop.time()
                if not alive or remaining <= 0:
                    break
                await asyncio.wait(
                    [join, *alive], timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
            return join.done()
        finally:
            if not join.done():
                join.cancel()
                with suppress(asyncio.CancelledError):
                    await join

    def _update_gauges(self) -> None:
        QUEUED_BATCHES.labels(self.pipeline_id).set(self._queue.size)
        WORKERS_ALIVE.labels(self.pipeline_id).set(sum(1 for w in self._workers if w.is_alive()))
        breaker = self._coordinator.circuit_breaker
        state = breaker.state if breaker else "closed"
        CIRCUIT_STATE.labels(self.pipeline_id).set(CIRCUIT_STATE_VALUES[state])

    async def _metrics_loop(self) -> None:
        while True:
            self._update_gauges()
            await asyncio.sleep(self._metrics_poll_sec)
