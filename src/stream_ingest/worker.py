from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from loguru import logger

from .models import DeliveryReport
from .queue import BatchQueue
from .retry import RetryCoordinator

ReportCallback = Callable[[DeliveryReport], Awaitable[None]]


class DeliveryWorker:
    """Pulls batches off the queue and delivers them through the RetryCoordinator.

    Any exception escaping RetryCoordinator.send (in practice a
    DeadLetterStorageError) ends the worker task with that exception; the
    batch is still marked done so queue.join() cannot hang on it.
    """

    def __init__(
        self,
        worker_id: int,
        queue: BatchQueue,
        coordinator: RetryCoordinator,
        *,
        on_report: Optional[ReportCallback] = None,
        poll_interval: float = 0.1,
    ):
        self.worker_id = worker_id
        self._q = queue
        self._coord = coordinator
        self._on_report = on_report
        self._poll = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def is_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"delivery-worker-{self.worker_id}")

    async def stop(self) -> None:
        """Finish the batch in hand, then exit. Does not wait for the queue to drain."""
        self._stopping = True
        if self._task is None:
            return
        if not self._task.done():
            await asyncio.wait({self._task}, timeout=self._poll * 2)
        if not self._task.done():
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task

    async def _run(self) -> None:
        logger.debug(f"DeliveryWorker {self.worker_id} started")
        while not self._stopping:
            try:
                batch = await self._q.get(timeout=self._poll)
            except asyncio.TimeoutError:
                continue

            try:
                report = await self._coord.send(batch)
                if self._on_report is not None:
                    await self._on_report(report)
            finally:
                self._q.task_done()
        logger.debug(f"DeliveryWorker {self.worker_id} stopped")
