"""
RetryCoordinator: delivers one batch with bounded exponential backoff.

Outcomes per batch:
- sender answered: accepted records are done, rejected records are
  dead-lettered at once with reason ``validation`` (never retried)
- retryable exception: sleep min(base * 2^attempt, cap), try again; after
  ``max_retries`` retries the whole batch is dead-lettered with
  ``transport_exhausted``
- non-retryable exception: dead-lettered with ``sender_error``
- abort() during backoff (or before sending): dead-lettered with ``shutdown``

Dead-letter storage errors are never caught here.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from loguru import logger

from .dlq import DeadLetterSink
from .metrics import (
    RECORDS_ACCEPTED_TOTAL,
    RECORDS_DEAD_LETTERED_TOTAL,
    SEND_ATTEMPTS_TOTAL,
    SEND_LATENCY,
    SEND_RETRIES_TOTAL,
)
from .models import Batch, DeliveryReport, FailedBatch, SendResult
from .policy import CircuitBreaker, RetryPolicy
from .sender import BatchSender
from .types import BatchState, FailureReason


class RetryCoordinator:
    def __init__(
        self,
        sender: BatchSender,
        dead_letter: DeadLetterSink,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        circuit_breaker: Optional[CircuitBreaker] = None,
        pipeline_id: str = "default",
    ):
        self.sender = sender
        self.dead_letter = dead_letter
        self.retry_policy = retry_policy or RetryPolicy()
        self.circuit_breaker = circuit_breaker
        self.pipeline_id = pipeline_id

        self._abort = asyncio.Event()
        self._states: dict[str, BatchState] = {}

    # --------------------------- state

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def abort(self) -> None:
        """Wake every backoff sleep; pending and future sends dead-letter as ``shutdown``."""
        if not self._abort.is_set():
            logger.info(f"[{self.pipeline_id}] RetryCoordinator aborting in-flight retries")
        self._abort.set()

    def states(self) -> dict[str, BatchState]:
        """Snapshot of batches currently inside send(), by batch id."""
        return dict(self._states)

    def _set_state(self, batch: Batch, state: BatchState) -> None:
        self._states[batch.batch_id] = state
        logger.debug(f"[{self.pipeline_id}] batch {batch.sequence} -> {state.value}")

    # --------------------------- delivery

    async def send(self, batch: Batch) -> DeliveryReport:
        self._set_state(batch, BatchState.PENDING)
        try:
            return await self._send(batch)
        finally:
            self._states.pop(batch.batch_id, None)

    async def _send(self, batch: Batch) -> DeliveryReport:
        policy = self.retry_policy
        attempts = 0
        retries = 0

        while True:
            if self.aborted:
                return await self._dead_letter_all(
                    batch,
                    FailureReason.SHUTDOWN,
                    "pipeline shut down before delivery",
                    attempts,
                    retries,
                )

            self._set_state(batch, BatchState.SENDING)
            attempts += 1
            try:
                result = await self._attempt(batch)
            except Exception as exc:
                if not policy.classify_retryable(exc):
                    SEND_ATTEMPTS_TOTAL.labels(self.pipeline_id, "sender_error").inc()
                    logger.error(
                        f"[{self.pipeline_id}] batch {batch.sequence} non-retryable sender error: "
                        f"{type(exc).__name__}: {exc}"
                    )
                    return await self._dead_letter_all(
                        batch, FailureReason.SENDER_ERROR, _describe(exc), attempts, retries
                    )

                SEND_ATTEMPTS_TOTAL.labels(self.pipeline_id, "transport_error").inc()
                if retries >= policy.max_retries:
                    logger.warning(
                        f"[{self.pipeline_id}] batch {batch.sequence} exhausted "
                        f"{policy.max_retries} retries: {type(exc).__name__}: {exc}"
                    )
                    return await self._dead_letter_all(
                        batch, FailureReason.TRANSPORT_EXHAUSTED, _describe(exc), attempts, retries
                    )

                delay_ms = policy.next_backoff_ms(retries)
                retries += 1
                SEND_RETRIES_TOTAL.labels(self.pipeline_id).inc()
                logger.warning(
                    f"[{self.pipeline_id}] batch {batch.sequence} transport failure "
                    f"({type(exc).__name__}: {exc}); retry {retries}/{policy.max_retries} "
                    f"in {delay_ms:.0f}ms"
                )
                self._set_state(batch, BatchState.RETRYING)
                if await self._backoff(delay_ms / 1000.0):
                    return await self._dead_letter_all(
                        batch, FailureReason.SHUTDOWN, _describe(exc), attempts, retries
                    )
                continue

            return await self._settle(batch, result, attempts, retries)

    async def _attempt(self, batch: Batch) -> SendResult:
        if self.circuit_breaker:
            await self.circuit_breaker.allow()

        t0 = time.perf_counter()
        try:
            result = await self.sender.send_batch(batch)
        except Exception:
            if self.circuit_breaker:
                await self.circuit_breaker.on_failure()
            raise
        finally:
            SEND_LATENCY.labels(self.pipeline_id).observe(time.perf_counter() - t0)

        if self.circuit_breaker:
            await self.circuit_breaker.on_success()
        return result

    async def _backoff(self, delay_sec: float) -> bool:
        """Sleep ``delay_sec`` unless aborted first. True when aborted."""
        if delay_sec <= 0:
            return self.aborted
        try:
            await asyncio.wait_for(self._abort.wait(), timeout=delay_sec)
        except asyncio.TimeoutError:
            return False
        return True

    async def _settle(
        self, batch: Batch, result: SendResult, attempts: int, retries: int
    ) -> DeliveryReport:
        total = len(batch)
        indexes = [r.index for r in result.rejected]
        if len(set(indexes)) != len(indexes) or any(not 0 <= i < total for i in indexes):
            SEND_ATTEMPTS_TOTAL.labels(self.pipeline_id, "sender_error").inc()
            logger.error(
                f"[{self.pipeline_id}] batch {batch.sequence}: sender returned invalid "
                f"reject indexes {sorted(indexes)} for {total} records"
            )
            return await self._dead_letter_all(
                batch,
                FailureReason.SENDER_ERROR,
                f"invalid SendResult: reject indexes {sorted(indexes)} for {total} records",
                attempts,
                retries,
            )

        if result.accepted_count + result.rejected_count != total:
            logger.warning(
                f"[{self.pipeline_id}] batch {batch.sequence}: sender reported "
                f"{result.accepted_count} accepted + {result.rejected_count} rejected "
                f"for {total} records"
            )

        RECORDS_ACCEPTED_TOTAL.labels(self.pipeline_id).inc(result.accepted_count)
        if not result.rejected:
            SEND_ATTEMPTS_TOTAL.labels(self.pipeline_id, "success").inc()
            self._set_state(batch, BatchState.DELIVERED)
            return DeliveryReport(
                batch_id=batch.batch_id,
                state=BatchState.DELIVERED,
                attempts=attempts,
                retries=retries,
                accepted_count=result.accepted_count,
                dead_lettered_count=0,
            )

        SEND_ATTEMPTS_TOTAL.labels(self.pipeline_id, "partial").inc()
        rejected = sorted(result.rejected, key=lambda r: r.index)
        failed = FailedBatch(
            batch=batch.subset(r.index for r in rejected),
            reason=FailureReason.VALIDATION,
            error=f"{len(rejected)} of {total} record(s) rejected by ingestion service",
            retry_count=retries,
            source_batch_id=batch.batch_id,
            record_errors=tuple(r.reason for r in rejected),
        )
        logger.warning(
            f"[{self.pipeline_id}] batch {batch.sequence}: {len(rejected)} record(s) rejected, "
            f"{result.accepted_count} accepted; dead-lettering rejects"
        )
        await self.dead_letter.store(failed)
        RECORDS_DEAD_LETTERED_TOTAL.labels(self.pipeline_id, FailureReason.VALIDATION.value).inc(
            len(rejected)
        )

        self._set_state(batch, BatchState.DELIVERED)
        return DeliveryReport(
            batch_id=batch.batch_id,
            state=BatchState.DELIVERED,
            attempts=attempts,
            retries=retries,
            accepted_count=result.accepted_count,
            dead_lettered_count=len(rejected),
            reasons=(FailureReason.VALIDATION,),
        )

    async def _dead_letter_all(
        self, batch: Batch, reason: FailureReason, error: str, attempts: int, retries: int
    ) -> DeliveryReport:
        failed = FailedBatch(
            batch=batch,
            reason=reason,
            error=error,
            retry_count=retries,
            source_batch_id=batch.batch_id,
        )
        await self.dead_letter.store(failed)
        RECORDS_DEAD_LETTERED_TOTAL.labels(self.pipeline_id, reason.value).inc(len(batch))
        self._set_state(batch, BatchState.DEAD_LETTERED)
        return DeliveryReport(
            batch_id=batch.batch_id,
            state=BatchState.DEAD_LETTERED,
            attempts=attempts,
            retries=retries,
            accepted_count=0,
            dead_lettered_count=len(batch),
            reasons=(reason,),
        )


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
